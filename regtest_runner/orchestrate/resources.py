"""Host port reservation for node instances."""

from __future__ import annotations

import socket


class ResourceError(RuntimeError):
    """Raised when resources cannot be allocated."""


class PortPool:
    """In-process port reservation map over an inclusive range."""

    def __init__(self, port_range: tuple[int, int], *, check_bind: bool = True) -> None:
        self._port_range = port_range
        self._check_bind = check_bind
        self._reservations: dict[int, str] = {}

    @property
    def port_range(self) -> tuple[int, int]:
        return self._port_range

    @property
    def capacity(self) -> int:
        start, end = self._port_range
        return end - start + 1

    def reserve(self, owner: str) -> int:
        start, end = self._port_range
        for port in range(start, end + 1):
            if port in self._reservations:
                continue
            if self._check_bind and not _port_is_available(port):
                continue
            self._reservations[port] = owner
            return port
        raise ResourceError(f"No free ports available in range {start}-{end}.")

    def release(self, port: int | None) -> None:
        if port is None:
            return
        self._reservations.pop(port, None)

    def reserved(self) -> dict[int, str]:
        return dict(self._reservations)


def _port_is_available(port: int) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind(("127.0.0.1", port))
        except OSError:
            return False
    return True


__all__ = ["PortPool", "ResourceError"]
