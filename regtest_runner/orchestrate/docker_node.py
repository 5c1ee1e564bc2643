"""Docker-backed bitcoind regtest node and its RPC health probe."""

from __future__ import annotations

from typing import Any, Mapping, Protocol
import logging
import re
import threading

import httpx


logger = logging.getLogger(__name__)

ORCHESTRATOR_LABEL_KEY = "orchestrator.managed"


class NodeStartError(RuntimeError):
    """Raised when a node container cannot be created or started."""


class NodeBackend(Protocol):
    """Process/container collaborator for one external node instance."""

    def start(self, name: str, host_port: int) -> str: ...

    def healthcheck(self, instance_id: str) -> bool: ...

    def stop(self, instance_id: str) -> None: ...


def build_node_args(
    *, rpc_port: int, rpc_user: str, rpc_password: str, bitcoind: Mapping[str, object]
) -> list[str]:
    _validate_bitcoind_config(bitcoind)
    args = [
        "-regtest=1",
        "-server=1",
        "-printtoconsole=1",
        "-rpcbind=0.0.0.0",
        "-rpcallowip=0.0.0.0/0",
        f"-rpcport={rpc_port}",
        f"-rpcuser={rpc_user}",
        f"-rpcpassword={rpc_password}",
    ]
    args.extend(_render_bitcoind_flags(bitcoind))
    return args


_SCALAR_FLAGS = {
    "fallbackfee": "-fallbackfee",
    "dbcache": "-dbcache",
    "maxmempool": "-maxmempool",
    "rpcthreads": "-rpcthreads",
    "rpcworkqueue": "-rpcworkqueue",
    "debug": "-debug",
    "wallet": "-wallet",
}

_BOOL_FLAGS = {
    "txindex": "-txindex",
    "blockfilterindex": "-blockfilterindex",
    "disablewallet": "-disablewallet",
    "listen": "-listen",
    "acceptnonstdtxn": "-acceptnonstdtxn",
}


def _render_bitcoind_flags(bitcoind: Mapping[str, object]) -> list[str]:
    flags: list[str] = []
    for key, flag in _SCALAR_FLAGS.items():
        if key in bitcoind and bitcoind[key] is not None:
            flags.append(f"{flag}={bitcoind[key]}")
    for key, flag in _BOOL_FLAGS.items():
        value = bitcoind.get(key)
        if value is None:
            continue
        flags.append(f"{flag}={1 if value else 0}")
    return flags


def _validate_bitcoind_config(bitcoind: Mapping[str, object]) -> None:
    allowed = set(_SCALAR_FLAGS) | set(_BOOL_FLAGS)
    unknown = sorted(set(bitcoind.keys()) - allowed)
    if unknown:
        raise ValueError(f"Unknown bitcoind keys: {unknown}")
    for key in _BOOL_FLAGS:
        value = bitcoind.get(key)
        if value is not None and not isinstance(value, bool):
            raise ValueError(f"bitcoind.{key} must be a boolean.")


def normalize_volumes(volumes: object) -> dict[str, dict[str, str]]:
    if volumes is None:
        return {}
    if isinstance(volumes, Mapping):
        return dict(volumes)
    if not isinstance(volumes, list):
        raise NodeStartError("node.volumes must be a list of mount strings or a mapping.")
    mounts: dict[str, dict[str, str]] = {}
    for entry in volumes:
        if not entry:
            continue
        if not isinstance(entry, str):
            raise NodeStartError("node.volumes entries must be strings like host:container[:mode].")
        parts = entry.split(":")
        if len(parts) < 2 or len(parts) > 3:
            raise NodeStartError(f"Invalid volume mount: {entry!r} (expected host:container[:mode])")
        host = parts[0].strip()
        container_path = parts[1].strip()
        mode = parts[2].strip() if len(parts) == 3 else "rw"
        if not host or not container_path:
            raise NodeStartError(f"Invalid volume mount: {entry!r} (host and container path required)")
        if mode not in {"ro", "rw"}:
            raise NodeStartError(f"Invalid volume mount mode: {entry!r} (expected ro/rw)")
        mounts[host] = {"bind": container_path, "mode": mode}
    return mounts


def sanitize_container_name(value: str, *, max_len: int = 128) -> str:
    cleaned = re.sub(r"[^a-zA-Z0-9_.-]+", "-", value).strip("-.")
    if not cleaned:
        cleaned = "node"
    if len(cleaned) > max_len:
        cleaned = cleaned[:max_len].rstrip("-.")
    return cleaned


def rpc_probe(
    client: httpx.Client, url: str, *, method: str = "getblockchaininfo"
) -> tuple[bool, str | None]:
    """Issue one JSON-RPC call; return (ok, error)."""
    payload = {"jsonrpc": "1.0", "id": "regtest-runner", "method": method, "params": []}
    try:
        resp = client.post(url, json=payload)
    except httpx.HTTPError as exc:
        return False, str(exc) or type(exc).__name__
    if resp.status_code != 200:
        return False, f"POST {method} {resp.status_code}"
    try:
        body = resp.json()
    except ValueError:
        return False, f"{method} returned non-JSON body"
    if not isinstance(body, Mapping) or body.get("error"):
        return False, f"{method} error: {body.get('error') if isinstance(body, Mapping) else body!r}"
    return body.get("result") is not None, None


class DockerBitcoindBackend:
    """Runs one bitcoind regtest container per node instance."""

    def __init__(
        self,
        *,
        image: str,
        container_port: int,
        rpc_user: str,
        rpc_password: str,
        bitcoind: Mapping[str, object] | None = None,
        env: Mapping[str, str] | None = None,
        volumes: object = None,
        labels: Mapping[str, str] | None = None,
        probe_timeout_s: float = 5.0,
        client: Any = None,
    ) -> None:
        self._image = image
        self._container_port = container_port
        self._rpc_user = rpc_user
        self._rpc_password = rpc_password
        self._command = build_node_args(
            rpc_port=container_port, rpc_user=rpc_user, rpc_password=rpc_password, bitcoind=bitcoind or {}
        )
        self._env = dict(env or {})
        self._volumes = normalize_volumes(volumes)
        self._labels = {ORCHESTRATOR_LABEL_KEY: "true", **dict(labels or {})}
        self._probe_timeout_s = probe_timeout_s
        self._client = client
        self._ports: dict[str, int] = {}
        self._lock = threading.Lock()

    @property
    def command(self) -> list[str]:
        return list(self._command)

    def _docker(self):
        if self._client is None:
            try:
                import docker
            except Exception as exc:  # pragma: no cover - dependency import varies
                raise NodeStartError("docker package is required for container launch.") from exc
            # Container creation can exceed docker-py's default 60s read timeout under daemon load.
            self._client = docker.from_env(timeout=600)
        return self._client

    def start(self, name: str, host_port: int) -> str:
        client = self._docker()
        container_name = sanitize_container_name(name)
        create_kwargs = {
            "image": self._image,
            "name": container_name,
            "command": self._command,
            "ports": {f"{self._container_port}/tcp": ("127.0.0.1", host_port)},
            "environment": self._env,
            "volumes": self._volumes,
            "labels": self._labels,
            "detach": True,
        }
        self._remove_if_owned(container_name)
        try:
            container = client.containers.create(**create_kwargs)
        except Exception as exc:
            message = str(exc)
            if "No such image" in message or "not found" in message.lower():
                try:
                    client.images.pull(self._image)
                except Exception as pull_exc:
                    raise NodeStartError(f"Failed to pull image {self._image!r}: {pull_exc}") from pull_exc
                container = client.containers.create(**create_kwargs)
            else:
                raise NodeStartError(message) from exc
        with self._lock:
            self._ports[container_name] = host_port
        try:
            container.start()
        except Exception as exc:
            raise NodeStartError(str(exc)) from exc
        logger.debug("Started container %s (%s) on port %d", container_name, container.id, host_port)
        return container_name

    def healthcheck(self, instance_id: str) -> bool:
        instance_id = sanitize_container_name(instance_id)
        client = self._docker()
        try:
            container = client.containers.get(instance_id)
            container.reload()
        except Exception as exc:  # noqa: BLE001
            logger.debug("Healthcheck lookup failed for %s: %s", instance_id, exc)
            return False
        if getattr(container, "status", None) != "running":
            return False
        with self._lock:
            port = self._ports.get(instance_id)
        if port is None:
            return False
        timeout = httpx.Timeout(self._probe_timeout_s, connect=min(self._probe_timeout_s, 2.0))
        with httpx.Client(timeout=timeout, auth=(self._rpc_user, self._rpc_password)) as http:
            ok, error = rpc_probe(http, f"http://127.0.0.1:{port}/")
        if error:
            logger.debug("Healthcheck probe failed for %s: %s", instance_id, error)
        return ok

    def stop(self, instance_id: str) -> None:
        instance_id = sanitize_container_name(instance_id)
        with self._lock:
            self._ports.pop(instance_id, None)
        client = self._docker()
        try:
            container = client.containers.get(instance_id)
        except Exception as exc:  # noqa: BLE001
            if _is_not_found(exc):
                return
            raise
        try:
            container.stop(timeout=10)
        except Exception as exc:  # noqa: BLE001
            if not _is_not_found(exc):
                logger.warning("Stopping %s failed: %s", instance_id, exc)
        try:
            container.remove(v=True, force=True)
        except Exception as exc:  # noqa: BLE001
            if not _is_not_found(exc):
                raise

    def logs(self, instance_id: str) -> str:
        try:
            container = self._docker().containers.get(instance_id)
            return container.logs().decode("utf-8", errors="replace")
        except Exception as exc:  # noqa: BLE001
            return f"<logs unavailable: {exc}>"

    def _remove_if_owned(self, name: str) -> None:
        client = self._docker()
        try:
            existing = client.containers.get(name)
        except Exception:
            return
        existing_labels = getattr(existing, "labels", None) or {}
        if existing_labels.get(ORCHESTRATOR_LABEL_KEY) != "true":
            raise NodeStartError(f"Container name {name!r} is in use by a container this tool does not own.")
        if getattr(existing, "status", None) == "running":
            raise NodeStartError(f"Container name {name!r} is already running (conflict).")
        existing.remove(v=True, force=True)


def _is_not_found(exc: BaseException) -> bool:
    status = getattr(getattr(exc, "response", None), "status_code", None)
    return status == 404 or type(exc).__name__ == "NotFound" or "no such container" in str(exc).lower()


def cleanup_orphan_containers(run_id: str | None = None, *, client: Any = None) -> list[str]:
    if client is None:
        try:
            import docker
        except Exception as exc:  # pragma: no cover - dependency import varies
            raise NodeStartError("docker package is required for container cleanup.") from exc
        client = docker.from_env()
    labels = [f"{ORCHESTRATOR_LABEL_KEY}=true"]
    if run_id:
        labels.append(f"orchestrator.run_id={run_id}")
    containers = client.containers.list(all=True, filters={"label": labels})
    removed: list[str] = []
    for container in containers:
        try:
            if container.status == "running":
                container.stop(timeout=10)
            container.remove(v=True, force=True)
            removed.append(container.name)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to remove orphan container %s: %s", container.name, exc)
            continue
    return removed


__all__ = [
    "DockerBitcoindBackend",
    "NodeBackend",
    "NodeStartError",
    "ORCHESTRATOR_LABEL_KEY",
    "build_node_args",
    "cleanup_orphan_containers",
    "normalize_volumes",
    "rpc_probe",
    "sanitize_container_name",
]
