"""Node lifecycle: start, readiness-gate, lend, and stop one node per work item.

Every handle that reaches ``starting`` is stopped exactly once, whatever
happens to the work item that borrowed it.
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass, field
from enum import Enum
import logging
import time
from typing import AsyncIterator, Awaitable, Callable
import uuid

from regtest_runner.orchestrate.docker_node import NodeBackend
from regtest_runner.orchestrate.errors import ProvisioningError
from regtest_runner.orchestrate.resources import PortPool, ResourceError
from regtest_runner.utils.retry import call_with_retries, is_transient_error


logger = logging.getLogger(__name__)


class NodeState(str, Enum):
    unstarted = "unstarted"
    starting = "starting"
    ready = "ready"
    in_use = "in_use"
    unhealthy = "unhealthy"
    stopping = "stopping"
    stopped = "stopped"


_TRANSITIONS: dict[NodeState, frozenset[NodeState]] = {
    NodeState.unstarted: frozenset({NodeState.starting, NodeState.stopping}),
    NodeState.starting: frozenset({NodeState.ready, NodeState.unhealthy, NodeState.stopping}),
    NodeState.ready: frozenset({NodeState.in_use, NodeState.unhealthy, NodeState.stopping}),
    NodeState.in_use: frozenset({NodeState.stopping}),
    NodeState.unhealthy: frozenset({NodeState.stopping}),
    NodeState.stopping: frozenset({NodeState.stopped}),
    NodeState.stopped: frozenset(),
}


@dataclass(frozen=True)
class ReadinessResult:
    ready: bool
    elapsed_s: float
    attempts: int
    last_error: str | None = None


@dataclass
class NodeHandle:
    name: str
    rpc_user: str
    rpc_password: str
    host: str = "127.0.0.1"
    port: int | None = None
    instance_id: str | None = None
    state: NodeState = NodeState.unstarted
    readiness: ReadinessResult | None = None
    handle_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    history: list[NodeState] = field(default_factory=lambda: [NodeState.unstarted])

    def transition(self, state: NodeState) -> None:
        if state not in _TRANSITIONS[self.state]:
            raise ValueError(f"Illegal node transition {self.state.value} -> {state.value} for {self.name}")
        self.state = state
        self.history.append(state)

    @property
    def rpc_url(self) -> str:
        return f"http://{self.host}:{self.port}/"

    def connection_env(self) -> dict[str, str]:
        return {
            "BITCOIND_RPC_HOST": self.host,
            "BITCOIND_RPC_PORT": str(self.port),
            "BITCOIND_RPC_USER": self.rpc_user,
            "BITCOIND_RPC_PASSWORD": self.rpc_password,
            "BITCOIND_RPC_URL": self.rpc_url,
        }


async def wait_for_readiness(
    probe: Callable[[], Awaitable[bool]],
    *,
    timeout_s: float,
    poll_interval_s: float = 1.0,
) -> ReadinessResult:
    """Poll ``probe`` until it succeeds or the overall deadline passes."""
    start = time.monotonic()
    deadline = start + timeout_s
    attempts = 0
    last_error: str | None = None
    while True:
        attempts += 1
        remaining = max(deadline - time.monotonic(), 0.001)
        try:
            if await asyncio.wait_for(probe(), timeout=remaining):
                return ReadinessResult(ready=True, elapsed_s=time.monotonic() - start, attempts=attempts)
            last_error = "healthcheck reported not ready"
        except asyncio.TimeoutError:
            last_error = "healthcheck probe timed out"
        except Exception as exc:  # noqa: BLE001
            last_error = str(exc) or type(exc).__name__
        now = time.monotonic()
        if now >= deadline:
            return ReadinessResult(
                ready=False,
                elapsed_s=now - start,
                attempts=attempts,
                last_error=last_error,
            )
        await asyncio.sleep(min(poll_interval_s, deadline - now))


@dataclass(frozen=True)
class LifecycleOptions:
    rpc_user: str
    rpc_password: str
    readiness_timeout_s: float = 120.0
    probe_interval_s: float = 1.0
    start_attempts: int = 3
    start_backoff_s: float = 2.0
    host: str = "127.0.0.1"


def _should_retry_start(exc: BaseException) -> bool:
    if isinstance(exc, ProvisioningError):
        return False
    return isinstance(exc, ResourceError) or is_transient_error(exc)


class NodeLifecycleManager:
    """Owns node handles; lends each one to a single work item at a time."""

    def __init__(
        self,
        backend: NodeBackend,
        ports: PortPool,
        *,
        options: LifecycleOptions,
        on_event: Callable[[str], None] | None = None,
    ) -> None:
        self._backend = backend
        self._ports = ports
        self._options = options
        self._on_event = on_event
        self._outstanding: dict[str, NodeHandle] = {}
        self._starts: dict[str, asyncio.Future[str]] = {}
        self._in_use = 0
        self.peak_in_use = 0
        self.release_count = 0

    @property
    def in_use_count(self) -> int:
        return self._in_use

    def outstanding(self) -> list[NodeHandle]:
        return list(self._outstanding.values())

    async def acquire(self, name: str) -> NodeHandle:
        async def _start() -> NodeHandle:
            return await self._start_once(name)

        try:
            handle = await call_with_retries(
                _start,
                attempts=self._options.start_attempts,
                backoff_s=self._options.start_backoff_s,
                should_retry=_should_retry_start,
                logger=logger,
            )
        except (ProvisioningError, asyncio.CancelledError):
            raise
        except Exception as exc:
            raise ProvisioningError(f"Node {name} failed to start: {exc}") from exc

        try:
            readiness = await wait_for_readiness(
                lambda: self._probe(handle),
                timeout_s=self._options.readiness_timeout_s,
                poll_interval_s=self._options.probe_interval_s,
            )
        except BaseException:
            await self.release(handle)
            raise
        handle.readiness = readiness
        if not readiness.ready:
            handle.transition(NodeState.unhealthy)
            self._emit(
                f"NODE unhealthy name={name} port={handle.port} attempts={readiness.attempts} "
                f"error={readiness.last_error!r}"
            )
            await self.release(handle)
            raise ProvisioningError(
                f"Node {name} not ready after {readiness.elapsed_s:.1f}s "
                f"({readiness.attempts} probes): {readiness.last_error}"
            )
        handle.transition(NodeState.ready)
        self._emit(f"NODE ready name={name} port={handle.port} attempts={readiness.attempts}")
        return handle

    async def _start_once(self, name: str) -> NodeHandle:
        handle = NodeHandle(
            name=name,
            rpc_user=self._options.rpc_user,
            rpc_password=self._options.rpc_password,
            host=self._options.host,
        )
        handle.port = self._ports.reserve(name)
        self._outstanding[handle.handle_id] = handle
        handle.transition(NodeState.starting)
        start_task = asyncio.ensure_future(asyncio.to_thread(self._backend.start, name, handle.port))
        self._starts[handle.handle_id] = start_task
        try:
            handle.instance_id = await asyncio.shield(start_task)
        except BaseException:
            # A failed or abandoned start may still leave a container behind.
            await self.release(handle)
            raise
        self._starts.pop(handle.handle_id, None)
        return handle

    async def _probe(self, handle: NodeHandle) -> bool:
        return await asyncio.to_thread(self._backend.healthcheck, handle.instance_id or handle.name)

    async def release(self, handle: NodeHandle) -> None:
        """Stop the node behind ``handle``; calling it again is a no-op."""
        if handle.state in (NodeState.stopping, NodeState.stopped):
            return
        previous = handle.state
        handle.transition(NodeState.stopping)
        try:
            if previous is not NodeState.unstarted:
                await asyncio.shield(self._stop_instance(handle, self._starts.pop(handle.handle_id, None)))
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.warning("Stopping node %s failed: %s", handle.name, exc)
        finally:
            if previous is NodeState.in_use:
                self._in_use -= 1
            self._ports.release(handle.port)
            self._outstanding.pop(handle.handle_id, None)
            handle.transition(NodeState.stopped)
            self.release_count += 1
            self._emit(f"NODE stopped name={handle.name} from={previous.value}")

    async def _stop_instance(self, handle: NodeHandle, pending_start: asyncio.Future[str] | None) -> None:
        if pending_start is not None:
            # The backend call keeps running in its worker thread after a cancel.
            await asyncio.wait({pending_start})
            if not pending_start.cancelled() and pending_start.exception() is None:
                handle.instance_id = pending_start.result()
        await asyncio.to_thread(self._backend.stop, handle.instance_id or handle.name)

    @contextlib.asynccontextmanager
    async def lease(self, name: str) -> AsyncIterator[NodeHandle]:
        handle = await self.acquire(name)
        try:
            handle.transition(NodeState.in_use)
            self._in_use += 1
            self.peak_in_use = max(self.peak_in_use, self._in_use)
            yield handle
        finally:
            await self.release(handle)

    async def release_all(self) -> None:
        handles = self.outstanding()
        if not handles:
            return
        self._emit(f"NODE release-all count={len(handles)}")
        await asyncio.gather(*(self.release(handle) for handle in handles), return_exceptions=True)

    def _emit(self, message: str) -> None:
        logger.debug(message)
        if self._on_event is not None:
            self._on_event(message)


__all__ = [
    "LifecycleOptions",
    "NodeHandle",
    "NodeLifecycleManager",
    "NodeState",
    "ReadinessResult",
    "wait_for_readiness",
]
