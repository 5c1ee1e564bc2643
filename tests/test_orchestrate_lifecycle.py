import asyncio
import time

import pytest

from regtest_runner.orchestrate.errors import ProvisioningError
from regtest_runner.orchestrate.lifecycle import NodeHandle, NodeState, wait_for_readiness
from regtest_runner.orchestrate.resources import PortPool


@pytest.mark.asyncio
async def test_lease_yields_ready_node_and_stops_it_once(fake_backend_cls, make_lifecycle) -> None:
    backend = fake_backend_cls()
    events: list[str] = []
    lifecycle = make_lifecycle(backend, on_event=events.append)

    async with lifecycle.lease("node-a") as handle:
        assert handle.state is NodeState.in_use
        assert handle.readiness is not None and handle.readiness.ready
        assert handle.connection_env()["BITCOIND_RPC_PORT"] == "19000"
        assert handle.connection_env()["BITCOIND_RPC_URL"] == "http://127.0.0.1:19000/"
        assert lifecycle.in_use_count == 1

    assert handle.state is NodeState.stopped
    assert handle.history == [
        NodeState.unstarted,
        NodeState.starting,
        NodeState.ready,
        NodeState.in_use,
        NodeState.stopping,
        NodeState.stopped,
    ]
    assert backend.stopped == ["id-node-a"]
    assert lifecycle.outstanding() == []
    assert lifecycle.in_use_count == 0
    assert any(event.startswith("NODE ready name=node-a") for event in events)
    assert any(event.startswith("NODE stopped name=node-a") for event in events)


@pytest.mark.asyncio
async def test_node_that_never_becomes_healthy_is_stopped_and_reported(fake_backend_cls, make_lifecycle) -> None:
    backend = fake_backend_cls(unhealthy=("bad",))
    ports = PortPool((19000, 19001), check_bind=False)
    lifecycle = make_lifecycle(backend, ports=ports, readiness_timeout_s=0.3, probe_interval_s=0.05)

    with pytest.raises(ProvisioningError, match="not ready"):
        async with lifecycle.lease("bad-node"):
            pytest.fail("an unhealthy node must never be lent out")

    # Readiness timeouts are not retried.
    assert backend.started == ["bad-node"]
    assert backend.stopped == ["id-bad-node"]
    assert backend.health_calls >= 2
    assert ports.reserved() == {}
    assert lifecycle.outstanding() == []


@pytest.mark.asyncio
async def test_transient_start_failure_is_retried_and_partial_nodes_stopped(
    fake_backend_cls, make_lifecycle
) -> None:
    backend = fake_backend_cls(start_failures={"node-a": 2})
    ports = PortPool((19000, 19005), check_bind=False)
    lifecycle = make_lifecycle(backend, ports=ports, start_attempts=3)

    async with lifecycle.lease("node-a") as handle:
        assert handle.state is NodeState.in_use

    assert backend.started == ["node-a", "node-a", "node-a"]
    assert backend.stopped == ["node-a", "node-a", "id-node-a"]
    assert ports.reserved() == {}
    assert lifecycle.release_count == 3


@pytest.mark.asyncio
async def test_start_failure_exhausting_attempts_raises_provisioning_error(fake_backend_cls, make_lifecycle) -> None:
    backend = fake_backend_cls(start_failures={"node-a": 5})
    lifecycle = make_lifecycle(backend, start_attempts=2)

    with pytest.raises(ProvisioningError, match="failed to start"):
        await lifecycle.acquire("node-a")

    assert backend.started == ["node-a", "node-a"]
    assert lifecycle.outstanding() == []


@pytest.mark.asyncio
async def test_non_transient_start_failure_is_not_retried(fake_backend_cls, make_lifecycle) -> None:
    backend = fake_backend_cls(start_failures={"node-a": 1}, start_error="image manifest is broken")
    lifecycle = make_lifecycle(backend, start_attempts=3)

    with pytest.raises(ProvisioningError, match="image manifest is broken"):
        await lifecycle.acquire("node-a")

    assert backend.started == ["node-a"]
    assert backend.stopped == ["node-a"]


@pytest.mark.asyncio
async def test_release_is_idempotent(fake_backend_cls, make_lifecycle) -> None:
    backend = fake_backend_cls()
    lifecycle = make_lifecycle(backend)

    handle = await lifecycle.acquire("node-a")
    await lifecycle.release(handle)
    await lifecycle.release(handle)

    assert backend.stopped == ["id-node-a"]
    assert lifecycle.release_count == 1
    assert handle.state is NodeState.stopped


@pytest.mark.asyncio
async def test_lease_releases_node_when_body_raises(fake_backend_cls, make_lifecycle) -> None:
    backend = fake_backend_cls()
    lifecycle = make_lifecycle(backend)

    with pytest.raises(RuntimeError, match="boom"):
        async with lifecycle.lease("node-a"):
            raise RuntimeError("boom")

    assert backend.stopped == ["id-node-a"]
    assert lifecycle.in_use_count == 0


@pytest.mark.asyncio
async def test_cancellation_during_readiness_stops_node(fake_backend_cls, make_lifecycle) -> None:
    backend = fake_backend_cls(unhealthy=("node",))
    lifecycle = make_lifecycle(backend, readiness_timeout_s=30.0, probe_interval_s=0.05)

    task = asyncio.create_task(lifecycle.acquire("node-a"))
    await asyncio.sleep(0.2)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert backend.stopped == ["id-node-a"]
    assert lifecycle.outstanding() == []


@pytest.mark.asyncio
async def test_cancellation_during_slow_start_stops_the_container_once_it_exists(
    fake_backend_cls, make_lifecycle
) -> None:
    class SlowStartBackend(fake_backend_cls):
        def __init__(self) -> None:
            super().__init__()
            self.live: set[str] = set()

        def start(self, name: str, host_port: int) -> str:
            time.sleep(0.3)
            instance_id = super().start(name, host_port)
            self.live.add(instance_id)
            return instance_id

        def stop(self, instance_id: str) -> None:
            super().stop(instance_id)
            self.live.discard(instance_id)

    backend = SlowStartBackend()
    ports = PortPool((19000, 19001), check_bind=False)
    lifecycle = make_lifecycle(backend, ports=ports)

    task = asyncio.create_task(lifecycle.acquire("node-a"))
    await asyncio.sleep(0.1)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    await lifecycle.release_all()
    await asyncio.sleep(0.3)

    assert backend.started == ["node-a"]
    assert backend.stopped == ["id-node-a"]
    assert backend.live == set()
    assert lifecycle.outstanding() == []
    assert ports.reserved() == {}


@pytest.mark.asyncio
async def test_cancellation_while_in_use_stops_node(fake_backend_cls, make_lifecycle) -> None:
    backend = fake_backend_cls()
    lifecycle = make_lifecycle(backend)
    in_use = asyncio.Event()

    async def borrow() -> None:
        async with lifecycle.lease("node-a"):
            in_use.set()
            await asyncio.sleep(30)

    task = asyncio.create_task(borrow())
    await asyncio.wait_for(in_use.wait(), timeout=5)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert backend.stopped == ["id-node-a"]
    assert lifecycle.in_use_count == 0


@pytest.mark.asyncio
async def test_release_all_stops_every_outstanding_node(fake_backend_cls, make_lifecycle) -> None:
    backend = fake_backend_cls()
    lifecycle = make_lifecycle(backend)

    await lifecycle.acquire("node-a")
    await lifecycle.acquire("node-b")
    assert len(lifecycle.outstanding()) == 2

    await lifecycle.release_all()

    assert sorted(backend.stopped) == ["id-node-a", "id-node-b"]
    assert lifecycle.outstanding() == []


@pytest.mark.asyncio
async def test_concurrent_leases_get_distinct_ports(fake_backend_cls, make_lifecycle) -> None:
    backend = fake_backend_cls()
    lifecycle = make_lifecycle(backend)
    ports: list[int] = []

    async def borrow(name: str) -> None:
        async with lifecycle.lease(name) as handle:
            ports.append(handle.port)
            await asyncio.sleep(0.05)

    await asyncio.gather(*(borrow(f"node-{idx}") for idx in range(3)))

    assert len(set(ports)) == 3
    assert lifecycle.peak_in_use == 3
    assert len(backend.stopped) == 3


def test_illegal_transition_is_rejected() -> None:
    handle = NodeHandle(name="node-a", rpc_user="u", rpc_password="p")
    with pytest.raises(ValueError, match="Illegal node transition"):
        handle.transition(NodeState.in_use)


@pytest.mark.asyncio
async def test_wait_for_readiness_succeeds_after_retries() -> None:
    calls = 0

    async def probe() -> bool:
        nonlocal calls
        calls += 1
        return calls >= 3

    result = await wait_for_readiness(probe, timeout_s=5.0, poll_interval_s=0.01)

    assert result.ready
    assert result.attempts == 3


@pytest.mark.asyncio
async def test_wait_for_readiness_reports_last_error_on_deadline() -> None:
    async def probe() -> bool:
        raise ConnectionError("connection refused")

    result = await wait_for_readiness(probe, timeout_s=0.1, poll_interval_s=0.02)

    assert not result.ready
    assert result.attempts >= 2
    assert result.last_error == "connection refused"
    assert result.elapsed_s >= 0.1
