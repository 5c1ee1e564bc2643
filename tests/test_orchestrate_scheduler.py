import asyncio

import pytest

from regtest_runner.orchestrate.discovery import WorkItem
from regtest_runner.orchestrate.scheduler import WorkScheduler
from regtest_runner.orchestrate.state import RunResult
from regtest_runner.orchestrate.testproc import RunStatus


def _items(count: int) -> list[WorkItem]:
    return [WorkItem(item_id=f"item-{idx}", binary="/bin/true") for idx in range(count)]


def _passed(item: WorkItem) -> RunResult:
    return RunResult(item_id=item.item_id, status=RunStatus.passed, exit_code=0)


def test_scheduler_rejects_zero_width() -> None:
    with pytest.raises(ValueError):
        WorkScheduler(max_parallel=0)


@pytest.mark.asyncio
async def test_scheduler_never_exceeds_max_parallel() -> None:
    scheduler = WorkScheduler(max_parallel=2)
    active = 0
    peak = 0

    async def runner(item: WorkItem) -> RunResult:
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.02)
        active -= 1
        return _passed(item)

    results = await scheduler.run(_items(5), runner)

    assert len(results) == 5
    assert peak == 2
    assert scheduler.peak_active == 2


@pytest.mark.asyncio
async def test_scheduler_returns_results_in_input_order() -> None:
    scheduler = WorkScheduler(max_parallel=3)
    delays = {"item-0": 0.05, "item-1": 0.0, "item-2": 0.02}

    async def runner(item: WorkItem) -> RunResult:
        await asyncio.sleep(delays[item.item_id])
        return _passed(item)

    results = await scheduler.run(_items(3), runner)

    assert [result.item_id for result in results] == ["item-0", "item-1", "item-2"]


@pytest.mark.asyncio
async def test_scheduler_contains_runner_crash() -> None:
    scheduler = WorkScheduler(max_parallel=2)

    async def runner(item: WorkItem) -> RunResult:
        if item.item_id == "item-1":
            raise ValueError("unexpected")
        return _passed(item)

    results = await scheduler.run(_items(3), runner)

    assert [result.status for result in results] == [RunStatus.passed, RunStatus.errored, RunStatus.passed]
    assert "runner crashed" in (results[1].message or "")
    assert results[1].error_kind == "infrastructure"


@pytest.mark.asyncio
async def test_scheduler_shutdown_drains_in_flight_and_skips_pending() -> None:
    scheduler = WorkScheduler(max_parallel=1)
    shutdown = asyncio.Event()
    started: list[str] = []

    async def runner(item: WorkItem) -> RunResult:
        started.append(item.item_id)
        shutdown.set()
        await asyncio.sleep(0.02)
        return _passed(item)

    results = await scheduler.run(_items(3), runner, shutdown_event=shutdown)

    assert started == ["item-0"]
    assert [result.item_id for result in results] == ["item-0"]


@pytest.mark.asyncio
async def test_scheduler_cancellation_cancels_in_flight_runners() -> None:
    scheduler = WorkScheduler(max_parallel=2)
    started = asyncio.Event()
    cleaned: list[str] = []

    async def runner(item: WorkItem) -> RunResult:
        try:
            started.set()
            await asyncio.sleep(30)
            return _passed(item)
        finally:
            cleaned.append(item.item_id)

    task = asyncio.create_task(scheduler.run(_items(4), runner))
    await asyncio.wait_for(started.wait(), timeout=5)
    await asyncio.sleep(0)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert sorted(cleaned) == ["item-0", "item-1"]


@pytest.mark.asyncio
async def test_scheduler_keeps_finished_results_when_cancelled() -> None:
    scheduler = WorkScheduler(max_parallel=2)

    async def runner(item: WorkItem) -> RunResult:
        if item.item_id == "item-1":
            await asyncio.sleep(30)
        return _passed(item)

    task = asyncio.create_task(scheduler.run(_items(2), runner))
    for _ in range(100):
        if scheduler.completed():
            break
        await asyncio.sleep(0.01)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert [result.item_id for result in scheduler.completed()] == ["item-0"]
