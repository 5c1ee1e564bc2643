"""Bounded worker pool dispatching work items to job runners."""

from __future__ import annotations

import asyncio
from collections import deque
import logging
from typing import Awaitable, Callable, Iterable

from regtest_runner.orchestrate.discovery import WorkItem
from regtest_runner.orchestrate.state import RunResult
from regtest_runner.orchestrate.testproc import RunStatus


logger = logging.getLogger(__name__)

ItemRunner = Callable[[WorkItem], Awaitable[RunResult]]


class WorkScheduler:
    """Queue-based scheduler with a concurrency cap."""

    def __init__(self, *, max_parallel: int = 1) -> None:
        if max_parallel < 1:
            raise ValueError("max_parallel must be >= 1")
        self._max_parallel = max_parallel
        self.peak_active = 0
        self._results: dict[int, RunResult] = {}

    def completed(self) -> list[RunResult]:
        """Results collected so far, in input order; survives a cancelled ``run``."""
        return [self._results[index] for index in sorted(self._results)]

    async def run(
        self,
        items: Iterable[WorkItem],
        runner: ItemRunner,
        *,
        shutdown_event: asyncio.Event | None = None,
    ) -> list[RunResult]:
        """Run items with at most ``max_parallel`` in flight; results keep input order.

        A set ``shutdown_event`` stops new items from starting and drains the
        in-flight ones. Cancelling the call cancels every in-flight runner and
        waits for them before re-raising.
        """
        pending = deque(enumerate(items))
        results: dict[int, RunResult] = {}
        self._results = results
        active = 0
        slot_available = asyncio.Event()
        slot_available.set()
        runner_tasks: set[asyncio.Task[None]] = set()

        async def _wait_for_events() -> None:
            waiters: list[asyncio.Task] = []
            try:
                waiters.append(asyncio.create_task(slot_available.wait()))
                if shutdown_event:
                    waiters.append(asyncio.create_task(shutdown_event.wait()))
                await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
            finally:
                for waiter in waiters:
                    if not waiter.done():
                        waiter.cancel()
                await asyncio.gather(*waiters, return_exceptions=True)

        async def _runner_wrapper(index: int, item: WorkItem) -> None:
            nonlocal active
            try:
                try:
                    results[index] = await runner(item)
                except Exception as exc:  # noqa: BLE001
                    logger.exception("Runner crashed for %s", item.item_id)
                    results[index] = RunResult(
                        item_id=item.item_id,
                        status=RunStatus.errored,
                        message=f"runner crashed: {exc!r}",
                        error_kind="infrastructure",
                    )
            finally:
                active -= 1
                slot_available.set()

        def _launch(index: int, item: WorkItem) -> None:
            nonlocal active
            active += 1
            self.peak_active = max(self.peak_active, active)
            task = asyncio.create_task(_runner_wrapper(index, item), name=f"item:{item.item_id}")
            runner_tasks.add(task)
            task.add_done_callback(runner_tasks.discard)

        try:
            while pending:
                if shutdown_event and shutdown_event.is_set():
                    logger.info("Shutdown requested; %d item(s) will not start", len(pending))
                    break
                if active >= self._max_parallel:
                    slot_available.clear()
                    await _wait_for_events()
                    continue
                index, item = pending.popleft()
                _launch(index, item)
            while runner_tasks:
                await asyncio.gather(*list(runner_tasks), return_exceptions=True)
        except asyncio.CancelledError:
            for task in runner_tasks:
                task.cancel()
            await asyncio.gather(*runner_tasks, return_exceptions=True)
            raise
        return [results[index] for index in sorted(results)]


__all__ = ["ItemRunner", "WorkScheduler"]
