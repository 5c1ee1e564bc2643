"""Orchestrator runtime loop wiring scheduler, node lifecycle, and job runner."""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass
import logging
from pathlib import Path
import signal
from typing import Sequence

from regtest_runner.orchestrate.dashboard import ACTIVE_STATES, RunDashboard
from regtest_runner.orchestrate.discovery import WorkItem
from regtest_runner.orchestrate.lifecycle import NodeLifecycleManager
from regtest_runner.orchestrate.report import RunSummary, summarize, write_report
from regtest_runner.orchestrate.runner import JobRunner
from regtest_runner.orchestrate.scheduler import WorkScheduler
from regtest_runner.orchestrate.state import JobState, RunResult


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OrchestratorOptions:
    run_id: str
    output_root: Path
    max_parallel: int


class OrchestratorRunner:
    def __init__(
        self,
        items: Sequence[WorkItem],
        lifecycle: NodeLifecycleManager,
        job_runner: JobRunner,
        *,
        options: OrchestratorOptions,
        dashboard: RunDashboard | None = None,
    ) -> None:
        self._items = list(items)
        self._lifecycle = lifecycle
        self._job_runner = job_runner
        self._options = options
        self._dashboard = dashboard or RunDashboard(enabled=False)
        self._shutdown = asyncio.Event()
        self._shutdown_mode: str | None = None
        self._dashboard_refresh_task: asyncio.Task[None] | None = None
        self._runner_task: asyncio.Task[list[RunResult]] | None = None
        self._job_runner.register(self._items)

    def run(self) -> RunSummary:
        return asyncio.run(self._run_async())

    async def _run_async(self) -> RunSummary:
        scheduler = WorkScheduler(max_parallel=self._options.max_parallel)
        self._dashboard.start()
        self._refresh_dashboard()
        self._dashboard_refresh_task = self._start_dashboard_refresh()
        self._dashboard.log(
            f"RUN started run_id={self._options.run_id} items={len(self._items)} "
            f"max_parallel={self._options.max_parallel} output={self._options.output_root}"
        )
        results: list[RunResult] = []
        try:
            loop = asyncio.get_running_loop()
            self._runner_task = asyncio.create_task(
                scheduler.run(self._items, self._job_runner.run, shutdown_event=self._shutdown)
            )
            _register_signal_handlers(loop, self.request_shutdown)
            try:
                results = await self._runner_task
            except asyncio.CancelledError:
                if self._shutdown_mode != "force":
                    raise
                results = scheduler.completed()
        finally:
            if self._dashboard_refresh_task:
                self._dashboard_refresh_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await self._dashboard_refresh_task
                self._dashboard_refresh_task = None
            # Nothing may outlive the run, whatever path got us here.
            await self._lifecycle.release_all()
            self._dashboard.stop()
        finished = {result.item_id for result in results}
        not_run = [item.item_id for item in self._items if item.item_id not in finished]
        summary = summarize(results, not_run=not_run)
        write_report(self._options.output_root / "report.json", summary)
        counts = " ".join(f"{status}={count}" for status, count in summary.counts.items())
        self._dashboard.log(
            f"RUN finished ok={summary.ok} {counts} not_run={len(not_run)} "
            f"peak_nodes={self._lifecycle.peak_in_use}"
        )
        return summary

    def request_shutdown(self) -> None:
        """First call drains in-flight items; a second call cancels them."""
        if self._runner_task is None:
            self._shutdown.set()
            return
        self._handle_shutdown(self._runner_task)

    def _handle_shutdown(self, runner_task: asyncio.Task) -> None:
        if not self._shutdown.is_set():
            self._shutdown_mode = "graceful"
            self._dashboard.log(
                f"SHUTDOWN graceful active={self._count(ACTIVE_STATES)} queued={self._count({JobState.pending})} "
                "hint=\"signal again to cancel running items\""
            )
            self._shutdown.set()
            self._refresh_dashboard()
            return
        if self._shutdown_mode == "force":
            return
        self._shutdown_mode = "force"
        self._dashboard.log(
            f"SHUTDOWN force active={self._count(ACTIVE_STATES)} nodes={len(self._lifecycle.outstanding())}"
        )
        runner_task.cancel()
        self._refresh_dashboard()

    def _count(self, states: set[str]) -> int:
        return sum(1 for manifest in self._job_runner.manifests.values() if manifest.state in states)

    def _refresh_dashboard(self) -> None:
        caption = (
            f"run_id={self._options.run_id} mode={self._shutdown_mode or 'running'} "
            f"nodes={self._lifecycle.in_use_count}/{self._options.max_parallel}"
        )
        self._dashboard.update(self._job_runner.manifests.values(), caption=caption)

    def _start_dashboard_refresh(self) -> asyncio.Task[None] | None:
        if not self._dashboard.enabled:
            return None

        async def tick() -> None:
            # Keeps the per-item "For" column moving between state changes.
            period_s = 1.0 / max(0.1, float(self._dashboard.refresh_hz or 1.0))
            while True:
                await asyncio.sleep(period_s)
                try:
                    self._refresh_dashboard()
                except Exception as exc:  # noqa: BLE001
                    logger.debug("Dashboard refresh failed: %r", exc)

        return asyncio.create_task(tick())


def _register_signal_handlers(loop: asyncio.AbstractEventLoop, handler) -> None:
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, handler)
        except (NotImplementedError, RuntimeError):
            continue


__all__ = ["OrchestratorOptions", "OrchestratorRunner"]
