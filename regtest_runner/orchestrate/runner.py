"""Job runner: one work item, one leased node, one test process."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
import json
import logging
import os
from pathlib import Path
import shlex
import time
from typing import Callable, Iterable, Mapping

from regtest_runner.orchestrate.discovery import WorkItem
from regtest_runner.orchestrate.docker_node import sanitize_container_name
from regtest_runner.orchestrate.errors import ExecutionTimeout, InfrastructureError, ProvisioningError
from regtest_runner.orchestrate.lifecycle import NodeHandle, NodeLifecycleManager
from regtest_runner.orchestrate.state import (
    ItemManifest,
    ItemPaths,
    JobState,
    RunResult,
    TERMINAL_STATES,
    item_paths,
    write_item_manifest,
    write_item_result,
    write_summary,
    write_text,
)
from regtest_runner.orchestrate.testproc import (
    RunStatus,
    classify_outcome,
    read_tail,
    start_test_process,
    wait_test_process,
)


logger = logging.getLogger(__name__)

_ERROR_KINDS = {
    RunStatus.failed: "test_failure",
    RunStatus.errored: "abnormal_exit",
}


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class RunnerOptions:
    run_id: str
    output_root: Path
    workspace: Path
    test_timeout_s: float = 900.0
    base_env: Mapping[str, str] | None = None
    extra_env: Mapping[str, str] = field(default_factory=dict)


class JobRunner:
    """Runs work items against nodes leased from a lifecycle manager.

    The node is released on every exit path (pass, fail, timeout, spawn
    failure, cancellation). Failed tests are never retried here.
    """

    def __init__(
        self,
        lifecycle: NodeLifecycleManager,
        *,
        options: RunnerOptions,
        node_logs: Callable[[str], str] | None = None,
        on_event: Callable[[str], None] | None = None,
        on_update: Callable[[], None] | None = None,
    ) -> None:
        self._lifecycle = lifecycle
        self._options = options
        self._node_logs = node_logs
        self._on_event = on_event
        self._on_update = on_update
        self._manifests: dict[str, ItemManifest] = {}

    @property
    def manifests(self) -> dict[str, ItemManifest]:
        return self._manifests

    @property
    def summary_path(self) -> Path:
        return self._options.output_root / "summary.json"

    def register(self, items: Iterable[WorkItem]) -> None:
        for item in items:
            self._manifests.setdefault(item.item_id, ItemManifest.for_item(item))

    def node_name(self, item: WorkItem) -> str:
        return sanitize_container_name(f"regtest-{self._options.run_id}-{item.item_id}")

    async def run(self, item: WorkItem) -> RunResult:
        self.register([item])
        manifest = self._manifests[item.item_id]
        paths = item_paths(self._options.output_root, item.item_id)
        manifest.started_at = manifest.started_at or _utcnow()
        manifest.node_name = self.node_name(item)
        self._set_state(manifest, paths, JobState.provisioning)
        try:
            async with self._lifecycle.lease(manifest.node_name) as handle:
                manifest.node_port = handle.port
                if handle.readiness is not None:
                    manifest.readiness = handle.readiness.__dict__
                    write_text(paths.readiness_path, json.dumps(handle.readiness.__dict__, indent=2))
                try:
                    result = await self._execute(item, handle, manifest, paths)
                finally:
                    await self._capture_node_logs(handle, paths)
        except ProvisioningError as exc:
            result = RunResult(
                item_id=item.item_id,
                status=RunStatus.errored,
                message=str(exc),
                error_kind="provisioning",
            )
        except asyncio.CancelledError:
            manifest.failure_reason = manifest.failure_reason or "cancelled"
            self._set_state(manifest, paths, JobState.cancelled)
            raise
        self._finish(manifest, paths, result)
        return result

    async def _execute(
        self, item: WorkItem, handle: NodeHandle, manifest: ItemManifest, paths: ItemPaths
    ) -> RunResult:
        base_env = self._options.base_env if self._options.base_env is not None else os.environ
        env = {**base_env, **self._options.extra_env, "RUST_BACKTRACE": "1", **handle.connection_env()}
        argv = item.argv()
        manifest.command = shlex.join(argv)
        self._set_state(manifest, paths, JobState.running)
        self._emit(f"JOB test-start item={item.item_id} port={handle.port}")
        started = time.monotonic()
        try:
            proc = await start_test_process(
                argv,
                cwd=self._options.workspace,
                env=env,
                stdout_path=paths.stdout_path,
                stderr_path=paths.stderr_path,
            )
            outcome = await wait_test_process(proc, timeout_s=self._options.test_timeout_s)
        except ExecutionTimeout as exc:
            return RunResult(
                item_id=item.item_id,
                status=RunStatus.timed_out,
                duration_s=time.monotonic() - started,
                stdout=read_tail(paths.stdout_path),
                stderr=read_tail(paths.stderr_path),
                message=str(exc),
                error_kind="timeout",
            )
        except InfrastructureError as exc:
            return RunResult(
                item_id=item.item_id,
                status=RunStatus.errored,
                duration_s=time.monotonic() - started,
                message=str(exc),
                error_kind="infrastructure",
            )
        stdout = read_tail(paths.stdout_path)
        stderr = read_tail(paths.stderr_path)
        status = classify_outcome(outcome.exit_code, f"{stdout}\n{stderr}")
        message = None if status is RunStatus.passed else f"exit code {outcome.exit_code}"
        return RunResult(
            item_id=item.item_id,
            status=status,
            exit_code=outcome.exit_code,
            duration_s=outcome.duration_s,
            stdout=stdout,
            stderr=stderr,
            message=message,
            error_kind=_ERROR_KINDS.get(status),
        )

    async def _capture_node_logs(self, handle: NodeHandle, paths: ItemPaths) -> None:
        if self._node_logs is None or handle.instance_id is None:
            return
        try:
            logs = await asyncio.to_thread(self._node_logs, handle.instance_id)
        except Exception as exc:  # noqa: BLE001
            logger.debug("Could not capture logs for %s: %s", handle.name, exc)
            return
        write_text(paths.node_logs_path, logs)

    def _finish(self, manifest: ItemManifest, paths: ItemPaths, result: RunResult) -> None:
        manifest.exit_code = result.exit_code
        manifest.duration_s = result.duration_s
        manifest.error = result.message if result.status is not RunStatus.passed else None
        manifest.failure_reason = result.error_kind
        write_item_result(paths, result)
        self._set_state(manifest, paths, result.status.value)
        suffix = f" reason={result.error_kind} error={result.message!r}" if result.error_kind else ""
        self._emit(f"JOB {result.status.value} item={result.item_id} duration={result.duration_s:.1f}s{suffix}")

    def _set_state(self, manifest: ItemManifest, paths: ItemPaths, state: str) -> None:
        now = _utcnow()
        if state != manifest.state:
            manifest.state = state
            manifest.state_entered_at = now
        if state in TERMINAL_STATES:
            manifest.completed_at = now
        write_item_manifest(paths, manifest)
        write_summary(self.summary_path, list(self._manifests.values()))
        if self._on_update is not None:
            self._on_update()

    def _emit(self, message: str) -> None:
        logger.debug(message)
        if self._on_event is not None:
            self._on_event(message)


__all__ = ["JobRunner", "RunnerOptions"]
