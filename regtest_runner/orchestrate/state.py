"""State tracking and artifact persistence for orchestrator runs."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping, Sequence
import hashlib
import json
import os
import re
import uuid

from regtest_runner.orchestrate.discovery import WorkItem
from regtest_runner.orchestrate.testproc import RunStatus


class JobState:
    pending = "pending"
    provisioning = "provisioning"
    running = "running"
    passed = "passed"
    failed = "failed"
    errored = "errored"
    timed_out = "timed-out"
    cancelled = "cancelled"


TERMINAL_STATES = {JobState.passed, JobState.failed, JobState.errored, JobState.timed_out, JobState.cancelled}

_DIR_ALLOWED = re.compile(r"[^a-zA-Z0-9_.-]+")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def write_json_atomic(path: Path, payload: Mapping[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(f"{path.suffix}.tmp-{uuid.uuid4().hex}")
    with open(tmp_path, "w", encoding="utf-8") as handle:
        json.dump(payload, handle, indent=2)
    os.replace(tmp_path, path)


def write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as handle:
        handle.write(text)


@dataclass(frozen=True)
class RunResult:
    """Outcome of one work item."""

    item_id: str
    status: RunStatus
    exit_code: int | None = None
    duration_s: float = 0.0
    stdout: str = ""
    stderr: str = ""
    message: str | None = None
    error_kind: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["status"] = self.status.value
        return payload


@dataclass
class ItemManifest:
    item_id: str
    binary: str
    test_name: str | None = None
    state: str = JobState.pending
    updated_at: str = field(default_factory=_now)
    state_entered_at: str | None = field(default_factory=_now)
    started_at: str | None = None
    completed_at: str | None = None
    node_name: str | None = None
    node_port: int | None = None
    readiness: Mapping[str, Any] | None = None
    command: str | None = None
    exit_code: int | None = None
    duration_s: float | None = None
    failure_reason: str | None = None
    error: str | None = None

    @classmethod
    def for_item(cls, item: WorkItem) -> "ItemManifest":
        return cls(item_id=item.item_id, binary=item.binary, test_name=item.test_name)

    def touch(self) -> None:
        self.updated_at = _now()

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ItemPaths:
    root: Path

    @property
    def manifest_path(self) -> Path:
        return self.root / "run_manifest.json"

    @property
    def result_path(self) -> Path:
        return self.root / "result.json"

    @property
    def node_dir(self) -> Path:
        return self.root / "node"

    @property
    def test_dir(self) -> Path:
        return self.root / "test"

    @property
    def stdout_path(self) -> Path:
        return self.test_dir / "stdout.txt"

    @property
    def stderr_path(self) -> Path:
        return self.test_dir / "stderr.txt"

    @property
    def node_logs_path(self) -> Path:
        return self.node_dir / "node_logs.txt"

    @property
    def readiness_path(self) -> Path:
        return self.node_dir / "readiness.json"


def sanitize_dirname(item_id: str, *, max_len: int = 120) -> str:
    cleaned = _DIR_ALLOWED.sub("-", item_id).strip("-.")
    if not cleaned:
        cleaned = "item"
    if cleaned != item_id:
        # Distinct ids may sanitize to the same name ("a::b" vs "a:b").
        suffix = hashlib.sha1(item_id.encode("utf-8")).hexdigest()[:8]  # noqa: S324
        cleaned = f"{cleaned}-{suffix}"
    if len(cleaned) > max_len:
        cleaned = cleaned[:max_len].rstrip("-.")
    return cleaned or "item"


def item_paths(output_root: Path, item_id: str) -> ItemPaths:
    return ItemPaths(output_root / "items" / sanitize_dirname(item_id))


def write_item_manifest(paths: ItemPaths, manifest: ItemManifest) -> None:
    manifest.touch()
    write_json_atomic(paths.manifest_path, manifest.to_dict())


def write_item_result(paths: ItemPaths, result: RunResult) -> None:
    write_json_atomic(paths.result_path, result.to_dict())


def write_summary(path: Path, manifests: Sequence[ItemManifest]) -> None:
    payload = {
        "updated_at": _now(),
        "items": [
            {
                "item_id": manifest.item_id,
                "state": manifest.state,
                "binary": manifest.binary,
                "test_name": manifest.test_name,
                "failure_reason": manifest.failure_reason,
                "error": manifest.error,
            }
            for manifest in manifests
        ],
    }
    write_json_atomic(path, payload)


def load_summary(path: Path) -> Mapping[str, Any]:
    if not path.exists():
        raise FileNotFoundError(f"Summary not found: {path}")
    with open(path, "r", encoding="utf-8") as handle:
        payload = json.load(handle)
    if not isinstance(payload, Mapping):
        raise ValueError(f"Summary file is not a mapping: {path}")
    return payload


def filter_items_for_resume(
    items: Sequence[WorkItem], summary: Mapping[str, Any], *, rerun_failed: bool
) -> list[WorkItem]:
    entries = summary.get("items")
    if not isinstance(entries, list):
        return list(items)
    passed = {entry.get("item_id") for entry in entries if entry.get("state") == JobState.passed}
    failed = {
        entry.get("item_id")
        for entry in entries
        if entry.get("state") in {JobState.failed, JobState.errored, JobState.timed_out}
    }
    filtered: list[WorkItem] = []
    for item in items:
        if item.item_id in passed:
            continue
        if not rerun_failed and item.item_id in failed:
            continue
        filtered.append(item)
    return filtered


__all__ = [
    "ItemManifest",
    "ItemPaths",
    "JobState",
    "RunResult",
    "TERMINAL_STATES",
    "filter_items_for_resume",
    "item_paths",
    "load_summary",
    "sanitize_dirname",
    "write_item_manifest",
    "write_item_result",
    "write_json_atomic",
    "write_summary",
    "write_text",
]
