"""Enumerate ignored integration tests from compiled cargo test binaries.

Discovery only lists tests (``--list --format terse --ignored``); it never
executes them. Failures are fatal: an empty matrix must mean "nothing needs a
node", never "listing broke".
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
import json
import logging
import os
from pathlib import Path
import subprocess
from typing import Any, Iterable, Literal, Sequence

from regtest_runner.orchestrate.errors import DiscoveryError


logger = logging.getLogger(__name__)

_SKIP_SUFFIXES = {".d", ".o", ".rlib", ".rmeta", ".so", ".dylib", ".a", ".pdb"}
LIST_TIMEOUT_S = 120.0


@dataclass(frozen=True)
class WorkItem:
    """One independently schedulable test invocation."""

    item_id: str
    binary: str
    test_name: str | None = None
    exact: bool = False
    ignored: bool = True

    def argv(self) -> list[str]:
        args = [self.binary]
        if self.test_name:
            args.append(self.test_name)
            if self.exact:
                args.append("--exact")
        if self.ignored:
            args.append("--ignored")
        return args

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Any) -> "WorkItem":
        if not isinstance(payload, dict):
            raise DiscoveryError(f"Work item must be a mapping, got {type(payload).__name__}.")
        try:
            return cls(
                item_id=str(payload["item_id"]),
                binary=str(payload["binary"]),
                test_name=payload.get("test_name"),
                exact=bool(payload.get("exact", False)),
                ignored=bool(payload.get("ignored", True)),
            )
        except KeyError as exc:
            raise DiscoveryError(f"Work item is missing field {exc.args[0]!r}.") from exc


def binary_stem(path: Path | str) -> str:
    """Strip cargo's ``-<hash>`` suffix: ``manager_tests-1a2b3c`` -> ``manager_tests``."""
    name = Path(path).name
    stem, sep, suffix = name.rpartition("-")
    if sep and stem and all(ch in "0123456789abcdef" for ch in suffix.lower()):
        return stem
    return name


def find_test_binaries(artifact_dir: Path, prefixes: Sequence[str]) -> list[Path]:
    if not artifact_dir.is_dir():
        raise DiscoveryError(f"Artifact directory not found: {artifact_dir} (did the test build run?)")
    binaries: list[Path] = []
    for prefix in prefixes:
        matches = sorted(
            path
            for path in artifact_dir.iterdir()
            if path.name.startswith(f"{prefix}-") and _is_test_binary(path)
        )
        if not matches:
            raise DiscoveryError(f"No test binary for prefix {prefix!r} in {artifact_dir}.")
        binaries.extend(matches)
    return binaries


def _is_test_binary(path: Path) -> bool:
    if path.suffix in _SKIP_SUFFIXES:
        return False
    return path.is_file() and os.access(path, os.X_OK)


def parse_terse_listing(output: str) -> list[str]:
    """Parse ``name: test`` lines from libtest's terse listing format."""
    names: list[str] = []
    for line in output.splitlines():
        name, sep, kind = line.rpartition(": ")
        if sep and kind.strip() == "test" and name:
            names.append(name.strip())
    return names


def list_ignored_tests(binary: Path, *, timeout_s: float = LIST_TIMEOUT_S) -> list[str]:
    command = [str(binary), "--list", "--format", "terse", "--ignored"]
    try:
        completed = subprocess.run(command, capture_output=True, text=True, timeout=timeout_s, check=False)
    except (OSError, subprocess.TimeoutExpired) as exc:
        raise DiscoveryError(f"Failed to list tests in {binary}: {exc}") from exc
    if completed.returncode != 0:
        stderr = completed.stderr.strip().splitlines()
        detail = stderr[-1] if stderr else f"exit {completed.returncode}"
        raise DiscoveryError(f"Listing tests in {binary} failed: {detail}")
    return parse_terse_listing(completed.stdout)


def discover_work_items(
    artifact_dir: Path,
    prefixes: Sequence[str],
    *,
    shard_by: Literal["test", "binary"] = "test",
) -> list[WorkItem]:
    items: list[WorkItem] = []
    for binary in find_test_binaries(artifact_dir, prefixes):
        names = list_ignored_tests(binary)
        stem = binary_stem(binary)
        logger.info("Discovered %d ignored test(s) in %s", len(names), binary.name)
        if not names:
            continue
        if shard_by == "binary":
            items.append(WorkItem(item_id=stem, binary=str(binary)))
            continue
        for name in names:
            items.append(WorkItem(item_id=f"{stem}::{name}", binary=str(binary), test_name=name, exact=True))
    _check_unique(items)
    if not items:
        logger.warning("Discovery succeeded but no ignored tests were found.")
    return items


def _check_unique(items: Iterable[WorkItem]) -> None:
    seen: set[str] = set()
    for item in items:
        if item.item_id in seen:
            raise DiscoveryError(f"Duplicate work item id: {item.item_id}")
        seen.add(item.item_id)


def render_matrix(items: Sequence[WorkItem]) -> str:
    return json.dumps([item.to_dict() for item in items], sort_keys=True, separators=(",", ":"))


def write_matrix(path: Path, items: Sequence[WorkItem]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as handle:
        handle.write(render_matrix(items))
        handle.write("\n")


def load_matrix(path: Path) -> list[WorkItem]:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            payload = json.load(handle)
    except (OSError, json.JSONDecodeError) as exc:
        raise DiscoveryError(f"Failed to read matrix {path}: {exc}") from exc
    if not isinstance(payload, list):
        raise DiscoveryError(f"Matrix must be a JSON list: {path}")
    items = [WorkItem.from_dict(entry) for entry in payload]
    _check_unique(items)
    return items


def select_items(items: Sequence[WorkItem], item_ids: Sequence[str]) -> list[WorkItem]:
    by_id = {item.item_id: item for item in items}
    missing = [item_id for item_id in item_ids if item_id not in by_id]
    if missing:
        raise DiscoveryError(f"Unknown work item id(s): {', '.join(missing)}")
    return [by_id[item_id] for item_id in item_ids]


__all__ = [
    "WorkItem",
    "binary_stem",
    "discover_work_items",
    "find_test_binaries",
    "list_ignored_tests",
    "load_matrix",
    "parse_terse_listing",
    "render_matrix",
    "select_items",
    "write_matrix",
]
