"""Aggregate run results into an overall status."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Sequence

from rich.table import Table
from rich.text import Text

from regtest_runner.orchestrate.errors import InfrastructureError, TestFailure
from regtest_runner.orchestrate.state import RunResult, write_json_atomic
from regtest_runner.orchestrate.testproc import RunStatus


STATUS_STYLES: dict[RunStatus, str] = {
    RunStatus.passed: "green",
    RunStatus.failed: "bold red",
    RunStatus.errored: "bold magenta",
    RunStatus.timed_out: "yellow",
}


@dataclass(frozen=True)
class RunSummary:
    results: Sequence[RunResult]
    discovery_ok: bool = True
    not_run: Sequence[str] = field(default_factory=tuple)

    @property
    def counts(self) -> dict[str, int]:
        counter = Counter(result.status.value for result in self.results)
        return {status.value: counter.get(status.value, 0) for status in RunStatus}

    @property
    def infrastructure_ok(self) -> bool:
        return not any(result.status in {RunStatus.errored, RunStatus.timed_out} for result in self.results)

    @property
    def ok(self) -> bool:
        # Test failures fail the run too; they are only reported differently.
        return (
            self.discovery_ok
            and not self.not_run
            and all(result.status is RunStatus.passed for result in self.results)
        )

    def raise_for_status(self) -> None:
        if not self.infrastructure_ok:
            bad = [r.item_id for r in self.results if r.status in {RunStatus.errored, RunStatus.timed_out}]
            raise InfrastructureError(f"{len(bad)} item(s) errored or timed out: {', '.join(bad)}")
        failed = [r.item_id for r in self.results if r.status is RunStatus.failed]
        if failed:
            raise TestFailure(f"{len(failed)} item(s) failed: {', '.join(failed)}")
        if self.not_run:
            raise InfrastructureError(f"{len(self.not_run)} item(s) did not run: {', '.join(self.not_run)}")

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "discovery_ok": self.discovery_ok,
            "counts": self.counts,
            "not_run": list(self.not_run),
            "results": [result.to_dict() for result in self.results],
        }


def summarize(
    results: Iterable[RunResult], *, discovery_ok: bool = True, not_run: Iterable[str] = ()
) -> RunSummary:
    return RunSummary(results=tuple(results), discovery_ok=discovery_ok, not_run=tuple(not_run))


def write_report(path: Path, summary: RunSummary) -> None:
    write_json_atomic(path, summary.to_dict())


def build_report_table(summary: RunSummary) -> Table:
    counts = summary.counts
    caption = " ".join(f"{status}={count}" for status, count in counts.items())
    if summary.not_run:
        caption += f" not-run={len(summary.not_run)}"
    table = Table(title=Text("Integration tests", style="bold cyan"), caption=caption, expand=True)
    table.add_column("Item", style="bold")
    table.add_column("Status", no_wrap=True)
    table.add_column("Exit", no_wrap=True, style="dim")
    table.add_column("Duration", no_wrap=True, style="dim")
    table.add_column("Note")
    for result in summary.results:
        exit_text = str(result.exit_code) if result.exit_code is not None else "-"
        note = result.message or ""
        table.add_row(
            Text(result.item_id),
            Text(result.status.value, style=STATUS_STYLES.get(result.status, "")),
            exit_text,
            f"{result.duration_s:.1f}s",
            Text(note, style="red" if note else "dim"),
        )
    return table


__all__ = ["RunSummary", "build_report_table", "summarize", "write_report"]
