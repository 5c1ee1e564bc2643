"""Live terminal view of in-flight work items and their nodes."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import re
from typing import Iterable

from rich.console import Console
from rich.live import Live
from rich.table import Table
from rich.text import Text

from regtest_runner.orchestrate.state import ItemManifest, JobState


ACTIVE_STATES = {JobState.provisioning, JobState.running}

STATE_STYLES: dict[str, str] = {
    JobState.pending: "dim",
    JobState.provisioning: "magenta",
    JobState.running: "yellow",
    JobState.passed: "green",
    JobState.failed: "bold red",
    JobState.errored: "bold magenta",
    JobState.timed_out: "yellow",
    JobState.cancelled: "magenta",
}

# First word of an event line, e.g. "NODE ready name=... port=...".
EVENT_SOURCE_STYLES: dict[str, str] = {
    "RUN": "bold cyan",
    "JOB": "bold",
    "NODE": "blue",
    "SHUTDOWN": "bold red",
}

EVENT_KIND_STYLES: dict[str, str] = {
    "started": "cyan",
    "finished": "cyan",
    "test-start": "yellow",
    "ready": "green",
    "unhealthy": "bold red",
    "stopped": "dim",
    "release-all": "bold yellow",
    "graceful": "yellow",
    "force": "bold red",
    JobState.passed: "bold green",
    JobState.failed: "bold red",
    JobState.errored: "bold magenta",
    JobState.timed_out: "yellow",
    JobState.cancelled: "magenta",
}

_FIELD = re.compile(r"(\b[a-z_]+)=(\S+)")
_ALERT_FIELDS = {"error", "reason"}


def _since(timestamp: str | None) -> str:
    if not timestamp:
        return "-"
    try:
        entered = datetime.fromisoformat(timestamp)
    except ValueError:
        return "-"
    seconds = max(int((datetime.now(timezone.utc) - entered).total_seconds()), 0)
    if seconds >= 3600:
        return f"{seconds // 3600}h{seconds % 3600 // 60:02d}m"
    if seconds >= 60:
        return f"{seconds // 60}m{seconds % 60:02d}s"
    return f"{seconds}s"


def build_table(manifests: Iterable[ItemManifest], *, caption: str | None = None) -> Table:
    """One row per provisioning/running item, then pending and finished tallies."""
    rows = list(manifests)
    waiting = [manifest for manifest in rows if manifest.state == JobState.pending]
    finished = [m for m in rows if m.state not in ACTIVE_STATES and m.state != JobState.pending]
    not_passed = sum(1 for manifest in finished if manifest.state != JobState.passed)

    table = Table(title=Text("regtest-runner", style="bold cyan"), caption=caption, expand=True)
    table.add_column("Item", no_wrap=True, style="bold")
    table.add_column("State", no_wrap=True)
    table.add_column("For", no_wrap=True, style="dim")
    table.add_column("Node", no_wrap=True, style="cyan")
    table.add_column("RPC", no_wrap=True, style="cyan")
    for manifest in rows:
        if manifest.state not in ACTIVE_STATES:
            continue
        rpc = f"127.0.0.1:{manifest.node_port}" if manifest.node_port is not None else "-"
        table.add_row(
            Text(manifest.item_id),
            Text(manifest.state, style=STATE_STYLES.get(manifest.state, "")),
            _since(manifest.state_entered_at),
            manifest.node_name or "-",
            rpc,
        )
    table.add_section()
    table.add_row(Text("queued", style="dim"), Text(f"count={len(waiting)}", style="dim"), "", "", "")
    done_style = "red" if not_passed else "dim"
    table.add_row(
        Text("done", style="dim"),
        Text(f"count={len(finished)} not_passed={not_passed}", style=done_style),
        "",
        "",
        "",
    )
    return table


def format_log_message(message: str) -> Text:
    """Style an event line: source word, event kind, and alerting key=value fields."""
    text = Text(message)
    source, _, rest = message.partition(" ")
    source_style = EVENT_SOURCE_STYLES.get(source)
    if source_style:
        text.stylize(source_style, 0, len(source))
    kind = rest.split(" ", 1)[0] if rest else ""
    kind_style = EVENT_KIND_STYLES.get(kind)
    if kind_style:
        offset = len(source) + 1
        text.stylize(kind_style, offset, offset + len(kind))
    for match in _FIELD.finditer(message):
        if match.group(1) in _ALERT_FIELDS:
            text.stylize("red", match.start(2), len(message) if match.group(1) == "error" else match.end(2))
    return text


@dataclass
class RunDashboard:
    refresh_hz: float = 1.0
    enabled: bool = True

    def __post_init__(self) -> None:
        self._console = Console(log_path=False, highlight=False)
        self._live = Live(
            build_table([]),
            console=self._console,
            refresh_per_second=self.refresh_hz,
            transient=False,
        )

    @property
    def console(self) -> Console:
        return self._console

    def start(self) -> None:
        if self.enabled:
            self._live.start()

    def update(self, manifests: Iterable[ItemManifest], *, caption: str | None = None) -> None:
        if self.enabled:
            self._live.update(build_table(manifests, caption=caption))

    def stop(self) -> None:
        if self.enabled:
            self._live.stop()

    def log(self, message: str) -> None:
        self._console.log(format_log_message(message))


__all__ = ["ACTIVE_STATES", "RunDashboard", "build_table", "format_log_message"]
