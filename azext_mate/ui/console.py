"""Terminal rendering for az mate, built on rich.

Every outcome line uses the same marker per log kind, whether it is a
deployment log entry or a one-off status message from a command:
``›`` command, ``✓`` success, ``✗`` error, ``!`` warning, ``→`` info.
"""

from __future__ import annotations

import time
from contextlib import contextmanager
from typing import Any, Iterator

from rich.console import Console as RichConsole
from rich.markup import escape
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn, TimeElapsedColumn
from rich.table import Table
from rich.text import Text
from rich.theme import Theme

from azext_mate.deploy.models import LogEntry, LogKind

THEME = Theme({
    "dim": "#888888",
    "content": "bright_white",
    "success": "bright_green",
    "error": "bright_red",
    "warning": "bright_yellow",
    "info": "bright_cyan",
    "accent": "bright_magenta",
    "log.time": "#666666",
    "log.command": "bright_magenta",
    "log.output": "white",
    "border": "#555555",
})

# (marker, style) per log kind; info entries are indented instead of marked.
_MARKERS = {
    LogKind.COMMAND: ("›", "log.command"),
    LogKind.SUCCESS: ("✓", "success"),
    LogKind.ERROR: ("✗", "error"),
    LogKind.WARNING: ("!", "warning"),
    LogKind.INFO: ("→", "info"),
}

_STATE_STYLES = {
    "completed": "success",
    "failed": "error",
    "running": "info",
    "idle": "dim",
}


class Console:
    """Themed output for the mate commands."""

    def __init__(self, rich_console: RichConsole | None = None):
        self._console = rich_console or RichConsole(theme=THEME, highlight=False)

    def print(self, message: str = "", style: str | None = None, **kwargs):
        self._console.print(message, style=style, **kwargs)

    def print_dim(self, message: str):
        self._console.print(message, style="dim")

    def _status(self, kind: LogKind, message: str):
        marker, style = _MARKERS[kind]
        self._console.print(f"[{style}]{marker}[/{style}] {message}")

    def print_success(self, message: str):
        self._status(LogKind.SUCCESS, message)

    def print_error(self, message: str):
        self._status(LogKind.ERROR, message)

    def print_warning(self, message: str):
        self._status(LogKind.WARNING, message)

    def print_info(self, message: str):
        self._status(LogKind.INFO, message)

    def print_header(self, title: str):
        self._console.print()
        self._console.print(f"[accent bold]{escape(title)}[/accent bold]")
        self._console.print()

    # ------------------------------------------------------------------ #
    # Deployment output
    # ------------------------------------------------------------------ #

    def print_log_entry(self, entry: LogEntry):
        """Render one log entry as ``[HH:MM:SS] <marker> message``.

        Raw terminal payloads (source ``socket``) keep their ANSI styling
        and are printed without a prefix, the way the remote shell drew them.
        """
        if entry.source == "socket":
            self._console.print(Text.from_ansi(entry.message, end=""), end="")
            return

        line = Text(f"[{entry.time_label}] ", style="log.time")
        if entry.kind is LogKind.INFO:
            line.append("  " + entry.message, style="dim" if entry.source == "engine" else "log.output")
        else:
            marker, style = _MARKERS[entry.kind]
            line.append(f"{marker} {entry.message}", style=style)
        self._console.print(line)

    def print_session_summary(self, record: dict[str, Any]):
        """Print the outcome panel for a finished session record."""
        state = record.get("state", "")
        style = _STATE_STYLES.get(state, "content")
        lines = [
            f"[dim]Session:[/dim]  {record.get('id', '')[:8]}",
            f"[dim]Backend:[/dim]  {record.get('backend', '')}",
            f"[dim]State:[/dim]    [{style}]{state}[/{style}]",
        ]
        duration = record.get("duration_seconds")
        if duration is not None:
            lines.append(f"[dim]Duration:[/dim] {duration:.1f}s")
        if record.get("error"):
            category = record.get("error_category") or "Error"
            lines.append(f"[dim]Error:[/dim]    [error]{escape(category)}[/error] {escape(record['error'])}")
        cost = record.get("cost_estimate") or {}
        if cost.get("total") is not None:
            lines.append(f"[dim]Estimate:[/dim] {cost.get('total')} {cost.get('currency', '')}/month")

        self.panel("\n".join(lines), title="Deployment", border_style=style)

    def print_session_table(self, records: list[dict[str, Any]]):
        """Print session history, newest first."""
        table = Table(box=None, header_style="dim", pad_edge=False)
        table.add_column("ID")
        table.add_column("Backend")
        table.add_column("State")
        table.add_column("Started")
        table.add_column("Duration", justify="right")
        for record in records:
            state = record.get("state", "")
            style = _STATE_STYLES.get(state, "content")
            duration = record.get("duration_seconds")
            table.add_row(
                str(record.get("id", ""))[:8],
                record.get("backend", ""),
                f"[{style}]{state}[/{style}]",
                record.get("started_at") or "",
                f"{duration:.1f}s" if duration is not None else "",
            )
        self._console.print(table)

    def print_script(self, script: str, title: str = "Script"):
        """Print a script in a bordered panel for copy/paste."""
        self.panel(escape(script.rstrip()), title=title)

    @contextmanager
    def spinner(self, message: str) -> Iterator[None]:
        """Spin while the block runs, then leave a ``✓ message (1.2s)`` line.

        The closing line is printed only when the block finishes normally.
        """
        started = time.monotonic()
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            TimeElapsedColumn(),
            console=self._console,
            transient=True,
        ) as progress:
            progress.add_task(message, total=None)
            yield
        self.print_success(f"{message} ({time.monotonic() - started:.1f}s)")

    def panel(self, content: str, title: str | None = None, border_style: str = "border"):
        self._console.print(Panel(content, title=title, border_style=border_style, padding=(0, 1)))


console = Console()
