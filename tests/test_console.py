"""Tests for azext_mate.ui.console: log and summary rendering."""

from rich.console import Console as RichConsole

from azext_mate.deploy.models import LogEntry, LogKind
from azext_mate.ui.console import THEME, Console


def _console():
    rich = RichConsole(record=True, width=120, theme=THEME, color_system=None)
    return Console(rich_console=rich), rich


class TestPrintLogEntry:

    def test_markers_per_kind(self):
        console, rich = _console()
        stamp = "2026-10-19T08:30:15.000+00:00"
        console.print_log_entry(LogEntry("New-AzVM -Name vm1", LogKind.COMMAND, stamp))
        console.print_log_entry(LogEntry("created", LogKind.SUCCESS, stamp))
        console.print_log_entry(LogEntry("failed", LogKind.ERROR, stamp))
        console.print_log_entry(LogEntry("slow", LogKind.WARNING, stamp))
        console.print_log_entry(LogEntry("plain", LogKind.INFO, stamp))

        lines = rich.export_text().splitlines()
        assert lines[0] == "[08:30:15] › New-AzVM -Name vm1"
        assert lines[1] == "[08:30:15] ✓ created"
        assert lines[2] == "[08:30:15] ✗ failed"
        assert lines[3] == "[08:30:15] ! slow"
        assert lines[4] == "[08:30:15]   plain"

    def test_socket_output_is_raw(self):
        console, rich = _console()
        console.print_log_entry(LogEntry("\x1b[32mPS /home> \x1b[0m", source="socket"))
        assert rich.export_text().rstrip(" ") == "PS /home>"


class TestSummaries:

    def test_session_summary_shows_error(self):
        console, rich = _console()
        console.print_session_summary({
            "id": "0123456789abcdef",
            "backend": "cloudshell",
            "state": "failed",
            "duration_seconds": 3.25,
            "error": "WebSocket connection timeout after 30s",
            "error_category": "ConnectionError",
        })
        text = rich.export_text()
        assert "01234567" in text
        assert "failed" in text
        assert "3.2s" in text or "3.3s" in text
        assert "ConnectionError WebSocket connection timeout after 30s" in text

    def test_session_table(self):
        console, rich = _console()
        console.print_session_table([
            {"id": "aaaaaaaa1111", "backend": "mock", "state": "completed", "duration_seconds": 1.0},
            {"id": "bbbbbbbb2222", "backend": "local", "state": "failed", "duration_seconds": None},
        ])
        text = rich.export_text()
        assert "aaaaaaaa" in text and "bbbbbbbb" in text
        assert "1.0s" in text

    def test_print_script_escapes_markup(self):
        console, rich = _console()
        console.print_script("$x = [string]'value'", title="deploy.ps1")
        assert "[string]" in rich.export_text()
