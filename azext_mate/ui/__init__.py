"""UI utilities for the az mate extension.

Provides Rich-based console output for live deployment logs,
session summaries and status panels.
"""

from azext_mate.ui.console import (
    Console,
    console,
)

__all__ = [
    "Console",
    "console",
]
