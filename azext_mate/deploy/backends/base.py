"""Execution backend contract.

A backend runs one script for one session.  The session calls
:meth:`ExecutionBackend.start` on its worker thread and
:meth:`ExecutionBackend.stop` from whichever thread the user stops from.

Every backend must:

1. emit at least one Info event before its first side-effecting action,
2. classify each unit of output (Info/Command/Success/Error/Warning),
3. treat ``stop()`` as idempotent and safe in any state,
4. release its live handle on natural completion and on forced stop.

Instances are single-use: once stopped, ``start`` refuses to run.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod

from azext_mate.deploy.errors import UserCancelled
from azext_mate.deploy.models import (
    BackendKind,
    DeployContext,
    EventSink,
    ExecutionEvent,
    ExecutionResult,
    LogKind,
)


class ExecutionBackend(ABC):
    """Base class for local, Cloud Shell, and mock execution."""

    kind: BackendKind
    display_name: str = ""
    requires_token: bool = True

    def __init__(self):
        self.logger = logging.getLogger(f"azext_mate.backend.{self.kind.value}")
        self._emit_sink: EventSink | None = None
        self._stop_event = threading.Event()

    # ------------------------------------------------------------------ #
    # Contract
    # ------------------------------------------------------------------ #

    def start(self, script: str, context: DeployContext, emit: EventSink) -> ExecutionResult:
        """Run *script*, delivering events through *emit*; blocks until done."""
        if self._stop_event.is_set():
            raise UserCancelled("Execution was stopped before it started.")
        self._emit_sink = emit
        try:
            return self._run(script, context)
        finally:
            self._release()

    def stop(self) -> None:
        """Request cancellation and release the live handle."""
        if self._stop_event.is_set():
            return
        self._stop_event.set()
        self.logger.info("Stop requested")
        self._release()

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    # ------------------------------------------------------------------ #
    # Subclass hooks
    # ------------------------------------------------------------------ #

    @abstractmethod
    def _run(self, script: str, context: DeployContext) -> ExecutionResult:
        """Backend-specific execution."""

    @abstractmethod
    def _release(self) -> None:
        """Release the live handle; must tolerate repeated calls."""

    # ------------------------------------------------------------------ #
    # Helpers
    # ------------------------------------------------------------------ #

    def emit(
        self,
        message: str,
        kind: LogKind = LogKind.INFO,
        *,
        source: str = "",
        progress: float | None = None,
    ) -> None:
        if self._emit_sink is not None:
            self._emit_sink(ExecutionEvent(message=message, kind=kind, source=source, progress=progress))

    def _ensure_running(self) -> None:
        """Raise :class:`UserCancelled` once a stop has been requested."""
        if self._stop_event.is_set():
            raise UserCancelled("Execution was stopped.")

    def _pause(self, seconds: float) -> bool:
        """Wait *seconds* unless stopped first; returns ``False`` when stopped."""
        if seconds <= 0:
            return not self._stop_event.is_set()
        return not self._stop_event.wait(seconds)
