"""Deployment session: the state machine behind one script run.

A :class:`DeploymentSession` owns one backend instance, one log stream
and one worker thread::

    idle ──start()──▶ running ──success──▶ completed
                         │
                         ├──failure─────▶ failed
                         └──stop()──────▶ failed  (UserCancelled)

Terminal states are final.  Every backend event and every completion is
applied under the session's re-entrant lock, and anything that arrives
after the session left ``running`` is dropped, so a late process exit
can never overwrite a user stop.

:class:`DeploymentController` is the single owner of "the current
session" for the CLI: it refuses to start a second run while one is in
flight, and records finished sessions to disk.
"""

from __future__ import annotations

import logging
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Sequence

from knack.util import CLIError

from azext_mate.auth.token_provider import (
    MANAGEMENT_SCOPE,
    AccessTokenProvider,
    AzureCliTokenProvider,
)
from azext_mate.deploy.backends import ExecutionBackend, create_backend
from azext_mate.deploy.errors import (
    AuthenticationError,
    DeploymentError,
    ScriptExecutionError,
    SessionBusyError,
    UserCancelled,
)
from azext_mate.deploy.log_stream import LogStream
from azext_mate.deploy.models import (
    BackendKind,
    DeployContext,
    DeploymentRequest,
    ExecutionEvent,
    ExecutionResult,
    LogKind,
    SessionState,
)
from azext_mate.deploy.state import SessionStore
from azext_mate.host.powershell import PowerShellHost
from azext_mate.telemetry import track_deployment

logger = logging.getLogger(__name__)

STOPPED_MESSAGE = "Deployment stopped by user."
COMPLETED_MESSAGE = "Deployment completed successfully."


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class DeploymentSession:
    """One execution of one script against one backend."""

    def __init__(
        self,
        backend: ExecutionBackend,
        *,
        token_provider: AccessTokenProvider | None = None,
        scopes: Sequence[str] = (MANAGEMENT_SCOPE,),
        cost_estimate: dict[str, Any] | None = None,
        variables: dict[str, str] | None = None,
        on_finished: Callable[["DeploymentSession"], None] | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.id = uuid.uuid4().hex
        self.backend = backend
        self.backend_kind: BackendKind = backend.kind
        self.state = SessionState.IDLE
        self._clock = clock or _utc_now
        self.logs = LogStream(clock=self._clock)
        self.started_at: datetime | None = None
        self.ended_at: datetime | None = None
        self.progress: float = 0.0
        self.error: str = ""
        self.error_category: str = ""
        self.result: ExecutionResult | None = None
        self.subscription_id = ""
        self.cost_estimate = dict(cost_estimate) if cost_estimate else None
        self.variables = dict(variables) if variables else None

        self._token_provider = token_provider
        self._scopes = list(scopes)
        self._on_finished = on_finished
        self._lock = threading.RLock()
        self._done = threading.Event()
        self._worker: threading.Thread | None = None

    # ------------------------------------------------------------------ #
    # Properties
    # ------------------------------------------------------------------ #

    @property
    def running(self) -> bool:
        with self._lock:
            return self.state is SessionState.RUNNING

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at is None:
            return None
        end = self.ended_at or self._clock()
        return round((end - self.started_at).total_seconds(), 3)

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def start(self, script: str, subscription_id: str = "", tenant_id: str = "") -> None:
        """Move idle → running and hand the script to a worker thread.

        Raises :class:`SessionBusyError` when the session is not idle.
        """
        with self._lock:
            if self.state is not SessionState.IDLE:
                raise SessionBusyError(
                    f"Session {self.id[:8]} is {self.state.value}; start a new session instead."
                )
            self.state = SessionState.RUNNING
            self.started_at = self._clock()
            self.subscription_id = subscription_id
            logger.info("Session %s started (%s backend)", self.id, self.backend_kind.value)
            self.logs.append(
                f"Starting deployment using {self.backend.display_name or self.backend_kind.value}...",
                LogKind.INFO,
                source="engine",
            )

            self._worker = threading.Thread(
                target=self._run,
                args=(script, subscription_id, tenant_id),
                name=f"mate-session-{self.id[:8]}",
                daemon=True,
            )
            self._worker.start()

    def stop(self) -> bool:
        """Stop a running session; returns ``False`` (and logs nothing) otherwise."""
        if not self._transition(SessionState.FAILED, STOPPED_MESSAGE, UserCancelled.category):
            return False
        # The backend is released before the finish hook saves and reports.
        try:
            self.backend.stop()
        except Exception:
            logger.exception("Backend did not stop cleanly")
        self._notify_finished()
        return True

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the session is terminal; ``True`` if it got there."""
        return self._done.wait(timeout)

    # ------------------------------------------------------------------ #
    # Worker
    # ------------------------------------------------------------------ #

    def _run(self, script: str, subscription_id: str, tenant_id: str) -> None:
        try:
            context = self._build_context(subscription_id, tenant_id)
            if not self.running:
                return
            result = self.backend.start(script, context, self._on_event)
        except DeploymentError as exc:
            logger.info("Session %s failed: %s", self.id, exc)
            self._finish(SessionState.FAILED, str(exc), exc.category)
            return
        except Exception as exc:
            logger.exception("Unexpected error in session %s", self.id)
            self._finish(SessionState.FAILED, f"Unexpected error: {exc}", DeploymentError.category)
            return

        if result.success:
            self._finish(SessionState.COMPLETED, COMPLETED_MESSAGE, result=result)
        else:
            message = f"Script execution failed with exit code {result.exit_code}"
            if result.error.strip():
                message += f": {result.error.strip().splitlines()[-1]}"
            self._finish(SessionState.FAILED, message, ScriptExecutionError.category, result=result)

    def _build_context(self, subscription_id: str, tenant_id: str) -> DeployContext:
        if not self.backend.requires_token:
            return DeployContext(subscription_id=subscription_id, tenant_id=tenant_id)

        if self._token_provider is None:
            raise AuthenticationError("No access token provider is configured for this session.")

        self._log("Acquiring access token...")
        token = self._token_provider.acquire_token(self._scopes)
        self._log("Access token acquired.")
        return DeployContext(
            subscription_id=subscription_id,
            tenant_id=tenant_id or token.tenant_id,
            access_token=token.token,
        )

    def _log(self, message: str, kind: LogKind = LogKind.INFO) -> None:
        with self._lock:
            if self.state is SessionState.RUNNING:
                self.logs.append(message, kind, source="engine")

    def _on_event(self, event: ExecutionEvent) -> None:
        with self._lock:
            if self.state is not SessionState.RUNNING:
                logger.debug("Dropping late event for session %s: %s", self.id, event.message[:80])
                return
            if event.progress is not None:
                self.progress = max(self.progress, min(100.0, float(event.progress)))
            self.logs.append(event.message, event.kind, source=event.source)

    def _finish(
        self,
        state: SessionState,
        message: str,
        category: str = "",
        result: ExecutionResult | None = None,
    ) -> bool:
        """Apply a terminal transition once and run the finish hook."""
        if not self._transition(state, message, category, result):
            return False
        self._notify_finished()
        return True

    def _transition(
        self,
        state: SessionState,
        message: str,
        category: str = "",
        result: ExecutionResult | None = None,
    ) -> bool:
        """Record the terminal state once; later calls are dropped."""
        with self._lock:
            if self.state is not SessionState.RUNNING:
                logger.debug("Dropping late %s completion for session %s", state.value, self.id)
                return False
            self.state = state
            self.ended_at = self._clock()
            self.result = result
            if state is SessionState.COMPLETED:
                self.progress = 100.0
                self.logs.append(message, LogKind.SUCCESS, source="engine")
            else:
                self.error = message
                self.error_category = category
                self.logs.append(message, LogKind.ERROR, source="engine", category=category)
            logger.info("Session %s %s", self.id, state.value)
        return True

    def _notify_finished(self) -> None:
        # Waiters wake only after the finish hook has recorded the session.
        try:
            if self._on_finished is not None:
                self._on_finished(self)
        except Exception:
            logger.exception("Session finish handler failed")
        finally:
            self._done.set()

    # ------------------------------------------------------------------ #
    # Serialisation
    # ------------------------------------------------------------------ #

    def to_dict(self, include_logs: bool = True) -> dict[str, Any]:
        with self._lock:
            record: dict[str, Any] = {
                "id": self.id,
                "backend": self.backend_kind.value,
                "state": self.state.value,
                "subscription": self.subscription_id,
                "started_at": self.started_at.isoformat(timespec="milliseconds") if self.started_at else None,
                "ended_at": self.ended_at.isoformat(timespec="milliseconds") if self.ended_at else None,
                "duration_seconds": self.duration_seconds,
                "progress": round(self.progress, 1),
                "error": self.error,
                "error_category": self.error_category,
                "exit_code": self.result.exit_code if self.result else None,
                "cost_estimate": self.cost_estimate,
                "variables": self.variables,
            }
            if include_logs:
                record["logs"] = [entry.to_dict() for entry in self.logs.entries()]
        return record


# ======================================================================
# Controller
# ======================================================================

class DeploymentController:
    """Single-flight owner of the current deployment session."""

    def __init__(
        self,
        config=None,
        *,
        token_provider: AccessTokenProvider | None = None,
        host: PowerShellHost | None = None,
        store: SessionStore | None = None,
        backend_factory: Callable[..., ExecutionBackend] = create_backend,
        on_finished: Callable[[DeploymentSession], None] | None = None,
    ):
        if config is None:
            from azext_mate.config import MateConfig

            config = MateConfig()
            config.load()
        self._config = config
        self._token_provider = token_provider
        self._host = host
        self._store = store
        self._backend_factory = backend_factory
        self._on_finished = on_finished
        self._current: DeploymentSession | None = None
        self._lock = threading.Lock()

    @property
    def current(self) -> DeploymentSession | None:
        return self._current

    def start(self, request: DeploymentRequest) -> DeploymentSession:
        """Create and start a session for *request*.

        Raises :class:`SessionBusyError` while the current session is
        running; the running session is left untouched.
        """
        if not request.script or not request.script.strip():
            raise CLIError("The deployment script is empty.")

        with self._lock:
            current = self._current
            if current is not None and current.running:
                raise SessionBusyError(
                    f"Deployment {current.id[:8]} is still running. Stop it before starting another."
                )

            backend = self._backend_factory(request.backend, self._config, host=self._host)
            session = DeploymentSession(
                backend,
                token_provider=self._token_provider or AzureCliTokenProvider(tenant_id=request.tenant_id),
                scopes=self._config.get("auth.scopes") or [MANAGEMENT_SCOPE],
                cost_estimate=request.cost_estimate,
                variables=request.variables,
                on_finished=self._session_finished,
            )
            self._current = session
            session.start(request.script, request.subscription_id, request.tenant_id)
        return session

    def stop(self) -> bool:
        session = self._current
        if session is None:
            return False
        return session.stop()

    def status(self) -> dict[str, Any] | None:
        session = self._current
        if session is None:
            return None
        return session.to_dict(include_logs=False)

    def _session_finished(self, session: DeploymentSession) -> None:
        record = session.to_dict()
        if self._store is not None:
            try:
                self._store.save(record)
            except OSError as exc:
                logger.warning("Could not record session %s: %s", session.id, exc)
        track_deployment(record)
        if self._on_finished is not None:
            self._on_finished(session)


def recommend_backend(host: PowerShellHost | None = None) -> BackendKind:
    """Prefer local execution when a PowerShell interpreter is present."""
    host = host or PowerShellHost()
    if host.shell:
        return BackendKind.LOCAL
    return BackendKind.CLOUD_SHELL
