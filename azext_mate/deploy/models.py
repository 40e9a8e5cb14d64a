"""Data model for the deployment execution engine.

Plain dataclasses and string enums shared by the session orchestrator,
the execution backends, and the console renderer.
"""

from __future__ import annotations

import re
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable


class SessionState(str, Enum):
    """Lifecycle states of a deployment session."""

    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.COMPLETED, SessionState.FAILED)


class LogKind(str, Enum):
    """Classification of a single log entry."""

    INFO = "info"
    COMMAND = "command"
    SUCCESS = "success"
    ERROR = "error"
    WARNING = "warning"


class BackendKind(str, Enum):
    """Execution strategies a session can be started with."""

    LOCAL = "local"
    CLOUD_SHELL = "cloudshell"
    MOCK = "mock"


class ConsoleState(str, Enum):
    """Provisioning state reported for a Cloud Shell console."""

    PROVISIONING = "Provisioning"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"


class SocketState(str, Enum):
    """Connection state of the Cloud Shell terminal socket."""

    CONNECTING = "Connecting"
    OPEN = "Open"
    CLOSED = "Closed"


@dataclass(frozen=True)
class LogEntry:
    """One line of the session log stream."""

    message: str
    kind: LogKind = LogKind.INFO
    timestamp: str = ""
    source: str = ""  # stdout, stderr, socket, engine, ...
    category: str = ""  # error taxonomy name for classified failures
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def time_label(self) -> str:
        """``HH:MM:SS`` rendering of the timestamp for terminal display."""
        try:
            return datetime.fromisoformat(self.timestamp).strftime("%H:%M:%S")
        except ValueError:
            return self.timestamp

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind.value
        return data


@dataclass
class ExecutionResult:
    """Terminal summary returned by a backend run."""

    success: bool
    exit_code: int = 0
    output: str = ""
    error: str = ""


@dataclass
class ExecutionEvent:
    """A classified unit of output emitted by a backend."""

    message: str
    kind: LogKind = LogKind.INFO
    source: str = ""
    progress: float | None = None  # advisory, 0-100


EventSink = Callable[[ExecutionEvent], None]


@dataclass
class DeployContext:
    """Target and credentials handed to a backend."""

    subscription_id: str = ""
    tenant_id: str = ""
    access_token: str = ""

    def __repr__(self) -> str:
        # Never leak the bearer token into logs or tracebacks.
        return (
            f"DeployContext(subscription_id={self.subscription_id!r}, "
            f"tenant_id={self.tenant_id!r}, access_token={'***' if self.access_token else ''!r})"
        )


@dataclass
class DeploymentRequest:
    """What the UI asks for when starting a session."""

    script: str
    backend: BackendKind = BackendKind.MOCK
    subscription_id: str = ""
    tenant_id: str = ""
    cost_estimate: dict[str, Any] | None = None
    variables: dict[str, str] | None = None


@dataclass
class HostEnvironment:
    """Result of probing the host for PowerShell and the Az module."""

    shell_available: bool = False
    shell_version: str | None = None
    module_installed: bool = False
    module_version: str | None = None
    shell_path: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class HostOutput:
    """Streaming event published on the host channel.

    ``kind`` is one of ``stdout``, ``stderr``, ``info``, ``error``, ``success``.
    """

    output: str
    kind: str = "stdout"


@dataclass
class HostResult:
    """Outcome of a non-script host operation (module install, connect)."""

    success: bool
    output: str = ""
    error: str = ""


@dataclass
class CloudShellConsole:
    """Console resource returned by the Cloud Shell management API."""

    name: str
    os_type: str
    provisioning_state: str
    uri: str

    @property
    def state(self) -> ConsoleState | None:
        try:
            return ConsoleState(self.provisioning_state)
        except ValueError:
            return None

    @classmethod
    def from_response(cls, data: dict[str, Any]) -> "CloudShellConsole":
        props = data.get("properties", {}) or {}
        return cls(
            name=data.get("name", "default"),
            os_type=props.get("osType", ""),
            provisioning_state=props.get("provisioningState", ""),
            uri=props.get("uri", ""),
        )


# -------------------------------------------------------------------- #
# Script helpers
# -------------------------------------------------------------------- #

_BLOCK_COMMENT_OPEN = re.compile(r"^\s*<#")


def script_commands(script: str) -> list[str]:
    """Split *script* into its executable lines.

    Blank lines, ``#`` line comments and ``<# ... #>`` block comments are
    dropped; remaining lines are stripped of surrounding whitespace.
    """
    commands: list[str] = []
    in_block = False
    for raw in script.splitlines():
        line = raw.strip()
        if in_block:
            if "#>" in line:
                in_block = False
            continue
        if not line:
            continue
        if _BLOCK_COMMENT_OPEN.match(line):
            in_block = "#>" not in line[2:]
            continue
        if line.startswith("#"):
            continue
        commands.append(line)
    return commands
