"""Azure Cloud Shell terminal backend.

Three layers:

- :class:`CloudShellClient` talks to the ``Microsoft.Portal`` resource
  provider over HTTPS to provision a console and open a terminal.
- :class:`TerminalSocket` owns the websocket to that terminal and pumps
  raw output on a reader thread.
- :class:`CloudShellBackend` types the script into the terminal line by
  line and decides when the run is over.

A terminal has no exit code.  After the last script line a marker
command is sent; seeing its *output* in the stream ends the run
successfully, as does a clean close from the remote side.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable

import requests
from websockets.exceptions import ConnectionClosed, ConnectionClosedError, InvalidHandshake, InvalidURI
from websockets.sync.client import connect as ws_connect

from azext_mate.deploy.backends.base import ExecutionBackend
from azext_mate.deploy.errors import (
    ProvisioningError,
    TerminalConnectionError,
    UserCancelled,
)
from azext_mate.deploy.models import (
    BackendKind,
    CloudShellConsole,
    ConsoleState,
    DeployContext,
    ExecutionResult,
    LogKind,
    SocketState,
    script_commands,
)
from azext_mate.host.powershell import ps_quote

logger = logging.getLogger(__name__)

ARM_ENDPOINT = "https://management.azure.com"
PORTAL_PROVIDER = f"{ARM_ENDPOINT}/providers/Microsoft.Portal"
CONSOLE_URL = f"{PORTAL_PROVIDER}/consoles/default"
USER_SETTINGS_URL = f"{PORTAL_PROVIDER}/userSettings/cloudConsole"
DEFAULT_API_VERSION = "2023-02-01-preview"

# Concatenated at runtime so the echoed command never contains the marker.
COMPLETION_MARKER = "__MATE_DONE__"
MARKER_COMMAND = "Write-Output ('__MATE_' + 'DONE__')"

_HTTP_TIMEOUT = 30
_TAIL_LENGTH = 256


# ======================================================================
# Settings
# ======================================================================

@dataclass
class CloudShellSettings:
    """Tunables for one Cloud Shell run (the ``cloudshell.*`` config keys)."""

    shell_type: str = "pwsh"
    location: str = ""
    api_version: str = DEFAULT_API_VERSION
    socket_timeout: float = 30.0
    command_delay: float = 0.1
    poll_interval: float = 2.0
    provision_timeout: float = 300.0
    cols: int = 120
    rows: int = 30

    @classmethod
    def from_config(cls, config) -> "CloudShellSettings":
        section = config.get("cloudshell", {}) or {}
        defaults = cls()
        return cls(
            shell_type=section.get("shell_type", defaults.shell_type),
            location=section.get("location", defaults.location) or "",
            api_version=section.get("api_version", defaults.api_version),
            socket_timeout=float(section.get("socket_timeout", defaults.socket_timeout)),
            command_delay=float(section.get("command_delay", defaults.command_delay)),
            poll_interval=float(section.get("poll_interval", defaults.poll_interval)),
            provision_timeout=float(section.get("provision_timeout", defaults.provision_timeout)),
            cols=int(section.get("cols", defaults.cols)),
            rows=int(section.get("rows", defaults.rows)),
        )


@dataclass
class CloudShellStatus:
    """Availability of Cloud Shell for the signed-in user."""

    available: bool
    provisioned: bool
    error: str = ""
    preferred_location: str = ""
    preferred_shell_type: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "available": self.available,
            "provisioned": self.provisioned,
            "error": self.error,
            "preferredLocation": self.preferred_location,
            "preferredShellType": self.preferred_shell_type,
        }


# ======================================================================
# Management client
# ======================================================================

class CloudShellClient:
    """Minimal ARM client for the Cloud Shell console API."""

    def __init__(
        self,
        access_token: str,
        settings: CloudShellSettings | None = None,
        session: requests.Session | None = None,
    ):
        self.settings = settings or CloudShellSettings()
        self._session = session or requests.Session()
        self._session.headers.update({
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        })
        if self.settings.location:
            self._session.headers["x-ms-console-preferred-location"] = self.settings.location

    def get_user_settings(self) -> CloudShellStatus:
        """Check whether Cloud Shell is available and has storage set up.

        Never raises; failures are reported in ``CloudShellStatus.error``.
        """
        try:
            resp = self._session.get(
                USER_SETTINGS_URL,
                params={"api-version": self.settings.api_version},
                timeout=_HTTP_TIMEOUT,
            )
        except requests.RequestException as exc:
            return CloudShellStatus(available=False, provisioned=False, error=str(exc))

        if resp.status_code == 404:
            return CloudShellStatus(available=True, provisioned=False)
        if not resp.ok:
            return CloudShellStatus(available=False, provisioned=False, error=resp.text[:500])

        try:
            props = (resp.json() or {}).get("properties", {}) or {}
        except ValueError:
            return CloudShellStatus(available=False, provisioned=False, error="Invalid JSON in settings response")

        return CloudShellStatus(
            available=True,
            provisioned=bool(props.get("storageProfile")),
            preferred_location=props.get("preferredLocation", "") or "",
            preferred_shell_type=props.get("preferredShellType", "") or "",
        )

    def request_console(self, shell_type: str | None = None) -> CloudShellConsole:
        """Ask for the user's default console (PUT is idempotent)."""
        shell_type = shell_type or self.settings.shell_type
        body = {"properties": {"osType": "windows" if shell_type == "pwsh" else "linux"}}
        data = self._send(
            "PUT", CONSOLE_URL, ProvisioningError, "request Cloud Shell console",
            params={"api-version": self.settings.api_version}, json=body,
        )
        return CloudShellConsole.from_response(data)

    def get_console(self) -> CloudShellConsole:
        data = self._send(
            "GET", CONSOLE_URL, ProvisioningError, "read Cloud Shell console",
            params={"api-version": self.settings.api_version},
        )
        return CloudShellConsole.from_response(data)

    def wait_for_console(
        self,
        console: CloudShellConsole,
        pause: Callable[[float], bool] | None = None,
    ) -> CloudShellConsole:
        """Poll until *console* reaches a final provisioning state.

        *pause* sleeps between polls and returns ``False`` to abort, in
        which case :class:`UserCancelled` is raised.
        """
        pause = pause or _sleep
        deadline = time.monotonic() + self.settings.provision_timeout

        while console.state is not ConsoleState.SUCCEEDED:
            if console.state is ConsoleState.FAILED:
                raise ProvisioningError(
                    f"Console provisioning failed: {console.provisioning_state}"
                )
            if time.monotonic() >= deadline:
                raise ProvisioningError(
                    f"Cloud Shell console was not ready after {self.settings.provision_timeout:g}s "
                    f"(state: {console.provisioning_state or 'unknown'})."
                )
            logger.debug("Console state %s; polling again", console.provisioning_state)
            if not pause(self.settings.poll_interval):
                raise UserCancelled("Cloud Shell provisioning was stopped.")
            console = self.get_console()

        if not console.uri:
            raise ProvisioningError("Cloud Shell console did not report a URI.")
        return console

    def request_terminal(self, console_uri: str) -> str:
        """Create a terminal on the console and return its websocket URI."""
        data = self._send(
            "POST", f"{console_uri.rstrip('/')}/terminals", TerminalConnectionError, "get terminal",
            params={
                "api-version": self.settings.api_version,
                "cols": self.settings.cols,
                "rows": self.settings.rows,
            },
        )
        socket_uri = data.get("socketUri") or (data.get("properties") or {}).get("socketUri")
        if not socket_uri:
            raise TerminalConnectionError("Cloud Shell did not return a terminal socket URI.")
        return socket_uri

    # ------------------------------------------------------------------ #
    # Internal helpers
    # ------------------------------------------------------------------ #

    def _send(self, method: str, url: str, error_cls, action: str, **kwargs) -> dict:
        try:
            resp = self._session.request(method, url, timeout=_HTTP_TIMEOUT, **kwargs)
        except requests.RequestException as exc:
            raise error_cls(f"Failed to {action}: {exc}") from exc

        if not resp.ok:
            raise error_cls(f"Failed to {action}: {resp.status_code} - {resp.text[:500]}")

        try:
            return resp.json() or {}
        except ValueError as exc:
            raise error_cls(f"Failed to {action}: response was not valid JSON.") from exc


def _sleep(seconds: float) -> bool:
    time.sleep(seconds)
    return True


# ======================================================================
# Terminal socket
# ======================================================================

class TerminalSocket:
    """Websocket connection to a Cloud Shell terminal.

    Raw payloads are handed to *on_message* from a reader thread; when
    the reader ends, *on_close* receives the abnormal-close error or
    ``None`` for a clean close.
    """

    def __init__(
        self,
        uri: str,
        on_message: Callable[[str], None],
        on_close: Callable[[Exception | None], None] | None = None,
        open_timeout: float = 30.0,
        connect: Callable[..., Any] = ws_connect,
    ):
        self.uri = uri
        self.state = SocketState.CLOSED
        self.error: Exception | None = None
        self._on_message = on_message
        self._on_close = on_close
        self._open_timeout = open_timeout
        self._connect = connect
        self._conn = None
        self._closed = False
        self._lock = threading.Lock()
        self._reader: threading.Thread | None = None

    def open(self) -> None:
        """Connect and start the reader; a socket closed meanwhile stays closed."""
        with self._lock:
            if self._closed:
                raise TerminalConnectionError("WebSocket was closed before it opened")
            self.state = SocketState.CONNECTING
        try:
            conn = self._connect(self.uri, open_timeout=self._open_timeout)
        except TimeoutError as exc:
            self.state = SocketState.CLOSED
            raise TerminalConnectionError(
                f"WebSocket connection timeout after {self._open_timeout:g}s"
            ) from exc
        except (InvalidHandshake, InvalidURI, OSError) as exc:
            self.state = SocketState.CLOSED
            raise TerminalConnectionError(f"WebSocket connection failed: {exc}") from exc

        with self._lock:
            late = self._closed
            if not late:
                self._conn = conn
                self.state = SocketState.OPEN
        if late:
            conn.close()
            raise TerminalConnectionError("WebSocket was closed while connecting")

        self._reader = threading.Thread(target=self._read, name="cloudshell-socket", daemon=True)
        self._reader.start()

    def send(self, text: str) -> None:
        if self.state is not SocketState.OPEN or self._conn is None:
            raise TerminalConnectionError("WebSocket not connected")
        try:
            self._conn.send(text)
        except ConnectionClosed as exc:
            raise TerminalConnectionError(f"WebSocket closed while sending: {exc}") from exc

    def close(self) -> None:
        with self._lock:
            self._closed = True
            conn = self._conn
            self.state = SocketState.CLOSED
        if conn is not None:
            conn.close()

    def join(self, timeout: float | None = None) -> None:
        if self._reader is not None:
            self._reader.join(timeout)

    def _read(self) -> None:
        try:
            for message in self._conn:
                if isinstance(message, bytes):
                    message = message.decode("utf-8", errors="replace")
                self._on_message(message)
        except ConnectionClosedError as exc:
            self.error = exc
            logger.debug("Terminal socket closed abnormally: %s", exc)
        finally:
            self.state = SocketState.CLOSED
            if self._on_close is not None:
                self._on_close(self.error)


# ======================================================================
# Backend
# ======================================================================

class CloudShellBackend(ExecutionBackend):
    """Runs the script by typing it into an Azure Cloud Shell terminal."""

    kind = BackendKind.CLOUD_SHELL
    display_name = "Azure Cloud Shell"
    requires_token = True

    def __init__(
        self,
        settings: CloudShellSettings | None = None,
        client_factory: Callable[[str, CloudShellSettings], CloudShellClient] | None = None,
        connect: Callable[..., Any] = ws_connect,
    ):
        super().__init__()
        self.settings = settings or CloudShellSettings()
        self._client_factory = client_factory or CloudShellClient
        self._connect = connect
        self._socket: TerminalSocket | None = None
        self._lock = threading.Lock()
        self._finished = threading.Event()
        self._marker_seen = False
        self._tail = ""

    def _run(self, script: str, context: DeployContext) -> ExecutionResult:
        self.emit("Provisioning Azure Cloud Shell...", source="engine")
        client = self._client_factory(context.access_token, self.settings)
        console = client.request_console(self.settings.shell_type)
        console = client.wait_for_console(console, pause=self._pause)

        self.emit("Cloud Shell provisioned. Connecting to terminal...", source="engine")
        socket_uri = client.request_terminal(console.uri)

        socket = TerminalSocket(
            socket_uri,
            on_message=self._on_message,
            on_close=self._on_close,
            open_timeout=self.settings.socket_timeout,
            connect=self._connect,
        )
        with self._lock:
            if self.stopped:
                raise UserCancelled("Cloud Shell execution was stopped.")
            self._socket = socket
        try:
            socket.open()
        except TerminalConnectionError:
            if self.stopped:
                raise UserCancelled("Cloud Shell execution was stopped.")
            raise
        self.emit("Connected to Azure Cloud Shell (PowerShell)", source="engine")

        self._type_script(socket, script, context.subscription_id)

        self._finished.wait()
        if self.stopped:
            raise UserCancelled("Cloud Shell execution was stopped.")
        if self._marker_seen:
            return ExecutionResult(success=True, exit_code=0)
        if socket.error is not None:
            raise TerminalConnectionError(f"Cloud Shell connection lost: {socket.error}")
        return ExecutionResult(success=True, exit_code=0)

    def _type_script(self, socket: TerminalSocket, script: str, subscription_id: str) -> None:
        self.emit("Executing script...", source="engine")
        commands = script_commands(script)
        if subscription_id:
            commands.insert(0, f"Set-AzContext -Subscription {ps_quote(subscription_id)}")

        total = len(commands)
        for index, command in enumerate(commands, start=1):
            if self._finished.is_set():
                return
            self.emit(command, LogKind.COMMAND, source="cloudshell", progress=index * 100.0 / total)
            self._send(socket, command)
            if not self._pause(self.settings.command_delay):
                raise UserCancelled("Cloud Shell execution was stopped.")

        if not self._finished.is_set():
            self._send(socket, MARKER_COMMAND)

    def _send(self, socket: TerminalSocket, command: str) -> None:
        try:
            socket.send(command + "\r")
        except TerminalConnectionError:
            if self.stopped:
                raise UserCancelled("Cloud Shell execution was stopped.")
            raise

    def _on_message(self, data: str) -> None:
        self.emit(data, LogKind.INFO, source="socket")
        self._tail = (self._tail + data)[-_TAIL_LENGTH:]
        if not self._marker_seen and COMPLETION_MARKER in self._tail:
            self._marker_seen = True
            self.logger.debug("Completion marker received")
            self._finished.set()
            with self._lock:
                socket = self._socket
            if socket is not None:
                socket.close()

    def _on_close(self, error: Exception | None) -> None:
        if error is None:
            self.emit("Cloud Shell session closed", source="engine")
        else:
            self.emit(f"WebSocket error: {error}", LogKind.ERROR, source="engine")
        self._finished.set()

    def _release(self) -> None:
        with self._lock:
            socket = self._socket
            self._socket = None
        if socket is not None:
            socket.close()
        self._finished.set()
