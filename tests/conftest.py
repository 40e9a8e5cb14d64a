"""Shared test fixtures for azext_mate tests."""

import copy
import queue
import threading
import time
from unittest.mock import patch

import pytest
import yaml
from websockets.exceptions import ConnectionClosedError, ConnectionClosedOK

from azext_mate.auth.token_provider import AccessToken, AccessTokenProvider
from azext_mate.config import DEFAULT_CONFIG
from azext_mate.deploy.backends.base import ExecutionBackend
from azext_mate.deploy.backends.cloudshell import COMPLETION_MARKER, MARKER_COMMAND
from azext_mate.deploy.errors import UserCancelled
from azext_mate.deploy.models import (
    BackendKind,
    ExecutionResult,
    HostEnvironment,
    HostResult,
    LogKind,
)
from azext_mate.host.channel import HostChannel


# ------------------------------------------------------------------
# Global: prevent real telemetry HTTP calls during tests
# ------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _no_telemetry_network():
    """Prevent telemetry from making real HTTP requests during tests.

    The @track decorator fires on every mate_* command and every finished
    session reports a deployment event.  This fixture stubs the POST.
    """
    with patch("azext_mate.telemetry._send_envelope", return_value=True):
        yield


def wait_until(predicate, timeout: float = 5.0, interval: float = 0.01) -> bool:
    """Poll *predicate* until it is truthy or *timeout* elapses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return bool(predicate())


# ------------------------------------------------------------------
# Project fixtures
# ------------------------------------------------------------------

@pytest.fixture
def tmp_project(tmp_path):
    """Create an empty project directory."""
    project_dir = tmp_path / "test-project"
    project_dir.mkdir()
    return project_dir


@pytest.fixture
def sample_config():
    """Return a deep copy of the default config with test values."""
    config = copy.deepcopy(DEFAULT_CONFIG)
    config["deploy"]["backend"] = "mock"
    config["deploy"]["history_limit"] = 5
    config["mock"]["time_scale"] = 0
    config["cloudshell"]["command_delay"] = 0
    return config


@pytest.fixture
def project_with_config(tmp_project, sample_config):
    """Create a project directory with a populated mate.yaml."""
    config_path = tmp_project / "mate.yaml"
    with open(config_path, "w", encoding="utf-8") as f:
        yaml.dump(sample_config, f, default_flow_style=False)
    return tmp_project


@pytest.fixture
def sample_script():
    return (
        "# Deploy a resource group and a network\n"
        "$rg = 'rg-demo'\n"
        "New-AzResourceGroup -Name $rg -Location eastus\n"
        "\n"
        "New-AzVirtualNetwork -Name vnet-demo -ResourceGroupName $rg -AddressPrefix 10.0.0.0/16\n"
        "Write-Host \"Done\"\n"
    )


# ------------------------------------------------------------------
# Fakes
# ------------------------------------------------------------------

class FakeTokenProvider(AccessTokenProvider):
    """Token provider that records calls and can be told to fail."""

    def __init__(self, token="fake-token", error: Exception | None = None):
        self.token = token
        self.error = error
        self.calls = []

    def acquire_token(self, scopes):
        self.calls.append(list(scopes))
        if self.error is not None:
            raise self.error
        return AccessToken(token=self.token, tenant_id="tenant-from-token")


class ScriptedBackend(ExecutionBackend):
    """Backend that emits canned events, optionally blocking until released."""

    kind = BackendKind.MOCK
    display_name = "Scripted"

    def __init__(self, events=(), result=None, error=None, requires_token=False, block=False):
        super().__init__()
        self.requires_token = requires_token
        self.events = list(events)
        self.result = result or ExecutionResult(success=True)
        self.error = error
        self.started = threading.Event()
        self.release = threading.Event()
        self.block = block
        self.contexts = []
        self.release_calls = 0

    def _run(self, script, context):
        self.contexts.append(context)
        self.started.set()
        if self.block:
            self.release.wait(5)
        for message, kind in self.events:
            self.emit(message, kind, source="scripted")
        if self.error is not None:
            raise self.error
        return self.result

    def _release(self):
        self.release_calls += 1


class FakeHost:
    """Stand-in for PowerShellHost driven entirely in-process.

    ``execute_script`` publishes ``lines`` on the channel and returns
    ``exit_code``.  With ``block=True`` it waits until :meth:`stop` is
    called, then still publishes a late line and reports the exit, the
    way a process that dies after being signalled would.  With
    ``block_check=True`` the environment probe hangs the same way.
    """

    def __init__(
        self,
        lines=("line one", "line two"),
        exit_code=0,
        env=None,
        connect_ok=True,
        install_ok=True,
        block=False,
        block_check=False,
    ):
        self.channel = HostChannel()
        self.lines = list(lines)
        self.exit_code = exit_code
        self.env = env or HostEnvironment(
            shell_available=True,
            shell_version="7.4.1",
            module_installed=True,
            module_version="11.0.0",
            shell_path="/usr/bin/pwsh",
        )
        self.connect_ok = connect_ok
        self.install_ok = install_ok
        self.block = block
        self.block_check = block_check
        self.calls = []
        self.stopped = threading.Event()
        self.executing = threading.Event()
        self.checking = threading.Event()

    @property
    def shell(self):
        return self.env.shell_path if self.env.shell_available else None

    def reset(self):
        self.stopped.clear()

    def check_environment(self):
        self.calls.append("check_environment")
        self.checking.set()
        if self.block_check:
            self.stopped.wait(5)
            raise UserCancelled("PowerShell execution was stopped.")
        return self.env

    def install_module(self):
        self.calls.append("install_module")
        self.channel.emit("Installing Az...", "info")
        if self.install_ok:
            return HostResult(success=True, output="11.0.0\n")
        return HostResult(success=False, error="Installation failed with code 1")

    def connect_remote(self, access_token, subscription_id, tenant_id):
        self.calls.append(("connect_remote", access_token, subscription_id, tenant_id))
        self.channel.emit("Connecting to Azure with access token...", "info")
        if self.connect_ok:
            return HostResult(success=True)
        return HostResult(success=False, error="AADSTS70043: token expired")

    def execute_script(self, script):
        self.calls.append("execute_script")
        self.channel.emit("Starting script execution...", "info")
        self.executing.set()
        if self.block:
            self.stopped.wait(5)
            self.channel.emit("late line after stop", "stdout")
            raise UserCancelled("PowerShell execution was stopped.")
        for line in self.lines:
            self.channel.emit(line, "stdout")
        if self.exit_code != 0:
            self.channel.emit("Write-Error: resource exception", "error")
        return ExecutionResult(success=self.exit_code == 0, exit_code=self.exit_code)

    def stop(self):
        self.calls.append("stop")
        was_running = self.executing.is_set() and not self.stopped.is_set()
        self.stopped.set()
        return was_running


_CLOSE = object()


class FakeConnection:
    """In-memory stand-in for a websockets sync ClientConnection.

    Echoes every line sent.  ``on_marker`` decides what the remote side
    does when the completion marker command arrives: ``"print"`` writes
    the marker, ``"close"`` closes cleanly, ``"drop"`` fails abnormally
    and ``None`` does nothing.
    """

    def __init__(self, on_marker="print", greeting=("PS /home/user> ",)):
        self.sent = []
        self.on_marker = on_marker
        self.closed = threading.Event()
        self._inbox = queue.Queue()
        for line in greeting:
            self._inbox.put(line)

    def send(self, text):
        if self.closed.is_set():
            raise ConnectionClosedOK(None, None)
        self.sent.append(text)
        self._inbox.put(text.rstrip("\r") + "\r\n")
        if text.startswith(MARKER_COMMAND):
            if self.on_marker == "print":
                self._inbox.put(COMPLETION_MARKER + "\r\n")
            elif self.on_marker == "close":
                self._inbox.put(_CLOSE)
            elif self.on_marker == "drop":
                self._inbox.put(ConnectionClosedError(None, None))

    def close(self):
        self.closed.set()
        self._inbox.put(_CLOSE)

    def __iter__(self):
        while True:
            item = self._inbox.get()
            if item is _CLOSE:
                return
            if isinstance(item, Exception):
                raise item
            yield item


class Connector:
    """Records connect() calls and hands out a prepared connection."""

    def __init__(self, conn=None, error=None):
        self.conn = conn or FakeConnection()
        self.error = error
        self.calls = []

    def __call__(self, uri, open_timeout=None):
        self.calls.append((uri, open_timeout))
        if self.error is not None:
            raise self.error
        return self.conn


class SlowConnector(Connector):
    """Connector whose handshake takes *delay* seconds to complete."""

    def __init__(self, delay=0.3, conn=None):
        super().__init__(conn)
        self.delay = delay
        self.connecting = threading.Event()

    def __call__(self, uri, open_timeout=None):
        self.connecting.set()
        time.sleep(self.delay)
        return super().__call__(uri, open_timeout)


def kinds(entries):
    return [e.kind for e in entries]


def messages(entries):
    return [e.message for e in entries]


__all__ = [
    "Connector",
    "FakeConnection",
    "FakeHost",
    "FakeTokenProvider",
    "LogKind",
    "ScriptedBackend",
    "SlowConnector",
    "kinds",
    "messages",
    "wait_until",
]
