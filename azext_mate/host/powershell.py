"""Privileged PowerShell handler for local script execution.

Runs on the user's machine and owns the only live PowerShell process
for the deployment that uses it.  Every streaming operation publishes
:class:`~azext_mate.deploy.models.HostOutput` events on ``self.channel``
before returning:

- ``check_environment``: PowerShell and Az module discovery
- ``install_module``: ``Install-Module Az`` for the current user
- ``connect_remote``: ``Connect-AzAccount`` with a bearer token
- ``execute_script``: run a script from a temporary ``.ps1`` file
- ``stop``: terminate the running process tree
"""

from __future__ import annotations

import logging
import os
import platform
import shutil
import subprocess
import tempfile
import threading
from typing import Callable

import psutil

from azext_mate.deploy.errors import ProcessSpawnError, UserCancelled
from azext_mate.deploy.models import ExecutionResult, HostEnvironment, HostResult
from azext_mate.host.channel import HostChannel

logger = logging.getLogger(__name__)

SCRIPT_PREFIX = "azure-mate-script-"
TOKEN_ENV_VAR = "AZURE_MATE_ACCESS_TOKEN"

_VERSION_COMMAND = "$PSVersionTable.PSVersion.ToString()"
_AZ_VERSION_COMMAND = (
    "Get-Module -ListAvailable -Name Az | Select-Object -First 1 -ExpandProperty Version"
)

_INSTALL_SCRIPT = """
Set-ExecutionPolicy -ExecutionPolicy RemoteSigned -Scope CurrentUser -Force -ErrorAction SilentlyContinue
Install-Module -Name Az -Scope CurrentUser -Repository PSGallery -Force -AllowClobber
Get-Module -ListAvailable -Name Az | Select-Object -First 1 -ExpandProperty Version
"""

# Seconds to wait for reader threads after the process exits.
_READER_JOIN_TIMEOUT = 5


# ======================================================================
# Interpreter discovery
# ======================================================================

def _windows_candidates() -> list[str]:
    program_files = os.environ.get("ProgramFiles", "")
    return [
        "pwsh.exe",
        "pwsh",
        os.path.join(program_files, "PowerShell", "7", "pwsh.exe"),
        os.path.join(program_files, "PowerShell", "6", "pwsh.exe"),
        "powershell.exe",
    ]


def find_powershell(configured: str | None = None) -> str | None:
    """Resolve a PowerShell executable.

    A *configured* path wins when it exists.  On Windows PowerShell 7/6 is
    preferred over Windows PowerShell 5.1; elsewhere only ``pwsh`` is
    supported.  Returns ``None`` when nothing usable is installed.
    """
    if configured:
        found = shutil.which(configured)
        if found:
            return found
        if os.path.isfile(configured):
            return configured
        logger.warning("Configured PowerShell path %s not found; falling back to discovery.", configured)

    if platform.system() == "Windows":
        for candidate in _windows_candidates():
            found = shutil.which(candidate)
            if found:
                return found
            if os.path.isabs(candidate) and os.path.isfile(candidate):
                return candidate
        return None

    return shutil.which("pwsh")


def classify_stderr(line: str) -> str:
    """Map a stderr line to a host output kind.

    Lines mentioning ``error`` or ``exception`` (any case) become ``error``;
    everything else stays ``stderr``.  Verbose tooling writes progress to
    stderr, so nothing stricter is attempted.
    """
    lowered = line.lower()
    if "error" in lowered or "exception" in lowered:
        return "error"
    return "stderr"


def _silent(_line: str) -> str | None:
    return None


def _classify_install_stderr(line: str) -> str | None:
    """Drop PowerShellGet progress noise during module installation."""
    if "Progress" in line or "%" in line:
        return None
    return "stderr"


def ps_quote(value: str) -> str:
    """Quote *value* as a PowerShell single-quoted string literal."""
    return "'" + value.replace("'", "''") + "'"


def _terminate_tree(proc: subprocess.Popen) -> None:
    """Terminate *proc* and its descendants, killing stragglers."""
    try:
        parent = psutil.Process(proc.pid)
        children = parent.children(recursive=True)
    except psutil.NoSuchProcess:
        return

    targets = children + [parent]
    for target in targets:
        try:
            target.terminate()
        except psutil.NoSuchProcess:
            continue
    _gone, alive = psutil.wait_procs(targets, timeout=3)
    for target in alive:
        try:
            target.kill()
        except psutil.NoSuchProcess:
            continue


# ======================================================================
# Host handler
# ======================================================================

class PowerShellHost:
    """Executes PowerShell on the local machine on behalf of a session.

    The live process handle is an instance field: one host instance is
    owned by one backend, and at most one operation runs at a time.
    """

    def __init__(self, shell_path: str | None = None, channel: HostChannel | None = None):
        self.channel = channel or HostChannel()
        self._configured_shell = shell_path
        self._shell: str | None = None
        self._process: subprocess.Popen | None = None
        self._lock = threading.Lock()
        self._cancelled = False

    # ------------------------------------------------------------------ #
    # Properties
    # ------------------------------------------------------------------ #

    @property
    def shell(self) -> str | None:
        """Resolved PowerShell path (cached after the first lookup)."""
        if self._shell is None:
            self._shell = find_powershell(self._configured_shell)
        return self._shell

    @property
    def running(self) -> bool:
        with self._lock:
            return self._process is not None

    # ------------------------------------------------------------------ #
    # Operations
    # ------------------------------------------------------------------ #

    def check_environment(self) -> HostEnvironment:
        """Probe for PowerShell and the Az module."""
        shell = self.shell
        if not shell:
            return HostEnvironment(shell_available=False)

        # Probes run through _spawn so that stop() can kill them too.
        try:
            code, version, _error = self._pump(
                self._spawn([shell, "-NoProfile", "-Command", _VERSION_COMMAND]), _silent, _silent,
            )
        except ProcessSpawnError as exc:
            logger.debug("PowerShell version probe failed: %s", exc)
            return HostEnvironment(shell_available=False, shell_path=shell)

        if code != 0:
            return HostEnvironment(shell_available=False, shell_path=shell)

        az_version = ""
        try:
            code, output, _error = self._pump(
                self._spawn([shell, "-NoProfile", "-Command", _AZ_VERSION_COMMAND]), _silent, _silent,
            )
            if code == 0:
                az_version = output.strip()
        except ProcessSpawnError as exc:
            logger.debug("Az module probe failed: %s", exc)

        return HostEnvironment(
            shell_available=True,
            shell_version=version.strip() or None,
            module_installed=bool(az_version),
            module_version=az_version or None,
            shell_path=shell,
        )

    def install_module(self) -> HostResult:
        """Install the Az module for the current user."""
        self.channel.emit("Starting Az module installation...", "info")
        self.channel.emit(
            "This requires an internet connection and may take several minutes.", "info"
        )
        proc = self._spawn([self._require_shell(), "-NoProfile", "-Command", _INSTALL_SCRIPT])
        code, output, _error = self._pump(proc, _classify_install_stderr)
        if code == 0:
            return HostResult(success=True, output=output)
        return HostResult(success=False, output=output, error=f"Installation failed with code {code}")

    def connect_remote(self, access_token: str, subscription_id: str, tenant_id: str) -> HostResult:
        """Establish an Az PowerShell context from a bearer token.

        The token reaches the child through its environment only.
        """
        self.channel.emit("Connecting to Azure with access token...", "info")

        lines = [
            f"$secureToken = ConvertTo-SecureString -String $env:{TOKEN_ENV_VAR} -AsPlainText -Force",
            "$connectArgs = @{ AccessToken = $secureToken; AccountId = 'user@azure' }",
        ]
        if tenant_id:
            lines.append(f"$connectArgs.TenantId = {ps_quote(tenant_id)}")
        if subscription_id:
            lines.append(f"$connectArgs.SubscriptionId = {ps_quote(subscription_id)}")
        lines.append("Connect-AzAccount @connectArgs -ErrorAction Stop | Out-Null")
        if subscription_id:
            lines.append(f"Set-AzContext -SubscriptionId {ps_quote(subscription_id)} -ErrorAction Stop | Out-Null")
        lines.append("Get-AzContext | Format-List")

        env = {**os.environ, TOKEN_ENV_VAR: access_token}
        proc = self._spawn(
            [self._require_shell(), "-NoProfile", "-Command", "\n".join(lines)],
            env=env,
        )
        code, output, error = self._pump(proc, lambda _line: "stderr")
        if code == 0:
            return HostResult(success=True, output=output)
        return HostResult(
            success=False,
            output=output,
            error=error.strip() or f"Connection failed with code {code}",
        )

    def execute_script(self, script: str) -> ExecutionResult:
        """Run *script* from a uniquely named temporary ``.ps1`` file.

        The file is removed whatever the outcome, including spawn failure.
        """
        self.channel.emit("Starting script execution...", "info")

        fd, script_path = tempfile.mkstemp(prefix=SCRIPT_PREFIX, suffix=".ps1")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(script)

            proc = self._spawn([
                self._require_shell(),
                "-NoProfile",
                "-ExecutionPolicy", "Bypass",
                "-File", script_path,
            ])
            code, output, error = self._pump(proc, classify_stderr)
        finally:
            try:
                os.remove(script_path)
            except OSError as exc:
                logger.debug("Could not remove temporary script %s: %s", script_path, exc)

        return ExecutionResult(success=code == 0, exit_code=code, output=output, error=error)

    def stop(self) -> bool:
        """Terminate the running process, if any, and forget its handle.

        Returns ``True`` when a process was signalled.  Later spawns are
        refused until :meth:`reset` is called.
        """
        with self._lock:
            self._cancelled = True
            proc = self._process
            self._process = None
        if proc is None:
            return False

        logger.info("Terminating PowerShell process %s", proc.pid)
        _terminate_tree(proc)
        return True

    def reset(self) -> None:
        """Clear a previous stop so the host can run again."""
        with self._lock:
            self._cancelled = False

    # ------------------------------------------------------------------ #
    # Internal helpers
    # ------------------------------------------------------------------ #

    def _require_shell(self) -> str:
        shell = self.shell
        if not shell:
            raise ProcessSpawnError(
                "PowerShell was not found on this machine.\n"
                "Install PowerShell 7 from https://aka.ms/powershell or use the Cloud Shell backend."
            )
        return shell

    def _spawn(self, args: list[str], env: dict[str, str] | None = None) -> subprocess.Popen:
        with self._lock:
            if self._cancelled:
                raise UserCancelled("PowerShell execution was stopped.")
            if self._process is not None:
                raise ProcessSpawnError("Another PowerShell operation is already running.")
            try:
                proc = subprocess.Popen(
                    args,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    text=True,
                    encoding="utf-8",
                    errors="replace",
                    env=env,
                )
            except OSError as exc:
                raise ProcessSpawnError(f"Failed to start PowerShell: {exc}") from exc
            self._process = proc

        logger.debug("Spawned PowerShell process %s", proc.pid)
        return proc

    def _pump(
        self,
        proc: subprocess.Popen,
        stderr_kind: Callable[[str], str | None],
        stdout_kind: Callable[[str], str | None] = lambda _line: "stdout",
    ) -> tuple[int, str, str]:
        """Stream both pipes to the channel until *proc* exits.

        Returns ``(exit_code, stdout, stderr)``.  Raises
        :class:`UserCancelled` when the handle was cleared by :meth:`stop`
        while waiting, so a stale exit is never reported as completion.
        """
        stdout_chunks: list[str] = []
        stderr_chunks: list[str] = []

        def read(stream, sink: list[str], kind_for: Callable[[str], str | None]) -> None:
            for line in stream:
                sink.append(line)
                text = line.rstrip("\r\n")
                if not text:
                    continue
                kind = kind_for(text)
                if kind:
                    self.channel.emit(text, kind)

        readers = [
            threading.Thread(
                target=read, args=(proc.stdout, stdout_chunks, stdout_kind),
                name="pwsh-stdout", daemon=True,
            ),
            threading.Thread(
                target=read, args=(proc.stderr, stderr_chunks, stderr_kind),
                name="pwsh-stderr", daemon=True,
            ),
        ]
        for reader in readers:
            reader.start()

        code = proc.wait()
        for reader in readers:
            reader.join(timeout=_READER_JOIN_TIMEOUT)

        with self._lock:
            current = self._process is proc
            if current:
                self._process = None

        if not current:
            logger.debug("Discarding exit code %s of stopped process %s", code, proc.pid)
            raise UserCancelled("PowerShell execution was stopped.")

        return code, "".join(stdout_chunks), "".join(stderr_chunks)
