"""Local PowerShell execution through the privileged host handler."""

from __future__ import annotations

from azext_mate.deploy.backends.base import ExecutionBackend
from azext_mate.deploy.errors import ProcessSpawnError, ScriptExecutionError
from azext_mate.deploy.models import (
    BackendKind,
    DeployContext,
    ExecutionResult,
    HostOutput,
    LogKind,
)
from azext_mate.host.powershell import PowerShellHost

_HOST_KIND_MAP = {
    "stdout": LogKind.INFO,
    "stderr": LogKind.INFO,
    "info": LogKind.INFO,
    "error": LogKind.ERROR,
    "success": LogKind.SUCCESS,
}


class LocalProcessBackend(ExecutionBackend):
    """Runs the script in a PowerShell process on this machine.

    Flow: environment check, optional Az module install, token-based
    ``Connect-AzAccount``, then the script itself.  Host output is
    forwarded only while an operation is in flight.
    """

    kind = BackendKind.LOCAL
    display_name = "Local PowerShell"
    requires_token = True

    def __init__(self, host: PowerShellHost | None = None, auto_install_module: bool = False):
        super().__init__()
        self.host = host or PowerShellHost()
        self._auto_install = auto_install_module

    def _run(self, script: str, context: DeployContext) -> ExecutionResult:
        self.host.reset()
        self._ensure_running()
        self.emit("Checking PowerShell environment...", source="engine")
        env = self.host.check_environment()
        self._ensure_running()
        if not env.shell_available:
            raise ProcessSpawnError(
                "PowerShell is not available on this machine.\n"
                "Install PowerShell 7 from https://aka.ms/powershell or choose the Cloud Shell backend."
            )
        self.emit(f"PowerShell {env.shell_version or 'unknown'} found at {env.shell_path}", source="engine")

        with self.host.channel.listen(self._forward):
            self._ensure_running()
            if not env.module_installed:
                self._handle_missing_module()
            else:
                self.emit(f"Az module {env.module_version} is installed.", source="engine")

            self._ensure_running()
            connected = self.host.connect_remote(
                context.access_token, context.subscription_id, context.tenant_id,
            )
            if not connected.success:
                raise ScriptExecutionError(f"Failed to connect to Azure: {connected.error}")
            self.emit("Connected to Azure.", LogKind.SUCCESS, source="engine")

            self._ensure_running()
            result = self.host.execute_script(script)

        if not result.success:
            self.logger.info("Script exited with code %s", result.exit_code)
        return result

    def _handle_missing_module(self) -> None:
        if not self._auto_install:
            self.emit(
                "Az PowerShell module not found. Run 'az mate deploy install-module' "
                "or set local.auto_install_module to true.",
                LogKind.WARNING,
                source="engine",
            )
            return

        installed = self.host.install_module()
        if not installed.success:
            raise ProcessSpawnError(f"Az module installation failed: {installed.error}")
        self.emit("Az module installed.", LogKind.SUCCESS, source="engine")

    def _forward(self, event: HostOutput) -> None:
        kind = _HOST_KIND_MAP.get(event.kind, LogKind.INFO)
        self.emit(event.output, kind, source=event.kind)

    def _release(self) -> None:
        self.host.stop()
