"""Execution backends and the factory that builds them by kind."""

from __future__ import annotations

from typing import Callable

from knack.util import CLIError

from azext_mate.deploy.backends.base import ExecutionBackend
from azext_mate.deploy.backends.cloudshell import CloudShellBackend, CloudShellSettings
from azext_mate.deploy.backends.local import LocalProcessBackend
from azext_mate.deploy.backends.mock import MockBackend
from azext_mate.deploy.models import BackendKind
from azext_mate.host.powershell import PowerShellHost

__all__ = [
    "ExecutionBackend",
    "CloudShellBackend",
    "LocalProcessBackend",
    "MockBackend",
    "create_backend",
]


def _local(config, host: PowerShellHost | None) -> ExecutionBackend:
    if host is None:
        host = PowerShellHost(shell_path=config.get("local.shell") or None)
    return LocalProcessBackend(
        host=host,
        auto_install_module=bool(config.get("local.auto_install_module", False)),
    )


def _cloudshell(config, host: PowerShellHost | None) -> ExecutionBackend:
    return CloudShellBackend(settings=CloudShellSettings.from_config(config))


def _mock(config, host: PowerShellHost | None) -> ExecutionBackend:
    return MockBackend(time_scale=float(config.get("mock.time_scale", 1.0)))


_REGISTRY: dict[BackendKind, Callable[..., ExecutionBackend]] = {
    BackendKind.LOCAL: _local,
    BackendKind.CLOUD_SHELL: _cloudshell,
    BackendKind.MOCK: _mock,
}


def create_backend(kind: BackendKind | str, config, host: PowerShellHost | None = None) -> ExecutionBackend:
    """Build a fresh, single-use backend of *kind* from *config*.

    *config* needs only a dot-notation ``get(key, default)``.
    """
    try:
        builder = _REGISTRY[BackendKind(kind)]
    except ValueError:
        valid = ", ".join(k.value for k in BackendKind)
        raise CLIError(f"Unknown backend '{kind}'. Choose one of: {valid}")
    return builder(config, host)
