"""Host execution channel for local PowerShell runs."""

from azext_mate.host.channel import HostChannel
from azext_mate.host.powershell import PowerShellHost, find_powershell

__all__ = ["HostChannel", "PowerShellHost", "find_powershell"]
