"""Failure taxonomy for deployment sessions.

Every class derives from :class:`knack.util.CLIError` so that a failure
raised outside a session (e.g. by ``az mate cloudshell status``) is
reported by the Azure CLI like any other command error.  ``category`` is
the stable name recorded on the final log entry of a failed session.
"""

from knack.util import CLIError


class DeploymentError(CLIError):
    """Base class for classified deployment failures."""

    category = "DeploymentError"


class AuthenticationError(DeploymentError):
    """Token acquisition failed after the interactive fallback."""

    category = "AuthenticationError"


class ProvisioningError(DeploymentError):
    """The Cloud Shell console did not reach ``Succeeded``."""

    category = "ProvisioningError"


class TerminalConnectionError(DeploymentError):
    """The terminal socket failed to open in time or closed abnormally."""

    category = "ConnectionError"


class ProcessSpawnError(DeploymentError):
    """No interpreter was found or the process could not be spawned."""

    category = "ProcessSpawnError"


class ScriptExecutionError(DeploymentError):
    """The script ran but reported failure (non-zero exit code)."""

    category = "ScriptExecutionError"


class UserCancelled(DeploymentError):
    """The session was stopped explicitly."""

    category = "UserCancelled"


class SessionBusyError(CLIError):
    """A session is already running for this owner."""
