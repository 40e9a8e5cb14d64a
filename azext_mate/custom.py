"""Custom command implementations for az mate.

These functions are the entry points called by the Azure CLI framework.
Each one maps to a registered command in commands.py.
"""

import json
import logging
import webbrowser
from pathlib import Path

import yaml
from knack.util import CLIError

from azext_mate.telemetry import track

logger = logging.getLogger(__name__)

CLOUD_SHELL_URL = "https://shell.azure.com"

# Seconds between log-stream polls while a session runs.
_POLL_INTERVAL = 0.2
# Seconds to wait for a stopped session to settle after Ctrl+C.
_STOP_GRACE = 10


# ======================================================================
# Helpers
# ======================================================================

def _get_project_dir() -> str:
    """Resolve the current project directory."""
    return str(Path.cwd().resolve())


def _load_config(project_dir: str | None = None):
    """Load project configuration (defaults when mate.yaml is absent)."""
    from azext_mate.config import MateConfig

    project_dir = project_dir or _get_project_dir()
    config = MateConfig(project_dir)
    config.load()
    return config


def _build_store(config, project_dir: str | None = None):
    from azext_mate.deploy.state import SessionStore

    return SessionStore(
        project_dir or _get_project_dir(),
        history_limit=config.get("deploy.history_limit", 50),
    )


def _read_text(path: str, what: str) -> str:
    file_path = Path(path)
    if not file_path.is_file():
        raise CLIError(f"{what} not found: {path}")
    return file_path.read_text(encoding="utf-8")


def _load_cost_file(path: str | None) -> dict | None:
    if not path:
        return None
    try:
        data = yaml.safe_load(_read_text(path, "Cost file"))
    except yaml.YAMLError as exc:
        raise CLIError(f"Could not parse cost file {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise CLIError(f"Cost file {path} must contain a mapping.")
    return data


def _parse_variables(pairs: list[str] | None) -> dict[str, str] | None:
    if not pairs:
        return None
    variables: dict[str, str] = {}
    for pair in pairs:
        if "=" not in pair:
            raise CLIError(f"Invalid variable '{pair}'. Use KEY=VALUE.")
        key, value = pair.split("=", 1)
        variables[key.strip()] = value
    return variables


def _resolve_subscription(cmd, config) -> str:
    """Global ``--subscription`` first, then ``deploy.subscription``."""
    # In Azure CLI, cmd.cli_ctx.data is a dict; in tests cmd is a MagicMock.
    try:
        data = cmd.cli_ctx.data
        if isinstance(data, dict) and data.get("subscription_id"):
            return str(data["subscription_id"])
    except AttributeError:
        pass
    return config.get("deploy.subscription") or ""


def _follow_session(controller, session, console) -> None:
    """Render new log entries until the session is terminal.

    Ctrl+C stops the session and waits briefly for the final entry.
    """
    printed = 0
    try:
        while not session.wait(_POLL_INTERVAL):
            for entry in session.logs.since(printed):
                console.print_log_entry(entry)
                printed += 1
    except KeyboardInterrupt:
        console.print_warning("Stopping deployment...")
        controller.stop()
        session.wait(_STOP_GRACE)

    for entry in session.logs.since(printed):
        console.print_log_entry(entry)


# ======================================================================
# Deploy Commands
# ======================================================================

@track("mate deploy run")
def mate_deploy_run(
    cmd,
    script_file=None,
    backend=None,
    tenant=None,
    access_token=None,
    cost_file=None,
    variables=None,
):
    """Run a deployment script and stream its log.

    Returns the session record (without logs).  A failed or stopped
    session raises so that the command exits non-zero.
    """
    from azext_mate.auth import StaticTokenProvider
    from azext_mate.deploy.models import BackendKind, DeploymentRequest, SessionState
    from azext_mate.deploy.session import DeploymentController
    from azext_mate.ui.console import console

    if not script_file:
        raise CLIError("--script-file is required.")

    config = _load_config()
    script = _read_text(script_file, "Script file")
    try:
        kind = BackendKind(backend or config.get("deploy.backend") or BackendKind.MOCK.value)
    except ValueError:
        raise CLIError(f"Unknown backend '{backend or config.get('deploy.backend')}'.")
    tenant = tenant or config.get("deploy.tenant") or ""

    request = DeploymentRequest(
        script=script,
        backend=kind,
        subscription_id=_resolve_subscription(cmd, config),
        tenant_id=tenant,
        cost_estimate=_load_cost_file(cost_file),
        variables=_parse_variables(variables),
    )

    controller = DeploymentController(
        config,
        token_provider=StaticTokenProvider(access_token, tenant_id=tenant) if access_token else None,
        store=_build_store(config),
    )

    console.print_header(f"Deployment ({kind.value})")
    session = controller.start(request)
    _follow_session(controller, session, console)

    record = session.to_dict(include_logs=False)
    console.print()
    console.print_session_summary(record)

    if session.state is SessionState.FAILED:
        raise CLIError(f"Deployment failed: {session.error}")
    return record


@track("mate deploy list")
def mate_deploy_list(cmd):
    """List recorded sessions, newest first."""
    from azext_mate.ui.console import console

    config = _load_config()
    records = [{k: v for k, v in r.items() if k != "logs"} for r in _build_store(config).list()]

    if not records:
        console.print_warning("No deployments recorded yet.")
        console.print_dim("Run 'az mate deploy run --script-file <file>' first.")
        return []

    console.print_session_table(records)
    return records


@track("mate deploy show")
def mate_deploy_show(cmd, session_id=None, show_logs=False):
    """Show a recorded session, optionally replaying its log."""
    from azext_mate.deploy.models import LogEntry, LogKind
    from azext_mate.ui.console import console

    if not session_id:
        raise CLIError("--id is required.")

    config = _load_config()
    record = _build_store(config).get(session_id)
    if record is None:
        raise CLIError(f"No recorded deployment matches '{session_id}'.")

    if show_logs:
        for item in record.get("logs") or []:
            console.print_log_entry(LogEntry(
                message=item.get("message", ""),
                kind=LogKind(item.get("kind", LogKind.INFO.value)),
                timestamp=item.get("timestamp", ""),
                source=item.get("source", ""),
                category=item.get("category", ""),
                id=item.get("id", ""),
            ))
        console.print()
    console.print_session_summary(record)
    return record


@track("mate deploy check")
def mate_deploy_check(cmd):
    """Probe the host for PowerShell and the Az module."""
    from azext_mate.deploy.session import recommend_backend
    from azext_mate.host import PowerShellHost
    from azext_mate.ui.console import console

    config = _load_config()
    host = PowerShellHost(shell_path=config.get("local.shell") or None)

    with console.spinner("Checking PowerShell environment"):
        env = host.check_environment()

    if env.shell_available:
        console.print_success(f"PowerShell {env.shell_version or ''} ({env.shell_path})")
    else:
        console.print_warning("PowerShell 7 not found. Install it from https://aka.ms/powershell")

    if env.module_installed:
        console.print_success(f"Az module {env.module_version}")
    elif env.shell_available:
        console.print_warning("Az module not installed. Run 'az mate deploy install-module'.")

    recommended = recommend_backend(host)
    console.print_info(f"Recommended backend: {recommended.value}")
    console.print_dim(f"  Manual fallback: 'az mate deploy open-shell' opens {CLOUD_SHELL_URL}")

    result = env.to_dict()
    result["recommended_backend"] = recommended.value
    return result


@track("mate deploy install-module")
def mate_deploy_install_module(cmd):
    """Install the Az PowerShell module, streaming installer output."""
    from azext_mate.host import PowerShellHost
    from azext_mate.ui.console import console

    config = _load_config()
    host = PowerShellHost(shell_path=config.get("local.shell") or None)

    def show(event):
        if event.kind == "error":
            console.print_error(event.output)
        elif event.kind == "info":
            console.print_info(event.output)
        else:
            console.print_dim(event.output)

    with host.channel.listen(show):
        result = host.install_module()

    if not result.success:
        raise CLIError(result.error or "Az module installation failed.")

    version = result.output.strip().splitlines()[-1] if result.output.strip() else ""
    console.print_success(f"Az module installed{f' ({version})' if version else ''}")
    return {"status": "installed", "version": version}


@track("mate deploy open-shell")
def mate_deploy_open_shell(cmd, script_file=None, no_browser=False):
    """Manual fallback: show the script and open Cloud Shell in a browser."""
    from azext_mate.ui.console import console

    if script_file:
        console.print_script(_read_text(script_file, "Script file"), title=Path(script_file).name)

    opened = False
    if not no_browser:
        opened = webbrowser.open(CLOUD_SHELL_URL)
    if opened:
        console.print_info(f"Opened {CLOUD_SHELL_URL}")
    else:
        console.print_info(f"Open {CLOUD_SHELL_URL} and paste the script into the PowerShell session.")

    return {"url": CLOUD_SHELL_URL, "opened": opened}


# ======================================================================
# Cloud Shell Commands
# ======================================================================

@track("mate cloudshell status")
def mate_cloudshell_status(cmd, tenant=None):
    """Check Cloud Shell availability for the signed-in user."""
    from azext_mate.auth import AzureCliTokenProvider
    from azext_mate.deploy.backends.cloudshell import CloudShellClient, CloudShellSettings
    from azext_mate.ui.console import console

    config = _load_config()
    tenant = tenant or config.get("deploy.tenant") or None
    token = AzureCliTokenProvider(tenant_id=tenant).acquire_token(
        config.get("auth.scopes") or []
    )
    client = CloudShellClient(token.token, CloudShellSettings.from_config(config))

    with console.spinner("Checking Azure Cloud Shell"):
        status = client.get_user_settings()

    if not status.available:
        console.print_error(f"Cloud Shell is not available: {status.error}")
    elif not status.provisioned:
        console.print_warning("Cloud Shell is available but has no storage configured yet.")
        console.print_dim(f"  Open {CLOUD_SHELL_URL} once to complete setup.")
    else:
        console.print_success("Cloud Shell is available and provisioned.")

    return status.to_dict()


# ======================================================================
# Config Commands
# ======================================================================

@track("mate config init")
def mate_config_init(cmd, backend="mock", force=False):
    """Create mate.yaml with defaults in the current directory."""
    from azext_mate.config import MateConfig
    from azext_mate.ui.console import console

    config = MateConfig(_get_project_dir())
    if config.exists() and not force:
        raise CLIError(
            f"{config.CONFIG_FILENAME} already exists in this directory.\n"
            "Use --force to overwrite it."
        )

    config.create_default({"deploy": {"backend": MateConfig.validate_value("deploy.backend", backend)}})

    console.print_success("Configuration saved")
    console.print_dim("  You can edit it directly or use 'az mate config set'.")
    return {"status": "created", "file": str(config.config_path)}


@track("mate config show")
def mate_config_show(cmd):
    """Display current configuration with secret values shown as ``***``."""
    return _load_config().masked()


@track("mate config get")
def mate_config_get(cmd, key=None):
    """Get a single configuration value by dot-separated key."""
    from azext_mate.config import MateConfig

    if not key:
        raise CLIError("--key is required.")

    config = _load_config()
    value = config.get(key)
    if value is None:
        raise CLIError(f"Key '{key}' not found in configuration.")

    if MateConfig.is_secret_key(key) and value:
        return {"key": key, "value": "***"}

    return {"key": key, "value": value}


@track("mate config set")
def mate_config_set(cmd, key=None, value=None):
    """Set a configuration value."""
    if not key:
        raise CLIError("--key is required.")
    if value is None:
        raise CLIError("--value is required.")

    config = _load_config()

    # Try to parse value as JSON for structured values
    try:
        parsed = json.loads(value)
        config.set(key, parsed)
    except (json.JSONDecodeError, TypeError):
        config.set(key, value)

    shown = "***" if config.is_secret_key(key) else config.get(key)
    return {"key": key, "value": shown, "status": "updated"}
