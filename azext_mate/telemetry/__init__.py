"""Usage telemetry for az mate, posted straight to Application Insights.

Two events exist:

* ``cli_command_executed``: one per ``az mate`` command, sent by the
  :func:`track` decorator whether the command succeeded or raised.
* ``deployment_finished``: one per terminal deployment session, sent by
  the :class:`~azext_mate.deploy.session.DeploymentController`.

Events carry shape only: command name, backend kind, final state,
duration, log count and error category.  Access tokens, subscription and
tenant ids, script text and log messages never leave the machine.

Telemetry follows the Azure CLI switch (``AZURE_CORE_COLLECT_TELEMETRY``,
``core.disable_telemetry``, legacy ``core.collect_telemetry``) and is off
whenever no connection string is available.  A failure to send is logged
at debug level and otherwise ignored.
"""

import json
import logging
import os
from datetime import datetime, timezone
from functools import wraps
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as pkg_version
from typing import NamedTuple

logger = logging.getLogger(__name__)

# Filled in by the release pipeline; APPINSIGHTS_CONNECTION_STRING wins.
_BUILTIN_CONNECTION_STRING = ""

_DISTRIBUTION = "az-mate"
_ROLE = "az-mate"
_SEND_TIMEOUT = 5
_MAX_ERROR_LENGTH = 1024

# Parameter names whose values are replaced before a command event is sent.
_SENSITIVE_PARAM_KEYS = frozenset(
    {
        "access_token",
        "token",
        "secret",
        "password",
        "key",
        "value",
        "subscription",
        "tenant",
    }
)


class _Ingestion(NamedTuple):
    endpoint: str
    ikey: str


_enabled: bool | None = None
_ingestion: _Ingestion | None = None


# ------------------------------------------------------------------ #
# Gating
# ------------------------------------------------------------------ #


def _is_cli_telemetry_enabled() -> bool:
    """Read the Azure CLI telemetry switch; enabled unless turned off."""
    env_val = os.environ.get("AZURE_CORE_COLLECT_TELEMETRY")
    if env_val is not None:
        return env_val.lower() not in ("no", "false", "0", "off")

    try:
        import configparser

        from azure.cli.core._environment import get_config_dir
    except ImportError:
        return True

    parser = configparser.ConfigParser()
    parser.read(os.path.join(get_config_dir(), "config"))
    if parser.has_option("core", "disable_telemetry"):
        return not parser.getboolean("core", "disable_telemetry")
    if parser.has_option("core", "collect_telemetry"):
        return parser.getboolean("core", "collect_telemetry")
    return True


def _get_connection_string() -> str:
    return os.environ.get("APPINSIGHTS_CONNECTION_STRING", "") or _BUILTIN_CONNECTION_STRING


def is_enabled() -> bool:
    """Whether events are sent; decided once per process."""
    global _enabled
    if _enabled is None:
        try:
            _enabled = _is_cli_telemetry_enabled() and bool(_get_connection_string())
        except Exception:
            logger.debug("Could not read the telemetry setting", exc_info=True)
            _enabled = False
    return _enabled


def reset() -> None:
    """Forget cached gating and endpoint state."""
    global _enabled, _ingestion
    _enabled = None
    _ingestion = None


def _parse_connection_string(cs: str) -> tuple[str, str]:
    """Split a connection string into ``(track_url, instrumentation_key)``.

    ``("", "")`` when either part is missing.
    """
    parts = {}
    for item in (cs or "").split(";"):
        name, sep, value = item.partition("=")
        if sep:
            parts[name.strip()] = value.strip()

    ikey = parts.get("InstrumentationKey", "")
    endpoint = parts.get("IngestionEndpoint", "").rstrip("/")
    if not ikey or not endpoint:
        return "", ""
    return f"{endpoint}/v2/track", ikey


def _get_ingestion() -> _Ingestion:
    global _ingestion
    if _ingestion is None:
        _ingestion = _Ingestion(*_parse_connection_string(_get_connection_string()))
    return _ingestion


# ------------------------------------------------------------------ #
# Transport
# ------------------------------------------------------------------ #


def _get_extension_version() -> str:
    try:
        return pkg_version(_DISTRIBUTION)
    except PackageNotFoundError:
        return "unknown"


def _send_envelope(envelope: dict, endpoint: str) -> bool:
    """POST one envelope; ``True`` on HTTP 200."""
    import requests

    try:
        resp = requests.post(
            endpoint,
            data=json.dumps([envelope]),
            headers={"Content-Type": "application/json"},
            timeout=_SEND_TIMEOUT,
        )
    except requests.RequestException as exc:
        logger.debug("Telemetry post failed: %s", exc)
        return False
    return resp.status_code == 200


def _build_envelope(event_name: str, properties: dict[str, str], ikey: str) -> dict:
    return {
        "name": "Microsoft.ApplicationInsights.Event",
        "time": datetime.now(timezone.utc).isoformat(),
        "iKey": ikey,
        "tags": {
            "ai.cloud.role": _ROLE,
            "ai.internal.sdkVersion": "py-direct:1.0.0",
        },
        "data": {
            "baseType": "EventData",
            "baseData": {"ver": 2, "name": event_name, "properties": properties},
        },
    }


def _emit(event_name: str, properties: dict[str, str]) -> None:
    if not is_enabled():
        return
    ingestion = _get_ingestion()
    if not ingestion.endpoint or not ingestion.ikey:
        return

    properties = dict(properties, extensionVersion=_get_extension_version())
    try:
        _send_envelope(_build_envelope(event_name, properties, ingestion.ikey), ingestion.endpoint)
    except Exception:
        logger.debug("Telemetry event %s dropped", event_name, exc_info=True)


# ------------------------------------------------------------------ #
# Events
# ------------------------------------------------------------------ #


def _sanitize_parameters(params: dict) -> dict:
    """Copy *params* with sensitive values masked and non-scalars reduced to a type name."""
    clean: dict[str, object] = {}
    for name, value in params.items():
        if name.startswith("_"):
            continue
        if name in _SENSITIVE_PARAM_KEYS:
            clean[name] = "***"
        elif value is None or isinstance(value, (str, int, float, bool)):
            clean[name] = value
        else:
            clean[name] = type(value).__name__
    return clean


def track_command(
    command_name: str,
    *,
    success: bool = True,
    error: str = "",
    parameters: dict | None = None,
    backend: str = "",
) -> None:
    """Send ``cli_command_executed``."""
    properties = {
        "commandName": command_name,
        "backend": backend,
        "success": str(success).lower(),
    }
    if parameters:
        properties["parameters"] = json.dumps(_sanitize_parameters(parameters))
    if error:
        properties["error"] = error[:_MAX_ERROR_LENGTH]
    _emit("cli_command_executed", properties)


def track_deployment(record: dict) -> None:
    """Send ``deployment_finished`` for a terminal session record."""
    duration = record.get("duration_seconds")
    _emit(
        "deployment_finished",
        {
            "backend": str(record.get("backend") or ""),
            "state": str(record.get("state") or ""),
            "durationSeconds": "" if duration is None else str(duration),
            "logCount": str(len(record.get("logs") or [])),
            "errorCategory": str(record.get("error_category") or ""),
        },
    )


def track(command_name: str):
    """Decorate an ``az mate`` command handler with a command event.

    The handler takes ``cmd`` first, as every Azure CLI custom command
    does.  The event goes out from ``finally`` so failures are counted
    too; the handler's own exception is always re-raised unchanged.
    """

    def decorator(func):
        @wraps(func)
        def wrapper(cmd, *args, **kwargs):
            error = ""
            try:
                return func(cmd, *args, **kwargs)
            except Exception as exc:
                error = f"{type(exc).__name__}: {exc}"
                raise
            finally:
                try:
                    track_command(
                        command_name,
                        success=not error,
                        error=error,
                        parameters=kwargs,
                        backend=str(kwargs.get("backend") or ""),
                    )
                except Exception:
                    logger.debug("Command telemetry failed", exc_info=True)

        return wrapper

    return decorator
