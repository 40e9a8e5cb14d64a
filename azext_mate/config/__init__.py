"""Project configuration (``mate.yaml``) for az mate.

The file is optional: every key has a default in :data:`DEFAULT_CONFIG`,
and whatever the file sets is merged over them.  The target subscription
and tenant live in ``mate.secrets.yaml`` next to it, so the main file can
be committed while the secrets file stays git-ignored.
"""

import copy
import logging
from pathlib import Path
from typing import Any, Callable

import yaml
from knack.util import CLIError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = {
    "deploy": {
        "backend": "mock",
        "subscription": "",
        "tenant": "",
        "history_limit": 50,
    },
    "auth": {
        "scopes": ["https://management.azure.com/.default"],
    },
    "local": {
        "shell": "",
        "auto_install_module": False,
    },
    "cloudshell": {
        "shell_type": "pwsh",
        "location": "",
        "api_version": "2023-02-01-preview",
        "socket_timeout": 30,
        "command_delay": 0.1,
        "poll_interval": 2,
        "provision_timeout": 300,
        "cols": 120,
        "rows": 30,
    },
    "mock": {
        "time_scale": 1.0,
    },
}

# Dotted keys stored in mate.secrets.yaml instead of mate.yaml.
SECRET_KEYS = ("deploy.subscription", "deploy.tenant")

BACKENDS = ("cloudshell", "local", "mock")
SHELL_TYPES = ("bash", "pwsh")

# Regions that host Cloud Shell containers.
CLOUD_SHELL_REGIONS = frozenset(
    {
        "centralindia",
        "eastus",
        "northeurope",
        "southcentralus",
        "southeastasia",
        "westcentralus",
        "westeurope",
        "westus",
    }
)


def _plain(data: Any) -> Any:
    """Turn str/int/float subclasses (knack's ``DefaultStr``) into builtins for ``yaml.safe_dump``."""
    if isinstance(data, dict):
        return {str(k): _plain(v) for k, v in data.items()}
    if isinstance(data, list):
        return [_plain(v) for v in data]
    for builtin in (bool, int, float, str):
        if isinstance(data, builtin):
            return builtin(data)
    return data


def _lookup(tree: dict, key: str, default: Any = None) -> Any:
    node: Any = tree
    for part in key.split("."):
        if not isinstance(node, dict) or part not in node:
            return default
        node = node[part]
    return node


def _set_nested(tree: dict, key: str, value: Any) -> None:
    *parents, leaf = key.split(".")
    node = tree
    for part in parents:
        if not isinstance(node.get(part), dict):
            node[part] = {}
        node = node[part]
    node[leaf] = value


def _merge(base: dict, overlay: dict) -> dict:
    for key, value in overlay.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _merge(base[key], value)
        else:
            base[key] = value
    return base


# ------------------------------------------------------------------ #
# Set-time validation
# ------------------------------------------------------------------ #


def _choice(options: tuple[str, ...], label: str) -> Callable[[str, Any], str]:
    def check(key: str, value: Any) -> str:
        text = str(value).strip().lower()
        if text not in options:
            raise CLIError(f"Unknown {label}: '{value}'.\nSupported values: {', '.join(options)}")
        return text

    return check


def _number(allow_zero: bool) -> Callable[[str, Any], int | float]:
    def check(key: str, value: Any) -> int | float:
        try:
            number = float(value)
        except (TypeError, ValueError):
            raise CLIError(f"'{key}' must be a number, got '{value}'.")
        if number < 0 or (number == 0 and not allow_zero):
            raise CLIError(f"'{key}' must be {'zero or positive' if allow_zero else 'positive'}, got '{value}'.")
        return int(number) if number.is_integer() else number

    return check


def _boolean(key: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("true", "yes", "1"):
        return True
    if text in ("false", "no", "0"):
        return False
    raise CLIError(f"'{key}' must be true or false, got '{value}'.")


def _region(key: str, value: Any) -> str:
    region = str(value).strip().lower()
    if region and region not in CLOUD_SHELL_REGIONS:
        raise CLIError(
            f"Unknown Azure region for Cloud Shell: '{value}'.\n"
            f"Cloud Shell runs in: {', '.join(sorted(CLOUD_SHELL_REGIONS))}"
        )
    return region


_VALIDATORS: dict[str, Callable[[str, Any], Any]] = {
    "deploy.backend": _choice(BACKENDS, "backend"),
    "deploy.history_limit": _number(allow_zero=False),
    "local.auto_install_module": _boolean,
    "cloudshell.shell_type": _choice(SHELL_TYPES, "shell type"),
    "cloudshell.location": _region,
    "cloudshell.socket_timeout": _number(allow_zero=False),
    "cloudshell.poll_interval": _number(allow_zero=False),
    "cloudshell.provision_timeout": _number(allow_zero=False),
    "cloudshell.cols": _number(allow_zero=False),
    "cloudshell.rows": _number(allow_zero=False),
    "cloudshell.command_delay": _number(allow_zero=True),
    "mock.time_scale": _number(allow_zero=True),
}


class MateConfig:
    """``mate.yaml`` plus its secrets overlay, addressed by dotted keys."""

    CONFIG_FILENAME = "mate.yaml"
    SECRETS_FILENAME = "mate.secrets.yaml"

    def __init__(self, project_dir: str = "."):
        self.project_dir = Path(project_dir)
        self.config_path = self.project_dir / self.CONFIG_FILENAME
        self.secrets_path = self.project_dir / self.SECRETS_FILENAME
        self._config: dict = copy.deepcopy(DEFAULT_CONFIG)
        self._secrets: dict = {}

    def load(self) -> dict:
        """Read both files over the defaults; raises CLIError on unreadable YAML."""
        self._config = copy.deepcopy(DEFAULT_CONFIG)
        self._secrets = {}

        if self.config_path.exists():
            _merge(self._config, self._read(self.config_path))
        else:
            logger.debug("No %s in %s; using defaults", self.CONFIG_FILENAME, self.project_dir)

        if self.secrets_path.exists():
            self._secrets = self._read(self.secrets_path)
            _merge(self._config, self._secrets)

        return self._config

    def save(self):
        """Write mate.yaml with secret values blanked out."""
        public = copy.deepcopy(self._config)
        for key in SECRET_KEYS:
            if _lookup(public, key) is not None:
                _set_nested(public, key, "")
        self._write(self.config_path, public)

    def save_secrets(self):
        if self._secrets:
            self._write(self.secrets_path, self._secrets)

    def create_default(self, overrides: dict | None = None) -> dict:
        """Start a fresh mate.yaml from the defaults plus *overrides*."""
        self._config = copy.deepcopy(DEFAULT_CONFIG)
        self._secrets = {}

        if overrides:
            _merge(self._config, copy.deepcopy(overrides))
            for key in SECRET_KEYS:
                value = _lookup(overrides, key)
                if value:
                    _set_nested(self._secrets, key, value)

        self.save()
        self.save_secrets()
        return self._config

    def get(self, key: str, default: Any = None) -> Any:
        """``config.get("cloudshell.socket_timeout")``"""
        return _lookup(self._config, key, default)

    def set(self, key: str, value: Any):
        """Validate, store and persist one dotted key."""
        value = self.validate_value(key, value)
        _set_nested(self._config, key, value)
        self.save()
        if self.is_secret_key(key):
            _set_nested(self._secrets, key, value)
            self.save_secrets()

    def to_dict(self) -> dict:
        return copy.deepcopy(self._config)

    def masked(self) -> dict:
        """Copy of the config with non-empty secret values replaced by ``***``."""
        data = self.to_dict()
        for key in SECRET_KEYS:
            if _lookup(data, key):
                _set_nested(data, key, "***")
        return data

    def exists(self) -> bool:
        return self.config_path.exists()

    @staticmethod
    def validate_value(key: str, value: Any) -> Any:
        """Return *value* coerced for *key*, or raise CLIError."""
        validator = _VALIDATORS.get(key)
        return validator(key, value) if validator else value

    @staticmethod
    def is_secret_key(key: str) -> bool:
        """Whether *key* is stored in the secrets file."""
        return any(key == secret or key.startswith(secret + ".") for secret in SECRET_KEYS)

    @staticmethod
    def _read(path: Path) -> dict:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise CLIError(f"Could not parse {path}: {exc}") from exc
        if not isinstance(data, dict):
            raise CLIError(f"{path} must contain a YAML mapping.")
        return data

    def _write(self, path: Path, data: dict) -> None:
        self.project_dir.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            yaml.safe_dump(_plain(data), f, default_flow_style=False, sort_keys=False, allow_unicode=True)
        logger.debug("Wrote %s", path)
