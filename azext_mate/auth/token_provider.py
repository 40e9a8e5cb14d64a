"""Bearer-token acquisition for the Azure management plane.

The session asks for a token once, before any backend is invoked.
:class:`AzureCliTokenProvider` first tries the account already signed in
to the Azure CLI; when Entra ID demands user interaction it runs the
browser consent flow a single time and retries silently once.  Any other
failure is an :class:`~azext_mate.deploy.errors.AuthenticationError`.
"""

from __future__ import annotations

import json
import logging
import os
import re
import shutil
import subprocess
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Sequence

from azext_mate.deploy.errors import AuthenticationError

logger = logging.getLogger(__name__)

MANAGEMENT_SCOPE = "https://management.azure.com/.default"


@dataclass
class AccessToken:
    """A bearer token and what it was issued for."""

    token: str
    expires_on: str = ""
    tenant_id: str = ""

    def __repr__(self) -> str:
        return f"AccessToken(token='***', expires_on={self.expires_on!r}, tenant_id={self.tenant_id!r})"


class AccessTokenProvider(ABC):
    """Contract consumed by the deployment session."""

    @abstractmethod
    def acquire_token(self, scopes: Sequence[str]) -> AccessToken:
        """Return a token for *scopes* or raise ``AuthenticationError``."""


class StaticTokenProvider(AccessTokenProvider):
    """Serves a token the caller already holds (``--access-token``)."""

    def __init__(self, token: str, tenant_id: str = ""):
        if not token:
            raise AuthenticationError("An empty access token was supplied.")
        self._token = AccessToken(token=token, tenant_id=tenant_id)

    def acquire_token(self, scopes: Sequence[str]) -> AccessToken:
        return self._token


# ======================================================================
# Azure CLI
# ======================================================================

def _find_az() -> str:
    """Resolve the ``az`` executable.

    Tries ``shutil.which``, then the ``bin/`` directory of the running
    interpreter (``az`` is installed beside it), then bare ``az``.
    """
    found = shutil.which("az")
    if found:
        return found

    bin_dir = os.path.dirname(sys.executable)
    candidate = os.path.join(bin_dir, "az")
    if os.path.isfile(candidate):
        return candidate
    if os.path.isfile(candidate + ".cmd"):
        return candidate + ".cmd"

    return "az"


_AZ: str | None = None


def _az() -> str:
    """Return the cached az CLI path."""
    global _AZ
    if _AZ is None:
        _AZ = _find_az()
    return _AZ


# Failure text meaning "a human has to sign in or consent".
_INTERACTION_REQUIRED_RE = re.compile(
    r"interaction_required|consent_required|login_required"
    r"|please run ['\"]?az login"
    r"|AADSTS(50076|50078|50079|65001|70043|700082|160021)",
    re.IGNORECASE,
)


class InteractionRequired(Exception):
    """Silent acquisition failed in a way the consent flow can fix."""


class AzureCliTokenProvider(AccessTokenProvider):
    """Acquire tokens through the signed-in Azure CLI account."""

    def __init__(self, tenant_id: str | None = None):
        self._tenant_id = tenant_id or None

    def acquire_token(self, scopes: Sequence[str]) -> AccessToken:
        scopes = list(scopes) or [MANAGEMENT_SCOPE]
        try:
            return self._acquire_silent(scopes)
        except InteractionRequired as exc:
            logger.info("Silent token acquisition needs user interaction: %s", exc)

        self._acquire_interactive(scopes)
        try:
            return self._acquire_silent(scopes)
        except InteractionRequired as exc:
            raise AuthenticationError(
                f"Azure sign-in did not produce a usable token: {exc}\n"
                "Run 'az login' and start the deployment again."
            ) from exc

    # ------------------------------------------------------------------ #
    # Internal helpers
    # ------------------------------------------------------------------ #

    def _acquire_silent(self, scopes: list[str]) -> AccessToken:
        cmd = [_az(), "account", "get-access-token", "--scope", *scopes, "-o", "json"]
        if self._tenant_id:
            cmd.extend(["--tenant", self._tenant_id])

        try:
            result = subprocess.run(cmd, capture_output=True, text=True, check=False)
        except FileNotFoundError as exc:
            raise AuthenticationError(
                "Azure CLI (az) was not found on PATH. Install it from https://aka.ms/azcli."
            ) from exc

        if result.returncode != 0:
            error = result.stderr.strip() or result.stdout.strip()
            if _INTERACTION_REQUIRED_RE.search(error):
                raise InteractionRequired(error)
            raise AuthenticationError(f"Failed to acquire an Azure access token: {error}")

        try:
            data = json.loads(result.stdout)
            token = data["accessToken"]
        except (json.JSONDecodeError, KeyError, TypeError) as exc:
            raise AuthenticationError("Azure CLI returned an unreadable access token response.") from exc

        logger.debug("Acquired access token for %s (expires %s)", scopes, data.get("expiresOn", ""))
        return AccessToken(
            token=token,
            expires_on=str(data.get("expiresOn", "")),
            tenant_id=data.get("tenant", "") or "",
        )

    def _acquire_interactive(self, scopes: list[str]) -> None:
        """Run the browser consent flow once."""
        logger.info("Starting interactive Azure sign-in...")
        cmd = [_az(), "login"]
        for scope in scopes:
            cmd.extend(["--scope", scope])
        if self._tenant_id:
            cmd.extend(["--tenant", self._tenant_id])

        try:
            result = subprocess.run(cmd, check=False)
        except FileNotFoundError as exc:
            raise AuthenticationError(
                "Azure CLI (az) was not found on PATH. Install it from https://aka.ms/azcli."
            ) from exc

        if result.returncode != 0:
            raise AuthenticationError(
                "Interactive Azure sign-in failed. Run 'az login' manually and retry."
            )
