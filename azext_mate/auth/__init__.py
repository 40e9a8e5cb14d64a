"""Access-token acquisition."""

from azext_mate.auth.token_provider import (
    AccessToken,
    AccessTokenProvider,
    AzureCliTokenProvider,
    StaticTokenProvider,
)

__all__ = ["AccessToken", "AccessTokenProvider", "AzureCliTokenProvider", "StaticTokenProvider"]
