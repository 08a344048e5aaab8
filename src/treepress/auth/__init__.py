"""Token checks shared by the content API and the git endpoints."""

from treepress.auth.gatekeeper import (
    AuthGatekeeper,
    AuthStatus,
    SecretResolutionError,
    basic_username,
    resolve_secret,
    tokens_match,
)

__all__ = [
    "AuthGatekeeper",
    "AuthStatus",
    "SecretResolutionError",
    "basic_username",
    "resolve_secret",
    "tokens_match",
]
