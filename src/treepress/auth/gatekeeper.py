from __future__ import annotations

import base64
import binascii
import enum
import hashlib
import hmac
import logging
import os
from typing import Optional

from treepress.config.models import AuthSettings

logger = logging.getLogger(__name__)

ENV_REFERENCE_PREFIX = "env:"


class SecretResolutionError(Exception):
    """Raised when a secret references an environment variable that is not set."""


class AuthStatus(enum.Enum):
    PUBLIC = "public"
    ADMIN = "admin"


def resolve_secret(value: Optional[str]) -> Optional[str]:
    """
    Resolve a configured secret.

    `None` means not configured. `env:NAME` reads the environment variable NAME
    at call time; anything else is returned as a literal.
    """
    if value is None:
        return None
    if value.startswith(ENV_REFERENCE_PREFIX):
        var_name = value[len(ENV_REFERENCE_PREFIX) :]
        resolved = os.environ.get(var_name)
        if resolved is None:
            raise SecretResolutionError(f"Environment variable {var_name} not set")
        return resolved
    return value


def tokens_match(provided: str, expected: str) -> bool:
    # Digests are fixed-length, so the comparison time does not depend on token length.
    provided_digest = hashlib.sha256(provided.encode("utf-8")).digest()
    expected_digest = hashlib.sha256(expected.encode("utf-8")).digest()
    return hmac.compare_digest(provided_digest, expected_digest)


def _parse_bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, credentials = authorization.partition(" ")
    if scheme != "Bearer":
        return None
    return credentials.strip()


def _parse_basic_password(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, encoded = authorization.partition(" ")
    if scheme != "Basic":
        return None
    try:
        decoded = base64.b64decode(encoded.strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None
    _username, sep, password = decoded.partition(":")
    if not sep:
        return None
    return password


class AuthGatekeeper:
    """Fail-closed token checks for the admin API token and the git push token."""

    def __init__(self, settings: AuthSettings) -> None:
        self._settings = settings

    def _expected_token(self, name: str, configured: Optional[str]) -> Optional[str]:
        try:
            token = resolve_secret(configured)
        except SecretResolutionError as e:
            logger.warning("Failed to resolve auth token, access denied. token=%s error=%s", name, e)
            return None
        if token is None:
            return None
        if not token:
            logger.warning("Auth token resolves to an empty string, access denied. token=%s", name)
            return None
        return token

    def check_bearer(self, authorization: Optional[str]) -> bool:
        """Return True when the header carries the configured API token."""
        provided = _parse_bearer(authorization)
        if provided is None:
            return False
        expected = self._expected_token("api_token", self._settings.api_token)
        if expected is None:
            return False
        return tokens_match(provided, expected)

    def check_basic(self, authorization: Optional[str]) -> bool:
        """Return True when the basic-auth password is the configured git token. The username is ignored."""
        provided = _parse_basic_password(authorization)
        if provided is None:
            return False
        expected = self._expected_token("git_token", self._settings.git_token)
        if expected is None:
            return False
        return tokens_match(provided, expected)

    def status_for(self, authorization: Optional[str]) -> AuthStatus:
        return AuthStatus.ADMIN if self.check_bearer(authorization) else AuthStatus.PUBLIC


def basic_username(authorization: Optional[str]) -> Optional[str]:
    """Username part of a basic-auth header, used as REMOTE_USER once the password has been checked."""
    if not authorization:
        return None
    scheme, _, encoded = authorization.partition(" ")
    if scheme != "Basic":
        return None
    try:
        decoded = base64.b64decode(encoded.strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None
    username, sep, _password = decoded.partition(":")
    return username if sep else None
