"""Security checks for the callback leg of the PKCE flow."""

from __future__ import annotations

import secrets
from urllib.parse import urlparse

from pkceflow.models.errors import StateMismatchError, StateValidationError


def validate_state(expected: str, actual: str | None) -> None:
    """Validate state parameter matches expected value.

    Args:
        expected: State parameter stored when the flow was initiated
        actual: State parameter from callback URL

    Raises:
        StateValidationError: If the callback carried no state
        StateMismatchError: If state parameters don't match
    """
    if actual is None:
        raise StateValidationError(
            "Authorization server callback missing required state parameter"
        )
    if not secrets.compare_digest(expected.encode("utf-8"), actual.encode("utf-8")):
        raise StateMismatchError("State parameter mismatch - possible CSRF attack")


def validate_redirect_uri(uri: str) -> bool:
    """Validate redirect URI is HTTPS, or plain HTTP on a loopback host.

    Args:
        uri: Redirect URI to validate
    """
    try:
        parsed = urlparse(uri)
    except ValueError:
        return False
    return parsed.scheme == "https" or (
        parsed.scheme == "http" and parsed.hostname in ("localhost", "127.0.0.1")
    )
