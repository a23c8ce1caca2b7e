"""Token models for the authorization code exchange.

Contains the token set produced by the exchange chain and the error body
shape token endpoints return (RFC 6749 Section 5).
"""

from __future__ import annotations

import time

from pydantic import BaseModel, ConfigDict


class TokenSet(BaseModel):
    """Tokens returned by a successful exchange (RFC 6749 Section 5.1).

    Ephemeral: handed straight to the session store and never persisted.
    """

    model_config = ConfigDict(extra="ignore")

    access_token: str
    refresh_token: str | None = None
    expires_in: int | None = None  # Seconds until expiry
    token_type: str = "bearer"
    id_token: str | None = None
    scope: str | None = None

    def calculate_expires_at(self) -> float | None:
        """Calculate absolute expiry timestamp from expires_in.

        Returns:
            Unix timestamp when token expires, or None if no expiry
        """
        if self.expires_in is None:
            return None
        return time.time() + self.expires_in

    def redacted(self) -> dict[str, object]:
        """Lengths and presence flags only, safe for logs and diagnostics."""
        return {
            "access_token_length": len(self.access_token),
            "has_refresh_token": self.refresh_token is not None,
            "refresh_token_length": len(self.refresh_token or ""),
            "has_id_token": self.id_token is not None,
            "expires_in": self.expires_in,
            "token_type": self.token_type,
        }


class TokenErrorResponse(BaseModel):
    """Error body from a token endpoint (RFC 6749 Section 5.2)."""

    model_config = ConfigDict(extra="ignore")

    error: str | None = None
    error_description: str | None = None
    error_uri: str | None = None
    # Some backends use these instead of the RFC fields
    msg: str | None = None
    message: str | None = None

    def describe(self, fallback: str) -> str:
        return (
            self.error_description
            or self.error
            or self.msg
            or self.message
            or fallback
        )
