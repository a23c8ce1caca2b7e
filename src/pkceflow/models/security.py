"""Security-related models for PKCE authorization code flows.

Contains the PKCE parameter set that is persisted across the redirect
between the initiation and callback legs.
"""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from typing import Any

from pkceflow.primitives.crypto import (
    MAX_VERIFIER_LENGTH,
    MIN_VERIFIER_LENGTH,
)


@dataclass(frozen=True)
class PKCEParameters:
    """PKCE (Proof Key for Code Exchange) parameters for one authorization attempt.

    Immutable parameters generated for each authorization flow to prevent
    authorization code interception attacks (RFC 7636). Keyed in storage by
    ``provider``.
    """

    code_verifier: str = field()
    code_challenge: str = field()
    state: str = field()
    provider: str = field()
    code_challenge_method: str = field(default="S256")
    created_at: float = field(default_factory=time.time)
    redirect_uri: str | None = None

    def __post_init__(self) -> None:
        """Validate PKCE parameters meet RFC 7636 requirements."""
        if not (MIN_VERIFIER_LENGTH <= len(self.code_verifier) <= MAX_VERIFIER_LENGTH):
            raise ValueError("code_verifier must be 43-128 characters")
        if len(self.code_challenge) != 43:
            raise ValueError("code_challenge must be exactly 43 characters")
        if self.code_challenge_method != "S256":
            raise ValueError("Only S256 code challenge method is supported")
        if not self.state:
            raise ValueError("state must not be empty")
        if not self.provider:
            raise ValueError("provider must not be empty")

    def age(self, now: float | None = None) -> float:
        """Seconds elapsed since the parameters were created."""
        return (time.time() if now is None else now) - self.created_at

    def is_expired(self, ttl: float, now: float | None = None) -> bool:
        return self.age(now) > ttl

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PKCEParameters:
        """Rebuild parameters read back from storage.

        Raises:
            ValueError: If required fields are missing or malformed
        """
        try:
            return cls(
                code_verifier=data["code_verifier"],
                code_challenge=data["code_challenge"],
                state=data["state"],
                provider=data["provider"],
                code_challenge_method=data.get("code_challenge_method", "S256"),
                created_at=float(data["created_at"]),
                redirect_uri=data.get("redirect_uri"),
            )
        except (KeyError, TypeError) as e:
            raise ValueError(f"Malformed PKCE parameters: {e}") from e
