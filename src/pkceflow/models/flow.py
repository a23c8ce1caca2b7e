"""Authorization flow models.

Contains models for authorization requests, callback handling, the
orchestrator's state machine and the user-facing outcome classification.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from urllib.parse import parse_qs, urlencode, urlparse

from pkceflow.models.errors import OAuth2Error


class FlowState(str, Enum):
    IDLE = "idle"
    INITIATED = "initiated"
    REDIRECTED = "redirected"
    CALLBACK_RECEIVED = "callback_received"
    EXCHANGING = "exchanging"
    COMPLETE = "complete"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (FlowState.COMPLETE, FlowState.FAILED)


@dataclass(frozen=True)
class AuthorizationRequest:
    """Authorization request parameters for the PKCE flow."""

    authorization_endpoint: str
    client_id: str
    redirect_uri: str
    code_challenge: str
    code_challenge_method: str
    state: str
    scopes: Sequence[str] = ()
    extra_params: Mapping[str, str] = field(default_factory=dict)

    def build_authorization_url(self) -> str:
        """Build the complete authorization URL."""
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "code_challenge": self.code_challenge,
            "code_challenge_method": self.code_challenge_method,
            "state": self.state,
        }

        if self.scopes:
            params["scope"] = " ".join(self.scopes)

        # Provider extras never override protocol parameters
        for key, value in self.extra_params.items():
            params.setdefault(key, value)

        separator = "&" if "?" in self.authorization_endpoint else "?"
        return f"{self.authorization_endpoint}{separator}{urlencode(params)}"


@dataclass(frozen=True)
class AuthorizationResponse:
    code: str | None = None
    state: str | None = None
    error: str | None = None
    error_description: str | None = None
    error_uri: str | None = None

    def is_success(self) -> bool:
        return self.error is None and self.code is not None

    def is_error(self) -> bool:
        return self.error is not None

    @classmethod
    def from_query_params(
        cls, query_params: Mapping[str, str | Sequence[str] | None]
    ) -> AuthorizationResponse:
        """Build a response from already-parsed callback query parameters.

        Accepts both flat mappings and ``parse_qs`` style lists. Empty values
        are treated as absent.
        """

        def get_single_param(key: str) -> str | None:
            value = query_params.get(key)
            if isinstance(value, (list, tuple)):
                value = value[0] if value else None
            return value or None

        return cls(
            code=get_single_param("code"),
            state=get_single_param("state"),
            error=get_single_param("error"),
            error_description=get_single_param("error_description"),
            error_uri=get_single_param("error_uri"),
        )


def parse_callback_url(callback_url: str) -> dict[str, list[str]]:
    """Split a full callback URL into ``parse_qs`` style query parameters."""
    return parse_qs(urlparse(callback_url).query)


@dataclass(frozen=True)
class FlowOutcome:
    """Restart-safe, user-facing classification of a flow result."""

    code: str
    message: str
    restartable: bool = True


_OUTCOME_MESSAGES = {
    "success": "Signed in successfully.",
    "crypto_unavailable": "Secure sign-in is not available in this environment.",
    "storage_unavailable": "Sign-in data could not be saved. Check storage settings.",
    "pkce_error": "Your sign-in attempt expired or was interrupted. Please try again.",
    "state_mismatch": "The sign-in response could not be verified. Please try again.",
    "provider_denied": "Sign-in was cancelled or denied by the provider.",
    "invalid_callback": "Invalid authentication callback. Please try again.",
    "exchange_failed": "Sign-in could not be completed. Please try again.",
    "session_error": "Signed in, but the session could not be created. Please try again.",
    "callback_error": "Unexpected authentication error. Please try again.",
}


def classify_error(error: BaseException | None) -> FlowOutcome:
    """Map a flow result onto one of a fixed set of outcomes.

    ``None`` means success. Exceptions outside the OAuth hierarchy map to
    ``callback_error``.
    """
    if error is None:
        return FlowOutcome("success", _OUTCOME_MESSAGES["success"])
    if isinstance(error, OAuth2Error):
        code = error.outcome
        restartable = error.restartable
    else:
        code = "callback_error"
        restartable = True
    return FlowOutcome(code, _OUTCOME_MESSAGES[code], restartable)
