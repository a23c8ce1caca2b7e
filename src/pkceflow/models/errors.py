"""Exception hierarchy for PKCE authorization code flows.

Provides specific exception types for different failure modes to enable
precise error handling and recovery strategies. Every exception carries an
``outcome`` code so UI layers can map failures onto a small, finite set of
restart-safe screens instead of surfacing raw provider strings.
"""

from __future__ import annotations

from dataclasses import dataclass


class OAuth2Error(Exception):
    """Base exception for all OAuth 2.0 flow errors."""

    outcome: str = "callback_error"
    restartable: bool = True


class CryptoUnavailableError(OAuth2Error):
    """Raised when no cryptographically secure random source is reachable.

    Fatal. The flow must abort instead of degrading to weaker randomness.
    """

    outcome = "crypto_unavailable"
    restartable = False


class StorageUnavailableError(OAuth2Error):
    """Raised when PKCE parameters cannot be written to or read from storage."""

    outcome = "storage_unavailable"
    restartable = False


class PKCEError(OAuth2Error):
    """Raised when PKCE parameter generation or validation fails."""

    outcome = "pkce_error"


class PKCEStateNotFoundError(PKCEError):
    """Raised when a callback arrives with no stored (or only expired) parameters."""

    pass


class AuthorizationError(OAuth2Error):
    """Raised when user authorization fails."""

    pass


class ProviderDeniedError(AuthorizationError):
    """Raised when the identity provider returned an ``error`` on the callback."""

    outcome = "provider_denied"

    def __init__(self, error: str, error_description: str | None = None):
        self.error = error
        self.error_description = error_description
        message = f"Authorization denied by provider: {error}"
        if error_description:
            message += f" ({error_description})"
        super().__init__(message)


class AuthorizationCallbackError(OAuth2Error):
    """Raised when authorization server callback data is malformed or invalid.

    This indicates the authorization server sent an invalid callback,
    not that our callback handling code failed.
    """

    outcome = "invalid_callback"


class MissingAuthorizationCodeError(AuthorizationCallbackError):
    """Raised when the callback carries neither an error nor a code."""

    pass


class StateValidationError(AuthorizationCallbackError):
    """Raised when OAuth state parameter validation fails.

    This indicates either a missing state parameter or a state mismatch,
    which could indicate a CSRF attack or authorization server issue.
    """

    outcome = "state_mismatch"


class StateMismatchError(StateValidationError):
    """Raised when the returned state differs from the stored state."""

    pass


class TokenError(OAuth2Error):
    """Raised when token operations fail."""

    outcome = "exchange_failed"


class StrategyError(TokenError):
    """Raised by a single exchange strategy. Absorbed by the chain."""

    def __init__(self, strategy: str, message: str, status_code: int | None = None):
        self.strategy = strategy
        self.status_code = status_code
        super().__init__(message)


@dataclass(frozen=True)
class StrategyFailure:
    """One failed attempt recorded by the exchange chain."""

    strategy: str
    message: str
    status_code: int | None = None


class ExchangeFailedError(TokenError):
    """Raised when every token exchange strategy failed.

    The message is the last strategy's error; all failures are kept in
    ``failures`` in attempt order.
    """

    def __init__(self, failures: list[StrategyFailure]):
        self.failures = list(failures)
        if self.failures:
            message = self.failures[-1].message
        else:
            message = "No token exchange strategies configured"
        super().__init__(message)


class SessionCreationError(OAuth2Error):
    """Raised when the session store rejects the exchanged tokens."""

    outcome = "session_error"
