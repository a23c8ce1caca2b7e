"""PKCE authorization code flow orchestration.

Drives both legs of the protocol. ``initiate`` generates and persists PKCE
parameters and returns the authorization URL; navigation is left to the
caller. ``handle_callback`` runs in whatever process receives the redirect,
validates the callback against the stored parameters, exchanges the code
and hands the tokens to the session store.

The two legs share nothing but the callback URL and the key/value store.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping, Sequence
from typing import Any, Protocol

import httpx

from pkceflow.config import ProviderConfig, Settings
from pkceflow.models.diagnostics import Phase
from pkceflow.models.errors import (
    CryptoUnavailableError,
    ExchangeFailedError,
    MissingAuthorizationCodeError,
    PKCEStateNotFoundError,
    ProviderDeniedError,
    SessionCreationError,
    StateValidationError,
    StorageUnavailableError,
    StrategyFailure,
)
from pkceflow.models.flow import (
    AuthorizationRequest,
    AuthorizationResponse,
    FlowOutcome,
    FlowState,
    classify_error,
    parse_callback_url,
)
from pkceflow.models.tokens import TokenSet
from pkceflow.primitives.storage import JsonFileStore, KeyValueStore, MemoryStore
from pkceflow.services.diagnostics import FlowObserver, NullObserver
from pkceflow.services.exchange import TokenExchangeChain, build_default_chain
from pkceflow.services.pkce import PKCEManager
from pkceflow.services.security import validate_redirect_uri, validate_state

logger = logging.getLogger(__name__)

_TRANSITIONS: dict[FlowState, frozenset[FlowState]] = {
    FlowState.IDLE: frozenset({FlowState.INITIATED, FlowState.CALLBACK_RECEIVED}),
    FlowState.INITIATED: frozenset({FlowState.REDIRECTED, FlowState.FAILED}),
    FlowState.REDIRECTED: frozenset({FlowState.INITIATED, FlowState.CALLBACK_RECEIVED}),
    FlowState.CALLBACK_RECEIVED: frozenset({FlowState.EXCHANGING, FlowState.FAILED}),
    FlowState.EXCHANGING: frozenset({FlowState.COMPLETE, FlowState.FAILED}),
    FlowState.COMPLETE: frozenset({FlowState.INITIATED, FlowState.CALLBACK_RECEIVED}),
    FlowState.FAILED: frozenset({FlowState.INITIATED, FlowState.CALLBACK_RECEIVED}),
}

_FAILURE_EVENTS: tuple[tuple[type[BaseException], str], ...] = (
    (CryptoUnavailableError, "crypto_unavailable"),
    (StorageUnavailableError, "storage_unavailable"),
    (ProviderDeniedError, "provider_denied"),
    (MissingAuthorizationCodeError, "missing_authorization_code"),
    (PKCEStateNotFoundError, "pkce_state_not_found"),
    (StateValidationError, "state_mismatch"),
    (ExchangeFailedError, "exchange_failed"),
    (SessionCreationError, "session_creation_failed"),
    (asyncio.CancelledError, "flow_abandoned"),
)


class SessionStore(Protocol):
    """Destination for exchanged tokens.

    Whatever ``create_session`` returns is handed back to the caller of
    ``handle_callback``. Raising, or returning ``False``, fails the flow.
    """

    async def create_session(
        self, access_token: str, refresh_token: str | None
    ) -> Any: ...


class OAuthFlow:
    """Orchestrates the PKCE authorization code flow.

    State machine::

        IDLE -> INITIATED -> REDIRECTED -> CALLBACK_RECEIVED -> EXCHANGING
             -> COMPLETE | FAILED

    A fresh instance on the callback leg starts from IDLE and moves straight
    to CALLBACK_RECEIVED. Any exception escaping a leg, cancellation
    included, leaves the flow FAILED.
    """

    def __init__(
        self,
        session_store: SessionStore,
        providers: Sequence[ProviderConfig] | None = None,
        settings: Settings | None = None,
        store: KeyValueStore | None = None,
        exchange_chain: TokenExchangeChain | None = None,
        observer: FlowObserver | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        """Initialize the flow.

        Args:
            session_store: Receives the tokens of a successful exchange
            providers: Identity providers; defaults to those in settings
            settings: Runtime settings; loaded from the environment if omitted
            store: Storage for PKCE parameters; a JSON file store when
                ``settings.storage_path`` is set, in-memory otherwise
            exchange_chain: Overrides the per-provider default chain
            observer: Diagnostic observer, e.g. a DiagnosticRecorder
            http_client: Shared client for the default exchange chains
        """
        self.settings = settings or Settings()
        if not validate_redirect_uri(self.settings.redirect_uri):
            raise ValueError(
                f"Redirect URI must be HTTPS or loopback HTTP: {self.settings.redirect_uri}"
            )

        if providers is None:
            self.providers = self.settings.configured_providers()
        else:
            self.providers = {p.name: p for p in providers}

        if store is None:
            if self.settings.storage_path:
                store = JsonFileStore(self.settings.storage_path)
            else:
                store = MemoryStore()

        self.pkce_manager = PKCEManager(
            store,
            ttl_seconds=self.settings.pkce_ttl_seconds,
            verifier_length=self.settings.verifier_length,
        )
        self.session_store = session_store
        self.observer: FlowObserver = observer or NullObserver()

        self._exchange_chain = exchange_chain
        self._chains: dict[str, TokenExchangeChain] = {}
        self._http_client = http_client
        self._owns_http_client = http_client is None

        self._state = FlowState.IDLE
        self._last_error: BaseException | None = None
        self._leg_running = False

    @property
    def state(self) -> FlowState:
        return self._state

    @property
    def last_error(self) -> BaseException | None:
        return self._last_error

    @property
    def outcome(self) -> FlowOutcome | None:
        """User-facing classification once the flow is terminal."""
        if not self._state.is_terminal:
            return None
        return classify_error(self._last_error)

    async def initiate(self, provider: str | None = None) -> str:
        """Start a flow and return the authorization URL to navigate to.

        Parameters are persisted before the URL is returned, so a returned
        URL always has retrievable parameters behind it.

        Raises:
            ValueError: If the provider is not configured
            CryptoUnavailableError: If no secure random source is available
            StorageUnavailableError: If parameters could not be persisted
        """
        provider = provider or self.settings.default_provider
        config = self._provider_config(provider)

        self._transition(FlowState.INITIATED)
        self._last_error = None
        self._leg_running = True
        try:
            await self.observer.flow_started(provider)
            logger.info(f"Starting PKCE authorization flow for {provider}")
            authorization_url = await self._build_authorization_url(provider, config)
        except BaseException as e:
            await self._fail(provider, e, "initiation")
            raise
        finally:
            self._leg_running = False

        self._transition(FlowState.REDIRECTED)
        await self.observer.phase_event(
            provider,
            "authorization_url_built",
            "redirect",
            True,
            {
                "redirect_uri": self.settings.redirect_uri,
                "scopes": list(config.scopes),
                "endpoint": config.authorization_endpoint,
            },
        )
        logger.debug(f"Generated authorization URL for client {config.client_id}")

        return authorization_url

    async def handle_callback(
        self,
        query_params: Mapping[str, str | Sequence[str] | None],
        provider: str | None = None,
    ) -> Any:
        """Validate a provider callback, exchange the code and create a session.

        If the caller abandons the callback (task cancellation) or anything
        outside the OAuth error hierarchy escapes, the flow still ends FAILED
        and the observer is told the flow finished.

        Args:
            query_params: Parsed callback query (``code``, ``state``,
                ``error``, ``error_description``)
            provider: Provider the flow was started for

        Returns:
            Whatever the session store returned

        Raises:
            ProviderDeniedError: The provider returned an error
            MissingAuthorizationCodeError: No code on the callback
            PKCEStateNotFoundError: No stored, unexpired parameters
            StateValidationError: State missing or mismatched (possible CSRF)
            ExchangeFailedError: Every exchange strategy failed
            SessionCreationError: The session store rejected the tokens
            StorageUnavailableError: Stored parameters could not be read
        """
        provider = provider or self.settings.default_provider

        self._transition(FlowState.CALLBACK_RECEIVED)
        self._last_error = None
        self._leg_running = True

        phase: Phase = "callback"
        try:
            response = AuthorizationResponse.from_query_params(query_params)
            await self.observer.phase_event(
                provider,
                "callback_received",
                "callback",
                not response.is_error(),
                {
                    "code": response.code,
                    "state": response.state,
                    "error": response.error,
                    "error_description": response.error_description,
                },
                response.error,
            )

            # Provider errors never touch stored parameters
            if response.is_error():
                raise ProviderDeniedError(response.error, response.error_description)
            if response.code is None:
                raise MissingAuthorizationCodeError("Missing authorization code")

            params = await self.pkce_manager.consume(provider)
            if params is None:
                raise PKCEStateNotFoundError(
                    f"No PKCE parameters found for {provider}; "
                    "the flow expired or was started elsewhere"
                )

            validate_state(params.state, response.state)
            await self.observer.phase_event(
                provider,
                "state_validated",
                "callback",
                True,
                {"code_verifier": params.code_verifier},
            )

            phase = "exchange"
            self._transition(FlowState.EXCHANGING)
            redirect_uri = params.redirect_uri or self.settings.redirect_uri
            tokens = await self._exchange(
                provider, response.code, params.code_verifier, redirect_uri
            )

            phase = "completion"
            session = await self._create_session(tokens)

        except BaseException as e:
            await self._fail(provider, e, phase)
            raise
        finally:
            self._leg_running = False

        self._transition(FlowState.COMPLETE)
        await self.observer.phase_event(
            provider, "session_created", "completion", True, tokens.redacted()
        )
        await self.observer.flow_finished(provider, True)
        logger.info(f"PKCE authorization flow for {provider} completed")
        return session

    async def handle_callback_url(
        self, callback_url: str, provider: str | None = None
    ) -> Any:
        """Like :meth:`handle_callback` for callers holding only the full URL."""
        return await self.handle_callback(parse_callback_url(callback_url), provider)

    async def cancel(self, provider: str | None = None) -> None:
        """Abandon an in-flight flow and purge its stored parameters.

        With no provider, every stored PKCE entry is purged.
        """
        await self.pkce_manager.clear(provider)
        if provider is not None:
            await self.observer.phase_event(
                provider, "flow_cancelled", "completion", False
            )
            await self.observer.flow_finished(provider, False)
        self._state = FlowState.IDLE
        logger.info(f"Cancelled PKCE flow for {provider or 'all providers'}")

    def reset(self) -> None:
        """Return the flow to IDLE so the instance can be reused.

        Raises:
            RuntimeError: While a leg of the flow is still running
        """
        if self._leg_running:
            raise RuntimeError(f"Cannot reset flow while {self._state.value}")
        self._state = FlowState.IDLE
        self._last_error = None

    async def close(self) -> None:
        """Close the HTTP client if this flow created it."""
        if self._http_client is not None and self._owns_http_client:
            await self._http_client.aclose()
            self._http_client = None

    async def _build_authorization_url(
        self, provider: str, config: ProviderConfig
    ) -> str:
        params = await self.pkce_manager.generate(
            provider, redirect_uri=self.settings.redirect_uri
        )
        await self.observer.phase_event(
            provider,
            "pkce_generated",
            "initiation",
            True,
            {
                "code_verifier": params.code_verifier,
                "code_challenge": params.code_challenge,
                "code_challenge_method": params.code_challenge_method,
                "state": params.state,
            },
        )

        auth_request = AuthorizationRequest(
            authorization_endpoint=config.authorization_endpoint,
            client_id=config.client_id,
            redirect_uri=self.settings.redirect_uri,
            code_challenge=params.code_challenge,
            code_challenge_method=params.code_challenge_method,
            state=params.state,
            scopes=config.scopes,
            extra_params=config.extra_authorization_params,
        )
        return auth_request.build_authorization_url()

    async def _exchange(
        self, provider: str, code: str, verifier: str, redirect_uri: str
    ) -> TokenSet:
        chain = self._chain_for(provider)
        await self.observer.phase_event(
            provider,
            "exchange_started",
            "exchange",
            True,
            {
                "code": code,
                "code_verifier": verifier,
                "redirect_uri": redirect_uri,
                "strategies": [s.name for s in chain.strategies],
            },
        )

        failures: list[StrategyFailure] = []
        try:
            tokens = await chain.exchange(code, verifier, redirect_uri, failures)
        finally:
            for failure in failures:
                await self.observer.phase_event(
                    provider,
                    "strategy_failed",
                    "exchange",
                    False,
                    {"strategy": failure.strategy, "status_code": failure.status_code},
                    failure.message,
                )

        await self.observer.phase_event(
            provider, "exchange_succeeded", "exchange", True, tokens.redacted()
        )
        return tokens

    async def _create_session(self, tokens: TokenSet) -> Any:
        try:
            session = await self.session_store.create_session(
                tokens.access_token, tokens.refresh_token
            )
        except Exception as e:
            raise SessionCreationError(f"Failed to create session: {e}") from e

        if session is False:
            raise SessionCreationError("Session store rejected the tokens")
        return session

    def _chain_for(self, provider: str) -> TokenExchangeChain:
        if self._exchange_chain is not None:
            return self._exchange_chain

        if provider not in self._chains:
            if self._http_client is None:
                self._http_client = httpx.AsyncClient(
                    timeout=self.settings.http_timeout
                )
            self._chains[provider] = build_default_chain(
                self.settings, self._provider_config(provider), self._http_client
            )
        return self._chains[provider]

    def _provider_config(self, provider: str) -> ProviderConfig:
        try:
            return self.providers[provider]
        except KeyError:
            raise ValueError(f"Unknown identity provider: {provider}") from None

    def _transition(self, new_state: FlowState) -> None:
        if new_state not in _TRANSITIONS[self._state]:
            raise RuntimeError(
                f"Invalid flow transition: {self._state.value} -> {new_state.value}"
            )
        logger.debug(f"Flow state {self._state.value} -> {new_state.value}")
        self._state = new_state

    async def _fail(self, provider: str, error: BaseException, phase: Phase) -> None:
        self._state = FlowState.FAILED
        self._last_error = error

        if isinstance(error, StateValidationError):
            logger.warning(f"Security event for {provider}: {error}")
        elif isinstance(error, ProviderDeniedError):
            logger.warning(f"Provider {provider} denied authorization: {error.error}")
        elif isinstance(error, asyncio.CancelledError):
            logger.warning(f"PKCE flow for {provider} abandoned during {phase}")
        else:
            logger.error(f"PKCE flow for {provider} failed: {error!r}")

        event = next(
            (name for cls, name in _FAILURE_EVENTS if isinstance(error, cls)),
            "flow_failed",
        )
        await self.observer.phase_event(
            provider, event, phase, False, error=str(error) or type(error).__name__
        )
        await self.observer.flow_finished(provider, False)
