"""Authorization code to token exchange strategies.

Token endpoints behind proxies and managed auth backends disagree on
request shape (JSON vs form body, which endpoint, which credential header).
Each shape is a small strategy behind one interface; the chain tries them
strictly in order and stops at the first success.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Protocol

import httpx
from pydantic import ValidationError

from pkceflow.config import ProviderConfig, Settings
from pkceflow.models.errors import (
    ExchangeFailedError,
    StrategyError,
    StrategyFailure,
)
from pkceflow.models.tokens import TokenErrorResponse, TokenSet

logger = logging.getLogger(__name__)


class ExchangeStrategy(Protocol):
    """One request shape against a token endpoint.

    ``attempt`` must not retry internally and must not mutate shared state
    when it fails. Failures are raised as :class:`StrategyError`.
    """

    name: str

    async def attempt(self, code: str, verifier: str, redirect_uri: str) -> TokenSet: ...


class HttpExchangeStrategy(ABC):
    """Base for strategies that POST once to a token endpoint over HTTP."""

    name = "http"

    def __init__(self, http_client: httpx.AsyncClient, endpoint: str):
        self._http_client = http_client
        self.endpoint = endpoint

    @abstractmethod
    def build_request(
        self, code: str, verifier: str, redirect_uri: str
    ) -> dict[str, Any]:
        """Return keyword arguments for ``httpx.AsyncClient.post``."""

    async def attempt(self, code: str, verifier: str, redirect_uri: str) -> TokenSet:
        request = self.build_request(code, verifier, redirect_uri)
        url = request.pop("url", self.endpoint)

        logger.debug(f"Strategy {self.name}: POST {url}")

        try:
            response = await self._http_client.post(url, **request)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise StrategyError(self.name, f"HTTP error during token exchange: {e}") from e

        return self._parse_token_response(response)

    def _parse_token_response(self, response: httpx.Response) -> TokenSet:
        """Parse a token endpoint response into a TokenSet.

        Raises:
            StrategyError: For error responses or unparseable bodies
        """
        status_code = response.status_code

        if not 200 <= status_code < 300:
            try:
                error_body = TokenErrorResponse.model_validate(response.json())
                message = error_body.describe(f"{self.name} exchange failed")
            except (ValueError, ValidationError):
                message = f"{self.name} exchange failed with HTTP {status_code}"
            raise StrategyError(self.name, message, status_code=status_code)

        try:
            return TokenSet.model_validate(response.json())
        except ValidationError as e:
            raise StrategyError(
                self.name,
                f"Token response missing required fields: {e.error_count()} errors",
                status_code=status_code,
            ) from e
        except ValueError as e:
            raise StrategyError(
                self.name, f"Invalid token response format: {e}", status_code=status_code
            ) from e


class BackendJsonExchange(HttpExchangeStrategy):
    """JSON body against the session backend, grant type in the query string."""

    name = "backend-json"

    def __init__(self, http_client: httpx.AsyncClient, endpoint: str, api_key: str):
        super().__init__(http_client, endpoint)
        self._api_key = api_key

    def build_request(
        self, code: str, verifier: str, redirect_uri: str
    ) -> dict[str, Any]:
        return {
            "url": self.endpoint,
            "params": {"grant_type": "authorization_code"},
            "json": {"code": code, "code_verifier": verifier},
            "headers": {
                "Content-Type": "application/json",
                "Accept": "application/json",
                "apikey": self._api_key,
            },
        }


class ProviderFormExchange(HttpExchangeStrategy):
    """Form-encoded body straight to the identity provider's token endpoint."""

    name = "provider-form"

    def __init__(self, http_client: httpx.AsyncClient, endpoint: str, client_id: str):
        super().__init__(http_client, endpoint)
        self.client_id = client_id

    def build_request(
        self, code: str, verifier: str, redirect_uri: str
    ) -> dict[str, Any]:
        return {
            "data": {
                "client_id": self.client_id,
                "code": code,
                "code_verifier": verifier,
                "grant_type": "authorization_code",
                "redirect_uri": redirect_uri,
            },
            "headers": {
                "Content-Type": "application/x-www-form-urlencoded",
                "Accept": "application/json",
            },
        }


class BackendFormExchange(HttpExchangeStrategy):
    """Form-encoded body against the session backend with the API key header."""

    name = "backend-form"

    def __init__(self, http_client: httpx.AsyncClient, endpoint: str, api_key: str):
        super().__init__(http_client, endpoint)
        self._api_key = api_key

    def build_request(
        self, code: str, verifier: str, redirect_uri: str
    ) -> dict[str, Any]:
        return {
            "data": {
                "grant_type": "authorization_code",
                "code": code,
                "code_verifier": verifier,
                "redirect_uri": redirect_uri,
            },
            "headers": {
                "Content-Type": "application/x-www-form-urlencoded",
                "Accept": "application/json",
                "apikey": self._api_key,
            },
        }


class TokenExchangeChain:
    """Runs exchange strategies sequentially in priority order.

    Strategies are never run concurrently: the authorization code is single
    use, so parallel attempts would all but one fail provider-side.
    """

    def __init__(self, strategies: list[ExchangeStrategy]):
        self.strategies = list(strategies)

    async def exchange(
        self,
        code: str,
        verifier: str,
        redirect_uri: str,
        failures: list[StrategyFailure] | None = None,
    ) -> TokenSet:
        """Exchange an authorization code, returning the first successful TokenSet.

        Args:
            code: Authorization code from the callback
            verifier: PKCE code verifier
            redirect_uri: Redirect URI sent in the authorization request
            failures: Optional per-call list that receives each strategy
                failure, including those before a later success

        Raises:
            ExchangeFailedError: When every strategy failed; carries all failures
        """
        if failures is None:
            failures = []

        for strategy in self.strategies:
            logger.debug(f"Trying token exchange strategy: {strategy.name}")
            try:
                tokens = await strategy.attempt(code, verifier, redirect_uri)
            except StrategyError as e:
                logger.warning(f"Strategy {strategy.name} failed: {e}")
                failures.append(StrategyFailure(strategy.name, str(e), e.status_code))
                continue

            logger.info(f"Token exchange strategy {strategy.name} succeeded")
            return tokens

        logger.error(
            f"All {len(self.strategies)} token exchange strategies failed"
        )
        raise ExchangeFailedError(failures)


def build_default_chain(
    settings: Settings,
    provider: ProviderConfig,
    http_client: httpx.AsyncClient,
) -> TokenExchangeChain:
    """Assemble the standard strategy order from configuration.

    Backend strategies are skipped when no backend token URL is set; the
    provider strategy is skipped when the provider has no token endpoint.
    """
    strategies: list[ExchangeStrategy] = []
    api_key = settings.backend_api_key.get_secret_value()

    if settings.backend_token_url:
        strategies.append(
            BackendJsonExchange(http_client, settings.backend_token_url, api_key)
        )
    if provider.token_endpoint:
        strategies.append(
            ProviderFormExchange(http_client, provider.token_endpoint, provider.client_id)
        )
    if settings.backend_token_url:
        strategies.append(
            BackendFormExchange(http_client, settings.backend_token_url, api_key)
        )

    return TokenExchangeChain(strategies)
