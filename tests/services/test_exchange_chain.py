"""Tests for token exchange strategies and the ordered strategy chain.

Covers:
- Request shape of each strategy
- Success and error response parsing
- Sequential fallback and failure aggregation
- Default chain assembly from settings
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from pkceflow.config import ProviderConfig, Settings
from pkceflow.models.errors import ExchangeFailedError, StrategyError
from pkceflow.models.tokens import TokenSet
from pkceflow.services.exchange import (
    BackendFormExchange,
    BackendJsonExchange,
    ProviderFormExchange,
    TokenExchangeChain,
    build_default_chain,
)

VERIFIER = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
REDIRECT_URI = "https://myapp.com/auth/callback"


def make_response(status_code: int, body=None, json_error: bool = False) -> MagicMock:
    response = MagicMock()
    response.status_code = status_code
    if json_error:
        response.json.side_effect = ValueError("not json")
    else:
        response.json.return_value = body
    return response


class StubStrategy:
    def __init__(self, name: str, tokens: TokenSet | None = None, error: str = ""):
        self.name = name
        self._tokens = tokens
        self._error = error
        self.calls: list[tuple[str, str, str]] = []

    async def attempt(self, code: str, verifier: str, redirect_uri: str) -> TokenSet:
        self.calls.append((code, verifier, redirect_uri))
        if self._tokens is None:
            raise StrategyError(self.name, self._error or f"{self.name} failed", 400)
        return self._tokens


class YieldingFailure:
    """Fails after yielding to the event loop, naming the code it was given."""

    def __init__(self, name: str):
        self.name = name

    async def attempt(self, code: str, verifier: str, redirect_uri: str) -> TokenSet:
        await asyncio.sleep(0)
        raise StrategyError(self.name, f"{self.name} failed for {code}", 400)


class TestStrategyRequests:
    def setup_method(self):
        # Arrange
        self.http_client = AsyncMock()
        self.http_client.post.return_value = make_response(
            200,
            {
                "access_token": "access-token-xyz",
                "refresh_token": "refresh-token-abc",
                "expires_in": 3600,
                "token_type": "bearer",
            },
        )

    async def test_backend_json_exchange_request_shape(self):
        strategy = BackendJsonExchange(
            self.http_client, "https://backend.example.com/auth/v1/token", "anon-key"
        )

        # Act
        tokens = await strategy.attempt("auth-code-123", VERIFIER, REDIRECT_URI)

        # Assert
        assert tokens.access_token == "access-token-xyz"
        call_args = self.http_client.post.call_args
        assert call_args[0][0] == "https://backend.example.com/auth/v1/token"
        assert call_args[1]["params"] == {"grant_type": "authorization_code"}
        assert call_args[1]["json"] == {
            "code": "auth-code-123",
            "code_verifier": VERIFIER,
        }
        assert call_args[1]["headers"]["apikey"] == "anon-key"
        assert call_args[1]["headers"]["Content-Type"] == "application/json"

    async def test_provider_form_exchange_request_shape(self):
        strategy = ProviderFormExchange(
            self.http_client, "https://oauth2.example.com/token", "client-456"
        )

        await strategy.attempt("auth-code-123", VERIFIER, REDIRECT_URI)

        call_args = self.http_client.post.call_args
        assert call_args[0][0] == "https://oauth2.example.com/token"
        form_data = call_args[1]["data"]
        assert form_data == {
            "client_id": "client-456",
            "code": "auth-code-123",
            "code_verifier": VERIFIER,
            "grant_type": "authorization_code",
            "redirect_uri": REDIRECT_URI,
        }
        headers = call_args[1]["headers"]
        assert headers["Content-Type"] == "application/x-www-form-urlencoded"
        assert "apikey" not in headers

    async def test_backend_form_exchange_request_shape(self):
        strategy = BackendFormExchange(
            self.http_client, "https://backend.example.com/auth/v1/token", "anon-key"
        )

        await strategy.attempt("auth-code-123", VERIFIER, REDIRECT_URI)

        call_args = self.http_client.post.call_args
        form_data = call_args[1]["data"]
        assert form_data["grant_type"] == "authorization_code"
        assert form_data["redirect_uri"] == REDIRECT_URI
        assert "client_id" not in form_data
        assert call_args[1]["headers"]["apikey"] == "anon-key"


class TestStrategyErrors:
    def setup_method(self):
        self.http_client = AsyncMock()
        self.strategy = ProviderFormExchange(
            self.http_client, "https://oauth2.example.com/token", "client-456"
        )

    async def test_error_description_is_preferred(self):
        self.http_client.post.return_value = make_response(
            400,
            {
                "error": "invalid_grant",
                "error_description": "Authorization code has expired",
            },
        )

        with pytest.raises(StrategyError) as exc_info:
            await self.strategy.attempt("expired-code", VERIFIER, REDIRECT_URI)

        assert str(exc_info.value) == "Authorization code has expired"
        assert exc_info.value.status_code == 400
        assert exc_info.value.strategy == "provider-form"

    async def test_non_json_error_body(self):
        self.http_client.post.return_value = make_response(502, json_error=True)

        with pytest.raises(StrategyError) as exc_info:
            await self.strategy.attempt("code", VERIFIER, REDIRECT_URI)

        assert "HTTP 502" in str(exc_info.value)

    async def test_success_without_access_token(self):
        self.http_client.post.return_value = make_response(200, {"token_type": "bearer"})

        with pytest.raises(StrategyError) as exc_info:
            await self.strategy.attempt("code", VERIFIER, REDIRECT_URI)

        assert "missing required fields" in str(exc_info.value)

    async def test_network_error_is_wrapped(self):
        self.http_client.post.side_effect = httpx.ConnectError("connection refused")

        with pytest.raises(StrategyError) as exc_info:
            await self.strategy.attempt("code", VERIFIER, REDIRECT_URI)

        assert "HTTP error" in str(exc_info.value)
        assert exc_info.value.status_code is None

    async def test_invalid_url_is_wrapped(self):
        self.http_client.post.side_effect = httpx.InvalidURL("Invalid IPv6 URL")

        with pytest.raises(StrategyError) as exc_info:
            await self.strategy.attempt("code", VERIFIER, REDIRECT_URI)

        assert exc_info.value.strategy == "provider-form"
        assert "Invalid IPv6 URL" in str(exc_info.value)


class TestTokenExchangeChain:
    def setup_method(self):
        self.tokens = TokenSet(
            access_token="access-token-xyz", refresh_token="refresh-token-abc"
        )

    async def test_third_strategy_succeeds_after_two_failures(self):
        # Arrange
        first = StubStrategy("first", error="first broke")
        second = StubStrategy("second", error="second broke")
        third = StubStrategy("third", tokens=self.tokens)
        chain = TokenExchangeChain([first, second, third])

        failures = []

        # Act
        result = await chain.exchange("auth-code", VERIFIER, REDIRECT_URI, failures)

        # Assert
        assert result is self.tokens
        assert [f.strategy for f in failures] == ["first", "second"]
        for strategy in (first, second, third):
            assert strategy.calls == [("auth-code", VERIFIER, REDIRECT_URI)]

    async def test_stops_at_first_success(self):
        first = StubStrategy("first", tokens=self.tokens)
        second = StubStrategy("second", tokens=self.tokens)
        chain = TokenExchangeChain([first, second])

        failures = []

        await chain.exchange("auth-code", VERIFIER, REDIRECT_URI, failures)

        assert len(first.calls) == 1
        assert second.calls == []
        assert failures == []

    async def test_exhaustion_raises_with_last_message_and_all_failures(self):
        chain = TokenExchangeChain(
            [
                StubStrategy("first", error="first broke"),
                StubStrategy("second", error="second broke"),
                StubStrategy("third", error="third broke"),
            ]
        )

        with pytest.raises(ExchangeFailedError) as exc_info:
            await chain.exchange("auth-code", VERIFIER, REDIRECT_URI)

        assert str(exc_info.value) == "third broke"
        assert [f.message for f in exc_info.value.failures] == [
            "first broke",
            "second broke",
            "third broke",
        ]

    async def test_empty_chain_fails(self):
        with pytest.raises(ExchangeFailedError) as exc_info:
            await TokenExchangeChain([]).exchange("auth-code", VERIFIER, REDIRECT_URI)

        assert exc_info.value.failures == []

    async def test_concurrent_exchanges_keep_failures_apart(self):
        # Arrange
        chain = TokenExchangeChain(
            [YieldingFailure("flaky"), StubStrategy("ok", tokens=self.tokens)]
        )
        failures_a: list = []
        failures_b: list = []

        # Act
        await asyncio.gather(
            chain.exchange("code-A", VERIFIER, REDIRECT_URI, failures_a),
            chain.exchange("code-B", VERIFIER, REDIRECT_URI, failures_b),
        )

        # Assert
        assert [f.message for f in failures_a] == ["flaky failed for code-A"]
        assert [f.message for f in failures_b] == ["flaky failed for code-B"]

    async def test_malformed_backend_url_falls_through_to_provider(self):
        # Arrange
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200, json={"access_token": "access-token-xyz", "token_type": "bearer"}
            )

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            chain = TokenExchangeChain(
                [
                    BackendJsonExchange(client, "http://[::1/token", "anon-key"),
                    ProviderFormExchange(
                        client, "https://oauth2.example.com/token", "client-456"
                    ),
                ]
            )
            failures: list = []

            # Act
            tokens = await chain.exchange("auth-code", VERIFIER, REDIRECT_URI, failures)

        # Assert
        assert tokens.access_token == "access-token-xyz"
        assert [f.strategy for f in failures] == ["backend-json"]


class TestBuildDefaultChain:
    def setup_method(self):
        self.provider = ProviderConfig(
            name="google",
            client_id="client-456",
            authorization_endpoint="https://accounts.example.com/auth",
            token_endpoint="https://oauth2.example.com/token",
        )
        self.http_client = AsyncMock()

    def test_full_order_with_backend(self):
        settings = Settings(
            backend_token_url="https://backend.example.com/auth/v1/token",
            backend_api_key="anon-key",
            _env_file=None,
        )

        chain = build_default_chain(settings, self.provider, self.http_client)

        assert [s.name for s in chain.strategies] == [
            "backend-json",
            "provider-form",
            "backend-form",
        ]

    def test_provider_only_without_backend(self):
        settings = Settings(backend_token_url=None, _env_file=None)

        chain = build_default_chain(settings, self.provider, self.http_client)

        assert [s.name for s in chain.strategies] == ["provider-form"]
