from unittest.mock import AsyncMock

import pytest

from pkceflow.config import ProviderConfig, Settings
from pkceflow.primitives.storage import MemoryStore


@pytest.fixture
def memory_store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        redirect_uri="https://myapp.com/auth/callback",
        default_provider="google",
        backend_token_url="https://backend.example.com/auth/v1/token",
        backend_api_key="anon-key-123",
        _env_file=None,
    )


@pytest.fixture
def google_config() -> ProviderConfig:
    return ProviderConfig(
        name="google",
        client_id="test-client-123.apps.googleusercontent.com",
        authorization_endpoint="https://accounts.example.com/o/oauth2/v2/auth",
        token_endpoint="https://oauth2.example.com/token",
        scopes=["openid", "email", "profile"],
        extra_authorization_params={"access_type": "offline", "prompt": "consent"},
    )


@pytest.fixture
def session_store() -> AsyncMock:
    store = AsyncMock()
    store.create_session.return_value = {"user_id": "user-1"}
    return store
