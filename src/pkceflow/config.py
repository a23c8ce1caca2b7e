"""Configuration for PKCE authorization code flows."""

from __future__ import annotations

from pydantic import BaseModel, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class ProviderConfig(BaseModel):
    """Static description of one identity provider."""

    name: str
    client_id: str
    authorization_endpoint: str
    token_endpoint: str | None = None
    scopes: list[str] = Field(default_factory=list)
    extra_authorization_params: dict[str, str] = Field(default_factory=dict)


GOOGLE_AUTHORIZATION_ENDPOINT = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_ENDPOINT = "https://oauth2.googleapis.com/token"


def google_provider(client_id: str) -> ProviderConfig:
    """Google preset: OpenID scopes, offline access and forced consent."""
    return ProviderConfig(
        name="google",
        client_id=client_id,
        authorization_endpoint=GOOGLE_AUTHORIZATION_ENDPOINT,
        token_endpoint=GOOGLE_TOKEN_ENDPOINT,
        scopes=["openid", "email", "profile"],
        extra_authorization_params={"access_type": "offline", "prompt": "consent"},
    )


class Settings(BaseSettings):
    """Runtime settings loaded from environment."""

    redirect_uri: str = "http://localhost:3000/auth/callback"
    default_provider: str = "google"
    google_client_id: str | None = None

    pkce_ttl_seconds: float = 600.0
    verifier_length: int = Field(default=128, ge=43, le=128)
    http_timeout: float = 30.0

    # Session backend fronting the identity provider (e.g. a managed auth API)
    backend_token_url: str | None = None
    backend_api_key: SecretStr = SecretStr("")

    storage_path: str | None = None
    debug: bool = False

    model_config = SettingsConfigDict(env_prefix="PKCEFLOW_", env_file=".env")

    def configured_providers(self) -> dict[str, ProviderConfig]:
        """Providers that can be built from settings alone."""
        providers: dict[str, ProviderConfig] = {}
        if self.google_client_id:
            providers["google"] = google_provider(self.google_client_id)
        return providers
