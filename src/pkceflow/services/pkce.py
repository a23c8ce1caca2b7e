"""PKCE (Proof Key for Code Exchange) parameter manager.

Generates RFC 7636 parameter sets, persists them keyed by provider so they
survive the redirect to the identity provider, and hands them back exactly
once on the callback leg.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Callable
from typing import Any

from pkceflow.models.errors import StorageUnavailableError
from pkceflow.models.security import PKCEParameters
from pkceflow.primitives.crypto import (
    compute_code_challenge,
    generate_code_verifier,
    generate_state,
    is_valid_base64url,
    is_valid_code_verifier,
)
from pkceflow.primitives.storage import KeyValueStore

logger = logging.getLogger(__name__)

STORAGE_PREFIX = "pkceflow:pkce:"
DEFAULT_TTL_SECONDS = 10 * 60


class PKCEManager:
    """Manages PKCE parameter generation, storage and single-use retrieval.

    This implementation follows RFC 7636 requirements:
    - Uses S256 code challenge method (SHA256 + base64url)
    - Generates cryptographically secure code verifiers
    - Generates an independent state parameter for CSRF protection

    Each provider gets its own storage key, so concurrent flows for
    different providers never touch each other's entries. Writes are
    last-writer-wins per provider.
    """

    def __init__(
        self,
        store: KeyValueStore,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        verifier_length: int = 128,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self.ttl_seconds = ttl_seconds
        self.verifier_length = verifier_length
        self._clock = clock
        self._consume_lock = asyncio.Lock()

    @staticmethod
    def storage_key(provider: str) -> str:
        return f"{STORAGE_PREFIX}{provider}"

    async def generate(
        self, provider: str, redirect_uri: str | None = None
    ) -> PKCEParameters:
        """Generate and persist new PKCE parameters for ``provider``.

        Any unconsumed entry for the same provider is overwritten, which
        abandons the earlier attempt.

        Raises:
            CryptoUnavailableError: If no secure random source is available
            StorageUnavailableError: If the parameters cannot be persisted
        """
        code_verifier = generate_code_verifier(self.verifier_length)
        params = PKCEParameters(
            code_verifier=code_verifier,
            code_challenge=compute_code_challenge(code_verifier),
            state=generate_state(),
            provider=provider,
            created_at=self._clock(),
            redirect_uri=redirect_uri,
        )

        try:
            await self._store.set(
                self.storage_key(provider), json.dumps(params.to_dict())
            )
        except OSError as e:
            raise StorageUnavailableError(
                f"Failed to store PKCE parameters for {provider}: {e}"
            ) from e

        logger.debug(
            f"Generated PKCE parameters for {provider}: "
            f"verifier_length={len(params.code_verifier)}, "
            f"challenge_length={len(params.code_challenge)}"
        )
        return params

    async def retrieve(self, provider: str) -> PKCEParameters | None:
        """Read stored parameters without deleting them.

        Expired or unreadable entries are purged and reported as missing.

        Raises:
            StorageUnavailableError: If storage cannot be read
        """
        key = self.storage_key(provider)
        try:
            raw = await self._store.get(key)
        except OSError as e:
            raise StorageUnavailableError(
                f"Failed to read PKCE parameters for {provider}: {e}"
            ) from e

        if raw is None:
            logger.debug(f"No PKCE parameters stored for {provider}")
            return None

        try:
            params = PKCEParameters.from_dict(json.loads(raw))
        except ValueError as e:
            # json.JSONDecodeError is a ValueError
            logger.warning(f"Discarding unreadable PKCE parameters for {provider}: {e}")
            await self._delete(key)
            return None

        if params.is_expired(self.ttl_seconds, now=self._clock()):
            logger.warning(
                f"PKCE parameters for {provider} expired "
                f"({params.age(self._clock()):.0f}s old), clearing"
            )
            await self._delete(key)
            return None

        return params

    async def consume(self, provider: str) -> PKCEParameters | None:
        """Read and delete stored parameters. The only single-use accessor."""
        async with self._consume_lock:
            params = await self.retrieve(provider)
            if params is not None:
                await self._delete(self.storage_key(provider))
                logger.debug(f"Consumed PKCE parameters for {provider}")
            return params

    async def validate(self, provider: str) -> bool:
        """Structural check of stored parameters (format and TTL).

        For diagnostics only. A ``True`` result says nothing about whether a
        callback's state matches.
        """
        params = await self.retrieve(provider)
        if params is None:
            return False

        is_valid = (
            is_valid_code_verifier(params.code_verifier)
            and len(params.code_challenge) == 43
            and is_valid_base64url(params.code_challenge)
            and bool(params.state)
            and not params.is_expired(self.ttl_seconds, now=self._clock())
        )
        logger.debug(f"PKCE validation for {provider}: valid={is_valid}")
        return is_valid

    async def clear(self, provider: str | None = None) -> None:
        """Purge one provider's entry, or every PKCE entry when omitted."""
        if provider is not None:
            await self._delete(self.storage_key(provider))
            return

        for key in await self._stored_keys():
            await self._delete(key)
        logger.debug("Cleared all PKCE parameters")

    async def describe(self) -> list[dict[str, Any]]:
        """Redacted summary of every stored entry, for troubleshooting.

        Entries that cannot be parsed are reported as ``readable: False``.
        """
        summary: list[dict[str, Any]] = []
        for key in await self._stored_keys():
            provider = key[len(STORAGE_PREFIX) :]
            try:
                raw = await self._store.get(key)
            except OSError as e:
                raise StorageUnavailableError(f"Failed to read {key}: {e}") from e
            if raw is None:
                continue

            try:
                summary.append(self._summarize(provider, json.loads(raw)))
            except (ValueError, TypeError, AttributeError):
                summary.append({"provider": provider, "readable": False})
        return summary

    def _summarize(self, provider: str, data: dict[str, Any]) -> dict[str, Any]:
        created_at = data.get("created_at")
        age = self._clock() - float(created_at) if created_at is not None else None
        return {
            "provider": provider,
            "readable": True,
            "verifier_length": len(data.get("code_verifier") or ""),
            "challenge_length": len(data.get("code_challenge") or ""),
            "has_state": bool(data.get("state")),
            "has_redirect_uri": bool(data.get("redirect_uri")),
            "age_seconds": age,
            "expired": age is not None and age > self.ttl_seconds,
        }

    async def _stored_keys(self) -> list[str]:
        try:
            keys = await self._store.keys()
        except OSError as e:
            raise StorageUnavailableError(f"Failed to list PKCE storage: {e}") from e
        return [key for key in keys if key.startswith(STORAGE_PREFIX)]

    async def _delete(self, key: str) -> None:
        try:
            await self._store.delete(key)
        except OSError as e:
            raise StorageUnavailableError(f"Failed to delete {key}: {e}") from e
