"""Cryptographic building blocks for PKCE (RFC 7636).

Everything here is either a pure function or draws from the operating
system CSPRNG. There is deliberately no fallback generator: when the OS
source is unreachable :class:`CryptoUnavailableError` is raised and the
flow aborts.
"""

from __future__ import annotations

import base64
import hashlib
import math
import re
import secrets

from pkceflow.models.errors import CryptoUnavailableError

MIN_VERIFIER_LENGTH = 43
MAX_VERIFIER_LENGTH = 128
MIN_VERIFIER_ENTROPY_BYTES = 32
STATE_ENTROPY_BYTES = 32

_BASE64URL_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")
_VERIFIER_PATTERN = re.compile(r"^[A-Za-z0-9\-._~]+$")


def secure_random_bytes(n: int) -> bytes:
    """Return ``n`` bytes from the operating system CSPRNG.

    Raises:
        ValueError: If ``n`` is negative
        CryptoUnavailableError: If the OS random source cannot be reached
    """
    if n < 0:
        raise ValueError("Byte count must be non-negative")
    try:
        return secrets.token_bytes(n)
    except (NotImplementedError, OSError) as e:
        raise CryptoUnavailableError(
            f"No cryptographically secure random source available: {e}"
        ) from e


def sha256(data: bytes) -> bytes:
    """Return the 32-byte SHA-256 digest of ``data``."""
    return hashlib.sha256(data).digest()


def base64url_encode(data: bytes) -> str:
    """Base64url-encode ``data`` without ``=`` padding (RFC 4648 Section 5)."""
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def is_valid_base64url(value: str) -> bool:
    return bool(_BASE64URL_PATTERN.match(value))


def is_valid_code_verifier(value: str) -> bool:
    """Check length and unreserved-character alphabet of a code verifier."""
    return MIN_VERIFIER_LENGTH <= len(value) <= MAX_VERIFIER_LENGTH and bool(
        _VERIFIER_PATTERN.match(value)
    )


def generate_code_verifier(length: int = MAX_VERIFIER_LENGTH) -> str:
    """Generate a cryptographically secure code verifier.

    RFC 7636 Section 4.1: code verifier must be 43-128 characters long
    and use only unreserved characters. Base64url output is a subset of
    that alphabet. At least 32 random bytes are always drawn.

    Args:
        length: Verifier length, 128 by default

    Raises:
        ValueError: If ``length`` is outside 43-128
    """
    if not (MIN_VERIFIER_LENGTH <= length <= MAX_VERIFIER_LENGTH):
        raise ValueError(
            f"Code verifier length must be between {MIN_VERIFIER_LENGTH} "
            f"and {MAX_VERIFIER_LENGTH} characters"
        )

    # 3 bytes -> 4 base64 characters
    byte_length = max(math.ceil(length * 3 / 4), MIN_VERIFIER_ENTROPY_BYTES)
    return base64url_encode(secure_random_bytes(byte_length))[:length]


def compute_code_challenge(code_verifier: str) -> str:
    """Derive the S256 code challenge: BASE64URL(SHA256(ASCII(verifier)))."""
    return base64url_encode(sha256(code_verifier.encode("ascii")))


def generate_state(num_bytes: int = STATE_ENTROPY_BYTES) -> str:
    """Generate an opaque CSRF state token, independent of any verifier."""
    if num_bytes < 16:
        raise ValueError("State must carry at least 16 bytes of entropy")
    return base64url_encode(secure_random_bytes(num_bytes))
