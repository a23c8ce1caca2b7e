import base64
import hashlib
import re
from unittest.mock import patch

import pytest

from pkceflow.models.errors import CryptoUnavailableError
from pkceflow.primitives.crypto import (
    base64url_encode,
    compute_code_challenge,
    generate_code_verifier,
    generate_state,
    is_valid_base64url,
    is_valid_code_verifier,
    secure_random_bytes,
    sha256,
)

UNRESERVED = re.compile(r"^[A-Za-z0-9\-._~]+$")


class TestPrimitives:
    def test_secure_random_bytes_length_and_uniqueness(self) -> None:
        # Act
        first = secure_random_bytes(32)
        second = secure_random_bytes(32)

        # Assert
        assert len(first) == 32
        assert first != second

    def test_secure_random_bytes_fails_loudly_without_os_source(self) -> None:
        # Arrange - simulate a platform with no OS randomness
        with patch(
            "pkceflow.primitives.crypto.secrets.token_bytes",
            side_effect=NotImplementedError("no urandom"),
        ):
            # Act & Assert
            with pytest.raises(CryptoUnavailableError):
                secure_random_bytes(32)

    def test_sha256_matches_hashlib_and_is_pure(self) -> None:
        data = b"hello world"

        assert sha256(data) == hashlib.sha256(data).digest()
        assert sha256(data) == sha256(data)
        assert len(sha256(data)) == 32

    def test_base64url_encode_is_urlsafe_and_unpadded(self) -> None:
        # These bytes produce '+', '/' and padding in standard base64
        data = b"\xfb\xff\xfe"
        standard = base64.b64encode(data).decode("ascii")

        encoded = base64url_encode(data)

        assert "+" in standard or "/" in standard
        assert "+" not in encoded
        assert "/" not in encoded
        assert "=" not in encoded
        assert encoded == base64url_encode(data)
        assert base64url_encode(b"a") == "YQ"

    def test_rfc7636_appendix_b_vector(self) -> None:
        # RFC 7636 Appendix B
        verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"

        assert compute_code_challenge(verifier) == (
            "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"
        )


class TestCodeVerifier:
    def test_default_verifier_is_128_unreserved_characters(self) -> None:
        verifier = generate_code_verifier()

        assert len(verifier) == 128
        assert UNRESERVED.match(verifier)
        assert is_valid_code_verifier(verifier)

    @pytest.mark.parametrize("length", [43, 64, 100, 128])
    def test_verifier_respects_requested_length(self, length: int) -> None:
        verifier = generate_code_verifier(length)

        assert len(verifier) == length
        challenge = compute_code_challenge(verifier)
        assert len(challenge) == 43
        assert is_valid_base64url(challenge)

    @pytest.mark.parametrize("length", [0, 42, 129, 256])
    def test_verifier_rejects_out_of_range_length(self, length: int) -> None:
        with pytest.raises(ValueError):
            generate_code_verifier(length)

    def test_short_verifier_still_draws_32_bytes(self) -> None:
        with patch(
            "pkceflow.primitives.crypto.secure_random_bytes",
            wraps=secure_random_bytes,
        ) as spy:
            generate_code_verifier(43)

        assert spy.call_args[0][0] >= 32

    def test_is_valid_code_verifier_rejects_bad_alphabet(self) -> None:
        assert not is_valid_code_verifier("a" * 42)
        assert not is_valid_code_verifier("a" * 42 + "!")
        assert is_valid_code_verifier("a-b.c_d~" * 6)


class TestState:
    def test_state_is_independent_of_verifier(self) -> None:
        verifier = generate_code_verifier()
        state = generate_state()

        assert state != verifier
        assert state not in verifier
        assert state != compute_code_challenge(verifier)
        assert len(state) == 43

    def test_state_requires_minimum_entropy(self) -> None:
        with pytest.raises(ValueError):
            generate_state(8)
