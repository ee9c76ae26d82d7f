from __future__ import annotations

import pytest

from app.utils.crypto import (
    b64url_decode,
    b64url_encode,
    constant_time_equals,
    pkce_s256,
    random_token,
    sha256_hash,
)


def test_b64url_has_no_padding():
    assert b64url_encode(b"\xff\xfe") == "__4"
    assert b64url_decode("__4") == b"\xff\xfe"


def test_b64url_decode_accepts_padding():
    assert b64url_decode("__4=") == b"\xff\xfe"


def test_b64url_decode_rejects_bad_length():
    with pytest.raises(ValueError):
        b64url_decode("a")


def test_random_tokens_are_unique_and_long():
    tokens = {random_token() for _ in range(100)}
    assert len(tokens) == 100
    assert all(len(t) >= 43 for t in tokens)


def test_sha256_hash_hex():
    assert sha256_hash(b"") == "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"


def test_pkce_s256_rfc7636_vector():
    # RFC 7636 appendix B
    assert (
        pkce_s256("dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk")
        == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"
    )


def test_constant_time_equals():
    assert constant_time_equals("abc", "abc")
    assert not constant_time_equals("abc", "abd")
    assert not constant_time_equals("abc", "abcd")
