"""Tests for the token signing key service: key lifecycle, JWT round trips, JWKS."""

from __future__ import annotations

import json
import threading

import pytest
from jose import jwt
from sqlmodel import SQLModel, Session, create_engine, select

from app.errors import AuthError, ErrorCode
from app.models.oidc import SigningKey
from app.services.identity_store import SqlIdentityStore
from app.services.signing import (
    JWT_ALGORITHM,
    KeyCache,
    SigningKeyService,
    TokenKind,
    jwk_thumbprint,
)
from app.utils.crypto import b64url_decode, b64url_encode


def _id_payload(**extra) -> dict:
    return {"sub": "user-1", "aud": "client-1", "jti": "jti-1", **extra}


class TestKeyPair:
    def test_key_generated_once_and_persisted(self, signer, store):
        first = signer.ensure_key_pair()
        assert not isinstance(first, AuthError)
        row = store.load_signing_key()
        assert row is not None
        assert row.public_key_pem == first.public_key_pem

        second = signer.ensure_key_pair()
        assert second.kid == first.kid

    def test_private_key_encrypted_at_rest(self, signer, store):
        signer.ensure_key_pair()
        row = store.load_signing_key()
        assert "ENCRYPTED PRIVATE KEY" in row.private_key_pem

    def test_kid_is_thumbprint_of_persisted_key(self, signer):
        key = signer.ensure_key_pair()
        assert key.kid == jwk_thumbprint(key.public_jwk)

    def test_fresh_cache_reloads_same_key(self, store, settings, clock, signer):
        original = signer.ensure_key_pair()
        other = SigningKeyService(store, KeyCache(60, clock=clock), settings, clock=clock)
        assert other.ensure_key_pair().kid == original.kid

    def test_invalidate_forces_reload(self, signer, key_cache):
        original = signer.ensure_key_pair()
        key_cache.invalidate()
        assert key_cache.get_key() is None
        assert signer.ensure_key_pair().kid == original.kid

    def test_undecryptable_key_is_server_error(self, store, settings, clock, signer):
        signer.ensure_key_pair()
        wrong = settings.model_copy(update={"signing_key_passphrase": "wrong-passphrase"})
        broken = SigningKeyService(store, KeyCache(60, clock=clock), wrong, clock=clock)
        result = broken.ensure_key_pair()
        assert isinstance(result, AuthError)
        assert result.code == ErrorCode.SERVER_ERROR
        assert result.status_code == 500

    def test_concurrent_first_use_agrees_on_kid(self, tmp_path, settings):
        """Racing first requests must all end up with the persisted key."""
        engine = create_engine(
            f"sqlite:///{tmp_path / 'race.db'}",
            connect_args={"check_same_thread": False},
        )
        SQLModel.metadata.create_all(engine)
        barrier = threading.Barrier(4)
        kids: list[str] = []
        kids_lock = threading.Lock()

        def _worker():
            with Session(engine) as db:
                service = SigningKeyService(SqlIdentityStore(db), KeyCache(60), settings)
                barrier.wait()
                key = service.ensure_key_pair()
                assert not isinstance(key, AuthError)
                with kids_lock:
                    kids.append(key.kid)

        threads = [threading.Thread(target=_worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(kids) == 4
        assert len(set(kids)) == 1
        with Session(engine) as db:
            persisted = SigningKeyService(SqlIdentityStore(db), KeyCache(60), settings)
            assert persisted.ensure_key_pair().kid == kids[0]
            assert len(db.exec(select(SigningKey)).all()) == 1
        engine.dispose()


class TestSignAndVerify:
    def test_round_trip(self, signer, settings, clock):
        token = signer.sign(_id_payload(nonce="n-1"), TokenKind.ID_TOKEN)
        claims = signer.verify(token)
        assert not isinstance(claims, AuthError)
        assert claims["sub"] == "user-1"
        assert claims["aud"] == "client-1"
        assert claims["iss"] == settings.issuer
        assert claims["iat"] == int(clock())
        assert claims["exp"] == claims["iat"] + settings.token_ttl_seconds
        assert claims["nonce"] == "n-1"
        assert claims["token_use"] == "id"

    def test_header_carries_kid_matching_jwks(self, signer):
        token = signer.sign(_id_payload(), TokenKind.ID_TOKEN)
        header = jwt.get_unverified_header(token)
        jwks = signer.get_jwks()
        assert header["alg"] == JWT_ALGORITHM
        assert header["kid"] == jwks["keys"][0]["kid"]

    def test_id_token_drops_scope_and_none_values(self, signer):
        token = signer.sign(_id_payload(scope="openid", nonce=None), TokenKind.ID_TOKEN)
        claims = signer.verify(token)
        assert "scope" not in claims
        assert "nonce" not in claims

    def test_access_token_requires_scope(self, signer):
        with pytest.raises(ValueError, match="scope"):
            signer.sign(_id_payload(), TokenKind.ACCESS_TOKEN)

    def test_missing_required_claim_rejected(self, signer):
        with pytest.raises(ValueError, match="jti"):
            signer.sign({"sub": "u", "aud": "c"}, TokenKind.ID_TOKEN)

    def test_valid_until_exp(self, signer, clock):
        token = signer.sign(_id_payload(), TokenKind.ID_TOKEN)
        clock.advance(3600)
        assert not isinstance(signer.verify(token), AuthError)

    def test_expired_one_second_after_exp(self, signer, clock):
        token = signer.sign(_id_payload(), TokenKind.ID_TOKEN)
        clock.advance(3601)
        result = signer.verify(token)
        assert isinstance(result, AuthError)
        assert result.code == ErrorCode.INVALID_TOKEN
        assert result.description == "Token has expired"

    def test_tampered_payload_rejected(self, signer):
        token = signer.sign(_id_payload(), TokenKind.ID_TOKEN)
        header, payload, signature = token.split(".")
        claims = json.loads(b64url_decode(payload))
        claims["sub"] = "someone-else"
        forged = b64url_encode(json.dumps(claims, separators=(",", ":")).encode("utf-8"))
        result = signer.verify(".".join([header, forged, signature]))
        assert isinstance(result, AuthError)
        assert result.code == ErrorCode.INVALID_TOKEN

    def test_garbage_rejected(self, signer):
        result = signer.verify("garbage")
        assert isinstance(result, AuthError)
        assert result.code == ErrorCode.INVALID_TOKEN

    def test_wrong_issuer_rejected(self, signer, store, key_cache, settings, clock):
        other_settings = settings.model_copy(update={"issuer": "https://evil.example"})
        other = SigningKeyService(store, key_cache, other_settings, clock=clock)
        token = other.sign(_id_payload(), TokenKind.ID_TOKEN)
        result = signer.verify(token)
        assert isinstance(result, AuthError)
        assert result.code == ErrorCode.INVALID_TOKEN

    def test_wrong_kind_rejected(self, signer):
        token = signer.sign(_id_payload(), TokenKind.ID_TOKEN)
        result = signer.verify(token, expected_kind=TokenKind.ACCESS_TOKEN)
        assert isinstance(result, AuthError)
        assert result.code == ErrorCode.INVALID_TOKEN


class TestJwks:
    def test_jwks_shape(self, signer):
        jwks = signer.get_jwks()
        assert len(jwks["keys"]) == 1
        key = jwks["keys"][0]
        assert key["kty"] == "RSA"
        assert key["use"] == "sig"
        assert key["alg"] == "RS256"
        assert key["e"] == "AQAB"
        assert set(key) == {"kty", "use", "alg", "kid", "n", "e"}

    def test_jwks_cached_until_ttl(self, signer, key_cache, clock, settings):
        first = signer.get_jwks()
        assert key_cache.get_document("jwks") is first
        clock.advance(settings.jwks_cache_ttl_seconds)
        assert key_cache.get_document("jwks") is None
