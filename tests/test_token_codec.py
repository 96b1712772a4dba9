"""Unit tests for the token codec.

Covers signing headers, standard claims, family separation, expiry,
issuer/audience checks and algorithm pinning.
"""

import base64
import json
import time

import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import ec

from walletauth.config import Settings
from walletauth.service.keys import SettingsKeyProvider
from walletauth.service.tokens import InvalidTokenError, TokenCodec, TokenType


@pytest.fixture
def settings(tmp_path):
    return Settings(
        jwt_algorithm="ES256",
        shared_fs_root=str(tmp_path),
        test_mode=True,
        jwt_leeway_seconds=0,
    )


@pytest.fixture
def keys(settings):
    return SettingsKeyProvider(settings)


@pytest.fixture
def codec(keys, settings):
    return TokenCodec(keys, settings)


def _claims(**overrides):
    claims = {"sub": "0xabc", "aud": "partner.example", "userId": "user-1", "scope": "email"}
    claims.update(overrides)
    return claims


class TestIssue:
    async def test_issue_sets_standard_claims(self, codec, settings):
        before = int(time.time())
        signed = await codec.issue(_claims(), TokenType.ACCESS, ttl_seconds=120)

        assert signed.claims["iss"] == settings.jwt_issuer
        assert signed.claims["typ"] == "access"
        assert before <= signed.claims["iat"] <= int(time.time())
        assert signed.expires_at == signed.claims["iat"] + 120

    async def test_header_carries_family_kid_and_algorithm(self, codec, settings):
        access = await codec.issue(_claims(), TokenType.ACCESS, ttl_seconds=60)
        refresh = await codec.issue(_claims(sid="s", jti="j"), TokenType.REFRESH, ttl_seconds=60)

        access_header = jwt.get_unverified_header(access.token)
        refresh_header = jwt.get_unverified_header(refresh.token)
        assert access_header == {"alg": "ES256", "kid": settings.access_key_id, "typ": "JWT"}
        assert refresh_header["kid"] == settings.refresh_key_id

    async def test_none_values_are_dropped(self, codec):
        signed = await codec.issue(_claims(chainId=None, sid=None), TokenType.ACCESS, ttl_seconds=60)

        assert "chainId" not in signed.claims
        assert "sid" not in signed.claims


class TestVerify:
    async def test_round_trip(self, codec):
        signed = await codec.issue(_claims(sid="sid-1"), TokenType.ACCESS, ttl_seconds=60)

        claims = await codec.verify(signed.token, TokenType.ACCESS)

        assert claims["sid"] == "sid-1"
        assert claims["userId"] == "user-1"

    async def test_refresh_token_rejected_as_access(self, codec):
        refresh = await codec.issue(_claims(sid="s", jti="j"), TokenType.REFRESH, ttl_seconds=60)

        with pytest.raises(InvalidTokenError):
            await codec.verify(refresh.token, TokenType.ACCESS)

    async def test_access_token_rejected_as_refresh(self, codec):
        access = await codec.issue(_claims(), TokenType.ACCESS, ttl_seconds=60)

        with pytest.raises(InvalidTokenError):
            await codec.verify(access.token, TokenType.REFRESH)

    async def test_nonce_and_access_are_not_interchangeable(self, codec):
        nonce = await codec.issue(_claims(nonce="n"), TokenType.NONCE, ttl_seconds=60)
        access = await codec.issue(_claims(), TokenType.ACCESS, ttl_seconds=60)

        with pytest.raises(InvalidTokenError):
            await codec.verify(nonce.token, TokenType.ACCESS)
        with pytest.raises(InvalidTokenError):
            await codec.verify(access.token, TokenType.NONCE)

    async def test_expired_token_rejected(self, keys, settings, codec):
        stale = TokenCodec(keys, settings, clock=lambda: time.time() - 3600)
        signed = await stale.issue(_claims(), TokenType.ACCESS, ttl_seconds=60)

        with pytest.raises(InvalidTokenError):
            await codec.verify(signed.token, TokenType.ACCESS)

    async def test_audience_enforced_when_requested(self, codec):
        signed = await codec.issue(_claims(), TokenType.ACCESS, ttl_seconds=60)

        assert (await codec.verify(signed.token, TokenType.ACCESS, audience="partner.example"))["aud"]
        with pytest.raises(InvalidTokenError):
            await codec.verify(signed.token, TokenType.ACCESS, audience="other.example")

    async def test_wrong_issuer_rejected(self, keys, settings, codec):
        foreign = TokenCodec(keys, settings.model_copy(update={"jwt_issuer": "someone-else"}))
        signed = await foreign.issue(_claims(), TokenType.ACCESS, ttl_seconds=60)

        with pytest.raises(InvalidTokenError):
            await codec.verify(signed.token, TokenType.ACCESS)

    async def test_tampered_payload_rejected(self, codec):
        signed = await codec.issue(_claims(), TokenType.ACCESS, ttl_seconds=60)
        header, payload, signature = signed.token.split(".")
        tampered = {**signed.claims, "userId": "admin"}
        forged = base64.urlsafe_b64encode(json.dumps(tampered).encode()).rstrip(b"=").decode()

        with pytest.raises(InvalidTokenError):
            await codec.verify(".".join([header, forged, signature]), TokenType.ACCESS)

    async def test_symmetric_algorithm_substitution_rejected(self, codec, settings):
        now = int(time.time())
        token = jwt.encode(
            {**_claims(), "iat": now, "exp": now + 60, "iss": settings.jwt_issuer, "typ": "access"},
            "shared-secret-that-a-verifier-must-never-accept-0123456789",
            algorithm="HS256",
            headers={"kid": settings.access_key_id},
        )

        with pytest.raises(InvalidTokenError):
            await codec.verify(token, TokenType.ACCESS)

    async def test_foreign_key_with_same_kid_rejected(self, codec, settings):
        now = int(time.time())
        token = jwt.encode(
            {**_claims(), "iat": now, "exp": now + 60, "iss": settings.jwt_issuer, "typ": "access"},
            ec.generate_private_key(ec.SECP256R1()),
            algorithm="ES256",
            headers={"kid": settings.access_key_id},
        )

        with pytest.raises(InvalidTokenError):
            await codec.verify(token, TokenType.ACCESS)

    @pytest.mark.parametrize("token", [None, "", "garbage", "a.b.c"])
    async def test_malformed_input_rejected(self, codec, token):
        with pytest.raises(InvalidTokenError):
            await codec.verify(token, TokenType.ACCESS)


class TestPublicJwk:
    async def test_exports_access_public_key_only(self, codec, keys, settings):
        jwk = await codec.public_jwk()

        assert jwk["kid"] == settings.access_key_id
        assert jwk["alg"] == "ES256"
        assert jwk["use"] == "sig"
        assert jwk["kty"] == "EC"
        assert "d" not in jwk

    async def test_published_key_verifies_access_tokens(self, codec):
        signed = await codec.issue(_claims(), TokenType.ACCESS, ttl_seconds=60)
        jwk = jwt.PyJWK(await codec.public_jwk())

        claims = jwt.decode(
            signed.token, jwk.key, algorithms=["ES256"], options={"verify_aud": False}
        )
        assert claims["sub"] == "0xabc"
