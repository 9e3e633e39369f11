"""
Unit tests for the JWT helpers.

Tests cover DPoP key generation, proof header and claims construction,
the ``ath`` access token hash, and client assertion JWTs.
"""

import base64
import hashlib
import json
from datetime import datetime, timedelta, timezone

import pytest
from jwcrypto import jwk, jwt

from social.graze.atclient.atproto.jwt import (
    create_access_token_hash,
    create_client_assertion_claims,
    create_client_assertion_header,
    create_client_assertion_jwt,
    create_dpop_claims,
    create_dpop_header,
    create_dpop_jwt,
    generate_dpop_key,
)

from conftest import decode_proof, decode_segment


class TestGenerateDpopKey:
    """Test DPoP key generation functionality."""

    def test_generate_dpop_key_uses_correct_algorithm(self):
        """Generated key is ECDSA P-256 for ES256."""
        dpop_key, public_key_dict = generate_dpop_key()

        key_dict = dpop_key.export(as_dict=True)
        assert key_dict["kty"] == "EC"
        assert key_dict["crv"] == "P-256"
        assert key_dict["alg"] == "ES256"
        assert public_key_dict["crv"] == "P-256"

    def test_generate_dpop_key_has_unique_ulid_kid(self):
        key1, _ = generate_dpop_key()
        key2, _ = generate_dpop_key()

        kid1 = key1.export(as_dict=True)["kid"]
        kid2 = key2.export(as_dict=True)["kid"]
        assert kid1 != kid2
        assert len(kid1) == 26

    def test_public_key_dict_has_no_private_material(self):
        dpop_key, public_key_dict = generate_dpop_key()

        assert "d" in dpop_key.export(private_key=True, as_dict=True)
        assert "d" not in public_key_dict
        assert "x" in public_key_dict
        assert "y" in public_key_dict


class TestAccessTokenHash:
    def test_matches_base64url_sha256_without_padding(self):
        access_token = "test-access-token-123"
        expected = (
            base64.urlsafe_b64encode(hashlib.sha256(access_token.encode()).digest())
            .decode()
            .rstrip("=")
        )

        assert create_access_token_hash(access_token) == expected
        assert "=" not in create_access_token_hash(access_token)

    def test_different_tokens_hash_differently(self):
        assert create_access_token_hash("T1") != create_access_token_hash("T2")


class TestCreateDpopHeader:
    def test_create_dpop_header_values(self):
        _, public_key_dict = generate_dpop_key()
        header = create_dpop_header(public_key_dict)

        assert header == {"typ": "dpop+jwt", "alg": "ES256", "jwk": public_key_dict}


class TestCreateDpopClaims:
    """Test DPoP claims construction."""

    def test_required_claims(self):
        claims = create_dpop_claims("POST", "https://example.com/api")

        assert claims["htm"] == "POST"
        assert claims["htu"] == "https://example.com/api"
        assert isinstance(claims["jti"], str)
        assert claims["exp"] - claims["iat"] == 120
        assert "ath" not in claims
        assert "nonce" not in claims

    def test_method_and_url_used_verbatim(self):
        claims = create_dpop_claims("get", "https://example.com/api?x=1")

        assert claims["htm"] == "get"
        assert claims["htu"] == "https://example.com/api?x=1"

    def test_jti_unique_and_long_enough(self):
        jtis = {create_dpop_claims("GET", "https://example.com")["jti"] for _ in range(20)}

        assert len(jtis) == 20
        # 32 random bytes, base64url encoded
        assert all(len(jti) >= 43 for jti in jtis)

    def test_issued_at_and_custom_expiry(self):
        issued_at = datetime(2024, 1, 1, tzinfo=timezone.utc)
        claims = create_dpop_claims(
            "GET", "https://example.com", issued_at=issued_at, expires_in_seconds=60
        )

        assert claims["iat"] == int(issued_at.timestamp())
        assert claims["exp"] == int(issued_at.timestamp()) + 60

    def test_nonce_and_ath(self):
        claims = create_dpop_claims(
            "GET", "https://example.com", nonce="n-1", access_token="T1"
        )

        assert claims["nonce"] == "n-1"
        assert claims["ath"] == create_access_token_hash("T1")


class TestCreateDpopJwt:
    """Test signed DPoP proof creation."""

    def test_proof_verifies_with_embedded_key(self, dpop_key):
        token = create_dpop_jwt(dpop_key, "POST", "https://example.com/api")

        header, claims = decode_proof(token)

        assert header["typ"] == "dpop+jwt"
        assert header["alg"] == "ES256"
        assert header["jwk"] == dpop_key.export_public(as_dict=True)
        assert claims["htm"] == "POST"
        assert claims["htu"] == "https://example.com/api"
        assert claims["exp"] - claims["iat"] == 120

    def test_proof_rejects_wrong_key(self, dpop_key):
        token = create_dpop_jwt(dpop_key, "POST", "https://example.com/api")
        wrong_key, _ = generate_dpop_key()

        with pytest.raises(Exception):
            jwt.JWT(jwt=token, key=wrong_key)

    @pytest.mark.parametrize(
        "method,url",
        [
            ("GET", "https://api.example.com/endpoint?foo=bar"),
            ("POST", "https://bsky.social/xrpc/com.atproto.repo.createRecord"),
            ("DELETE", "http://localhost:2583/xrpc/app.bsky.feed.post"),
        ],
    )
    def test_proof_binds_method_and_url(self, dpop_key, method, url):
        _, claims = decode_proof(create_dpop_jwt(dpop_key, method, url))

        assert claims["htm"] == method
        assert claims["htu"] == url

    def test_proof_with_access_token_and_nonce(self, dpop_key):
        token = create_dpop_jwt(
            dpop_key,
            "GET",
            "https://example.com/api",
            nonce="server-nonce",
            access_token="T1",
        )

        _, claims = decode_proof(token)

        assert claims["nonce"] == "server-nonce"
        assert claims["ath"] == create_access_token_hash("T1")


class TestClientAssertion:
    """Test client assertion JWT construction."""

    def test_header(self):
        assert create_client_assertion_header("kid-1") == {
            "typ": "jwt",
            "alg": "ES256",
            "kid": "kid-1",
        }

    def test_claims(self):
        issued_at = datetime.now(timezone.utc) - timedelta(seconds=5)
        claims = create_client_assertion_claims(
            "https://app.example.com/client-metadata.json",
            "https://auth.example.com",
            issued_at=issued_at,
        )

        assert claims["iss"] == "https://app.example.com/client-metadata.json"
        assert claims["sub"] == claims["iss"]
        assert claims["aud"] == "https://auth.example.com"
        assert claims["iat"] == int(issued_at.timestamp())
        assert claims["exp"] == claims["iat"] + 300
        assert claims["jti"]

    def test_signed_assertion(self, client_jwk):
        token = create_client_assertion_jwt(
            client_jwk, "client-id", "https://auth.example.com"
        )

        parsed_jwt = jwt.JWT(jwt=token, key=client_jwk)
        header = json.loads(parsed_jwt.header)
        claims = json.loads(parsed_jwt.claims)

        assert header["kid"] == client_jwk.export_public(as_dict=True)["kid"]
        assert header["alg"] == "ES256"
        assert header["typ"] == "jwt"
        assert claims["iss"] == "client-id"
        assert claims["sub"] == "client-id"
        assert claims["aud"] == "https://auth.example.com"
        assert claims["exp"] - claims["iat"] == 300

    def test_assertion_jti_fresh_per_call(self, client_jwk):
        first = create_client_assertion_jwt(client_jwk, "client-id", "https://a.example")
        second = create_client_assertion_jwt(client_jwk, "client-id", "https://a.example")

        assert decode_segment(first.split(".")[1])["jti"] != decode_segment(
            second.split(".")[1]
        )["jti"]

    def test_assertion_requires_kid(self):
        key = jwk.JWK.generate(kty="EC", crv="P-256")

        with pytest.raises(ValueError):
            create_client_assertion_jwt(key, "client-id", "https://auth.example.com")
