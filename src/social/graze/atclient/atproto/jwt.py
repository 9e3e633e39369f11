"""
Signed JWTs used on the wire.

DPoP proofs (RFC 9449) accompany every outbound request. Client assertions
(RFC 7523) authenticate a confidential OAuth client at the token endpoint.
Both are compact ES256 JWS strings produced with jwcrypto.
"""

import base64
import hashlib
import secrets
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple
from jwcrypto import jwt, jwk
from ulid import ULID

DPOP_PROOF_EXPIRY = 120
CLIENT_ASSERTION_EXPIRY = 300


def generate_dpop_key() -> Tuple[jwk.JWK, Dict[str, Any]]:
    """Generate a P-256 signing key with a ULID ``kid``.

    Returns:
        The private JWK and its public half exported as a dict, ready to be
        embedded in proof headers.
    """
    signing_key = jwk.JWK.generate(kty="EC", crv="P-256", kid=str(ULID()), alg="ES256")
    return signing_key, signing_key.export_public(as_dict=True)


def generate_jti() -> str:
    """Unique token identifier, 256 bits of entropy."""
    return secrets.token_urlsafe(32)


def create_access_token_hash(access_token: str) -> str:
    """Compute the ``ath`` claim for an access token.

    base64url (no padding) of the SHA-256 digest of the token, the same
    construction as a PKCE S256 challenge.
    """
    digest = hashlib.sha256(access_token.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def create_dpop_header(public_jwk: Dict[str, Any]) -> Dict[str, Any]:
    return {"typ": "dpop+jwt", "alg": "ES256", "jwk": public_jwk}


def create_dpop_claims(
    http_method: str,
    http_uri: str,
    issued_at: Optional[datetime] = None,
    expires_in_seconds: int = DPOP_PROOF_EXPIRY,
    nonce: Optional[str] = None,
    access_token: Optional[str] = None,
) -> Dict[str, Any]:
    """Build the claim set of one proof.

    ``htm`` and ``htu`` are taken verbatim from the arguments and a new
    ``jti`` is drawn on every call. ``ath`` is present only when an access
    token is given, ``nonce`` only when a nonce is given.
    """
    now = int((issued_at or datetime.now(timezone.utc)).timestamp())
    claims: Dict[str, Any] = {
        "jti": generate_jti(),
        "htm": http_method,
        "htu": http_uri,
        "iat": now,
        "exp": now + expires_in_seconds,
    }
    if access_token:
        claims["ath"] = create_access_token_hash(access_token)
    if nonce:
        claims["nonce"] = nonce
    return claims


def create_dpop_jwt(
    dpop_key: jwk.JWK,
    http_method: str,
    http_uri: str,
    public_key_dict: Optional[Dict[str, Any]] = None,
    issued_at: Optional[datetime] = None,
    expires_in_seconds: int = DPOP_PROOF_EXPIRY,
    nonce: Optional[str] = None,
    access_token: Optional[str] = None,
) -> str:
    """Sign a DPoP proof and return it in compact form.

    Args:
        dpop_key: Private signing key
        http_method: Request method, becomes ``htm``
        http_uri: Absolute request URL, becomes ``htu``
        public_key_dict: Public JWK for the header; exported from ``dpop_key``
            when omitted
        issued_at: Issuance time (defaults to now, UTC)
        expires_in_seconds: Lifetime of the proof (default: 120)
        nonce: Server-issued nonce to echo
        access_token: Access token to bind through ``ath``

    Returns:
        str: The value of the ``DPoP`` request header
    """
    proof = jwt.JWT(
        header=create_dpop_header(
            public_key_dict or dpop_key.export_public(as_dict=True)
        ),
        claims=create_dpop_claims(
            http_method, http_uri, issued_at, expires_in_seconds, nonce, access_token
        ),
    )
    proof.make_signed_token(dpop_key)
    return proof.serialize()


def create_client_assertion_header(key_id: str) -> Dict[str, Any]:
    return {"typ": "jwt", "alg": "ES256", "kid": key_id}


def create_client_assertion_claims(
    client_id: str,
    audience: str,
    issued_at: Optional[datetime] = None,
    expires_in_seconds: int = CLIENT_ASSERTION_EXPIRY,
) -> Dict[str, Any]:
    """Create client assertion claims identifying the OAuth client.

    ``iss`` and ``sub`` are both the client id; ``aud`` is the authorization
    server the assertion is presented to.
    """
    if issued_at is None:
        issued_at = datetime.now(timezone.utc)

    iat = int(issued_at.timestamp())
    return {
        "iss": client_id,
        "sub": client_id,
        "aud": audience,
        "jti": generate_jti(),
        "iat": iat,
        "exp": iat + expires_in_seconds,
    }


def create_client_assertion_jwt(
    signing_key: jwk.JWK,
    client_id: str,
    audience: str,
    issued_at: Optional[datetime] = None,
    expires_in_seconds: int = CLIENT_ASSERTION_EXPIRY,
) -> str:
    """Create a signed client assertion JWT.

    Args:
        signing_key: Client private key; its ``kid`` goes in the header
        client_id: OAuth client id
        audience: Token endpoint site
        issued_at: Issuance time (defaults to current UTC time)
        expires_in_seconds: Validity period in seconds (default: 300)

    Returns:
        str: Compact serialized client assertion

    Raises:
        ValueError: If the signing key has no ``kid``
    """
    key_id = signing_key.export_public(as_dict=True).get("kid")
    if not key_id:
        raise ValueError("Client signing key has no kid")

    claims_assertion = jwt.JWT(
        header=create_client_assertion_header(key_id),
        claims=create_client_assertion_claims(
            client_id, audience, issued_at, expires_in_seconds
        ),
    )
    claims_assertion.make_signed_token(signing_key)
    return claims_assertion.serialize()
