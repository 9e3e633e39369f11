"""
AT Protocol session client with DPoP

This package implements an authenticated HTTP client for AT Protocol services
that require DPoP (Demonstrating Proof-of-Possession) bound access tokens.

Key Components:
- atproto: DPoP proofs, nonce tracking, request dispatch and the session client
- config: Settings loaded from the environment and passed to constructors
- errors: Exception hierarchy surfaced to callers
- cli: Logging setup and the command line entry point

Request Flow:
1. The session client adds ``Authorization: DPoP <access token>``
2. The dispatcher signs a fresh DPoP proof bound to the method and URL
3. The executor sends the request and classifies the response
4. A ``use_dpop_nonce`` rejection is retried once with the server's nonce
5. An expired access token is refreshed once and the request retried
"""

from social.graze.atclient.atproto.client import (
    OAuthClientContext,
    SessionClient,
    TokenPair,
)
from social.graze.atclient.atproto.dpop import (
    DpopDispatcher,
    DpopTokenGenerator,
    NonceTracker,
)
from social.graze.atclient.atproto.request import ChainResponse, RequestExecutor
from social.graze.atclient.config import Settings
from social.graze.atclient.errors import (
    APIError,
    AtClientError,
    AuthError,
    ConfigurationError,
    NonceRequiredError,
    RefreshTokenError,
    ResponseParseError,
    TokenExpiredError,
)

__all__ = [
    "APIError",
    "AtClientError",
    "AuthError",
    "ChainResponse",
    "ConfigurationError",
    "DpopDispatcher",
    "DpopTokenGenerator",
    "NonceRequiredError",
    "NonceTracker",
    "OAuthClientContext",
    "RefreshTokenError",
    "RequestExecutor",
    "ResponseParseError",
    "SessionClient",
    "Settings",
    "TokenExpiredError",
    "TokenPair",
]
