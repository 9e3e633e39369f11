"""
AT Protocol Session Client

Holds the access/refresh token pair for one session and sends authenticated
requests through a DPoP dispatcher. When the server reports the access token
as expired, the client refreshes the pair and retries the original request
exactly once.

Token refresh is serialized per client: concurrent requests that see the same
expired token produce a single refresh exchange, and the waiting requests
reuse the tokens obtained by the first one.

Supported token grants:
- ``refresh_token`` against the refresh endpoint
- ``authorization_code`` against the authorization server's token endpoint

Both grants add a signed client assertion (RFC 7523) when an OAuth client
context is configured.
"""

import asyncio
from dataclasses import dataclass
import logging
from types import TracebackType
from typing import Any, Dict, Mapping, Optional
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse
from jwcrypto import jwk

from social.graze.atclient.atproto.dpop import DpopDispatcher, DpopTokenGenerator
from social.graze.atclient.atproto.jwt import create_client_assertion_jwt
from social.graze.atclient.atproto.pds import discover_token_endpoint, site_of
from social.graze.atclient.atproto.request import RequestBody, RequestExecutor
from social.graze.atclient.config import CLIENT_ASSERTION_TYPE, Settings
from social.graze.atclient.errors import (
    APIError,
    AuthError,
    ConfigurationError,
    RefreshTokenError,
    TokenExpiredError,
)

logger = logging.getLogger(__name__)

MAX_TOKEN_REFRESH_RETRIES = 1
RESERVED_HEADERS = frozenset({"authorization", "dpop"})


@dataclass(frozen=True)
class TokenPair:
    access_token: Optional[str]
    refresh_token: Optional[str] = None


@dataclass(frozen=True)
class OAuthClientContext:
    """Identity of a confidential OAuth client.

    ``audience`` defaults to the site of the token endpoint the assertion is
    sent to.
    """

    client_id: Optional[str]
    client_jwk: Optional[jwk.JWK]
    audience: Optional[str] = None
    redirect_uri: Optional[str] = None

    def client_assertion_fields(
        self, token_endpoint: str, expires_in_seconds: int
    ) -> Dict[str, str]:
        if not self.client_id:
            raise ConfigurationError("OAuth client id is not configured")
        if self.client_jwk is None:
            raise ConfigurationError("OAuth client JWK is not configured")
        if not self.client_jwk.export_public(as_dict=True).get("kid"):
            raise ConfigurationError("OAuth client JWK has no kid")

        client_assertion = create_client_assertion_jwt(
            self.client_jwk,
            self.client_id,
            self.audience or site_of(token_endpoint),
            expires_in_seconds=expires_in_seconds,
        )
        return {
            "client_id": self.client_id,
            "client_assertion_type": CLIENT_ASSERTION_TYPE,
            "client_assertion": client_assertion,
        }


def merge_query_params(url: str, params: Optional[Mapping[str, Any]] = None) -> str:
    """Add ``params`` to the query of ``url``.

    Existing pairs are kept in order, including repeated keys and blank
    values, except for keys that ``params`` supplies, which it replaces.
    Sequence values become repeated keys.
    """
    if not params:
        return url

    parsed_url = urlparse(url)
    query = [
        (key, value)
        for key, value in parse_qsl(parsed_url.query, keep_blank_values=True)
        if key not in params
    ]
    query.extend(params.items())
    return urlunparse(parsed_url._replace(query=urlencode(query, doseq=True)))


class SessionClient:
    def __init__(
        self,
        access_token: Optional[str] = None,
        refresh_token: Optional[str] = None,
        dispatcher: Optional[DpopDispatcher] = None,
        settings: Optional[Settings] = None,
        refresh_endpoint: Optional[str] = None,
        token_endpoint: Optional[str] = None,
        oauth_client: Optional[OAuthClientContext] = None,
        dpop_key: Optional[jwk.JWK] = None,
    ) -> None:
        """
        Args:
            access_token: Current access token
            refresh_token: Refresh token; without one, expired tokens are not refreshed
            dispatcher: DPoP dispatcher to send requests through (built from
                ``settings`` and ``dpop_key`` when omitted)
            settings: Client settings (defaults loaded from the environment)
            refresh_endpoint: Refresh endpoint (defaults to the settings' base URL
                and refresh path)
            token_endpoint: OAuth token endpoint for the authorization-code
                grant (discovered from the base URL when omitted)
            oauth_client: OAuth client identity used for client assertions
            dpop_key: DPoP signing key for the default dispatcher
        """
        if dispatcher is not None and dpop_key is not None:
            raise ValueError("Pass either a dispatcher or a dpop_key, not both")

        self.settings = settings or Settings()

        if dispatcher is None:
            dispatcher = DpopDispatcher(
                executor=RequestExecutor(timeout=self.settings.request_timeout),
                generator=DpopTokenGenerator(
                    dpop_key, expires_in_seconds=self.settings.dpop_proof_expiry
                ),
            )
        self.dispatcher = dispatcher

        self.refresh_endpoint = refresh_endpoint or self.settings.refresh_endpoint
        self.token_endpoint = token_endpoint
        self.oauth_client = oauth_client

        self._tokens = TokenPair(access_token, refresh_token)
        self._refresh_lock = asyncio.Lock()
        self.dispatcher.set_access_token(access_token)

    @property
    def tokens(self) -> TokenPair:
        return self._tokens

    @property
    def access_token(self) -> Optional[str]:
        return self._tokens.access_token

    @property
    def refresh_token(self) -> Optional[str]:
        return self._tokens.refresh_token

    async def request(
        self,
        method: str,
        url: str,
        params: Optional[Mapping[str, Any]] = None,
        body: Optional[RequestBody] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> Any:
        """Send an authenticated request and return the parsed payload.

        An expired access token is refreshed once, then the request is
        retried with the new token.

        Raises:
            TokenExpiredError: No refresh token is held, or the retried request
                also reported an expired token
            RefreshTokenError: The refresh exchange failed
            AuthError: Authorization denied for another reason
            APIError: Any other non-success response
        """
        target = merge_query_params(url, params)
        refreshes = 0

        while True:
            tokens = self._tokens
            try:
                return await self.dispatcher.make_request(
                    target,
                    method,
                    headers=self._request_headers(tokens, headers),
                    body=body,
                    access_token=tokens.access_token,
                )
            except TokenExpiredError:
                if tokens.refresh_token is None:
                    raise
                if refreshes >= MAX_TOKEN_REFRESH_RETRIES:
                    raise

                refreshes += 1
                logger.debug(f"Access token expired for {method} {url}, refreshing")
                await self._refresh_expired(tokens)

    def _request_headers(
        self, tokens: TokenPair, headers: Optional[Mapping[str, str]]
    ) -> Dict[str, str]:
        merged = {
            key: value
            for key, value in (headers or {}).items()
            if key.lower() not in RESERVED_HEADERS
        }
        if tokens.access_token:
            merged["Authorization"] = f"DPoP {tokens.access_token}"
        return merged

    async def _refresh_expired(self, stale: TokenPair) -> TokenPair:
        async with self._refresh_lock:
            if self._tokens != stale:
                logger.debug("Tokens were refreshed by a concurrent request")
                return self._tokens
            return await self._refresh_locked()

    async def refresh_access_token(self) -> TokenPair:
        """Exchange the refresh token for a new token pair.

        Raises:
            RefreshTokenError: No refresh token is held, or the exchange failed.
                The previously held tokens are kept.
            ConfigurationError: An OAuth client context is configured without
                a client id or JWK
        """
        async with self._refresh_lock:
            return await self._refresh_locked()

    async def _refresh_locked(self) -> TokenPair:
        current = self._tokens
        if current.refresh_token is None:
            raise RefreshTokenError("No refresh token available")

        data: Dict[str, str] = {
            "grant_type": "refresh_token",
            "refresh_token": current.refresh_token,
        }
        if self.oauth_client is not None:
            data.update(
                self.oauth_client.client_assertion_fields(
                    self.refresh_endpoint, self.settings.client_assertion_expiry
                )
            )

        token_response = await self._token_request(
            self.refresh_endpoint, data, "Failed to refresh token", current
        )
        logger.debug("Access token refreshed")
        return self._store_tokens(token_response, current)

    async def exchange_authorization_code(
        self,
        code: str,
        code_verifier: Optional[str] = None,
        redirect_uri: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Exchange a one-time authorization code for tokens.

        Returns the full token response; the held tokens are replaced with
        the ones it contains.

        Raises:
            RefreshTokenError: The token endpoint rejected the exchange
            ConfigurationError: No token endpoint could be determined, or the
                OAuth client context is incomplete
        """
        token_endpoint = await self._resolve_token_endpoint()

        data: Dict[str, str] = {"grant_type": "authorization_code", "code": code}
        if redirect_uri is None and self.oauth_client is not None:
            redirect_uri = self.oauth_client.redirect_uri
        if redirect_uri:
            data["redirect_uri"] = redirect_uri
        if code_verifier:
            data["code_verifier"] = code_verifier

        async with self._refresh_lock:
            if self.oauth_client is not None:
                data.update(
                    self.oauth_client.client_assertion_fields(
                        token_endpoint, self.settings.client_assertion_expiry
                    )
                )

            token_response = await self._token_request(
                token_endpoint,
                data,
                "Failed to exchange authorization code",
                self._tokens,
            )
            self._store_tokens(token_response, self._tokens)

        return token_response

    async def _resolve_token_endpoint(self) -> str:
        if self.token_endpoint is None:
            self.token_endpoint = await discover_token_endpoint(
                self.dispatcher.executor, self.settings.base_url
            )
        if self.token_endpoint is None:
            raise ConfigurationError("No token endpoint configured or discovered")
        return self.token_endpoint

    async def _token_request(
        self, endpoint: str, data: Dict[str, str], failure: str, tokens: TokenPair
    ) -> Dict[str, Any]:
        try:
            token_response = await self.dispatcher.make_request(
                endpoint,
                "POST",
                headers={},
                body=data,
                access_token=tokens.access_token,
            )
        except (APIError, AuthError) as e:
            raise RefreshTokenError(
                f"{failure}: {e.status} - {e.body}", status=e.status, body=e.body
            ) from e

        if not isinstance(token_response, dict) or not token_response.get(
            "access_token"
        ):
            raise RefreshTokenError(f"{failure}: response has no access_token")

        return token_response

    def _store_tokens(
        self, token_response: Dict[str, Any], previous: TokenPair
    ) -> TokenPair:
        tokens = TokenPair(
            access_token=token_response["access_token"],
            refresh_token=token_response.get("refresh_token", previous.refresh_token),
        )
        self._tokens = tokens
        self.dispatcher.set_access_token(tokens.access_token)
        return tokens

    async def close(self) -> None:
        await self.dispatcher.close()

    async def __aenter__(self) -> "SessionClient":
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()
