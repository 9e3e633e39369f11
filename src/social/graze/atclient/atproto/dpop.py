"""
DPoP proof generation, nonce tracking and the DPoP-aware request dispatcher.

The dispatcher signs a fresh proof for every outbound request and retries a
request exactly once when the server answers ``use_dpop_nonce``, using the
nonce carried in that response's ``DPoP-Nonce`` header.
"""

from enum import Enum
import logging
import threading
from types import TracebackType
from typing import Any, Dict, Mapping, Optional
from jwcrypto import jwk
from multidict import CIMultiDict

from social.graze.atclient.atproto.jwt import (
    DPOP_PROOF_EXPIRY,
    create_dpop_jwt,
    generate_dpop_key,
)
from social.graze.atclient.atproto.request import RequestBody, RequestExecutor
from social.graze.atclient.errors import (
    APIError,
    ConfigurationError,
    NonceRequiredError,
)

logger = logging.getLogger(__name__)

DPOP_NONCE_HEADER = "DPoP-Nonce"
MAX_NONCE_RETRIES = 1

# Marks an omitted access_token argument; None means "no ath claim".
CONTEXT_ACCESS_TOKEN: Any = object()


class NonceTracker:
    """Holds the latest server-issued DPoP nonce."""

    def __init__(self, nonce: Optional[str] = None) -> None:
        self._nonce = nonce
        self._lock = threading.Lock()

    def current(self) -> Optional[str]:
        with self._lock:
            return self._nonce

    def update(self, headers: Mapping[str, str]) -> None:
        """Take the first ``dpop-nonce`` value from response headers.

        A response without the header leaves the current nonce untouched.
        """
        new_nonce = CIMultiDict(headers).getone(DPOP_NONCE_HEADER, None)
        if new_nonce is None:
            return

        with self._lock:
            self._nonce = new_nonce
        logger.debug("DPoP nonce updated")


class DpopTokenGenerator:
    """Builds and signs DPoP proofs with a single P-256 key.

    The key is supplied at construction or generated there, and never
    changes for the life of the generator.
    """

    def __init__(
        self,
        dpop_key: Optional[jwk.JWK] = None,
        access_token: Optional[str] = None,
        nonce_tracker: Optional[NonceTracker] = None,
        expires_in_seconds: int = DPOP_PROOF_EXPIRY,
    ) -> None:
        if dpop_key is None:
            dpop_key, _ = generate_dpop_key()
        self._dpop_key = dpop_key
        self._public_key_dict: Optional[Dict[str, Any]] = (
            dpop_key.export_public(as_dict=True) if dpop_key.has_public else None
        )
        self._access_token = access_token
        self._token_lock = threading.Lock()
        self.nonce_tracker = nonce_tracker or NonceTracker()
        self.expires_in_seconds = expires_in_seconds

    @property
    def dpop_key(self) -> jwk.JWK:
        return self._dpop_key

    @property
    def public_jwk(self) -> Optional[Dict[str, Any]]:
        return self._public_key_dict

    @property
    def access_token(self) -> Optional[str]:
        with self._token_lock:
            return self._access_token

    def set_access_token(self, access_token: Optional[str]) -> None:
        with self._token_lock:
            self._access_token = access_token

    def generate(
        self,
        http_method: str,
        url: str,
        nonce: Optional[str] = None,
        access_token: Optional[str] = CONTEXT_ACCESS_TOKEN,
    ) -> str:
        """Sign a proof for ``http_method`` and ``url``.

        Args:
            http_method: HTTP method, becomes ``htm``
            url: Absolute target URL, becomes ``htu``
            nonce: Nonce to embed; the tracker's current value when omitted
            access_token: Token bound through ``ath``; the generator's
                access-token context when omitted, no ``ath`` when None

        Raises:
            ConfigurationError: If the generator holds no private signing key
            ValueError: If the method or URL is empty
        """
        if not self._dpop_key.has_private or self._public_key_dict is None:
            raise ConfigurationError("No DPoP signing key available")
        if not http_method:
            raise ValueError("HTTP method must not be empty")
        if not url:
            raise ValueError("URL must not be empty")

        if nonce is None:
            nonce = self.nonce_tracker.current()
        if access_token is CONTEXT_ACCESS_TOKEN:
            access_token = self.access_token

        return create_dpop_jwt(
            self._dpop_key,
            http_method,
            url,
            public_key_dict=self._public_key_dict,
            expires_in_seconds=self.expires_in_seconds,
            nonce=nonce,
            access_token=access_token,
        )


class DispatchState(Enum):
    INITIAL = "initial"
    RETRIED = "retried"


class DpopDispatcher:
    """Sends requests with a DPoP proof, retrying once on ``use_dpop_nonce``."""

    def __init__(
        self,
        executor: Optional[RequestExecutor] = None,
        generator: Optional[DpopTokenGenerator] = None,
    ) -> None:
        self.executor = executor or RequestExecutor()
        self.generator = generator or DpopTokenGenerator()

    @property
    def nonce_tracker(self) -> NonceTracker:
        return self.generator.nonce_tracker

    def set_access_token(self, access_token: Optional[str]) -> None:
        self.generator.set_access_token(access_token)

    async def make_request(
        self,
        url: str,
        method: str,
        headers: Optional[Mapping[str, str]] = None,
        body: Optional[RequestBody] = None,
        access_token: Optional[str] = CONTEXT_ACCESS_TOKEN,
    ) -> Any:
        """Dispatch one request and return the parsed payload.

        Every attempt binds ``access_token`` through ``ath``. When omitted it
        is read from the generator once, before the first attempt, so a nonce
        retry is bound to the same token as the attempt it repeats.

        Raises:
            APIError: The nonce retry was also rejected with ``use_dpop_nonce``,
                or the server answered with any other non-success status
            TokenExpiredError: Propagated without retry
            AuthError: Propagated without retry
        """
        method = method.upper()
        if access_token is CONTEXT_ACCESS_TOKEN:
            access_token = self.generator.access_token
        state = DispatchState.INITIAL
        retries = 0

        while True:
            request_headers = dict(headers or {})
            request_headers["DPoP"] = self.generator.generate(
                method, url, access_token=access_token
            )

            try:
                return await self.executor.execute(method, url, request_headers, body)
            except NonceRequiredError as e:
                if state is DispatchState.RETRIED or retries >= MAX_NONCE_RETRIES:
                    raise APIError(
                        f"Request failed: {e.response.status} - {e.response.text}",
                        status=e.response.status,
                        body=e.response.text,
                    ) from e

                self.nonce_tracker.update(e.response.headers)
                retries += 1
                state = DispatchState.RETRIED
                logger.debug(f"Retrying {method} {url} with new DPoP nonce")

    async def close(self) -> None:
        await self.executor.close()

    async def __aenter__(self) -> "DpopDispatcher":
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()
