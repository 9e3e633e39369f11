from dataclasses import dataclass
import json
from types import TracebackType
from typing import Any, Mapping, Optional, Union
import logging
from aiohttp import ClientResponse, ClientSession, ClientTimeout, hdrs
from multidict import CIMultiDict, CIMultiDictProxy

from social.graze.atclient.errors import (
    APIError,
    AuthError,
    NonceRequiredError,
    ResponseParseError,
    TokenExpiredError,
)

logger = logging.getLogger(__name__)

RequestBody = Union[Mapping[str, Any], list, bytes, str]

DEFAULT_HEADERS = {
    hdrs.CONTENT_TYPE: "application/json",
    hdrs.ACCEPT: "application/json",
}


@dataclass
class ChainResponse:
    status: int
    headers: CIMultiDictProxy[str]
    body: bytes = b""

    @staticmethod
    async def from_aiohttp_response(response: ClientResponse) -> "ChainResponse":
        return ChainResponse(
            status=response.status,
            headers=response.headers,
            body=await response.read(),
        )

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def json(self) -> Any:
        """Decode the body as JSON. An empty body decodes to ``None``."""
        if not self.body.strip():
            return None
        try:
            return json.loads(self.body)
        except ValueError as e:
            raise ResponseParseError(
                f"Invalid JSON response: {self.status} - {self.text}",
                status=self.status,
                body=self.text,
            ) from e

    def json_or_empty(self) -> dict[str, Any]:
        """Decode an error body, tolerating bodies that are not JSON objects."""
        try:
            body = self.json()
        except ResponseParseError:
            return {}
        return body if isinstance(body, dict) else {}

    def body_matches_kv(self, key: str, value: Any) -> bool:
        body = self.json_or_empty()
        return key in body and body[key] == value


def encode_body(body: Optional[RequestBody]) -> Optional[Union[bytes, str]]:
    """Serialize structured bodies to JSON; raw payloads pass through unchanged."""
    if body is None:
        return None
    if isinstance(body, (bytes, str)):
        return body
    return json.dumps(body)


def classify_response(response: ChainResponse) -> Any:
    """Map a response to its parsed payload or raise the matching error."""
    status = response.status

    if 200 <= status < 300:
        return response.json()

    if status == 400 and response.body_matches_kv("error", "use_dpop_nonce"):
        raise NonceRequiredError(response)

    if status == 401:
        body = response.json_or_empty()
        error = body.get("error")
        if error == "TokenExpiredError":
            raise TokenExpiredError(body=response.text)

        message = f"Unauthorized: {error if error is not None else response.text}"
        if body.get("message"):
            message = f"{message} - {body['message']}"
        raise AuthError(message, status=status, body=response.text)

    raise APIError(
        f"Request failed: {status} - {response.text}",
        status=status,
        body=response.text,
    )


class RequestExecutor:
    """Sends one HTTP request and maps the response to a payload or an error.

    An injected ``ClientSession`` is borrowed and never closed here. Without
    one, a session is created on first use and closed by ``close()``.
    """

    def __init__(
        self,
        client_session: ClientSession | None = None,
        timeout: float | None = None,
    ) -> None:
        self._client = client_session
        self._owns_client = client_session is None
        self._timeout = timeout

    def _get_client(self) -> ClientSession:
        if self._client is None or self._client.closed:
            timeout = ClientTimeout(total=self._timeout) if self._timeout else None
            self._client = ClientSession(timeout=timeout)
            self._owns_client = True
        return self._client

    def build_headers(self, headers: Mapping[str, str] | None = None) -> CIMultiDict[str]:
        merged = CIMultiDict(DEFAULT_HEADERS)
        for key, value in (headers or {}).items():
            merged[key] = value
        return merged

    async def send(
        self,
        method: str,
        uri: str,
        headers: Mapping[str, str] | None = None,
        body: Optional[RequestBody] = None,
    ) -> ChainResponse:
        """Send the request and return the raw response without classifying it."""
        logger.debug(f"Making request: {method} {uri}")

        async with self._get_client().request(
            method,
            uri,
            headers=self.build_headers(headers),
            data=encode_body(body),
        ) as response:
            chain_response = await ChainResponse.from_aiohttp_response(response)

        logger.debug(f"Response: {method} {uri} {chain_response.status}")
        return chain_response

    async def execute(
        self,
        method: str,
        uri: str,
        headers: Mapping[str, str] | None = None,
        body: Optional[RequestBody] = None,
    ) -> Any:
        """Send the request and return the parsed JSON payload.

        Raises:
            NonceRequiredError: 400 with ``use_dpop_nonce``
            TokenExpiredError: 401 with ``TokenExpiredError``
            AuthError: any other 401
            APIError: any other non-success status
            ResponseParseError: success status with a malformed JSON body
        """
        response = await self.send(method, uri, headers, body)
        return classify_response(response)

    async def close(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.close()
            self._client = None

    async def __aenter__(self) -> "RequestExecutor":
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()
