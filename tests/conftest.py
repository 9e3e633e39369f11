"""
Shared test configuration and fixtures for the AT Protocol session client.

Provides a scripted stand-in for ``aiohttp.ClientSession`` that records every
request and replays queued responses, plus helpers to decode DPoP proofs.
"""

import asyncio
import base64
import json
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock

import pytest
from aiohttp import ClientResponse, hdrs
from jwcrypto import jwk, jwt
from multidict import CIMultiDict, CIMultiDictProxy

from social.graze.atclient.atproto.jwt import generate_dpop_key
from social.graze.atclient.config import Settings


def create_headers_proxy(headers_list):
    """Create CIMultiDictProxy from list of tuples."""
    return CIMultiDictProxy(CIMultiDict(headers_list))


def create_mock_response(
    status: int = 200,
    body: Any = None,
    headers: Optional[Dict[str, str]] = None,
) -> ClientResponse:
    """Create a mock aiohttp ClientResponse.

    ``dict`` and ``list`` bodies are JSON encoded, ``str`` bodies are sent
    verbatim, ``None`` produces an empty body.
    """
    if isinstance(body, (dict, list)):
        raw = json.dumps(body).encode()
    elif isinstance(body, str):
        raw = body.encode()
    elif body is None:
        raw = b""
    else:
        raw = body

    headers_dict = CIMultiDict(headers or {})
    if hdrs.CONTENT_TYPE not in headers_dict:
        headers_dict[hdrs.CONTENT_TYPE] = "application/json"

    mock_response = AsyncMock(spec=ClientResponse)
    mock_response.status = status
    mock_response.headers = CIMultiDictProxy(headers_dict)
    mock_response.read = AsyncMock(return_value=raw)
    return mock_response


@dataclass
class RecordedRequest:
    method: str
    url: str
    headers: Any
    data: Any

    @property
    def dpop(self) -> str:
        return self.headers["DPoP"]

    def json(self) -> Any:
        return json.loads(self.data)


class _RequestContext:
    def __init__(self, response: ClientResponse) -> None:
        self._response = response

    async def __aenter__(self) -> ClientResponse:
        # yield so concurrent requests interleave like real network I/O
        await asyncio.sleep(0)
        return self._response

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        return None


class MockClientSession:
    """Replays queued responses in order and records each request.

    Responses registered with ``route`` are served to requests for that URL
    (query string ignored) before falling back to the shared queue.
    """

    def __init__(self, responses: Optional[List[ClientResponse]] = None) -> None:
        self.responses: List[ClientResponse] = list(responses or [])
        self.routes: Dict[str, List[ClientResponse]] = {}
        self.requests: List[RecordedRequest] = []
        self.closed = False

    def queue(self, *responses: ClientResponse) -> None:
        self.responses.extend(responses)

    def route(self, url: str, *responses: ClientResponse) -> None:
        self.routes.setdefault(url, []).extend(responses)

    def requests_to(self, url: str) -> List[RecordedRequest]:
        return [r for r in self.requests if r.url.split("?")[0] == url]

    def request(self, method, url, headers=None, data=None, **kwargs):
        self.requests.append(RecordedRequest(method, str(url), headers, data))
        routed = self.routes.get(str(url).split("?")[0])
        if routed:
            return _RequestContext(routed.pop(0))
        if not self.responses:
            raise AssertionError(f"Unexpected request: {method} {url}")
        return _RequestContext(self.responses.pop(0))

    async def close(self) -> None:
        self.closed = True


def decode_segment(segment: str) -> Dict[str, Any]:
    padded = segment + "=" * (-len(segment) % 4)
    return json.loads(base64.urlsafe_b64decode(padded))


def decode_proof(token: str):
    """Verify a DPoP proof against its embedded JWK and return (header, claims)."""
    header = decode_segment(token.split(".")[0])
    public_key = jwk.JWK(**header["jwk"])
    parsed_jwt = jwt.JWT(jwt=token, key=public_key)
    return header, json.loads(parsed_jwt.claims)


@pytest.fixture
def dpop_key() -> jwk.JWK:
    key, _ = generate_dpop_key()
    return key


@pytest.fixture
def client_jwk() -> jwk.JWK:
    key, _ = generate_dpop_key()
    return key


@pytest.fixture
def mock_session() -> MockClientSession:
    return MockClientSession()


@pytest.fixture
def settings() -> Settings:
    return Settings(base_url="https://api.example.com")
