"""
Exceptions raised by the AT Protocol session client.

Every failure surfaced to callers derives from ``AtClientError``. Errors that
originate from an HTTP response carry the upstream ``status`` and raw ``body``
so callers can inspect what the server actually said.
"""

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from social.graze.atclient.atproto.request import ChainResponse


class AtClientError(Exception):
    """Base class for all client errors."""

    def __init__(
        self,
        message: str = "",
        status: Optional[int] = None,
        body: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.body = body


class ConfigurationError(AtClientError):
    """A signing key, client id or client JWK required by a flow is missing."""


class NonceRequiredError(AtClientError):
    """The server demanded a fresh DPoP nonce (``use_dpop_nonce``).

    Handled inside the dispatcher, which reads the new nonce from the carried
    response and retries once.
    """

    def __init__(self, response: "ChainResponse") -> None:
        super().__init__(
            f"DPoP nonce required: {response.status}",
            status=response.status,
            body=response.text,
        )
        self.response = response


class AuthError(AtClientError):
    """Authorization was denied by the server."""


class TokenExpiredError(AuthError):
    """The access token was rejected as expired."""

    def __init__(
        self,
        message: str = "Access token expired",
        status: Optional[int] = 401,
        body: Optional[str] = None,
    ) -> None:
        super().__init__(message, status=status, body=body)


class RefreshTokenError(AuthError):
    """A refresh or authorization-code exchange failed."""


class APIError(AtClientError):
    """Any other non-success response, or an exhausted nonce retry."""


class ResponseParseError(AtClientError, ValueError):
    """A successful response carried a body that is not valid JSON."""
