"""
Configuration for the AT Protocol session client.

Settings are loaded through Pydantic's ``BaseSettings`` so every value can be
overridden from the environment. There is no process-wide configuration
object: a ``Settings`` instance is passed to the client constructors, and a
fresh default instance is built when none is given.

Key configuration areas:
- Default service location and refresh endpoint path
- Proof and client assertion lifetimes
- Transport timeout
"""

from typing import Final

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings

DEFAULT_BASE_URL: Final = "https://bsky.social"
"""Base URL used when no refresh endpoint is given explicitly."""

DEFAULT_REFRESH_PATH: Final = "/xrpc/com.atproto.server.refreshSession"
"""Path of the refresh endpoint, relative to the base URL."""

CLIENT_ASSERTION_TYPE: Final = "urn:ietf:params:oauth:client-assertion-type:jwt-bearer"
"""Value of the ``client_assertion_type`` field in token requests."""


class Settings(BaseSettings):
    """
    Client settings.

    Environment variables are mapped to fields automatically. The base URL can
    be set with either BASE_URL or ATPROTO_BASE_URL.
    """

    base_url: str = Field(
        DEFAULT_BASE_URL,
        validation_alias=AliasChoices("base_url", "atproto_base_url"),
    )
    """
    Service base URL, used to build the default refresh endpoint and to
    discover the authorization server.
    Default: https://bsky.social
    """

    refresh_path: str = DEFAULT_REFRESH_PATH
    """
    Path appended to ``base_url`` to form the default refresh endpoint.
    Set with REFRESH_PATH environment variable.
    """

    dpop_proof_expiry: int = 120
    """Lifetime in seconds of every DPoP proof (``exp - iat``)."""

    client_assertion_expiry: int = 300
    """Lifetime in seconds of every client assertion JWT."""

    request_timeout: float = 30.0
    """
    Total timeout in seconds for one HTTP exchange when the client owns its
    transport session.
    Set with REQUEST_TIMEOUT environment variable.
    """

    @field_validator("base_url", mode="after")
    @classmethod
    def strip_base_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("base_url must be an absolute http(s) URL")
        return v.rstrip("/")

    @field_validator("refresh_path", mode="after")
    @classmethod
    def normalize_refresh_path(cls, v: str) -> str:
        if not v.startswith("/"):
            return f"/{v}"
        return v

    @property
    def refresh_endpoint(self) -> str:
        """Default refresh endpoint for this configuration."""
        return f"{self.base_url}{self.refresh_path}"
