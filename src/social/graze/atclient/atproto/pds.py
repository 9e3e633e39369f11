from typing import Optional, Any
from urllib.parse import urlparse

from social.graze.atclient.atproto.request import RequestExecutor


async def oauth_authorization_server(
    executor: RequestExecutor, authorization_server: str
) -> Optional[Any]:
    response = await executor.send(
        "GET",
        f"{authorization_server.rstrip('/')}/.well-known/oauth-authorization-server",
    )
    if response.status != 200:
        return None
    return response.json()


async def discover_token_endpoint(
    executor: RequestExecutor, authorization_server: str
) -> Optional[str]:
    metadata = await oauth_authorization_server(executor, authorization_server)
    if not isinstance(metadata, dict):
        return None
    return metadata.get("token_endpoint", None)


def site_of(url: str) -> str:
    """Origin of ``url``: scheme, host and port, without path or query."""
    parsed = urlparse(url)
    return f"{parsed.scheme}://{parsed.netloc}"
