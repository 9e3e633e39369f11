import argparse
import asyncio
import json
import logging
import os
import sys

from social.graze.atclient.atproto.client import SessionClient
from social.graze.atclient.cli import configure_logging
from social.graze.atclient.config import Settings
from social.graze.atclient.errors import AtClientError

logger = logging.getLogger(__name__)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="atclient", description="Send one DPoP-authenticated request"
    )
    parser.add_argument("method", help="HTTP method, e.g. GET or POST.")
    parser.add_argument("url", help="Absolute URL of the endpoint.")
    parser.add_argument(
        "--param",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Query parameter, may be repeated.",
    )
    parser.add_argument("--body", help="JSON request body.")
    parser.add_argument(
        "--access-token",
        default=os.getenv("ACCESS_TOKEN"),
        help="Access token (default: ACCESS_TOKEN environment variable).",
    )
    parser.add_argument(
        "--refresh-token",
        default=os.getenv("REFRESH_TOKEN"),
        help="Refresh token (default: REFRESH_TOKEN environment variable).",
    )
    parser.add_argument(
        "--refresh-endpoint",
        default=None,
        help="Refresh endpoint (default: derived from BASE_URL).",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        default=None,
        help="Log at DEBUG level (default: DEBUG environment variable).",
    )
    args = parser.parse_args(argv)
    for param in args.param:
        if "=" not in param:
            parser.error(f"invalid --param {param!r}, expected KEY=VALUE")
    if args.body is not None:
        try:
            json.loads(args.body)
        except ValueError as e:
            parser.error(f"invalid --body, expected JSON: {e}")
    return args


async def realMain(args: argparse.Namespace) -> int:
    params = dict(param.split("=", 1) for param in args.param)
    body = json.loads(args.body) if args.body else None

    async with SessionClient(
        access_token=args.access_token,
        refresh_token=args.refresh_token,
        settings=Settings(),
        refresh_endpoint=args.refresh_endpoint,
    ) as client:
        try:
            result = await client.request(args.method, args.url, params=params, body=body)
        except AtClientError:
            logger.exception("Request failed: %s %s", args.method, args.url)
            return 1

    print(json.dumps(result, indent=2))
    return 0


def main() -> None:
    args = parse_args()
    configure_logging(args.debug)
    sys.exit(asyncio.run(realMain(args)))


if __name__ == "__main__":
    main()
