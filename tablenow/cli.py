"""Command-line replay tool - posts saved payloads to a running TableNow server.

Side-effect failures are only logged, so an operator repairs them by replaying
the original webhook or email payload once the collaborator is healthy again.
Replays are safe: call logs are upserted, a replayed tool call returns its
first result, and a replayed booking (tool call or email) only re-runs the
calendar and CRM effects it is missing.
"""

import argparse
import json
import logging
import sys
from pathlib import Path

import httpx

from tablenow.config import get_config, setup_logging

logger = logging.getLogger(__name__)

ENDPOINTS = {
    "webhook": "/api/vapi/webhook",
    "email": "/api/email/bcc",
}


class ReplayCLI:
    """HTTP client that replays stored channel payloads."""

    def __init__(self, server_url: str | None = None) -> None:
        self.config = get_config()
        setup_logging(self.config)
        self.server_url = (server_url or self.config.server_url).rstrip("/")

    def replay(self, channel: str, payload_path: Path) -> int:
        """Post one payload file to the channel endpoint.

        Args:
            channel: "webhook" or "email"
            payload_path: JSON file holding the original request body

        Returns:
            Process exit code
        """
        try:
            payload = json.loads(payload_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            print(f"\n⚠ Cannot read payload {payload_path}: {e}")
            return 2

        url = f"{self.server_url}{ENDPOINTS[channel]}"
        logger.info(f"Replaying {payload_path} to {url}")

        try:
            with httpx.Client(timeout=30.0) as client:
                response = client.post(url, json=payload)
        except httpx.TimeoutException:
            logger.exception("Request timed out")
            print("\n⚠ Request timed out. Check the server logs.")
            return 1
        except httpx.ConnectError:
            logger.exception("Cannot connect to server")
            print(f"\n⚠ Cannot connect to server at {self.server_url}")
            print("Make sure the server is running:")
            print("  python -m tablenow.server")
            return 1

        try:
            body = response.json()
        except ValueError:
            body = response.text

        print(f"\nStatus: {response.status_code}")
        print(json.dumps(body, indent=2) if not isinstance(body, str) else body)

        if response.status_code != 200:
            return 1
        if isinstance(body, dict) and body.get("error"):
            return 1
        return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tablenow-replay",
        description="Replay a saved voice webhook or BCC email payload.",
    )
    parser.add_argument("channel", choices=sorted(ENDPOINTS), help="Target endpoint")
    parser.add_argument("payload", type=Path, help="JSON file with the request body")
    parser.add_argument("--url", help="Server URL (default: SERVER_URL setting)")
    return parser


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the replay CLI."""
    args = build_parser().parse_args(argv)
    cli = ReplayCLI(args.url)
    sys.exit(cli.replay(args.channel, args.payload))


if __name__ == "__main__":
    main()
