"""Command-line flags, with defaults taken from the environment (or a ``.env`` file)."""

from __future__ import annotations

import argparse
import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

# ---------------------------------------------------------------------------
# Configuration defaults
# ---------------------------------------------------------------------------

DEFAULT_ENDPOINT = "http://localhost:4337/ws"
DEFAULT_PREFIX = "mirage/"
DEFAULT_REWARD_ID = "a715bd7d-9454-4ff4-b91f-f74ffc97d63f"
DEFAULT_LOG_LEVEL = "INFO"

CHAT_MESSAGE_KEY = "twitch/ev/chat-message"
WEBHOOK_KEY = "stulbe/ev/webhook"
SEND_CHAT_KEY = "twitch/@send-chat-message"
LEDGER_KEY_NAME = "figments"


@dataclass
class MirageConfig:
    endpoint: str = DEFAULT_ENDPOINT
    auth: str = ""
    prefix: str = DEFAULT_PREFIX
    reward_id: str = DEFAULT_REWARD_ID
    password: str = field(default="", repr=False)
    log_level: str = DEFAULT_LOG_LEVEL

    @property
    def ledger_key(self) -> str:
        return f"{self.prefix}{LEDGER_KEY_NAME}"

    @property
    def headers(self) -> dict[str, str]:
        if not self.auth:
            return {}
        return {"Authorization": f"Bearer {self.auth}"}


def build_parser(env: dict[str, str] | None = None) -> argparse.ArgumentParser:
    env = os.environ if env is None else env
    parser = argparse.ArgumentParser(
        prog="miragemod",
        description="Count channel-point figment redemptions through a Kilovolt broker.",
    )
    parser.add_argument(
        "--endpoint", default=env.get("MIRAGE_ENDPOINT", DEFAULT_ENDPOINT),
        help="Address:port to connect to",
    )
    parser.add_argument(
        "--auth", default=env.get("MIRAGE_AUTH", ""),
        help="Optional Authorization string",
    )
    parser.add_argument(
        "--prefix", default=env.get("MIRAGE_PREFIX", DEFAULT_PREFIX),
        help="Prefix/Namespace for keys",
    )
    parser.add_argument(
        "--reward", dest="reward_id", default=env.get("MIRAGE_REWARD", DEFAULT_REWARD_ID),
        help="Reward ID to check for",
    )
    parser.add_argument(
        "--password", default=env.get("MIRAGE_PASSWORD", ""),
        help="Optional password for Kilovolt",
    )
    parser.add_argument(
        "--log-level", default=env.get("MIRAGE_LOG_LEVEL", DEFAULT_LOG_LEVEL),
        type=str.upper, choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Console log level",
    )
    return parser


def load_config(argv: list[str] | None = None) -> MirageConfig:
    """Read ``.env`` into the environment, then parse ``argv`` on top of it."""
    load_dotenv()
    args = build_parser().parse_args(argv)
    return MirageConfig(**vars(args))
