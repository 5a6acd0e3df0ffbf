"""Shared fixtures: an in-memory stand-in for the Kilovolt broker."""

import asyncio
import json
from datetime import datetime, timezone

import pytest

from miragemod.config import SEND_CHAT_KEY, MirageConfig
from miragemod.kilovolt import EmptyKeyError, KeyUpdate, KilovoltError

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
REWARD_ID = "a715bd7d-9454-4ff4-b91f-f74ffc97d63f"


class FakeKilovolt:
    """Implements the client surface the dispatcher uses, backed by a dict."""

    def __init__(self, store=None):
        self.store = dict(store or {})
        self.writes: list[tuple[str, str]] = []
        self.queues: dict[str, asyncio.Queue] = {}
        self.connect_error: Exception | None = None
        self.failing_writes: set[str] = set()
        self.failing_subscriptions: set[str] = set()
        self._closed: asyncio.Event | None = None

    async def connect(self):
        if self.connect_error is not None:
            raise self.connect_error
        self._closed = asyncio.Event()

    async def close(self):
        if self._closed is not None:
            self._closed.set()

    async def wait_closed(self):
        await self._closed.wait()

    async def get_key(self, key):
        return self.store.get(key, "")

    async def get_json(self, key):
        value = await self.get_key(key)
        if value == "":
            raise EmptyKeyError(key)
        try:
            return json.loads(value)
        except json.JSONDecodeError as exc:
            raise KilovoltError(str(exc)) from exc

    async def set_key(self, key, value):
        if key in self.failing_writes:
            raise KilovoltError(f"write to {key} refused")
        self.store[key] = value
        self.writes.append((key, value))

    async def set_json(self, key, value):
        await self.set_key(key, json.dumps(value))

    async def subscribe_key(self, key):
        if key in self.failing_subscriptions:
            raise KilovoltError(f"subscribe to {key} refused")
        return self.queues.setdefault(key, asyncio.Queue())

    # -- test helpers ------------------------------------------------------

    def push(self, key, value):
        self.queues[key].put_nowait(KeyUpdate(key=key, value=value))

    def chat(self):
        return [value for key, value in self.writes if key == SEND_CHAT_KEY]

    def writes_to(self, key):
        return [value for k, value in self.writes if k == key]


@pytest.fixture
def broker():
    return FakeKilovolt()


@pytest.fixture
def config():
    return MirageConfig(reward_id=REWARD_ID)
