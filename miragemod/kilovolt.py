"""Asyncio client for the Kilovolt key-value pub/sub protocol (JSON over websocket).

Requests carry a ``request_id`` and are answered by a ``response`` message
with the same id. Changes to subscribed keys arrive as ``push`` messages and
are routed into one ``asyncio.Queue`` per key.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import itertools
import json
import logging
import ssl
from dataclasses import dataclass
from typing import Any

import aiohttp
import certifi

logger = logging.getLogger(__name__)


class KilovoltError(Exception):
    """A broker request failed or the connection is gone."""


class EmptyKeyError(KilovoltError):
    """The requested key holds no value."""


@dataclass(slots=True)
class KeyUpdate:
    key: str
    value: str


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def websocket_url(endpoint: str) -> str:
    """Map an http(s) endpoint to its ws(s) equivalent; ws(s) URLs pass through."""
    if endpoint.startswith("https://"):
        return "wss://" + endpoint[len("https://"):]
    if endpoint.startswith("http://"):
        return "ws://" + endpoint[len("http://"):]
    return endpoint


def challenge_response(password: str, challenge: str, salt: str) -> str:
    """Answer a ``klogin`` challenge: HMAC-SHA256 keyed with password+salt over the challenge."""
    key = password.encode() + base64.b64decode(salt)
    digest = hmac.new(key, base64.b64decode(challenge), hashlib.sha256).digest()
    return base64.b64encode(digest).decode()


# ---------------------------------------------------------------------------
# KilovoltClient
# ---------------------------------------------------------------------------

class KilovoltClient:
    """Connection to a Kilovolt broker."""

    def __init__(
        self,
        endpoint: str,
        headers: dict[str, str] | None = None,
        password: str = "",
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self.endpoint = endpoint
        self.headers = dict(headers or {})
        self.password = password
        self._session = session
        self._owns_session = session is None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._reader: asyncio.Task | None = None
        self._ids = itertools.count(1)
        self._pending: dict[str, asyncio.Future] = {}
        self._subscriptions: dict[str, asyncio.Queue[KeyUpdate]] = {}
        self._closed: asyncio.Event | None = None

    # -- lifecycle ---------------------------------------------------------

    async def connect(self) -> None:
        """Open the websocket, start the reader and authenticate if a password is set."""
        url = websocket_url(self.endpoint)
        if self._session is None:
            self._session = aiohttp.ClientSession()
        ssl_ctx: ssl.SSLContext | bool = True
        if url.startswith("wss://"):
            ssl_ctx = ssl.create_default_context(cafile=certifi.where())

        self._closed = asyncio.Event()
        try:
            self._ws = await self._session.ws_connect(url, headers=self.headers, ssl=ssl_ctx)
        except (aiohttp.ClientError, OSError) as exc:
            await self.close()
            raise KilovoltError(f"could not connect to {url}: {exc}") from exc

        self._reader = asyncio.get_running_loop().create_task(self._read_loop())
        if self.password:
            await self._authenticate()

    async def close(self) -> None:
        if self._reader is not None:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
            self._reader = None
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
        self._connection_lost("client closed")

    async def wait_closed(self) -> None:
        """Block until the connection is lost or closed."""
        if self._closed is None:
            return
        await self._closed.wait()

    @property
    def connected(self) -> bool:
        return self._closed is not None and not self._closed.is_set()

    async def _authenticate(self) -> None:
        login = await self.request("klogin")
        if not isinstance(login, dict):
            raise KilovoltError(f"unexpected klogin response: {login!r}")
        try:
            digest = challenge_response(self.password, login["challenge"], login["salt"])
        except (KeyError, TypeError, ValueError) as exc:
            raise KilovoltError(f"malformed auth challenge: {exc}") from exc
        await self.request("kauth", {"hash": digest})

    # -- incoming messages -------------------------------------------------

    async def _read_loop(self) -> None:
        assert self._ws is not None
        reason = "connection closed by broker"
        try:
            async for msg in self._ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    self._handle_text(msg.data)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    reason = f"websocket error: {self._ws.exception()}"
                    break
        finally:
            self._connection_lost(reason)

    def _handle_text(self, text: str) -> None:
        try:
            message = json.loads(text)
        except json.JSONDecodeError:
            logger.warning("[kilovolt] Ignoring non-JSON message: %.200s", text)
            return
        if isinstance(message, dict):
            self._handle_message(message)

    def _handle_message(self, message: dict[str, Any]) -> None:
        kind = message.get("type")
        if kind == "push":
            self._handle_push(message)
            return

        request_id = message.get("request_id")
        future = self._pending.pop(str(request_id), None) if request_id is not None else None
        if future is None:
            if kind not in (None, "hello"):
                logger.debug("[kilovolt] Unhandled message: %s", message)
            return
        if future.done():
            return
        if message.get("ok", False):
            future.set_result(message.get("data"))
        else:
            error = message.get("error", "unknown error")
            details = message.get("details")
            future.set_exception(KilovoltError(f"{error}: {details}" if details else error))

    def _handle_push(self, message: dict[str, Any]) -> None:
        key = message.get("key")
        queue = self._subscriptions.get(key) if isinstance(key, str) else None
        if queue is None:
            return
        value = message.get("new_value")
        queue.put_nowait(KeyUpdate(key=key, value=value if isinstance(value, str) else ""))

    def _connection_lost(self, reason: str) -> None:
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(KilovoltError(reason))
        if self._closed is not None and not self._closed.is_set():
            logger.debug("[kilovolt] %s", reason)
            self._closed.set()

    # -- requests ----------------------------------------------------------

    async def request(self, command: str, data: dict[str, Any] | None = None) -> Any:
        """Send ``command`` and wait for its response data."""
        if self._ws is None or not self.connected:
            raise KilovoltError("not connected")
        request_id = str(next(self._ids))
        payload: dict[str, Any] = {"command": command, "request_id": request_id}
        if data is not None:
            payload["data"] = data

        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self._ws.send_str(json.dumps(payload))
        except (aiohttp.ClientError, ConnectionError, RuntimeError) as exc:
            self._pending.pop(request_id, None)
            raise KilovoltError(f"{command} failed: {exc}") from exc
        return await future

    async def get_key(self, key: str) -> str:
        value = await self.request("kget", {"key": key})
        return value if isinstance(value, str) else ""

    async def set_key(self, key: str, value: str) -> None:
        await self.request("kset", {"key": key, "data": value})

    async def get_json(self, key: str) -> Any:
        """Read and parse a JSON value. Raises ``EmptyKeyError`` when the key is unset."""
        value = await self.get_key(key)
        if value == "":
            raise EmptyKeyError(f"key {key!r} is empty")
        try:
            return json.loads(value)
        except json.JSONDecodeError as exc:
            raise KilovoltError(f"key {key!r} does not hold valid JSON: {exc}") from exc

    async def set_json(self, key: str, value: Any) -> None:
        await self.set_key(key, json.dumps(value, ensure_ascii=False))

    async def subscribe_key(self, key: str) -> asyncio.Queue[KeyUpdate]:
        """Subscribe to changes of ``key``; updates are delivered in order on the returned queue."""
        queue = self._subscriptions.get(key)
        if queue is None:
            queue = asyncio.Queue()
            self._subscriptions[key] = queue
        try:
            await self.request("ksub", {"key": key})
        except KilovoltError:
            self._subscriptions.pop(key, None)
            raise
        return queue
