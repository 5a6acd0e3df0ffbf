"""End-to-end run against a small Kilovolt server built on aiohttp.web."""

import asyncio
import json

import aiohttp
import pytest
from aiohttp import test_utils, web

from conftest import REWARD_ID
from miragemod.config import SEND_CHAT_KEY, WEBHOOK_KEY
from miragemod.dispatcher import FigmentDispatcher
from miragemod.events import REDEMPTION_ADD
from miragemod.kilovolt import KilovoltClient, KilovoltError

LEDGER_KEY = "mirage/figments"


class MiniBroker:
    """Speaks enough of the Kilovolt protocol for kget/kset/ksub and pushes."""

    def __init__(self):
        self.store: dict[str, str] = {}
        self.subscribers: dict[str, list[web.WebSocketResponse]] = {}
        self.sockets: list[web.WebSocketResponse] = []
        self.chat: asyncio.Queue[str] = asyncio.Queue()
        self.app = web.Application()
        self.app.router.add_get("/ws", self.handle)

    async def handle(self, request):
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        self.sockets.append(ws)
        async for msg in ws:
            if msg.type != aiohttp.WSMsgType.TEXT:
                continue
            req = json.loads(msg.data)
            cmd = req["command"]
            data = req.get("data") or {}
            reply = {"type": "response", "ok": True, "request_id": req["request_id"], "cmd": cmd}
            if cmd == "kget":
                reply["data"] = self.store.get(data["key"], "")
            elif cmd == "ksub":
                self.subscribers.setdefault(data["key"], []).append(ws)
            await ws.send_json(reply)
            if cmd == "kset":
                await self.publish(data["key"], data["data"])
        return ws

    async def publish(self, key, value):
        self.store[key] = value
        if key == SEND_CHAT_KEY:
            self.chat.put_nowait(value)
        for ws in self.subscribers.get(key, []):
            if not ws.closed:
                await ws.send_json({"type": "push", "key": key, "new_value": value})

    async def disconnect(self):
        for ws in self.sockets:
            await ws.close()


def redemption(user_id="U1", user_name="Ash"):
    return json.dumps({
        "subscription": {"type": REDEMPTION_ADD},
        "event": {
            "user_id": user_id,
            "user_name": user_name,
            "reward": {"id": REWARD_ID, "title": "Figment"},
        },
    })


class TestBrokerRoundTrip:
    def test_redeem_cooldown_then_disconnect(self, config):
        async def scenario():
            broker = MiniBroker()
            server = test_utils.TestServer(broker.app)
            await server.start_server()
            config.endpoint = str(server.make_url("/ws"))
            client = KilovoltClient(config.endpoint)
            dispatcher = FigmentDispatcher(client, config)
            try:
                await dispatcher.start()
                assert json.loads(broker.store[LEDGER_KEY]) == {}
                loop_task = asyncio.ensure_future(dispatcher.run())

                await broker.publish(WEBHOOK_KEY, redemption())
                reply = await asyncio.wait_for(broker.chat.get(), timeout=5)
                assert reply == "Ash: You claimed your ⭐ 1st figment! ⭐ (balance: 1)"
                stored = json.loads(broker.store[LEDGER_KEY])
                assert stored["U1"]["count"] == 1

                await broker.publish(WEBHOOK_KEY, redemption())
                reply = await asyncio.wait_for(broker.chat.get(), timeout=5)
                assert reply == "Ash: You can only claim a figment once a day"
                assert dispatcher.ledger.get("U1").total == 1

                await broker.disconnect()
                with pytest.raises(KilovoltError):
                    await asyncio.wait_for(loop_task, timeout=5)
                assert not client.connected
            finally:
                await client.close()
                await server.close()

        asyncio.run(scenario())

    def test_unreachable_broker(self):
        async def scenario():
            client = KilovoltClient("http://127.0.0.1:1/ws")
            with pytest.raises(KilovoltError, match="could not connect"):
                await client.connect()

        asyncio.run(scenario())
