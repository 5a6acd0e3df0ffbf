"""Redemption dispatcher: the single loop that owns the figment ledger.

Three broker subscriptions feed the loop (chat messages, EventSub webhooks
and changes to the ledger key). One ready message is handled per iteration,
and all ledger mutation happens on the task running :meth:`run`.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable

from .config import CHAT_MESSAGE_KEY, SEND_CHAT_KEY, WEBHOOK_KEY, MirageConfig
from .events import EventDecodeError, RedemptionAdd, decode_event, decode_notification
from .kilovolt import EmptyKeyError, KeyUpdate, KilovoltClient, KilovoltError
from .ledger import FigmentLedger, LedgerDecodeError, decode_entries, loads_entries, ordinal

logger = logging.getLogger(__name__)

COOLDOWN_MESSAGE = "{name}: You can only claim a figment once a day"
CLAIMED_MESSAGE = "{name}: You claimed your ⭐ {total} figment! ⭐ (balance: {count})"


class StartupError(Exception):
    """A startup step failed; the process cannot continue."""

    def __init__(self, step: str, cause: BaseException) -> None:
        super().__init__(f"{step}: {cause}")
        self.step = step
        self.cause = cause


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class FigmentDispatcher:
    """Consumes broker subscriptions and applies figment redemptions."""

    def __init__(
        self,
        client: KilovoltClient,
        config: MirageConfig,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.client = client
        self.config = config
        self.clock = clock
        self.ledger = FigmentLedger()
        self._queues: dict[str, asyncio.Queue[KeyUpdate]] = {}
        self._waiting: dict[asyncio.Task, str] = {}

    # -- startup -----------------------------------------------------------

    async def start(self) -> None:
        """Connect, subscribe and load the ledger. Raises ``StartupError`` on any failure."""
        try:
            await self.client.connect()
        except KilovoltError as exc:
            raise StartupError("Connection to kilovolt failed", exc) from exc
        logger.info("Connected to Kilovolt (endpoint=%s)", self.config.endpoint)

        await self._subscribe(CHAT_MESSAGE_KEY, "Could not subscribe to chat messages")
        await self._subscribe(WEBHOOK_KEY, "Could not subscribe to webhooks")
        await self._load_ledger()
        await self._subscribe(self.config.ledger_key, "Could not subscribe to figment map")

    async def _subscribe(self, key: str, step: str) -> None:
        try:
            self._queues[key] = await self.client.subscribe_key(key)
        except KilovoltError as exc:
            raise StartupError(step, exc) from exc

    async def _load_ledger(self) -> None:
        key = self.config.ledger_key
        try:
            self.ledger.replace(decode_entries(await self.client.get_json(key)))
            logger.info("Loaded figment map (%d users)", len(self.ledger))
            return
        except EmptyKeyError:
            logger.info("No figment map found, creating new one")
        except (KilovoltError, LedgerDecodeError) as exc:
            raise StartupError("Could not get/decode figment map", exc) from exc

        self.ledger.reset()
        try:
            await self.client.set_json(key, self.ledger.to_json())
        except KilovoltError as exc:
            raise StartupError("Could not create figment map", exc) from exc

    # -- loop --------------------------------------------------------------

    async def run(self) -> None:
        """Handle messages forever. Raises ``KilovoltError`` if the broker goes away."""
        try:
            while True:
                await self.process_next()
        finally:
            for task in self._waiting:
                task.cancel()
            self._waiting.clear()

    async def process_next(self) -> None:
        """Wait for the next ready message on any subscription and handle it."""
        update = await self._next_update()
        if update.key == self.config.ledger_key:
            self.handle_ledger_change(update.value)
        elif update.key == WEBHOOK_KEY:
            await self.handle_webhook(update.value)
        # chat messages are not acted upon yet

    async def _next_update(self) -> KeyUpdate:
        waiting_keys = set(self._waiting.values())
        for key, queue in self._queues.items():
            if key not in waiting_keys:
                self._waiting[asyncio.ensure_future(queue.get())] = key

        closed = asyncio.ensure_future(self.client.wait_closed())
        try:
            done, _ = await asyncio.wait(
                [*self._waiting, closed], return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            if not closed.done():
                closed.cancel()

        # take exactly one; other finished gets stay queued for the next call
        for task in self._waiting:
            if task in done:
                del self._waiting[task]
                return task.result()
        raise KilovoltError("connection to kilovolt lost")

    # -- handlers ----------------------------------------------------------

    def handle_ledger_change(self, value: str) -> None:
        """Replace the local ledger with a value written to the broker."""
        logger.info("Figment count changed outside miragemod, updating local copy")
        try:
            entries = loads_entries(value)
        except LedgerDecodeError as exc:
            logger.error("Failed to decode new figment count, resetting: %s", exc)
            self.ledger.reset()
            return
        self.ledger.replace(entries)

    async def handle_webhook(self, value: str) -> None:
        try:
            notification = decode_notification(value)
        except EventDecodeError as exc:
            logger.error("Failed to decode webhook payload: %s", exc)
            return
        try:
            event = decode_event(notification)
        except EventDecodeError as exc:
            logger.error(
                "Failed to decode %s event: %s", notification.subscription_type, exc,
            )
            return
        if isinstance(event, RedemptionAdd) and event.reward_id == self.config.reward_id:
            await self.redeem(event)

    async def redeem(self, event: RedemptionAdd) -> None:
        result = self.ledger.redeem(event.user_id, event.user_name, self.clock())
        if not result.accepted:
            await self.say(COOLDOWN_MESSAGE.format(name=event.user_name))
            return

        try:
            await self.client.set_json(self.config.ledger_key, self.ledger.to_json())
        except KilovoltError as exc:
            logger.error("Failed to update figment map: %s", exc)

        entry = result.entry
        await self.say(
            CLAIMED_MESSAGE.format(
                name=event.user_name, total=ordinal(entry.total), count=entry.count,
            )
        )
        logger.info(
            "Redeemed (user=%s, login=%s, reward=%s, redemption=%s, input=%r)",
            event.user_id, event.user_login, event.reward_title, event.id, event.user_input,
        )

    async def say(self, message: str) -> bool:
        """Write a chat message through the broker. Returns ``False`` if the write failed."""
        try:
            await self.client.set_key(SEND_CHAT_KEY, message)
        except KilovoltError as exc:
            logger.error("Failed to send chat message: %s", exc)
            return False
        return True
