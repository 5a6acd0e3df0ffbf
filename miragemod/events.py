"""EventSub webhook notifications as relayed by the broker.

A notification is decoded in two steps: the envelope first, then the typed
event payload, and only for subscription types listed in ``EVENT_TYPES``.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Callable

REDEMPTION_ADD = "channel.channel_points_custom_reward_redemption.add"


class EventDecodeError(ValueError):
    """Raised when a notification or its event payload has the wrong shape."""


def _str(raw: dict, name: str) -> str:
    value = raw.get(name)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise EventDecodeError(f"field {name!r} must be a string, got {value!r}")
    return value


def _obj(raw: dict, name: str) -> dict:
    value = raw.get(name)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise EventDecodeError(f"field {name!r} must be an object, got {value!r}")
    return value


# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------

@dataclass(slots=True)
class Notification:
    subscription_type: str
    challenge: str
    event: Any  # decoded lazily through decode_event()


def decode_notification(text: str) -> Notification:
    try:
        raw = json.loads(text)
    except (TypeError, json.JSONDecodeError) as exc:
        raise EventDecodeError(f"invalid notification JSON: {exc}") from exc
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise EventDecodeError("notification must be an object")

    subscription = _obj(raw, "subscription")
    return Notification(
        subscription_type=_str(subscription, "type"),
        challenge=_str(raw, "challenge"),
        event=raw.get("event"),
    )


# ---------------------------------------------------------------------------
# Typed payloads
# ---------------------------------------------------------------------------

@dataclass(slots=True)
class RedemptionAdd:
    """A viewer redeemed a custom channel-points reward."""

    id: str
    reward_id: str
    reward_title: str
    user_id: str
    user_login: str
    user_name: str
    user_input: str

    @classmethod
    def from_payload(cls, raw: Any) -> RedemptionAdd:
        if raw is None:
            raw = {}
        if not isinstance(raw, dict):
            raise EventDecodeError("redemption event must be an object")
        reward = _obj(raw, "reward")
        return cls(
            id=_str(raw, "id"),
            reward_id=_str(reward, "id"),
            reward_title=_str(reward, "title"),
            user_id=_str(raw, "user_id"),
            user_login=_str(raw, "user_login"),
            user_name=_str(raw, "user_name"),
            user_input=_str(raw, "user_input"),
        )


EVENT_TYPES: dict[str, Callable[[Any], Any]] = {
    REDEMPTION_ADD: RedemptionAdd.from_payload,
}


def decode_event(notification: Notification) -> RedemptionAdd | None:
    """Decode the payload of ``notification``.

    Returns ``None`` for subscription types we do not handle; raises
    ``EventDecodeError`` when a handled type carries a malformed payload.
    """
    decoder = EVENT_TYPES.get(notification.subscription_type)
    if decoder is None:
        return None
    return decoder(notification.event)
