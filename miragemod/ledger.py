"""Figment ledger: per-user redemption counters, the cooldown rule, and JSON encoding."""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

import iso8601

# ---------------------------------------------------------------------------
# Configuration defaults
# ---------------------------------------------------------------------------

REDEEM_COOLDOWN = timedelta(hours=15)

# Zero value of the timestamp field, as written by other ledger writers
ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)


class LedgerDecodeError(ValueError):
    """Raised when a stored ledger value cannot be decoded."""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def ordinal_suffix(n: int) -> str:
    """English ordinal suffix for ``n`` ("st", "nd", "rd" or "th")."""
    if 11 <= n % 100 <= 20:
        return "th"
    return {1: "st", 2: "nd", 3: "rd"}.get(n % 10, "th")


def ordinal(n: int) -> str:
    return f"{n}{ordinal_suffix(n)}"


def parse_timestamp(value: str) -> datetime:
    """Parse an RFC 3339 timestamp of any sub-second precision. Naive values are UTC."""
    try:
        return iso8601.parse_date(value, default_timezone=timezone.utc)
    except iso8601.ParseError as exc:
        raise LedgerDecodeError(f"invalid timestamp {value!r}: {exc}") from exc


def format_timestamp(ts: datetime) -> str:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    if ts == ZERO_TIME:
        return "0001-01-01T00:00:00Z"
    return ts.isoformat()


def _field(raw: dict, name: str, kind: type, default: Any) -> Any:
    value = raw.get(name, default)
    if value is None:
        return default
    # bool is an int subclass but never a valid counter
    if not isinstance(value, kind) or (kind is int and isinstance(value, bool)):
        raise LedgerDecodeError(f"field {name!r} must be {kind.__name__}, got {value!r}")
    return value


# ---------------------------------------------------------------------------
# Ledger entry
# ---------------------------------------------------------------------------

@dataclass(slots=True)
class FigmentEntry:
    name: str = ""
    count: int = 0
    total: int = 0
    last_redeem: datetime = ZERO_TIME

    def on_cooldown(self, now: datetime) -> bool:
        return now - self.last_redeem < REDEEM_COOLDOWN

    def to_json(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "count": self.count,
            "total": self.total,
            "last_redeem": format_timestamp(self.last_redeem),
        }

    @classmethod
    def from_json(cls, raw: Any) -> FigmentEntry:
        if raw is None:
            return cls()
        if not isinstance(raw, dict):
            raise LedgerDecodeError(f"ledger entry must be an object, got {raw!r}")
        stamp = _field(raw, "last_redeem", str, None)
        return cls(
            name=_field(raw, "name", str, ""),
            count=_field(raw, "count", int, 0),
            total=_field(raw, "total", int, 0),
            last_redeem=parse_timestamp(stamp) if stamp is not None else ZERO_TIME,
        )


@dataclass(slots=True)
class RedeemResult:
    accepted: bool
    entry: FigmentEntry


# ---------------------------------------------------------------------------
# FigmentLedger
# ---------------------------------------------------------------------------

class FigmentLedger:
    """In-memory mirror of the persisted ledger, keyed by user id.

    Only the dispatcher loop owns and mutates an instance.
    """

    def __init__(self, entries: dict[str, FigmentEntry] | None = None) -> None:
        self._entries: dict[str, FigmentEntry] = dict(entries or {})

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, user_id: object) -> bool:
        return user_id in self._entries

    def get(self, user_id: str) -> FigmentEntry | None:
        return self._entries.get(user_id)

    def entries(self) -> dict[str, FigmentEntry]:
        return dict(self._entries)

    # -- wholesale updates -------------------------------------------------

    def replace(self, entries: dict[str, FigmentEntry]) -> None:
        """Drop every entry and take ``entries`` as the new content."""
        self._entries = dict(entries)

    def reset(self) -> None:
        self._entries = {}

    # -- redemption --------------------------------------------------------

    def redeem(self, user_id: str, user_name: str, now: datetime) -> RedeemResult:
        """Apply one redemption for ``user_id`` unless the user is on cooldown.

        A rejected redemption leaves the ledger untouched and returns the
        existing entry.
        """
        existing = self._entries.get(user_id)
        total = count = 0
        if existing is not None:
            if existing.on_cooldown(now):
                return RedeemResult(accepted=False, entry=existing)
            total, count = existing.total, existing.count

        entry = FigmentEntry(
            name=user_name,
            count=count + 1,
            total=total + 1,
            last_redeem=now,
        )
        self._entries[user_id] = entry
        return RedeemResult(accepted=True, entry=entry)

    # -- encoding ----------------------------------------------------------

    def to_json(self) -> dict[str, Any]:
        return {user_id: entry.to_json() for user_id, entry in self._entries.items()}

    def dumps(self) -> str:
        return json.dumps(self.to_json(), ensure_ascii=False)


def decode_entries(raw: Any) -> dict[str, FigmentEntry]:
    """Decode an already-parsed JSON value into ledger entries."""
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise LedgerDecodeError(f"ledger must be an object, got {type(raw).__name__}")
    return {str(user_id): FigmentEntry.from_json(value) for user_id, value in raw.items()}


def loads_entries(text: str) -> dict[str, FigmentEntry]:
    """Decode a ledger from its JSON text."""
    try:
        raw = json.loads(text)
    except (TypeError, json.JSONDecodeError) as exc:
        raise LedgerDecodeError(f"invalid ledger JSON: {exc}") from exc
    return decode_entries(raw)
