"""Inbound update model and routing-id extraction.

Raw Telegram updates are plain dicts whose routing ids live at different
nesting depths depending on the update kind. The path tables below list
where to look; extraction is best-effort and never raises.

Design notes / invariants:
- An `Update` is immutable once built and is consumed exactly once by the
  dispatcher. `SeenUpdates` enforces the "exactly once" half for redelivered
  webhook calls and overlapping poll batches.
- `update_id` is required. Updates without one cannot be deduplicated and
  are rejected by `Update.from_telegram`.
"""

from __future__ import annotations

from collections import deque
from datetime import UTC, datetime
from typing import Any, Final

from pydantic import BaseModel, ConfigDict, Field

_CHAT_ID_PATHS: Final[tuple[tuple[str, ...], ...]] = (
    ("message", "chat", "id"),
    ("edited_message", "chat", "id"),
    ("channel_post", "chat", "id"),
    ("edited_channel_post", "chat", "id"),
    ("callback_query", "message", "chat", "id"),
    ("my_chat_member", "chat", "id"),
    ("chat_member", "chat", "id"),
    ("chat_join_request", "chat", "id"),
)
_CHAT_TYPE_PATHS: Final[tuple[tuple[str, ...], ...]] = (
    ("message", "chat", "type"),
    ("edited_message", "chat", "type"),
    ("channel_post", "chat", "type"),
    ("edited_channel_post", "chat", "type"),
    ("callback_query", "message", "chat", "type"),
    ("my_chat_member", "chat", "type"),
    ("chat_member", "chat", "type"),
    ("chat_join_request", "chat", "type"),
)
_FROM_ID_PATHS: Final[tuple[tuple[str, ...], ...]] = (
    ("message", "from", "id"),
    ("edited_message", "from", "id"),
    ("callback_query", "from", "id"),
    ("my_chat_member", "from", "id"),
    ("chat_member", "from", "id"),
    ("chat_join_request", "from", "id"),
)


def _extract_nested(update: dict[str, Any], path: tuple[str, ...]) -> Any:
    cur: Any = update
    for key in path:
        if not isinstance(cur, dict):
            return None
        cur = cur.get(key)
    return cur


def _extract_first_int(
    update: dict[str, Any], paths: tuple[tuple[str, ...], ...]
) -> int | None:
    for path in paths:
        val = _extract_nested(update, path)
        # `bool` is an `int` subclass; ids never are.
        if isinstance(val, int) and not isinstance(val, bool):
            return val
    return None


def _extract_first_str(
    update: dict[str, Any], paths: tuple[tuple[str, ...], ...]
) -> str | None:
    for path in paths:
        val = _extract_nested(update, path)
        if isinstance(val, str):
            return val
    return None


def extract_update_id(update: dict[str, Any]) -> int | None:
    """Extract `update_id` from a Telegram update dict (or return `None`)."""

    update_id = update.get("update_id")
    if isinstance(update_id, int) and not isinstance(update_id, bool):
        return update_id
    return None


def extract_chat_id(update: dict[str, Any]) -> int | None:
    """Best-effort extraction of a Telegram update chat id."""

    return _extract_first_int(update, _CHAT_ID_PATHS)


def extract_chat_type(update: dict[str, Any]) -> str | None:
    """Best-effort extraction of a Telegram update chat type."""

    return _extract_first_str(update, _CHAT_TYPE_PATHS)


def extract_user_id(update: dict[str, Any]) -> int | None:
    """Best-effort extraction of the acting user's id."""

    return _extract_first_int(update, _FROM_ID_PATHS)


def filter_unseen_updates(
    updates: list[dict[str, Any]],
    *,
    last_processed_update_id: int | None,
) -> list[dict[str, Any]]:
    """Filter out updates that are already processed or duplicates in the batch."""

    res: list[dict[str, Any]] = []
    seen: set[int] = set()

    for update in updates:
        update_id = extract_update_id(update)
        if update_id is None:
            continue
        if (
            last_processed_update_id is not None
            and update_id <= last_processed_update_id
        ):
            continue
        if update_id in seen:
            continue
        seen.add(update_id)
        res.append(update)

    return res


class Update(BaseModel):
    """One inbound event, transport-agnostic."""

    model_config = ConfigDict(frozen=True)

    update_id: int
    chat_id: int | None = None
    user_id: int | None = None
    chat_type: str | None = None
    payload: dict[str, Any]
    received_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def from_telegram(cls, raw: dict[str, Any]) -> Update:
        update_id = extract_update_id(raw)
        if update_id is None:
            raise ValueError("Telegram update is missing an integer update_id")
        return cls(
            update_id=update_id,
            chat_id=extract_chat_id(raw),
            user_id=extract_user_id(raw),
            chat_type=extract_chat_type(raw),
            payload=raw,
        )

    @property
    def message(self) -> dict[str, Any] | None:
        """The new-message payload, if this update carries one."""

        message = self.payload.get("message")
        return message if isinstance(message, dict) else None


class SeenUpdates:
    """Bounded window of recently dispatched update ids."""

    def __init__(self, capacity: int = 4096) -> None:
        if capacity <= 0:
            raise ValueError(f"capacity must be > 0; got {capacity}")
        self._capacity = capacity
        self._order: deque[int] = deque()
        self._ids: set[int] = set()

    def __len__(self) -> int:
        return len(self._ids)

    def __contains__(self, update_id: int) -> bool:
        return update_id in self._ids

    def add(self, update_id: int) -> bool:
        """Record `update_id`; return `False` if it was already seen."""

        if update_id in self._ids:
            return False
        self._ids.add(update_id)
        self._order.append(update_id)
        if len(self._order) > self._capacity:
            self._ids.discard(self._order.popleft())
        return True
