"""In-memory title registry for the current process lifetime.

The registry backs `/titles` and the per-chat title uniqueness rule. It is
bookkeeping, not a source of truth: the platform owns member titles, and a
restart starts from an empty registry.
"""

from __future__ import annotations

import html
from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class TitleRecord:
    chat_id: int
    user_id: int
    title: str

    def render(self) -> str:
        return f"<code>{html.escape(self.title)}: User({self.user_id})</code>"


class TitleRegistry:
    """Titles applied by this process, keyed by `(chat_id, user_id)`."""

    def __init__(self) -> None:
        self._records: dict[tuple[int, int], TitleRecord] = {}
        # Titles being applied right now, not yet confirmed by the platform.
        self._claims: dict[tuple[int, int], str] = {}

    def __len__(self) -> int:
        return len(self._records)

    def get(self, chat_id: int, user_id: int) -> TitleRecord | None:
        return self._records.get((chat_id, user_id))

    def assign(self, chat_id: int, user_id: int, title: str) -> TitleRecord:
        self._claims.pop((chat_id, user_id), None)
        record = TitleRecord(chat_id=chat_id, user_id=user_id, title=title)
        self._records[(chat_id, user_id)] = record
        return record

    def remove(self, chat_id: int, user_id: int) -> TitleRecord | None:
        return self._records.pop((chat_id, user_id), None)

    def holder(self, chat_id: int, title: str) -> int | None:
        """Return the user holding `title` in `chat_id` (case-insensitive)."""

        wanted = title.casefold()
        for record in self._records.values():
            if record.chat_id == chat_id and record.title.casefold() == wanted:
                return record.user_id
        return None

    def reserve(self, chat_id: int, user_id: int, title: str) -> bool:
        """Claim `title` for `user_id` until `assign` or `release`.

        Returns `False` when another member of the chat holds or claims it.
        Check and claim happen without a checkpoint in between, so concurrent
        commands for different members cannot both win the same title.
        """

        holder = self.holder(chat_id, title)
        if holder is not None and holder != user_id:
            return False
        wanted = title.casefold()
        for (chat, user), claimed in self._claims.items():
            if chat == chat_id and user != user_id and claimed.casefold() == wanted:
                return False
        self._claims[(chat_id, user_id)] = title
        return True

    def release(self, chat_id: int, user_id: int) -> None:
        self._claims.pop((chat_id, user_id), None)

    def list_in_chat(self, chat_id: int) -> list[TitleRecord]:
        return [r for r in self._records.values() if r.chat_id == chat_id]


def render_titles(chat_id: int, records: list[TitleRecord]) -> str:
    if not records:
        return "No titles found."
    lines = [f"<code>in Chat({chat_id}):</code>"]
    lines.extend(record.render() for record in records)
    return "\n".join(lines)
