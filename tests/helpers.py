"""Shared fakes for the engine and dispatcher tests."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import anyio

from golden_axe.debug import DebugReporter, ErrorEvent
from golden_axe.platform import Member, TransientPlatformError
from golden_axe.updates import Update

CHAT_ID = -100123


class FakeTelegram:
    """In-memory `PlatformClient` recording every call."""

    def __init__(self) -> None:
        self.admins: dict[int, dict[int, Member]] = {}
        self.log: list[tuple[Any, ...]] = []
        self.sent: list[dict[str, Any]] = []
        self.title_failures: list[Exception] = []
        self.blockers: dict[str, anyio.Event] = {}

    def add_member(
        self,
        user_id: int,
        *,
        chat_id: int = CHAT_ID,
        status: str = "administrator",
        title: str | None = None,
        can_be_edited: bool = True,
        is_anonymous: bool = False,
    ) -> None:
        self.admins.setdefault(chat_id, {})[user_id] = Member(
            chat_id=chat_id,
            user_id=user_id,
            status=status,
            title=title,
            can_be_edited=can_be_edited,
            is_anonymous=is_anonymous,
        )

    def count(self, name: str) -> int:
        return sum(1 for entry in self.log if entry[0] == name)

    def mutations(self) -> list[tuple[Any, ...]]:
        return [entry for entry in self.log if entry[0] in ("promote", "set")]

    async def get_chat_administrators(self, chat_id: int) -> list[Member]:
        self.log.append(("admins", chat_id))
        return list(self.admins.get(chat_id, {}).values())

    async def promote_chat_member(
        self,
        *,
        chat_id: int,
        user_id: int,
        can_invite_users: bool,
        is_anonymous: bool = False,
    ) -> None:
        self.log.append(("promote", chat_id, user_id, can_invite_users))
        if not can_invite_users:
            self.admins.get(chat_id, {}).pop(user_id, None)
            return
        # Re-promoting an admin keeps their custom title.
        member = self.admins.get(chat_id, {}).get(user_id)
        title = member.title if member is not None else None
        self.add_member(user_id, chat_id=chat_id, title=title, is_anonymous=is_anonymous)

    async def set_member_title(self, *, chat_id: int, user_id: int, title: str) -> None:
        self.log.append(("set", chat_id, user_id, title))
        blocker = self.blockers.get(title)
        if blocker is not None:
            await blocker.wait()
        if self.title_failures:
            raise self.title_failures.pop(0)
        member = self.admins.get(chat_id, {}).get(user_id)
        if member is not None:
            self.admins[chat_id][user_id] = member.model_copy(
                update={"title": title or None}
            )

    async def send_message(
        self,
        *,
        chat_id: int,
        text: str,
        reply_to_message_id: int | None = None,
    ) -> dict:
        self.sent.append(
            {"chat_id": chat_id, "text": text, "reply_to_message_id": reply_to_message_id}
        )
        return {"message_id": len(self.sent)}


class RecordingReporter(DebugReporter):
    def __init__(self) -> None:
        super().__init__(None, None)
        self.events: list[ErrorEvent] = []

    def report(self, event: ErrorEvent) -> None:
        self.events.append(event)
        super().report(event)


def rate_limited(retry_after: float | None = None) -> TransientPlatformError:
    return TransientPlatformError(
        "Telegram setChatAdministratorCustomTitle failed: Too Many Requests",
        method="setChatAdministratorCustomTitle",
        error_code=429,
        retry_after=retry_after,
    )


def make_update(
    update_id: int,
    text: str,
    *,
    user_id: int = 1,
    chat_id: int = CHAT_ID,
    chat_type: str = "supergroup",
    message_id: int = 50,
    reply_to_user: int | None = None,
) -> Update:
    message: dict[str, Any] = {
        "message_id": message_id,
        "date": 1_700_000_000,
        "chat": {"id": chat_id, "type": chat_type},
        "from": {"id": user_id, "is_bot": False, "first_name": f"user{user_id}"},
        "text": text,
    }
    if reply_to_user is not None:
        message["reply_to_message"] = {
            "message_id": message_id - 1,
            "date": 1_700_000_000,
            "chat": {"id": chat_id, "type": chat_type},
            "from": {"id": reply_to_user, "is_bot": False, "first_name": "target"},
            "text": "hello",
        }
    return Update.from_telegram({"update_id": update_id, "message": message})


async def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    with anyio.fail_after(timeout):
        while not predicate():
            await anyio.sleep(0.01)


def make_anonymous_update(
    update_id: int,
    text: str,
    *,
    signature: str | None = None,
    chat_id: int = CHAT_ID,
    message_id: int = 50,
) -> Update:
    """A message an anonymous admin posted on behalf of the chat."""

    message: dict[str, Any] = {
        "message_id": message_id,
        "date": 1_700_000_000,
        "chat": {"id": chat_id, "type": "supergroup"},
        "sender_chat": {"id": chat_id, "type": "supergroup"},
        "from": {"id": 1087968824, "is_bot": True, "first_name": "Group"},
        "text": text,
    }
    if signature is not None:
        message["author_signature"] = signature
    return Update.from_telegram({"update_id": update_id, "message": message})
