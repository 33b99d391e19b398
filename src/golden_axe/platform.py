"""Platform-facing contract used by the dispatch engine.

The engine never talks to Telegram directly. It depends on the structural
`PlatformClient` protocol below, and on the error classes raised by any
implementation of it:

- `TransientPlatformError`: rate limits, timeouts, network failures and 5xx
  responses. Expected to succeed on retry. May carry a `retry_after` hint.
- `PermanentPlatformError`: permission denied, member not found, bad request.
  Retrying will not help.

`golden_axe.telegram.api.TelegramBotApi` is the production implementation.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from pydantic import BaseModel

_ADMIN_STATUSES = frozenset({"creator", "administrator"})


class PlatformError(RuntimeError):
    """Base class for classified platform failures."""

    def __init__(
        self,
        message: str,
        *,
        method: str | None = None,
        error_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.method = method
        self.error_code = error_code


class TransientPlatformError(PlatformError):
    """A failure expected to succeed on retry."""

    def __init__(
        self,
        message: str,
        *,
        method: str | None = None,
        error_code: int | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message, method=method, error_code=error_code)
        self.retry_after = retry_after


class PermanentPlatformError(PlatformError):
    """A failure that will not succeed on retry."""


class Member(BaseModel):
    """Cached view of one chat participant.

    The authoritative copy lives on the platform. Instances are built from
    Telegram `ChatMember` objects and are only trusted for the validation
    window of a single command.
    """

    chat_id: int
    user_id: int
    status: str
    title: str | None = None
    can_be_edited: bool = False
    can_promote_members: bool = False
    can_invite_users: bool = False
    is_anonymous: bool = False

    @property
    def is_admin(self) -> bool:
        return self.status in _ADMIN_STATUSES

    @classmethod
    def from_chat_member(cls, chat_id: int, raw: dict) -> Member:
        user = raw.get("user")
        if not isinstance(user, dict) or not isinstance(user.get("id"), int):
            raise ValueError("ChatMember payload is missing user.id")
        return cls(
            chat_id=chat_id,
            user_id=user["id"],
            status=str(raw.get("status", "member")),
            title=raw.get("custom_title") or None,
            can_be_edited=raw.get("can_be_edited") is True,
            can_promote_members=raw.get("can_promote_members") is True,
            can_invite_users=raw.get("can_invite_users") is True,
            is_anonymous=raw.get("is_anonymous") is True,
        )


@runtime_checkable
class PlatformClient(Protocol):
    """Remote operations the engine needs from the messaging platform."""

    async def set_member_title(self, *, chat_id: int, user_id: int, title: str) -> None:
        """Attach `title` to an administrator (empty string removes it)."""

    async def promote_chat_member(
        self,
        *,
        chat_id: int,
        user_id: int,
        can_invite_users: bool,
        is_anonymous: bool = False,
    ) -> None:
        """Promote with the given rights, or demote when every right is false."""

    async def get_chat_administrators(self, chat_id: int) -> list[Member]:
        """Return the current administrators of `chat_id`."""

    async def send_message(
        self,
        *,
        chat_id: int,
        text: str,
        reply_to_message_id: int | None = None,
    ) -> dict:
        """Send an HTML message."""
