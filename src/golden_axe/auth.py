"""Authorization gate and its administrator cache.

Policy:
- The issuer must be an administrator (creator or administrator) of the chat.
- A member clearing their own title, or toggling their own anonymity, is
  always allowed.
- With `self_service`, a member may also set their own title.

The administrator list comes from the platform and is cached per chat for a
short TTL. The cache is an owned object handed to the gate; there is no
process-wide state.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Final, Protocol

import anyio

from golden_axe.commands import ClearTitle, Mutation, SetAnonymous
from golden_axe.platform import Member

NOT_ADMIN_REASON: Final[str] = "You are not admin, please contact admin"


class AdminSource(Protocol):
    async def get_chat_administrators(self, chat_id: int) -> list[Member]: ...


@dataclass(slots=True)
class AdminCache:
    """Per-chat TTL cache of `getChatAdministrators` results.

    Concurrency:
        Lookups for the same chat are serialized so a cold cache triggers one
        platform call, not one per concurrent command.
    """

    source: AdminSource
    ttl_seconds: float = 60.0
    clock: Callable[[], float] = time.monotonic

    _entries: dict[int, tuple[float, dict[int, Member]]] = field(
        default_factory=dict, init=False, repr=False
    )
    _locks: dict[int, anyio.Lock] = field(default_factory=dict, init=False, repr=False)

    async def get(self, chat_id: int) -> dict[int, Member]:
        """Return `user_id -> Member` for the administrators of `chat_id`."""

        lock = self._locks.get(chat_id)
        if lock is None:
            lock = self._locks[chat_id] = anyio.Lock()
        try:
            async with lock:
                entry = self._entries.get(chat_id)
                now = self.clock()
                if entry is not None and entry[0] > now:
                    return entry[1]
                members = await self.source.get_chat_administrators(chat_id)
                admins = {member.user_id: member for member in members}
                self._evict_expired(now)
                self._entries[chat_id] = (now + self.ttl_seconds, admins)
                return admins
        finally:
            # Locks only live while some lookup for the chat is in flight.
            if not lock.locked() and self._locks.get(chat_id) is lock:
                del self._locks[chat_id]

    def _evict_expired(self, now: float) -> None:
        expired = [chat for chat, (expires_at, _) in self._entries.items() if expires_at <= now]
        for chat in expired:
            del self._entries[chat]

    def invalidate(self, chat_id: int) -> None:
        self._entries.pop(chat_id, None)


@dataclass(frozen=True, slots=True)
class Allowed:
    pass


@dataclass(frozen=True, slots=True)
class Denied:
    reason: str


type Decision = Allowed | Denied

ALLOWED: Final[Allowed] = Allowed()


@dataclass(slots=True)
class AuthorizationGate:
    admins: AdminCache
    self_service: bool = False

    async def authorize(self, command: Mutation) -> Decision:
        """Decide whether `command.issuer_id` may act on `command.target_id`.

        Raises:
            PlatformError: when the administrator list cannot be fetched.
        """

        is_self = command.issuer_id == command.target_id
        if is_self and (isinstance(command, ClearTitle | SetAnonymous) or self.self_service):
            return ALLOWED

        admins = await self.admins.get(command.chat_id)
        issuer = admins.get(command.issuer_id)
        if issuer is None or not issuer.is_admin:
            return Denied(NOT_ADMIN_REASON)
        return ALLOWED
