"""Title mutation engine.

One command is executed as a series of *attempts*. Each attempt:

1. authorizes the issuer (first attempt only; the decision is kept in
   `RetryState`),
2. checks title uniqueness within the chat and reserves the title until the
   attempt ends,
3. promotes a plain member to administrator when needed (at most once per
   command; Telegram only attaches custom titles to administrators),
4. calls the platform's title operation.

An attempt returns either a terminal `OperationOutcome` or a
`RetryScheduled` telling the caller when to replay it. The engine never
sleeps between attempts itself; scheduling the replay belongs to the
dispatcher, which must not hold the (chat, target) key's worker while
waiting.

Every exception is classified here: transient platform errors become retries
(or `Deferred` once the attempt ceiling is reached), permanent ones become
`RejectedByPlatform`, and anything unexpected becomes an internal
`RejectedByPlatform`.
"""

from __future__ import annotations

import dataclasses
import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from logging import getLogger
from typing import Final

import anyio

from golden_axe.auth import AuthorizationGate, Denied
from golden_axe.commands import ClearTitle, Mutation, SetAnonymous, SetTitle
from golden_axe.outcomes import (
    Applied,
    AttemptResult,
    Deferred,
    OperationOutcome,
    RejectedByPlatform,
    RejectedByPolicy,
    RetryScheduled,
    RetryState,
)
from golden_axe.platform import (
    Member,
    PermanentPlatformError,
    PlatformClient,
    TransientPlatformError,
)
from golden_axe.registry import TitleRegistry

logger = getLogger(__name__)

MAX_TITLE_LENGTH: Final[int] = 16
DONE_MESSAGE: Final[str] = "Done! Wait for a while to take effect."
INTERNAL_REASON: Final[str] = "Something went wrong on my side. The operators have been notified."
TITLE_IN_USE_REASON: Final[str] = "Title already in use"
ALREADY_ANONYMOUS_REASON: Final[str] = "You are already anonymous"
NOT_ANONYMOUS_REASON: Final[str] = "You are not anonymous"
REGISTER_FIRST_REASON: Final[str] = "Before making anonymous, use /title first to register"


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Exponential backoff with jitter, bounded by an attempt ceiling.

    The delay before replaying attempt `n + 1` is
    `base * multiplier ** (n - 1)`, capped at `max_delay_seconds`, then
    reduced by up to `jitter` (a fraction) at random. A platform
    `retry_after` hint is a lower bound.
    """

    base_delay_seconds: float = 1.0
    multiplier: float = 2.0
    max_attempts: int = 5
    jitter: float = 0.5
    max_delay_seconds: float = 60.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1; got {self.max_attempts}")
        if not 0.0 <= self.jitter <= 1.0:
            raise ValueError(f"jitter must be within [0, 1]; got {self.jitter}")
        if self.base_delay_seconds < 0:
            raise ValueError(
                f"base_delay_seconds must be >= 0; got {self.base_delay_seconds}"
            )

    def delay_for(
        self,
        attempt: int,
        *,
        retry_after: float | None = None,
        rng: random.Random | None = None,
    ) -> float:
        backoff = min(
            self.base_delay_seconds * self.multiplier ** (attempt - 1),
            self.max_delay_seconds,
        )
        delay = backoff * (1.0 - self.jitter * (rng or random).random())
        if retry_after is not None:
            delay = max(delay, retry_after)
        return delay


def _not_editable_reason(member: Member) -> str:
    if member.status == "creator":
        return "I can't change the title of the chat owner"
    return "I can't change their info (are they promoted by others?)"


class TitleMutationEngine:
    def __init__(
        self,
        client: PlatformClient,
        gate: AuthorizationGate,
        registry: TitleRegistry,
        *,
        policy: RetryPolicy | None = None,
        max_title_length: int = MAX_TITLE_LENGTH,
        promotion_settle_seconds: float = 0.5,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.client = client
        self.gate = gate
        self.registry = registry
        self.policy = policy or RetryPolicy()
        self.max_title_length = max_title_length
        self.promotion_settle_seconds = promotion_settle_seconds
        self._rng = rng
        self._clock = clock

    def validate(self, command: Mutation) -> Mutation | RejectedByPlatform:
        """Normalize the requested title, or reject it for good."""

        if not isinstance(command, SetTitle):
            return command
        title = command.title.strip()
        if not title:
            return RejectedByPlatform("Title cannot be empty", cause="validation")
        if len(title) > self.max_title_length:
            return RejectedByPlatform(
                f"Title is too long ({len(title)} characters, at most "
                f"{self.max_title_length} allowed)",
                cause="validation",
            )
        return dataclasses.replace(command, title=title)

    async def attempt(self, command: Mutation, state: RetryState) -> AttemptResult:
        """Run one attempt of `command`, advancing `state`."""

        state.attempt += 1
        try:
            if not state.authorized:
                decision = await self.gate.authorize(command)
                if isinstance(decision, Denied):
                    return RejectedByPolicy(decision.reason)
                state.authorized = True

            if isinstance(command, SetTitle):
                return await self._set_title(command, state)
            if isinstance(command, ClearTitle):
                return await self._clear_title(command)
            return await self._set_anonymous(command)
        except TransientPlatformError as e:
            state.last_error = str(e)
            if state.attempt >= self.policy.max_attempts:
                return Deferred(
                    reason=f"{e} (gave up after {state.attempt} attempts)",
                    retry_after=e.retry_after,
                )
            delay = self.policy.delay_for(
                state.attempt, retry_after=e.retry_after, rng=self._rng
            )
            state.next_eligible_at = self._clock() + delay
            return RetryScheduled(delay_seconds=delay, error=str(e))
        except PermanentPlatformError as e:
            state.last_error = str(e)
            return RejectedByPlatform(
                f"Telegram refused the change: {e}", cause="platform", detail=str(e)
            )
        except Exception as e:
            logger.exception(f"Unexpected error while applying {command!r}")
            return RejectedByPlatform(
                INTERNAL_REASON, cause="internal", detail=f"{type(e).__name__}: {e}"
            )

    def _held_by_other_admin(self, command: SetTitle, admins: dict[int, Member]) -> bool:
        wanted = command.title.casefold()
        return any(
            member.title is not None
            and member.title.casefold() == wanted
            and user_id != command.target_id
            for user_id, member in admins.items()
        )

    async def _set_title(self, command: SetTitle, state: RetryState) -> OperationOutcome:
        admins = await self.gate.admins.get(command.chat_id)
        if self._held_by_other_admin(command, admins) or not self.registry.reserve(
            command.chat_id, command.target_id, command.title
        ):
            return RejectedByPolicy(TITLE_IN_USE_REASON)

        try:
            if not state.promoted:
                target = admins.get(command.target_id)
                if target is None:
                    await self.client.promote_chat_member(
                        chat_id=command.chat_id,
                        user_id=command.target_id,
                        can_invite_users=True,
                    )
                    self.gate.admins.invalidate(command.chat_id)
                    # Wait a while for the promotion to take effect.
                    if self.promotion_settle_seconds > 0:
                        await anyio.sleep(self.promotion_settle_seconds)
                elif not target.can_be_edited:
                    return RejectedByPolicy(_not_editable_reason(target))
                state.promoted = True

            await self.client.set_member_title(
                chat_id=command.chat_id, user_id=command.target_id, title=command.title
            )
            self.registry.assign(command.chat_id, command.target_id, command.title)
        finally:
            self.registry.release(command.chat_id, command.target_id)
        self.gate.admins.invalidate(command.chat_id)
        return Applied(DONE_MESSAGE)

    async def _clear_title(self, command: ClearTitle) -> OperationOutcome:
        admins = await self.gate.admins.get(command.chat_id)
        target = admins.get(command.target_id)
        if target is None:
            self.registry.remove(command.chat_id, command.target_id)
            return Applied("Nothing to remove: not an admin, so no title.")
        if not target.can_be_edited:
            return RejectedByPolicy(_not_editable_reason(target))

        if command.demote:
            await self.client.promote_chat_member(
                chat_id=command.chat_id,
                user_id=command.target_id,
                can_invite_users=False,
            )
        else:
            await self.client.set_member_title(
                chat_id=command.chat_id, user_id=command.target_id, title=""
            )
        self.registry.remove(command.chat_id, command.target_id)
        self.gate.admins.invalidate(command.chat_id)
        return Applied(DONE_MESSAGE)

    async def _set_anonymous(self, command: SetAnonymous) -> OperationOutcome:
        admins = await self.gate.admins.get(command.chat_id)
        target = admins.get(command.target_id)
        if command.anonymous:
            if target is not None and target.is_anonymous:
                return RejectedByPolicy(ALREADY_ANONYMOUS_REASON)
            if self.registry.get(command.chat_id, command.target_id) is None:
                return RejectedByPolicy(REGISTER_FIRST_REASON)
        elif target is None or not target.is_anonymous:
            return RejectedByPolicy(NOT_ANONYMOUS_REASON)
        if target is not None and not target.can_be_edited:
            return RejectedByPolicy(_not_editable_reason(target))

        await self.client.promote_chat_member(
            chat_id=command.chat_id,
            user_id=command.target_id,
            can_invite_users=True,
            is_anonymous=command.anonymous,
        )
        self.gate.admins.invalidate(command.chat_id)
        return Applied(DONE_MESSAGE)
