"""Update dispatch: a bounded worker pool around the mutation engine.

Lifecycle of one title command:
`Received -> Parsed -> Authorized -> Applying(attempt N) -> terminal`, where
terminal is one of `Applied`, `RejectedByPolicy`, `RejectedByPlatform` or
`Deferred`. A terminal state is never left or re-entered.

Design notes / invariants:
- Work items (new updates, first runs of `apply()` calls, and replays) flow
  through one bounded memory stream consumed by `workers` tasks.
- Commands are serialized per `(chat_id, target_id)` key. A command whose key
  is owned by another command is parked (not dropped) and handed the key when
  the owner reaches its terminal outcome, so the second command's
  authorization always starts after the first one finished. Ordering per key
  is FIFO; ordering across keys is not guaranteed.
- A transient failure schedules a timer task that re-submits the same job
  (same validated command, same `RetryState`) after the backoff delay. No
  worker waits through a backoff.
- Shutdown: timers are woken and their jobs finalized as `Deferred`, as are
  parked jobs; attempts already running complete first. Jobs still open
  when the grace period ends are cancelled and deferred. Every finalized job
  is acknowledged to its issuer.
"""

from __future__ import annotations

import html
import itertools
from collections import deque
from dataclasses import dataclass, field
from logging import getLogger
from typing import Self, assert_never

import anyio
from anyio.abc import TaskGroup
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream

from golden_axe.commands import (
    ClearTitle,
    Deanonymize,
    ListTitles,
    Malformed,
    Mutation,
    SetAnonymous,
    SetTitle,
    ShowHelp,
    Unrecognized,
    help_text,
    parse,
)
from golden_axe.debug import DebugReporter, ErrorEvent
from golden_axe.engine import INTERNAL_REASON, TitleMutationEngine
from golden_axe.outcomes import (
    Applied,
    Deferred,
    OperationOutcome,
    RejectedByPlatform,
    RejectedByPolicy,
    RetryScheduled,
    RetryState,
    is_reportable,
)
from golden_axe.platform import PlatformClient
from golden_axe.registry import render_titles
from golden_axe.updates import SeenUpdates, Update

logger = getLogger(__name__)

type Key = tuple[int, int]

DEFERRED_MESSAGE = "I couldn't finish that right now, please try again later."
SHUTDOWN_REASON = "Shutting down"
UNKNOWN_SIGNATURE_REASON = (
    "I don't recognize you. Please contact admin to manually de-anonymous."
)
_ABANDONED_REPLY_SECONDS = 5.0


class KeyedSerializer[T]:
    """Mutual exclusion per key with FIFO hand-over to parked waiters."""

    def __init__(self) -> None:
        self._owners: dict[Key, T] = {}
        self._parked: dict[Key, deque[T]] = {}

    def __len__(self) -> int:
        return len(self._owners)

    def owner(self, key: Key) -> T | None:
        return self._owners.get(key)

    def parked(self, key: Key) -> list[T]:
        return list(self._parked.get(key, ()))

    def acquire(self, key: Key, item: T) -> bool:
        """Take `key` for `item`, or park `item` behind the current owner."""

        if key in self._owners:
            self._parked.setdefault(key, deque()).append(item)
            return False
        self._owners[key] = item
        return True

    def release(self, key: Key, item: T) -> T | None:
        """Release `key`; return the parked item that now owns it, if any."""

        if self._owners.get(key) is not item:
            raise RuntimeError(f"key {key} released by a non-owner")
        waiting = self._parked.get(key)
        if waiting:
            nxt = waiting.popleft()
            if not waiting:
                del self._parked[key]
            self._owners[key] = nxt
            return nxt
        del self._owners[key]
        return None


@dataclass(slots=True, eq=False)
class _Job:
    token: int
    command: Mutation
    state: RetryState = field(default_factory=RetryState)
    started: bool = False
    outcome: OperationOutcome | None = None
    done: anyio.Event = field(default_factory=anyio.Event)

    @property
    def key(self) -> Key:
        return (self.command.chat_id, self.command.target_id)


def describe(command: Mutation) -> str:
    return (
        f"{type(command).__name__} chat={command.chat_id} "
        f"issuer={command.issuer_id} target={command.target_id}"
    )


def reply_text(outcome: OperationOutcome) -> str:
    if isinstance(outcome, Applied):
        return html.escape(outcome.message)
    if isinstance(outcome, RejectedByPolicy | RejectedByPlatform):
        return html.escape(outcome.reason)
    if isinstance(outcome, Deferred):
        return DEFERRED_MESSAGE
    assert_never(outcome)


def _debug_cause(outcome: OperationOutcome) -> str:
    if isinstance(outcome, RejectedByPlatform):
        return f"{outcome.cause}: {outcome.detail or outcome.reason}"
    if isinstance(outcome, Deferred):
        hint = (
            f" (retry_after={outcome.retry_after}s)"
            if outcome.retry_after is not None
            else ""
        )
        return f"deferred: {outcome.reason}{hint}"
    return repr(outcome)


class Dispatcher:
    """Consume updates and drive title commands to a terminal outcome.

    Use as an async context manager; workers run while the context is open.
    """

    def __init__(
        self,
        client: PlatformClient,
        engine: TitleMutationEngine,
        reporter: DebugReporter,
        *,
        bot_username: str | None = None,
        workers: int = 8,
        queue_size: int = 256,
        seen_capacity: int = 4096,
        shutdown_grace_seconds: float = 10.0,
    ) -> None:
        if workers < 1:
            raise ValueError(f"workers must be >= 1; got {workers}")
        self.client = client
        self.engine = engine
        self.reporter = reporter
        self.registry = engine.registry
        self.bot_username = bot_username
        self.workers = workers
        self.shutdown_grace_seconds = shutdown_grace_seconds

        self._send: MemoryObjectSendStream[Update | _Job]
        self._receive: MemoryObjectReceiveStream[Update | _Job]
        self._send, self._receive = anyio.create_memory_object_stream[Update | _Job](
            queue_size
        )
        self._keys: KeyedSerializer[_Job] = KeyedSerializer()
        self._seen = SeenUpdates(seen_capacity)
        self._backoff: dict[int, _Job] = {}
        # Every job without a terminal outcome yet.
        self._jobs: dict[int, _Job] = {}
        self._tokens = itertools.count(1)
        self._closing = anyio.Event()
        self._drained = anyio.Event()
        self._running = 0
        self._tg: TaskGroup | None = None

    async def __aenter__(self) -> Self:
        self._tg = anyio.create_task_group()
        await self._tg.__aenter__()
        self._running = self.workers
        for i in range(self.workers):
            self._tg.start_soon(
                self._worker, self._receive.clone(), name=f"dispatch-worker-{i}"
            )
        self._receive.close()
        return self

    async def __aexit__(self, exc_type: object, exc: object, tb: object) -> bool | None:
        assert self._tg is not None
        with anyio.move_on_after(self.shutdown_grace_seconds, shield=True) as scope:
            await self._shutdown()
        if scope.cancelled_caught:
            logger.warning("Dispatcher shutdown grace period elapsed; cancelling workers")
            self._tg.cancel_scope.cancel()
        try:
            return await self._tg.__aexit__(exc_type, exc, tb)  # type: ignore[arg-type]
        finally:
            await self._finish_abandoned()

    async def submit(self, update: Update) -> bool:
        """Queue an inbound update. Returns `False` once shutdown has begun."""

        if self._closing.is_set():
            logger.warning(f"Dropping update {update.update_id}: shutting down")
            return False
        try:
            await self._send.send(update)
        except (anyio.ClosedResourceError, anyio.BrokenResourceError):
            logger.warning(f"Dropping update {update.update_id}: dispatcher closed")
            return False
        return True

    async def apply(self, command: Mutation) -> OperationOutcome:
        """Run `command` through the pool and wait for its terminal outcome."""

        job = self._new_job(command)
        try:
            await self._send.send(job)
        except (anyio.ClosedResourceError, anyio.BrokenResourceError):
            self._jobs.pop(job.token, None)
            return Deferred(reason=SHUTDOWN_REASON)
        await job.done.wait()
        assert job.outcome is not None
        return job.outcome

    def _new_job(self, command: Mutation) -> _Job:
        job = _Job(token=next(self._tokens), command=command)
        self._jobs[job.token] = job
        return job

    async def _worker(self, receive: MemoryObjectReceiveStream[Update | _Job]) -> None:
        try:
            async with receive:
                async for item in receive:
                    if isinstance(item, _Job):
                        await self._step(item)
                        continue
                    try:
                        await self._handle_update(item)
                    except Exception as e:
                        logger.exception(f"Dispatch error on update {item.update_id}")
                        self.reporter.report(
                            ErrorEvent(
                                context=f"dispatch update {item.update_id}",
                                cause=f"{type(e).__name__}: {e}",
                            )
                        )
        finally:
            self._running -= 1
            if self._running == 0:
                self._drained.set()

    async def _step(self, job: _Job) -> None:
        """Begin or resume `job`; an escaping error finalizes it as internal."""

        try:
            if job.started:
                await self._run_attempt(job)
            else:
                await self._begin(job)
        except Exception as e:
            logger.exception(f"Dispatch error on {describe(job.command)}")
            await self._finish(
                job,
                RejectedByPlatform(
                    INTERNAL_REASON,
                    cause="internal",
                    detail=f"{type(e).__name__}: {e}",
                ),
            )

    async def _handle_update(self, update: Update) -> None:
        if not self._seen.add(update.update_id):
            logger.info(f"Skipping duplicate update {update.update_id}")
            return

        command = parse(update, bot_username=self.bot_username)
        if isinstance(command, Unrecognized):
            return
        if isinstance(command, ShowHelp):
            await self._reply(command.chat_id, html.escape(help_text()), command.message_id)
        elif isinstance(command, ListTitles):
            records = self.registry.list_in_chat(command.chat_id)
            await self._reply(
                command.chat_id, render_titles(command.chat_id, records), command.message_id
            )
        elif isinstance(command, Malformed):
            await self._reply(command.chat_id, html.escape(command.reason), command.message_id)
        elif isinstance(command, Deanonymize):
            await self._deanonymize(command)
        elif isinstance(command, SetTitle | ClearTitle | SetAnonymous):
            logger.debug(f"Parsed {describe(command)} from update {update.update_id}")
            await self._step(self._new_job(command))
        else:
            assert_never(command)

    async def _deanonymize(self, command: Deanonymize) -> None:
        # An anonymous admin's author signature is their custom title.
        holder = self.registry.holder(command.chat_id, command.signature)
        if holder is None:
            await self._reply(
                command.chat_id, html.escape(UNKNOWN_SIGNATURE_REASON), command.message_id
            )
            return
        mutation = SetAnonymous(
            chat_id=command.chat_id,
            issuer_id=holder,
            target_id=holder,
            anonymous=False,
            message_id=command.message_id,
        )
        logger.debug(f"Signature {command.signature!r} resolved to user {holder}")
        await self._step(self._new_job(mutation))

    async def _begin(self, job: _Job) -> None:
        job.started = True
        if self._closing.is_set():
            await self._finish(job, Deferred(reason=SHUTDOWN_REASON))
            return

        validated = self.engine.validate(job.command)
        if isinstance(validated, RejectedByPlatform):
            await self._finish(job, validated)
            return
        job.command = validated

        if not self._keys.acquire(job.key, job):
            logger.debug(f"{describe(job.command)} waiting for key {job.key}")
            return
        await self._run_attempt(job)

    async def _run_attempt(self, job: _Job) -> None:
        if self._closing.is_set() and job.state.attempt == 0:
            # Handed its key just before shutdown; never attempted.
            await self._finish(job, Deferred(reason=SHUTDOWN_REASON))
            return
        logger.debug(f"Applying {describe(job.command)} attempt {job.state.attempt + 1}")
        result = await self.engine.attempt(job.command, job.state)
        if not isinstance(result, RetryScheduled):
            await self._finish(job, result)
            return

        if self._closing.is_set():
            await self._finish(
                job, Deferred(reason=f"{SHUTDOWN_REASON} ({result.error})")
            )
            return
        logger.info(
            f"{describe(job.command)} attempt {job.state.attempt} failed: "
            f"{result.error}; retrying in {result.delay_seconds:.2f}s"
        )
        assert self._tg is not None
        self._backoff[job.token] = job
        self._tg.start_soon(self._replay_later, job, result.delay_seconds)

    async def _replay_later(self, job: _Job, delay: float) -> None:
        with anyio.move_on_after(delay):
            await self._closing.wait()
        # Shutdown clears `_backoff` and finalizes those jobs itself.
        if self._backoff.pop(job.token, None) is None:
            return
        await self._enqueue(job)

    async def _enqueue(self, job: _Job) -> None:
        try:
            await self._send.send(job)
        except (anyio.ClosedResourceError, anyio.BrokenResourceError):
            await self._finish(job, Deferred(reason=SHUTDOWN_REASON))

    async def _finish(self, job: _Job, outcome: OperationOutcome) -> None:
        if job.outcome is not None:
            return
        job.outcome = outcome
        logger.info(f"{describe(job.command)} -> {outcome!r}")

        if self._keys.owner(job.key) is job:
            nxt = self._keys.release(job.key, job)
            if nxt is not None:
                await self._hand_over(nxt)

        await self._reply(
            job.command.chat_id, reply_text(outcome), job.command.message_id
        )
        if is_reportable(outcome):
            self.reporter.report(
                ErrorEvent(context=describe(job.command), cause=_debug_cause(outcome))
            )
        self._jobs.pop(job.token, None)
        job.done.set()

    async def _hand_over(self, job: _Job) -> None:
        if self._closing.is_set():
            await self._finish(job, Deferred(reason=SHUTDOWN_REASON))
            return
        assert self._tg is not None
        self._tg.start_soon(self._enqueue, job)

    async def _reply(self, chat_id: int, text: str, message_id: int | None) -> None:
        try:
            await self.client.send_message(
                chat_id=chat_id, text=text, reply_to_message_id=message_id
            )
        except Exception as e:
            logger.warning(f"Reply to chat {chat_id} failed: {type(e).__name__}: {e}")
            self.reporter.report(
                ErrorEvent(
                    context=f"reply to chat {chat_id}",
                    cause=f"{type(e).__name__}: {e}",
                )
            )

    async def _shutdown(self) -> None:
        self._closing.set()
        backing_off = list(self._backoff.values())
        self._backoff.clear()
        for job in backing_off:
            await self._finish(job, Deferred(reason=SHUTDOWN_REASON))
        await self._send.aclose()
        await self._drained.wait()

    async def _finish_abandoned(self) -> None:
        """Finalize jobs cut off when the grace period ran out."""

        abandoned = list(self._jobs.values())
        self._jobs.clear()
        if not abandoned:
            return
        logger.warning(f"Deferring {len(abandoned)} command(s) cut off by shutdown")
        unanswered: list[_Job] = []
        for job in abandoned:
            if job.outcome is None:
                job.outcome = Deferred(reason=SHUTDOWN_REASON)
                unanswered.append(job)
            job.done.set()

        with anyio.move_on_after(_ABANDONED_REPLY_SECONDS, shield=True):
            for job in unanswered:
                outcome = Deferred(reason=SHUTDOWN_REASON)
                self.reporter.report(
                    ErrorEvent(context=describe(job.command), cause=_debug_cause(outcome))
                )
                await self._reply(
                    job.command.chat_id, reply_text(outcome), job.command.message_id
                )
