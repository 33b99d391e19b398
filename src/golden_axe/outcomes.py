"""Terminal outcomes of a title mutation and the retry bookkeeping around it."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

type RejectionCause = Literal["validation", "platform", "internal"]


@dataclass(frozen=True, slots=True)
class Applied:
    message: str


@dataclass(frozen=True, slots=True)
class RejectedByPolicy:
    reason: str


@dataclass(frozen=True, slots=True)
class RejectedByPlatform:
    """Terminal rejection.

    `cause="validation"` marks locally detected input errors (e.g. an
    oversized title). They are user mistakes and are not reported to the
    debug chat; `platform` and `internal` rejections are.
    """

    reason: str
    cause: RejectionCause = "platform"
    detail: str | None = None


@dataclass(frozen=True, slots=True)
class Deferred:
    reason: str
    retry_after: float | None = None


type OperationOutcome = Applied | RejectedByPolicy | RejectedByPlatform | Deferred


@dataclass(frozen=True, slots=True)
class RetryScheduled:
    """Non-terminal: the attempt failed transiently and should be replayed."""

    delay_seconds: float
    error: str


type AttemptResult = OperationOutcome | RetryScheduled


@dataclass(slots=True)
class RetryState:
    """Per-command progress, carried across replays of the same mutation."""

    attempt: int = 0
    next_eligible_at: float | None = None
    authorized: bool = False
    promoted: bool = False
    last_error: str | None = None


def is_reportable(outcome: OperationOutcome) -> bool:
    """Whether `outcome` should reach the debug chat."""

    if isinstance(outcome, RejectedByPlatform):
        return outcome.cause != "validation"
    return isinstance(outcome, Deferred)
