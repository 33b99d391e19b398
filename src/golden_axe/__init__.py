"""golden-axe: a Telegram bot that lets group admins manage member custom titles."""

from golden_axe.dispatch import Dispatcher
from golden_axe.engine import RetryPolicy, TitleMutationEngine
from golden_axe.outcomes import (
    Applied,
    Deferred,
    OperationOutcome,
    RejectedByPlatform,
    RejectedByPolicy,
)

__all__ = [
    "Applied",
    "Deferred",
    "Dispatcher",
    "OperationOutcome",
    "RejectedByPlatform",
    "RejectedByPolicy",
    "RetryPolicy",
    "TitleMutationEngine",
]
