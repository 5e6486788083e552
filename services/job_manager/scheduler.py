from __future__ import annotations

from dataclasses import dataclass

from .config import Settings
from .exceptions import ExecutionError
from .models import ErrorKind, Job


@dataclass(frozen=True)
class FailureDecision:
    dead: bool
    delay_s: float = 0.0


def backoff_s(attempts: int, settings: Settings) -> float:
    """Exponential backoff based on the failed-attempt count (1,2,3...), capped."""

    # with base=1, factor=2:
    # attempt 1 failure => retry after 1s
    # attempt 2 failure => retry after 2s
    # attempt 3 failure => retry after 4s
    delay = settings.backoff_base_s * (settings.backoff_factor ** max(0, attempts - 1))
    return min(delay, settings.backoff_cap_s)


def classify_error(error) -> ErrorKind:
    if isinstance(error, ExecutionError) and error.permanent:
        return ErrorKind.PERMANENT
    return ErrorKind.TRANSIENT


def should_retry(j: Job) -> bool:
    """Retry rule: retry while failed attempts so far <= max_retries."""

    # attempts is incremented before this check. After attempt=1 fails:
    # retry if 1 <= max_retries (max_retries counts retries)
    return j.attempts <= j.max_retries


def decide_failure(j: Job, kind: ErrorKind, settings: Settings) -> FailureDecision:
    """Decide what happens to a job whose attempt counter was just incremented."""

    if kind == ErrorKind.PERMANENT or not should_retry(j):
        return FailureDecision(dead=True)
    if kind == ErrorKind.LEASE_EXPIRED:
        # the visibility timeout already delayed it
        return FailureDecision(dead=False, delay_s=0.0)
    return FailureDecision(dead=False, delay_s=backoff_s(j.attempts, settings))
