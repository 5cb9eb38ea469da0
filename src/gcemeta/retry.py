"""
Retry Policy
============
Exponential backoff with jitter for metadata requests.
"""

import asyncio
import random
from collections.abc import Awaitable, Callable
from typing import Optional

import structlog
from pydantic import BaseModel, Field, model_validator
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    stop_after_delay,
)
from tenacity.wait import wait_base

from gcemeta.exceptions import DeadlineError, TransportError, UnexpectedStatusError

logger = structlog.get_logger()

Sleep = Callable[[float], Awaitable[None]]

# (first status, last status, retry?) checked in order; unlisted statuses are not retried.
RETRYABLE_STATUS_TABLE: tuple[tuple[int, int, bool], ...] = (
    (100, 399, False),
    (400, 428, False),
    (429, 429, True),
    (430, 499, False),
    (500, 599, True),
)


def is_retryable_status(status_code: int) -> bool:
    """Look up whether a response status should be retried."""
    for first, last, retry in RETRYABLE_STATUS_TABLE:
        if first <= status_code <= last:
            return retry
    return False


def is_retryable_error(exc: BaseException) -> bool:
    """Transport failures, timeouts and retryable statuses are transient."""
    if isinstance(exc, (TransportError, DeadlineError)):
        return True
    if isinstance(exc, UnexpectedStatusError):
        return is_retryable_status(exc.status_code)
    return False


class RetryPolicy(BaseModel):
    """
    Backoff parameters for metadata requests.

    Attributes:
        max_attempts: Total attempts including the first one
        base_delay: Delay in seconds before the second attempt
        multiplier: Growth factor applied per further attempt
        jitter: Upper bound of the random delay added to each wait
        max_delay: Optional cap on a single wait, before jitter; uncapped if None
        max_elapsed: Give up once this many seconds have passed
    """

    max_attempts: int = Field(default=5, ge=1)
    base_delay: float = Field(default=0.1, ge=0)
    multiplier: float = Field(default=2.0, ge=1)
    jitter: float = Field(default=0.1, ge=0)
    max_delay: Optional[float] = Field(default=None, ge=0)
    max_elapsed: float = Field(default=30.0, gt=0)

    @model_validator(mode="after")
    def _check_delays(self) -> "RetryPolicy":
        if self.max_delay is not None and self.max_delay < self.base_delay:
            raise ValueError("max_delay must not be smaller than base_delay")
        return self

    def delay(self, attempt: int) -> float:
        """
        Wait before retrying after the given failed attempt (1-based).

        Returns:
            base_delay * multiplier ** (attempt - 1), capped at max_delay if set,
            plus a uniform jitter in [0, jitter]
        """
        backoff = self.base_delay * self.multiplier ** (max(attempt, 1) - 1)
        if self.max_delay is not None:
            backoff = min(backoff, self.max_delay)
        return backoff + random.uniform(0, self.jitter)

    def retrying(self, sleep: Optional[Sleep] = None) -> AsyncRetrying:
        """Build a tenacity controller enforcing this policy."""
        return AsyncRetrying(
            sleep=sleep or asyncio.sleep,
            stop=stop_after_attempt(self.max_attempts) | stop_after_delay(self.max_elapsed),
            wait=wait_policy(self),
            retry=retry_if_exception(is_retryable_error),
            before_sleep=_log_retry,
            reraise=True,
        )


class wait_policy(wait_base):
    """Tenacity wait strategy delegating to ``RetryPolicy.delay``."""

    def __init__(self, policy: RetryPolicy) -> None:
        self.policy = policy

    def __call__(self, retry_state: RetryCallState) -> float:
        return self.policy.delay(retry_state.attempt_number)


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "Metadata request failed, retrying",
        attempt=retry_state.attempt_number,
        wait=round(retry_state.next_action.sleep, 3) if retry_state.next_action else None,
        error=str(exc),
    )
