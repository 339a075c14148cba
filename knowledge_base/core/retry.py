"""
knowledge_base/core/retry.py

One retry/backoff policy shared by every call site that talks to the
embedding provider or runs a search, instead of per-call experimentation.

Only failures that declare themselves ``retryable`` are repeated; an
authentication error or a malformed response is raised on the first try.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from knowledge_base.core.config import settings
from knowledge_base.core.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


def is_retryable(exc: BaseException) -> bool:
    """True for application errors flagged retryable (rate limit, network, timeout)."""
    return bool(getattr(exc, "retryable", False))


@dataclass(frozen=True)
class RetryPolicy:
    """
    Exponential backoff parameters.

    Attributes:
        max_attempts : Total tries including the first one. 1 disables retries.
        min_wait     : Lower bound of the wait between tries, in seconds.
        max_wait     : Upper bound of the wait between tries, in seconds.
        exp_base     : Growth factor of the wait.
    """

    max_attempts: int = 3
    min_wait: float = 1.0
    max_wait: float = 20.0
    exp_base: float = 2.0

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_attempts=settings.retry_max_attempts,
            min_wait=settings.retry_min_wait,
            max_wait=settings.retry_max_wait,
            exp_base=settings.retry_exponential_base,
        )

    def retrying(self) -> AsyncRetrying:
        """Build a tenacity controller; the last exception is re-raised as-is."""
        return AsyncRetrying(
            stop=stop_after_attempt(max(1, self.max_attempts)),
            wait=wait_exponential(
                multiplier=1,
                min=self.min_wait,
                max=self.max_wait,
                exp_base=self.exp_base,
            ),
            retry=retry_if_exception(is_retryable),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

    async def call(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Await ``fn()`` under this policy."""
        async for attempt in self.retrying():
            with attempt:
                return await fn()
        raise RuntimeError("unreachable")  # pragma: no cover


#: Single-attempt policy for one-shot calls and tests.
NO_RETRY = RetryPolicy(max_attempts=1, min_wait=0.0, max_wait=0.0)
