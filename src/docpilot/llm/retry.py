"""Retry with exponential backoff and jitter.

``RetryPolicy`` is a pure control-flow combinator: it re-invokes an async
operation while the failure is classified as transient.  It knows nothing
about HTTP; classification comes from ``docpilot.llm.errors``.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field, replace
from typing import Awaitable, Callable, TypeVar

from .cancellation import CancelToken, OperationAborted
from .errors import ApiError, is_retryable

_logger = logging.getLogger(__name__)

T = TypeVar("T")

RetryPredicate = Callable[[ApiError], bool]


@dataclass
class RetryContext:
    """Per-call retry settings plus the current attempt number (1-based)."""

    max_attempts: int = 3
    base_delay: float = 1.0  # seconds
    max_delay: float = 30.0
    jitter: float = 0.2  # delay factor is drawn from [1 - jitter, 1 + jitter)
    retry_on: RetryPredicate = field(default=is_retryable)
    attempt: int = 0

    def compute_delay(
        self,
        attempt: int,
        rand: Callable[[], float] = random.random,
    ) -> float:
        """Backoff before attempt ``attempt + 1``."""
        factor = (1.0 - self.jitter) + 2.0 * self.jitter * rand()
        return min(self.max_delay, self.base_delay * (2 ** (attempt - 1)) * factor)


class RetryPolicy:
    """Run operations under a default ``RetryContext``.

    Parameters
    ----------
    context:
        Defaults used when ``execute`` is called without a context.
    rand:
        Source of jitter in ``[0, 1)``; injectable for tests.
    """

    def __init__(
        self,
        context: RetryContext | None = None,
        *,
        rand: Callable[[], float] = random.random,
    ) -> None:
        self.context = context or RetryContext()
        self._rand = rand

    async def execute(
        self,
        operation: Callable[[int], Awaitable[T]],
        context: RetryContext | None = None,
        *,
        cancel: CancelToken | None = None,
    ) -> T:
        """Invoke ``operation(attempt)`` until it succeeds or retries run out.

        Every ``ApiError`` gets ``attempt`` and ``max_attempts`` recorded in its
        context before the retry decision.  Other exceptions propagate at once.
        """
        ctx = replace(context or self.context, attempt=0)
        max_attempts = max(1, ctx.max_attempts)

        while True:
            ctx.attempt += 1
            attempt = ctx.attempt
            try:
                return await operation(attempt)
            except ApiError as exc:
                exc.context["attempt"] = attempt
                exc.context["max_attempts"] = max_attempts

                if attempt >= max_attempts or not ctx.retry_on(exc):
                    raise
                if cancel is not None and cancel.cancelled:
                    raise

                delay = ctx.compute_delay(attempt, self._rand)
                _logger.warning(
                    "%s request failed (attempt %d/%d): %s; retrying in %.2fs",
                    exc.provider, attempt, max_attempts, exc.message, delay,
                )
                await self._sleep(delay, cancel, exc)

    @staticmethod
    async def _sleep(
        delay: float,
        cancel: CancelToken | None,
        last_error: ApiError,
    ) -> None:
        if cancel is None:
            await asyncio.sleep(delay)
            return
        try:
            await cancel.run(asyncio.sleep(delay))
        except OperationAborted:
            _logger.info("Retry backoff interrupted by cancellation")
            raise last_error from None
