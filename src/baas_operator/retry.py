"""Bounded exponential backoff poller.

``Retry.do`` runs a step repeatedly until it reports convergence, a fatal
error, or the caller's ``Deadline`` is done. Each step reports one of three
outcomes so that "not there yet" and "cannot continue" never share a flag.

The poller keeps no state between calls: every ``do`` starts from attempt 1
and the configured initial delay.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum

from .config import RetryConfig
from .errors import PollCancelledError

logger = logging.getLogger(__name__)


class StepOutcome(str, Enum):
    """Result of a single poll attempt."""

    CONVERGED = "converged"
    RETRY = "retry"
    FATAL = "fatal"


@dataclass(frozen=True)
class StepResult:
    """Outcome of one step plus the error that explains it, if any."""

    outcome: StepOutcome
    error: Exception | None = None

    @classmethod
    def converged(cls) -> StepResult:
        return cls(StepOutcome.CONVERGED)

    @classmethod
    def retry(cls, error: Exception | None = None) -> StepResult:
        return cls(StepOutcome.RETRY, error)

    @classmethod
    def fatal(cls, error: Exception) -> StepResult:
        return cls(StepOutcome.FATAL, error)


class Deadline:
    """Absolute deadline plus an explicit cancellation switch.

    A deadline without a timeout never expires on its own but can still be
    cancelled. ``wait`` sleeps for at most the given delay and wakes early
    when the deadline is cancelled.
    """

    def __init__(
        self,
        timeout_seconds: float | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._clock = clock
        self._expires_at = None if timeout_seconds is None else clock() + timeout_seconds
        self._cancelled = asyncio.Event()

    @property
    def expires_at(self) -> float | None:
        return self._expires_at

    def remaining(self) -> float | None:
        """Seconds left before expiry, None when no timeout is set."""
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - self._clock())

    @property
    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def done(self) -> bool:
        return self.cancelled or self.expired

    def cancel(self) -> None:
        self._cancelled.set()

    async def wait(self, delay: float) -> None:
        if delay <= 0:
            return
        try:
            await asyncio.wait_for(self._cancelled.wait(), timeout=delay)
        except TimeoutError:
            pass


StepFunc = Callable[[int], Awaitable[StepResult]]


class Retry:
    """Capped exponential backoff driven by a three-valued step."""

    def __init__(self, config: RetryConfig | None = None) -> None:
        self._config = config or RetryConfig()

    @property
    def config(self) -> RetryConfig:
        return self._config

    async def do(self, deadline: Deadline, label: str, step: StepFunc) -> None:
        """Run ``step`` until it converges.

        Args:
            deadline: Bounds the whole wait; checked before every sleep.
            label: Human-readable operation name for logs and errors.
            step: Async callable receiving the 1-based attempt number.

        Raises:
            PollCancelledError: The deadline expired or was cancelled.
            Exception: Whatever error a fatal step carried, or raised itself.
        """
        attempt = 0
        delay = self._config.initial_delay_seconds
        last_error: Exception | None = None

        while True:
            attempt += 1
            result = await step(attempt)

            if result.outcome == StepOutcome.CONVERGED:
                return

            if result.outcome == StepOutcome.FATAL:
                logger.error(
                    f"{label} attempt {attempt}: {result.error}",
                    extra={"operation": label, "attempt": attempt},
                )
                assert result.error is not None, "Fatal step result carries no error"
                raise result.error

            last_error = result.error
            logger.warning(
                f"{label} attempt {attempt}: {result.error or 'not converged'}",
                extra={"operation": label, "attempt": attempt},
            )

            if deadline.done():
                reason = "context cancelled" if deadline.cancelled else "deadline exceeded"
                raise PollCancelledError(label, attempt, last_error, reason=reason)

            # Cap at use time, then never sleep past the deadline
            wait_time = min(delay, self._config.max_delay_seconds)
            remaining = deadline.remaining()
            if remaining is not None and remaining < wait_time:
                wait_time = remaining

            await self._sleep(deadline, wait_time)
            delay = delay * self._config.factor

    async def _sleep(self, deadline: Deadline, delay: float) -> None:
        await deadline.wait(delay)
