"""Bounded exponential backoff for provider calls.

Every remote call made by the reconciler goes through a RetryExecutor with
an explicit BackoffPolicy: reads use fewer, faster retries; writes use
more, slower ones.

An operation signals its outcome three ways:
- returns a value: done, stop retrying
- raises TransientProviderError: retry after the next delay
- raises anything else: fatal, propagated immediately

When the attempt budget is spent the executor raises RetryExhaustedError,
which callers can tell apart from a fatal operation error.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from typing import TypeVar

from .errors import RetryExhaustedError, TransientProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class BackoffPolicy:
    """Retry delay growth and jitter for one class of operations.

    Attributes:
        initial_delay: Seconds to wait before the second attempt.
        factor: Multiplier applied to the delay after each wait.
        jitter: Fraction of the delay added or removed at random.
        max_attempts: Total attempts, including the first.
    """

    initial_delay: float = 1.0
    factor: float = 1.5
    jitter: float = 0.1
    max_attempts: int = 4

    def __post_init__(self) -> None:
        errors: list[str] = []
        if self.initial_delay <= 0:
            errors.append("initial_delay must be positive")
        if self.factor < 1:
            errors.append("factor must be at least 1")
        if not 0 <= self.jitter < 1:
            errors.append("jitter must be in [0, 1)")
        if self.max_attempts < 1:
            errors.append("max_attempts must be at least 1")
        if errors:
            raise ValueError("Invalid backoff policy: " + "; ".join(errors))

    def base_delay(self, attempt: int) -> float:
        """Delay before attempt + 1, without jitter."""
        return self.initial_delay * self.factor ** (attempt - 1)

    def next_delay(self, previous: float | None, rng: random.Random | None = None) -> float:
        """Delay to sleep next, grown from the previous one and jittered.

        Args:
            previous: The delay slept before the last attempt, None before the first wait.
            rng: Random source; module random when omitted.
        """
        base = self.initial_delay if previous is None else previous * self.factor
        if self.jitter == 0:
            return base
        spread = (rng or random).uniform(-self.jitter, self.jitter)
        return base * (1 + spread)

    def without_jitter(self) -> BackoffPolicy:
        """Deterministic variant of this policy."""
        return replace(self, jitter=0.0)


READ_BACKOFF = BackoffPolicy(initial_delay=1.0, factor=1.5, jitter=0.1, max_attempts=4)
WRITE_BACKOFF = BackoffPolicy(initial_delay=1.0, factor=1.5, jitter=0.1, max_attempts=5)


class RetryExecutor:
    """Runs an async operation under a BackoffPolicy.

    The sleep between attempts only suspends the calling coroutine, so
    other reconciliations keep running while one task waits.
    """

    def __init__(
        self,
        sleep: Callable[[float], Awaitable[object]] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        """Initialize executor.

        Args:
            sleep: Coroutine used to wait between attempts (asyncio.sleep).
            rng: Random source for jitter.
        """
        self._sleep = sleep or asyncio.sleep
        self._rng = rng or random.Random()

    async def run(
        self,
        policy: BackoffPolicy,
        operation: Callable[[], Awaitable[T]],
        *,
        description: str = "operation",
    ) -> T:
        """Execute operation until it succeeds, fails fatally or runs out of attempts.

        Args:
            policy: Backoff policy for this class of operation.
            operation: Zero-argument callable returning an awaitable.
            description: Human-readable name for logs and errors.

        Returns:
            The operation's result.

        Raises:
            RetryExhaustedError: If every attempt signalled retry.
            Exception: Any non-transient error raised by the operation.
        """
        last_error: TransientProviderError | None = None
        wait_time: float | None = None

        for attempt in range(1, policy.max_attempts + 1):
            try:
                return await operation()
            except TransientProviderError as e:
                last_error = e

                if attempt < policy.max_attempts:
                    wait_time = policy.next_delay(wait_time, self._rng)
                    logger.warning(
                        "Transient failure, retrying",
                        extra={
                            "operation": description,
                            "attempt": attempt,
                            "max_attempts": policy.max_attempts,
                            "wait_seconds": wait_time,
                            "error": str(e),
                        },
                    )
                    await self._sleep(wait_time)

        logger.error(
            "Retry budget exhausted",
            extra={"operation": description, "attempts": policy.max_attempts},
        )
        raise RetryExhaustedError(description, policy.max_attempts, last_error) from last_error


async def retry(
    policy: BackoffPolicy,
    operation: Callable[[], Awaitable[T]],
    *,
    description: str = "operation",
) -> T:
    """Run operation with a default RetryExecutor.

    Convenience entry point for callers outside the engine, such as
    provider adapters retrying their own sub-calls. The engine itself
    shares one injected RetryExecutor across reconcilers.
    """
    return await RetryExecutor().run(policy, operation, description=description)
