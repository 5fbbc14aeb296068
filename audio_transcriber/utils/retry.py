"""Retry utility with exponential backoff and jitter.

Delay before the retry that follows failed attempt ``n`` (0-based) is
``min(base_delay * 2^n, max_delay)`` plus up to ``jitter_ratio`` of that
value. An exception carrying a ``retry_after`` attribute (seconds) has its
delay honored exactly instead.
"""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BackoffPolicy:
    """Retry budget and delay shape for a retried call."""

    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 32.0
    jitter_ratio: float = 0.3

    def compute_delay(
        self, attempt: int, rng: Callable[[], float] = random.random
    ) -> float:
        """Return the delay in seconds after failed attempt ``attempt``.

        Args:
            attempt: 0-based index of the attempt that just failed.
            rng: Source of uniform values in [0, 1), injectable for tests.

        Returns:
            Base delay capped at ``max_delay`` plus proportional jitter.
        """
        delay = min(self.base_delay * (2**attempt), self.max_delay)
        return delay + rng() * self.jitter_ratio * delay


def _retry_after(exc: Exception) -> float | None:
    value = getattr(exc, "retry_after", None)
    if value is None:
        return None
    try:
        value = float(value)
    except (TypeError, ValueError):
        return None
    return value if value >= 0 else None


async def retry_async(
    func: Callable[[int], Awaitable[Any]],
    policy: BackoffPolicy,
    is_retryable: Callable[[Exception], bool] | None = None,
    name: str | None = None,
) -> Any:
    """Call ``func(attempt)`` until it succeeds or the policy is exhausted.

    Args:
        func: Async callable receiving the 0-based attempt index.
        policy: Attempt budget and backoff shape.
        is_retryable: Predicate classifying an exception as transient.
            If None, all exceptions are retried.
        name: Label used in retry log lines.

    Returns:
        Whatever ``func`` returns on its first successful attempt.

    Raises:
        Exception: The first non-retryable exception, or the last retryable
            one once ``policy.max_attempts`` attempts have failed. Either way
            ``_retry_count`` is attached to it.
    """
    label = name or getattr(func, "__name__", "call")
    last_error: Exception | None = None
    for attempt in range(policy.max_attempts):
        try:
            return await func(attempt)
        except Exception as exc:
            last_error = exc
            # Permanent failure: re-raise immediately
            if is_retryable is not None and not is_retryable(exc):
                exc._retry_count = attempt  # type: ignore[attr-defined]
                raise
            if attempt < policy.max_attempts - 1:
                delay = _retry_after(exc)
                if delay is None:
                    delay = policy.compute_delay(attempt)
                logger.warning(
                    "Retry %d/%d for %s after %.1fs: %s",
                    attempt + 1,
                    policy.max_attempts - 1,
                    label,
                    delay,
                    exc,
                )
                await asyncio.sleep(delay)
    last_error._retry_count = policy.max_attempts - 1  # type: ignore[union-attr]
    raise last_error  # type: ignore[misc]
