"""Bounded retry with jittered exponential backoff for remote calls."""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger("courier.common.retry")


@dataclass
class RetryPolicy:
    max_attempts: int = 4
    base_delay: float = 0.5
    max_delay: float = 8.0
    timeout: Optional[float] = 10.0  # per attempt

    def delay_for(self, attempt: int, rng: Callable[[], float] = random.random) -> float:
        """Delay before attempt ``attempt + 1``, with equal jitter: [d/2, d]."""
        ceiling = min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))
        return ceiling / 2 + rng() * ceiling / 2


@dataclass
class RetryOutcome:
    ok: bool
    value: Any = None
    attempts: int = 0
    error: Optional[BaseException] = None


def default_retryable(exc: BaseException) -> bool:
    return bool(getattr(exc, "retryable", isinstance(exc, asyncio.TimeoutError)))


async def retry_async(
    operation: Callable[[], Awaitable[Any]],
    policy: RetryPolicy,
    *,
    is_retryable: Callable[[BaseException], bool] = default_retryable,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    label: str = "operation",
) -> RetryOutcome:
    """Run ``operation`` until it succeeds or attempts run out.

    Never raises for operation failures: the last error is returned in the
    outcome. Cancellation propagates.
    """
    attempts = max(1, policy.max_attempts)
    last_error: Optional[BaseException] = None

    for attempt in range(1, attempts + 1):
        try:
            if policy.timeout:
                value = await asyncio.wait_for(operation(), timeout=policy.timeout)
            else:
                value = await operation()
            return RetryOutcome(ok=True, value=value, attempts=attempt)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            last_error = e
            if not is_retryable(e):
                logger.error("%s failed permanently on attempt %d: %s", label, attempt, e)
                return RetryOutcome(ok=False, attempts=attempt, error=e)
            if attempt == attempts:
                break
            delay = policy.delay_for(attempt)
            logger.warning(
                "%s attempt %d/%d failed (%s), retrying in %.2fs",
                label, attempt, attempts, e or type(e).__name__, delay,
            )
            await sleep(delay)

    logger.error("%s failed after %d attempts: %s", label, attempts, last_error)
    return RetryOutcome(ok=False, attempts=attempts, error=last_error)
