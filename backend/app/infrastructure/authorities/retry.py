"""
Retry Controller for authority calls

Bounded exponential backoff with permanent/transient/rate-limited
classification. The controller holds no state between calls, so the same
policy can wrap any number of concurrent operations.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

from app.config.settings import get_settings
from app.infrastructure.exceptions import PermanentAuthorityError, RateLimitError


logger = logging.getLogger(__name__)

T = TypeVar("T")


class FailureKind(str, Enum):
    """How a failed authority call should be treated."""
    PERMANENT = "permanent"
    TRANSIENT = "transient"
    RATE_LIMITED = "rate_limited"


def classify_authority_error(exc: Exception) -> FailureKind:
    """Default classifier: typed authority errors, everything else transient."""
    if isinstance(exc, PermanentAuthorityError):
        return FailureKind.PERMANENT
    if isinstance(exc, RateLimitError):
        return FailureKind.RATE_LIMITED
    return FailureKind.TRANSIENT


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt budget and backoff schedule (delays in seconds)."""
    max_attempts: int = 3
    initial_delay: float = 1.0
    backoff_multiplier: float = 2.0
    max_delay: float = 10.0

    def delay_for(self, attempt: int) -> float:
        """Delay before the next call, given the number of attempts made so far."""
        return min(self.initial_delay * (self.backoff_multiplier ** attempt), self.max_delay)

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        settings = get_settings()
        return cls(
            max_attempts=settings.max_retries,
            initial_delay=settings.retry_base_delay,
            backoff_multiplier=settings.retry_backoff_multiplier,
            max_delay=settings.retry_max_delay,
        )


@dataclass
class RetryOutcome(Generic[T]):
    """
    Result of a retried operation.

    ``should_retry`` is always False here: the attempt budget is spent (or
    the failure is permanent) and the caller decides what to surface.
    """
    success: bool
    value: Optional[T] = None
    error: Optional[Exception] = None
    failure_kind: Optional[FailureKind] = None
    attempts: int = 0
    should_retry: bool = False

    @property
    def error_message(self) -> Optional[str]:
        if self.error is None:
            return None
        return getattr(self.error, "message", None) or str(self.error)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    classify: Callable[[Exception], FailureKind] = classify_authority_error,
    policy: Optional[RetryPolicy] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    label: str = "authority call",
) -> RetryOutcome[T]:
    """
    Invoke ``operation`` until it succeeds, fails permanently, or the
    attempt budget runs out.

    Args:
        operation: One-shot coroutine factory calling an authority
        classify: Maps a raised exception to a FailureKind
        policy: Attempt budget and backoff (settings when None)
        sleep: Delay function; inject a no-op in tests
        label: Name used in log lines

    Returns:
        RetryOutcome carrying either the value or the last error
    """
    policy = policy or RetryPolicy.from_settings()
    max_attempts = max(policy.max_attempts, 1)
    attempt = 0
    last_error: Optional[Exception] = None
    last_kind: Optional[FailureKind] = None

    while attempt < max_attempts:
        try:
            value = await operation()
            return RetryOutcome(success=True, value=value, attempts=attempt + 1)
        except Exception as e:
            last_error = e
            last_kind = classify(e)

            if last_kind == FailureKind.PERMANENT:
                logger.warning(f"{label} failed permanently (no retry): {e}")
                return RetryOutcome(
                    success=False,
                    error=e,
                    failure_kind=last_kind,
                    attempts=attempt + 1,
                )

            if last_kind == FailureKind.RATE_LIMITED:
                logger.warning(f"{label} rate limited on attempt {attempt + 1}")

            logger.warning(
                f"{label} attempt {attempt + 1}/{max_attempts} failed: {e} "
                f"(will_retry={attempt + 1 < max_attempts})"
            )

        attempt += 1
        if attempt < max_attempts:
            delay = policy.delay_for(attempt)
            logger.debug(f"Retrying {label} in {delay:.1f}s")
            await sleep(delay)

    return RetryOutcome(
        success=False,
        error=last_error,
        failure_kind=last_kind,
        attempts=attempt,
    )
