"""
Retry for collaborator calls.

Provides:
- BackoffStrategy: Delay calculation between retries
- RetryPolicy: Which errors are retried, and how often
- with_retry: Run an async operation under a policy

Only transient failures are retried. A ProviderError is transient when
its `retryable` flag is set (timeouts, network errors, 429, 5xx); every
other error ends the operation on the first attempt and becomes a
`failed:<reason>` outcome for that resource.
"""

from __future__ import annotations

import asyncio
import logging
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, TypeVar

from converge.errors import ProviderError, RateLimitError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

T = TypeVar("T")


# =============================================================================
# Backoff Strategies
# =============================================================================


class BackoffStrategy(ABC):
    """Abstract base for backoff delay calculation."""

    @abstractmethod
    def get_delay(self, attempt: int) -> float:
        """
        Calculate delay before next retry attempt.

        Args:
            attempt: Current attempt number (1-indexed, first retry is attempt 1)

        Returns:
            Delay in seconds before next attempt
        """
        ...


@dataclass
class NoBackoff(BackoffStrategy):
    """No delay between retries. Used in tests."""

    def get_delay(self, attempt: int) -> float:
        return 0.0


@dataclass
class ConstantBackoff(BackoffStrategy):
    """Fixed delay between retries."""

    delay: float = 1.0

    def get_delay(self, attempt: int) -> float:
        return self.delay


@dataclass
class ExponentialBackoff(BackoffStrategy):
    """
    Exponentially increasing delay between retries.

    delay = base * (multiplier ^ (attempt - 1))

    Example:
        backoff = ExponentialBackoff(base=1.0, multiplier=2.0, max_delay=30.0)
        # Attempt 1: 1s, Attempt 2: 2s, Attempt 3: 4s, ...
    """

    base: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 60.0
    jitter: bool = True
    jitter_factor: float = 0.25  # +/- 25%

    def get_delay(self, attempt: int) -> float:
        delay = min(self.base * (self.multiplier ** (attempt - 1)), self.max_delay)

        if self.jitter:
            jitter_range = delay * self.jitter_factor
            delay = max(0.0, delay + random.uniform(-jitter_range, jitter_range))

        return delay


# =============================================================================
# Retry Policy
# =============================================================================


@dataclass
class RetryPolicy:
    """
    Configures retry behavior for collaborator calls.

    Example:
        policy = RetryPolicy(
            max_attempts=4,
            backoff=ExponentialBackoff(base=0.5),
        )
    """

    max_attempts: int = 1  # 1 = no retry (single attempt)
    backoff: BackoffStrategy = field(default_factory=NoBackoff)
    retry_on: tuple[type[Exception], ...] = (ProviderError,)

    def should_retry(self, attempt: int, error: Exception) -> bool:
        if attempt >= self.max_attempts:
            return False
        if not isinstance(error, self.retry_on):
            return False
        return bool(getattr(error, "retryable", True))

    def get_delay(self, attempt: int, error: Exception | None = None) -> float:
        """Delay before the next attempt; a 429's Retry-After wins."""
        if isinstance(error, RateLimitError) and error.retry_after:
            return error.retry_after
        return self.backoff.get_delay(attempt)


NO_RETRY = RetryPolicy(max_attempts=1)

PROVIDER_RETRY = RetryPolicy(
    max_attempts=4,
    backoff=ExponentialBackoff(base=0.5, multiplier=2.0, max_delay=15.0),
)


# =============================================================================
# Retry Executor
# =============================================================================


@dataclass
class RetryResult:
    """Result of a retry-wrapped operation."""

    success: bool
    result: Any = None
    attempts: int = 0
    total_delay: float = 0.0
    errors: list[Exception] = field(default_factory=list)

    @property
    def final_error(self) -> Exception | None:
        """Get the last error encountered."""
        return self.errors[-1] if self.errors else None

    def unwrap(self) -> Any:
        """Return the result or raise the last error."""
        if self.success:
            return self.result
        error = self.final_error
        if error is None:
            raise RuntimeError("Retry finished without result or error")
        raise error


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    operation_name: str = "operation",
    on_retry: Callable[[int, Exception, float], None] | None = None,
) -> RetryResult:
    """
    Execute an async operation with retry logic.

    Args:
        operation: Async callable to execute
        policy: Retry policy to apply
        operation_name: Name for logging
        on_retry: Called with (attempt, error, delay) before each wait

    Returns:
        RetryResult with success status and result/errors

    Example:
        result = await with_retry(
            lambda: provider.create(identifier, kind, attributes),
            policy=PROVIDER_RETRY,
            operation_name=f"create {identifier}",
        )
        outputs = result.unwrap()
    """
    errors: list[Exception] = []
    total_delay = 0.0
    attempt = 0

    while True:
        attempt += 1

        try:
            result = await operation()
            return RetryResult(
                success=True,
                result=result,
                attempts=attempt,
                total_delay=total_delay,
                errors=errors,
            )

        except Exception as e:
            errors.append(e)

            if not policy.should_retry(attempt, e):
                if attempt > 1:
                    logger.error(
                        f"{operation_name}: Failed after {attempt} attempts, last error: {e}"
                    )
                return RetryResult(
                    success=False,
                    attempts=attempt,
                    total_delay=total_delay,
                    errors=errors,
                )

            delay = policy.get_delay(attempt, e)
            total_delay += delay
            logger.warning(
                f"{operation_name}: Attempt {attempt}/{policy.max_attempts} "
                f"failed with {type(e).__name__}: {e}, "
                f"retrying in {delay:.2f}s"
            )
            if on_retry is not None:
                on_retry(attempt, e, delay)
            await asyncio.sleep(delay)
