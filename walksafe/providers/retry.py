"""
Retry with exponential backoff and jitter.

Applied to every outbound provider call.

Strategy, for failed attempt n (1-based):
    delay = min(base_delay * 2^(n-1), max_delay)
    sleep uniform(0.5 * delay, 1.0 * delay)

An operation gets 1 + max_retries invocations at most. Non-retryable
errors propagate after the single invocation that raised them.
"""

import asyncio
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

import structlog

from walksafe.exceptions import (
    ProviderError,
    ProviderErrorCode,
    RetryExhaustedError,
    WalkSafeError,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]
Jitter = Callable[[float, float], float]


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 8000

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.base_delay_ms < 0 or self.max_delay_ms < 0:
            raise ValueError("delays must be >= 0")

    def delay_ms(self, attempt: int) -> float:
        """Pre-jitter delay after failed attempt `attempt` (1-based)."""
        if attempt < 1:
            raise ValueError("attempt is 1-based")
        return float(min(self.base_delay_ms * (2 ** (attempt - 1)), self.max_delay_ms))

    @property
    def worst_case_ms(self) -> float:
        """Upper bound on total sleep across all retries."""
        return sum(self.delay_ms(n) for n in range(1, self.max_retries + 1))


class RetryExecutor:
    """
    Runs an async operation under a RetryPolicy.

    `sleep` takes seconds; `jitter(low, high)` returns a value in [low, high].
    Both are injectable for deterministic tests.
    """

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        sleep: Sleep = asyncio.sleep,
        jitter: Jitter = random.uniform,
    ):
        self.policy = policy or RetryPolicy()
        self._sleep = sleep
        self._jitter = jitter

    def jittered_delay_ms(self, attempt: int) -> float:
        delay = self.policy.delay_ms(attempt)
        applied = self._jitter(0.5 * delay, delay)
        return min(max(applied, 0.5 * delay), delay)

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        provider: str = "unknown",
        operation_name: str = "operation",
    ) -> T:
        """
        Await `operation()` until it succeeds or the retry budget runs out.

        Raises:
            WalkSafeError with is_retryable False: immediately, unchanged.
            RetryExhaustedError: last failure was a retryable ProviderError.
            ProviderError(UNEXPECTED_ERROR): last failure was an unexpected
                exception (chained as __cause__).
        """
        attempts = self.policy.max_retries + 1
        last_error: ProviderError | None = None

        for attempt in range(1, attempts + 1):
            try:
                return await operation()
            except WalkSafeError as exc:
                if not exc.is_retryable or not isinstance(exc, ProviderError):
                    raise
                last_error = exc
            except Exception as exc:
                wrapped = ProviderError(
                    f"Unexpected error during {operation_name}: {exc}",
                    provider,
                    ProviderErrorCode.UNEXPECTED_ERROR,
                    is_retryable=True,
                )
                wrapped.__cause__ = exc
                last_error = wrapped

            if attempt == attempts:
                break

            delay_ms = self.jittered_delay_ms(attempt)
            logger.warning(
                "retry_attempt",
                provider=provider,
                operation=operation_name,
                attempt=attempt,
                max_retries=self.policy.max_retries,
                delay_ms=round(delay_ms, 1),
                error=last_error.message,
                code=str(last_error.code),
            )
            await self._sleep(delay_ms / 1000.0)

        logger.error(
            "retry_exhausted",
            provider=provider,
            operation=operation_name,
            attempts=attempts,
            code=str(last_error.code),
            error=last_error.message,
        )
        if last_error.code == ProviderErrorCode.UNEXPECTED_ERROR:
            raise last_error
        raise RetryExhaustedError(provider, operation_name, attempts, last_error) from last_error
