"""Retry with exponential backoff for embedding provider calls."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from hybrid_retrieval.core.config import EmbeddingConfig
from hybrid_retrieval.embeddings.exceptions import EmbeddingTransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Retry behaviour for a single provider call.

    Attributes:
        max_attempts: Total attempts including the first one
        base_delay: Delay after the first failed attempt, in seconds
        max_delay: Upper bound for any single delay
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0

    @classmethod
    def from_config(cls, config: EmbeddingConfig) -> RetryPolicy:
        return cls(
            max_attempts=config.max_retries,
            base_delay=config.retry_base_delay,
            max_delay=config.retry_max_delay,
        )

    def retrying(
        self,
        *,
        operation_name: str = "embedding",
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> AsyncRetrying:
        """Build the tenacity controller for this policy."""
        attempts = max(1, self.max_attempts)

        def _log_retry(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception() if retry_state.outcome else None
            delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
            status_code = getattr(error, "status_code", None)
            logger.warning(
                "%s failed (attempt %d/%d, status=%s), retrying in %.2fs: %s",
                operation_name,
                retry_state.attempt_number,
                attempts,
                status_code,
                delay,
                error,
                extra={"attempt": retry_state.attempt_number, "status_code": status_code},
            )

        return AsyncRetrying(
            retry=retry_if_exception_type(EmbeddingTransientError),
            stop=stop_after_attempt(attempts),
            wait=wait_exponential(multiplier=self.base_delay, max=self.max_delay),
            reraise=True,
            before_sleep=_log_retry,
            sleep=sleep,
        )


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    operation_name: str = "embedding",
    sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
) -> T:
    """Run ``operation`` until it succeeds or the policy is exhausted.

    Only EmbeddingTransientError is retried; any other exception propagates
    from the attempt that raised it. Cancellation interrupts the backoff
    sleep and propagates.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt
        policy: Attempt count and delays
        operation_name: Label used in log messages
        sleep: Awaitable sleep, injectable for tests

    Returns:
        The operation's result

    Raises:
        EmbeddingTransientError: The last transient error once attempts run out
    """
    attempt_number = 0
    try:
        async for attempt in policy.retrying(operation_name=operation_name, sleep=sleep):
            attempt_number = attempt.retry_state.attempt_number
            with attempt:
                result = await operation()
    except EmbeddingTransientError as e:
        logger.error("%s failed after %d attempts: %s", operation_name, attempt_number, e)
        raise

    if attempt_number > 1:
        logger.info("%s succeeded after %d attempts", operation_name, attempt_number)
    return result
