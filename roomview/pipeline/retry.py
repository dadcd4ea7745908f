"""
Sequential retry for a single external call within a stage budget.
"""

import asyncio
from typing import Awaitable, Callable, Optional, TypeVar

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_exponential

from roomview.core.exceptions import is_retryable, truncate_error
from roomview.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


def _log_retry(max_attempts: int) -> Callable[[RetryCallState], None]:
    def before_sleep(retry_state: RetryCallState):
        logger.warning(
            "retrying_after_error",
            attempt=retry_state.attempt_number,
            max_attempts=max_attempts,
            delay_seconds=retry_state.next_action.sleep,
            error=truncate_error(retry_state.outcome.exception(), 200)
        )
    return before_sleep


async def call_with_retries(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int,
    base_delay: float,
    on_attempt: Optional[Callable[[int], Awaitable[None]]] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
) -> T:
    """
    Run operation up to max_attempts times with exponential backoff
    (base_delay, 2 * base_delay, ...).

    Only retryable errors are retried; anything else, or the last
    attempt's error, propagates unchanged.
    """
    retrying = AsyncRetrying(
        sleep=sleep,
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=base_delay),
        retry=retry_if_exception(is_retryable),
        before_sleep=_log_retry(max_attempts),
        reraise=True,
    )
    async for attempt in retrying:
        if on_attempt is not None:
            await on_attempt(attempt.retry_state.attempt_number)
        with attempt:
            return await operation()
