"""Retry policy shared by the chat and embedding clients.

Only transient failures are retried: connection errors, timeouts and
HTTP 5xx responses. Every 4xx response (429 included) fails on the first
attempt. Backoff is exponential, ``base * 2 ** (attempt - 1)`` capped at
``cap`` seconds.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

import anthropic
import openai
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_exponential

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_BACKOFF_BASE = 1.0
DEFAULT_BACKOFF_CAP = 10.0

TRANSIENT_EXCEPTIONS = (
    openai.APIConnectionError,  # APITimeoutError is a subclass
    anthropic.APIConnectionError,
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
)


def status_code_of(exc: BaseException) -> Optional[int]:
    """HTTP status carried by an SDK error, if any."""
    status = getattr(exc, "status_code", None)
    if isinstance(status, int):
        return status
    response = getattr(exc, "response", None)
    status = getattr(response, "status_code", None)
    return status if isinstance(status, int) else None


def is_transient_error(exc: BaseException) -> bool:
    if isinstance(exc, TRANSIENT_EXCEPTIONS):
        return True
    status = status_code_of(exc)
    return status is not None and status >= 500


def _log_before_sleep(label: str) -> Callable[[RetryCallState], None]:
    def before_sleep(retry_state: RetryCallState) -> None:
        logger.warning(
            "%s retry %d after error: %s",
            label,
            retry_state.attempt_number,
            retry_state.outcome.exception() if retry_state.outcome else "unknown",
        )

    return before_sleep


async def call_with_retry(
    fn: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    label: str = "API",
    backoff_base: float = DEFAULT_BACKOFF_BASE,
    backoff_cap: float = DEFAULT_BACKOFF_CAP,
) -> T:
    """Await ``fn()`` under the transient-failure retry policy.

    The last exception is re-raised unchanged once attempts are exhausted
    or as soon as a non-transient error occurs.
    """
    retrying = AsyncRetrying(
        stop=stop_after_attempt(max(1, max_attempts)),
        wait=wait_exponential(multiplier=backoff_base, max=backoff_cap),
        retry=retry_if_exception(is_transient_error),
        before_sleep=_log_before_sleep(label),
        reraise=True,
    )
    return await retrying(fn)
