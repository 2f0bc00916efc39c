"""Deadline and bounded retry for collaborator calls."""

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from foodgraph.errors import UpstreamTimeout

logger = logging.getLogger(__name__)

T = TypeVar("T")

TIMEOUT_ERRORS = (asyncio.TimeoutError, httpx.TimeoutException)

MAX_BACKOFF_SECONDS = 30.0


def _log_timeout(operation: str, max_attempts: int) -> Callable[[RetryCallState], None]:
    def log(retry_state: RetryCallState) -> None:
        logger.warning("%s timed out (attempt %d/%d)", operation, retry_state.attempt_number, max_attempts)

    return log


async def call_with_timeout(
    operation: str,
    call: Callable[[], Awaitable[T]],
    timeout: float,
    max_attempts: int = 3,
    backoff: float = 0.5,
    jitter: float = 0.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Await ``call()`` under ``timeout`` seconds, retrying timeouts with backoff.

    Waits ``backoff * 2**(attempt - 1)`` seconds (plus up to ``jitter``)
    between attempts, capped at ``MAX_BACKOFF_SECONDS``. Errors other than
    timeouts propagate immediately.

    Raises:
        UpstreamTimeout: If every attempt timed out.
    """
    retrying = AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential_jitter(initial=backoff, max=MAX_BACKOFF_SECONDS, jitter=jitter),
        retry=retry_if_exception_type(TIMEOUT_ERRORS),
        before_sleep=_log_timeout(operation, max_attempts),
        sleep=sleep,
    )
    try:
        async for attempt in retrying:
            with attempt:
                return await asyncio.wait_for(call(), timeout)
    except RetryError as exc:
        logger.warning("%s timed out on all %d attempts", operation, max_attempts)
        raise UpstreamTimeout(operation, max_attempts) from exc.last_attempt.exception()
