"""
MTF Sentinel Trader - Retry with exponential backoff.
One combinator shared by the scanner, the exit monitor and the broker client.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Tuple, Type, Union

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

logger = logging.getLogger(__name__)

ExceptionTypes = Union[Type[BaseException], Tuple[Type[BaseException], ...]]


def _log_before_sleep(description: str) -> Callable[[RetryCallState], None]:
    def _log(retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0
        logger.warning(
            f"{description} failed (attempt {retry_state.attempt_number}): {error} "
            f"- retrying in {delay:.1f}s"
        )
    return _log


async def retry_async(
    func: Callable[..., Awaitable[Any]],
    *args,
    attempts: int = 5,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    retry_on: ExceptionTypes = Exception,
    retry_if: Optional[Callable[[BaseException], bool]] = None,
    description: str = "operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    **kwargs,
) -> Any:
    """
    Await func(*args, **kwargs), retrying failed attempts with exponential backoff.

    Delays grow as base_delay * 2 ** (attempt - 1), capped at max_delay.
    An exception is retried when it is an instance of retry_on, or, when
    retry_if is given, when retry_if(exception) is true. Anything else
    propagates immediately. When every attempt fails the last exception is
    re-raised unchanged.
    """
    condition = retry_if_exception(retry_if) if retry_if else retry_if_exception_type(retry_on)
    retrying = AsyncRetrying(
        reraise=True,
        stop=stop_after_attempt(max(1, attempts)),
        wait=wait_exponential(multiplier=base_delay, max=max_delay),
        retry=condition,
        before_sleep=_log_before_sleep(description),
        sleep=sleep,
    )
    async for attempt in retrying:
        with attempt:
            return await func(*args, **kwargs)
