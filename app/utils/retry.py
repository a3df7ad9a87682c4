"""
RETRY UTILITY
=============

Awaits an async operation and, if it raises, retries a few times with
exponential backoff. Every call the agent gateway makes to OpenAI goes through
here, so temporary rate limits or network blips don't immediately fail a chat.

Example:
  thread = await with_retry(lambda: client.beta.threads.create(), max_retries=3, initial_delay=1.0)

Also home to the small error classifiers the rest of the app shares:
  is_rate_limit_error(exc) - HTTP 429 / "rate limit" in the message.
  is_not_found_error(exc)  - HTTP 404 (e.g. a remembered assistant was deleted).
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from config import RETRY_BACKOFF_MULTIPLIER, RETRY_INITIAL_DELAY, RETRY_MAX_ATTEMPTS


logger = logging.getLogger("NIBLET")

# Type variable: with_retry returns whatever the awaited operation returns.
T = TypeVar("T")


def _status_code(exc: Exception) -> Optional[int]:
    status = getattr(exc, "status_code", None)
    if status is None:
        status = getattr(exc, "status", None)
    return status if isinstance(status, int) else None


def is_rate_limit_error(exc: Exception) -> bool:
    """True if the exception is a rate limit (429 / rate limit / quota)."""
    if _status_code(exc) == 429:
        return True
    msg = str(exc).lower()
    return "429" in msg or "rate limit" in msg


def is_not_found_error(exc: Exception) -> bool:
    """True if the exception says the referenced remote object does not exist."""
    return _status_code(exc) == 404


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    max_retries: int = RETRY_MAX_ATTEMPTS,
    initial_delay: float = RETRY_INITIAL_DELAY,
    multiplier: float = RETRY_BACKOFF_MULTIPLIER,
    retry_if: Optional[Callable[[Exception], bool]] = None,
) -> T:
    """
    Await fn(). If it raises, wait initial_delay seconds and try again; the delay
    is multiplied by `multiplier` after each retry (1s, 1.5s, 2.25s, ...).
    After max_retries attempts (including the first), re-raise the last exception.
    If retry_if is given and returns False for an exception, it is re-raised at once.
    """
    last_exception = None
    delay = initial_delay
    attempts = max(1, max_retries)

    for attempt in range(attempts):
        try:
            return await fn()
        except Exception as e:
            last_exception = e
            if attempt == attempts - 1:
                raise
            if retry_if is not None and not retry_if(e):
                raise
            logger.warning(
                "Attempt %s/%s failed (%s). Retrying in %.1fs: %s",
                attempt + 1,
                attempts,
                getattr(fn, "__name__", "call"),
                delay,
                e,
            )
            await asyncio.sleep(delay)
            delay *= multiplier

    raise last_exception
