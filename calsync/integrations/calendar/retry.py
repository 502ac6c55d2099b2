# calsync/integrations/calendar/retry.py
import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Optional

from calsync.core.config import settings
from calsync.integrations.calendar.errors import TransientProviderError
from calsync.utils.timeout import with_timeout

logger = logging.getLogger(__name__)


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """Exponential delay for ``attempt`` (0-based) with up to 30% jitter."""
    delay = min(base * (2**attempt), cap)
    return delay + random.uniform(0, 0.3 * delay)


async def call_with_retry(
    operation: Callable[[], Awaitable[Any]],
    description: str,
    max_retries: Optional[int] = None,
    timeout: Optional[float] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> Any:
    """
    Run a provider call with a per-attempt timeout and bounded retries.

    Only ``TransientProviderError`` (429, 5xx, timeouts) is retried. A
    ``Retry-After`` hint from the provider replaces the computed delay.
    """
    retries = settings.PROVIDER_MAX_RETRIES if max_retries is None else max_retries
    limit = settings.PROVIDER_TIMEOUT if timeout is None else timeout

    attempt = 0
    while True:
        try:
            return await with_timeout(
                operation(),
                limit,
                error_message=f"{description} timed out",
                exception_class=TransientProviderError,
            )
        except TransientProviderError as e:
            if attempt >= retries:
                logger.error(
                    f"{description} failed after {attempt + 1} attempts: {e.message}"
                )
                raise
            delay = e.retry_after or backoff_delay(
                attempt, settings.PROVIDER_BACKOFF_BASE, settings.PROVIDER_BACKOFF_MAX
            )
            logger.warning(
                f"{description} failed ({e.message}); retry {attempt + 1}/{retries} "
                f"in {delay:.1f}s"
            )
            await sleep(delay)
            attempt += 1
