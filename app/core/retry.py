"""Bounded retry with exponential backoff for outbound provider calls."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from app.config import settings
from app.core.exceptions import ExternalProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def retry_operation(
    operation: Callable[[], Awaitable[T]],
    *,
    provider: str,
    name: str,
    max_attempts: int | None = None,
    initial_delay: float | None = None,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
) -> T:
    """Run ``operation`` until it succeeds or attempts run out.

    The delay doubles after each failure. Exhaustion is surfaced as
    ``ExternalProviderError`` carrying the last error message.
    """
    attempts = max_attempts or settings.provider_call_max_attempts
    delay = settings.provider_call_initial_delay_seconds if initial_delay is None else initial_delay

    last_error: BaseException | None = None
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except ExternalProviderError:
            raise
        except retry_on as e:
            last_error = e
            if attempt == attempts:
                break
            logger.warning(
                f"{provider} call {name} failed (attempt {attempt}/{attempts}): {e}; "
                f"retrying in {delay:.2f}s"
            )
            await asyncio.sleep(delay)
            delay *= 2

    logger.error(f"{provider} call {name} failed after {attempts} attempts: {last_error}")
    raise ExternalProviderError(provider, str(last_error))
