"""
Retry Helpers
=============

Exponential backoff with jitter for provider calls.

Only exceptions listed in ``retryable_exceptions`` are retried; anything
else propagates on the first failure.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from entitlement_engine.config import settings
from entitlement_engine.core.errors import TransientProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    max_retries: int = 3
    base_delay: float = 0.5
    max_delay: float = 30.0
    exponential_base: float = 2.0
    jitter_factor: float = 0.3  # 0-30% jitter
    retryable_exceptions: Tuple[Type[Exception], ...] = (TransientProviderError,)


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Calculate delay with exponential backoff and jitter."""
    delay = min(config.base_delay * (config.exponential_base**attempt), config.max_delay)
    jitter = random.uniform(0, delay * config.jitter_factor)
    return delay + jitter


async def retry_async(
    func: Callable[..., Awaitable[T]],
    *args,
    config: Optional[RetryConfig] = None,
    **kwargs,
) -> T:
    """
    Execute an async function with retry logic.

    Raises:
        The last exception once all retries are exhausted.
    """
    config = config or RetryConfig()
    name = getattr(func, "__name__", repr(func))

    for attempt in range(config.max_retries + 1):
        try:
            return await func(*args, **kwargs)
        except config.retryable_exceptions as e:
            if attempt == config.max_retries:
                logger.error(
                    "All %d attempts failed for %s: %s: %s",
                    config.max_retries + 1,
                    name,
                    type(e).__name__,
                    e,
                )
                raise

            delay = calculate_delay(attempt, config)
            logger.warning(
                "Attempt %d/%d failed for %s, retrying in %.2fs: %s",
                attempt + 1,
                config.max_retries + 1,
                name,
                delay,
                e,
            )
            await asyncio.sleep(delay)

    raise RuntimeError("Unexpected retry state")


def provider_retry_config() -> RetryConfig:
    """Retry policy for provider status queries."""
    return RetryConfig(
        max_retries=settings.PROVIDER_MAX_RETRIES,
        base_delay=settings.PROVIDER_BACKOFF_BASE_SECONDS,
    )
