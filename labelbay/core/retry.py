"""
Bounded retry with exponential backoff and jitter

Used by the ledger for transient storage errors and by the purchase
orchestrator for the compensating refund. Never used inside one rate
aggregation call.
"""
import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_retries: int = 3
    base_delay: float = 0.1           # Base delay in seconds
    max_delay: float = 5.0            # Maximum delay cap
    exponential_base: float = 2.0     # Exponential backoff multiplier
    jitter_factor: float = 0.5        # Random jitter (0-1)


def calculate_backoff(attempt: int, config: RetryConfig) -> float:
    """Exponential backoff with jitter, capped at max_delay."""
    delay = config.base_delay * (config.exponential_base ** attempt)
    jitter = delay * config.jitter_factor * (2 * random.random() - 1)
    delay = delay + jitter
    return max(0.0, min(delay, config.max_delay))


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    config: RetryConfig,
    retry_on: Tuple[Type[BaseException], ...],
    description: str = "operation",
) -> T:
    """
    Run operation, retrying on the given exception types.

    The last exception is re-raised once max_retries is exhausted.
    Exceptions outside retry_on propagate immediately.
    """
    attempt = 0
    while True:
        try:
            return await operation()
        except retry_on as e:
            if attempt >= config.max_retries:
                logger.error(f"{description} failed after {attempt + 1} attempts: {e}")
                raise
            delay = calculate_backoff(attempt, config)
            logger.warning(
                f"{description} failed (attempt {attempt + 1}/{config.max_retries + 1}): {e}. "
                f"Retrying in {delay:.2f}s"
            )
            attempt += 1
            await asyncio.sleep(delay)
