"""
Retry utilities with fixed or exponential delay.

Provides a functional helper for retrying failed async
operations, mainly generation calls made from pipeline tasks.
"""

import asyncio
import random
from typing import Callable, Any, Optional, Tuple, Type
from dataclasses import dataclass

from plotline.core.logging_config import get_logger

logger = get_logger("core.retry")


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_retries: int = 3
    base_delay: float = 1.0  # Base delay in seconds
    max_delay: float = 60.0  # Maximum delay in seconds
    exponential_base: float = 2.0  # 1.0 gives a fixed delay
    jitter: bool = True
    jitter_range: Tuple[float, float] = (0.5, 1.5)
    retryable_exceptions: Tuple[Type[Exception], ...] = (
        Exception,
    )


DEFAULT_RETRY_CONFIG = RetryConfig()


def calculate_delay(
    attempt: int,
    config: RetryConfig
) -> float:
    """
    Calculate delay before next retry attempt.

    Args:
        attempt: Current attempt number (0-indexed)
        config: Retry configuration

    Returns:
        Delay in seconds before next attempt
    """
    delay = config.base_delay * (config.exponential_base ** attempt)
    delay = min(delay, config.max_delay)

    if config.jitter:
        delay *= random.uniform(*config.jitter_range)

    return delay


def fixed_delay_config(delay: float, max_retries: int = 1) -> RetryConfig:
    """Retry config with a constant delay and no jitter."""
    return RetryConfig(
        max_retries=max_retries,
        base_delay=delay,
        max_delay=max(delay, 0.0),
        exponential_base=1.0,
        jitter=False
    )


async def retry_async_call(
    func: Callable[..., Any],
    *args: Any,
    config: Optional[RetryConfig] = None,
    on_retry: Optional[Callable[[Exception, int], None]] = None,
    **kwargs: Any
) -> Any:
    """
    Retry an async function call.

    Args:
        func: Async function to call
        *args: Positional arguments for the function
        config: Retry configuration (uses defaults if not provided)
        on_retry: Optional callback called on each retry
        **kwargs: Keyword arguments for the function

    Returns:
        Result of the function call

    Example:
        result = await retry_async_call(
            llm.generate,
            prompt,
            config=fixed_delay_config(2.0)
        )
    """
    config = config or DEFAULT_RETRY_CONFIG
    last_exception: Optional[Exception] = None

    for attempt in range(config.max_retries + 1):
        try:
            return await func(*args, **kwargs)
        except config.retryable_exceptions as e:
            last_exception = e

            if attempt < config.max_retries:
                delay = calculate_delay(attempt, config)
                logger.warning(
                    f"Attempt {attempt + 1}/{config.max_retries + 1} failed: {e}. "
                    f"Retrying in {delay:.2f}s..."
                )

                if on_retry:
                    on_retry(e, attempt)

                await asyncio.sleep(delay)
            else:
                logger.error(
                    f"All {config.max_retries + 1} attempts failed. "
                    f"Last error: {e}"
                )

    raise last_exception
