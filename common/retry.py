"""
Retry utilities for handling transient failures
"""
import asyncio
import inspect
import random
from typing import Callable, Any, Optional, List
import logging

import httpx

logger = logging.getLogger(__name__)

class RetryConfig:
    """Configuration for retry behavior"""
    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        retryable_exceptions: Optional[List[type]] = None
    ):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retryable_exceptions = retryable_exceptions or [Exception]

def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Calculate delay for exponential backoff with jitter"""
    delay = config.base_delay * (config.exponential_base ** (attempt - 1))
    delay = min(delay, config.max_delay)

    if config.jitter:
        # Add jitter to avoid thundering herd
        delay *= (0.5 + random.random() * 0.5)

    return delay

async def retry_async(func: Callable, config: RetryConfig, *args, **kwargs) -> Any:
    """Async retry wrapper with exponential backoff"""
    last_exception = None

    for attempt in range(1, config.max_attempts + 1):
        try:
            if inspect.iscoroutinefunction(func):
                return await func(*args, **kwargs)
            else:
                return func(*args, **kwargs)
        except Exception as e:
            last_exception = e

            if not any(isinstance(e, exc_type) for exc_type in config.retryable_exceptions):
                raise e

            if attempt == config.max_attempts:
                logger.error(f"Max retry attempts ({config.max_attempts}) reached for {func.__name__}")
                break

            delay = calculate_delay(attempt, config)
            logger.warning(f"Attempt {attempt}/{config.max_attempts} failed for {func.__name__}: {e!r}. Retrying in {delay:.2f}s")
            await asyncio.sleep(delay)

    # All attempts failed
    raise last_exception

# Idempotent gateway calls (token, status query, cancellation) retry any transport failure
GATEWAY_RETRY_CONFIG = RetryConfig(
    max_attempts=3,
    base_delay=0.5,
    max_delay=5.0,
    retryable_exceptions=[httpx.TransportError]
)

# A payout submission is only repeated when the request never left this process
GATEWAY_SUBMIT_RETRY_CONFIG = RetryConfig(
    max_attempts=2,
    base_delay=0.5,
    max_delay=2.0,
    retryable_exceptions=[httpx.ConnectError, httpx.ConnectTimeout]
)

# Optimistic-update conflicts on the ledger are retried once against fresh state
LEDGER_CONFLICT_ATTEMPTS = 2
