"""
Resilience patterns for remote calls and side effects

Two kinds of operations are distinguished:
- critical operations, whose failure must reach the caller
- best-effort operations (remote mirroring, audit writes), whose failure is
  captured and reported but never propagated
"""

import asyncio
import functools
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Optional, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def with_retry(
    max_attempts: int = 3,
    delay: float = 1.0,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
):
    """
    Decorator for retrying failed operations

    Args:
        max_attempts: Maximum number of attempts (1 disables retrying)
        delay: Base delay between retries in seconds, doubled per attempt
        retry_on: Exception types that trigger a retry; anything else is raised at once
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> Any:
            for attempt in range(max_attempts):
                try:
                    return await func(*args, **kwargs)
                except retry_on as e:
                    if attempt >= max_attempts - 1:
                        raise
                    logger.debug(
                        f"{func.__name__} failed (attempt {attempt + 1}/{max_attempts}): {e}"
                    )
                    await asyncio.sleep(delay * (2 ** attempt))

        return wrapper
    return decorator


@dataclass
class BestEffortResult(Generic[T]):
    """Outcome of an operation whose failure must not affect the caller."""
    name: str
    value: Optional[T] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


async def run_best_effort(name: str, operation: Awaitable[T]) -> BestEffortResult[T]:
    """
    Await a best-effort operation, capturing any failure.

    Cancellation still propagates; every other exception is logged and
    returned inside the result.
    """
    try:
        value = await operation
        return BestEffortResult(name=name, value=value)
    except asyncio.CancelledError:
        raise
    except Exception as e:
        logger.warning(f"Best-effort operation '{name}' failed: {e}")
        return BestEffortResult(name=name, error=e)


async def run_critical(name: str, operation: Awaitable[T]) -> T:
    """Await a critical operation; failures are logged and re-raised."""
    try:
        return await operation
    except asyncio.CancelledError:
        raise
    except Exception as e:
        logger.error(f"Critical operation '{name}' failed: {e}")
        raise
