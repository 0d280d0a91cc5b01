"""
Resilience utilities for CaseLink.

Provides:
- Retry logic for an unreachable store
- Per-lookup timeouts that degrade to partial results
- Error types and user-friendly messages
"""
import asyncio
import functools
import logging
from typing import Awaitable, Callable, TypeVar, Optional, Any
from dataclasses import dataclass

from config.settings import settings

logger = logging.getLogger(__name__)

T = TypeVar('T')


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_retries: int = 3
    base_delay: float = 1.0  # seconds
    max_delay: float = 30.0  # seconds
    exponential_base: float = 2.0
    retryable_exceptions: tuple = (Exception,)


DEFAULT_RETRY_CONFIG = RetryConfig()


class StoreUnavailableError(Exception):
    """Raised when the case store cannot be reached at all."""

    def __init__(self, service: str, message: str, partial_result: Any = None):
        self.service = service
        self.message = message
        self.partial_result = partial_result
        super().__init__(f"{service}: {message}")


class SeedNotFoundError(LookupError):
    """Raised when the record a profile is built from does not exist."""

    def __init__(self, role: str, appearance_id: int):
        self.role = role
        self.appearance_id = appearance_id
        super().__init__(f"No {role} appearance with id {appearance_id}")


@dataclass(frozen=True)
class LookupFailure:
    """One sub-lookup that failed or timed out; its share of the result is missing."""
    operation: str  # "find_by_key", "case_summaries", "bail_grants", ...
    detail: str  # which key / role / batch
    reason: str  # "timeout" or the error text

    def to_dict(self) -> dict:
        return {"operation": self.operation, "detail": self.detail, "reason": self.reason}


def retry_async(
    config: Optional[RetryConfig] = None,
    on_retry: Optional[Callable[[int, Exception], None]] = None,
):
    """
    Decorator for async functions with retry logic.

    Args:
        config: Retry configuration
        on_retry: Optional callback on each retry (retry_num, exception)
    """
    cfg = config or DEFAULT_RETRY_CONFIG

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> T:
            last_exception = None

            for attempt in range(cfg.max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except cfg.retryable_exceptions as e:
                    last_exception = e

                    if attempt < cfg.max_retries:
                        delay = min(
                            cfg.base_delay * (cfg.exponential_base ** attempt),
                            cfg.max_delay
                        )
                        logger.warning(
                            f"Retry {attempt + 1}/{cfg.max_retries} for {func.__name__}: {e}. "
                            f"Waiting {delay:.1f}s..."
                        )

                        if on_retry:
                            on_retry(attempt + 1, e)

                        await asyncio.sleep(delay)
                    else:
                        logger.error(
                            f"All {cfg.max_retries} retries exhausted for {func.__name__}: {e}"
                        )

            raise last_exception

        return wrapper
    return decorator


async def call_store(
    factory: Callable[[], Awaitable[T]],
    config: Optional[RetryConfig] = None,
    timeout: Optional[float] = None,
) -> T:
    """
    Run one store call with retries for StoreUnavailableError and a timeout.

    The timeout bounds each attempt. asyncio.TimeoutError is not retried:
    a slow lookup is reported as partial by the caller, not repeated.

    Args:
        factory: Zero-argument callable returning a fresh awaitable per attempt
        config: Retry configuration (default STORE_RETRY)
        timeout: Seconds allowed per attempt, None for no limit
    """
    cfg = config or STORE_RETRY

    @retry_async(config=cfg)
    async def _attempt():
        if timeout is None:
            return await factory()
        return await asyncio.wait_for(factory(), timeout=timeout)

    return await _attempt()


def describe_failure(error: BaseException) -> str:
    """Short reason string for a LookupFailure."""
    if isinstance(error, asyncio.TimeoutError):
        return "timeout"
    return f"{type(error).__name__}: {error}"


def user_friendly_error(error: Exception) -> str:
    """
    Convert exception to user-friendly error message.

    Args:
        error: The exception to convert

    Returns:
        User-friendly error message
    """
    if isinstance(error, StoreUnavailableError):
        return f"{error.service} is currently unavailable. {error.message}"

    if isinstance(error, SeedNotFoundError):
        return "The requested record was not found."

    error_type = type(error).__name__
    error_str = str(error).lower()

    if isinstance(error, asyncio.TimeoutError) or "timeout" in error_str or "timed out" in error_str:
        return "The request timed out. Please try again."

    if "locked" in error_str or "unable to open" in error_str:
        return "The case records database is busy or unreachable. Please try again."

    return f"An error occurred: {error_type}. Please try again."


# Store retries only cover total unavailability; everything else degrades.
STORE_RETRY = RetryConfig(
    max_retries=settings.store_retry_max,
    base_delay=settings.store_retry_base_delay,
    max_delay=settings.store_retry_max_delay,
    retryable_exceptions=(StoreUnavailableError,),
)
