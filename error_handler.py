"""
Gateway Error Handling
======================
Classified errors for device gateway calls plus retry with exponential
backoff for the transient ones.

Taxonomy:
- AuthError            - bad/missing credentials (permanent)
- DeviceNotFoundError  - unknown device or scene (permanent)
- RateLimitError       - API quota exhausted (transient)
- GatewayTimeoutError  - request timed out (transient)
- ServerError          - 5xx or vendor-side failure (transient)
"""
import asyncio
import functools
import logging
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger("error_handler")


class GatewayError(Exception):
    """Base class for all device gateway failures."""

    kind = "gateway"

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class AuthError(GatewayError):
    kind = "auth"


class RateLimitError(GatewayError):
    kind = "rate_limit"


class DeviceNotFoundError(GatewayError):
    kind = "not_found"


class GatewayTimeoutError(GatewayError):
    kind = "timeout"


class ServerError(GatewayError):
    kind = "server"


class RetryExhausted(GatewayError):
    """Raised when max retries exceeded."""
    kind = "retry_exhausted"


def classify_http_status(status: int, message: str = "") -> Optional[GatewayError]:
    """Map an HTTP status code to a GatewayError, or None for success."""
    if 200 <= status < 300:
        return None
    text = message or f"HTTP {status}"
    if status in (401, 403):
        return AuthError(text, status)
    if status == 404:
        return DeviceNotFoundError(text, status)
    if status == 429:
        return RateLimitError(text, status)
    if status >= 500:
        return ServerError(text, status)
    return GatewayError(text, status)


class ErrorHandler:
    """
    Centralised error handling for gateway operations.

    Features:
    - Automatic retries with exponential backoff
    - Error classification (transient vs permanent)
    - Statistics tracking
    """

    TRANSIENT_ERRORS = (RateLimitError, GatewayTimeoutError, ServerError)
    PERMANENT_ERRORS = (AuthError, DeviceNotFoundError)

    def __init__(self, sleep: Callable[[float], Any] = asyncio.sleep):
        self._sleep = sleep
        self.stats = {
            'total_attempts': 0,
            'total_retries': 0,
            'total_successes': 0,
            'total_failures': 0,
            'errors_by_type': {},
        }

    def is_transient(self, error: Exception) -> bool:
        """
        Determine if an error is transient (should be retried).

        Args:
            error: The exception

        Returns:
            True if error is transient
        """
        if isinstance(error, self.PERMANENT_ERRORS):
            return False
        if isinstance(error, self.TRANSIENT_ERRORS):
            return True
        if isinstance(error, asyncio.TimeoutError):
            return True
        # Default to non-transient to avoid infinite retries
        return False

    def record_error(self, error: Exception):
        """Record error in statistics."""
        error_type = getattr(error, "kind", type(error).__name__)
        self.stats['errors_by_type'][error_type] = \
            self.stats['errors_by_type'].get(error_type, 0) + 1

    async def retry_operation(
            self,
            operation: Callable,
            *args,
            max_retries: int = 2,
            backoff_base: float = 1.0,
            backoff_max: float = 30.0,
            context: Optional[str] = None,
            **kwargs
    ) -> Any:
        """
        Execute operation with automatic retries.

        Args:
            operation: The async function to execute
            *args: Positional arguments for operation
            max_retries: Maximum number of retry attempts
            backoff_base: Base delay for exponential backoff (seconds)
            backoff_max: Maximum backoff delay (seconds)
            context: Optional context string for logging
            **kwargs: Keyword arguments for operation

        Returns:
            Result from operation

        Raises:
            RetryExhausted: If max retries exceeded
            GatewayError: If error is permanent (non-retryable)
        """
        self.stats['total_attempts'] += 1
        suffix = f" ({context})" if context else ""

        for attempt in range(max_retries + 1):
            if attempt > 0:
                backoff = min(backoff_base * (2 ** (attempt - 1)), backoff_max)
                logger.debug(f"Retry #{attempt} after {backoff:.1f}s{suffix}")
                await self._sleep(backoff)
                self.stats['total_retries'] += 1

            try:
                result = await operation(*args, **kwargs)
            except Exception as e:
                self.record_error(e)
                logger.warning(f"Attempt {attempt + 1} failed: {e}{suffix}")

                if not self.is_transient(e):
                    self.stats['total_failures'] += 1
                    raise

                if attempt >= max_retries:
                    logger.error(f"Max retries ({max_retries}) exceeded{suffix}")
                    self.stats['total_failures'] += 1
                    raise RetryExhausted(
                        f"Operation failed after {max_retries} retries: {e}"
                    ) from e
                continue

            if attempt > 0:
                logger.info(f"Operation succeeded after {attempt} retries{suffix}")
            self.stats['total_successes'] += 1
            return result

    def get_stats(self) -> Dict[str, Any]:
        """Get error handling statistics."""
        total = self.stats['total_attempts']
        if total > 0:
            success_rate = (self.stats['total_successes'] / total) * 100
            retry_rate = (self.stats['total_retries'] / total) * 100
        else:
            success_rate = 0
            retry_rate = 0

        return {
            **self.stats,
            'success_rate': success_rate,
            'retry_rate': retry_rate,
        }


def with_retries(max_retries: int = 2, backoff_base: float = 1.0):
    """
    Decorator to add automatic retries to gateway coroutine methods.

    The decorated method's instance must expose an ``error_handler``
    attribute (an ErrorHandler).

    Usage:
        @with_retries(max_retries=2)
        async def get_status(self, device_id):
            ...
    """

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def wrapper(self, *args, **kwargs):
            context = func.__name__
            if args:
                context += f"({args[0]})"
            return await self.error_handler.retry_operation(
                func,
                self,
                *args,
                max_retries=max_retries,
                backoff_base=backoff_base,
                context=context,
                **kwargs
            )

        return wrapper

    return decorator
