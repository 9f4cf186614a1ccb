"""Exceptions and error-handling helpers

- AppError hierarchy carrying an error code and context
- engine error taxonomy (recurrence, oracle, store, event span)
- retry decorator for transient boundary failures
"""

import asyncio
import functools
import logging
import time
from typing import Any, Callable, Dict, Optional, Type, TypeVar, Union


logger = logging.getLogger(__name__)


# ============================================================================
# Base exceptions
# ============================================================================

class AppError(Exception):
    """Base application error"""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or "UNKNOWN_ERROR"
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            return f"[{self.error_code}] {self.message} - Context: {self.context}"
        return f"[{self.error_code}] {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_code": self.error_code,
            "message": self.message,
            "context": self.context,
        }


class ValidationError(AppError):
    """Invalid input"""
    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None,
                 error_code: str = "VALIDATION_ERROR"):
        super().__init__(message, error_code, context)


class DataError(AppError):
    """Storage or data-source failure"""
    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None,
                 error_code: str = "DATA_ERROR"):
        super().__init__(message, error_code, context)


class ConfigError(AppError):
    """Bad configuration"""
    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, "CONFIG_ERROR", context)


class BusinessError(AppError):
    """Business rule violation"""
    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None,
                 error_code: str = "BUSINESS_ERROR"):
        super().__init__(message, error_code, context)


# ============================================================================
# Engine taxonomy
# ============================================================================

class InvalidRecurrenceRule(ValidationError):
    """Recurrence rule text could not be interpreted"""
    def __init__(self, rule: Optional[str], reason: str, event_id: Optional[str] = None):
        super().__init__(
            f"Invalid recurrence rule: {reason}",
            {"rule": rule, "event_id": event_id},
            error_code="INVALID_RECURRENCE_RULE",
        )
        self.rule = rule
        self.reason = reason
        self.event_id = event_id


class InvalidEventSpan(ValidationError):
    """Event rejected at write time (end before start, missing community)"""
    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, context, error_code="INVALID_EVENT_SPAN")


class OracleUnavailable(AppError):
    """Relationship check failed or timed out"""
    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, "ORACLE_UNAVAILABLE", context)


class StoreUnavailable(DataError):
    """Event or session store could not be read or written"""
    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, context, error_code="STORE_UNAVAILABLE")


class EventNotFound(BusinessError):
    def __init__(self, event_id: str):
        super().__init__(
            f"Event {event_id} not found", {"event_id": event_id},
            error_code="EVENT_NOT_FOUND",
        )


class SessionNotFound(BusinessError):
    def __init__(self, interval_id: int):
        super().__init__(
            f"Session interval {interval_id} not found", {"interval_id": interval_id},
            error_code="SESSION_NOT_FOUND",
        )


class PermissionDenied(BusinessError):
    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, context, error_code="PERMISSION_DENIED")


# ============================================================================
# Decorators
# ============================================================================

F = TypeVar("F", bound=Callable[..., Any])


def retry_on_error(
    max_attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 2.0,
    exceptions: Union[Type[Exception], tuple] = Exception,
    on_retry: Optional[Callable[[Exception, int], None]] = None,
    on_failure: Optional[Callable[[Exception], None]] = None
) -> Callable[[F], F]:
    """Retry decorator for sync and async callables

    Usage:
        @retry_on_error(max_attempts=3, delay=0.2, exceptions=SQLAlchemyError)
        async def read_rows():
            ...

    Args:
        max_attempts: total attempts
        delay: initial delay in seconds
        backoff: delay multiplier
        exceptions: exception types that trigger a retry
        on_retry: callback(exception, attempt) before sleeping
        on_failure: callback(exception) after the last attempt
    """
    def _log_attempt(func: Callable, attempt: int, error: Exception, wait: float) -> None:
        logger.warning(
            "%s attempt %d/%d failed: %s, retrying in %.1fs",
            func.__name__, attempt, max_attempts, str(error), wait
        )

    def _log_failure(func: Callable, error: Exception) -> None:
        logger.error(
            "%s still failing after %d attempts: %s",
            func.__name__, max_attempts, str(error)
        )

    def decorator(func: F) -> F:
        if asyncio.iscoroutinefunction(func):
            @functools.wraps(func)
            async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
                current_delay = delay
                for attempt in range(1, max_attempts + 1):
                    try:
                        return await func(*args, **kwargs)
                    except exceptions as e:
                        if attempt == max_attempts:
                            _log_failure(func, e)
                            if on_failure:
                                on_failure(e)
                            raise
                        _log_attempt(func, attempt, e, current_delay)
                        if on_retry:
                            on_retry(e, attempt)
                        await asyncio.sleep(current_delay)
                        current_delay *= backoff

            return async_wrapper  # type: ignore[return-value]

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            current_delay = delay
            for attempt in range(1, max_attempts + 1):
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    if attempt == max_attempts:
                        _log_failure(func, e)
                        if on_failure:
                            on_failure(e)
                        raise
                    _log_attempt(func, attempt, e, current_delay)
                    if on_retry:
                        on_retry(e, attempt)
                    time.sleep(current_delay)
                    current_delay *= backoff

        return wrapper  # type: ignore[return-value]

    return decorator
