"""
Cache Domain Exceptions

Error taxonomy for cache orchestration. Validation errors are raised
before any store access, storage errors are raised by level repositories
and absorbed by services, producer errors propagate from remember().
"""

from typing import Any, Dict, Optional

from fastapi import HTTPException


def _describe_error(details: Dict[str, Any], error: Optional[Exception]) -> Dict[str, Any]:
    if error is not None:
        details["original_error"] = str(error)
        details["original_error_type"] = type(error).__name__
    return details


class CacheException(Exception):
    """Base exception for cache-related errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)


class CacheValidationException(CacheException):
    """Raised for malformed keys, tags or TTLs."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
    ):
        details = {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)

        super().__init__(
            message=message, error_code="CACHE_VALIDATION_ERROR", details=details
        )


class CacheStorageException(CacheException):
    """Raised when a backing store is unreachable, times out or fails."""

    def __init__(
        self,
        message: str,
        level: Optional[str] = None,
        operation: Optional[str] = None,
        key: Optional[str] = None,
        original_error: Optional[Exception] = None,
        error_code: str = "CACHE_STORAGE_ERROR",
    ):
        context = {"level": level, "operation": operation, "key": key}
        details = _describe_error(
            {name: value for name, value in context.items() if value}, original_error
        )

        super().__init__(message=message, error_code=error_code, details=details)
        self.level = level
        self.operation = operation
        if original_error:
            self.__cause__ = original_error


class CacheCircuitOpenException(CacheStorageException):
    """Raised when a store circuit breaker rejects a call."""

    def __init__(self, level: Optional[str] = None):
        super().__init__(
            message=f"Cache store circuit breaker is open (level: {level})",
            level=level,
            error_code="CACHE_CIRCUIT_OPEN",
        )


class CacheProducerException(CacheException):
    """Raised when a remember() or warm() producer fails."""

    def __init__(
        self,
        key: str,
        original_error: Optional[Exception] = None,
        message: Optional[str] = None,
        error_code: str = "CACHE_PRODUCER_ERROR",
    ):
        details = _describe_error({"key": key}, original_error)

        super().__init__(
            message=message or f"Producer failed for cache key: {key}",
            error_code=error_code,
            details=details,
        )
        self.key = key
        self.original_error = original_error
        if original_error:
            self.__cause__ = original_error


class CacheProducerTimeoutException(CacheProducerException):
    """Raised when a producer exceeds its timeout guard."""

    def __init__(self, key: str, timeout_seconds: float):
        super().__init__(
            key=key,
            message=f"Producer for cache key '{key}' timed out after {timeout_seconds}s",
            error_code="CACHE_PRODUCER_TIMEOUT",
        )
        self.details["timeout_seconds"] = timeout_seconds
        self.timeout_seconds = timeout_seconds


class CacheReportableException(CacheException):
    """Raised inside validation and maintenance runs; rendered into reports."""

    def __init__(self, message: str, check: Optional[str] = None):
        details = {"check": check} if check else {}
        super().__init__(
            message=message, error_code="CACHE_REPORTABLE_ERROR", details=details
        )


# HTTP Exceptions for API layer
class CacheHTTPException(HTTPException):
    """HTTP exception wrapper for cache errors."""

    def __init__(self, cache_exception: CacheException, status_code: int = 503):
        self.cache_exception = cache_exception
        super().__init__(
            status_code=status_code,
            detail={
                "error": cache_exception.error_code,
                "message": cache_exception.message,
                "details": cache_exception.details,
            },
        )
