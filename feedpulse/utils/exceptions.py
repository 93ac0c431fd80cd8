"""
FeedPulse Custom Exceptions
===========================

Exception hierarchy for the ingestion daemon. Every error carries an error
code, a context dictionary and a recoverable flag so the scheduler can decide
between backoff and normal cadence without inspecting messages.
"""

from typing import Optional, Dict, Any
from enum import Enum


class ErrorCode(str, Enum):
    """Error codes for categorizing exceptions."""

    # Configuration errors (C001-C099)
    CONFIG_INVALID = "C001"
    CONFIG_MISSING = "C002"

    # Database errors (D001-D099)
    DATABASE_CONNECTION = "D001"
    DATABASE_SCHEMA = "D002"
    DATABASE_CONSTRAINT = "D003"
    DATABASE_TRANSACTION = "D004"
    DATABASE_ERROR = "D006"

    # Feed fetch errors (F001-F099)
    FEED_INVALID_URL = "F001"
    FEED_FETCH_TIMEOUT = "F002"
    FEED_NETWORK_ERROR = "F004"
    FEED_TLS_ERROR = "F005"
    FEED_HTTP_CLIENT_ERROR = "F006"
    FEED_HTTP_RETRYABLE = "F007"
    FEED_TOO_MANY_REDIRECTS = "F008"

    # Feed document errors (P001-P099)
    FEED_NOT_WELL_FORMED = "P001"
    FEED_WRONG_ROOT = "P002"
    FEED_MISSING_FIELD = "P003"
    CONTENT_TOO_LARGE = "P004"

    # Delivery errors (L001-L099)
    DELIVERY_FAILED = "L001"
    DELIVERY_FORBIDDEN = "L002"
    DELIVERY_REJECTED = "L003"
    DELIVERY_TIMEOUT = "L004"

    # Validation errors (V001-V099)
    VALIDATION_REQUIRED_FIELD = "V001"
    VALIDATION_INVALID_FORMAT = "V002"

    # Resource management errors (R001-R099)
    DUPLICATE_RESOURCE = "R001"
    RESOURCE_NOT_FOUND = "R002"

    # System errors (S001-S099)
    SYSTEM_UNEXPECTED_ERROR = "S001"
    SYSTEM_PERMISSION_DENIED = "S002"
    SYSTEM_MEMORY_ERROR = "S004"


class FeedPulseError(Exception):
    """Base exception for all FeedPulse errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[ErrorCode] = None,
        context: Optional[Dict[str, Any]] = None,
        user_message: Optional[str] = None,
        recoverable: bool = False,
    ):
        """Initialize FeedPulse error.

        Args:
            message: Technical error message for logging
            error_code: Categorized error code
            context: Additional context information
            user_message: Operator-facing error message
            recoverable: Whether retrying later may succeed
        """
        super().__init__(message)
        self.error_code = error_code
        self.context = context or {}
        self.user_message = user_message or message
        self.recoverable = recoverable

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "error_code": self.error_code.value if self.error_code else None,
            "error_message": str(self),
            "user_message": self.user_message,
            "context": self.context,
            "recoverable": self.recoverable,
        }

    def __str__(self) -> str:
        """String representation with error code."""
        if self.error_code:
            return f"[{self.error_code.value}] {super().__str__()}"
        return super().__str__()


def _passthrough(kwargs: Dict[str, Any]) -> Dict[str, Any]:
    return {
        k: v
        for k, v in kwargs.items()
        if k not in ["context", "error_code", "user_message", "recoverable"]
    }


class ConfigurationError(FeedPulseError):
    """Configuration-related errors."""

    def __init__(self, message: str, config_key: Optional[str] = None, **kwargs):
        """Initialize configuration error.

        Args:
            message: Error message
            config_key: Configuration key that caused the error
            **kwargs: Additional arguments for FeedPulseError
        """
        context = kwargs.get("context", {})
        if config_key:
            context["config_key"] = config_key

        super().__init__(
            message=message,
            error_code=kwargs.get("error_code", ErrorCode.CONFIG_INVALID),
            context=context,
            user_message=kwargs.get("user_message", f"Configuration error: {message}"),
            recoverable=kwargs.get("recoverable", False),
            **_passthrough(kwargs),
        )


class DatabaseError(FeedPulseError):
    """Database-related errors."""

    def __init__(self, message: str, query: Optional[str] = None, **kwargs):
        """Initialize database error.

        Args:
            message: Error message
            query: SQL query that caused the error
            **kwargs: Additional arguments for FeedPulseError
        """
        context = kwargs.get("context", {})
        if query:
            context["query"] = query

        super().__init__(
            message=message,
            error_code=kwargs.get("error_code", ErrorCode.DATABASE_CONNECTION),
            context=context,
            user_message=kwargs.get("user_message", "Database operation failed"),
            recoverable=kwargs.get("recoverable", True),
            **_passthrough(kwargs),
        )


class StoreError(DatabaseError):
    """A store operation failed and its transaction was rolled back."""

    def __init__(self, message: str, feed_id: Optional[int] = None, **kwargs):
        context = kwargs.pop("context", {})
        if feed_id is not None:
            context["feed_id"] = feed_id
        kwargs.setdefault("error_code", ErrorCode.DATABASE_TRANSACTION)
        super().__init__(message, context=context, **kwargs)


class FeedError(FeedPulseError):
    """Feed retrieval and parsing errors."""

    def __init__(self, message: str, feed_url: Optional[str] = None, **kwargs):
        """Initialize feed error.

        Args:
            message: Error message
            feed_url: Feed URL that caused the error
            **kwargs: Additional arguments for FeedPulseError
        """
        context = kwargs.get("context", {})
        if feed_url:
            context["feed_url"] = feed_url

        super().__init__(
            message=message,
            error_code=kwargs.get("error_code", ErrorCode.FEED_NETWORK_ERROR),
            context=context,
            user_message=kwargs.get(
                "user_message", f"Feed processing failed: {message}"
            ),
            recoverable=kwargs.get("recoverable", True),
            **_passthrough(kwargs),
        )


# Network failures: transient, retried with backoff


class NetworkError(FeedError):
    """Transport-level failure reaching the feed host."""

    pass


class FetchTimeout(NetworkError):
    """The request did not complete within its timeout."""

    def __init__(self, message: str, feed_url: Optional[str] = None, **kwargs):
        kwargs.setdefault("error_code", ErrorCode.FEED_FETCH_TIMEOUT)
        super().__init__(message, feed_url=feed_url, **kwargs)


class ConnectionFailure(NetworkError):
    """The connection could not be established or was dropped."""

    def __init__(self, message: str, feed_url: Optional[str] = None, **kwargs):
        kwargs.setdefault("error_code", ErrorCode.FEED_NETWORK_ERROR)
        super().__init__(message, feed_url=feed_url, **kwargs)


class TlsFailure(NetworkError):
    """TLS handshake or certificate verification failed."""

    def __init__(self, message: str, feed_url: Optional[str] = None, **kwargs):
        kwargs.setdefault("error_code", ErrorCode.FEED_TLS_ERROR)
        super().__init__(message, feed_url=feed_url, **kwargs)


# HTTP status failures


class HttpStatusError(FeedError):
    """The server answered with a non-success status."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        feed_url: Optional[str] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})
        if status_code is not None:
            context["status_code"] = status_code
        self.status_code = status_code
        super().__init__(message, feed_url=feed_url, context=context, **kwargs)


class HttpClientError(HttpStatusError):
    """4xx other than 429: the feed is probably moved or removed."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        feed_url: Optional[str] = None,
        **kwargs,
    ):
        kwargs.setdefault("error_code", ErrorCode.FEED_HTTP_CLIENT_ERROR)
        kwargs.setdefault("recoverable", False)
        kwargs.setdefault("user_message", f"Feed request rejected: {message}")
        super().__init__(message, status_code=status_code, feed_url=feed_url, **kwargs)


class HttpRetryableError(HttpStatusError):
    """429 or 5xx: transient, eligible for retry after backoff."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        feed_url: Optional[str] = None,
        retry_after: Optional[float] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})
        if retry_after is not None:
            context["retry_after"] = retry_after
        self.retry_after = retry_after
        kwargs.setdefault("error_code", ErrorCode.FEED_HTTP_RETRYABLE)
        super().__init__(
            message,
            status_code=status_code,
            feed_url=feed_url,
            context=context,
            **kwargs,
        )


class MalformedFeed(FeedError):
    """The document is not a usable feed of the expected format."""

    def __init__(self, message: str, feed_url: Optional[str] = None, **kwargs):
        kwargs.setdefault("error_code", ErrorCode.FEED_MISSING_FIELD)
        kwargs.setdefault("recoverable", False)
        kwargs.setdefault("user_message", f"Malformed feed: {message}")
        super().__init__(message, feed_url=feed_url, **kwargs)


class ValidationError(FeedPulseError):
    """Input validation errors."""

    def __init__(self, message: str, field_name: Optional[str] = None, **kwargs):
        """Initialize validation error.

        Args:
            message: Error message
            field_name: Field name that failed validation
            **kwargs: Additional arguments for FeedPulseError
        """
        context = kwargs.get("context", {})
        if field_name:
            context["field_name"] = field_name

        super().__init__(
            message=message,
            error_code=kwargs.get("error_code", ErrorCode.VALIDATION_INVALID_FORMAT),
            context=context,
            user_message=kwargs.get(
                "user_message", f"Invalid {field_name or 'input'}: {message}"
            ),
            recoverable=kwargs.get("recoverable", False),
            **_passthrough(kwargs),
        )


class SubscriptionError(FeedPulseError):
    """Subscription management errors (duplicates, unknown feeds)."""

    def __init__(self, message: str, feed_id: Optional[int] = None, **kwargs):
        """Initialize subscription error.

        Args:
            message: Error message
            feed_id: Feed ID that caused the error
            **kwargs: Additional arguments for FeedPulseError
        """
        context = kwargs.get("context", {})
        if feed_id is not None:
            context["feed_id"] = feed_id

        super().__init__(
            message=message,
            error_code=kwargs.get("error_code", ErrorCode.RESOURCE_NOT_FOUND),
            context=context,
            user_message=kwargs.get("user_message", message),
            recoverable=kwargs.get("recoverable", False),
            **_passthrough(kwargs),
        )


class DeliveryError(FeedPulseError):
    """Event sink delivery errors."""

    def __init__(
        self,
        message: str,
        feed_id: Optional[int] = None,
        item_count: Optional[int] = None,
        **kwargs,
    ):
        """Initialize delivery error.

        Args:
            message: Error message
            feed_id: Feed whose items failed to deliver
            item_count: Number of items that failed to deliver
            **kwargs: Additional arguments for FeedPulseError
        """
        context = kwargs.get("context", {})
        if feed_id is not None:
            context["feed_id"] = feed_id
        if item_count:
            context["item_count"] = item_count

        super().__init__(
            message=message,
            error_code=kwargs.get("error_code", ErrorCode.DELIVERY_FAILED),
            context=context,
            user_message=kwargs.get("user_message", "Item delivery failed"),
            recoverable=kwargs.get("recoverable", True),
            **_passthrough(kwargs),
        )


# Exception handling utilities


def handle_exception(
    exception: Exception,
    logger,
    operation: str,
    context: Optional[Dict[str, Any]] = None,
) -> FeedPulseError:
    """Convert generic exceptions to FeedPulse exceptions with proper logging.

    Args:
        exception: Original exception
        logger: Logger instance for error logging
        operation: Operation that was being performed
        context: Additional context information

    Returns:
        FeedPulse exception with proper categorization
    """
    context = context or {}
    context["operation"] = operation
    context["original_exception_type"] = type(exception).__name__

    if isinstance(exception, FeedPulseError):
        logger.error(f"Operation '{operation}' failed", extra=exception.to_dict())
        return exception

    elif isinstance(exception, (ConnectionError, TimeoutError)):
        error = NetworkError(
            message=f"Network error during {operation}: {str(exception)}",
            context=context,
            user_message="Network connection failed",
        )

    elif isinstance(exception, PermissionError):
        error = FeedPulseError(
            message=f"Permission denied during {operation}: {str(exception)}",
            error_code=ErrorCode.SYSTEM_PERMISSION_DENIED,
            context=context,
            user_message="Access denied",
            recoverable=False,
        )

    elif isinstance(exception, FileNotFoundError):
        error = ConfigurationError(
            message=f"Required file not found during {operation}: {str(exception)}",
            error_code=ErrorCode.CONFIG_MISSING,
            context=context,
            user_message="Required file missing",
        )

    elif isinstance(exception, MemoryError):
        error = FeedPulseError(
            message=f"Memory exhausted during {operation}: {str(exception)}",
            error_code=ErrorCode.SYSTEM_MEMORY_ERROR,
            context=context,
            user_message="System resources exhausted",
            recoverable=True,
        )

    else:
        error = FeedPulseError(
            message=f"Unexpected error during {operation}: {str(exception)}",
            error_code=ErrorCode.SYSTEM_UNEXPECTED_ERROR,
            context=context,
            user_message="An unexpected error occurred",
            recoverable=True,
        )

    logger.error(f"Operation '{operation}' failed", extra=error.to_dict(), exc_info=exception)
    return error


def is_retryable_error(exception: FeedPulseError) -> bool:
    """Check whether an error should be retried with backoff.

    Transport failures, 429/5xx answers, rolled-back store transactions and
    unexpected errors wrapped by handle_exception are retried with backoff. Malformed documents and 4xx answers are not:
    the server did respond, so the feed keeps its normal cadence.

    Args:
        exception: FeedPulse exception to check

    Returns:
        True if the error is eligible for backoff
    """
    if not exception.recoverable:
        return False

    retryable_codes = {
        ErrorCode.FEED_NETWORK_ERROR,
        ErrorCode.FEED_FETCH_TIMEOUT,
        ErrorCode.FEED_TLS_ERROR,
        ErrorCode.FEED_HTTP_RETRYABLE,
        ErrorCode.DATABASE_CONNECTION,
        ErrorCode.DATABASE_TRANSACTION,
        ErrorCode.DATABASE_ERROR,
        ErrorCode.DELIVERY_TIMEOUT,
        ErrorCode.SYSTEM_UNEXPECTED_ERROR,
        ErrorCode.SYSTEM_MEMORY_ERROR,
    }

    return exception.error_code in retryable_codes


def get_user_friendly_message(exception: Exception) -> str:
    """Get an operator-facing error message for any exception.

    Args:
        exception: Exception to get message for

    Returns:
        Operator-facing error message
    """
    if isinstance(exception, FeedPulseError):
        return exception.user_message

    return "An unexpected error occurred. Please try again later."
