"""
Custom exceptions for the facility pipeline with structured error context.

This module provides the exception hierarchy shared by the ETL pipeline and
the search-serving path. Each exception carries context information for
debugging and log correlation.

Exception Hierarchy:
    ETLException (base)
    ├── ConfigurationError
    ├── ExtractionError
    │   └── APIExtractionError
    ├── TransformationError
    │   ├── ValidationError
    │   └── NormalizationError
    ├── LoadError
    │   ├── DatabaseError
    │   └── UpsertError
    ├── RunRejectedError
    ├── SearchError
    │   ├── RateLimitExceededError
    │   └── InvalidSearchQueryError
    └── RetryableError / NonRetryableError / FatalError (mixins)

Retry classification:
    RetryableError   transient, retried with backoff, then the batch is
                     counted as failed and the run continues
    NonRetryableError  permanent for this batch, never retried
    FatalError       aborts the whole pipeline run
"""

from typing import Optional, Dict, Any
from datetime import datetime, timezone


class ETLException(Exception):
    """
    Base exception for all pipeline-related errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (page, url, facility id, etc.)
        original_exception: The original exception that was caught (if any)
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        self.message = message
        self.context = context or {}
        self.original_exception = original_exception
        self.timestamp = datetime.now(timezone.utc)

        self.context["error_timestamp"] = self.timestamp.isoformat()

        super().__init__(message)
        if original_exception:
            self.__cause__ = original_exception

    def __str__(self) -> str:
        """Format error message with context."""
        base_msg = f"{self.__class__.__name__}: {self.message}"

        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            base_msg += f" | Context: {context_str}"

        if self.original_exception:
            base_msg += f" | Caused by: {type(self.original_exception).__name__}: {str(self.original_exception)}"

        return base_msg

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/storage."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_exception) if self.original_exception else None
        }


class ConfigurationError(ETLException):
    """Invalid settings, unknown schedule pattern, or missing collaborator."""
    pass


# ============================================================================
# Extraction Errors
# ============================================================================

class ExtractionError(ETLException):
    """Base exception for data extraction failures."""
    pass


class APIExtractionError(ExtractionError):
    """
    Exception raised when upstream API extraction fails.

    Context should include:
        - api_url: The API endpoint that failed
        - status_code: HTTP status code (if applicable)
        - page: Page index being fetched
        - retry_count: Number of retries attempted
    """
    pass


# ============================================================================
# Transformation Errors
# ============================================================================

class TransformationError(ETLException):
    """Base exception for data transformation failures."""
    pass


class ValidationError(TransformationError):
    """
    Exception raised when a facility fails validation.

    Context should include:
        - facility_id: Stable id of the facility (if derivable)
        - errors: List of validation error messages
    """
    pass


class NormalizationError(TransformationError):
    """
    Exception raised when a source record cannot be normalized at all.

    Context should include:
        - source_id: Upstream id of the record (if present)
        - field_errors: Dictionary of field-level errors
    """
    pass


# ============================================================================
# Load Errors
# ============================================================================

class LoadError(ETLException):
    """Base exception for data loading failures."""
    pass


class DatabaseError(LoadError):
    """
    Exception raised when store operations fail.

    Context should include:
        - operation: Type of store operation (UPSERT, SELECT, UPDATE)
        - table_name: Name of the table
    """
    pass


class UpsertError(LoadError):
    """
    Exception raised when a batch upsert fails.

    Context should include:
        - batch_size: Number of facilities in the batch
        - page: Page index the batch came from
    """
    pass


# ============================================================================
# Retry Strategy Mixins
# ============================================================================

class RetryableError(ETLException):
    """
    Mixin for errors that should trigger retry logic.

    Use this for transient errors like:
    - Network timeouts
    - Rate limiting (HTTP 429 or local token bucket rejection)
    - Temporary database connection issues
    - Service unavailable (HTTP 503)
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        max_retries: int = 3,
        retry_delay: float = 1.0
    ):
        super().__init__(message, context, original_exception)
        self.max_retries = max_retries
        self.retry_delay = retry_delay


class NonRetryableError(ETLException):
    """
    Mixin for errors that should NOT trigger retry logic.

    Use this for permanent errors like:
    - Invalid data format
    - Resource not found (HTTP 404)
    """
    pass


class FatalError(NonRetryableError):
    """
    Mixin for errors that abort the whole pipeline run.

    Use this for:
    - Authentication failures (HTTP 401, 403)
    - Store unreachable at the start of a run
    """
    pass


# ============================================================================
# Specific Retryable Errors
# ============================================================================

class NetworkError(RetryableError, APIExtractionError):
    """Network-related errors that should be retried."""
    pass


class RateLimitError(RetryableError, APIExtractionError):
    """Rate limiting errors (HTTP 429 or local bucket) that should be retried with backoff."""

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        retry_after: Optional[float] = None
    ):
        super().__init__(message, context, original_exception)
        self.retry_after = retry_after  # Seconds to wait before retry
        if retry_after:
            self.context["retry_after"] = retry_after


class DatabaseConnectionError(RetryableError, DatabaseError):
    """Database connection errors that should be retried."""
    pass


# ============================================================================
# Specific Non-Retryable Errors
# ============================================================================

class AuthenticationError(FatalError, APIExtractionError):
    """Authentication failures (HTTP 401, 403). Aborts the run."""
    pass


class StoreUnavailableError(FatalError, DatabaseError):
    """Store cannot be reached. Fatal at the start of an ETL run."""
    pass


class DataFormatError(NonRetryableError, TransformationError):
    """Upstream payload is not the expected shape."""
    pass


class ResourceNotFoundError(NonRetryableError, ExtractionError):
    """Resource not found errors (HTTP 404) that should not be retried."""
    pass


# ============================================================================
# Scheduler Errors
# ============================================================================

class RunRejectedError(NonRetryableError):
    """Manual run refused because one is already in flight or the scheduler is stopping."""
    pass


# ============================================================================
# Search Errors
# ============================================================================

class SearchError(ETLException):
    """Base exception for search-serving failures."""
    pass


class RateLimitExceededError(SearchError):
    """Search admission rejected by the token bucket. Maps to HTTP 429."""

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        retry_after: float = 1.0
    ):
        super().__init__(message, context)
        self.retry_after = retry_after
        self.context["retry_after"] = retry_after


class InvalidSearchQueryError(SearchError):
    """Search parameters out of range. Maps to HTTP 400."""
    pass
