# Structured exception hierarchy for the back-office mutation core

from enum import Enum
from typing import Dict, Any, Optional
from datetime import datetime, timezone


class ErrorKind(str, Enum):
    """Transport-independent error classification"""
    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"
    INVALID_ARGUMENT = "invalid_argument"
    FAILED_PRECONDITION = "failed_precondition"
    CONFLICT = "conflict"
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"
    INTERNAL = "internal"


class BackOfficeError(Exception):
    """Base exception for all back-office errors.

    ``reason`` is a stable machine-readable code (e.g. ``kyc_required``) that
    lets a caller distinguish cases within the same kind.
    """

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(self, message: str, reason: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None,
                 correlation_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.reason = reason or self.kind.value
        self.details = details or {}
        self.correlation_id = correlation_id
        self.timestamp = datetime.now(timezone.utc)


class TransientError(BackOfficeError):
    """Base class for transient errors that should be retried with exponential backoff"""

    def __init__(self, message: str, reason: Optional[str] = None, retry_count: int = 0,
                 max_retries: int = 5, details: Optional[Dict[str, Any]] = None,
                 correlation_id: Optional[str] = None):
        super().__init__(message, reason, details, correlation_id)
        self.retry_count = retry_count
        self.max_retries = max_retries

    @property
    def retryable(self) -> bool:
        return self.retry_count < self.max_retries


class PermanentError(BackOfficeError):
    """Base class for terminal errors surfaced to the caller as-is"""
    pass


class NotFoundError(PermanentError):
    """Account, order, security or bank account absent"""
    kind = ErrorKind.NOT_FOUND


class ForbiddenError(PermanentError):
    """Ownership mismatch, KYC not approved, closed or suspended account"""
    kind = ErrorKind.FORBIDDEN


class InvalidArgumentError(PermanentError):
    """Malformed quantity, price, amount or order-type combination"""
    kind = ErrorKind.INVALID_ARGUMENT


class FailedPreconditionError(PermanentError):
    """Insufficient funds or shares, pending-withdrawal cap, non-modifiable order"""
    kind = ErrorKind.FAILED_PRECONDITION


class BalanceGuardViolation(FailedPreconditionError):
    """A mutation would break a balance or ledger invariant at commit time"""

    def __init__(self, message: str, reason: str, entity: str, entity_id: Optional[str] = None,
                 **kwargs):
        super().__init__(message, reason, **kwargs)
        self.entity = entity
        self.entity_id = entity_id


class ConflictError(TransientError):
    """Concurrent update detected; the whole operation must be retried"""
    kind = ErrorKind.CONFLICT


class UpstreamUnavailableError(PermanentError):
    """Price oracle failure, timeout or open circuit"""
    kind = ErrorKind.UPSTREAM_UNAVAILABLE


class InternalError(PermanentError):
    """Persistence failure"""
    kind = ErrorKind.INTERNAL

    def __init__(self, message: str, operation: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.operation = operation


def is_retryable_error(error: Exception) -> bool:
    """
    Determine if an error should be retried

    Returns:
        True if error is transient and retryable, False otherwise
    """
    if isinstance(error, TransientError):
        return error.retryable
    return False


def get_retry_delay(error: TransientError, base_delay: float = 1.0) -> float:
    """
    Calculate exponential backoff delay for retrying transient errors

    Args:
        error: The transient error to retry
        base_delay: Base delay in seconds

    Returns:
        Delay in seconds before retry
    """
    if not isinstance(error, TransientError):
        return 0.0

    # Exponential backoff: base_delay * (2 ^ retry_count)
    return base_delay * (2 ** error.retry_count)


def create_error_context(error: Exception, operation: str,
                         additional_context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Create structured error context for logging

    Args:
        error: The exception that occurred
        operation: The operation that failed
        additional_context: Additional context information

    Returns:
        Structured error context dictionary
    """
    context = {
        "error_type": type(error).__name__,
        "error_message": str(error),
        "operation": operation,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "retryable": is_retryable_error(error)
    }

    if isinstance(error, BackOfficeError):
        context["error_kind"] = error.kind.value
        context["reason"] = error.reason
        if error.correlation_id:
            context["correlation_id"] = error.correlation_id
        if error.details:
            context["error_details"] = error.details

        if isinstance(error, TransientError):
            context["retry_count"] = error.retry_count
            context["max_retries"] = error.max_retries

        if isinstance(error, BalanceGuardViolation):
            context["entity"] = error.entity
            context["entity_id"] = error.entity_id

    if additional_context:
        context.update(additional_context)

    return context


def to_error_payload(error: BackOfficeError) -> Dict[str, Any]:
    """Render an error for a transport layer, which maps ``kind`` to its own status codes."""
    return {
        "kind": error.kind.value,
        "reason": error.reason,
        "message": error.message,
        "details": error.details,
    }
