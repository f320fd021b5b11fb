"""Custom exceptions for synchronization operations."""

from typing import Optional, Dict, Any
from datetime import datetime


class SyncError(Exception):
    """Base exception for synchronization errors."""

    def __init__(self, message: str, error_code: str = "sync_error",
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        self.timestamp = datetime.now()

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for serialization."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
            "timestamp": self.timestamp.isoformat()
        }


class UnavailableError(SyncError):
    """Raised when the remote store cannot be reached.

    Always recoverable: writes stay queued and reads fall back to the cache.
    """

    def __init__(self, operation: str, reason: str):
        message = f"Remote store unavailable during {operation}: {reason}"
        details = {
            "operation": operation,
            "reason": reason
        }
        super().__init__(message, "service_unavailable", details)


class CircuitOpenError(UnavailableError):
    """Raised when the remote circuit breaker is open."""

    def __init__(self, service_name: str, failure_count: int, threshold: int):
        super().__init__(
            service_name,
            f"circuit open after {failure_count} failures (threshold: {threshold})"
        )
        self.error_code = "circuit_breaker_open"
        self.details.update({
            "failure_count": failure_count,
            "threshold": threshold,
            "circuit_state": "open"
        })


class NotFoundError(SyncError):
    """Raised when an update targets a document that does not exist remotely."""

    def __init__(self, collection: str, doc_id: str):
        message = f"Document {collection}/{doc_id} does not exist"
        details = {
            "collection": collection,
            "doc_id": doc_id
        }
        super().__init__(message, "not_found", details)


class ConflictError(SyncError):
    """Reserved for conflict strategies stricter than last-writer-wins."""

    def __init__(self, key: str, local_timestamp: float, remote_timestamp: float):
        message = (f"Conflicting write for {key}: local staged at {local_timestamp}, "
                   f"remote updated at {remote_timestamp}")
        details = {
            "key": key,
            "local_timestamp": local_timestamp,
            "remote_timestamp": remote_timestamp
        }
        super().__init__(message, "conflict", details)


class RetryExhaustedError(SyncError):
    """Raised when a queued mutation failed past the retry ceiling and was dropped."""

    def __init__(self, item_id: str, key: Optional[str], operation: str,
                 attempts: int, last_error: Optional[str] = None):
        message = (f"Dropped {operation} for {key or 'batch'} after {attempts} "
                   f"failed attempts")
        details = {
            "item_id": item_id,
            "key": key,
            "operation": operation,
            "attempts": attempts,
            "last_error": last_error
        }
        super().__init__(message, "retry_exhausted", details)


class InvalidOperationError(SyncError):
    """Raised when a request is malformed and cannot be staged."""

    def __init__(self, reason: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(f"Invalid operation: {reason}", "invalid_operation", details)
