"""
Service error taxonomy.
Every error carries a machine-readable code, a human-readable message,
and the HTTP status the API layer renders it with.
"""

from typing import Any, Optional


class ServiceError(Exception):
    """Base class for errors surfaced to callers."""

    error_code = "INTERNAL_ERROR"
    http_status = 500

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(f"{self.error_code}: {message}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(ServiceError):
    """Malformed or out-of-range input. Caller must correct and resubmit."""

    error_code = "VALIDATION_ERROR"
    http_status = 400


class ResourceNotFoundError(ServiceError):
    """Document or revision missing or soft-deleted."""

    error_code = "RESOURCE_NOT_FOUND"
    http_status = 404


class PermissionDeniedError(ServiceError):
    error_code = "PERMISSION_DENIED"
    http_status = 403


class ConcurrentModificationError(ServiceError):
    """Expected lock version did not match. Caller must refetch."""

    error_code = "CONCURRENT_MODIFICATION"
    http_status = 409


class InvalidStateError(ServiceError):
    """Operation not legal for the current pipeline or revision status."""

    error_code = "INVALID_STATE"
    http_status = 409


class InvalidTypeError(ServiceError):
    error_code = "INVALID_TYPE"
    http_status = 415


class FileTooLargeError(ServiceError):
    error_code = "FILE_TOO_LARGE"
    http_status = 413


class DuplicateDecisionRequiredError(ServiceError):
    """Approval blocked by the duplicate gate."""

    error_code = "DUPLICATE_DECISION_REQUIRED"
    http_status = 409


class StorageError(ServiceError):
    """Byte retrieval or persistence failure."""

    error_code = "STORAGE_ERROR"
    http_status = 502


class InternalError(ServiceError):
    error_code = "INTERNAL_ERROR"
    http_status = 500
