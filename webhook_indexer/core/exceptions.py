"""
Custom exception classes for the application.
Provides structured error handling across all modules.
"""

from typing import Any, Optional, Dict


class WebhookIndexerException(Exception):
    """Base exception class for the webhook indexer."""

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)


class ConfigurationError(WebhookIndexerException):
    """Raised when there's a configuration error."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "CONFIGURATION_ERROR", details)


class DatabaseError(WebhookIndexerException):
    """Raised when there's a database error."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "DATABASE_ERROR", details)


class IndexerError(WebhookIndexerException):
    """Raised when an indexer cannot process an event."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "INDEXER_ERROR", details)


class ValidationError(WebhookIndexerException):
    """Raised when data validation fails."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "VALIDATION_ERROR", details)


class NotFoundError(WebhookIndexerException):
    """Raised when a requested resource is not found."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "NOT_FOUND", details)


class AuthenticationError(WebhookIndexerException):
    """Raised when authentication fails."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "AUTHENTICATION_ERROR", details)


class ExternalServiceError(WebhookIndexerException):
    """Raised when an external service error occurs."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "EXTERNAL_SERVICE_ERROR", details)


# Not found
class IndexerNotFoundError(NotFoundError):
    """Raised when an indexer record is not found."""

    def __init__(self, indexer_id: str):
        super().__init__(
            f"Indexer not found: {indexer_id}",
            {"indexer_id": indexer_id}
        )


class CredentialNotFoundError(NotFoundError):
    """Raised when a database credential is not found."""

    def __init__(self, credential_id: str):
        super().__init__(
            f"Database credential not found: {credential_id}",
            {"credential_id": credential_id}
        )


# Validation
class InvalidTableNameError(ValidationError):
    """Raised when a target table name is rejected."""

    def __init__(self, table_name: str, reason: str):
        super().__init__(
            f"Invalid table name '{table_name}': {reason}",
            {"table_name": table_name, "reason": reason}
        )


class InvalidIndexerParamsError(ValidationError):
    """Raised when indexer parameters fail validation."""

    def __init__(self, indexer_type: str, reason: str):
        super().__init__(
            f"Invalid parameters for {indexer_type} indexer: {reason}",
            {"indexer_type": indexer_type, "reason": reason}
        )


class UnknownIndexerTypeError(ValidationError):
    """Raised when an indexer type tag is not registered."""

    def __init__(self, indexer_type: str):
        super().__init__(
            f"Unsupported indexer type: {indexer_type}",
            {"indexer_type": indexer_type}
        )


class InvalidStatusTransitionError(ValidationError):
    """Raised when an indexer status change is not allowed."""

    def __init__(self, indexer_id: str, current: str, requested: str):
        super().__init__(
            f"Cannot move indexer {indexer_id} from {current} to {requested}",
            {"indexer_id": indexer_id, "current": current, "requested": requested}
        )


# Processing
class IndexerNotActiveError(IndexerError):
    """Raised when an event arrives for an indexer that is not active."""

    def __init__(self, indexer_id: str, status: str):
        super().__init__(
            f"Indexer {indexer_id} is not active (status: {status})",
            {"indexer_id": indexer_id, "status": status}
        )


class PayloadDecodeError(IndexerError):
    """Raised when the event envelope or its detail blob cannot be decoded."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(f"Failed to decode payload: {message}", details)


class ProcessingError(IndexerError):
    """Raised when one or more items of an event failed to store."""

    def __init__(self, indexer_id: str, failed: int, errors: list):
        super().__init__(
            f"Indexer {indexer_id}: {failed} item(s) failed to store",
            {"indexer_id": indexer_id, "failed": failed, "errors": errors}
        )


class TenantConnectionError(DatabaseError):
    """Raised when a tenant target database cannot be reached."""

    def __init__(self, host: str, database: str, reason: str):
        super().__init__(
            f"Failed to connect to tenant database {database} on {host}: {reason}",
            {"host": host, "database": database}
        )


# External services
class UpstreamWebhookError(ExternalServiceError):
    """Raised when the upstream webhook API call fails."""

    def __init__(self, operation: str, reason: str, status: Optional[int] = None):
        super().__init__(
            f"Webhook {operation} failed: {reason}",
            {"operation": operation, "status": status}
        )
        self.status = status


class MetadataFetchError(ExternalServiceError):
    """Raised when token metadata cannot be fetched."""

    def __init__(self, address: str, reason: str):
        super().__init__(
            f"Failed to fetch metadata for {address}: {reason}",
            {"address": address}
        )
