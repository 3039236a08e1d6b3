"""
Unimem Domain-Specific Exceptions
=================================

This module defines a hierarchy of exceptions for consistent error handling
across the memory engine, the consolidation and retrieval engines, and the
sync subsystem.

Exception Hierarchy:
    UnimemError (base)
    ├── RecoverableError (transient, retry possible)
    │   ├── StorageConnectionError
    │   ├── EmbeddingError
    │   └── SyncError
    ├── IrrecoverableError (permanent, requires intervention)
    │   ├── ConfigurationError
    │   ├── ValidationError
    │   ├── NotFoundError
    │   │   └── EntityNotFoundError
    │   ├── EmbeddingUnavailableError
    │   ├── InvalidResolutionError
    │   └── UnsupportedProviderError
    └── StorageError (mixed recoverability)

Usage Guidelines:
    - Storage ``read`` returns None for "not found" (expected case, not an error)
    - Engine operations that target a missing entity raise EntityNotFoundError
    - Storage backends wrap driver faults with wrap_storage_exception()
    - Use error_code for machine-readable output (CLI --json, sync reports)
"""

from typing import Optional, Any
from enum import Enum
import os


class ErrorCategory(Enum):
    """Categories for error classification."""
    STORAGE = "STORAGE"
    EMBEDDING = "EMBEDDING"
    CONFIG = "CONFIG"
    VALIDATION = "VALIDATION"
    ENTITY = "ENTITY"
    SYNC = "SYNC"
    SYSTEM = "SYSTEM"


class UnimemError(Exception):
    """
    Base exception for all Unimem errors.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code
        context: Additional context about the error
        recoverable: Whether the error is potentially recoverable
    """

    error_code: str = "UNIMEM_ERROR"
    recoverable: bool = True
    category: ErrorCategory = ErrorCategory.SYSTEM

    def __init__(
        self,
        message: str,
        context: Optional[dict] = None,
        error_code: Optional[str] = None,
        recoverable: Optional[bool] = None
    ):
        super().__init__(message)
        self.message = message
        self.context = context or {}
        if error_code is not None:
            self.error_code = error_code
        if recoverable is not None:
            self.recoverable = recoverable

    def __str__(self) -> str:
        if self.context:
            return f"{self.message} | context={self.context}"
        return self.message

    def to_dict(self, include_traceback: bool = False) -> dict:
        """
        Convert exception to dictionary for JSON output.

        Args:
            include_traceback: Whether to include stack trace (only in DEBUG mode)
        """
        result = {
            "error": self.message,
            "code": self.error_code,
            "recoverable": self.recoverable,
        }

        if include_traceback:
            import traceback
            result["traceback"] = traceback.format_exc()

        if self.context:
            result["context"] = self.context

        return result


# =============================================================================
# Base Categories: Recoverable vs Irrecoverable
# =============================================================================

class RecoverableError(UnimemError):
    """
    Base class for recoverable errors.

    These are transient errors that may succeed on retry:
    - Connection failures
    - Timeouts
    - Failed sync round trips
    """
    recoverable = True


class IrrecoverableError(UnimemError):
    """
    Base class for irrecoverable errors.

    These are permanent errors that require intervention:
    - Invalid configuration
    - Validation failures
    - Resource not found
    """
    recoverable = False


# =============================================================================
# Storage Errors
# =============================================================================

class StorageError(UnimemError):
    """Base exception for storage-related errors (StorageFailure)."""
    error_code = "STORAGE_ERROR"
    category = ErrorCategory.STORAGE


class StorageConnectionError(RecoverableError, StorageError):
    """Raised when the storage backend cannot be opened or reached."""
    error_code = "STORAGE_CONNECTION_ERROR"

    def __init__(self, backend: str, message: str = "Connection failed", context: Optional[dict] = None):
        ctx = {"backend": backend}
        if context:
            ctx.update(context)
        super().__init__(f"[{backend}] {message}", ctx)
        self.backend = backend


# =============================================================================
# Configuration Errors
# =============================================================================

class ConfigurationError(IrrecoverableError):
    """Raised when configuration is invalid or missing."""
    error_code = "CONFIGURATION_ERROR"
    category = ErrorCategory.CONFIG

    def __init__(self, config_key: str, reason: str, context: Optional[dict] = None):
        ctx = {"config_key": config_key}
        if context:
            ctx.update(context)
        super().__init__(f"Configuration error for '{config_key}': {reason}", ctx)
        self.config_key = config_key


# =============================================================================
# Validation Errors
# =============================================================================

class ValidationError(IrrecoverableError):
    """Raised when input validation fails."""
    error_code = "VALIDATION_ERROR"
    category = ErrorCategory.VALIDATION

    def __init__(self, field: str, reason: str, value: Any = None, context: Optional[dict] = None):
        ctx = {"field": field}
        if value is not None:
            # Truncate large values
            value_str = str(value)
            if len(value_str) > 100:
                value_str = value_str[:100] + "..."
            ctx["value"] = value_str
        if context:
            ctx.update(context)
        super().__init__(f"Validation error for '{field}': {reason}", ctx)
        self.field = field
        self.reason = reason


# =============================================================================
# Not Found Errors
# =============================================================================

class NotFoundError(IrrecoverableError):
    """Raised when a requested resource is not found."""
    error_code = "NOT_FOUND_ERROR"
    category = ErrorCategory.SYSTEM

    def __init__(self, resource_type: str, resource_id: str, context: Optional[dict] = None):
        ctx = {"resource_type": resource_type, "resource_id": resource_id}
        if context:
            ctx.update(context)
        super().__init__(f"{resource_type} '{resource_id}' not found", ctx)
        self.resource_type = resource_type
        self.resource_id = resource_id


class EntityNotFoundError(NotFoundError):
    """Raised when an operation targets an entity that does not exist."""
    error_code = "ENTITY_NOT_FOUND_ERROR"
    category = ErrorCategory.ENTITY

    def __init__(self, entity_id: str, context: Optional[dict] = None):
        super().__init__("Entity", entity_id, context)
        self.entity_id = entity_id


# =============================================================================
# Embedding Errors
# =============================================================================

class EmbeddingUnavailableError(IrrecoverableError):
    """Raised when an embedding is required but no provider is configured."""
    error_code = "EMBEDDING_UNAVAILABLE_ERROR"
    category = ErrorCategory.EMBEDDING

    def __init__(self, operation: str, context: Optional[dict] = None):
        ctx = {"operation": operation}
        if context:
            ctx.update(context)
        super().__init__(f"Embedding provider not configured (required by '{operation}')", ctx)
        self.operation = operation


class EmbeddingError(RecoverableError):
    """Raised when the embedding provider round trip fails."""
    error_code = "EMBEDDING_ERROR"
    category = ErrorCategory.EMBEDDING

    def __init__(self, provider: str, reason: str, context: Optional[dict] = None):
        ctx = {"provider": provider}
        if context:
            ctx.update(context)
        super().__init__(f"[{provider}] embedding failed: {reason}", ctx)
        self.provider = provider


class UnsupportedProviderError(IrrecoverableError):
    """Raised when an unsupported embedding provider is requested."""
    error_code = "UNSUPPORTED_PROVIDER_ERROR"
    category = ErrorCategory.CONFIG

    def __init__(self, provider: str, supported_providers: Optional[list] = None, context: Optional[dict] = None):
        ctx = {"provider": provider}
        if supported_providers:
            ctx["supported_providers"] = supported_providers
        if context:
            ctx.update(context)
        msg = f"Unsupported provider: {provider}"
        if supported_providers:
            msg += f". Supported: {', '.join(supported_providers)}"
        super().__init__(msg, ctx)
        self.provider = provider


# =============================================================================
# Sync Errors
# =============================================================================

class SyncError(RecoverableError):
    """Raised when a push or pull round trip with the sync peer fails."""
    error_code = "SYNC_ERROR"
    category = ErrorCategory.SYNC

    def __init__(self, operation: str, reason: str, context: Optional[dict] = None):
        ctx = {"operation": operation}
        if context:
            ctx.update(context)
        super().__init__(f"Sync {operation} failed: {reason}", ctx)
        self.operation = operation


class InvalidResolutionError(IrrecoverableError):
    """Raised when a conflict resolution request is incomplete or unknown."""
    error_code = "INVALID_RESOLUTION_ERROR"
    category = ErrorCategory.SYNC

    def __init__(self, entity_id: str, resolution: str, reason: str, context: Optional[dict] = None):
        ctx = {"entity_id": entity_id, "resolution": resolution}
        if context:
            ctx.update(context)
        super().__init__(f"Invalid '{resolution}' resolution for '{entity_id}': {reason}", ctx)
        self.entity_id = entity_id
        self.resolution = resolution


# =============================================================================
# Utility Functions
# =============================================================================

def wrap_storage_exception(backend: str, operation: str, exc: Exception) -> StorageError:
    """
    Wrap a generic exception into an appropriate StorageError.

    Args:
        backend: Name of the storage backend (e.g., 'sqlite', 'memory')
        operation: Name of the operation that failed
        exc: The original exception

    Returns:
        An appropriate StorageError subclass
    """
    exc_name = type(exc).__name__
    exc_msg = str(exc)

    # Connection error detection
    if any(x in exc_msg.lower() for x in ["unable to open", "database is locked"]):
        return StorageConnectionError(backend, exc_msg, {"operation": operation})

    return StorageError(
        f"[{backend}] {operation} failed: {exc_msg}",
        {"backend": backend, "operation": operation, "original_exception": exc_name}
    )


def is_debug_mode() -> bool:
    """Check if debug mode is enabled via environment variable."""
    return os.environ.get("UNIMEM_DEBUG", "").lower() in ("true", "1", "yes")


__all__ = [
    # Base
    "UnimemError",
    "RecoverableError",
    "IrrecoverableError",
    "ErrorCategory",
    # Storage
    "StorageError",
    "StorageConnectionError",
    # Config
    "ConfigurationError",
    # Validation
    "ValidationError",
    # Not Found
    "NotFoundError",
    "EntityNotFoundError",
    # Embedding
    "EmbeddingUnavailableError",
    "EmbeddingError",
    "UnsupportedProviderError",
    # Sync
    "SyncError",
    "InvalidResolutionError",
    # Utilities
    "wrap_storage_exception",
    "is_debug_mode",
]
