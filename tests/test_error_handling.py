"""
Tests for Unimem Error Handling
===============================
Tests the exception hierarchy, error codes and the storage wrapper.
"""

import sqlite3

import pytest

from unimem.core.exceptions import (
    ConfigurationError,
    EmbeddingError,
    EmbeddingUnavailableError,
    EntityNotFoundError,
    ErrorCategory,
    InvalidResolutionError,
    IrrecoverableError,
    NotFoundError,
    RecoverableError,
    StorageConnectionError,
    StorageError,
    SyncError,
    UnimemError,
    UnsupportedProviderError,
    ValidationError,
    is_debug_mode,
    wrap_storage_exception,
)


class TestExceptionHierarchy:
    """Test the exception inheritance hierarchy."""

    def test_base_exception(self):
        exc = UnimemError("Test error")
        assert str(exc) == "Test error"
        assert exc.error_code == "UNIMEM_ERROR"
        assert exc.recoverable is True

    def test_context_in_str(self):
        exc = UnimemError("Test error", context={"key": "value"})
        assert "key" in str(exc)
        assert exc.context == {"key": "value"}

    def test_overrides(self):
        exc = UnimemError("x", error_code="CUSTOM", recoverable=False)
        assert exc.error_code == "CUSTOM"
        assert exc.recoverable is False

    @pytest.mark.parametrize(
        "exc",
        [
            ConfigurationError("key", "bad"),
            ValidationError("field", "bad"),
            NotFoundError("Thing", "1"),
            EntityNotFoundError("1"),
            EmbeddingUnavailableError("op"),
            InvalidResolutionError("1", "merged", "no payload"),
            UnsupportedProviderError("x"),
        ],
    )
    def test_irrecoverable(self, exc):
        assert isinstance(exc, IrrecoverableError)
        assert exc.recoverable is False

    @pytest.mark.parametrize(
        "exc",
        [
            SyncError("push", "timeout"),
            EmbeddingError("openai", "HTTP 500"),
            StorageConnectionError("sqlite"),
        ],
    )
    def test_recoverable(self, exc):
        assert isinstance(exc, RecoverableError)
        assert exc.recoverable is True

    def test_entity_not_found_is_not_found(self):
        exc = EntityNotFoundError("abc")
        assert isinstance(exc, NotFoundError)
        assert exc.entity_id == "abc"
        assert exc.resource_type == "Entity"
        assert "abc" in exc.message
        assert exc.category == ErrorCategory.ENTITY

    def test_storage_connection_is_storage_error(self):
        assert isinstance(StorageConnectionError("sqlite"), StorageError)


class TestErrorDetails:

    def test_to_dict(self):
        exc = SyncError("pull", "HTTP 503", {"status": 503})
        data = exc.to_dict()
        assert data["code"] == "SYNC_ERROR"
        assert data["recoverable"] is True
        assert data["context"]["operation"] == "pull"
        assert data["context"]["status"] == 503
        assert "traceback" not in data

    def test_validation_truncates_value(self):
        exc = ValidationError("content", "too long", "x" * 500)
        assert len(exc.context["value"]) == 103

    def test_invalid_resolution_context(self):
        exc = InvalidResolutionError("e1", "merged", "a merged payload is required")
        assert exc.entity_id == "e1"
        assert exc.context["resolution"] == "merged"

    def test_unsupported_provider_lists_supported(self):
        exc = UnsupportedProviderError("cohere", ["none", "mock", "openai"])
        assert "openai" in exc.message
        assert exc.context["supported_providers"] == ["none", "mock", "openai"]


class TestWrapStorageException:

    def test_generic_error(self):
        wrapped = wrap_storage_exception("sqlite", "create", sqlite3.IntegrityError("UNIQUE constraint failed"))
        assert type(wrapped) is StorageError
        assert wrapped.context["operation"] == "create"
        assert wrapped.context["original_exception"] == "IntegrityError"

    def test_locked_database_is_connection_error(self):
        wrapped = wrap_storage_exception("sqlite", "update", sqlite3.OperationalError("database is locked"))
        assert isinstance(wrapped, StorageConnectionError)


def test_is_debug_mode(monkeypatch):
    monkeypatch.delenv("UNIMEM_DEBUG", raising=False)
    assert is_debug_mode() is False
    monkeypatch.setenv("UNIMEM_DEBUG", "true")
    assert is_debug_mode() is True
