"""
Tests for the error hierarchy and helpers.
"""

import pytest

from elarm_registry.utils.errors import (
    CallTimeoutError,
    ConfigurationError,
    ElarmError,
    ErrorCategory,
    ErrorContext,
    ErrorSeverity,
    RegistryError,
    RegistryNotRunningError,
    error_context,
    handle_errors,
)


class TestElarmError:
    """Test the base error."""

    def test_defaults(self):
        error = ElarmError()
        assert error.message == "An error occurred in the elarm registry"
        assert error.severity == ErrorSeverity.ERROR
        assert error.category == ErrorCategory.UNKNOWN
        assert not error.is_retryable

    def test_to_dict(self):
        context = ErrorContext(component="registry", operation="subscribe", metadata={"n": 1})
        error = RegistryNotRunningError("not running", context=context)

        data = error.to_dict()["error"]

        assert data["code"] == "REGISTRY_NOT_RUNNING"
        assert data["message"] == "not running"
        assert data["category"] == "registry"
        assert data["context"]["component"] == "registry"
        assert data["context"]["metadata"] == {"n": 1}
        assert data["suggestions"]

    def test_cause_stack_trace_kept(self):
        try:
            raise KeyError("missing")
        except KeyError as e:
            error = ElarmError("wrapped", cause=e)

        assert error.cause is not None
        assert "KeyError" in error.context.stack_trace

    def test_hierarchy(self):
        assert issubclass(RegistryNotRunningError, RegistryError)
        assert issubclass(RegistryError, ElarmError)
        assert CallTimeoutError.is_retryable
        assert CallTimeoutError.category == ErrorCategory.TIMEOUT


class TestErrorContext:
    """Test the error_context manager."""

    def test_wraps_foreign_exceptions(self):
        with pytest.raises(ElarmError) as exc_info:
            with error_context("config", "load", path="x.yaml"):
                raise OSError("disk gone")

        error = exc_info.value
        assert isinstance(error.cause, OSError)
        assert error.context.component == "config"
        assert error.context.metadata == {"path": "x.yaml"}

    def test_fills_context_of_elarm_errors(self):
        with pytest.raises(ConfigurationError) as exc_info:
            with error_context("config", "load"):
                raise ConfigurationError("bad file")

        assert exc_info.value.context.operation == "load"

    def test_no_reraise(self):
        with error_context("config", "load", reraise=False):
            raise ValueError("ignored")


class TestHandleErrors:
    """Test the handle_errors decorator."""

    def test_sync_fallback(self):
        @handle_errors(ValueError, fallback=lambda x: -1)
        def parse(x):
            return int(x)

        assert parse("3") == 3
        assert parse("three") == -1

    @pytest.mark.asyncio
    async def test_async_reraise(self):
        @handle_errors(ValueError)
        async def fail():
            raise ValueError("no")

        with pytest.raises(ValueError):
            await fail()

    @pytest.mark.asyncio
    async def test_async_swallow_when_asked(self):
        @handle_errors(KeyError, reraise=False, log_level=ErrorSeverity.WARNING)
        async def fail():
            raise KeyError("k")

        assert await fail() is None

    def test_unlisted_errors_pass_through(self):
        @handle_errors(ValueError, reraise=False)
        def fail():
            raise TypeError("t")

        with pytest.raises(TypeError):
            fail()
