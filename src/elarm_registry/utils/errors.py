"""
Errors raised by the elarm registry.

Every error derives from ElarmError, which carries a stable code, a
severity, a category and an ErrorContext saying where it happened, and can
be rendered with to_dict() for structured logs.

Domain events (a server dying, a duplicate subscribe) are never errors; the
exceptions here cover configuration problems and misuse of the registry or
of process handles.
"""

from typing import Optional, Dict, Any, List, Type, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
import traceback
from contextlib import contextmanager
import inspect
import functools

from .logging import get_logger


logger = get_logger("elarm.errors")


class ErrorSeverity(Enum):
    """Severity, doubling as the structlog method used to log it."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    SYSTEM = "system"
    CONFIGURATION = "configuration"
    REGISTRY = "registry"
    PROCESS = "process"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


@dataclass
class ErrorContext:
    """Where an error happened."""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    component: Optional[str] = None
    operation: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    stack_trace: Optional[str] = None


class ElarmError(Exception):
    """Base class of every elarm registry error."""

    code: str = "ELARM_ERROR"
    default_message: str = "An error occurred in the elarm registry"
    severity: ErrorSeverity = ErrorSeverity.ERROR
    category: ErrorCategory = ErrorCategory.UNKNOWN
    is_retryable: bool = False

    def __init__(
        self,
        message: Optional[str] = None,
        context: Optional[ErrorContext] = None,
        cause: Optional[Exception] = None,
        **kwargs
    ):
        """
        Args:
            message: Human readable message, default_message when omitted
            context: Where it happened
            cause: Underlying exception; its traceback is kept in the context
        """
        self.message = message or self.default_message
        self.context = context or ErrorContext()
        self.cause = cause
        self.details = kwargs

        if cause is not None and self.context.stack_trace is None:
            self.context.stack_trace = "".join(traceback.format_exception(cause))

        super().__init__(self.message)

    def get_suggestions(self) -> List[str]:
        """Hints for fixing the problem, if there are any."""
        return []

    def to_dict(self) -> Dict[str, Any]:
        """Structured form for logs and diagnostics."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "severity": self.severity.value,
                "category": self.category.value,
                "is_retryable": self.is_retryable,
                "suggestions": self.get_suggestions(),
                "context": {
                    "timestamp": self.context.timestamp.isoformat(),
                    "component": self.context.component,
                    "operation": self.context.operation,
                    "metadata": self.context.metadata
                }
            }
        }


class ConfigurationError(ElarmError):
    """A config file or environment variable is unreadable or invalid."""
    code = "CONFIG_ERROR"
    default_message = "Invalid configuration"
    category = ErrorCategory.CONFIGURATION

    def get_suggestions(self) -> List[str]:
        return [
            "Check the syntax of ~/.elarm/config.yaml, ./elarm.yaml and any --config file",
            "Check the ELARM_* environment variables"
        ]


class RegistryError(ElarmError):
    """The registry could not change lifecycle state."""
    code = "REGISTRY_ERROR"
    default_message = "Registry error"
    category = ErrorCategory.REGISTRY


class RegistryNotRunningError(RegistryError):
    """A call reached a registry that is not running."""
    code = "REGISTRY_NOT_RUNNING"
    default_message = "Registry is not running"

    def get_suggestions(self) -> List[str]:
        return ["Start the registry with start_registry() or `async with Registry()` first"]


class RegistryAlreadyRunningError(RegistryError):
    code = "REGISTRY_ALREADY_RUNNING"
    default_message = "Registry is already running"
    severity = ErrorSeverity.WARNING


class CallTimeoutError(ElarmError):
    """subscribe/unsubscribe got no reply within the call timeout."""
    code = "CALL_TIMEOUT"
    default_message = "Registry call timed out"
    category = ErrorCategory.TIMEOUT
    is_retryable = True


class ProcessError(ElarmError):
    """A process handle was used in a way its state does not allow."""
    code = "PROCESS_ERROR"
    default_message = "Process error"
    category = ErrorCategory.PROCESS


def handle_errors(
    *error_classes: Type[Exception],
    fallback: Optional[Callable] = None,
    reraise: bool = True,
    log_level: ErrorSeverity = ErrorSeverity.ERROR
):
    """
    Log exceptions raised by the decorated function or coroutine function.

    After logging, the fallback (called with the same arguments) provides the
    result if given; otherwise the exception is re-raised, or None returned
    when reraise is False. Exceptions not listed in error_classes pass
    through untouched.

    Args:
        error_classes: Exceptions to handle, Exception when empty
        fallback: Called with the original arguments to produce a result
        reraise: Re-raise when there is no fallback
        log_level: Severity used for the log entry
    """
    error_classes = error_classes or (Exception,)

    def decorator(func):
        def recover(e, args, kwargs):
            getattr(logger, log_level.value)(
                f"error_in_{func.__name__}",
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True
            )
            if fallback is not None:
                return fallback(*args, **kwargs)
            if reraise:
                raise e
            return None

        if inspect.iscoroutinefunction(func):
            @functools.wraps(func)
            async def async_wrapper(*args, **kwargs):
                try:
                    return await func(*args, **kwargs)
                except error_classes as e:
                    result = recover(e, args, kwargs)
                    return await result if inspect.isawaitable(result) else result
            return async_wrapper

        @functools.wraps(func)
        def sync_wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except error_classes as e:
                return recover(e, args, kwargs)
        return sync_wrapper

    return decorator


@contextmanager
def error_context(
    component: str,
    operation: str,
    reraise: bool = True,
    **metadata
):
    """
    Attach component/operation context to errors raised in the block.

    ElarmErrors get missing context filled in. Anything else is wrapped in
    an ElarmError whose cause is the original exception. Both are logged.
    """
    context = ErrorContext(component=component, operation=operation, metadata=metadata)

    try:
        yield context
    except ElarmError as e:
        e.context.component = e.context.component or component
        e.context.operation = e.context.operation or operation
        e.context.metadata.update(metadata)
        logger.error("elarm_error_in_context", error=e.to_dict())
        if reraise:
            raise
    except Exception as e:
        wrapped = ElarmError(message=str(e), context=context, cause=e)
        logger.error("unexpected_error_in_context", error=wrapped.to_dict(), exc_info=True)
        if reraise:
            raise wrapped from e


__all__ = [
    'ElarmError',
    'ErrorContext',
    'ErrorSeverity',
    'ErrorCategory',
    'ConfigurationError',
    'RegistryError',
    'RegistryNotRunningError',
    'RegistryAlreadyRunningError',
    'CallTimeoutError',
    'ProcessError',
    'handle_errors',
    'error_context',
]
