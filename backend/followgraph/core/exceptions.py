"""
Exception Handling Module.

Provides the exception hierarchy for followgraph and the decorator that
translates SQLAlchemy failures into it at the store boundary:
- FollowGraphError and its subclasses
- handle_store_errors decorator
- Error statistics for diagnostics
"""

import functools
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, TypeVar

from sqlalchemy import exc as sa_exc

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ErrorSeverity(str, Enum):
    """Error severity levels."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(str, Enum):
    """Error categories."""
    STORAGE = "storage"
    VALIDATION = "validation"
    CONSISTENCY = "consistency"
    CONFIGURATION = "configuration"
    INTERNAL = "internal"


class FollowGraphError(Exception):
    """Base exception for followgraph errors."""

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.INTERNAL,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        details: dict[str, Any] | None = None,
        recoverable: bool = True,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.category = category
        self.severity = severity
        self.details = details or {}
        self.recoverable = recoverable
        self.timestamp = datetime.now()

    def to_dict(self) -> dict[str, Any]:
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "severity": self.severity.value,
            "details": self.details,
            "recoverable": self.recoverable,
            "timestamp": self.timestamp.isoformat(),
        }


class StoreUnavailable(FollowGraphError):
    """The relational store could not be reached. Retry the whole unit of work."""

    def __init__(
        self,
        message: str,
        operation: str | None = None,
        **kwargs: Any,
    ) -> None:
        details = kwargs.pop("details", {}) or {}
        if operation:
            details["operation"] = operation

        super().__init__(
            message=message,
            category=ErrorCategory.STORAGE,
            severity=ErrorSeverity.HIGH,
            details=details,
            recoverable=True,
            **kwargs,
        )


class InvalidReference(FollowGraphError):
    """A referenced user does not exist or a constraint was violated."""

    def __init__(
        self,
        message: str,
        user_ids: tuple[int, ...] | list[int] | None = None,
        operation: str | None = None,
        **kwargs: Any,
    ) -> None:
        details = kwargs.pop("details", {}) or {}
        if user_ids:
            details["user_ids"] = list(user_ids)
        if operation:
            details["operation"] = operation

        super().__init__(
            message=message,
            category=ErrorCategory.VALIDATION,
            severity=ErrorSeverity.LOW,
            details=details,
            recoverable=False,
            **kwargs,
        )


class StaleReadViolation(FollowGraphError):
    """A cached relationship set was read after it went stale."""

    def __init__(
        self,
        user_id: int,
        direction: str,
        **kwargs: Any,
    ) -> None:
        super().__init__(
            message=(
                f"'{direction}' of user {user_id} is stale; "
                "reload the user before reading it"
            ),
            category=ErrorCategory.CONSISTENCY,
            severity=ErrorSeverity.MEDIUM,
            details={"user_id": user_id, "direction": direction},
            recoverable=False,
            **kwargs,
        )
        self.user_id = user_id
        self.direction = direction


class RelationshipNotLoaded(FollowGraphError):
    """A relationship set was read before it was ever loaded."""

    def __init__(
        self,
        user_id: int,
        direction: str,
        **kwargs: Any,
    ) -> None:
        super().__init__(
            message=f"'{direction}' of user {user_id} was never loaded",
            category=ErrorCategory.CONSISTENCY,
            severity=ErrorSeverity.MEDIUM,
            details={"user_id": user_id, "direction": direction},
            recoverable=False,
            **kwargs,
        )
        self.user_id = user_id
        self.direction = direction


class UnitOfWorkError(FollowGraphError):
    """A unit of work was used outside of its active lifetime."""

    def __init__(self, message: str, unit_id: str | None = None, **kwargs: Any) -> None:
        details = kwargs.pop("details", {}) or {}
        if unit_id:
            details["unit_id"] = unit_id

        super().__init__(
            message=message,
            category=ErrorCategory.INTERNAL,
            severity=ErrorSeverity.HIGH,
            details=details,
            recoverable=False,
            **kwargs,
        )


@dataclass
class ErrorContext:
    """Context for error handling."""
    operation: str
    component: str
    start_time: datetime = field(default_factory=datetime.now)
    end_time: datetime | None = None
    success: bool = True
    error: FollowGraphError | None = None

    @property
    def duration_ms(self) -> float:
        end = self.end_time or datetime.now()
        return (end - self.start_time).total_seconds() * 1000


def translate_store_error(error: Exception, operation: str) -> FollowGraphError:
    """Map a SQLAlchemy exception onto the followgraph hierarchy."""
    if isinstance(error, FollowGraphError):
        return error

    if isinstance(error, sa_exc.IntegrityError):
        return InvalidReference(
            f"Constraint violated during {operation}: {error.orig}",
            operation=operation,
        )

    if isinstance(error, sa_exc.DBAPIError) and error.connection_invalidated:
        return StoreUnavailable(
            f"Connection lost during {operation}: {error.orig}",
            operation=operation,
        )

    if isinstance(
        error,
        (sa_exc.OperationalError, sa_exc.InterfaceError, sa_exc.TimeoutError, OSError),
    ):
        return StoreUnavailable(
            f"Store unavailable during {operation}: {error}",
            operation=operation,
        )

    return FollowGraphError(
        message=str(error),
        category=ErrorCategory.INTERNAL,
        severity=ErrorSeverity.HIGH,
        details={"original_type": type(error).__name__, "operation": operation},
        recoverable=False,
    )


def handle_store_errors(
    operation: str | None = None,
    log_errors: bool = True,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """
    Decorator translating SQLAlchemy failures into followgraph errors.

    FollowGraphError subclasses pass through untouched; SQLAlchemy and
    driver errors are translated and re-raised chained to the original.

    Args:
        operation: Name recorded in the error details (defaults to the
            function name)
        log_errors: Whether to log translated errors

    Returns:
        Decorated coroutine function
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        if not inspect.iscoroutinefunction(func):
            raise TypeError(f"handle_store_errors expects a coroutine function: {func.__name__}")

        op_name = operation or func.__name__

        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            context = ErrorContext(operation=op_name, component=func.__module__)

            try:
                return await func(*args, **kwargs)

            except FollowGraphError as e:
                context.success = False
                context.error = e
                if log_errors:
                    _log_error(e)
                raise

            except (sa_exc.SQLAlchemyError, OSError) as e:
                context.success = False
                translated = translate_store_error(e, op_name)
                context.error = translated
                if log_errors:
                    _log_error(translated)
                raise translated from e

            finally:
                context.end_time = datetime.now()
                _record_context(context)

        return wrapper

    return decorator


def _log_error(error: FollowGraphError) -> None:
    log_level = {
        ErrorSeverity.LOW: logging.DEBUG,
        ErrorSeverity.MEDIUM: logging.WARNING,
        ErrorSeverity.HIGH: logging.ERROR,
        ErrorSeverity.CRITICAL: logging.CRITICAL,
    }.get(error.severity, logging.ERROR)

    logger.log(
        log_level,
        f"[{error.category.value}] {error.message}",
        extra={"extra_data": error.details},
    )


def _record_context(context: ErrorContext) -> None:
    global _error_contexts
    _error_contexts.append(context)

    if len(_error_contexts) > 1000:
        _error_contexts = _error_contexts[-500:]


_error_contexts: list[ErrorContext] = []


def get_error_statistics() -> dict[str, Any]:
    """Get store operation statistics."""
    total = len(_error_contexts)
    errors = [c for c in _error_contexts if not c.success]

    by_category: dict[str, int] = {}
    by_type: dict[str, int] = {}

    for ctx in errors:
        if ctx.error:
            cat = ctx.error.category.value
            name = type(ctx.error).__name__
            by_category[cat] = by_category.get(cat, 0) + 1
            by_type[name] = by_type.get(name, 0) + 1

    return {
        "total_operations": total,
        "total_errors": len(errors),
        "error_rate": len(errors) / total if total > 0 else 0,
        "by_category": by_category,
        "by_type": by_type,
    }


def clear_error_history() -> None:
    """Clear error history."""
    global _error_contexts
    _error_contexts = []
