"""Error taxonomy and error reporting for the transformation plan engine."""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from remedy.plans.models import ExecutionLog, RollbackRecord


class ErrorSeverity(Enum):
    """Error severity levels."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Error categories for better handling."""

    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    STATE = "state"
    CONFLICT = "conflict"
    GENERATION = "generation"
    EXECUTION = "execution"
    APPROVAL = "approval"
    ROLLBACK = "rollback"
    NETWORK = "network"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


@dataclass
class ErrorContext:
    """Identifiers a caller needs to decide whether to retry, abandon or escalate."""

    operation: str = ""
    plan_id: str | None = None
    iteration_number: int | None = None
    approval_id: str | None = None
    execution_log_id: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def describe(self) -> str:
        parts = [f"{name}={value}" for name, value in self._items() if value]
        return ", ".join(parts)

    def _items(self):
        yield "operation", self.operation
        yield "plan", self.plan_id
        yield "iteration", self.iteration_number
        yield "approval", self.approval_id
        yield "execution_log", self.execution_log_id


class RemedyError(Exception):
    """Base exception class for remedy with enhanced context."""

    default_category = ErrorCategory.UNKNOWN
    default_severity = ErrorSeverity.MEDIUM

    def __init__(
        self,
        message: str,
        category: ErrorCategory | None = None,
        severity: ErrorSeverity | None = None,
        context: ErrorContext | None = None,
        original_error: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.severity = severity or self.default_severity
        self.context = context or ErrorContext()
        self.original_error = original_error

        # Auto-classify error if not provided
        if self.category == ErrorCategory.UNKNOWN and original_error:
            self.category = self._classify_error(original_error)

    def _classify_error(self, error: BaseException) -> ErrorCategory:
        """Automatically classify error based on type and message."""
        error_str = str(error).lower()
        error_type = type(error).__name__.lower()

        if error_type == "timeouterror" or "timed out" in error_str:
            return ErrorCategory.TIMEOUT
        elif "connection" in error_str or "network" in error_str:
            return ErrorCategory.NETWORK
        elif error_type in ["valueerror", "typeerror"] or "invalid" in error_str:
            return ErrorCategory.VALIDATION
        else:
            return ErrorCategory.UNKNOWN

    def get_user_message(self) -> str:
        """Get user-friendly error message."""
        base_message = self.message

        if self.category == ErrorCategory.VALIDATION:
            return (
                f"Validation error: {base_message}\n"
                "💡 Please check the plan request parameters."
            )
        elif self.category == ErrorCategory.NOT_FOUND:
            return f"Not found: {base_message}"
        elif self.category == ErrorCategory.CONFLICT:
            return (
                f"Conflict: {base_message}\n"
                "💡 Another operation is in progress on this plan. Try again shortly."
            )
        elif self.category == ErrorCategory.APPROVAL:
            return f"Approval error: {base_message}"
        elif self.category == ErrorCategory.TIMEOUT:
            return (
                f"Operation timed out: {base_message}\n"
                "💡 The generator or executor took too long. Try again."
            )
        elif self.category == ErrorCategory.ROLLBACK:
            return (
                f"Rollback failed: {base_message}\n"
                "🚨 Manual intervention is required on the target asset."
            )
        else:
            return f"Error: {base_message}"


class ValidationError(RemedyError):
    """Raised when a request or identifier fails validation."""

    default_category = ErrorCategory.VALIDATION


class NotFoundError(RemedyError):
    """Raised when a plan, approval or execution log does not exist."""

    default_category = ErrorCategory.NOT_FOUND


class PlanStateError(RemedyError):
    """Raised when an operation is not permitted in the plan's current status."""

    default_category = ErrorCategory.STATE


class ConflictError(RemedyError):
    """Raised when a concurrent caller already advanced or claimed the plan."""

    default_category = ErrorCategory.CONFLICT


class GenerationFailure(RemedyError):
    """The code generator was unreachable or returned unusable code."""

    default_category = ErrorCategory.GENERATION


class ExecutionSampleFailure(RemedyError):
    """The sandbox executor failed while running candidate code on a sample."""

    default_category = ErrorCategory.EXECUTION


class ApprovalConflict(RemedyError):
    default_category = ErrorCategory.APPROVAL


class AlreadyDecidedError(ApprovalConflict):
    """Raised when deciding on an approval that is no longer pending."""


class ApprovalExpired(RemedyError):
    """Raised when deciding on an approval past its expiry.

    The approval and its plan have already been moved to ``expired``; a fresh
    approval request is needed.
    """

    default_category = ErrorCategory.APPROVAL


class ExecutionConflict(RemedyError):
    default_category = ErrorCategory.CONFLICT


class AlreadyExecutedError(ExecutionConflict):
    """Raised when execute is called on a plan that was already executed."""


class ExecutionFailure(RemedyError):
    """A full-dataset execution failed and was rolled back."""

    default_category = ErrorCategory.EXECUTION
    default_severity = ErrorSeverity.HIGH

    def __init__(
        self,
        message: str,
        log: "ExecutionLog",
        rollback: "RollbackRecord | None" = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.log = log
        self.rollback = rollback


class FullExecutionFailure(ExecutionFailure):
    """The executor errored on the full dataset."""


class PartialExecutionFailure(ExecutionFailure):
    """More rows failed on the full dataset than the partial tolerance allows."""


class RollbackFailure(ExecutionFailure):
    """Automatic or manual rollback failed; the target asset needs an operator."""

    default_category = ErrorCategory.ROLLBACK
    default_severity = ErrorSeverity.CRITICAL


class ErrorHandler:
    """Logs errors by severity, keeps a history and formats user messages."""

    def __init__(self):
        self.logger = logging.getLogger(__name__)
        self.error_history: list[RemedyError] = []

    def handle_error(
        self, error: Exception, context: ErrorContext | None = None
    ) -> str:
        """Record an error and return the message to show the operator."""
        if isinstance(error, RemedyError):
            remedy_error = error
        else:
            remedy_error = RemedyError(
                message=str(error), context=context, original_error=error
            )

        self._log_error(remedy_error)
        self.error_history.append(remedy_error)

        return remedy_error.get_user_message()

    def _log_error(self, error: RemedyError):
        """Log error with appropriate level."""
        log_message = f"[{error.category.value}] {error.message}"

        described = error.context.describe()
        if described:
            log_message += f" ({described})"

        if error.severity == ErrorSeverity.CRITICAL:
            self.logger.critical(log_message, exc_info=error.original_error)
        elif error.severity == ErrorSeverity.HIGH:
            self.logger.error(log_message, exc_info=error.original_error)
        elif error.severity == ErrorSeverity.MEDIUM:
            self.logger.warning(log_message)
        else:
            self.logger.info(log_message)

    def get_error_stats(self) -> dict[str, Any]:
        """Get error statistics."""
        if not self.error_history:
            return {"total_errors": 0}

        stats = {
            "total_errors": len(self.error_history),
            "by_category": {},
            "by_severity": {},
            "recent_errors": len(self.error_history[-10:]),
        }

        for error in self.error_history:
            category = error.category.value
            severity = error.severity.value

            stats["by_category"][category] = stats["by_category"].get(category, 0) + 1
            stats["by_severity"][severity] = stats["by_severity"].get(severity, 0) + 1

        return stats


# Global error handler instance
error_handler = ErrorHandler()
