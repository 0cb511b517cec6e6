"""
Exception classes for Academic Batch Orchestrator

Provides the exception hierarchy for every failure the batch engine can observe,
plus the ErrorKind taxonomy used by the fault tolerance policies to decide whether
a failure is retried, skipped or treated as fatal.
"""

from enum import Enum
from typing import Optional, Dict, Any


class ErrorKind(Enum):
    """Explicit classification of a failure, independent of its message text."""
    DATABASE_TRANSIENT = "database_transient"
    DATABASE_DEADLOCK = "database_deadlock"
    MESSAGE_BUS_UNAVAILABLE = "message_bus_unavailable"
    FILESYSTEM_IO = "filesystem_io"
    MALFORMED_INPUT = "malformed_input"
    MISSING_OPTIONAL_FIELD = "missing_optional_field"
    FATAL = "fatal"
    UNCLASSIFIED = "unclassified"


class BatchOrchestratorError(Exception):
    """Base exception for all batch orchestrator errors."""

    def __init__(self, message: str, error_code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for JSON serialization."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "error_code": self.error_code,
            "details": self.details
        }


class ConfigurationError(BatchOrchestratorError):
    """Raised when there's an error in configuration."""

    def __init__(self, config_key: str, message: str):
        super().__init__(
            f"Configuration error for {config_key}: {message}",
            error_code="CONFIGURATION_ERROR",
            details={"config_key": config_key}
        )


class StoreError(BatchOrchestratorError):
    """Raised when a store operation fails in a way that retrying will not fix."""

    def __init__(self, store: str, operation: str, message: str, error_code: str = "STORE_ERROR"):
        super().__init__(
            f"Store '{store}' operation '{operation}' failed: {message}",
            error_code=error_code,
            details={"store": store, "operation": operation}
        )
        self.store = store
        self.operation = operation


class TransientStoreError(StoreError):
    """Raised when a store is temporarily unreachable or a transaction must be replayed."""

    def __init__(self, store: str, operation: str, message: str):
        super().__init__(store, operation, message, error_code="STORE_TRANSIENT")


class DeadlockError(StoreError):
    """Raised when the store aborted a transaction to break a deadlock."""

    def __init__(self, store: str, operation: str, message: str):
        super().__init__(store, operation, message, error_code="STORE_DEADLOCK")


class MessageBusError(BatchOrchestratorError):
    """Raised when the message bus rejects a publish."""

    def __init__(self, topic: str, message: str, key: Optional[str] = None, error_code: str = "MESSAGE_BUS_ERROR"):
        super().__init__(
            f"Publish to '{topic}' failed: {message}",
            error_code=error_code,
            details={"topic": topic, "key": key}
        )
        self.topic = topic
        self.key = key


class MessageBusUnavailableError(MessageBusError):
    """Raised when the message bus cannot be reached."""

    def __init__(self, topic: str, message: str, key: Optional[str] = None):
        super().__init__(topic, message, key=key, error_code="MESSAGE_BUS_UNAVAILABLE")


class MalformedRecordError(BatchOrchestratorError):
    """Raised when an input record cannot be interpreted."""

    def __init__(self, message: str, record_id: Any = None, item: Any = None):
        super().__init__(
            f"Malformed record: {message}",
            error_code="MALFORMED_RECORD",
            details={"record_id": record_id}
        )
        self.item = item


class MissingFieldError(BatchOrchestratorError):
    """Raised when an optional field needed by a processor is absent."""

    def __init__(self, field: str, record_id: Any = None, item: Any = None):
        super().__init__(
            f"Missing field '{field}'",
            error_code="MISSING_FIELD",
            details={"field": field, "record_id": record_id}
        )
        self.item = item


class JobNotFoundError(BatchOrchestratorError):
    """Raised when a requested job is not registered."""

    def __init__(self, job_name: str):
        super().__init__(
            f"Job {job_name} not found",
            error_code="JOB_NOT_FOUND",
            details={"job_name": job_name}
        )


class DuplicateRunKeyError(BatchOrchestratorError):
    """Raised when a run key is reused for a job that already ran or is running."""

    def __init__(self, job_name: str, run_key: str):
        super().__init__(
            f"Job {job_name} already has an execution with run key {run_key}",
            error_code="DUPLICATE_RUN_KEY",
            details={"job_name": job_name, "run_key": run_key}
        )


class JobExecutionError(BatchOrchestratorError):
    """Raised when job execution encounters an error outside of its steps."""

    def __init__(self, job_name: str, message: str, stage: Optional[str] = None):
        super().__init__(
            f"Job {job_name} execution failed: {message}",
            error_code="JOB_EXECUTION_ERROR",
            details={"job_name": job_name, "stage": stage}
        )


class StepFailedError(BatchOrchestratorError):
    """Raised by a step that cannot complete; the owning job execution fails."""

    def __init__(self, step_name: str, message: str, cause: Optional[BaseException] = None,
                 error_code: str = "STEP_FAILED"):
        super().__init__(
            f"Step {step_name} failed: {message}",
            error_code=error_code,
            details={
                "step_name": step_name,
                "cause": type(cause).__name__ if cause is not None else None
            }
        )
        self.step_name = step_name
        self.reason = message
        self.cause = cause


class SkipLimitExceededError(StepFailedError):
    """Raised when a step has skipped more items than its skip limit allows."""

    def __init__(self, step_name: str, skip_limit: int, cause: Optional[BaseException] = None):
        super().__init__(
            step_name,
            f"skip limit of {skip_limit} exceeded",
            cause=cause,
            error_code="SKIP_LIMIT_EXCEEDED"
        )
        self.skip_limit = skip_limit


class ReaderInterruptedError(BatchOrchestratorError):
    """Raised when an item source stopped on an error and cannot resume."""

    def __init__(self, message: str, records_read: int = 0, cause: Optional[BaseException] = None):
        super().__init__(
            message,
            error_code="READER_INTERRUPTED",
            details={
                "records_read": records_read,
                "cause": type(cause).__name__ if cause is not None else None
            }
        )
        self.records_read = records_read
        self.cause = cause


class ReconciliationError(BatchOrchestratorError):
    """Raised when a reconciliation pass cannot finish."""

    def __init__(self, pass_name: str, message: str):
        super().__init__(
            f"Reconciliation pass {pass_name} failed: {message}",
            error_code="RECONCILIATION_ERROR",
            details={"pass_name": pass_name}
        )


# Global error registry for tracking patterns
class ErrorRegistry:
    """Registry for tracking and analyzing errors."""

    def __init__(self):
        self.error_counts = {}

    def record_error(self, error: BaseException):
        """Record an error for analysis."""
        error_type = error.__class__.__name__
        self.error_counts[error_type] = self.error_counts.get(error_type, 0) + 1

    def get_error_statistics(self) -> Dict[str, Any]:
        """Get error statistics for monitoring."""
        return {
            "total_errors": sum(self.error_counts.values()),
            "error_counts": dict(self.error_counts),
            "most_common_error": max(self.error_counts.items(), key=lambda x: x[1])[0] if self.error_counts else None
        }

    def reset(self):
        """Forget all recorded errors."""
        self.error_counts.clear()


# Global error registry instance
error_registry = ErrorRegistry()
