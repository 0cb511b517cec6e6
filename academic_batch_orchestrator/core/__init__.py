"""
Core package for Academic Batch Orchestrator

Contains the job orchestrator, the cron scheduler, the listener interface and
the exception hierarchy.
"""

from .orchestrator import JobOrchestrator, make_run_key
from .listeners import JobListener
from .scheduler import BatchScheduler
from .exceptions import (
    ErrorKind,
    BatchOrchestratorError,
    ConfigurationError,
    StoreError,
    TransientStoreError,
    DeadlockError,
    MessageBusError,
    MessageBusUnavailableError,
    MalformedRecordError,
    MissingFieldError,
    JobNotFoundError,
    DuplicateRunKeyError,
    JobExecutionError,
    StepFailedError,
    SkipLimitExceededError,
    ReaderInterruptedError,
    ReconciliationError,
    error_registry
)

__all__ = [
    "JobOrchestrator",
    "make_run_key",
    "JobListener",
    "BatchScheduler",
    "ErrorKind",
    "BatchOrchestratorError",
    "ConfigurationError",
    "StoreError",
    "TransientStoreError",
    "DeadlockError",
    "MessageBusError",
    "MessageBusUnavailableError",
    "MalformedRecordError",
    "MissingFieldError",
    "JobNotFoundError",
    "DuplicateRunKeyError",
    "JobExecutionError",
    "StepFailedError",
    "SkipLimitExceededError",
    "ReaderInterruptedError",
    "ReconciliationError",
    "error_registry"
]
