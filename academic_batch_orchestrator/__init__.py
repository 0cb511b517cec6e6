"""
Academic Batch Orchestrator

Scheduled batch processing and cross-store consistency reconciliation for a
doctoral administration platform whose enrollment, defense, account and
notification data live in independently owned databases.

Key Features:
- Chunk-oriented processing with per-chunk transactions
- Retry with exponential backoff and bounded skipping, by error classification
- Sequential job orchestration with a shared execution context and listeners
- Consistency reconciliation with guarded, idempotent corrections
- Retry of stale notifications over the message bus
- Execution history, Prometheus metrics and a cron scheduler
- Command-line interface

Usage:
    from academic_batch_orchestrator import BatchApplication, load_settings

    settings = load_settings("batch.yaml")
    async with BatchApplication(settings) as app:
        execution = await app.scheduler.trigger("data-consistency")
        print(execution.status, execution.exit_message)
"""

__version__ = "1.0.0"
__author__ = "Academic Batch Orchestrator Team"
__license__ = "MIT"

# Core
from .core.orchestrator import JobOrchestrator, make_run_key
from .core.scheduler import BatchScheduler
from .core.listeners import JobListener
from .core.application import BatchApplication

# Data models
from .models.execution import JobExecution, JobExecutionStatus, StepExecution, StepStatus, ExecutionContext
from .models.job import Step, JobDefinition

# Steps
from .services.chunk_engine import ChunkStep, run_chunk_step
from .services.task_step import Tasklet, TaskStep
from .services.fault_tolerance import BackoffPolicy, RetryPolicy, SkipPolicy, ErrorClassifier

# Utilities
from .utils.config import BatchSettings, load_settings
from .utils.logger import setup_logger, get_logger

# Exceptions
from .core.exceptions import (
    BatchOrchestratorError,
    ConfigurationError,
    JobNotFoundError,
    DuplicateRunKeyError,
    JobExecutionError,
    StepFailedError,
    SkipLimitExceededError,
    StoreError,
    MessageBusError
)

__all__ = [
    # Core
    "JobOrchestrator",
    "make_run_key",
    "BatchScheduler",
    "JobListener",
    "BatchApplication",

    # Models
    "JobExecution",
    "JobExecutionStatus",
    "StepExecution",
    "StepStatus",
    "ExecutionContext",
    "Step",
    "JobDefinition",

    # Steps
    "ChunkStep",
    "run_chunk_step",
    "Tasklet",
    "TaskStep",
    "BackoffPolicy",
    "RetryPolicy",
    "SkipPolicy",
    "ErrorClassifier",

    # Utilities
    "BatchSettings",
    "load_settings",
    "setup_logger",
    "get_logger",

    # Exceptions
    "BatchOrchestratorError",
    "ConfigurationError",
    "JobNotFoundError",
    "DuplicateRunKeyError",
    "JobExecutionError",
    "StepFailedError",
    "SkipLimitExceededError",
    "StoreError",
    "MessageBusError",

    # Package metadata
    "__version__",
    "__author__",
    "__license__"
]

# Package-level configuration
import logging
logging.getLogger(__name__).addHandler(logging.NullHandler())
