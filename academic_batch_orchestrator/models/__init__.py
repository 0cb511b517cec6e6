"""
Data models for Academic Batch Orchestrator

This module contains the execution tracking models (job and step executions,
the shared execution context), job definitions, the records read from the owned
stores and the anomalies found by the consistency reconciler.
"""

# Execution models
from .execution import (
    JobExecution,
    JobExecutionStatus,
    StepExecution,
    StepStatus,
    ExecutionContext,
    ContextKey,
    ExecutionMetrics,
    utc_now
)

# Job models
from .job import Step, JobDefinition

# Store records
from .records import (
    Enrollment,
    EnrollmentStatus,
    DefenseRequest,
    DefenseRequestStatus,
    Defense,
    DefenseStatus,
    Mention,
    PASSING_MENTIONS,
    Account,
    Role,
    Notification,
    NotificationStatus,
    Priority,
    ExpiredToken
)

# Reconciliation models
from .anomaly import Anomaly, CorrectiveAction, Violation, notification_key

__all__ = [
    # Execution models
    "JobExecution",
    "JobExecutionStatus",
    "StepExecution",
    "StepStatus",
    "ExecutionContext",
    "ContextKey",
    "ExecutionMetrics",
    "utc_now",

    # Job models
    "Step",
    "JobDefinition",

    # Store records
    "Enrollment",
    "EnrollmentStatus",
    "DefenseRequest",
    "DefenseRequestStatus",
    "Defense",
    "DefenseStatus",
    "Mention",
    "PASSING_MENTIONS",
    "Account",
    "Role",
    "Notification",
    "NotificationStatus",
    "Priority",
    "ExpiredToken",

    # Reconciliation models
    "Anomaly",
    "CorrectiveAction",
    "Violation",
    "notification_key"
]
