"""
Batch jobs of the doctoral administration platform.

Each job is a JobDefinition built from chunk and task steps:
data-consistency, archive, duration-alert, token-cleanup, history-cleanup and
monthly-report.
"""

from .registry import (
    DATA_CONSISTENCY,
    ARCHIVE,
    DURATION_ALERT,
    TOKEN_CLEANUP,
    HISTORY_CLEANUP,
    MONTHLY_REPORT,
    Stores,
    JobFactory,
    build_jobs
)

__all__ = [
    "DATA_CONSISTENCY",
    "ARCHIVE",
    "DURATION_ALERT",
    "TOKEN_CLEANUP",
    "HISTORY_CLEANUP",
    "MONTHLY_REPORT",
    "Stores",
    "JobFactory",
    "build_jobs"
]
