"""
Store repositories for Academic Batch Orchestrator

Each independently owned database is reached through one repository. The
abstract classes describe what the batch jobs need; the Postgres classes
implement them over a StoreAccessor.
"""

from .base import Transactional, PathReferenceSource, PostgresRepository
from .enrollment import EnrollmentStore, PostgresEnrollmentStore
from .defense import DefenseStore, PostgresDefenseStore
from .account import AccountStore, PostgresAccountStore
from .notification import NotificationStore, PostgresNotificationStore

__all__ = [
    "Transactional",
    "PathReferenceSource",
    "PostgresRepository",
    "EnrollmentStore",
    "PostgresEnrollmentStore",
    "DefenseStore",
    "PostgresDefenseStore",
    "AccountStore",
    "PostgresAccountStore",
    "NotificationStore",
    "PostgresNotificationStore"
]
