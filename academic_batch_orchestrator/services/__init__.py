"""
Services package for Academic Batch Orchestrator

Contains the step runners (chunk and task steps), the fault tolerance policies,
the execution history stores, the message bus publishers and the listeners.
"""

from .fault_tolerance import BackoffPolicy, RetryPolicy, SkipPolicy, ErrorClassifier, retry_async
from .chunk_engine import ChunkStep, ItemReader, ItemProcessor, ItemWriter, run_chunk_step
from .task_step import Tasklet, TaskStep
from .history import ExecutionHistoryStore, InMemoryExecutionHistory, PostgresExecutionHistory
from .message_bus import MessageBus, InMemoryMessageBus, RestProxyMessageBus
from .monitoring_service import MonitoringListener, ConsistencySummaryListener
from .failure_notifier import FailureNotificationListener
from .notification_sweeper import NotificationRetrySweeper

__all__ = [
    "BackoffPolicy",
    "RetryPolicy",
    "SkipPolicy",
    "ErrorClassifier",
    "retry_async",
    "ChunkStep",
    "ItemReader",
    "ItemProcessor",
    "ItemWriter",
    "run_chunk_step",
    "Tasklet",
    "TaskStep",
    "ExecutionHistoryStore",
    "InMemoryExecutionHistory",
    "PostgresExecutionHistory",
    "MessageBus",
    "InMemoryMessageBus",
    "RestProxyMessageBus",
    "MonitoringListener",
    "ConsistencySummaryListener",
    "FailureNotificationListener",
    "NotificationRetrySweeper"
]
