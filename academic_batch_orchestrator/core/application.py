"""
Application wiring for Academic Batch Orchestrator

BatchApplication opens the store pools, the message bus and the execution
history described by BatchSettings, registers every job with a JobOrchestrator
and exposes the cron scheduler.
"""

from typing import List, Optional

from ..jobs.registry import Stores, build_jobs
from ..services.failure_notifier import FailureNotificationListener
from ..services.history import ExecutionHistoryStore, InMemoryExecutionHistory, PostgresExecutionHistory
from ..services.message_bus import InMemoryMessageBus, MessageBus, RestProxyMessageBus
from ..services.monitoring_service import MonitoringListener
from ..stores.account import PostgresAccountStore
from ..stores.defense import PostgresDefenseStore
from ..stores.enrollment import PostgresEnrollmentStore
from ..stores.notification import PostgresNotificationStore
from ..utils.config import BatchSettings
from ..utils.database import StoreRegistry
from ..utils.logger import get_logger
from .orchestrator import JobOrchestrator
from .scheduler import BatchScheduler


OWNED_STORES = ("enrollment", "defense", "account", "notification")
HISTORY_STORE = "batch"


class BatchApplication:
    """
    Lifecycle owner of every long-lived resource.

    Args:
        settings: Loaded settings
        bus: Message bus override; by default a REST proxy bus when
            notifications.bus_url is set, else an in-memory bus
        history: History store override; by default PostgreSQL when a "batch"
            store is configured, else in memory
    """

    def __init__(self, settings: BatchSettings, bus: Optional[MessageBus] = None,
                 history: Optional[ExecutionHistoryStore] = None):
        self.settings = settings
        self.logger = get_logger(__name__)
        self.registry = StoreRegistry.from_settings(settings)
        self.bus = bus or self._default_bus()
        self._history = history
        self.monitoring = MonitoringListener()
        self.orchestrator: Optional[JobOrchestrator] = None
        self.scheduler: Optional[BatchScheduler] = None
        self._started = False

    def _default_bus(self) -> MessageBus:
        notifications = self.settings.notifications
        if notifications.bus_url:
            return RestProxyMessageBus(notifications.bus_url, timeout=notifications.bus_timeout)
        self.logger.warning("No message bus configured, events are kept in memory")
        return InMemoryMessageBus()

    async def start(self) -> JobOrchestrator:
        """Open resources and return the ready orchestrator."""
        if self._started:
            return self.orchestrator

        for name in OWNED_STORES:
            self.settings.store(name)

        await self.registry.initialize()
        stores = Stores(
            enrollments=PostgresEnrollmentStore(self.registry["enrollment"]),
            defenses=PostgresDefenseStore(self.registry["defense"]),
            accounts=PostgresAccountStore(self.registry["account"]),
            notifications=PostgresNotificationStore(self.registry["notification"])
        )
        try:
            await stores.notifications.ensure_schema()
            history = self._history or await self._default_history()
            await self.bus.start()
        except Exception:
            await self.registry.close()
            raise

        notifications = self.settings.notifications
        self.orchestrator = JobOrchestrator(history, listeners=[
            self.monitoring,
            FailureNotificationListener(self.bus, notifications.alerts_topic, notifications.admin_recipient)
        ])
        for definition in build_jobs(self.settings, stores, self.bus, history):
            self.orchestrator.register(definition)

        self.scheduler = BatchScheduler(self.orchestrator, self.settings)
        self._started = True
        self.logger.info("Batch application started", extra={
            "stores": self.registry.names(),
            "jobs": [definition.name for definition in self.orchestrator.jobs()]
        })
        return self.orchestrator

    async def _default_history(self) -> ExecutionHistoryStore:
        if HISTORY_STORE in self.registry:
            history = PostgresExecutionHistory(self.registry[HISTORY_STORE])
            await history.ensure_schema()
            return history
        self.logger.warning("No batch store configured, execution history is kept in memory")
        return InMemoryExecutionHistory()

    async def stop(self) -> None:
        if not self._started:
            return
        if self.scheduler is not None:
            self.scheduler.stop()
        await self.bus.close()
        await self.registry.close()
        self._started = False
        self.logger.info("Batch application stopped")

    def job_names(self) -> List[str]:
        return [definition.name for definition in self.orchestrator.jobs()] if self.orchestrator else []

    async def __aenter__(self) -> "BatchApplication":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()
