"""
Notification retry sweeper.

Re-publishes notifications that have been PENDING for longer than the staleness
window. A notification that still cannot be published is marked FAILED and an
alert goes to the operators on the separate alerts topic.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional

from ..core.exceptions import MessageBusError, error_registry
from ..models import context_keys as keys
from ..models.execution import ExecutionContext, StepExecution, utc_now
from ..models.records import Notification, Priority
from ..stores.notification import NotificationStore
from ..utils.config import NotificationSettings
from ..utils.logger import get_logger
from .fault_tolerance import BackoffPolicy, ErrorClassifier, RetryPolicy, retry_async
from .message_bus import MessageBus, event_payload
from .task_step import Tasklet


RETRY_FAILED_EVENT = "NOTIFICATION_RETRY_FAILED"


class NotificationRetrySweeper(Tasklet):
    """
    Tasklet retrying stale PENDING notifications.

    Args:
        store: Notification store
        bus: Message bus
        settings: Topics and staleness window
        retry_policy: Retry policy for each publish
        backoff_policy: Delay schedule between publish attempts
        classifier: Error classifier
        sleep: Awaitable used for backoff delays
        clock: Source of the current time
    """

    def __init__(self, store: NotificationStore, bus: MessageBus, settings: NotificationSettings,
                 retry_policy: Optional[RetryPolicy] = None,
                 backoff_policy: Optional[BackoffPolicy] = None,
                 classifier: Optional[ErrorClassifier] = None,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
                 clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.bus = bus
        self.settings = settings
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=3)
        self.backoff_policy = backoff_policy or BackoffPolicy()
        self.classifier = classifier or ErrorClassifier()
        self.sleep = sleep
        self.clock = clock
        self.logger = get_logger(__name__)

    async def execute(self, step_execution: StepExecution, context: ExecutionContext) -> Optional[str]:
        cutoff = self.clock() - timedelta(hours=self.settings.staleness_hours)
        stale = await self.store.stale_pending(cutoff)
        if not stale:
            self.logger.info("No stale notifications to retry")
            return "no stale notifications"

        self.logger.info("Retrying stale notifications", extra={
            "count": len(stale),
            "created_before": cutoff.isoformat()
        })

        for notification in stale:
            step_execution.read_count += 1
            try:
                await self._publish(self.settings.topic, notification.publish_key, notification.to_payload())
            except MessageBusError as e:
                await self.store.mark_failed(notification.id, str(e))
                context.increment(keys.NOTIFICATION_RETRY_FAILURE)
                step_execution.write_skip_count += 1
                self.logger.warning("Notification retry failed", extra={
                    "notification_id": notification.id,
                    "error_message": str(e)
                })
                await self._alert(notification, e)
                continue

            if await self.store.mark_sent(notification.id, self.clock()):
                step_execution.write_count += 1
            context.increment(keys.NOTIFICATION_RETRY_SUCCESS)

        succeeded = context.get(keys.NOTIFICATION_RETRY_SUCCESS)
        failed = context.get(keys.NOTIFICATION_RETRY_FAILURE)
        return f"retried {len(stale)}: {succeeded} sent, {failed} failed"

    async def _publish(self, topic: str, key: str, payload: dict) -> None:
        await retry_async(
            lambda: self.bus.publish(topic, key, payload),
            self.retry_policy,
            self.backoff_policy,
            self.classifier,
            sleep=self.sleep,
            operation=f"publish {key}"
        )

    async def _alert(self, notification: Notification, error: Exception) -> None:
        key = f"notification-retry-failed:{notification.id}"
        payload = event_payload(
            RETRY_FAILED_EVENT,
            [notification.id],
            Priority.HIGH.value,
            recipient=self.settings.admin_recipient,
            original_recipient=notification.recipient,
            original_subject=notification.subject,
            error_message=str(error)
        )
        try:
            await self._publish(self.settings.alerts_topic, key, payload)
        except MessageBusError as e:
            error_registry.record_error(e)
            self.logger.error("Retry failure alert not delivered", extra={
                "notification_id": notification.id,
                "alert_key": key,
                "error_message": str(e)
            })
