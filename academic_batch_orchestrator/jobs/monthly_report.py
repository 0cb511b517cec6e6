"""
Monthly statistics report.

Four collection steps each read one store's figures for the previous calendar
month into the execution context. The last step assembles them and announces
the report to the administrators on the message bus.
"""

import asyncio
from datetime import date, datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from ..core.exceptions import MissingFieldError
from ..models import context_keys as keys
from ..models.execution import ContextKey, ExecutionContext, StepExecution, utc_now
from ..models.records import EnrollmentStatus, Priority
from ..services.fault_tolerance import BackoffPolicy, ErrorClassifier, RetryPolicy, retry_async
from ..services.message_bus import MessageBus, event_payload
from ..services.task_step import Tasklet
from ..stores.account import AccountStore
from ..utils.logger import get_logger


REPORT_EVENT = "MONTHLY_REPORT_GENERATED"


def previous_month(today: date) -> Tuple[date, date]:
    """First and last day of the calendar month before today."""
    last_day = today.replace(day=1) - timedelta(days=1)
    return last_day.replace(day=1), last_day


def rate(part: Optional[int], whole: Optional[int]) -> float:
    """Percentage of part in whole, rounded to two decimals; 0.0 when whole is empty."""
    if not whole:
        return 0.0
    return round(100.0 * (part or 0) / whole, 2)


class MonthlyStatsTasklet(Tasklet):
    """
    Reads one store's previous-month figures into the execution context.

    Subclasses name the context key and add their derived rates in summarize().

    Args:
        store: Any store exposing monthly_stats(start, end)
        clock: Source of the current time
    """

    key: ContextKey = None

    def __init__(self, store, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.clock = clock
        self.logger = get_logger(__name__)

    def summarize(self, raw: Dict[str, Any]) -> Dict[str, Any]:
        return dict(raw)

    async def execute(self, step_execution: StepExecution, context: ExecutionContext) -> Optional[str]:
        start, end = previous_month(self.clock().date())
        stats = self.summarize(await self.store.monthly_stats(start, end))
        stats["period"] = {"start": start.isoformat(), "end": end.isoformat()}

        context.put(self.key, stats)
        step_execution.read_count += 1
        self.logger.info("Monthly statistics collected", extra={
            "statistics": self.key.name,
            "period_start": start.isoformat(),
            "period_end": end.isoformat()
        })
        return f"{self.key.name} collected for {start:%Y-%m}"


class EnrollmentStatsTasklet(MonthlyStatsTasklet):
    key = keys.ENROLLMENT_STATS

    def summarize(self, raw: Dict[str, Any]) -> Dict[str, Any]:
        stats = dict(raw)
        by_status = stats.get("by_status") or {}
        stats["validation_rate"] = rate(by_status.get(EnrollmentStatus.VALIDATED.value), stats.get("total"))
        stats["derogation_grant_rate"] = rate(stats.get("derogations_granted"), stats.get("derogations_requested"))
        return stats


class DefenseStatsTasklet(MonthlyStatsTasklet):
    key = keys.DEFENSE_STATS

    def summarize(self, raw: Dict[str, Any]) -> Dict[str, Any]:
        stats = dict(raw)
        stats["favorable_report_rate"] = rate(stats.get("reports_favorable"), stats.get("reports"))
        return stats


class NotificationStatsTasklet(MonthlyStatsTasklet):
    key = keys.NOTIFICATION_STATS

    def summarize(self, raw: Dict[str, Any]) -> Dict[str, Any]:
        stats = dict(raw)
        stats["success_rate"] = rate(stats.get("sent"), stats.get("total"))
        return stats


class UserStatsTasklet(MonthlyStatsTasklet):
    key = keys.USER_STATS

    def summarize(self, raw: Dict[str, Any]) -> Dict[str, Any]:
        stats = dict(raw)
        stats["connection_rate"] = rate(stats.get("active_accounts"), stats.get("total_accounts"))
        return stats


REPORT_SECTIONS = {
    "enrollments": keys.ENROLLMENT_STATS,
    "defenses": keys.DEFENSE_STATS,
    "notifications": keys.NOTIFICATION_STATS,
    "users": keys.USER_STATS,
}


class MonthlyReportNotificationTasklet(Tasklet):
    """
    Publishes the monthly report event to every administrator.

    Every statistics section must be present; a missing one fails the step
    instead of sending a partial report. The event key carries the month, so a
    rerun of the same month replaces the earlier message downstream.

    Args:
        accounts: Account store listing the administrators
        bus: Message bus
        topic: Notification topic
        fallback_recipient: Recipient used when no account holds the admin role
        retry_policy: Retries of the publish
        backoff_policy: Delay between publish attempts
        classifier: Error classifier
        sleep: Awaitable used for backoff delays
        clock: Source of the current time
    """

    def __init__(self, accounts: AccountStore, bus: MessageBus, topic: str, fallback_recipient: str,
                 retry_policy: Optional[RetryPolicy] = None,
                 backoff_policy: Optional[BackoffPolicy] = None,
                 classifier: Optional[ErrorClassifier] = None,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
                 clock: Callable[[], datetime] = utc_now):
        self.accounts = accounts
        self.bus = bus
        self.topic = topic
        self.fallback_recipient = fallback_recipient
        self.retry_policy = retry_policy or RetryPolicy()
        self.backoff_policy = backoff_policy or BackoffPolicy()
        self.classifier = classifier or ErrorClassifier()
        self.sleep = sleep
        self.clock = clock
        self.logger = get_logger(__name__)

    async def recipients(self) -> List[str]:
        admins = await self.accounts.admin_emails()
        return admins or [self.fallback_recipient]

    async def execute(self, step_execution: StepExecution, context: ExecutionContext) -> Optional[str]:
        sections = {}
        for section, key in REPORT_SECTIONS.items():
            if key not in context:
                raise MissingFieldError(key.name)
            sections[section] = context.get(key)

        start, end = previous_month(self.clock().date())
        recipients = await self.recipients()
        payload = event_payload(
            REPORT_EVENT,
            [],
            Priority.NORMAL.value,
            recipients=recipients,
            period={"start": start.isoformat(), "end": end.isoformat()},
            **sections
        )
        message_key = f"monthly-report:{start:%Y-%m}"
        await retry_async(
            lambda: self.bus.publish(self.topic, message_key, payload),
            self.retry_policy,
            self.backoff_policy,
            self.classifier,
            sleep=self.sleep,
            operation=f"publish {message_key}"
        )

        step_execution.write_count += 1
        self.logger.info("Monthly report sent", extra={
            "message_key": message_key,
            "recipients": len(recipients),
            "enrollments": sections["enrollments"].get("total"),
            "defenses": sections["defenses"].get("completed")
        })
        return f"monthly report for {start:%Y-%m} sent to {len(recipients)} recipient(s)"
