"""
Notification store repository.

Besides the notification rows written by the other services, the store keeps
the events the batch jobs owe to the bus. Such an event is written as a PENDING
row keyed by its message key before the change it announces is made, and marked
SENT once published, so an event whose publish failed or never happened is
delivered by a later run.
"""

import json
from abc import abstractmethod
from datetime import date, datetime
from importlib import resources
from typing import Any, Dict, List, Optional

from ..core.exceptions import StoreError
from ..models.records import Notification, NotificationStatus
from .base import PostgresRepository, Transactional


class NotificationStore(Transactional):
    """Operations the batch jobs need from the notification store."""

    name = "notification"

    @abstractmethod
    async def stale_pending(self, created_before: datetime) -> List[Notification]:
        """PENDING notifications created before the cutoff, oldest first."""

    @abstractmethod
    async def mark_sent(self, notification_id: int, sent_at: datetime) -> bool:
        """PENDING -> SENT; return whether the notification was still PENDING."""

    @abstractmethod
    async def mark_failed(self, notification_id: int, error_message: str) -> bool:
        """PENDING -> FAILED; return whether the notification was still PENDING."""

    @abstractmethod
    async def enqueue_event(self, event_key: str, recipient: str, subject: str, body: str,
                            event_type: str, priority: str, payload: Dict[str, Any],
                            created_at: datetime) -> int:
        """
        Store a PENDING notification for an event that must reach the bus.

        A row already holding event_key is reset to PENDING with the new payload.

        Returns:
            Id of the notification row
        """

    @abstractmethod
    async def pending_events(self, key_prefix: str) -> List[Notification]:
        """PENDING event notifications whose key starts with key_prefix, oldest first."""

    @abstractmethod
    async def discard_pending(self, notification_id: int) -> bool:
        """Delete a notification that is still PENDING; return whether it was."""

    @abstractmethod
    async def delete_sent_logs(self, sent_before: datetime) -> int:
        """Delete SENT log rows older than the cutoff; failed ones are kept."""

    @abstractmethod
    async def duration_alert_sent(self, enrollment_id: int, alert_type: str) -> bool:
        pass

    @abstractmethod
    async def record_duration_alert(self, enrollment_id: int, alert_type: str, connection: Any) -> bool:
        """Remember that an alert went out; return False if it was already recorded."""

    @abstractmethod
    async def monthly_stats(self, start: date, end: date) -> Dict[str, Any]:
        """
        Raw notification counts for notifications created between start and end inclusive.

        Keys: total, sent, failed, by_type.
        """


class PostgresNotificationStore(PostgresRepository, NotificationStore):
    """NotificationStore backed by the notification PostgreSQL database."""

    SELECT = """
        SELECT id, recipient, subject, body, type, priority, status, created_at,
               sent_at, error_message, event_key, payload
        FROM notification
    """

    async def ensure_schema(self) -> None:
        """Add the event key and payload columns the outgoing events need."""
        try:
            ddl = resources.files("academic_batch_orchestrator").joinpath("sql/notification_outbox.sql").read_text()
        except (FileNotFoundError, ModuleNotFoundError) as e:
            raise StoreError(self.accessor.name, "ensure_schema", f"schema file missing: {e}") from e
        await self.accessor.execute(ddl)

    async def stale_pending(self, created_before: datetime) -> List[Notification]:
        rows = await self.accessor.fetch(
            self.SELECT + " WHERE status = $1 AND created_at < $2 ORDER BY created_at",
            NotificationStatus.PENDING.value, created_before
        )
        return [_notification(row) for row in rows]

    async def mark_sent(self, notification_id: int, sent_at: datetime) -> bool:
        updated = await self.accessor.execute(
            "UPDATE notification SET status = $2, sent_at = $3, error_message = NULL "
            "WHERE id = $1 AND status = $4",
            notification_id, NotificationStatus.SENT.value, sent_at, NotificationStatus.PENDING.value
        )
        return updated > 0

    async def mark_failed(self, notification_id: int, error_message: str) -> bool:
        updated = await self.accessor.execute(
            "UPDATE notification SET status = $2, error_message = $3 "
            "WHERE id = $1 AND status = $4",
            notification_id, NotificationStatus.FAILED.value, error_message[:1000],
            NotificationStatus.PENDING.value
        )
        return updated > 0

    async def enqueue_event(self, event_key: str, recipient: str, subject: str, body: str,
                            event_type: str, priority: str, payload: Dict[str, Any],
                            created_at: datetime) -> int:
        return await self.accessor.fetchval("""
            INSERT INTO notification (recipient, subject, body, type, priority, status,
                                      created_at, event_key, payload)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9::jsonb)
            ON CONFLICT (event_key) DO UPDATE
               SET status = EXCLUDED.status, payload = EXCLUDED.payload,
                   created_at = EXCLUDED.created_at, sent_at = NULL, error_message = NULL
            RETURNING id
        """, recipient, subject, body, event_type, priority, NotificationStatus.PENDING.value,
            created_at, event_key, json.dumps(payload, default=str))

    async def pending_events(self, key_prefix: str) -> List[Notification]:
        rows = await self.accessor.fetch(
            self.SELECT + " WHERE status = $1 AND starts_with(event_key, $2) ORDER BY created_at, id",
            NotificationStatus.PENDING.value, key_prefix
        )
        return [_notification(row) for row in rows]

    async def discard_pending(self, notification_id: int) -> bool:
        deleted = await self.accessor.execute(
            "DELETE FROM notification WHERE id = $1 AND status = $2",
            notification_id, NotificationStatus.PENDING.value
        )
        return deleted > 0

    async def delete_sent_logs(self, sent_before: datetime) -> int:
        return await self.accessor.execute(
            "DELETE FROM notification_log WHERE status = $1 AND sent_at < $2 "
            "AND (error_message IS NULL OR error_message = '')",
            NotificationStatus.SENT.value, sent_before
        )

    async def duration_alert_sent(self, enrollment_id: int, alert_type: str) -> bool:
        found = await self.accessor.fetchval(
            "SELECT 1 FROM duration_alert_sent WHERE enrollment_id = $1 AND alert_type = $2",
            enrollment_id, alert_type
        )
        return found is not None

    async def record_duration_alert(self, enrollment_id: int, alert_type: str, connection: Any) -> bool:
        inserted = await connection.fetchval(
            "INSERT INTO duration_alert_sent (enrollment_id, alert_type, sent_at) VALUES ($1, $2, now()) "
            "ON CONFLICT (enrollment_id, alert_type) DO NOTHING RETURNING enrollment_id",
            enrollment_id, alert_type
        )
        return inserted is not None

    async def monthly_stats(self, start: date, end: date) -> Dict[str, Any]:
        totals = await self.accessor.fetchrow("""
            SELECT count(*) AS total,
                   count(*) FILTER (WHERE status = $3) AS sent,
                   count(*) FILTER (WHERE status = $4) AS failed
            FROM notification WHERE created_at::date BETWEEN $1 AND $2
        """, start, end, NotificationStatus.SENT.value, NotificationStatus.FAILED.value)
        by_type = await self.accessor.fetch(
            "SELECT type, count(*) AS count FROM notification "
            "WHERE created_at::date BETWEEN $1 AND $2 GROUP BY type",
            start, end
        )
        return {
            "total": totals["total"],
            "sent": totals["sent"],
            "failed": totals["failed"],
            "by_type": {row["type"]: row["count"] for row in by_type},
        }


def _notification(row: Dict[str, Any]) -> Notification:
    values = dict(row)
    if isinstance(values.get("payload"), str):
        values["payload"] = json.loads(values["payload"])
    return Notification(**values)
