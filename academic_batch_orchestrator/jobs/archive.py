"""
Archive job.

Copies decided enrollments and completed defenses into their archive tables and
flags the originals archived, then purges old notification log rows.
"""

from dataclasses import asdict
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Union

from ..models.execution import ExecutionContext, StepExecution, utc_now
from ..models.records import Defense, Enrollment
from ..services.chunk_engine import ItemProcessor, ItemWriter
from ..services.task_step import Tasklet
from ..stores.notification import NotificationStore
from ..utils.logger import get_logger


ARCHIVED_BY = "SYSTEM"


class ArchiveProcessor(ItemProcessor):
    """
    Turns an enrollment or a defense into its archive record.

    Records already flagged archived are filtered, which keeps a re-run from
    archiving twice when the reader saw a stale row.
    """

    def __init__(self, clock: Callable[[], datetime] = utc_now):
        self.clock = clock
        self.logger = get_logger(__name__)

    async def process(self, item: Union[Enrollment, Defense]) -> Optional[Dict[str, Any]]:
        if not isinstance(item, (Enrollment, Defense)):
            raise ValueError(f"cannot archive {type(item).__name__}")
        if item.archived:
            return None

        record = asdict(item)
        record.pop("archived", None)
        record.update(
            archive_type="ENROLLMENT" if isinstance(item, Enrollment) else "DEFENSE",
            archived_by=ARCHIVED_BY,
            archived_at=self.clock().isoformat()
        )
        return record


class ArchiveWriter(ItemWriter):
    """Writes archive records through the owning store's archive() operation."""

    def __init__(self, store: Any):
        self.store = store
        self.logger = get_logger(__name__)

    async def write(self, items: List[Dict[str, Any]], connection: Any) -> None:
        flagged = await self.store.archive(items, connection)
        if flagged < len(items):
            self.logger.info("Some records were archived concurrently", extra={
                "store": self.store.name,
                "submitted": len(items),
                "flagged": flagged
            })


class CleanupLogsTasklet(Tasklet):
    """Deletes SENT notification log rows past the retention period; failed rows stay."""

    def __init__(self, notifications: NotificationStore, retention_days: int,
                 clock: Callable[[], datetime] = utc_now):
        self.notifications = notifications
        self.retention_days = retention_days
        self.clock = clock
        self.logger = get_logger(__name__)

    async def execute(self, step_execution: StepExecution, context: ExecutionContext) -> Optional[str]:
        cutoff = self.clock() - timedelta(days=self.retention_days)
        deleted = await self.notifications.delete_sent_logs(cutoff)
        step_execution.write_count += deleted
        self.logger.info("Notification logs cleaned up", extra={
            "deleted": deleted,
            "sent_before": cutoff.isoformat()
        })
        return f"deleted {deleted} notification log row(s)"
