"""
Execution history maintenance.
"""

from datetime import datetime, timedelta
from typing import Callable, Optional

from ..models.execution import ExecutionContext, StepExecution, utc_now
from ..services.history import ExecutionHistoryStore
from ..services.task_step import Tasklet
from ..utils.logger import get_logger


class HistoryCleanupTasklet(Tasklet):
    """Prunes job executions that ended more than retention_days ago."""

    def __init__(self, history: ExecutionHistoryStore, retention_days: int,
                 clock: Callable[[], datetime] = utc_now):
        self.history = history
        self.retention_days = retention_days
        self.clock = clock
        self.logger = get_logger(__name__)

    async def execute(self, step_execution: StepExecution, context: ExecutionContext) -> Optional[str]:
        cutoff = self.clock() - timedelta(days=self.retention_days)
        pruned = await self.history.prune(cutoff)
        step_execution.write_count += pruned
        self.logger.info("Execution history pruned", extra={
            "pruned": pruned,
            "older_than": cutoff.isoformat()
        })
        return f"pruned {pruned} execution(s)"
