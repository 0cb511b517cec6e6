"""
Execution history store.

Append-only record of job executions and their step executions. Every execution
writes only its own row, keyed by (job_name, run_key), so concurrent executions
never contend on a shared lock.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from datetime import datetime
from importlib import resources
from typing import Dict, List, Optional, Tuple

from ..core.exceptions import StoreError
from ..models.execution import ExecutionMetrics, JobExecution, JobExecutionStatus
from ..utils.database import StoreAccessor
from ..utils.logger import get_logger


class ExecutionHistoryStore(ABC):
    """Durable record of job executions."""

    @abstractmethod
    async def claim(self, execution: JobExecution) -> bool:
        """Insert a new execution; return False if (job_name, run_key) already exists."""

    @abstractmethod
    async def record(self, execution: JobExecution) -> None:
        """Insert or update the row of an execution."""

    @abstractmethod
    async def query(self, job_name: str, limit: int = 20) -> List[JobExecution]:
        """Most recent executions of a job, newest first."""

    @abstractmethod
    async def find(self, job_name: str, run_key: str) -> Optional[JobExecution]:
        """Return one execution or None."""

    @abstractmethod
    async def failed(self, since: Optional[datetime] = None) -> List[JobExecution]:
        """Failed executions of any job, newest first."""

    @abstractmethod
    async def prune(self, older_than: datetime) -> int:
        """Delete terminal executions started before older_than; return the count."""

    async def metrics(self, job_name: str) -> ExecutionMetrics:
        """Aggregate statistics over every recorded execution of a job."""
        executions = await self.query(job_name, limit=0)
        return compute_metrics(job_name, executions)


def compute_metrics(job_name: str, executions: List[JobExecution]) -> ExecutionMetrics:
    metrics = ExecutionMetrics(job_name=job_name, total_executions=len(executions))
    durations = []
    for execution in executions:
        if execution.status is JobExecutionStatus.COMPLETED:
            metrics.successful_executions += 1
        elif execution.status is JobExecutionStatus.FAILED:
            metrics.failed_executions += 1
        metrics.total_items_processed += execution.items_processed
        metrics.total_items_skipped += execution.items_skipped
        if execution.duration_seconds is not None:
            durations.append(execution.duration_seconds)
    if durations:
        metrics.average_duration_seconds = sum(durations) / len(durations)
    if executions:
        metrics.last_execution = max(executions, key=lambda e: e.started_at)
    return metrics


class InMemoryExecutionHistory(ExecutionHistoryStore):
    """History kept in process memory; used by tests and one-shot CLI runs."""

    def __init__(self):
        self._rows: Dict[Tuple[str, str], dict] = {}
        self._lock = asyncio.Lock()

    async def claim(self, execution: JobExecution) -> bool:
        async with self._lock:
            key = (execution.job_name, execution.run_key)
            if key in self._rows:
                return False
            self._rows[key] = execution.to_dict()
            return True

    async def record(self, execution: JobExecution) -> None:
        async with self._lock:
            self._rows[(execution.job_name, execution.run_key)] = execution.to_dict()

    async def query(self, job_name: str, limit: int = 20) -> List[JobExecution]:
        executions = sorted(
            (JobExecution.from_dict(row) for (name, _), row in self._rows.items() if name == job_name),
            key=lambda e: e.started_at,
            reverse=True
        )
        return executions[:limit] if limit else executions

    async def find(self, job_name: str, run_key: str) -> Optional[JobExecution]:
        row = self._rows.get((job_name, run_key))
        return JobExecution.from_dict(row) if row else None

    async def failed(self, since: Optional[datetime] = None) -> List[JobExecution]:
        executions = [
            JobExecution.from_dict(row) for row in self._rows.values()
            if row["status"] == JobExecutionStatus.FAILED.value
        ]
        if since is not None:
            executions = [e for e in executions if e.started_at >= since]
        return sorted(executions, key=lambda e: e.started_at, reverse=True)

    async def prune(self, older_than: datetime) -> int:
        async with self._lock:
            stale = [
                key for key, row in self._rows.items()
                if row["status"] != JobExecutionStatus.STARTED.value
                and JobExecution.from_dict(row).started_at < older_than
            ]
            for key in stale:
                del self._rows[key]
            return len(stale)


class PostgresExecutionHistory(ExecutionHistoryStore):
    """
    History persisted in the batch store.

    Expects the job_execution_history table from sql/job_history.sql.
    """

    COLUMNS = (
        "job_name, run_key, status, started_at, ended_at, exit_message, failed_step, "
        "failure_type, items_processed, items_skipped, step_executions"
    )

    def __init__(self, accessor: StoreAccessor):
        self.accessor = accessor
        self.logger = get_logger(__name__)

    @staticmethod
    def _values(execution: JobExecution) -> tuple:
        return (
            execution.job_name,
            execution.run_key,
            execution.status.value,
            execution.started_at,
            execution.ended_at,
            execution.exit_message,
            execution.failed_step,
            execution.failure_type,
            execution.items_processed,
            execution.items_skipped,
            json.dumps([step.to_dict() for step in execution.step_executions])
        )

    @staticmethod
    def _from_row(row: dict) -> JobExecution:
        steps = row.get("step_executions") or "[]"
        if isinstance(steps, str):
            steps = json.loads(steps)
        data = dict(row)
        data["step_executions"] = steps
        return JobExecution.from_dict(data)

    async def claim(self, execution: JobExecution) -> bool:
        inserted = await self.accessor.fetchval(f"""
            INSERT INTO job_execution_history ({self.COLUMNS})
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11::jsonb)
            ON CONFLICT (job_name, run_key) DO NOTHING
            RETURNING run_key
        """, *self._values(execution))
        return inserted is not None

    async def record(self, execution: JobExecution) -> None:
        await self.accessor.execute(f"""
            INSERT INTO job_execution_history ({self.COLUMNS})
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11::jsonb)
            ON CONFLICT (job_name, run_key) DO UPDATE SET
                status = EXCLUDED.status,
                ended_at = EXCLUDED.ended_at,
                exit_message = EXCLUDED.exit_message,
                failed_step = EXCLUDED.failed_step,
                failure_type = EXCLUDED.failure_type,
                items_processed = EXCLUDED.items_processed,
                items_skipped = EXCLUDED.items_skipped,
                step_executions = EXCLUDED.step_executions
        """, *self._values(execution))

    async def query(self, job_name: str, limit: int = 20) -> List[JobExecution]:
        if limit:
            rows = await self.accessor.fetch(
                f"SELECT {self.COLUMNS} FROM job_execution_history "
                "WHERE job_name = $1 ORDER BY started_at DESC LIMIT $2",
                job_name, limit
            )
        else:
            rows = await self.accessor.fetch(
                f"SELECT {self.COLUMNS} FROM job_execution_history "
                "WHERE job_name = $1 ORDER BY started_at DESC",
                job_name
            )
        return [self._from_row(row) for row in rows]

    async def find(self, job_name: str, run_key: str) -> Optional[JobExecution]:
        row = await self.accessor.fetchrow(
            f"SELECT {self.COLUMNS} FROM job_execution_history WHERE job_name = $1 AND run_key = $2",
            job_name, run_key
        )
        return self._from_row(row) if row else None

    async def failed(self, since: Optional[datetime] = None) -> List[JobExecution]:
        rows = await self.accessor.fetch(
            f"SELECT {self.COLUMNS} FROM job_execution_history "
            "WHERE status = 'FAILED' AND ($1::timestamptz IS NULL OR started_at >= $1) "
            "ORDER BY started_at DESC",
            since
        )
        return [self._from_row(row) for row in rows]

    async def metrics(self, job_name: str) -> ExecutionMetrics:
        row = await self.accessor.fetchrow("""
            SELECT
                COUNT(*) AS total,
                COUNT(*) FILTER (WHERE status = 'COMPLETED') AS successful,
                COUNT(*) FILTER (WHERE status = 'FAILED') AS failed,
                AVG(EXTRACT(EPOCH FROM (ended_at - started_at))) AS average_duration,
                COALESCE(SUM(items_processed), 0) AS items_processed,
                COALESCE(SUM(items_skipped), 0) AS items_skipped
            FROM job_execution_history
            WHERE job_name = $1
        """, job_name)
        latest = await self.query(job_name, limit=1)
        average = row["average_duration"] if row else None
        return ExecutionMetrics(
            job_name=job_name,
            total_executions=row["total"] if row else 0,
            successful_executions=row["successful"] if row else 0,
            failed_executions=row["failed"] if row else 0,
            average_duration_seconds=float(average) if average is not None else None,
            total_items_processed=int(row["items_processed"]) if row else 0,
            total_items_skipped=int(row["items_skipped"]) if row else 0,
            last_execution=latest[0] if latest else None
        )

    async def prune(self, older_than: datetime) -> int:
        deleted = await self.accessor.execute(
            "DELETE FROM job_execution_history WHERE status <> 'STARTED' AND started_at < $1",
            older_than
        )
        self.logger.info("Pruned execution history", extra={
            "deleted": deleted,
            "older_than": older_than.isoformat()
        })
        return deleted

    async def ensure_schema(self) -> None:
        """Create the history table if it does not exist yet."""
        try:
            ddl = resources.files("academic_batch_orchestrator").joinpath("sql/job_history.sql").read_text()
        except (FileNotFoundError, ModuleNotFoundError) as e:
            raise StoreError(self.accessor.name, "ensure_schema", f"schema file missing: {e}") from e
        await self.accessor.execute(ddl)
