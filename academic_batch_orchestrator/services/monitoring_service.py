"""
Monitoring listeners for Academic Batch Orchestrator

Exposes job execution metrics through prometheus-client and logs the
consistency job totals once it finishes.
"""

from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Histogram, generate_latest

from ..core.listeners import JobListener
from ..models import context_keys as keys
from ..models.execution import ExecutionContext, JobExecution, JobExecutionStatus, StepExecution
from ..utils.logger import get_logger


DURATION_BUCKETS = (1, 5, 15, 60, 300, 900, 1800, 3600, 7200, float("inf"))


class MonitoringListener(JobListener):
    """
    Collects per-job counters and durations.

    Every instance owns its CollectorRegistry so that several orchestrators,
    and the tests, never share metric state.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None, namespace: str = "academic_batch"):
        self.registry = registry or CollectorRegistry()
        self.logger = get_logger(__name__)

        self.jobs_started = Counter(
            "jobs_started", "Job executions started", ["job"],
            namespace=namespace, registry=self.registry
        )
        self.jobs_completed = Counter(
            "jobs_completed", "Job executions completed", ["job"],
            namespace=namespace, registry=self.registry
        )
        self.jobs_failed = Counter(
            "jobs_failed", "Job executions failed", ["job", "step"],
            namespace=namespace, registry=self.registry
        )
        self.items_read = Counter(
            "items_read", "Items read by chunk and task steps", ["job"],
            namespace=namespace, registry=self.registry
        )
        self.items_written = Counter(
            "items_written", "Items written by chunk and task steps", ["job"],
            namespace=namespace, registry=self.registry
        )
        self.items_skipped = Counter(
            "items_skipped", "Items skipped by fault tolerance", ["job"],
            namespace=namespace, registry=self.registry
        )
        self.job_duration = Histogram(
            "job_duration_seconds", "Job execution duration", ["job"],
            namespace=namespace, registry=self.registry, buckets=DURATION_BUCKETS
        )

    async def before_job(self, execution: JobExecution, context: ExecutionContext) -> None:
        self.jobs_started.labels(job=execution.job_name).inc()

    async def after_step(self, execution: JobExecution, step_execution: StepExecution,
                         context: ExecutionContext) -> None:
        job = execution.job_name
        self.items_read.labels(job=job).inc(step_execution.read_count)
        self.items_written.labels(job=job).inc(step_execution.write_count)
        self.items_skipped.labels(job=job).inc(step_execution.skip_count)

    async def after_job(self, execution: JobExecution, context: ExecutionContext) -> None:
        job = execution.job_name
        if execution.status == JobExecutionStatus.COMPLETED:
            self.jobs_completed.labels(job=job).inc()
        elif execution.status == JobExecutionStatus.FAILED:
            self.jobs_failed.labels(job=job, step=execution.failed_step or "").inc()

        if execution.duration_seconds is not None:
            self.job_duration.labels(job=job).observe(execution.duration_seconds)

    def value(self, name: str, **labels) -> float:
        """Current value of a sample, 0.0 when it was never recorded."""
        return self.registry.get_sample_value(name, labels) or 0.0

    def exposition(self) -> bytes:
        """Metrics in the Prometheus text format."""
        return generate_latest(self.registry)


class ConsistencySummaryListener(JobListener):
    """Logs the totals of the consistency job."""

    def __init__(self):
        self.logger = get_logger(__name__)

    async def after_job(self, execution: JobExecution, context: ExecutionContext) -> None:
        total = context.get(keys.TOTAL_ANOMALIES)
        corrected = context.get(keys.AUTO_CORRECTED)
        manual = context.get(keys.MANUAL_INTERVENTION)
        extra = {
            "status": execution.status.value,
            "total_anomalies": total,
            "auto_corrected": corrected,
            "manual_intervention_required": manual,
            "orphaned_documents": context.get(keys.ORPHANED_DOCUMENTS),
            "notification_retry_success": context.get(keys.NOTIFICATION_RETRY_SUCCESS),
            "notification_retry_failure": context.get(keys.NOTIFICATION_RETRY_FAILURE),
            "failed_passes": [failure["pass"] for failure in context.get(keys.FAILED_PASSES)]
        }

        if execution.status == JobExecutionStatus.FAILED:
            self.logger.error("Consistency check failed", extra=extra)
        elif manual or extra["failed_passes"]:
            self.logger.warning("Consistency check finished, manual intervention required", extra=extra)
        else:
            self.logger.info("Consistency check finished", extra=extra)
