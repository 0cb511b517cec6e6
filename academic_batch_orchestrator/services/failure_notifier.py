"""
Job failure notification listener.
"""

from ..core.exceptions import MessageBusError, error_registry
from ..core.listeners import JobListener
from ..models.execution import ExecutionContext, JobExecution, JobExecutionStatus
from ..models.records import Priority
from ..utils.logger import get_logger
from .message_bus import MessageBus, event_payload


JOB_FAILURE_EVENT = "JOB_FAILURE"


class FailureNotificationListener(JobListener):
    """
    Publishes an URGENT JOB_FAILURE event when a job execution fails.

    The event key is derived from (job, run key) so a consumer sees at most one
    failure per execution.
    """

    def __init__(self, bus: MessageBus, topic: str, recipient: str):
        self.bus = bus
        self.topic = topic
        self.recipient = recipient
        self.logger = get_logger(__name__)

    async def after_job(self, execution: JobExecution, context: ExecutionContext) -> None:
        if execution.status != JobExecutionStatus.FAILED:
            return

        key = f"job-failure:{execution.job_name}:{execution.run_key}"
        payload = event_payload(
            JOB_FAILURE_EVENT,
            [execution.run_key],
            Priority.URGENT.value,
            recipient=self.recipient,
            job_name=execution.job_name,
            run_key=execution.run_key,
            failed_step=execution.failed_step,
            exception_type=execution.failure_type,
            message=execution.exit_message,
            started_at=execution.started_at.isoformat() if execution.started_at else None
        )
        try:
            await self.bus.publish(self.topic, key, payload)
        except MessageBusError as e:
            error_registry.record_error(e)
            self.logger.error("Job failure notification not delivered", extra={
                "job_name": execution.job_name,
                "run_key": execution.run_key,
                "error_message": str(e)
            })
