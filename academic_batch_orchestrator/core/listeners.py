"""
Job lifecycle listeners.

Listeners are plain observers invoked synchronously, in registration order, at
fixed points of a job execution: before the job, around every step and once the
job reached its terminal status.
"""

from ..models.execution import ExecutionContext, JobExecution, StepExecution


class JobListener:
    """Base listener; every hook is a no-op unless overridden."""

    async def before_job(self, execution: JobExecution, context: ExecutionContext) -> None:
        pass

    async def after_job(self, execution: JobExecution, context: ExecutionContext) -> None:
        pass

    async def before_step(self, execution: JobExecution, step_execution: StepExecution,
                          context: ExecutionContext) -> None:
        pass

    async def after_step(self, execution: JobExecution, step_execution: StepExecution,
                         context: ExecutionContext) -> None:
        pass
