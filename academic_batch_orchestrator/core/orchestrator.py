"""
Main JobOrchestrator class that runs job definitions

Provides the primary interface for triggering jobs. Each trigger produces one job
execution that runs its steps strictly in order, shares one execution context
between them, is recorded in the execution history and is observed by the
registered listeners.
"""

import itertools
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple

from ..models.execution import (
    ExecutionContext,
    JobExecution,
    JobExecutionStatus,
    StepExecution,
    StepStatus,
    utc_now,
)
from ..models.job import JobDefinition
from ..services.history import ExecutionHistoryStore
from ..utils.logger import get_logger, LoggerContext
from .exceptions import (
    DuplicateRunKeyError,
    JobExecutionError,
    JobNotFoundError,
    StepFailedError,
    StoreError,
    error_registry,
)
from .listeners import JobListener


_run_sequence = itertools.count(1)


def make_run_key(moment: Optional[datetime] = None) -> str:
    """
    Derive a run key from a trigger timestamp.

    A process-wide sequence number is appended so that two triggers within the
    same microsecond still get distinct keys.
    """
    moment = moment or utc_now()
    return f"{moment:%Y%m%dT%H%M%S.%f}Z-{next(_run_sequence)}"


class JobOrchestrator:
    """
    Runs registered jobs.

    Executions share no mutable state with each other: each one gets its own
    ExecutionContext and StepExecutions, and writes only its own history row.
    Several executions, including two of the same job, may therefore run
    concurrently on the same event loop.
    """

    def __init__(
        self,
        history: ExecutionHistoryStore,
        listeners: Sequence[JobListener] = (),
        clock: Callable[[], datetime] = utc_now
    ):
        """
        Initialize the JobOrchestrator.

        Args:
            history: Execution history store receiving every job execution
            listeners: Global listeners, notified for every job
            clock: Source of timestamps
        """
        self.history = history
        self.listeners: List[JobListener] = list(listeners)
        self.clock = clock
        self._jobs: Dict[str, JobDefinition] = {}
        self._in_flight: Set[Tuple[str, str]] = set()
        self.logger = get_logger(__name__)

    def register(self, definition: JobDefinition) -> None:
        """Register a job definition under its name."""
        if definition.name in self._jobs:
            raise ValueError(f"job {definition.name} is already registered")
        self._jobs[definition.name] = definition
        self.logger.info("Job registered", extra={
            "job_name": definition.name,
            "steps": list(definition.step_names)
        })

    def add_listener(self, listener: JobListener) -> None:
        self.listeners.append(listener)

    def get_job(self, job_name: str) -> JobDefinition:
        try:
            return self._jobs[job_name]
        except KeyError:
            raise JobNotFoundError(job_name) from None

    def jobs(self) -> List[JobDefinition]:
        return [self._jobs[name] for name in sorted(self._jobs)]

    @property
    def running(self) -> List[Tuple[str, str]]:
        """(job_name, run_key) pairs currently executing."""
        return sorted(self._in_flight)

    async def run(self, job_name: str) -> JobExecution:
        """Run a job now under a freshly derived run key."""
        return await self.trigger(job_name)

    async def trigger(self, job_name: str, run_key: Optional[str] = None) -> JobExecution:
        """
        Create and run one execution of a job.

        Args:
            job_name: Registered job name
            run_key: Unique key of this execution; derived from the clock when omitted

        Returns:
            The terminal JobExecution (COMPLETED or FAILED)

        Raises:
            JobNotFoundError: job_name is not registered
            DuplicateRunKeyError: the run key is running or already recorded
        """
        definition = self.get_job(job_name)
        run_key = run_key or make_run_key(self.clock())
        key = (job_name, run_key)

        if key in self._in_flight:
            raise DuplicateRunKeyError(job_name, run_key)
        self._in_flight.add(key)
        try:
            execution = JobExecution(job_name=job_name, run_key=run_key, started_at=self.clock())
            try:
                claimed = await self.history.claim(execution)
            except StoreError as e:
                await self._fail_unclaimed(definition, execution, e)
                raise JobExecutionError(job_name, f"cannot record execution start: {e}", stage="claim") from e
            if not claimed:
                raise DuplicateRunKeyError(job_name, run_key)
            return await self._execute(definition, execution)
        finally:
            self._in_flight.discard(key)

    async def _execute(self, definition: JobDefinition, execution: JobExecution) -> JobExecution:
        context = ExecutionContext()
        listeners = self.listeners + list(definition.listeners)

        with LoggerContext(job_name=execution.job_name, run_key=execution.run_key):
            self.logger.info("Job execution started", extra={"steps": list(definition.step_names)})
            await self._notify(listeners, "before_job", execution, context)

            for step in definition.steps:
                step_execution = StepExecution(step_name=step.name, started_at=self.clock())
                execution.step_executions.append(step_execution)

                with LoggerContext(step_name=step.name):
                    await self._notify(listeners, "before_step", execution, step_execution, context)
                    try:
                        await step.execute(step_execution, context)
                        if step_execution.status is StepStatus.STARTED:
                            step_execution.complete()
                    except Exception as e:
                        self._mark_failed(execution, step_execution, e)
                    await self._notify(listeners, "after_step", execution, step_execution, context)

                if execution.status is JobExecutionStatus.FAILED:
                    break

            if execution.status is JobExecutionStatus.STARTED:
                execution.status = JobExecutionStatus.COMPLETED
                execution.exit_message = f"{len(execution.step_executions)} step(s) completed"
            execution.ended_at = self.clock()

            try:
                await self.history.record(execution)
            except StoreError as e:
                error_registry.record_error(e)
                self.logger.error("Failed to record job execution", extra={
                    "status": execution.status.value,
                    "error_message": str(e)
                })

            await self._notify(listeners, "after_job", execution, context)
            self.logger.info("Job execution finished", extra={
                "status": execution.status.value,
                "duration_seconds": execution.duration_seconds,
                "items_processed": execution.items_processed,
                "items_skipped": execution.items_skipped
            })
        return execution

    async def _fail_unclaimed(self, definition: JobDefinition, execution: JobExecution, error: Exception) -> None:
        """Report an execution whose start could not be recorded to the listeners as FAILED."""
        context = ExecutionContext()
        listeners = self.listeners + list(definition.listeners)

        with LoggerContext(job_name=execution.job_name, run_key=execution.run_key):
            await self._notify(listeners, "before_job", execution, context)
            execution.status = JobExecutionStatus.FAILED
            execution.failure_type = type(error).__name__
            execution.exit_message = f"cannot record execution start: {error}"
            execution.ended_at = self.clock()
            error_registry.record_error(error)
            self.logger.error("Job execution not started", extra={
                "error_type": type(error).__name__,
                "error_message": str(error)
            })
            await self._notify(listeners, "after_job", execution, context)

    def _mark_failed(self, execution: JobExecution, step_execution: StepExecution, error: Exception) -> None:
        cause = error.cause if isinstance(error, StepFailedError) and error.cause is not None else error
        reason = error.reason if isinstance(error, StepFailedError) else str(error)

        step_execution.fail(reason)
        execution.status = JobExecutionStatus.FAILED
        execution.failed_step = step_execution.step_name
        execution.failure_type = type(cause).__name__
        execution.exit_message = f"Step {step_execution.step_name} failed: {reason}"
        error_registry.record_error(error)

        self.logger.error("Step failed, job execution aborted", extra={
            "failed_step": step_execution.step_name,
            "error_type": type(cause).__name__,
            "error_message": reason
        }, exc_info=error)

    async def _notify(self, listeners: List[JobListener], hook: str, *args) -> None:
        for listener in listeners:
            try:
                await getattr(listener, hook)(*args)
            except Exception as e:
                self.logger.error("Listener failed", extra={
                    "listener": type(listener).__name__,
                    "hook": hook,
                    "error_message": str(e)
                }, exc_info=True)
