"""
Task step runner.

A task step runs one tasklet as a single unit of work, without chunking. Tasklets
report what they did through the StepExecution counters and return an optional
summary; any exception they raise fails the step.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional

from ..core.exceptions import StepFailedError
from ..models.execution import ExecutionContext, StepExecution
from ..models.job import Step
from ..utils.logger import get_logger
from .fault_tolerance import BackoffPolicy, ErrorClassifier, RetryPolicy, retry_async


class Tasklet(ABC):
    """Single atomic unit of work executed by a TaskStep."""

    @abstractmethod
    async def execute(self, step_execution: StepExecution, context: ExecutionContext) -> Optional[str]:
        """
        Do the work.

        Args:
            step_execution: Counters of the running step
            context: Execution context of the job run

        Returns:
            Optional one-line summary stored on the step execution
        """


class FunctionTasklet(Tasklet):
    """Adapts an async function with the tasklet signature."""

    def __init__(self, func: Callable[[StepExecution, ExecutionContext], Awaitable[Optional[str]]]):
        self.func = func

    async def execute(self, step_execution: StepExecution, context: ExecutionContext) -> Optional[str]:
        return await self.func(step_execution, context)


class TaskStep(Step):
    """
    Step wrapping one tasklet.

    By default the tasklet runs once. A retry policy may be supplied for
    tasklets that are safe to replay as a whole.
    """

    def __init__(self, name: str, tasklet: Tasklet,
                 retry_policy: Optional[RetryPolicy] = None,
                 backoff_policy: Optional[BackoffPolicy] = None,
                 classifier: Optional[ErrorClassifier] = None,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        super().__init__(name)
        self.tasklet = tasklet
        self.retry_policy = retry_policy or RetryPolicy.none()
        self.backoff_policy = backoff_policy or BackoffPolicy()
        self.classifier = classifier or ErrorClassifier()
        self.sleep = sleep
        self.logger = get_logger(__name__)

    async def execute(self, step_execution: StepExecution, context: ExecutionContext) -> None:
        try:
            summary = await retry_async(
                lambda: self.tasklet.execute(step_execution, context),
                self.retry_policy,
                self.backoff_policy,
                self.classifier,
                sleep=self.sleep,
                operation=f"tasklet {self.name}"
            )
        except StepFailedError:
            raise
        except Exception as e:
            self.logger.error("Tasklet failed", extra={
                "step_name": self.name,
                "error_type": type(e).__name__,
                "error_message": str(e)
            }, exc_info=True)
            raise StepFailedError(self.name, str(e), cause=e) from e

        step_execution.complete(summary)
