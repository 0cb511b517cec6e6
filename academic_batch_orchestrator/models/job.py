"""
Job-related data models for Academic Batch Orchestrator

A job is an immutable, named, ordered sequence of steps. Definitions are built
once at process start and produce any number of job executions.
"""

from abc import ABC, abstractmethod
from typing import Optional, Sequence, Tuple, TYPE_CHECKING
from dataclasses import dataclass, field

from .execution import ExecutionContext, StepExecution

if TYPE_CHECKING:
    from ..core.listeners import JobListener


class Step(ABC):
    """
    One unit of a job.

    A step reports progress through the StepExecution it is given and fails by
    raising; the orchestrator turns the exception into a FAILED step and job.
    """

    def __init__(self, name: str):
        self.name = name

    @abstractmethod
    async def execute(self, step_execution: StepExecution, context: ExecutionContext) -> None:
        """Run the step against the execution context of the current job run."""

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name={self.name!r})"


@dataclass(frozen=True)
class JobDefinition:
    """
    Immutable description of a job.

    Attributes:
        name: Unique job name used by the scheduler and the CLI
        steps: Steps executed strictly in order
        listeners: Job-specific listeners, invoked after the orchestrator's global ones
        description: Human readable summary
    """
    name: str
    steps: Tuple[Step, ...]
    listeners: Tuple["JobListener", ...] = field(default_factory=tuple)
    description: Optional[str] = None

    def __post_init__(self):
        if not self.name:
            raise ValueError("job name must not be empty")
        if not self.steps:
            raise ValueError(f"job {self.name} must define at least one step")
        names = [step.name for step in self.steps]
        duplicates = {name for name in names if names.count(name) > 1}
        if duplicates:
            raise ValueError(f"job {self.name} has duplicate step names: {sorted(duplicates)}")
        object.__setattr__(self, "steps", tuple(self.steps))
        object.__setattr__(self, "listeners", tuple(self.listeners))

    @property
    def step_names(self) -> Sequence[str]:
        return [step.name for step in self.steps]

    def to_dict(self):
        return {
            "name": self.name,
            "description": self.description,
            "steps": list(self.step_names)
        }
