"""
Execution tracking models for Academic Batch Orchestrator

Defines the per-run records produced by the orchestrator: job executions, step
executions with their item counters, and the execution context that carries
values from one step of a run to the next.
"""

from enum import Enum
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List, Generic, Type, TypeVar
from dataclasses import dataclass, field


T = TypeVar("T")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class JobExecutionStatus(Enum):
    """Job execution status enumeration."""
    STARTED = "STARTED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self is not JobExecutionStatus.STARTED


class StepStatus(Enum):
    """Step execution status enumeration."""
    STARTED = "STARTED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class ContextKey(Generic[T]):
    """
    Typed key into an ExecutionContext.

    Attributes:
        name: Key name, unique within one job
        value_type: Type every stored value must be an instance of
        default: Value returned when the key has never been written
    """
    name: str
    value_type: Type[T]
    default: Any = None


class ExecutionContext:
    """
    Key/value store scoped to exactly one job execution.

    The orchestrator creates one empty context per run and passes the same
    instance to every step, so a later step can read what an earlier one wrote.
    Contexts are never persisted; values do not survive a restart.
    """

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._values: Dict[str, Any] = dict(initial or {})

    def get(self, key: ContextKey[T]) -> T:
        """Return the value under key, or the key's default."""
        if key.name in self._values:
            return self._values[key.name]
        default = key.default
        if isinstance(default, (list, dict, set)):
            return type(default)(default)
        return default

    def put(self, key: ContextKey[T], value: T) -> None:
        """Store a value after checking it against the key's type."""
        if not isinstance(value, key.value_type):
            raise TypeError(
                f"context key {key.name!r} expects {key.value_type.__name__}, "
                f"got {type(value).__name__}"
            )
        self._values[key.name] = value

    def increment(self, key: ContextKey[int], amount: int = 1) -> int:
        """Add amount to an integer key and return the new value."""
        value = self.get(key) + amount
        self.put(key, value)
        return value

    def append(self, key: ContextKey[list], *values: Any) -> None:
        """Append values to a list key."""
        current = list(self.get(key) or [])
        current.extend(values)
        self.put(key, current)

    def __contains__(self, key: ContextKey) -> bool:
        return key.name in self._values

    def snapshot(self) -> Dict[str, Any]:
        """Return a shallow copy of every stored value."""
        return dict(self._values)


@dataclass
class StepExecution:
    """One step's run within a job execution."""
    step_name: str
    status: StepStatus = StepStatus.STARTED
    read_count: int = 0
    write_count: int = 0
    filter_count: int = 0
    read_skip_count: int = 0
    process_skip_count: int = 0
    write_skip_count: int = 0
    commit_count: int = 0
    rollback_count: int = 0
    retry_count: int = 0
    summary: Optional[str] = None
    error_detail: Optional[str] = None
    started_at: datetime = field(default_factory=utc_now)
    ended_at: Optional[datetime] = None

    @property
    def skip_count(self) -> int:
        return self.read_skip_count + self.process_skip_count + self.write_skip_count

    def complete(self, summary: Optional[str] = None):
        """Mark the step as completed."""
        self.status = StepStatus.COMPLETED
        if summary is not None:
            self.summary = summary
        self.ended_at = utc_now()

    def fail(self, error_detail: str):
        """Mark the step as failed."""
        self.status = StepStatus.FAILED
        self.error_detail = error_detail
        self.ended_at = utc_now()

    def to_dict(self) -> Dict[str, Any]:
        """Convert step execution to dictionary for serialization."""
        return {
            "step_name": self.step_name,
            "status": self.status.value,
            "read_count": self.read_count,
            "write_count": self.write_count,
            "filter_count": self.filter_count,
            "skip_count": self.skip_count,
            "read_skip_count": self.read_skip_count,
            "process_skip_count": self.process_skip_count,
            "write_skip_count": self.write_skip_count,
            "commit_count": self.commit_count,
            "rollback_count": self.rollback_count,
            "retry_count": self.retry_count,
            "summary": self.summary,
            "error_detail": self.error_detail,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "ended_at": self.ended_at.isoformat() if self.ended_at else None
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StepExecution":
        """Rebuild a step execution from its serialized form."""
        return cls(
            step_name=data["step_name"],
            status=StepStatus(data.get("status", "STARTED")),
            read_count=data.get("read_count", 0),
            write_count=data.get("write_count", 0),
            filter_count=data.get("filter_count", 0),
            read_skip_count=data.get("read_skip_count", 0),
            process_skip_count=data.get("process_skip_count", 0),
            write_skip_count=data.get("write_skip_count", 0),
            commit_count=data.get("commit_count", 0),
            rollback_count=data.get("rollback_count", 0),
            retry_count=data.get("retry_count", 0),
            summary=data.get("summary"),
            error_detail=data.get("error_detail"),
            started_at=_parse_datetime(data.get("started_at")),
            ended_at=_parse_datetime(data.get("ended_at"))
        )


@dataclass
class JobExecution:
    """
    One run of a job definition.

    Created when a job is triggered and mutated only by the orchestrator until it
    reaches a terminal status.
    """
    job_name: str
    run_key: str
    status: JobExecutionStatus = JobExecutionStatus.STARTED
    started_at: datetime = field(default_factory=utc_now)
    ended_at: Optional[datetime] = None
    step_executions: List[StepExecution] = field(default_factory=list)
    exit_message: Optional[str] = None
    failed_step: Optional[str] = None
    failure_type: Optional[str] = None

    @property
    def items_processed(self) -> int:
        return sum(step.read_count for step in self.step_executions)

    @property
    def items_written(self) -> int:
        return sum(step.write_count for step in self.step_executions)

    @property
    def items_skipped(self) -> int:
        return sum(step.skip_count for step in self.step_executions)

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.ended_at is None:
            return None
        return (self.ended_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        """Convert job execution to dictionary for serialization."""
        return {
            "job_name": self.job_name,
            "run_key": self.run_key,
            "status": self.status.value,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "duration_seconds": self.duration_seconds,
            "items_processed": self.items_processed,
            "items_written": self.items_written,
            "items_skipped": self.items_skipped,
            "exit_message": self.exit_message,
            "failed_step": self.failed_step,
            "failure_type": self.failure_type,
            "step_executions": [step.to_dict() for step in self.step_executions]
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobExecution":
        """Rebuild a job execution from its serialized form."""
        return cls(
            job_name=data["job_name"],
            run_key=data["run_key"],
            status=JobExecutionStatus(data.get("status", "STARTED")),
            started_at=_parse_datetime(data.get("started_at")) or utc_now(),
            ended_at=_parse_datetime(data.get("ended_at")),
            step_executions=[StepExecution.from_dict(step) for step in data.get("step_executions") or []],
            exit_message=data.get("exit_message"),
            failed_step=data.get("failed_step"),
            failure_type=data.get("failure_type")
        )


@dataclass
class ExecutionMetrics:
    """Aggregate statistics over the recorded executions of one job."""
    job_name: str
    total_executions: int = 0
    successful_executions: int = 0
    failed_executions: int = 0
    average_duration_seconds: Optional[float] = None
    total_items_processed: int = 0
    total_items_skipped: int = 0
    last_execution: Optional[JobExecution] = None

    @property
    def success_rate(self) -> float:
        if not self.total_executions:
            return 0.0
        return self.successful_executions / self.total_executions * 100.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_name": self.job_name,
            "total_executions": self.total_executions,
            "successful_executions": self.successful_executions,
            "failed_executions": self.failed_executions,
            "success_rate": round(self.success_rate, 2),
            "average_duration_seconds": self.average_duration_seconds,
            "total_items_processed": self.total_items_processed,
            "total_items_skipped": self.total_items_skipped,
            "last_execution": self.last_execution.to_dict() if self.last_execution else None
        }


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)
