import asyncio

import pytest

from academic_batch_orchestrator.core.exceptions import (
    DuplicateRunKeyError,
    JobExecutionError,
    JobNotFoundError,
    StoreError,
    TransientStoreError,
)
from academic_batch_orchestrator.core.listeners import JobListener
from academic_batch_orchestrator.core.orchestrator import JobOrchestrator, make_run_key
from academic_batch_orchestrator.models.execution import (
    ContextKey,
    JobExecutionStatus,
    StepStatus,
)
from academic_batch_orchestrator.models.job import JobDefinition
from academic_batch_orchestrator.services.history import InMemoryExecutionHistory
from academic_batch_orchestrator.services.task_step import FunctionTasklet, TaskStep


COUNTER = ContextKey("counter", int, 0)


def step(name, calls, error=None, summary=None):
    async def run(step_execution, context):
        calls.append(name)
        context.increment(COUNTER)
        if error is not None:
            raise error
        return summary

    return TaskStep(name, FunctionTasklet(run))


class RecordingListener(JobListener):
    def __init__(self, label, events, fail_on=None):
        self.label = label
        self.events = events
        self.fail_on = fail_on

    async def _record(self, hook, detail):
        self.events.append((self.label, hook, detail))
        if hook == self.fail_on:
            raise RuntimeError(f"{self.label} broke in {hook}")

    async def before_job(self, execution, context):
        await self._record("before_job", execution.job_name)

    async def before_step(self, execution, step_execution, context):
        await self._record("before_step", step_execution.step_name)

    async def after_step(self, execution, step_execution, context):
        await self._record("after_step", step_execution.step_name)

    async def after_job(self, execution, context):
        await self._record("after_job", execution.status.value)


@pytest.fixture
def orchestrator(history, clock):
    return JobOrchestrator(history, clock=clock)


async def test_steps_run_in_order_and_share_the_context(orchestrator):
    calls = []
    seen = []

    async def read_counter(step_execution, context):
        seen.append(context.get(COUNTER))

    orchestrator.register(JobDefinition("nightly", (
        step("first", calls),
        step("second", calls, summary="second done"),
        TaskStep("third", FunctionTasklet(read_counter)),
    )))

    execution = await orchestrator.trigger("nightly", run_key="r1")

    assert execution.status is JobExecutionStatus.COMPLETED
    assert calls == ["first", "second"]
    assert seen == [2]
    assert [s.status for s in execution.step_executions] == [StepStatus.COMPLETED] * 3
    assert execution.step_executions[1].summary == "second done"
    assert execution.exit_message == "3 step(s) completed"


async def test_failed_step_stops_the_job(orchestrator):
    calls = []
    orchestrator.register(JobDefinition("nightly", (
        step("first", calls),
        step("second", calls, error=StoreError("enrollment", "update", "relation missing")),
        step("third", calls),
    )))

    execution = await orchestrator.trigger("nightly", run_key="r1")

    assert execution.status is JobExecutionStatus.FAILED
    assert calls == ["first", "second"]
    assert execution.failed_step == "second"
    assert execution.failure_type == "StoreError"
    assert execution.exit_message.startswith("Step second failed: Store 'enrollment'")
    assert execution.exit_message.count("failed:") == 2
    assert [s.step_name for s in execution.step_executions] == ["first", "second"]
    assert execution.step_executions[1].status is StepStatus.FAILED


async def test_each_execution_gets_a_fresh_context(orchestrator):
    seen = []

    async def bump(step_execution, context):
        seen.append(context.increment(COUNTER))

    orchestrator.register(JobDefinition("nightly", (TaskStep("bump", FunctionTasklet(bump)),)))

    await orchestrator.trigger("nightly", run_key="r1")
    await orchestrator.trigger("nightly", run_key="r2")

    assert seen == [1, 1]


async def test_listeners_are_called_in_order(history, clock):
    events = []
    calls = []
    orchestrator = JobOrchestrator(history, listeners=[RecordingListener("global", events)], clock=clock)
    orchestrator.register(JobDefinition(
        "nightly", (step("only", calls),), listeners=(RecordingListener("job", events),)
    ))

    await orchestrator.trigger("nightly", run_key="r1")

    assert events == [
        ("global", "before_job", "nightly"),
        ("job", "before_job", "nightly"),
        ("global", "before_step", "only"),
        ("job", "before_step", "only"),
        ("global", "after_step", "only"),
        ("job", "after_step", "only"),
        ("global", "after_job", "COMPLETED"),
        ("job", "after_job", "COMPLETED"),
    ]


async def test_listener_failure_does_not_change_the_outcome(history, clock):
    events = []
    calls = []
    orchestrator = JobOrchestrator(history, listeners=[
        RecordingListener("broken", events, fail_on="before_job"),
        RecordingListener("healthy", events),
    ], clock=clock)
    orchestrator.register(JobDefinition("nightly", (step("only", calls),)))

    execution = await orchestrator.trigger("nightly", run_key="r1")

    assert execution.status is JobExecutionStatus.COMPLETED
    assert ("healthy", "before_job", "nightly") in events
    assert calls == ["only"]


class UnreachableHistory(InMemoryExecutionHistory):
    async def claim(self, execution):
        raise TransientStoreError("history", "claim", "connection refused")


async def test_unrecorded_start_is_reported_to_listeners_as_failed(clock):
    events = []
    seen = []
    calls = []

    class CapturingListener(JobListener):
        async def after_job(self, execution, context):
            seen.append(execution)

    orchestrator = JobOrchestrator(UnreachableHistory(), listeners=[RecordingListener("global", events)],
                                   clock=clock)
    orchestrator.register(JobDefinition(
        "nightly", (step("only", calls),), listeners=(CapturingListener(),)
    ))

    with pytest.raises(JobExecutionError) as raised:
        await orchestrator.trigger("nightly", run_key="r1")

    assert raised.value.details["stage"] == "claim"
    assert calls == []
    assert events == [("global", "before_job", "nightly"), ("global", "after_job", "FAILED")]
    [execution] = seen
    assert execution.status is JobExecutionStatus.FAILED
    assert execution.failure_type == "TransientStoreError"
    assert execution.ended_at is not None
    assert orchestrator.running == []


async def test_execution_is_recorded_in_history(orchestrator, history):
    calls = []
    orchestrator.register(JobDefinition("nightly", (step("only", calls),)))

    await orchestrator.trigger("nightly", run_key="r1")

    recorded = await history.find("nightly", "r1")
    assert recorded.status is JobExecutionStatus.COMPLETED
    assert recorded.ended_at is not None
    assert [s.step_name for s in recorded.step_executions] == ["only"]


async def test_recorded_run_key_cannot_be_reused(orchestrator):
    calls = []
    orchestrator.register(JobDefinition("nightly", (step("only", calls),)))
    await orchestrator.trigger("nightly", run_key="r1")

    with pytest.raises(DuplicateRunKeyError):
        await orchestrator.trigger("nightly", run_key="r1")
    assert calls == ["only"]


async def test_in_flight_run_key_cannot_be_reused(orchestrator):
    release = asyncio.Event()

    async def wait(step_execution, context):
        await release.wait()

    orchestrator.register(JobDefinition("nightly", (TaskStep("wait", FunctionTasklet(wait)),)))
    first = asyncio.ensure_future(orchestrator.trigger("nightly", run_key="r1"))
    await asyncio.sleep(0)

    assert orchestrator.running == [("nightly", "r1")]
    with pytest.raises(DuplicateRunKeyError):
        await orchestrator.trigger("nightly", run_key="r1")

    release.set()
    execution = await first
    assert execution.status is JobExecutionStatus.COMPLETED
    assert orchestrator.running == []


async def test_same_job_runs_concurrently_under_distinct_keys(orchestrator, history):
    release = asyncio.Event()
    started = []

    async def wait(step_execution, context):
        started.append(1)
        await release.wait()

    orchestrator.register(JobDefinition("nightly", (TaskStep("wait", FunctionTasklet(wait)),)))
    runs = [asyncio.ensure_future(orchestrator.trigger("nightly")) for _ in range(3)]
    while len(started) < 3:
        await asyncio.sleep(0)
    release.set()
    executions = await asyncio.gather(*runs)

    assert len({e.run_key for e in executions}) == 3
    assert all(e.status is JobExecutionStatus.COMPLETED for e in executions)
    assert len(await history.query("nightly")) == 3


async def test_unknown_job(orchestrator):
    with pytest.raises(JobNotFoundError):
        await orchestrator.trigger("missing")


def test_duplicate_registration_is_rejected(orchestrator):
    calls = []
    orchestrator.register(JobDefinition("nightly", (step("only", calls),)))
    with pytest.raises(ValueError):
        orchestrator.register(JobDefinition("nightly", (step("only", calls),)))


def test_job_definition_rejects_duplicate_step_names():
    calls = []
    with pytest.raises(ValueError):
        JobDefinition("nightly", (step("a", calls), step("a", calls)))


def test_run_keys_are_unique_for_the_same_moment(now):
    keys = {make_run_key(now) for _ in range(100)}
    assert len(keys) == 100
    assert all(key.startswith("20250615T230000.000000Z-") for key in keys)
