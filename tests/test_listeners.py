import logging

import pytest

from academic_batch_orchestrator.core.exceptions import JobExecutionError, StoreError, TransientStoreError
from academic_batch_orchestrator.core.orchestrator import JobOrchestrator
from academic_batch_orchestrator.models import context_keys as keys
from academic_batch_orchestrator.models.job import JobDefinition
from academic_batch_orchestrator.services.failure_notifier import JOB_FAILURE_EVENT, FailureNotificationListener
from academic_batch_orchestrator.services.history import InMemoryExecutionHistory
from academic_batch_orchestrator.services.monitoring_service import (
    ConsistencySummaryListener,
    MonitoringListener,
)
from academic_batch_orchestrator.services.task_step import FunctionTasklet, TaskStep

from .fakes import FlakyBus


def job(name, fail=False, read=3):
    async def work(step_execution, context):
        step_execution.read_count += read
        step_execution.write_count += read
        context.increment(keys.MANUAL_INTERVENTION)
        if fail:
            raise StoreError("enrollment", "update", "disk full")

    return JobDefinition(name, (TaskStep("work", FunctionTasklet(work)),))


async def test_monitoring_counts_executions_and_items(history, clock):
    monitoring = MonitoringListener()
    orchestrator = JobOrchestrator(history, listeners=[monitoring], clock=clock)
    orchestrator.register(job("archive"))
    orchestrator.register(job("broken", fail=True))

    await orchestrator.trigger("archive", run_key="r1")
    await orchestrator.trigger("archive", run_key="r2")
    await orchestrator.trigger("broken", run_key="r1")

    assert monitoring.value("academic_batch_jobs_started_total", job="archive") == 2
    assert monitoring.value("academic_batch_jobs_completed_total", job="archive") == 2
    assert monitoring.value("academic_batch_jobs_failed_total", job="broken", step="work") == 1
    assert monitoring.value("academic_batch_items_read_total", job="archive") == 6
    assert monitoring.value("academic_batch_job_duration_seconds_count", job="archive") == 2
    assert b"academic_batch_jobs_started_total" in monitoring.exposition()


async def test_failure_is_published_once_per_execution(history, clock, bus):
    orchestrator = JobOrchestrator(
        history, listeners=[FailureNotificationListener(bus, "batch-alerts", "admin@doctorat.local")], clock=clock
    )
    orchestrator.register(job("archive"))
    orchestrator.register(job("broken", fail=True))

    await orchestrator.trigger("archive", run_key="ok")
    await orchestrator.trigger("broken", run_key="r1")

    assert bus.keys() == ["job-failure:broken:r1"]
    payload = bus.messages[0].payload
    assert payload["event_type"] == JOB_FAILURE_EVENT
    assert payload["severity"] == "URGENT"
    assert payload["failed_step"] == "work"
    assert payload["exception_type"] == "StoreError"
    assert payload["recipient"] == "admin@doctorat.local"


async def test_failure_to_record_the_start_is_alerted(clock, bus):
    class UnreachableHistory(InMemoryExecutionHistory):
        async def claim(self, execution):
            raise TransientStoreError("history", "claim", "connection refused")

    orchestrator = JobOrchestrator(
        UnreachableHistory(),
        listeners=[FailureNotificationListener(bus, "batch-alerts", "admin@doctorat.local")],
        clock=clock
    )
    orchestrator.register(job("archive"))

    with pytest.raises(JobExecutionError):
        await orchestrator.trigger("archive", run_key="r1")

    assert bus.keys() == ["job-failure:archive:r1"]
    payload = bus.messages[0].payload
    assert payload["failed_step"] is None
    assert payload["exception_type"] == "TransientStoreError"
    assert "cannot record execution start" in payload["message"]


async def test_unreachable_bus_does_not_change_the_job_outcome(history, clock):
    bus = FlakyBus({"batch-alerts": -1})
    orchestrator = JobOrchestrator(
        history, listeners=[FailureNotificationListener(bus, "batch-alerts", "admin@doctorat.local")], clock=clock
    )
    orchestrator.register(job("broken", fail=True))

    execution = await orchestrator.trigger("broken", run_key="r1")

    assert execution.failed_step == "work"
    assert bus.attempts["batch-alerts"] == 1


async def test_consistency_summary_warns_on_manual_intervention(history, clock, caplog):
    orchestrator = JobOrchestrator(history, clock=clock)
    orchestrator.register(JobDefinition(
        "data-consistency", job("data-consistency").steps, listeners=(ConsistencySummaryListener(),)
    ))

    with caplog.at_level(logging.INFO, logger="academic_batch_orchestrator"):
        await orchestrator.trigger("data-consistency", run_key="r1")

    warnings = [r for r in caplog.records if r.getMessage().startswith("Consistency check finished")]
    assert warnings and warnings[0].levelno == logging.WARNING
    assert warnings[0].manual_intervention_required == 1
