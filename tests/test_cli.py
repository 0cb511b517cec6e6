from click.testing import CliRunner

from academic_batch_orchestrator.cli.main import cli
from academic_batch_orchestrator.core.orchestrator import JobOrchestrator
from academic_batch_orchestrator.core.scheduler import BatchScheduler
from academic_batch_orchestrator.models.job import JobDefinition
from academic_batch_orchestrator.services.history import InMemoryExecutionHistory
from academic_batch_orchestrator.services.task_step import FunctionTasklet, TaskStep


class StubApplication:
    """Application exposing one passing and one failing job, without any store."""

    def __init__(self, settings):
        async def ok(step_execution, context):
            step_execution.read_count += 2
            return "done"

        async def broken(step_execution, context):
            raise RuntimeError("boom")

        self.orchestrator = JobOrchestrator(InMemoryExecutionHistory())
        self.orchestrator.register(JobDefinition("archive", (TaskStep("work", FunctionTasklet(ok)),)))
        self.orchestrator.register(JobDefinition("token-cleanup", (TaskStep("work", FunctionTasklet(broken)),)))
        self.scheduler = BatchScheduler(self.orchestrator, settings)
        self.stopped = False

    async def start(self):
        return self.orchestrator

    async def stop(self):
        self.stopped = True


def invoke(*args):
    return CliRunner().invoke(cli, ["--log-level", "CRITICAL", *args], obj={"app_factory": StubApplication})


def test_jobs_list_shows_the_configured_schedules():
    result = invoke("jobs", "list")

    assert result.exit_code == 0
    assert "data-consistency" in result.output
    assert "0 3 1 1,4,7,10 *" in result.output


def test_jobs_run_prints_the_execution_summary():
    result = invoke("jobs", "run", "archive", "--run-key", "manual-1")

    assert result.exit_code == 0
    assert '"run_key": "manual-1"' in result.output
    assert '"status": "COMPLETED"' in result.output
    assert '"items_processed": 2' in result.output


def test_failed_job_exits_non_zero():
    result = invoke("jobs", "run", "token-cleanup")

    assert result.exit_code == 1
    assert '"failed_step": "work"' in result.output


def test_unknown_job_exits_non_zero():
    result = invoke("jobs", "run", "missing")

    assert result.exit_code == 1
    assert "Job missing not found" in result.output


def test_invalid_configuration_exits_with_usage_error(tmp_path):
    config = tmp_path / "batch.yaml"
    config.write_text("skip:\n  unclassified: sometimes\n")

    result = CliRunner().invoke(cli, ["--config", str(config), "jobs", "list"])

    assert result.exit_code == 2
