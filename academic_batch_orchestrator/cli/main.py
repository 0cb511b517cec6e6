"""
Main CLI entry point for Academic Batch Orchestrator

Provides command-line interface for running jobs, inspecting the execution
history and starting the cron scheduler.
"""

import asyncio
import json
import sys
from datetime import timedelta
from typing import Any, Dict, List

import click

from ..core.application import BatchApplication
from ..core.exceptions import BatchOrchestratorError
from ..models.execution import JobExecution, JobExecutionStatus, utc_now
from ..utils.config import load_settings
from ..utils.logger import setup_logger


@click.group()
@click.option('--config', '-c', type=click.Path(exists=True), envvar='ACADEMIC_BATCH_CONFIG',
              help='Configuration file path')
@click.option('--log-level', '-l', default=None, help='Log level')
@click.option('--verbose', '-v', is_flag=True, help='Verbose output')
@click.pass_context
def cli(ctx, config, log_level, verbose):
    """Academic Batch Orchestrator CLI"""

    ctx.ensure_object(dict)

    try:
        settings = load_settings(config)
    except BatchOrchestratorError as e:
        click.echo(f"Error loading configuration: {e}", err=True)
        sys.exit(2)

    logging_settings = settings.logging
    setup_logger(
        "academic_batch_orchestrator",
        level=log_level or logging_settings.level,
        structured=logging_settings.structured and not verbose,
        log_file=logging_settings.log_file
    )

    ctx.obj['settings'] = settings
    ctx.obj['verbose'] = verbose
    ctx.obj.setdefault('app_factory', BatchApplication)


@cli.group()
@click.pass_context
def jobs(ctx):
    """Job commands"""
    pass


@cli.group()
@click.pass_context
def history(ctx):
    """Execution history commands"""
    pass


@cli.group()
@click.pass_context
def scheduler(ctx):
    """Scheduler commands"""
    pass


@jobs.command('list')
@click.pass_context
def list_jobs(ctx):
    """List the configured jobs and their schedules"""
    settings = ctx.obj['settings']
    click.echo(f"{'JOB':<20} {'ENABLED':<8} {'CRON':<20} {'CHUNK':<6} {'SKIP':<5}")
    click.echo("-" * 63)
    for name in sorted(settings.jobs):
        job_settings = settings.jobs[name]
        click.echo(f"{name:<20} {'yes' if job_settings.enabled else 'no':<8} "
                   f"{job_settings.cron or '-':<20} {job_settings.chunk_size:<6} {job_settings.skip_limit:<5}")


@jobs.command('run')
@click.argument('job_name')
@click.option('--run-key', help='Explicit run key; derived from the current time when omitted')
@click.pass_context
def run_job(ctx, job_name, run_key):
    """Run one execution of a job now"""

    async def _run() -> JobExecution:
        app = ctx.obj['app_factory'](ctx.obj['settings'])
        try:
            await app.start()
            return await app.scheduler.trigger(job_name, run_key)
        finally:
            await app.stop()

    try:
        execution = asyncio.run(_run())
    except BatchOrchestratorError as e:
        click.echo(f"Error running job: {e}", err=True)
        sys.exit(1)

    click.echo(json.dumps(_execution_summary(execution, ctx.obj['verbose']), indent=2, default=str))
    if execution.status == JobExecutionStatus.FAILED:
        sys.exit(1)


@history.command('show')
@click.argument('job_name')
@click.option('--limit', type=int, default=10, help='Number of executions to show; 0 for all')
@click.pass_context
def show_history(ctx, job_name, limit):
    """Show the latest executions of a job"""

    async def _show() -> List[JobExecution]:
        app = ctx.obj['app_factory'](ctx.obj['settings'])
        try:
            await app.start()
            return await app.orchestrator.history.query(job_name, limit)
        finally:
            await app.stop()

    try:
        executions = asyncio.run(_show())
    except BatchOrchestratorError as e:
        click.echo(f"Error reading history: {e}", err=True)
        sys.exit(1)

    _display_executions_table(executions)


@history.command('metrics')
@click.argument('job_name')
@click.pass_context
def show_metrics(ctx, job_name):
    """Show aggregated metrics of a job"""

    async def _metrics():
        app = ctx.obj['app_factory'](ctx.obj['settings'])
        try:
            await app.start()
            return await app.orchestrator.history.metrics(job_name)
        finally:
            await app.stop()

    try:
        metrics = asyncio.run(_metrics())
    except BatchOrchestratorError as e:
        click.echo(f"Error reading metrics: {e}", err=True)
        sys.exit(1)

    click.echo(json.dumps(metrics.to_dict(), indent=2, default=str))


@history.command('prune')
@click.option('--days', type=int, default=None, help='Retention in days; defaults to the configured retention')
@click.pass_context
def prune_history(ctx, days):
    """Delete executions older than the retention period"""
    settings = ctx.obj['settings']
    retention = days if days is not None else settings.thresholds.history_retention_days

    async def _prune() -> int:
        app = ctx.obj['app_factory'](settings)
        try:
            await app.start()
            return await app.orchestrator.history.prune(utc_now() - timedelta(days=retention))
        finally:
            await app.stop()

    try:
        pruned = asyncio.run(_prune())
    except BatchOrchestratorError as e:
        click.echo(f"Error pruning history: {e}", err=True)
        sys.exit(1)

    click.echo(f"Pruned {pruned} execution(s) older than {retention} day(s)")


@scheduler.command('start')
@click.pass_context
def start_scheduler(ctx):
    """Start the cron scheduler and run until interrupted"""

    async def _serve():
        app = ctx.obj['app_factory'](ctx.obj['settings'])
        await app.start()
        try:
            app.scheduler.start()
            for entry in app.scheduler.scheduled_jobs():
                click.echo(f"Scheduled {entry['id']}: next run {entry['next_run']}")
            click.echo("Scheduler running. Press Ctrl+C to stop.")
            await asyncio.Event().wait()
        finally:
            await app.stop()

    try:
        asyncio.run(_serve())
    except KeyboardInterrupt:
        click.echo("Scheduler stopped")
    except BatchOrchestratorError as e:
        click.echo(f"Error starting scheduler: {e}", err=True)
        sys.exit(1)


def _execution_summary(execution: JobExecution, verbose: bool) -> Dict[str, Any]:
    summary = {
        "job_name": execution.job_name,
        "run_key": execution.run_key,
        "status": execution.status.value,
        "exit_message": execution.exit_message,
        "duration_seconds": execution.duration_seconds,
        "items_processed": execution.items_processed,
        "items_written": execution.items_written,
        "items_skipped": execution.items_skipped,
    }
    if execution.failed_step:
        summary["failed_step"] = execution.failed_step
        summary["failure_type"] = execution.failure_type
    if verbose:
        summary["steps"] = [step.to_dict() for step in execution.step_executions]
    return summary


def _display_executions_table(executions: List[JobExecution]):
    """Display executions in table format"""
    if not executions:
        click.echo("No executions found")
        return

    click.echo(f"{'RUN KEY':<34} {'STATUS':<10} {'STARTED':<20} {'DURATION':<10} {'READ':<7} {'SKIP':<5}")
    click.echo("-" * 90)
    for execution in executions:
        started = execution.started_at.strftime('%Y-%m-%d %H:%M:%S') if execution.started_at else '-'
        duration = f"{execution.duration_seconds:.1f}s" if execution.duration_seconds is not None else '-'
        click.echo(f"{execution.run_key:<34} {execution.status.value:<10} {started:<20} "
                   f"{duration:<10} {execution.items_processed:<7} {execution.items_skipped:<5}")


def main():
    """Main CLI entry point"""
    cli()


if __name__ == '__main__':
    main()
