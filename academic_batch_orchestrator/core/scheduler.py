"""
Cron scheduler for Academic Batch Orchestrator

Fires registered jobs on their configured cron expressions using APScheduler's
asyncio scheduler. Every firing runs under a fresh run key; a failure of a
scheduled firing is logged and never stops the scheduler.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from ..models.execution import JobExecution
from ..utils.config import BatchSettings
from ..utils.logger import get_logger
from .exceptions import ConfigurationError, DuplicateRunKeyError, error_registry
from .orchestrator import JobOrchestrator, make_run_key


class BatchScheduler:
    """
    Schedules the orchestrator's jobs.

    Args:
        orchestrator: Orchestrator holding the registered jobs
        settings: Settings providing each job's cron expression and enabled flag
        scheduler: APScheduler instance; a UTC AsyncIOScheduler by default
    """

    def __init__(self, orchestrator: JobOrchestrator, settings: BatchSettings,
                 scheduler: Optional[AsyncIOScheduler] = None):
        self.orchestrator = orchestrator
        self.settings = settings
        self.scheduler = scheduler or AsyncIOScheduler(timezone="UTC")
        self._running = False
        self.logger = get_logger(__name__)

    @property
    def is_running(self) -> bool:
        return self._running

    def register_jobs(self) -> List[str]:
        """
        Add one cron entry per enabled job that has a cron expression.

        Returns:
            Names of the scheduled jobs
        """
        scheduled = []
        for definition in self.orchestrator.jobs():
            job_settings = self.settings.job(definition.name)
            if not job_settings.enabled or not job_settings.cron:
                self.logger.info("Job not scheduled", extra={
                    "job_name": definition.name,
                    "enabled": job_settings.enabled
                })
                continue

            try:
                trigger = CronTrigger.from_crontab(job_settings.cron, timezone="UTC")
            except ValueError as e:
                raise ConfigurationError(f"jobs.{definition.name}.cron", str(e)) from e

            self.scheduler.add_job(
                self._fire,
                trigger=trigger,
                args=[definition.name],
                id=definition.name,
                name=definition.description or definition.name,
                replace_existing=True,
                max_instances=1,
                coalesce=True
            )
            scheduled.append(definition.name)
            self.logger.info("Job scheduled", extra={
                "job_name": definition.name,
                "cron": job_settings.cron
            })
        return scheduled

    def start(self) -> None:
        """Register the cron entries and start firing; must run inside the event loop."""
        if self._running:
            self.logger.warning("Scheduler already running")
            return

        self.register_jobs()
        self.scheduler.start()
        self._running = True
        self.logger.info("Batch scheduler started")

    def stop(self, wait: bool = False) -> None:
        if not self._running:
            return

        self.scheduler.shutdown(wait=wait)
        self._running = False
        self.logger.info("Batch scheduler stopped")

    async def trigger(self, job_name: str, run_key: Optional[str] = None,
                      moment: Optional[datetime] = None) -> JobExecution:
        """
        Run a job now.

        Args:
            job_name: Registered job name
            run_key: Explicit run key; derived from the timestamp plus a sequence number when omitted
            moment: Trigger timestamp used to derive the run key

        Returns:
            The terminal JobExecution
        """
        run_key = run_key or make_run_key(moment)
        return await self.orchestrator.trigger(job_name, run_key)

    async def _fire(self, job_name: str) -> None:
        try:
            execution = await self.trigger(job_name)
        except DuplicateRunKeyError as e:
            self.logger.warning("Scheduled firing skipped", extra={
                "job_name": job_name,
                "error_message": str(e)
            })
        except Exception as e:
            error_registry.record_error(e)
            self.logger.error("Scheduled firing failed", extra={
                "job_name": job_name,
                "error_type": type(e).__name__,
                "error_message": str(e)
            }, exc_info=True)
        else:
            self.logger.info("Scheduled firing finished", extra={
                "job_name": job_name,
                "run_key": execution.run_key,
                "status": execution.status.value
            })

    def scheduled_jobs(self) -> List[Dict[str, Any]]:
        """Describe the cron entries, with their next fire time once started."""
        entries = []
        for job in self.scheduler.get_jobs():
            next_run = getattr(job, "next_run_time", None)
            entries.append({
                "id": job.id,
                "name": job.name,
                "next_run": next_run.isoformat() if next_run else None,
                "trigger": str(job.trigger)
            })
        return entries
