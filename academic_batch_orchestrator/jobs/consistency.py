"""
Data consistency job.

Reconciles the enrollment, defense and account stores, retries stale
notifications and writes an anomaly report when anything was found.
"""

import json
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import aiofiles
import aiofiles.os

from ..core.exceptions import MessageBusError, error_registry
from ..models import context_keys as keys
from ..models.execution import ExecutionContext, StepExecution, utc_now
from ..models.records import Priority
from ..services.message_bus import MessageBus, event_payload
from ..services.task_step import Tasklet
from ..utils.logger import get_logger


REPORT_EVENT = "ANOMALY_REPORT_GENERATED"


def build_report(context: ExecutionContext, generated_at: datetime) -> Dict[str, Any]:
    """Assemble the anomaly report from the counters of the reconciliation step."""
    return {
        "generated_at": generated_at.isoformat(),
        "summary": {
            "total_anomalies": context.get(keys.TOTAL_ANOMALIES),
            "auto_corrected": context.get(keys.AUTO_CORRECTED),
            "manual_intervention_required": context.get(keys.MANUAL_INTERVENTION),
            "notifications_failed": context.get(keys.NOTIFICATIONS_FAILED),
        },
        "invariants": {
            "user_enrollment": {
                "found": context.get(keys.USER_ENROLLMENT_ANOMALIES),
                "corrected": context.get(keys.USER_ENROLLMENT_CORRECTED),
            },
            "enrollment_defense": {
                "found": context.get(keys.ENROLLMENT_DEFENSE_ANOMALIES),
                "corrected": context.get(keys.ENROLLMENT_DEFENSE_CORRECTED),
            },
        },
        "roles": {
            "added": context.get(keys.ROLES_ADDED),
            "removed": context.get(keys.ROLES_REMOVED),
            "transitions": context.get(keys.ROLE_TRANSITIONS),
        },
        "orphaned_files": context.get(keys.ORPHANED_FILES),
        "notification_retries": {
            "success": context.get(keys.NOTIFICATION_RETRY_SUCCESS),
            "failure": context.get(keys.NOTIFICATION_RETRY_FAILURE),
        },
        "failed_passes": context.get(keys.FAILED_PASSES),
        "anomalies": context.get(keys.ANOMALIES),
    }


class AnomalyReportTasklet(Tasklet):
    """
    Writes the anomaly report as JSON and announces it on the bus.

    Args:
        reports_dir: Directory receiving the reports
        bus: Message bus
        topic: Notification topic
        recipient: Administrator receiving the report notice
        clock: Source of the report timestamp
    """

    def __init__(self, reports_dir: str, bus: MessageBus, topic: str, recipient: str,
                 clock: Callable[[], datetime] = utc_now):
        self.reports_dir = Path(reports_dir)
        self.bus = bus
        self.topic = topic
        self.recipient = recipient
        self.clock = clock
        self.logger = get_logger(__name__)

    async def execute(self, step_execution: StepExecution, context: ExecutionContext) -> Optional[str]:
        if context.get(keys.TOTAL_ANOMALIES) == 0 and not context.get(keys.FAILED_PASSES):
            self.logger.info("No anomalies, report skipped")
            return "no anomalies"

        generated_at = self.clock()
        report = build_report(context, generated_at)
        path = self.reports_dir / f"anomaly_report_{generated_at:%Y%m%d_%H%M%S}.json"

        await aiofiles.os.makedirs(self.reports_dir, exist_ok=True)
        async with aiofiles.open(path, "w", encoding="utf-8") as handle:
            await handle.write(json.dumps(report, indent=2, default=str))

        context.put(keys.ANOMALY_REPORT_PATH, str(path))
        step_execution.write_count += 1
        self.logger.info("Anomaly report written", extra={
            "report_path": str(path),
            "total_anomalies": report["summary"]["total_anomalies"]
        })

        payload = event_payload(
            REPORT_EVENT,
            [],
            Priority.NORMAL.value,
            recipient=self.recipient,
            report_path=str(path),
            summary=report["summary"]
        )
        try:
            await self.bus.publish(self.topic, f"anomaly-report:{path.name}", payload)
        except MessageBusError as e:
            error_registry.record_error(e)
            self.logger.error("Anomaly report notice not delivered", extra={
                "report_path": str(path),
                "error_message": str(e)
            })

        return f"report written to {path}"
