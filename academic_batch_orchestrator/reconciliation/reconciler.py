"""
Consistency reconciler.

Runs a list of reconciliation passes as one task step. The stores involved share
no transaction, so every repair is a predicate-guarded single-store write and
every notification carries a key derived from (invariant, record id); re-running
the step after a partial failure neither repeats a correction nor produces a
notification a consumer cannot recognise as a duplicate. Anomaly events pass
through the notification store before the bus, so each one is published at
least once even when the bus is down or the run stops half way.

Passes are isolated from each other: an exception aborts only the pass that
raised it, is logged and recorded under FAILED_PASSES, and the remaining passes
still run.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from ..core.exceptions import MessageBusError, ReconciliationError, error_registry
from ..models import context_keys as keys
from ..models.anomaly import Anomaly, Violation, notification_key
from ..models.execution import ExecutionContext, StepExecution, utc_now
from ..models.records import Priority
from ..services.fault_tolerance import BackoffPolicy, ErrorClassifier, RetryPolicy, retry_async
from ..services.message_bus import MessageBus, event_payload
from ..services.task_step import Tasklet
from ..stores.notification import NotificationStore
from ..utils.logger import get_logger, LoggerContext
from .invariants import Invariant


ANOMALY_EVENT = "DATA_CONSISTENCY_ANOMALY"


@dataclass
class PassResult:
    """What one reconciliation pass did."""
    name: str
    checked: int = 0
    anomalies: int = 0
    corrected: int = 0
    details: Dict[str, Any] = field(default_factory=dict)


class ReconciliationPass(ABC):
    """One independent unit of the reconciliation step."""

    name: str = "pass"

    @abstractmethod
    async def run(self, context: ExecutionContext) -> PassResult:
        """Run the pass, writing its counters into the execution context."""


class InvariantPass(ReconciliationPass):
    """
    Checks one invariant over its candidates and repairs violations.

    The anomaly event of a violation is stored in the outbox as a PENDING
    notification before the correction is applied and marked SENT once the bus
    accepted it. Events left PENDING by an earlier run, because the bus was down
    or the process stopped before publishing, are redelivered at the start of
    the next run under the same key.

    Args:
        invariant: Rule to enforce
        bus: Message bus receiving one event per anomaly
        topic: Notification topic
        outbox: Notification store holding events until they are published
        retry_policy: Retry policy applied to publishes
        backoff_policy: Delay schedule between publish attempts
        classifier: Error classifier
        sleep: Awaitable used for backoff delays
        clock: Source of detection and correction timestamps
    """

    def __init__(self, invariant: Invariant, bus: MessageBus, topic: str, outbox: NotificationStore,
                 retry_policy: Optional[RetryPolicy] = None,
                 backoff_policy: Optional[BackoffPolicy] = None,
                 classifier: Optional[ErrorClassifier] = None,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
                 clock: Callable[[], datetime] = utc_now):
        self.invariant = invariant
        self.name = invariant.name
        self.bus = bus
        self.topic = topic
        self.outbox = outbox
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=3)
        self.backoff_policy = backoff_policy or BackoffPolicy()
        self.classifier = classifier or ErrorClassifier()
        self.sleep = sleep
        self.clock = clock
        self.logger = get_logger(__name__)

    async def run(self, context: ExecutionContext) -> PassResult:
        found_key, corrected_key = keys.invariant_keys(self.name)
        result = PassResult(self.name)
        result.details["redelivered"] = await self._redeliver(context)

        candidates = await self.invariant.candidates()
        for candidate in candidates:
            result.checked += 1
            detected_at = self.clock()
            violation = await self.invariant.check(candidate)
            if violation is None:
                continue

            key = notification_key(violation.invariant, violation.record_id)
            payload = self._payload(violation, detected_at)
            outbox_id = await self.outbox.enqueue_event(
                key,
                ", ".join(violation.recipients),
                f"Data consistency anomaly: {violation.invariant}",
                violation.reason,
                ANOMALY_EVENT,
                Priority.HIGH.value,
                payload,
                detected_at
            )

            if not await self.invariant.correct(violation):
                await self.outbox.discard_pending(outbox_id)
                self.logger.info("Violation already corrected elsewhere", extra={
                    "invariant": self.name,
                    "record_id": violation.record_id
                })
                continue

            anomaly = Anomaly.from_violation(violation, detected_at, self.clock())
            result.anomalies += 1
            result.corrected += 1
            context.increment(found_key)
            context.increment(corrected_key)
            context.increment(keys.TOTAL_ANOMALIES)
            context.increment(keys.AUTO_CORRECTED)
            context.append(keys.ANOMALIES, anomaly.to_dict())
            self.logger.warning("Anomaly corrected", extra={
                "invariant": self.name,
                "record_id": anomaly.record_id,
                "reason": anomaly.reason,
                "to_status": anomaly.corrective_action.to_status
            })

            await self._deliver(outbox_id, key, payload, context)

        self.logger.info("Invariant pass finished", extra={
            "invariant": self.name,
            "checked": result.checked,
            "anomalies": result.anomalies,
            "redelivered": result.details["redelivered"]
        })
        return result

    def _payload(self, violation: Violation, detected_at: datetime) -> Dict[str, Any]:
        return event_payload(
            ANOMALY_EVENT,
            [violation.record_id],
            Priority.HIGH.value,
            corrective_action=violation.action.to_dict(),
            invariant=violation.invariant,
            reason=violation.reason,
            recipients=list(violation.recipients),
            related_ids=dict(violation.related_ids),
            detected_at=detected_at.isoformat()
        )

    async def _redeliver(self, context: ExecutionContext) -> int:
        """Publish events an earlier run left PENDING; stop at the first failure."""
        delivered = 0
        for notification in await self.outbox.pending_events(f"{self.name}:"):
            if not await self._deliver(notification.id, notification.publish_key,
                                       notification.to_payload(), context):
                break
            delivered += 1
            context.increment(keys.NOTIFICATIONS_REDELIVERED)
        return delivered

    async def _deliver(self, notification_id: int, key: str, payload: Dict[str, Any],
                       context: ExecutionContext) -> bool:
        try:
            await retry_async(
                lambda: self.bus.publish(self.topic, key, payload),
                self.retry_policy,
                self.backoff_policy,
                self.classifier,
                sleep=self.sleep,
                operation=f"publish {key}"
            )
        except MessageBusError as e:
            context.increment(keys.NOTIFICATIONS_FAILED)
            error_registry.record_error(e)
            self.logger.error("Anomaly notification not delivered, kept pending", extra={
                "notification_key": key,
                "notification_id": notification_id,
                "error_message": str(e)
            })
            return False

        await self.outbox.mark_sent(notification_id, self.clock())
        return True


class ConsistencyReconciler(Tasklet):
    """Runs every configured reconciliation pass with per-pass failure isolation."""

    def __init__(self, passes: Sequence[ReconciliationPass]):
        if not passes:
            raise ValueError("at least one reconciliation pass is required")
        self.passes = list(passes)
        self.logger = get_logger(__name__)

    async def execute(self, step_execution: StepExecution, context: ExecutionContext) -> Optional[str]:
        results: List[PassResult] = []
        failed: List[str] = []

        for reconciliation_pass in self.passes:
            with LoggerContext(reconciliation_pass=reconciliation_pass.name):
                try:
                    result = await reconciliation_pass.run(context)
                except Exception as e:
                    failed.append(reconciliation_pass.name)
                    error_registry.record_error(e)
                    context.append(keys.FAILED_PASSES, {
                        "pass": reconciliation_pass.name,
                        "error_type": type(e).__name__,
                        "error_message": str(e)
                    })
                    self.logger.error("Reconciliation pass aborted", extra={
                        "error_type": type(e).__name__,
                        "error_message": str(e)
                    }, exc_info=True)
                    continue

            results.append(result)
            step_execution.read_count += result.checked
            step_execution.write_count += result.corrected

        if not results:
            raise ReconciliationError("all", f"every pass failed: {', '.join(failed)}")

        summary = "; ".join(
            f"{result.name}: checked={result.checked} anomalies={result.anomalies}" for result in results
        )
        if failed:
            summary += f"; failed passes: {', '.join(failed)}"
        return summary
