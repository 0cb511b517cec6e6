"""
Job definitions of the batch service.

build_jobs() wires the stores, the message bus and the settings into the job
definitions registered with the orchestrator.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Iterable, List, Optional

from ..core.exceptions import ErrorKind
from ..models.execution import utc_now
from ..models.job import JobDefinition
from ..reconciliation.invariants import EnrollmentDefenseInvariant, UserEnrollmentInvariant
from ..reconciliation.orphan_artifacts import OrphanArtifactScanner
from ..reconciliation.reconciler import ConsistencyReconciler, InvariantPass
from ..reconciliation.role_sync import RoleSynchronizer
from ..services.chunk_engine import ChunkStep, IterableItemReader
from ..services.fault_tolerance import ErrorClassifier, RetryPolicy, policies_from_settings
from ..services.history import ExecutionHistoryStore
from ..services.message_bus import MessageBus
from ..services.monitoring_service import ConsistencySummaryListener
from ..services.notification_sweeper import NotificationRetrySweeper
from ..services.task_step import TaskStep
from ..stores.account import AccountStore
from ..stores.defense import DefenseStore
from ..stores.enrollment import EnrollmentStore
from ..stores.notification import NotificationStore
from ..utils.config import BatchSettings
from .archive import ArchiveProcessor, ArchiveWriter, CleanupLogsTasklet
from .consistency import AnomalyReportTasklet
from .duration_alert import DurationAlertProcessor, DurationAlertWriter
from .maintenance import HistoryCleanupTasklet
from .monthly_report import (
    DefenseStatsTasklet,
    EnrollmentStatsTasklet,
    MonthlyReportNotificationTasklet,
    NotificationStatsTasklet,
    UserStatsTasklet
)
from .token_cleanup import TokenDeletionWriter, expired_token_source


DATA_CONSISTENCY = "data-consistency"
ARCHIVE = "archive"
DURATION_ALERT = "duration-alert"
TOKEN_CLEANUP = "token-cleanup"
HISTORY_CLEANUP = "history-cleanup"
MONTHLY_REPORT = "monthly-report"

# Archive items that still fail after retries are skipped rather than failing the run.
ARCHIVE_SKIPPABLE = (ErrorKind.DATABASE_TRANSIENT, ErrorKind.DATABASE_DEADLOCK, ErrorKind.FILESYSTEM_IO)


@dataclass
class Stores:
    """The four owned stores the jobs operate on."""
    enrollments: EnrollmentStore
    defenses: DefenseStore
    accounts: AccountStore
    notifications: NotificationStore


class JobFactory:
    """
    Builds job definitions sharing one classifier, sleep function and clock.

    Args:
        settings: Batch settings
        stores: Owned stores
        bus: Message bus
        history: Execution history store
        classifier: Error classifier; built from settings.skip when omitted
        sleep: Awaitable used for backoff delays
        clock: Source of the current time
    """

    def __init__(self, settings: BatchSettings, stores: Stores, bus: MessageBus,
                 history: ExecutionHistoryStore,
                 classifier: Optional[ErrorClassifier] = None,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
                 clock: Callable[[], datetime] = utc_now):
        self.settings = settings
        self.stores = stores
        self.bus = bus
        self.history = history
        self.classifier = classifier or ErrorClassifier(unclassified=settings.skip.unclassified)
        self.sleep = sleep
        self.clock = clock

    def _chunk_step(self, job_name: str, name: str, reader, processor, writer, target,
                    extra_skippable: Iterable[ErrorKind] = ()) -> ChunkStep:
        job_settings = self.settings.job(job_name)
        retry, backoff, skip = policies_from_settings(
            self.settings, job_settings.skip_limit, extra_skippable
        )
        return ChunkStep(
            name,
            reader=reader,
            processor=processor,
            writer=writer,
            target=target,
            chunk_size=job_settings.chunk_size,
            retry_policy=retry,
            backoff_policy=backoff,
            skip_policy=skip,
            classifier=self.classifier,
            sleep=self.sleep
        )

    def data_consistency(self) -> JobDefinition:
        notifications = self.settings.notifications
        consistency = self.settings.consistency
        retry, backoff, _ = policies_from_settings(self.settings, 0)
        publish_retry = RetryPolicy(max_attempts=min(retry.max_attempts, 3))

        def invariant_pass(invariant) -> InvariantPass:
            return InvariantPass(
                invariant, self.bus, notifications.topic, self.stores.notifications,
                retry_policy=publish_retry,
                backoff_policy=backoff,
                classifier=self.classifier,
                sleep=self.sleep,
                clock=self.clock
            )

        stores = self.stores
        reconciler = ConsistencyReconciler([
            invariant_pass(UserEnrollmentInvariant(
                stores.enrollments, stores.accounts, notifications.admin_recipient
            )),
            invariant_pass(EnrollmentDefenseInvariant(
                stores.defenses, stores.enrollments, stores.accounts, notifications.admin_recipient
            )),
            RoleSynchronizer(stores.enrollments, stores.defenses, stores.accounts),
            OrphanArtifactScanner(
                consistency.storage_root,
                consistency.quarantine_dir,
                [stores.enrollments, stores.defenses],
                clock=self.clock
            ),
        ])
        sweeper = NotificationRetrySweeper(
            stores.notifications, self.bus, notifications,
            retry_policy=publish_retry,
            backoff_policy=backoff,
            classifier=self.classifier,
            sleep=self.sleep,
            clock=self.clock
        )
        report = AnomalyReportTasklet(
            consistency.reports_dir, self.bus, notifications.topic,
            notifications.admin_recipient, clock=self.clock
        )
        return JobDefinition(
            DATA_CONSISTENCY,
            steps=[
                TaskStep("reconcile-stores", reconciler, classifier=self.classifier, sleep=self.sleep),
                TaskStep("retry-pending-notifications", sweeper, classifier=self.classifier, sleep=self.sleep),
                TaskStep("anomaly-report", report, classifier=self.classifier, sleep=self.sleep),
            ],
            listeners=[ConsistencySummaryListener()],
            description="Cross-store consistency reconciliation"
        )

    def archive(self) -> JobDefinition:
        stores = self.stores
        cutoff = lambda: self.clock() - timedelta(days=self.settings.thresholds.archive_after_days)
        processor = ArchiveProcessor(clock=self.clock)
        return JobDefinition(
            ARCHIVE,
            steps=[
                self._chunk_step(
                    ARCHIVE, "archive-enrollments",
                    IterableItemReader(lambda context: stores.enrollments.archive_candidates(cutoff())),
                    processor,
                    ArchiveWriter(stores.enrollments),
                    stores.enrollments,
                    ARCHIVE_SKIPPABLE
                ),
                self._chunk_step(
                    ARCHIVE, "archive-defenses",
                    IterableItemReader(lambda context: stores.defenses.archive_candidates(cutoff())),
                    processor,
                    ArchiveWriter(stores.defenses),
                    stores.defenses,
                    ARCHIVE_SKIPPABLE
                ),
                TaskStep(
                    "cleanup-logs",
                    CleanupLogsTasklet(
                        stores.notifications, self.settings.thresholds.log_retention_days, clock=self.clock
                    ),
                    classifier=self.classifier,
                    sleep=self.sleep
                ),
            ],
            description="Quarterly archive of decided enrollments and completed defenses"
        )

    def duration_alert(self) -> JobDefinition:
        stores = self.stores
        return JobDefinition(
            DURATION_ALERT,
            steps=[
                self._chunk_step(
                    DURATION_ALERT, "send-duration-alerts",
                    IterableItemReader(lambda context: stores.enrollments.duration_alert_candidates()),
                    DurationAlertProcessor(stores.notifications, self.settings.thresholds, clock=self.clock),
                    DurationAlertWriter(stores.notifications, self.bus, self.settings.notifications.topic),
                    stores.notifications
                ),
            ],
            description="Doctorate duration threshold alerts"
        )

    def token_cleanup(self) -> JobDefinition:
        stores = self.stores
        return JobDefinition(
            TOKEN_CLEANUP,
            steps=[
                self._chunk_step(
                    TOKEN_CLEANUP, "delete-expired-tokens",
                    IterableItemReader(expired_token_source(stores.accounts, clock=self.clock)),
                    None,
                    TokenDeletionWriter(stores.accounts, clock=self.clock),
                    stores.accounts
                ),
            ],
            description="Expired refresh and password reset token cleanup"
        )

    def history_cleanup(self) -> JobDefinition:
        return JobDefinition(
            HISTORY_CLEANUP,
            steps=[
                TaskStep(
                    "prune-history",
                    HistoryCleanupTasklet(
                        self.history, self.settings.thresholds.history_retention_days, clock=self.clock
                    ),
                    classifier=self.classifier,
                    sleep=self.sleep
                ),
            ],
            description="Execution history retention"
        )

    def monthly_report(self) -> JobDefinition:
        stores = self.stores
        retry, backoff, _ = policies_from_settings(self.settings, 0)

        def step(name, tasklet) -> TaskStep:
            return TaskStep(
                name, tasklet,
                retry_policy=retry,
                backoff_policy=backoff,
                classifier=self.classifier,
                sleep=self.sleep
            )

        notifications = self.settings.notifications
        return JobDefinition(
            MONTHLY_REPORT,
            steps=[
                step("collect-enrollment-stats", EnrollmentStatsTasklet(stores.enrollments, clock=self.clock)),
                step("collect-defense-stats", DefenseStatsTasklet(stores.defenses, clock=self.clock)),
                step("collect-notification-stats", NotificationStatsTasklet(stores.notifications, clock=self.clock)),
                step("collect-user-stats", UserStatsTasklet(stores.accounts, clock=self.clock)),
                TaskStep(
                    "send-monthly-report",
                    MonthlyReportNotificationTasklet(
                        stores.accounts, self.bus, notifications.topic, notifications.admin_recipient,
                        retry_policy=RetryPolicy(max_attempts=min(retry.max_attempts, 3)),
                        backoff_policy=backoff,
                        classifier=self.classifier,
                        sleep=self.sleep,
                        clock=self.clock
                    ),
                    classifier=self.classifier,
                    sleep=self.sleep
                ),
            ],
            description="Monthly activity statistics for the administrators"
        )

    def build(self) -> List[JobDefinition]:
        return [
            self.data_consistency(),
            self.archive(),
            self.duration_alert(),
            self.token_cleanup(),
            self.history_cleanup(),
            self.monthly_report(),
        ]


def build_jobs(settings: BatchSettings, stores: Stores, bus: MessageBus,
               history: ExecutionHistoryStore, **options) -> List[JobDefinition]:
    """Build every job definition; options are passed to JobFactory."""
    return JobFactory(settings, stores, bus, history, **options).build()
