"""
In-memory stand-ins for the owned stores, the bus and the sleep function.

Every store buffers writes made through a transaction connection and applies
them only when the transaction body returns, so tests observe real commit and
rollback behaviour without a database.
"""

from contextlib import asynccontextmanager
from datetime import date, datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from academic_batch_orchestrator.core.exceptions import MessageBusUnavailableError
from academic_batch_orchestrator.models.records import (
    Account,
    Defense,
    DefenseRequest,
    DefenseRequestStatus,
    DefenseStatus,
    Enrollment,
    EnrollmentStatus,
    ExpiredToken,
    Notification,
    NotificationStatus,
    PASSING_MENTIONS,
    Role,
)
from academic_batch_orchestrator.services.message_bus import InMemoryMessageBus
from academic_batch_orchestrator.stores.account import AccountStore
from academic_batch_orchestrator.stores.defense import DefenseStore
from academic_batch_orchestrator.stores.enrollment import EnrollmentStore
from academic_batch_orchestrator.stores.notification import NotificationStore


class FakeConnection:
    """Collects deferred writes until the owning transaction commits."""

    def __init__(self):
        self.pending: List[Callable[[], Any]] = []

    def defer(self, operation: Callable[[], Any]) -> None:
        self.pending.append(operation)

    def apply(self) -> None:
        for operation in self.pending:
            operation()


class TransactionalFake:
    """Commit/rollback bookkeeping shared by the fake stores."""

    def __init__(self):
        self.commits = 0
        self.rollbacks = 0

    @asynccontextmanager
    async def transaction(self):
        connection = FakeConnection()
        try:
            yield connection
        except BaseException:
            self.rollbacks += 1
            raise
        connection.apply()
        self.commits += 1


class RecordingTarget(TransactionalFake):
    """Chunk write target remembering what each committed chunk contained."""

    def __init__(self):
        super().__init__()
        self.committed: List[List[Any]] = []

    @property
    def items(self) -> List[Any]:
        return [item for chunk in self.committed for item in chunk]


class RecordingSleep:
    """Awaitable sleep that records the requested delays and returns at once."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class FlakyBus(InMemoryMessageBus):
    """
    Bus failing a configurable number of publishes.

    Args:
        failures: Failures per topic before publishes to it succeed; -1 fails forever
    """

    def __init__(self, failures: Optional[Dict[str, int]] = None):
        super().__init__()
        self.failures = dict(failures or {})
        self.attempts: Dict[str, int] = {}

    async def publish(self, topic: str, key: str, payload: Dict[str, Any]) -> None:
        self.attempts[topic] = self.attempts.get(topic, 0) + 1
        remaining = self.failures.get(topic, 0)
        if remaining != 0:
            if remaining > 0:
                self.failures[topic] = remaining - 1
            raise MessageBusUnavailableError(topic, "broker unreachable", key=key)
        await super().publish(topic, key, payload)


async def _iterate(items: Iterable[Any]):
    for item in list(items):
        yield item


class CannedStats:
    """monthly_stats() answering with the preset self.stats and recording each period asked for."""

    async def monthly_stats(self, start: date, end: date) -> Dict[str, Any]:
        self.stats_periods.append((start, end))
        if isinstance(self.stats, Exception):
            raise self.stats
        return dict(self.stats)


class FakeEnrollmentStore(CannedStats, TransactionalFake, EnrollmentStore):

    def __init__(self, enrollments: Iterable[Enrollment] = ()):
        super().__init__()
        self.enrollments: Dict[int, Enrollment] = {e.id: e for e in enrollments}
        self.archived_rows: Dict[int, Dict[str, Any]] = {}
        self.transitions: List[tuple] = []
        self.stats: Any = {}
        self.stats_periods: List[tuple] = []

    async def active_enrollments(self) -> List[Enrollment]:
        excluded = (EnrollmentStatus.SUSPENDED, EnrollmentStatus.REJECTED)
        return [e for _, e in sorted(self.enrollments.items()) if e.status not in excluded]

    async def get(self, enrollment_id: int) -> Optional[Enrollment]:
        return self.enrollments.get(enrollment_id)

    async def transition_status(self, enrollment_id: int, from_status: str, to_status: str) -> bool:
        enrollment = self.enrollments.get(enrollment_id)
        if enrollment is None or enrollment.status != from_status:
            return False
        enrollment.status = to_status
        self.transitions.append((enrollment_id, from_status, to_status))
        return True

    async def validated_candidate_ids(self) -> Set[int]:
        return {
            e.candidate_id for e in self.enrollments.values()
            if e.status == EnrollmentStatus.VALIDATED and e.candidate_id is not None
        }

    async def candidate_ids(self, enrollment_ids: Iterable[int]) -> Dict[int, int]:
        return {
            i: self.enrollments[i].candidate_id for i in enrollment_ids
            if i in self.enrollments and self.enrollments[i].candidate_id is not None
        }

    async def document_paths(self) -> List[str]:
        return [e.document_path for e in self.enrollments.values() if e.document_path]

    def archive_candidates(self, decided_before: datetime):
        decided = [
            e for _, e in sorted(self.enrollments.items())
            if not e.archived and (
                (e.status == EnrollmentStatus.VALIDATED and e.validated_at and e.validated_at < decided_before)
                or (e.status == EnrollmentStatus.REJECTED and e.rejected_at and e.rejected_at < decided_before)
            )
        ]
        return _iterate(decided)

    async def archive(self, records: List[Dict[str, Any]], connection: Any) -> int:
        flagged = [r["id"] for r in records if not self.enrollments[r["id"]].archived]

        def apply():
            for record in records:
                self.archived_rows.setdefault(record["id"], record)
            for enrollment_id in flagged:
                self.enrollments[enrollment_id].archived = True

        connection.defer(apply)
        return len(flagged)

    def duration_alert_candidates(self):
        return _iterate(
            e for _, e in sorted(self.enrollments.items())
            if e.status == EnrollmentStatus.VALIDATED and e.first_enrollment_date is not None
        )


class FakeDefenseStore(CannedStats, TransactionalFake, DefenseStore):

    def __init__(self, requests: Iterable[DefenseRequest] = (), defenses: Iterable[Defense] = (),
                 documents: Iterable[str] = ()):
        super().__init__()
        self.requests: Dict[int, DefenseRequest] = {r.id: r for r in requests}
        self.defenses: Dict[int, Defense] = {d.id: d for d in defenses}
        self.documents = list(documents)
        self.archived_rows: Dict[int, Dict[str, Any]] = {}
        self.fail_paths: Optional[Exception] = None
        self.stats: Any = {}
        self.stats_periods: List[tuple] = []

    async def open_requests(self) -> List[DefenseRequest]:
        excluded = (DefenseRequestStatus.BLOCKED, DefenseRequestStatus.REJECTED)
        return [r for _, r in sorted(self.requests.items()) if r.status not in excluded]

    async def transition_request_status(self, request_id: int, from_status: str, to_status: str) -> bool:
        request = self.requests.get(request_id)
        if request is None or request.status != from_status:
            return False
        request.status = to_status
        return True

    async def successful_enrollment_ids(self) -> Set[int]:
        return {
            d.enrollment_id for d in self.defenses.values()
            if d.status == DefenseStatus.COMPLETED and d.mention in PASSING_MENTIONS
        }

    async def document_paths(self) -> List[str]:
        if self.fail_paths is not None:
            raise self.fail_paths
        paths = list(self.documents)
        for defense in self.defenses.values():
            paths.extend(p for p in (defense.document_path, defense.minutes_path) if p)
        paths.extend(r.document_path for r in self.requests.values() if r.document_path)
        return paths

    def archive_candidates(self, defended_before: datetime):
        return _iterate(
            d for _, d in sorted(self.defenses.items())
            if d.status == DefenseStatus.COMPLETED and not d.archived
            and d.defended_at and d.defended_at < defended_before
        )

    async def archive(self, records: List[Dict[str, Any]], connection: Any) -> int:
        flagged = [r["id"] for r in records if not self.defenses[r["id"]].archived]

        def apply():
            for record in records:
                self.archived_rows.setdefault(record["id"], record)
            for defense_id in flagged:
                self.defenses[defense_id].archived = True

        connection.defer(apply)
        return len(flagged)


class FakeAccountStore(CannedStats, TransactionalFake, AccountStore):

    def __init__(self, accounts: Iterable[Account] = (), tokens: Iterable[ExpiredToken] = ()):
        super().__init__()
        self.accounts: Dict[int, Account] = {a.id: a for a in accounts}
        self.roles: Dict[int, Set[str]] = {a.id: set(a.roles) for a in self.accounts.values()}
        self.tokens: List[ExpiredToken] = list(tokens)
        self.role_writes: List[tuple] = []
        self.stats: Any = {}
        self.stats_periods: List[tuple] = []

    async def get_account(self, account_id: int) -> Optional[Account]:
        return self.accounts.get(account_id)

    async def roles_of(self, account_ids: Iterable[int]) -> Dict[int, Set[str]]:
        return {i: set(self.roles.get(i, set())) for i in account_ids if i in self.accounts}

    async def add_role(self, account_id: int, role: str) -> bool:
        roles = self.roles.setdefault(account_id, set())
        if role in roles:
            return False
        roles.add(role)
        self.role_writes.append(("add", account_id, role))
        return True

    async def remove_role(self, account_id: int, role: str) -> bool:
        roles = self.roles.get(account_id, set())
        if role not in roles:
            return False
        roles.discard(role)
        self.role_writes.append(("remove", account_id, role))
        return True

    def expired_tokens(self, kind: str, now: datetime):
        return _iterate(t for t in self.tokens if t.kind == kind and t.expires_at < now)

    async def delete_tokens(self, tokens: List[ExpiredToken], now: datetime, connection: Any) -> int:
        doomed = {(t.kind, t.id) for t in tokens if t.expires_at < now}

        def apply():
            self.tokens = [t for t in self.tokens if (t.kind, t.id) not in doomed]

        connection.defer(apply)
        return len(doomed)

    async def admin_emails(self) -> List[str]:
        return sorted(
            a.email for a in self.accounts.values() if Role.ADMIN.value in self.roles.get(a.id, set())
        )


class FakeNotificationStore(TransactionalFake, NotificationStore):

    def __init__(self, notifications: Iterable[Notification] = (), logs: Iterable[Dict[str, Any]] = ()):
        super().__init__()
        self.notifications: Dict[int, Notification] = {n.id: n for n in notifications}
        self.logs: List[Dict[str, Any]] = list(logs)
        self.sent_alerts: Set[tuple] = set()

    async def stale_pending(self, created_before: datetime) -> List[Notification]:
        return sorted(
            (n for n in self.notifications.values()
             if n.status == NotificationStatus.PENDING and n.created_at < created_before),
            key=lambda n: n.created_at
        )

    async def mark_sent(self, notification_id: int, sent_at: datetime) -> bool:
        notification = self.notifications[notification_id]
        if notification.status != NotificationStatus.PENDING:
            return False
        notification.status = NotificationStatus.SENT.value
        notification.sent_at = sent_at
        return True

    async def mark_failed(self, notification_id: int, error_message: str) -> bool:
        notification = self.notifications[notification_id]
        if notification.status != NotificationStatus.PENDING:
            return False
        notification.status = NotificationStatus.FAILED.value
        notification.error_message = error_message
        return True

    async def enqueue_event(self, event_key, recipient, subject, body, event_type, priority, payload,
                            created_at) -> int:
        for notification in self.notifications.values():
            if notification.event_key == event_key:
                notification.status = NotificationStatus.PENDING.value
                notification.payload = dict(payload)
                notification.created_at = created_at
                notification.sent_at = None
                return notification.id
        notification_id = max(self.notifications, default=0) + 1
        self.notifications[notification_id] = Notification(
            id=notification_id, recipient=recipient, subject=subject, body=body, type=event_type,
            priority=priority, created_at=created_at, event_key=event_key, payload=dict(payload)
        )
        return notification_id

    async def pending_events(self, key_prefix: str) -> List[Notification]:
        return sorted(
            (n for n in self.notifications.values()
             if n.status == NotificationStatus.PENDING and n.event_key and n.event_key.startswith(key_prefix)),
            key=lambda n: (n.created_at, n.id)
        )

    async def discard_pending(self, notification_id: int) -> bool:
        notification = self.notifications.get(notification_id)
        if notification is None or notification.status != NotificationStatus.PENDING:
            return False
        del self.notifications[notification_id]
        return True

    def events(self, status: Optional[str] = None) -> List[Notification]:
        return [
            n for _, n in sorted(self.notifications.items())
            if n.event_key and (status is None or n.status == status)
        ]

    async def delete_sent_logs(self, sent_before: datetime) -> int:
        kept = [
            log for log in self.logs
            if not (log["status"] == NotificationStatus.SENT and log["sent_at"] < sent_before
                    and not log.get("error_message"))
        ]
        deleted = len(self.logs) - len(kept)
        self.logs = kept
        return deleted

    async def duration_alert_sent(self, enrollment_id: int, alert_type: str) -> bool:
        return (enrollment_id, alert_type) in self.sent_alerts

    async def record_duration_alert(self, enrollment_id: int, alert_type: str, connection: Any) -> bool:
        if (enrollment_id, alert_type) in self.sent_alerts:
            return False
        connection.defer(lambda: self.sent_alerts.add((enrollment_id, alert_type)))
        return True

    async def monthly_stats(self, start: date, end: date) -> Dict[str, Any]:
        created = [
            n for n in self.notifications.values()
            if n.created_at is not None and start <= n.created_at.date() <= end
        ]
        by_type: Dict[str, int] = {}
        for notification in created:
            by_type[notification.type] = by_type.get(notification.type, 0) + 1
        return {
            "total": len(created),
            "sent": sum(1 for n in created if n.status == NotificationStatus.SENT),
            "failed": sum(1 for n in created if n.status == NotificationStatus.FAILED),
            "by_type": by_type,
        }
