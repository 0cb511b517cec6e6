"""
Doctorate duration alerts.

Warns candidates and supervisors as an enrollment approaches the three and six
year marks, and escalates enrollments past the six year limit. Each (enrollment,
alert type) is sent at most once.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from ..models.execution import utc_now
from ..models.records import Enrollment, Priority
from ..services.chunk_engine import ItemProcessor, ItemWriter
from ..services.message_bus import MessageBus, event_payload
from ..stores.notification import NotificationStore
from ..utils.config import ThresholdSettings
from ..utils.logger import get_logger


class AlertType(str, Enum):
    THREE_YEARS = "THREE_YEARS"
    SIX_YEARS = "SIX_YEARS"
    LIMIT_EXCEEDED = "LIMIT_EXCEEDED"


ALERT_PRIORITIES = {
    AlertType.THREE_YEARS: Priority.NORMAL,
    AlertType.SIX_YEARS: Priority.HIGH,
    AlertType.LIMIT_EXCEEDED: Priority.URGENT,
}

ALERT_ACTIONS = {
    AlertType.THREE_YEARS: "Request a derogation before the end of the third year",
    AlertType.SIX_YEARS: "Schedule the defense or request an exceptional derogation",
    AlertType.LIMIT_EXCEEDED: "Review the enrollment: maximum duration exceeded",
}


def months_between(start: date, today: date) -> int:
    """Whole months elapsed from start to today."""
    months = (today.year - start.year) * 12 + (today.month - start.month)
    if today.day < start.day:
        months -= 1
    return months


def classify_duration(months: int, enrollment: Enrollment,
                      thresholds: ThresholdSettings) -> Optional[AlertType]:
    """
    Alert due for an enrollment, if any.

    The limit check comes first: past the limit only an exceptional derogation
    silences the alert. The warnings fire during the last warning_months months
    before each mark; the three year warning is dropped for enrollments that
    already obtained a derogation.
    """
    limit = thresholds.duration_limit_years * 12
    warning = thresholds.duration_warning_years * 12
    window = thresholds.duration_warning_months

    if months >= limit:
        return None if enrollment.exceptional_derogation else AlertType.LIMIT_EXCEEDED
    if limit - window <= months < limit:
        return AlertType.SIX_YEARS
    if warning - window <= months < warning and not enrollment.derogation_granted:
        return AlertType.THREE_YEARS
    return None


def format_duration(months: int) -> str:
    years, remainder = divmod(months, 12)
    parts = []
    if years:
        parts.append(f"{years} year{'s' if years > 1 else ''}")
    if remainder or not years:
        parts.append(f"{remainder} month{'s' if remainder != 1 else ''}")
    return " ".join(parts)


@dataclass
class DurationAlert:
    """Alert produced for one enrollment."""
    enrollment_id: int
    candidate_id: Optional[int]
    alert_type: AlertType
    months: int
    payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> str:
        return f"duration-alert:{self.enrollment_id}:{self.alert_type.value}"


class DurationAlertProcessor(ItemProcessor):
    """Builds the alert due for an enrollment, or filters it when none is due or it was already sent."""

    def __init__(self, notifications: NotificationStore, thresholds: ThresholdSettings,
                 clock: Callable[[], datetime] = utc_now):
        self.notifications = notifications
        self.thresholds = thresholds
        self.clock = clock
        self.logger = get_logger(__name__)

    async def process(self, item: Enrollment) -> Optional[DurationAlert]:
        if item.first_enrollment_date is None:
            raise ValueError(f"enrollment {item.id} has no first enrollment date")

        first_date = item.first_enrollment_date
        if isinstance(first_date, datetime):
            first_date = first_date.date()
        months = months_between(first_date, self.clock().date())

        alert_type = classify_duration(months, item, self.thresholds)
        if alert_type is None:
            return None
        if await self.notifications.duration_alert_sent(item.id, alert_type.value):
            self.logger.debug("Duration alert already sent", extra={
                "enrollment_id": item.id,
                "alert_type": alert_type.value
            })
            return None

        limit_months = (
            self.thresholds.duration_warning_years * 12
            if alert_type is AlertType.THREE_YEARS
            else self.thresholds.duration_limit_years * 12
        )
        remaining = None if alert_type is AlertType.LIMIT_EXCEEDED else max(limit_months - months, 0)
        payload = event_payload(
            f"DURATION_ALERT_{alert_type.value}",
            [item.id],
            ALERT_PRIORITIES[alert_type].value,
            enrollment_id=item.id,
            candidate_id=item.candidate_id,
            candidate_email=item.candidate_email,
            candidate_name=item.candidate_name,
            supervisor_email=item.supervisor_email,
            first_enrollment_date=first_date.isoformat(),
            current_duration=format_duration(months),
            months_remaining=remaining,
            threshold_years=limit_months // 12,
            action_required=ALERT_ACTIONS[alert_type]
        )
        return DurationAlert(item.id, item.candidate_id, alert_type, months, payload)


class DurationAlertWriter(ItemWriter):
    """
    Records sent alerts and publishes them.

    The sent-alert row is inserted in the chunk transaction before the publish,
    so a failed publish rolls the row back and the alert is sent on the retry.
    """

    def __init__(self, notifications: NotificationStore, bus: MessageBus, topic: str):
        self.notifications = notifications
        self.bus = bus
        self.topic = topic
        self.logger = get_logger(__name__)

    async def write(self, items: List[DurationAlert], connection: Any) -> None:
        for alert in items:
            recorded = await self.notifications.record_duration_alert(
                alert.enrollment_id, alert.alert_type.value, connection
            )
            if not recorded:
                continue
            await self.bus.publish(self.topic, alert.key, alert.payload)
            self.logger.info("Duration alert sent", extra={
                "enrollment_id": alert.enrollment_id,
                "alert_type": alert.alert_type.value,
                "months": alert.months
            })
