"""
Domain records read from the owned stores.

Status fields hold the raw value found in the store; the enums below subclass str
so they compare equal to those raw values.
"""

from enum import Enum
from datetime import date, datetime
from typing import Optional, Dict, Any, FrozenSet
from dataclasses import dataclass, field


class EnrollmentStatus(str, Enum):
    DRAFT = "DRAFT"
    SUBMITTED = "SUBMITTED"
    PENDING_SUPERVISOR = "PENDING_SUPERVISOR"
    PENDING_ADMIN = "PENDING_ADMIN"
    VALIDATED = "VALIDATED"
    REJECTED = "REJECTED"
    SUSPENDED = "SUSPENDED"


class DefenseRequestStatus(str, Enum):
    SUBMITTED = "SUBMITTED"
    UNDER_REVIEW = "UNDER_REVIEW"
    AUTHORIZED = "AUTHORIZED"
    SCHEDULED = "SCHEDULED"
    BLOCKED = "BLOCKED"
    REJECTED = "REJECTED"


class DefenseStatus(str, Enum):
    SCHEDULED = "SCHEDULED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class Mention(str, Enum):
    """Grade awarded at the end of a defense."""
    PASSABLE = "PASSABLE"
    HONORABLE = "HONORABLE"
    VERY_HONORABLE = "VERY_HONORABLE"
    VERY_HONORABLE_WITH_HONORS = "VERY_HONORABLE_WITH_HONORS"


PASSING_MENTIONS: FrozenSet[str] = frozenset({
    Mention.HONORABLE.value,
    Mention.VERY_HONORABLE.value,
    Mention.VERY_HONORABLE_WITH_HONORS.value,
})


class NotificationStatus(str, Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"


class Priority(str, Enum):
    LOW = "LOW"
    NORMAL = "NORMAL"
    HIGH = "HIGH"
    URGENT = "URGENT"


class Role(str, Enum):
    """Authorization roles the batch jobs read or maintain."""
    ACTIVE_CANDIDATE = "ROLE_ACTIVE_CANDIDATE"
    GRADUATE = "ROLE_GRADUATE"
    ADMIN = "ROLE_ADMIN"


@dataclass
class Enrollment:
    """Doctoral enrollment owned by the enrollment store."""
    id: int
    candidate_id: Optional[int]
    status: str
    supervisor_id: Optional[int] = None
    first_enrollment_date: Optional[date] = None
    validated_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    derogation_granted: bool = False
    exceptional_derogation: bool = False
    archived: bool = False
    document_path: Optional[str] = None
    candidate_email: Optional[str] = None
    candidate_name: Optional[str] = None
    supervisor_email: Optional[str] = None
    attributes: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Enrollment":
        known = {name for name in cls.__dataclass_fields__ if name != "attributes"}
        values = {key: value for key, value in row.items() if key in known}
        values["derogation_granted"] = bool(values.get("derogation_granted") or False)
        values["exceptional_derogation"] = bool(values.get("exceptional_derogation") or False)
        values["archived"] = bool(values.get("archived") or False)
        attributes = {key: value for key, value in row.items() if key not in known}
        return cls(attributes=attributes, **values)


@dataclass
class DefenseRequest:
    """Request to schedule a defense, owned by the defense store."""
    id: int
    enrollment_id: Optional[int]
    status: str
    document_path: Optional[str] = None


@dataclass
class Defense:
    """Defense session, owned by the defense store."""
    id: int
    enrollment_id: int
    status: str
    mention: Optional[str] = None
    defended_at: Optional[datetime] = None
    archived: bool = False
    document_path: Optional[str] = None
    minutes_path: Optional[str] = None

    @property
    def is_successful(self) -> bool:
        return self.status == DefenseStatus.COMPLETED and self.mention in PASSING_MENTIONS


@dataclass
class Account:
    """User account owned by the account store."""
    id: int
    email: str
    roles: FrozenSet[str] = frozenset()
    full_name: Optional[str] = None


@dataclass
class Notification:
    """Outbound notification owned by the notification store."""
    id: int
    recipient: str
    subject: str
    body: str
    type: str
    status: str = NotificationStatus.PENDING.value
    priority: str = Priority.NORMAL.value
    created_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    error_message: Optional[str] = None
    event_key: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None

    @property
    def publish_key(self) -> str:
        """Message key; events keep the key consumers deduplicate on."""
        return self.event_key or f"retry-{self.id}"

    def to_payload(self) -> Dict[str, Any]:
        """Event payload used when the notification is (re)published."""
        if self.payload is not None:
            return dict(self.payload)
        return {
            "notification_id": self.id,
            "recipient": self.recipient,
            "subject": self.subject,
            "body": self.body,
            "type": self.type,
            "priority": self.priority,
            "created_at": self.created_at.isoformat() if self.created_at else None
        }


@dataclass
class ExpiredToken:
    """Expired authentication token queued for deletion."""
    id: int
    kind: str
    expires_at: datetime
