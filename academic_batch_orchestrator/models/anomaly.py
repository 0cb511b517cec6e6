"""
Anomaly models for cross-store reconciliation.

An Anomaly is one detected violation of a cross-store invariant together with the
corrective action applied for it. Anomalies are only used for reporting and
notification; they are never written back to a store.
"""

from datetime import datetime
from typing import Optional, Dict, Any, Tuple
from dataclasses import dataclass, field

from .execution import utc_now


def notification_key(invariant: str, record_id: Any) -> str:
    """
    Deterministic message key for the notification of an anomaly.

    Re-running a pass over the same record always yields the same key, so bus
    consumers can drop redeliveries as duplicates.
    """
    return f"{invariant}:{record_id}"


@dataclass(frozen=True)
class CorrectiveAction:
    """
    Idempotent status transition applied to exactly one store.

    The write only matches a record still in from_status, so replaying it after
    it already took effect changes nothing.
    """
    store: str
    record_id: Any
    from_status: str
    to_status: str
    description: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "store": self.store,
            "record_id": self.record_id,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "description": self.description
        }


@dataclass(frozen=True)
class Violation:
    """Invariant check result for a candidate record that does not satisfy it."""
    invariant: str
    record_id: Any
    reason: str
    action: CorrectiveAction
    recipients: Tuple[str, ...] = ()
    related_ids: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Anomaly:
    """A violation whose corrective action has been applied."""
    invariant: str
    record_id: Any
    reason: str
    corrective_action: CorrectiveAction
    detected_at: datetime
    corrected_at: datetime
    recipients: Tuple[str, ...] = ()
    related_ids: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_violation(cls, violation: Violation, detected_at: datetime,
                       corrected_at: Optional[datetime] = None) -> "Anomaly":
        return cls(
            invariant=violation.invariant,
            record_id=violation.record_id,
            reason=violation.reason,
            corrective_action=violation.action,
            detected_at=detected_at,
            corrected_at=corrected_at or utc_now(),
            recipients=violation.recipients,
            related_ids=dict(violation.related_ids)
        )

    @property
    def notification_key(self) -> str:
        return notification_key(self.invariant, self.record_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "invariant": self.invariant,
            "record_id": self.record_id,
            "reason": self.reason,
            "corrective_action": self.corrective_action.to_dict(),
            "detected_at": self.detected_at.isoformat(),
            "corrected_at": self.corrected_at.isoformat(),
            "recipients": list(self.recipients),
            "related_ids": dict(self.related_ids),
            "notification_key": self.notification_key
        }
