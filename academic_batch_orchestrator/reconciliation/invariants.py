"""
Cross-store invariants checked by the consistency reconciler.

An invariant names the candidate records of one store, checks each of them
against the other stores and knows the corrective action for a violation. The
correction is a single-store status transition guarded by the status the record
had when it was read, so applying it twice is harmless.
"""

from abc import ABC, abstractmethod
from typing import Any, List, Optional

from ..core.exceptions import StoreError
from ..models.anomaly import CorrectiveAction, Violation
from ..models.records import DefenseRequest, DefenseRequestStatus, Enrollment, EnrollmentStatus
from ..stores.account import AccountStore
from ..stores.defense import DefenseStore
from ..stores.enrollment import EnrollmentStore
from ..utils.logger import get_logger


class Invariant(ABC):
    """One cross-store consistency rule."""

    name: str = "invariant"

    @abstractmethod
    async def candidates(self) -> List[Any]:
        """Records of the owning store not already in a terminal or excluded status."""

    @abstractmethod
    async def check(self, candidate: Any) -> Optional[Violation]:
        """Return a Violation if the candidate breaks the rule, else None."""

    @abstractmethod
    async def correct(self, violation: Violation) -> bool:
        """Apply the corrective action; return False if the guard no longer matched."""


class UserEnrollmentInvariant(Invariant):
    """Every enrollment that is neither suspended nor rejected references an existing account."""

    name = "user-enrollment"

    def __init__(self, enrollments: EnrollmentStore, accounts: AccountStore, admin_recipient: str):
        self.enrollments = enrollments
        self.accounts = accounts
        self.admin_recipient = admin_recipient

    async def candidates(self) -> List[Enrollment]:
        return await self.enrollments.active_enrollments()

    async def check(self, candidate: Enrollment) -> Optional[Violation]:
        if candidate.candidate_id is not None:
            if await self.accounts.get_account(candidate.candidate_id) is not None:
                return None
            reason = f"account {candidate.candidate_id} does not exist"
        else:
            reason = "enrollment has no candidate account"

        return Violation(
            invariant=self.name,
            record_id=candidate.id,
            reason=reason,
            action=CorrectiveAction(
                store=self.enrollments.name,
                record_id=candidate.id,
                from_status=candidate.status,
                to_status=EnrollmentStatus.SUSPENDED.value,
                description="enrollment suspended: candidate account missing"
            ),
            recipients=(self.admin_recipient,),
            related_ids={"account_id": candidate.candidate_id}
        )

    async def correct(self, violation: Violation) -> bool:
        action = violation.action
        return await self.enrollments.transition_status(action.record_id, action.from_status, action.to_status)


class EnrollmentDefenseInvariant(Invariant):
    """Every open defense request references an existing enrollment in VALIDATED status."""

    name = "enrollment-defense"

    def __init__(self, defenses: DefenseStore, enrollments: EnrollmentStore,
                 accounts: AccountStore, admin_recipient: str):
        self.defenses = defenses
        self.enrollments = enrollments
        self.accounts = accounts
        self.admin_recipient = admin_recipient
        self.logger = get_logger(__name__)

    async def candidates(self) -> List[DefenseRequest]:
        return await self.defenses.open_requests()

    async def check(self, candidate: DefenseRequest) -> Optional[Violation]:
        enrollment = None
        if candidate.enrollment_id is not None:
            enrollment = await self.enrollments.get(candidate.enrollment_id)

        if enrollment is not None and enrollment.status == EnrollmentStatus.VALIDATED:
            return None

        if enrollment is None:
            reason = f"enrollment {candidate.enrollment_id} does not exist"
        else:
            reason = f"enrollment {enrollment.id} is {enrollment.status}, not VALIDATED"

        recipients = [self.admin_recipient]
        supervisor = await self._supervisor_email(enrollment)
        if supervisor:
            recipients.insert(0, supervisor)

        return Violation(
            invariant=self.name,
            record_id=candidate.id,
            reason=reason,
            action=CorrectiveAction(
                store=self.defenses.name,
                record_id=candidate.id,
                from_status=candidate.status,
                to_status=DefenseRequestStatus.BLOCKED.value,
                description="defense request blocked: enrollment missing or not validated"
            ),
            recipients=tuple(recipients),
            related_ids={
                "enrollment_id": candidate.enrollment_id,
                "enrollment_status": enrollment.status if enrollment else None
            }
        )

    async def correct(self, violation: Violation) -> bool:
        action = violation.action
        return await self.defenses.transition_request_status(
            action.record_id, action.from_status, action.to_status
        )

    async def _supervisor_email(self, enrollment: Optional[Enrollment]) -> Optional[str]:
        if enrollment is None:
            return None
        if enrollment.supervisor_email:
            return enrollment.supervisor_email
        if enrollment.supervisor_id is None:
            return None
        try:
            supervisor = await self.accounts.get_account(enrollment.supervisor_id)
        except StoreError as e:
            self.logger.warning("Supervisor lookup failed, notifying administrator only", extra={
                "enrollment_id": enrollment.id,
                "supervisor_id": enrollment.supervisor_id,
                "error_message": str(e)
            })
            return None
        return supervisor.email if supervisor else None
