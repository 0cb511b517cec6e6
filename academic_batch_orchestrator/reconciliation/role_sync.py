"""
Role synchronization pass.

Derives authorization roles from enrollment and defense state:
a validated enrollment grants the active-candidate role, and a completed defense
with a passing mention replaces it with the graduate role. Only the missing
grants and the stale revocations are written.
"""

from typing import Dict, Set, Tuple

from ..models import context_keys as keys
from ..models.execution import ExecutionContext
from ..models.records import Role
from ..stores.account import AccountStore
from ..stores.defense import DefenseStore
from ..stores.enrollment import EnrollmentStore
from ..utils.logger import get_logger
from .reconciler import PassResult, ReconciliationPass


class RoleSynchronizer(ReconciliationPass):

    name = "role-sync"

    def __init__(self, enrollments: EnrollmentStore, defenses: DefenseStore, accounts: AccountStore):
        self.enrollments = enrollments
        self.defenses = defenses
        self.accounts = accounts
        self.logger = get_logger(__name__)

    async def desired_roles(self) -> Dict[int, Tuple[Set[str], Set[str]]]:
        """Map account id to the (roles to hold, roles to drop) derived from store state."""
        active = await self.enrollments.validated_candidate_ids()
        successful = await self.defenses.successful_enrollment_ids()
        graduates = set((await self.enrollments.candidate_ids(successful)).values())

        desired: Dict[int, Tuple[Set[str], Set[str]]] = {}
        for account_id in active - graduates:
            desired[account_id] = ({Role.ACTIVE_CANDIDATE.value}, set())
        for account_id in graduates:
            desired[account_id] = ({Role.GRADUATE.value}, {Role.ACTIVE_CANDIDATE.value})
        return desired

    async def run(self, context: ExecutionContext) -> PassResult:
        desired = await self.desired_roles()
        current = await self.accounts.roles_of(desired.keys())
        result = PassResult(self.name)

        for account_id in sorted(desired):
            hold, drop = desired[account_id]
            roles = current.get(account_id, set())
            result.checked += 1
            changed = False

            for role in sorted(hold - roles):
                if await self.accounts.add_role(account_id, role):
                    context.increment(keys.ROLES_ADDED)
                    result.corrected += 1
                    changed = True
            for role in sorted(drop & roles):
                if await self.accounts.remove_role(account_id, role):
                    context.increment(keys.ROLES_REMOVED)
                    result.corrected += 1
                    changed = True

            if changed and drop:
                context.increment(keys.ROLE_TRANSITIONS)
            if changed:
                self.logger.info("Roles synchronized", extra={
                    "account_id": account_id,
                    "granted": sorted(hold - roles),
                    "revoked": sorted(drop & roles)
                })

        result.details = {
            "roles_added": context.get(keys.ROLES_ADDED),
            "roles_removed": context.get(keys.ROLES_REMOVED),
            "role_transitions": context.get(keys.ROLE_TRANSITIONS)
        }
        return result
