from academic_batch_orchestrator.models import context_keys as keys
from academic_batch_orchestrator.models.execution import ExecutionContext
from academic_batch_orchestrator.models.records import (
    Account,
    Defense,
    DefenseStatus,
    Enrollment,
    EnrollmentStatus,
    Mention,
    Role,
)
from academic_batch_orchestrator.reconciliation import RoleSynchronizer

from .fakes import FakeAccountStore, FakeDefenseStore, FakeEnrollmentStore


ACTIVE = Role.ACTIVE_CANDIDATE.value
GRADUATE = Role.GRADUATE.value


def build(defenses=()):
    enrollments = FakeEnrollmentStore([
        Enrollment(id=1, candidate_id=10, status=EnrollmentStatus.VALIDATED.value),
        Enrollment(id=2, candidate_id=11, status=EnrollmentStatus.VALIDATED.value),
        Enrollment(id=3, candidate_id=12, status=EnrollmentStatus.SUBMITTED.value),
    ])
    accounts = FakeAccountStore([
        Account(id=10, email="a@doctorat.local"),
        Account(id=11, email="b@doctorat.local", roles=frozenset({ACTIVE})),
        Account(id=12, email="c@doctorat.local"),
    ])
    return enrollments, FakeDefenseStore(defenses=defenses), accounts


async def test_validated_candidates_gain_the_active_role_once():
    enrollments, defenses, accounts = build()
    sync = RoleSynchronizer(enrollments, defenses, accounts)
    context = ExecutionContext()

    result = await sync.run(context)
    await sync.run(ExecutionContext())

    assert accounts.roles[10] == {ACTIVE}
    assert accounts.roles[11] == {ACTIVE}
    assert accounts.roles[12] == set()
    assert accounts.role_writes == [("add", 10, ACTIVE)]
    assert result.checked == 2
    assert context.get(keys.ROLES_ADDED) == 1
    assert context.get(keys.ROLE_TRANSITIONS) == 0


async def test_successful_defense_turns_a_candidate_into_a_graduate():
    enrollments, defenses, accounts = build([
        Defense(id=1, enrollment_id=2, status=DefenseStatus.COMPLETED.value, mention=Mention.HONORABLE.value),
    ])
    context = ExecutionContext()

    await RoleSynchronizer(enrollments, defenses, accounts).run(context)

    assert accounts.roles[11] == {GRADUATE}
    assert context.get(keys.ROLES_ADDED) == 2
    assert context.get(keys.ROLES_REMOVED) == 1
    assert context.get(keys.ROLE_TRANSITIONS) == 1


async def test_failing_mention_keeps_the_active_role():
    enrollments, defenses, accounts = build([
        Defense(id=1, enrollment_id=2, status=DefenseStatus.COMPLETED.value, mention=Mention.PASSABLE.value),
    ])

    await RoleSynchronizer(enrollments, defenses, accounts).run(ExecutionContext())

    assert accounts.roles[11] == {ACTIVE}
