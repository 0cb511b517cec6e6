import pytest

from academic_batch_orchestrator.core.exceptions import TransientStoreError
from academic_batch_orchestrator.models import context_keys as keys
from academic_batch_orchestrator.models.execution import ExecutionContext
from academic_batch_orchestrator.models.records import Enrollment, EnrollmentStatus
from academic_batch_orchestrator.reconciliation import (
    OrphanArtifactScanner,
    is_referenced,
    normalize_reference,
)

from .fakes import FakeDefenseStore, FakeEnrollmentStore


@pytest.fixture
def storage(tmp_path):
    root = tmp_path / "uploads"
    (root / "theses" / "2024").mkdir(parents=True)
    (root / "x.pdf").write_bytes(b"orphan")
    (root / "kept.pdf").write_bytes(b"kept")
    (root / "theses" / "2024" / "draft.pdf").write_bytes(b"nested orphan")
    (root / "theses" / "2024" / "final.pdf").write_bytes(b"referenced")
    return root


@pytest.fixture
def sources():
    enrollments = FakeEnrollmentStore([
        Enrollment(id=1, candidate_id=1, status=EnrollmentStatus.VALIDATED.value,
                   document_path="/var/lib/doctorat/uploads/kept.pdf"),
    ])
    defenses = FakeDefenseStore(documents=["theses/2024/final.pdf"])
    return enrollments, defenses


def scanner(root, sources, clock):
    return OrphanArtifactScanner(str(root), "quarantine", sources, clock=clock)


async def test_unreferenced_files_are_moved_not_deleted(storage, sources, clock):
    context = ExecutionContext()

    result = await scanner(storage, sources, clock).run(context)

    assert (storage / "quarantine" / "x.pdf").read_bytes() == b"orphan"
    assert (storage / "quarantine" / "theses" / "2024" / "draft.pdf").exists()
    assert not (storage / "x.pdf").exists()
    assert (storage / "kept.pdf").exists()
    assert (storage / "theses" / "2024" / "final.pdf").exists()
    assert result.checked == 4
    assert context.get(keys.ORPHANED_DOCUMENTS) == 2
    assert context.get(keys.MANUAL_INTERVENTION) == 2
    assert context.get(keys.ORPHANED_FILES) == ["theses/2024/draft.pdf", "x.pdf"]


async def test_quarantine_is_not_rescanned(storage, sources, clock):
    await scanner(storage, sources, clock).run(ExecutionContext())
    context = ExecutionContext()

    result = await scanner(storage, sources, clock).run(context)

    assert result.checked == 2
    assert context.get(keys.ORPHANED_DOCUMENTS) == 0


async def test_name_collision_gets_a_timestamp_prefix(storage, sources, clock):
    (storage / "quarantine").mkdir()
    (storage / "quarantine" / "x.pdf").write_bytes(b"earlier")

    await scanner(storage, sources, clock).run(ExecutionContext())

    assert (storage / "quarantine" / "x.pdf").read_bytes() == b"earlier"
    assert (storage / "quarantine" / "20250615230000_x.pdf").read_bytes() == b"orphan"


async def test_repeated_collision_in_the_same_second_gets_a_counter(storage, sources, clock):
    quarantine = storage / "quarantine"
    quarantine.mkdir()
    (quarantine / "x.pdf").write_bytes(b"first")
    (quarantine / "20250615230000_x.pdf").write_bytes(b"second")
    (quarantine / "20250615230000_1_x.pdf").write_bytes(b"third")

    await scanner(storage, sources, clock).run(ExecutionContext())

    assert (quarantine / "x.pdf").read_bytes() == b"first"
    assert (quarantine / "20250615230000_x.pdf").read_bytes() == b"second"
    assert (quarantine / "20250615230000_1_x.pdf").read_bytes() == b"third"
    assert (quarantine / "20250615230000_2_x.pdf").read_bytes() == b"orphan"


async def test_unreachable_source_aborts_before_moving_anything(storage, sources, clock):
    enrollments, defenses = sources
    defenses.fail_paths = TransientStoreError("defense", "document_paths", "connection refused")

    with pytest.raises(TransientStoreError):
        await scanner(storage, sources, clock).run(ExecutionContext())

    assert (storage / "x.pdf").exists()
    assert not (storage / "quarantine").exists()


async def test_missing_storage_root_is_not_an_error(tmp_path, sources, clock):
    result = await scanner(tmp_path / "absent", sources, clock).run(ExecutionContext())
    assert result.checked == 0


@pytest.mark.parametrize("reference, expected", [
    ("./theses/a.pdf", "theses/a.pdf"),
    ("/srv/uploads/a.pdf", "srv/uploads/a.pdf"),
    ("theses\\a.pdf", "theses/a.pdf"),
])
def test_normalize_reference(reference, expected):
    assert normalize_reference(reference) == expected


def test_reference_matching():
    assert is_referenced("theses/a.pdf", {"srv/uploads/theses/a.pdf"})
    assert is_referenced("theses/a.pdf", {"a.pdf"})
    assert is_referenced("theses/a.pdf", {"theses/a.pdf"})
    assert not is_referenced("theses/a.pdf", {"theses/b.pdf", ""})


@pytest.mark.parametrize("relative_path, reference", [
    ("a.pdf", "data.pdf"),
    ("theses/a.pdf", "elsewhere/a.pdf"),
    ("theses/a.pdf", "srv/theses/a.pdf.bak"),
    ("theses/2024/a.pdf", "2024"),
    ("old_theses/a.pdf", "theses/a.pdf"),
])
def test_references_match_whole_path_segments_only(relative_path, reference):
    assert not is_referenced(relative_path, {reference})


async def test_file_named_like_a_suffix_of_a_reference_is_quarantined(storage, clock):
    (storage / "a.pdf").write_bytes(b"orphan suffix")
    enrollments = FakeEnrollmentStore()
    defenses = FakeDefenseStore(documents=["data.pdf", "kept.pdf", "x.pdf", "theses/2024/draft.pdf",
                                           "theses/2024/final.pdf"])

    context = ExecutionContext()
    await scanner(storage, [enrollments, defenses], clock).run(context)

    assert context.get(keys.ORPHANED_FILES) == ["a.pdf"]
    assert (storage / "quarantine" / "a.pdf").read_bytes() == b"orphan suffix"
