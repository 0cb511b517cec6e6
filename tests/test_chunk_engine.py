import math

import pytest

from academic_batch_orchestrator.core.exceptions import (
    MalformedRecordError,
    ReaderInterruptedError,
    SkipLimitExceededError,
    StepFailedError,
    StoreError,
    TransientStoreError,
)
from academic_batch_orchestrator.models.execution import StepStatus
from academic_batch_orchestrator.services.chunk_engine import (
    FunctionItemProcessor,
    IterableItemReader,
    ItemReader,
    ItemWriter,
    run_chunk_step,
)
from academic_batch_orchestrator.services.fault_tolerance import RetryPolicy, SkipPolicy

from .fakes import RecordingTarget


class ListWriter(ItemWriter):
    """Writes into a RecordingTarget, failing on demand."""

    def __init__(self, target, errors=(), poison=(), tag_poison=True):
        self.target = target
        self.errors = list(errors)
        self.poison = set(poison)
        self.tag_poison = tag_poison
        self.calls = []

    async def write(self, items, connection):
        self.calls.append(list(items))
        if self.errors:
            raise self.errors.pop(0)
        for item in items:
            if item in self.poison:
                if self.tag_poison:
                    raise MalformedRecordError(f"cannot write {item}", record_id=item, item=item)
                raise ValueError(f"cannot write {item}")
        chunk = list(items)
        connection.defer(lambda: self.target.committed.append(chunk))


class FlakyReader(ItemReader):
    def __init__(self, items, errors):
        self.items = list(items)
        self.errors = list(errors)

    async def read(self):
        if self.errors:
            raise self.errors.pop(0)
        return self.items.pop(0) if self.items else None


def reader_of(items):
    return IterableItemReader(lambda context: list(items))


@pytest.mark.parametrize("count, chunk_size", [(10, 3), (9, 3), (1, 5), (100, 100), (0, 4)])
async def test_commit_count_is_ceiling_of_items_over_chunk_size(count, chunk_size, sleep):
    target = RecordingTarget()
    execution = await run_chunk_step(
        reader_of(range(count)), None, ListWriter(target), target, chunk_size, sleep=sleep
    )

    assert execution.status is StepStatus.COMPLETED
    assert execution.read_count == count
    assert execution.write_count == count
    assert execution.commit_count == math.ceil(count / chunk_size)
    assert target.items == list(range(count))
    assert all(len(chunk) <= chunk_size for chunk in target.committed)


async def test_filtered_items_are_counted_and_not_written(sleep):
    target = RecordingTarget()
    processor = FunctionItemProcessor(lambda item: item if item % 2 == 0 else None)

    execution = await run_chunk_step(reader_of(range(10)), processor, ListWriter(target), target, 4, sleep=sleep)

    assert execution.filter_count == 5
    assert execution.write_count == 5
    assert target.items == [0, 2, 4, 6, 8]


async def test_transient_write_failure_is_retried_with_backoff(sleep):
    target = RecordingTarget()
    writer = ListWriter(target, errors=[
        TransientStoreError("enrollment", "write", "connection reset"),
        TransientStoreError("enrollment", "write", "connection reset"),
    ])

    execution = await run_chunk_step(reader_of(range(5)), None, writer, target, 5, sleep=sleep)

    assert execution.status is StepStatus.COMPLETED
    assert sleep.delays == [1, 2]
    assert execution.retry_count == 2
    assert execution.rollback_count == 2
    assert execution.commit_count == 1
    assert target.items == [0, 1, 2, 3, 4]
    assert target.rollbacks == 2


async def test_transient_failure_beyond_retry_budget_fails_the_step(sleep):
    target = RecordingTarget()
    writer = ListWriter(target, errors=[TransientStoreError("enrollment", "write", "down")] * 4)

    with pytest.raises(StepFailedError) as raised:
        await run_chunk_step(
            reader_of(range(3)), None, writer, target, 3,
            retry_policy=RetryPolicy(max_attempts=3), sleep=sleep
        )

    assert sleep.delays == [1, 2, 4]
    assert isinstance(raised.value.cause, TransientStoreError)
    assert raised.value.step_execution.status is StepStatus.FAILED
    assert target.items == []


async def test_tagged_write_failure_skips_only_the_offending_item(sleep):
    target = RecordingTarget()
    writer = ListWriter(target, poison={3})

    execution = await run_chunk_step(reader_of(range(6)), None, writer, target, 6, sleep=sleep)

    assert execution.write_skip_count == 1
    assert execution.write_count == 5
    assert target.items == [0, 1, 2, 4, 5]
    assert sleep.delays == []


async def test_untagged_write_failure_scans_the_chunk(sleep):
    target = RecordingTarget()
    writer = ListWriter(target, poison={2}, tag_poison=False)

    execution = await run_chunk_step(reader_of(range(4)), None, writer, target, 4, sleep=sleep)

    assert execution.write_skip_count == 1
    assert target.committed == [[0], [1], [3]]
    assert execution.commit_count == 3
    assert execution.rollback_count == 2


def malformed_every(item):
    if item % 2:
        raise MalformedRecordError("odd record", record_id=item)
    return item


@pytest.mark.parametrize("bad_items, should_fail", [(5, False), (6, True)])
async def test_skip_limit_of_five(bad_items, should_fail, sleep):
    target = RecordingTarget()
    items = range(bad_items * 2)
    processor = FunctionItemProcessor(malformed_every)
    skip = SkipPolicy(skip_limit=5)

    if should_fail:
        with pytest.raises(SkipLimitExceededError) as raised:
            await run_chunk_step(reader_of(items), processor, ListWriter(target), target, 3,
                                 skip_policy=skip, sleep=sleep)
        assert raised.value.step_execution.process_skip_count == 5
        assert raised.value.step_execution.status is StepStatus.FAILED
    else:
        execution = await run_chunk_step(reader_of(items), processor, ListWriter(target), target, 3,
                                         skip_policy=skip, sleep=sleep)
        assert execution.status is StepStatus.COMPLETED
        assert execution.process_skip_count == 5
        assert target.items == [0, 2, 4, 6, 8]


async def test_fatal_store_error_aborts_without_retry(sleep):
    target = RecordingTarget()
    writer = ListWriter(target, errors=[StoreError("enrollment", "write", "permission denied")])

    with pytest.raises(StepFailedError) as raised:
        await run_chunk_step(reader_of(range(3)), None, writer, target, 3, sleep=sleep)

    assert isinstance(raised.value.cause, StoreError)
    assert len(writer.calls) == 1
    assert sleep.delays == []


async def test_earlier_chunks_stay_committed_when_a_later_one_fails(sleep):
    target = RecordingTarget()

    class FailSecondChunk(ListWriter):
        async def write(self, items, connection):
            if 3 in items:
                raise StoreError("enrollment", "write", "constraint violated")
            await super().write(items, connection)

    with pytest.raises(StepFailedError) as raised:
        await run_chunk_step(reader_of(range(6)), None, FailSecondChunk(target), target, 3, sleep=sleep)

    assert target.items == [0, 1, 2]
    assert raised.value.step_execution.commit_count == 1
    assert raised.value.step_execution.rollback_count == 1


async def test_transient_read_failure_is_retried(sleep):
    target = RecordingTarget()
    reader = FlakyReader([1, 2, 3], errors=[TransientStoreError("enrollment", "read", "timeout")])

    execution = await run_chunk_step(reader, None, ListWriter(target), target, 10, sleep=sleep)

    assert execution.read_count == 3
    assert execution.retry_count == 1
    assert sleep.delays == [1]
    assert target.items == [1, 2, 3]


async def test_malformed_read_is_skipped(sleep):
    target = RecordingTarget()
    reader = FlakyReader([1, 2], errors=[MalformedRecordError("garbled row")])

    execution = await run_chunk_step(reader, None, ListWriter(target), target, 10, sleep=sleep)

    assert execution.read_skip_count == 1
    assert target.items == [1, 2]


async def test_unclassified_processor_error_is_skipped(sleep):
    target = RecordingTarget()

    def explode_on_two(item):
        if item == 2:
            raise RuntimeError("unexpected")
        return item

    execution = await run_chunk_step(
        reader_of([1, 2, 3]), FunctionItemProcessor(explode_on_two), ListWriter(target), target, 10, sleep=sleep
    )

    assert execution.process_skip_count == 1
    assert target.items == [1, 3]


def interrupted_source(error):
    async def source(context):
        yield 1
        raise error
        yield 2

    return source


def interrupted_sync_source(error):
    def source(context):
        yield 1
        raise error
        yield 2

    return source


@pytest.mark.parametrize("make_source, error", [
    (interrupted_source, TransientStoreError("enrollment", "fetch", "connection reset")),
    (interrupted_source, MalformedRecordError("garbled row")),
    (interrupted_sync_source, TransientStoreError("enrollment", "fetch", "connection reset")),
])
async def test_generator_source_failing_mid_stream_fails_the_step(make_source, error, sleep):
    target = RecordingTarget()
    reader = IterableItemReader(make_source(error))

    with pytest.raises(StepFailedError) as raised:
        await run_chunk_step(reader, None, ListWriter(target), target, 1, sleep=sleep)

    assert isinstance(raised.value.cause, ReaderInterruptedError)
    assert raised.value.cause.records_read == 1
    assert raised.value.cause.cause is error
    assert raised.value.step_execution.status is StepStatus.FAILED
    assert target.items == [1]
    assert sleep.delays == []


async def test_interrupted_reader_never_reports_end_of_input():
    reader = IterableItemReader(interrupted_source(TransientStoreError("enrollment", "fetch", "reset")))
    await reader.open(None)

    assert await reader.read() == 1
    for _ in range(2):
        with pytest.raises(ReaderInterruptedError):
            await reader.read()
    await reader.close()
