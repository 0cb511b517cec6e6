"""
Chunk processing engine.

Drives one bounded-dataset step: records are read lazily, transformed one at a
time, accumulated into chunks of at most chunk_size items and written inside one
transaction per attempt against the step's target store.

Failure handling per chunk:
- retryable write failures replay the entire chunk after a backoff delay
- skippable failures (or retryable ones whose attempts ran out, when their kind
  is also skippable) drop only the offending item and charge the skip budget
- fatal failures, or a skip beyond the budget, fail the step

A failed attempt never leaves partial writes behind because the writer runs
inside the transaction that the failure rolls back.
"""

import asyncio
import inspect
from abc import ABC, abstractmethod
from contextlib import AsyncExitStack
from typing import Any, AsyncIterable, Awaitable, Callable, Iterable, List, Optional, Union

from ..core.exceptions import ReaderInterruptedError, StepFailedError, SkipLimitExceededError
from ..models.execution import ExecutionContext, StepExecution
from ..models.job import Step
from ..utils.logger import get_logger
from .fault_tolerance import BackoffPolicy, ErrorClassifier, RetryPolicy, SkipPolicy


class _Marker:
    def __init__(self, name: str):
        self.name = name

    def __repr__(self) -> str:
        return self.name


END_OF_INPUT = _Marker("END_OF_INPUT")
SKIPPED = _Marker("SKIPPED")


class ItemStream:
    """Lifecycle hooks shared by readers, processors and writers."""

    async def open(self, context: ExecutionContext) -> None:
        """Called once before the first item of a step execution."""

    async def close(self) -> None:
        """Called once after the step finished, failed or not."""


class ItemReader(ItemStream, ABC):
    """Forward-only source of input records."""

    @abstractmethod
    async def read(self) -> Optional[Any]:
        """Return the next record, or None once the input is exhausted."""


class ItemProcessor(ItemStream, ABC):
    """Transforms one record; returning None filters the record out."""

    @abstractmethod
    async def process(self, item: Any) -> Optional[Any]:
        """Transform item, or return None to exclude it from the chunk."""


class ItemWriter(ItemStream, ABC):
    """Writes one chunk using the connection of the surrounding transaction."""

    @abstractmethod
    async def write(self, items: List[Any], connection: Any) -> None:
        """Persist items; raising rolls the whole chunk back."""


class PassThroughProcessor(ItemProcessor):
    async def process(self, item: Any) -> Optional[Any]:
        return item


class FunctionItemProcessor(ItemProcessor):
    """Adapts a plain or async callable to the processor interface."""

    def __init__(self, func: Callable[[Any], Any]):
        self.func = func

    async def process(self, item: Any) -> Optional[Any]:
        result = self.func(item)
        if asyncio.iscoroutine(result):
            result = await result
        return result


class IterableItemReader(ItemReader):
    """
    Reads from a sync or async iterable.

    The source is a factory called on every open(), so each step execution
    re-runs its candidate query from the top.

    A generator source is finished by any exception it raises. Such an error is
    reported as ReaderInterruptedError, which is never retried or skipped: a
    later read would see a spurious end of input and the step would complete
    on a truncated dataset.
    """

    def __init__(self, source: Callable[[ExecutionContext], Union[Iterable[Any], AsyncIterable[Any]]]):
        self.source = source
        self._iterator = None
        self._is_async = False
        self._records = 0
        self._interrupted: Optional[BaseException] = None

    async def open(self, context: ExecutionContext) -> None:
        iterable = self.source(context)
        if inspect.iscoroutine(iterable):
            iterable = await iterable
        self._is_async = hasattr(iterable, "__aiter__")
        self._iterator = iterable.__aiter__() if self._is_async else iter(iterable)
        self._records = 0
        self._interrupted = None

    async def read(self) -> Optional[Any]:
        if self._iterator is None:
            raise RuntimeError("reader is not open")
        if self._interrupted is not None:
            raise self._interruption(self._interrupted)
        try:
            if self._is_async:
                item = await self._iterator.__anext__()
            else:
                item = next(self._iterator)
        except (StopIteration, StopAsyncIteration):
            return None
        except Exception as e:
            if not (inspect.isasyncgen(self._iterator) or inspect.isgenerator(self._iterator)):
                raise
            self._interrupted = e
            raise self._interruption(e) from e
        self._records += 1
        return item

    def _interruption(self, error: BaseException) -> ReaderInterruptedError:
        return ReaderInterruptedError(
            f"source raised {type(error).__name__} after {self._records} records: {error}",
            records_read=self._records,
            cause=error
        )

    async def close(self) -> None:
        if self._is_async and hasattr(self._iterator, "aclose"):
            await self._iterator.aclose()
        self._iterator = None



class ChunkStep(Step):
    """
    Step that processes a bounded dataset in transactional chunks.

    Args:
        name: Step name
        reader: Source of input records
        processor: Per-record transform; None results are filtered
        writer: Chunk writer called inside target.transaction()
        target: Store whose transaction wraps every write attempt
        chunk_size: Maximum number of processed items per transaction
        retry_policy: Retry policy for retryable failures
        backoff_policy: Delay schedule between retries
        skip_policy: Skip budget and skippable error kinds
        classifier: Error classifier shared by the job
        sleep: Awaitable used for backoff delays
    """

    def __init__(
        self,
        name: str,
        reader: ItemReader,
        writer: ItemWriter,
        target: Any,
        chunk_size: int,
        processor: Optional[ItemProcessor] = None,
        retry_policy: Optional[RetryPolicy] = None,
        backoff_policy: Optional[BackoffPolicy] = None,
        skip_policy: Optional[SkipPolicy] = None,
        classifier: Optional[ErrorClassifier] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    ):
        super().__init__(name)
        if chunk_size < 1:
            raise ValueError("chunk_size must be at least 1")
        self.reader = reader
        self.processor = processor or PassThroughProcessor()
        self.writer = writer
        self.target = target
        self.chunk_size = chunk_size
        self.retry_policy = retry_policy or RetryPolicy()
        self.backoff_policy = backoff_policy or BackoffPolicy()
        self.skip_policy = skip_policy or SkipPolicy()
        self.classifier = classifier or ErrorClassifier()
        self.sleep = sleep
        self.logger = get_logger(__name__)

    async def execute(self, step_execution: StepExecution, context: ExecutionContext) -> None:
        """Run every chunk until the reader is exhausted or the step fails."""
        async with AsyncExitStack() as stack:
            for stream in (self.reader, self.processor, self.writer):
                await stream.open(context)
                stack.push_async_callback(stream.close)

            exhausted = False
            while not exhausted:
                items, exhausted = await self._fill_chunk(step_execution)
                if items:
                    await self._write_chunk(items, step_execution)

        step_execution.complete(
            f"read={step_execution.read_count} written={step_execution.write_count} "
            f"filtered={step_execution.filter_count} skipped={step_execution.skip_count} "
            f"commits={step_execution.commit_count}"
        )
        self.logger.info("Chunk step completed", extra={
            "step_name": self.name,
            "read_count": step_execution.read_count,
            "write_count": step_execution.write_count,
            "skip_count": step_execution.skip_count,
            "commit_count": step_execution.commit_count
        })

    async def _fill_chunk(self, step_execution: StepExecution):
        outputs: List[Any] = []
        while len(outputs) < self.chunk_size:
            item = await self._guarded("read", self.reader.read, step_execution)
            if item is SKIPPED:
                continue
            if item is None:
                return outputs, True
            step_execution.read_count += 1

            processed = await self._guarded(
                "process", lambda: self.processor.process(item), step_execution, item
            )
            if processed is SKIPPED:
                continue
            if processed is None:
                step_execution.filter_count += 1
                continue
            outputs.append(processed)
        return outputs, False

    async def _guarded(self, phase: str, operation: Callable[[], Awaitable[Any]],
                       step_execution: StepExecution, item: Any = None) -> Any:
        """Run a read or process call under the retry and skip policies."""
        attempt = 0
        while True:
            try:
                return await operation()
            except Exception as e:
                attempt += 1
                decision = self.classifier.decide(e, self.retry_policy, self.skip_policy, attempt)
                if decision.retryable:
                    await self._backoff(attempt, phase, e, step_execution)
                    continue
                if decision.skippable:
                    self._charge_skip(phase, e, item, step_execution)
                    return SKIPPED
                self._fail(phase, e)

    async def _write_chunk(self, items: List[Any], step_execution: StepExecution) -> None:
        pending = list(items)
        attempt = 0
        while pending:
            try:
                async with self.target.transaction() as connection:
                    await self.writer.write(list(pending), connection)
            except Exception as e:
                step_execution.rollback_count += 1
                attempt += 1
                decision = self.classifier.decide(e, self.retry_policy, self.skip_policy, attempt)
                if decision.retryable:
                    await self._backoff(attempt, "write", e, step_execution)
                    continue
                if not decision.skippable:
                    self._fail("write", e)

                index = _locate(pending, getattr(e, "item", None))
                if index is None:
                    await self._scan(pending, step_execution)
                    return
                self._charge_skip("write", e, pending.pop(index), step_execution)
                attempt = 0
            else:
                step_execution.commit_count += 1
                step_execution.write_count += len(pending)
                self.logger.debug("Chunk committed", extra={
                    "step_name": self.name,
                    "items": len(pending),
                    "commit_count": step_execution.commit_count
                })
                return

    async def _scan(self, items: List[Any], step_execution: StepExecution) -> None:
        """Write items one per transaction to isolate the ones that fail."""
        self.logger.info("Scanning chunk item by item", extra={
            "step_name": self.name,
            "items": len(items)
        })
        for item in items:
            attempt = 0
            while True:
                try:
                    async with self.target.transaction() as connection:
                        await self.writer.write([item], connection)
                except Exception as e:
                    step_execution.rollback_count += 1
                    attempt += 1
                    decision = self.classifier.decide(e, self.retry_policy, self.skip_policy, attempt)
                    if decision.retryable:
                        await self._backoff(attempt, "write", e, step_execution)
                        continue
                    if not decision.skippable:
                        self._fail("write", e)
                    self._charge_skip("write", e, item, step_execution)
                    break
                else:
                    step_execution.commit_count += 1
                    step_execution.write_count += 1
                    break

    async def _backoff(self, attempt: int, phase: str, error: Exception,
                       step_execution: StepExecution) -> None:
        delay = self.backoff_policy.delay(attempt)
        step_execution.retry_count += 1
        self.logger.warning(f"Retrying {phase} of step {self.name} in {delay}s", extra={
            "step_name": self.name,
            "phase": phase,
            "attempt": attempt,
            "max_attempts": self.retry_policy.max_attempts,
            "error_type": type(error).__name__,
            "error_message": str(error)
        })
        await self.sleep(delay)

    def _charge_skip(self, phase: str, error: Exception, item: Any,
                     step_execution: StepExecution) -> None:
        if not self.skip_policy.within_budget(step_execution.skip_count):
            self.logger.error("Skip limit exceeded", extra={
                "step_name": self.name,
                "skip_limit": self.skip_policy.skip_limit,
                "error_type": type(error).__name__
            })
            raise SkipLimitExceededError(self.name, self.skip_policy.skip_limit, cause=error) from error

        if phase == "read":
            step_execution.read_skip_count += 1
        elif phase == "process":
            step_execution.process_skip_count += 1
        else:
            step_execution.write_skip_count += 1
        self.logger.warning(f"Skipped item during {phase}", extra={
            "step_name": self.name,
            "phase": phase,
            "item": repr(item),
            "error_type": type(error).__name__,
            "error_message": str(error),
            "skip_count": step_execution.skip_count
        })

    def _fail(self, phase: str, error: Exception):
        self.logger.error(f"Fatal error during {phase}", extra={
            "step_name": self.name,
            "error_type": type(error).__name__,
            "error_message": str(error)
        })
        raise StepFailedError(self.name, f"{phase} failed: {error}", cause=error) from error


def _locate(items: List[Any], offending: Any) -> Optional[int]:
    if offending is None:
        return None
    for index, item in enumerate(items):
        if item is offending:
            return index
    for index, item in enumerate(items):
        if item == offending:
            return index
    return None


async def run_chunk_step(
    reader: ItemReader,
    processor: Optional[ItemProcessor],
    writer: ItemWriter,
    target: Any,
    chunk_size: int,
    retry_policy: Optional[RetryPolicy] = None,
    skip_policy: Optional[SkipPolicy] = None,
    backoff_policy: Optional[BackoffPolicy] = None,
    classifier: Optional[ErrorClassifier] = None,
    context: Optional[ExecutionContext] = None,
    name: str = "chunk-step",
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
) -> StepExecution:
    """
    Run a chunk step outside of a job and return its StepExecution.

    StepFailedError propagates after the step execution has been marked FAILED;
    the failed StepExecution is attached to the error as `step_execution`.
    """
    step = ChunkStep(
        name,
        reader=reader,
        processor=processor,
        writer=writer,
        target=target,
        chunk_size=chunk_size,
        retry_policy=retry_policy,
        backoff_policy=backoff_policy,
        skip_policy=skip_policy,
        classifier=classifier,
        sleep=sleep
    )
    step_execution = StepExecution(step_name=name)
    try:
        await step.execute(step_execution, context or ExecutionContext())
    except StepFailedError as e:
        step_execution.fail(e.reason)
        e.step_execution = step_execution
        raise
    return step_execution
