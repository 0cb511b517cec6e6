"""
Fault tolerance policies.

Provides the bounded fault tolerance used by every step:
- Explicit error classification by exception type
- Retry policies with exponential backoff and a ceiling
- Per-step skip budgets
- A coroutine retry helper for one-off calls such as bus publishes

Retry and skip are orthogonal: a failure may be retried until its attempts run
out and is then skipped only if its kind is also skippable, otherwise it is fatal.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Iterable, List, Optional, Tuple, Type
from dataclasses import dataclass

from ..core.exceptions import (
    ErrorKind,
    ConfigurationError,
    StoreError,
    TransientStoreError,
    DeadlockError,
    MessageBusUnavailableError,
    MalformedRecordError,
    MissingFieldError,
    StepFailedError,
    ReaderInterruptedError,
)
from ..utils.logger import get_logger


RETRYABLE_KINDS: FrozenSet[ErrorKind] = frozenset({
    ErrorKind.DATABASE_TRANSIENT,
    ErrorKind.DATABASE_DEADLOCK,
    ErrorKind.MESSAGE_BUS_UNAVAILABLE,
    ErrorKind.FILESYSTEM_IO,
})

SKIPPABLE_KINDS: FrozenSet[ErrorKind] = frozenset({
    ErrorKind.MALFORMED_INPUT,
    ErrorKind.MISSING_OPTIONAL_FIELD,
    ErrorKind.UNCLASSIFIED,
})

# Checked in MRO order of the raised exception, so subclasses listed here win
# over their bases regardless of the order of this table.
DEFAULT_CLASSIFICATION: Dict[Type[BaseException], ErrorKind] = {
    DeadlockError: ErrorKind.DATABASE_DEADLOCK,
    TransientStoreError: ErrorKind.DATABASE_TRANSIENT,
    StoreError: ErrorKind.FATAL,
    MessageBusUnavailableError: ErrorKind.MESSAGE_BUS_UNAVAILABLE,
    OSError: ErrorKind.FILESYSTEM_IO,
    MalformedRecordError: ErrorKind.MALFORMED_INPUT,
    ValueError: ErrorKind.MALFORMED_INPUT,
    MissingFieldError: ErrorKind.MISSING_OPTIONAL_FIELD,
    KeyError: ErrorKind.MISSING_OPTIONAL_FIELD,
    ConfigurationError: ErrorKind.FATAL,
    StepFailedError: ErrorKind.FATAL,
    ReaderInterruptedError: ErrorKind.FATAL,
}


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff with a ceiling."""
    initial: float = 1.0
    multiplier: float = 2.0
    maximum: float = 16.0

    def delay(self, attempt: int) -> float:
        """
        Delay before retry attempt n (1-indexed).

        Args:
            attempt: Retry attempt number, starting at 1

        Returns:
            min(initial * multiplier ** (attempt - 1), maximum) seconds
        """
        if attempt < 1:
            raise ValueError("attempt numbers start at 1")
        return min(self.initial * self.multiplier ** (attempt - 1), self.maximum)


@dataclass(frozen=True)
class RetryPolicy:
    """Configuration for retry behavior."""
    max_attempts: int = 5
    retryable_kinds: FrozenSet[ErrorKind] = RETRYABLE_KINDS

    def can_retry(self, kind: ErrorKind, attempt: int) -> bool:
        """Whether retry attempt number `attempt` is allowed for kind."""
        return kind in self.retryable_kinds and attempt <= self.max_attempts

    def delays(self, backoff: BackoffPolicy) -> List[float]:
        """Full backoff schedule for this policy."""
        return [backoff.delay(n) for n in range(1, self.max_attempts + 1)]

    @classmethod
    def none(cls) -> "RetryPolicy":
        return cls(max_attempts=0, retryable_kinds=frozenset())


@dataclass(frozen=True)
class SkipPolicy:
    """Per-step skip budget."""
    skip_limit: int = 10
    skippable_kinds: FrozenSet[ErrorKind] = SKIPPABLE_KINDS

    def is_skippable(self, kind: ErrorKind) -> bool:
        return kind in self.skippable_kinds

    def within_budget(self, skip_count: int) -> bool:
        """Whether one more skip fits given skip_count skips so far."""
        return skip_count < self.skip_limit

    def widened(self, *kinds: ErrorKind) -> "SkipPolicy":
        return SkipPolicy(self.skip_limit, self.skippable_kinds | frozenset(kinds))


@dataclass(frozen=True)
class FailureDecision:
    """Outcome of classifying one failure against a step's policies."""
    kind: ErrorKind
    retryable: bool
    skippable: bool

    @property
    def fatal(self) -> bool:
        return not self.retryable and not self.skippable


class ErrorClassifier:
    """
    Classifies exceptions into ErrorKinds by type.

    Classification never looks at message text. Exceptions that match no rule
    are UNCLASSIFIED; by default they are skippable and logged at WARNING, and
    with unclassified="fail" they become fatal.
    """

    def __init__(self, rules: Optional[Dict[Type[BaseException], ErrorKind]] = None,
                 unclassified: str = "skip"):
        if unclassified not in ("skip", "fail"):
            raise ConfigurationError("skip.unclassified", f"unknown policy {unclassified!r}")
        self.rules: Dict[Type[BaseException], ErrorKind] = dict(DEFAULT_CLASSIFICATION)
        if rules:
            self.rules.update(rules)
        self.unclassified = unclassified
        self.logger = get_logger(__name__)

    def register(self, exception_type: Type[BaseException], kind: ErrorKind) -> None:
        self.rules[exception_type] = kind

    def classify(self, error: BaseException) -> ErrorKind:
        """Return the kind of the nearest registered type in the exception's MRO."""
        for klass in type(error).__mro__:
            kind = self.rules.get(klass)
            if kind is not None:
                return kind
        return ErrorKind.UNCLASSIFIED

    def decide(self, error: BaseException, retry: RetryPolicy, skip: SkipPolicy,
               attempt: int = 1) -> FailureDecision:
        """
        Decide how a step should react to a failure.

        Args:
            error: The raised exception
            retry: Retry policy of the step
            skip: Skip policy of the step
            attempt: Number of the retry that would come next

        Returns:
            FailureDecision with retryable/skippable flags
        """
        kind = self.classify(error)
        if kind is ErrorKind.FATAL:
            return FailureDecision(kind, retryable=False, skippable=False)

        if kind is ErrorKind.UNCLASSIFIED:
            skippable = self.unclassified == "skip" and skip.is_skippable(kind)
            self.logger.warning("Unclassified error", extra={
                "error_type": type(error).__name__,
                "error_message": str(error),
                "treated_as": "skippable" if skippable else "fatal"
            })
            return FailureDecision(kind, retryable=False, skippable=skippable)

        return FailureDecision(
            kind,
            retryable=retry.can_retry(kind, attempt),
            skippable=skip.is_skippable(kind)
        )


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    retry: RetryPolicy,
    backoff: BackoffPolicy,
    classifier: ErrorClassifier,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    operation: str = "operation"
) -> Any:
    """
    Await func, retrying retryable failures with backoff.

    The last failure is re-raised once the retry policy gives up or the failure
    is not retryable.
    """
    logger = get_logger(__name__)
    attempt = 0
    while True:
        try:
            return await func()
        except Exception as e:
            attempt += 1
            kind = classifier.classify(e)
            if not retry.can_retry(kind, attempt):
                raise
            delay = backoff.delay(attempt)
            logger.warning(f"Retrying {operation} in {delay}s", extra={
                "attempt": attempt,
                "max_attempts": retry.max_attempts,
                "error_kind": kind.value,
                "error_message": str(e)
            })
            await sleep(delay)


def policies_from_settings(settings, skip_limit: int,
                           extra_skippable: Iterable[ErrorKind] = ()) -> Tuple[RetryPolicy, BackoffPolicy, SkipPolicy]:
    """Build the three step policies from BatchSettings and a job's skip limit."""
    retry = RetryPolicy(max_attempts=settings.retry.max_attempts)
    backoff = BackoffPolicy(
        initial=settings.retry.initial_interval,
        multiplier=settings.retry.multiplier,
        maximum=settings.retry.max_interval
    )
    skip = SkipPolicy(skip_limit=skip_limit).widened(*extra_skippable)
    return retry, backoff, skip


__all__ = [
    "RETRYABLE_KINDS",
    "SKIPPABLE_KINDS",
    "BackoffPolicy",
    "RetryPolicy",
    "SkipPolicy",
    "FailureDecision",
    "ErrorClassifier",
    "retry_async",
    "policies_from_settings",
]
