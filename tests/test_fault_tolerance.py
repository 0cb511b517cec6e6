import pytest

from academic_batch_orchestrator.core.exceptions import (
    ConfigurationError,
    DeadlockError,
    ErrorKind,
    MalformedRecordError,
    MessageBusError,
    MessageBusUnavailableError,
    MissingFieldError,
    StoreError,
    TransientStoreError,
)
from academic_batch_orchestrator.services.fault_tolerance import (
    BackoffPolicy,
    ErrorClassifier,
    RetryPolicy,
    SkipPolicy,
    policies_from_settings,
    retry_async,
)
from academic_batch_orchestrator.utils.config import BatchSettings


def test_default_backoff_schedule():
    assert RetryPolicy(max_attempts=5).delays(BackoffPolicy()) == [1, 2, 4, 8, 16]


def test_backoff_is_capped():
    backoff = BackoffPolicy(initial=1, multiplier=2, maximum=16)
    assert backoff.delay(6) == 16
    assert backoff.delay(10) == 16


def test_backoff_rejects_attempt_zero():
    with pytest.raises(ValueError):
        BackoffPolicy().delay(0)


@pytest.mark.parametrize("error, kind", [
    (DeadlockError("enrollment", "update", "deadlock detected"), ErrorKind.DATABASE_DEADLOCK),
    (TransientStoreError("enrollment", "fetch", "connection reset"), ErrorKind.DATABASE_TRANSIENT),
    (StoreError("enrollment", "fetch", "syntax error"), ErrorKind.FATAL),
    (MessageBusUnavailableError("notifications", "timeout"), ErrorKind.MESSAGE_BUS_UNAVAILABLE),
    (FileNotFoundError("x.pdf"), ErrorKind.FILESYSTEM_IO),
    (MalformedRecordError("bad date", record_id=3), ErrorKind.MALFORMED_INPUT),
    (ValueError("bad"), ErrorKind.MALFORMED_INPUT),
    (MissingFieldError("email", record_id=3), ErrorKind.MISSING_OPTIONAL_FIELD),
    (ConfigurationError("stores.x", "missing"), ErrorKind.FATAL),
    (RuntimeError("surprise"), ErrorKind.UNCLASSIFIED),
])
def test_classification_by_type(error, kind):
    assert ErrorClassifier().classify(error) is kind


def test_registered_rule_overrides_default():
    classifier = ErrorClassifier()
    classifier.register(RuntimeError, ErrorKind.DATABASE_TRANSIENT)
    assert classifier.classify(RuntimeError("retry me")) is ErrorKind.DATABASE_TRANSIENT


def test_decision_retries_transient_until_attempts_run_out():
    classifier = ErrorClassifier()
    retry, skip = RetryPolicy(max_attempts=2), SkipPolicy()
    error = TransientStoreError("account", "fetch", "reset")

    assert classifier.decide(error, retry, skip, attempt=2).retryable
    exhausted = classifier.decide(error, retry, skip, attempt=3)
    assert not exhausted.retryable
    assert exhausted.fatal


def test_unclassified_errors_skip_by_default_and_fail_when_configured():
    error = RuntimeError("unknown")
    assert ErrorClassifier().decide(error, RetryPolicy(), SkipPolicy()).skippable
    assert ErrorClassifier(unclassified="fail").decide(error, RetryPolicy(), SkipPolicy()).fatal


def test_unknown_unclassified_policy_is_a_configuration_error():
    with pytest.raises(ConfigurationError):
        ErrorClassifier(unclassified="retry")


def test_skip_budget():
    skip = SkipPolicy(skip_limit=5)
    assert skip.within_budget(4)
    assert not skip.within_budget(5)


def test_widened_skip_policy_keeps_limit():
    widened = SkipPolicy(skip_limit=3).widened(ErrorKind.FILESYSTEM_IO)
    assert widened.skip_limit == 3
    assert widened.is_skippable(ErrorKind.FILESYSTEM_IO)
    assert widened.is_skippable(ErrorKind.MALFORMED_INPUT)


def test_policies_from_settings():
    settings = BatchSettings.model_validate({"retry": {"max_attempts": 3, "initial_interval": 0.5}})
    retry, backoff, skip = policies_from_settings(settings, skip_limit=7)
    assert retry.delays(backoff) == [0.5, 1.0, 2.0]
    assert skip.skip_limit == 7


async def test_retry_async_sleeps_through_the_schedule(sleep):
    calls = []

    async def publish():
        calls.append(1)
        if len(calls) <= 5:
            raise MessageBusUnavailableError("notifications", "down")
        return "ok"

    result = await retry_async(publish, RetryPolicy(max_attempts=5), BackoffPolicy(), ErrorClassifier(), sleep=sleep)

    assert result == "ok"
    assert sleep.delays == [1, 2, 4, 8, 16]


async def test_retry_async_reraises_after_last_attempt(sleep):
    async def publish():
        raise MessageBusUnavailableError("notifications", "down")

    with pytest.raises(MessageBusUnavailableError):
        await retry_async(publish, RetryPolicy(max_attempts=2), BackoffPolicy(), ErrorClassifier(), sleep=sleep)
    assert sleep.delays == [1, 2]


async def test_retry_async_does_not_retry_rejections(sleep):
    async def publish():
        raise MessageBusError("notifications", "HTTP 422")

    with pytest.raises(MessageBusError):
        await retry_async(publish, RetryPolicy(), BackoffPolicy(), ErrorClassifier(), sleep=sleep)
    assert sleep.delays == []
