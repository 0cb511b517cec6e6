from datetime import datetime, timezone

import pytest

from academic_batch_orchestrator.core.exceptions import error_registry
from academic_batch_orchestrator.services.history import InMemoryExecutionHistory
from academic_batch_orchestrator.services.message_bus import InMemoryMessageBus

from .fakes import RecordingSleep


NOW = datetime(2025, 6, 15, 23, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def reset_error_registry():
    error_registry.reset()
    yield
    error_registry.reset()


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def clock():
    return lambda: NOW


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def bus():
    return InMemoryMessageBus()


@pytest.fixture
def history():
    return InMemoryExecutionHistory()
