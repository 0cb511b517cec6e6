import asyncio
import io
import json
import logging

import pytest

from academic_batch_orchestrator.utils.logger import (
    JobContextFilter,
    LoggerContext,
    StructuredFormatter,
    current_log_context,
    setup_logger,
)


@pytest.fixture
def captured():
    stream = io.StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    handler.addFilter(JobContextFilter())
    logger = logging.getLogger("tests.logger")
    logger.setLevel(logging.DEBUG)
    logger.addHandler(handler)
    yield logger, stream
    logger.removeHandler(handler)


def lines(stream):
    return [json.loads(line) for line in stream.getvalue().splitlines()]


def test_context_fields_are_top_level(captured):
    logger, stream = captured

    with LoggerContext(job_name="archive", run_key="r1"):
        with LoggerContext(step_name="archive-enrollments"):
            logger.info("Chunk committed", extra={"items": 20})
        logger.info("Job finished")
    logger.info("Outside")

    first, second, third = lines(stream)
    assert first["job_name"] == "archive"
    assert first["step_name"] == "archive-enrollments"
    assert first["extra"] == {"items": 20}
    assert "step_name" not in second
    assert second["run_key"] == "r1"
    assert "job_name" not in third
    assert current_log_context() == {}


def test_exceptions_are_serialized(captured):
    logger, stream = captured

    try:
        raise ValueError("bad date")
    except ValueError:
        logger.error("Processing failed", exc_info=True)

    entry = lines(stream)[0]
    assert entry["level"] == "ERROR"
    assert entry["exception"]["type"] == "ValueError"
    assert "bad date" in entry["exception"]["traceback"]


async def test_concurrent_tasks_keep_their_own_context(captured):
    logger, stream = captured

    async def run(job_name):
        with LoggerContext(job_name=job_name):
            await asyncio.sleep(0)
            logger.info("tick")

    await asyncio.gather(run("archive"), run("token-cleanup"))

    assert sorted(entry["job_name"] for entry in lines(stream)) == ["archive", "token-cleanup"]


def test_unknown_level_is_rejected():
    with pytest.raises(ValueError):
        setup_logger("tests.logger.levels", level="LOUD")
