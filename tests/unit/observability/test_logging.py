"""
stage-orchestrator — unit tests for observability logging

File: tests/unit/observability/test_logging.py

Purpose
- Validate structured JSON logging with redaction, correlation metadata, and queue-backed reliability.

What this test file should cover
- JSON line validity and redaction guarantees.
- Correlation field propagation, including from structlog events.
- Multi-threaded logging stability.
- Queue drain/shutdown behavior.
"""

from __future__ import annotations

import json
import logging
import logging.handlers
import threading
from typing import TYPE_CHECKING
from uuid import uuid4

import pytest
import structlog

from stage_orchestrator.observability.logging import (
    LoggingConfig,
    build_log_redactor,
    correlation_scope,
    get_active_logging_handle,
    get_correlation_context,
    setup_structured_logging,
    shutdown_logging,
)
from stage_orchestrator.security.redaction import REDACTED_VALUE, SecretMasker

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path


@pytest.fixture(autouse=True)
def _cleanup_logging() -> Iterator[None]:
    yield
    shutdown_logging()


def _logger_name() -> str:
    return f"stage_orchestrator.tests.logging.{uuid4().hex}"


def _read_json_lines(path: Path) -> list[dict[str, object]]:
    lines = path.read_text(encoding="utf-8").splitlines()
    return [json.loads(line) for line in lines]


def test_json_logging_redacts_secrets_and_preserves_correlation_fields(tmp_path: Path) -> None:
    logger_name = _logger_name()
    handle = setup_structured_logging(
        LoggingConfig(
            run_id="run-logging-redaction",
            base_log_dir=tmp_path,
            logger_name=logger_name,
            log_to_stdout=False,
        )
    )
    logger = logging.getLogger(logger_name)

    with correlation_scope(stage="quality-gate", operation_id="gate"):
        logger.info(
            "payload token=tok-FAKE123 and api_key=sk-FAKE123456789012345",
            extra={"nested": {"password": "hunter2", "safe": "ok"}},
        )

    shutdown_logging(handle)

    assert handle.log_path == tmp_path / "run-logging-redaction" / "orchestrator.jsonl"
    [first] = _read_json_lines(handle.log_path)
    assert first["run_id"] == "run-logging-redaction"
    assert first["stage"] == "quality-gate"
    assert first["operation_id"] == "gate"
    assert first["level"] == "INFO"
    assert first["fields"] == {"nested": {"password": REDACTED_VALUE, "safe": "ok"}}

    line = handle.log_path.read_text(encoding="utf-8")
    assert "tok-FAKE123" not in line
    assert "sk-FAKE" not in line
    assert "hunter2" not in line


def test_structlog_events_reach_the_run_log(tmp_path: Path) -> None:
    handle = setup_structured_logging(
        LoggingConfig(run_id="run-structlog", base_log_dir=tmp_path, log_to_stdout=False)
    )
    log = structlog.get_logger("stage_orchestrator.engine.tests")

    with correlation_scope(stage="build"):
        log.info("stage_started", operation_id="package", attempts=2)
    log.debug("not_emitted_at_info")

    shutdown_logging(handle)

    [event] = _read_json_lines(handle.log_path)
    assert event["message"] == "stage_started"
    assert event["logger"] == "stage_orchestrator.engine.tests"
    assert event["stage"] == "build"
    assert event["operation_id"] == "package"
    assert event["fields"] == {"attempts": 2}


def test_text_redactor_masks_registered_literals(tmp_path: Path) -> None:
    masker = SecretMasker()
    masker.register("plain-literal-value")
    handle = setup_structured_logging(
        LoggingConfig(
            run_id="run-masker",
            base_log_dir=tmp_path,
            logger_name=_logger_name(),
            log_to_stdout=False,
            text_redactor=masker,
        )
    )

    handle.logger.warning("deploy printed plain-literal-value", extra={"output": "x plain-literal-value"})
    shutdown_logging(handle)

    line = handle.log_path.read_text(encoding="utf-8")
    assert "plain-literal-value" not in line
    assert line.count(REDACTED_VALUE) == 2


def test_redaction_can_be_disabled(tmp_path: Path) -> None:
    handle = setup_structured_logging(
        LoggingConfig(
            run_id="run-raw",
            base_log_dir=tmp_path,
            logger_name=_logger_name(),
            log_to_stdout=False,
            redact_secrets=False,
        )
    )
    handle.logger.info("token=visible-value")
    shutdown_logging(handle)

    assert "token=visible-value" in handle.log_path.read_text(encoding="utf-8")


def test_multithreaded_logging_produces_valid_json_lines(tmp_path: Path) -> None:
    logger_name = _logger_name()
    handle = setup_structured_logging(
        LoggingConfig(
            run_id="run-threaded",
            base_log_dir=tmp_path,
            logger_name=logger_name,
            log_to_stdout=False,
            queue_size=4096,
        )
    )
    logger = logging.getLogger(logger_name)

    total_threads = 8
    per_thread = 40

    def worker(thread_idx: int) -> None:
        for i in range(per_thread):
            logger.info(
                f"thread={thread_idx} index={i} token=tok-secret-{thread_idx}-{i}",
                extra={"api_key": f"sk-FAKE-{thread_idx}-{i}"},
            )

    threads = [threading.Thread(target=worker, args=(idx,)) for idx in range(total_threads)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    shutdown_logging(handle)

    lines = handle.log_path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == total_threads * per_thread
    for line in lines:
        parsed = json.loads(line)
        assert isinstance(parsed, dict)
        assert "message" in parsed
        assert "tok-secret" not in line
        assert "sk-FAKE" not in line


def test_queue_handler_non_blocking_and_shutdown_flushes(tmp_path: Path) -> None:
    logger_name = _logger_name()
    handle = setup_structured_logging(
        LoggingConfig(
            run_id="run-flush",
            base_log_dir=tmp_path,
            logger_name=logger_name,
            log_to_stdout=False,
            queue_size=10_000,
        )
    )
    logger = logging.getLogger(logger_name)

    queue_handlers = [h for h in logger.handlers if isinstance(h, logging.handlers.QueueHandler)]
    assert queue_handlers, "expected queue-backed non-blocking logging"

    expected = 300
    for i in range(expected):
        logger.info("message %s", i)

    shutdown_logging(handle)

    lines = handle.log_path.read_text(encoding="utf-8").splitlines()
    assert handle.dropped_records == 0
    assert len(lines) == expected
    assert handle.is_shutdown
    assert get_active_logging_handle() is None


def test_new_setup_replaces_previous_handle(tmp_path: Path) -> None:
    first = setup_structured_logging(
        LoggingConfig(run_id="run-one", base_log_dir=tmp_path, logger_name=_logger_name(), log_to_stdout=False)
    )
    second = setup_structured_logging(
        LoggingConfig(run_id="run-two", base_log_dir=tmp_path, logger_name=_logger_name(), log_to_stdout=False)
    )
    assert first.is_shutdown
    assert get_active_logging_handle() is second


def test_correlation_scope_nests_and_restores() -> None:
    with correlation_scope(run_id="r1", stage="test"):
        with correlation_scope(stage="build", operation_id="package"):
            assert get_correlation_context() == {"run_id": "r1", "stage": "build", "operation_id": "package"}
        with correlation_scope(stage=None):
            assert get_correlation_context() == {"run_id": "r1"}
        assert get_correlation_context() == {"run_id": "r1", "stage": "test"}
    assert get_correlation_context() == {}


@pytest.mark.parametrize(
    ("config_kwargs", "message"),
    [
        ({"run_id": " "}, "run_id must not be empty"),
        ({"run_id": "r", "log_filename": "nested/x.jsonl"}, "path separators"),
        ({"run_id": "r", "queue_size": 0}, "queue_size must be > 0"),
        ({"run_id": "r", "level": "LOUD"}, "unsupported logging level"),
    ],
)
def test_invalid_logging_config(tmp_path: Path, config_kwargs: dict[str, object], message: str) -> None:
    with pytest.raises(ValueError, match=message):
        setup_structured_logging(
            LoggingConfig(base_log_dir=tmp_path, logger_name=_logger_name(), **config_kwargs)  # type: ignore[arg-type]
        )


def test_log_redactor_handles_nested_values() -> None:
    redact = build_log_redactor()
    assert redact({"client_secret": "x", "items": ["password=abcdef12"], "n": 3}) == {
        "client_secret": REDACTED_VALUE,
        "items": [f"password={REDACTED_VALUE}"],
        "n": 3,
    }
