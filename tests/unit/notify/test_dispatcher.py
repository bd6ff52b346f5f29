"""Unit tests for outcome notifications."""

from __future__ import annotations

import email

import pytest

from stage_orchestrator.domain.models import (
    DiagnosticEntry,
    NotificationMessage,
    Outcome,
    RunReport,
    RunState,
    StageRecord,
    StageStatus,
)
from stage_orchestrator.execution.command import CommandResult, CommandSpec
from stage_orchestrator.notify.dispatcher import (
    CommandTransport,
    LogTransport,
    NotificationDeliveryError,
    NotificationDispatcher,
    render_body,
)


class RecordingTransport:
    def __init__(self, *, fail: bool = False) -> None:
        self.sent: list[NotificationMessage] = []
        self._fail = fail

    async def send(self, message: NotificationMessage) -> None:
        if self._fail:
            raise ConnectionRefusedError("mail relay down")
        self.sent.append(message)


class RecordingExecutor:
    def __init__(self, exit_code: int = 0) -> None:
        self.specs: list[CommandSpec] = []
        self._exit_code = exit_code

    async def execute(self, spec: CommandSpec, timeout_seconds: float | None = None) -> CommandResult:
        self.specs.append(spec)
        return CommandResult(argv=spec.argv, exit_code=self._exit_code, output="", duration_ms=1)


def _report(outcome: Outcome, *, run_id: str = "run-n") -> RunReport:
    state = RunState(
        run_id=run_id,
        pipeline_name="svc",
        build_number=42,
        metadata={"image": "reg.local/svc"},
    )
    state.transition(Outcome.RUNNING)
    state.stages.append(StageRecord(name="test", order=1, status=StageStatus.SUCCESS))
    if outcome is Outcome.FAILURE:
        state.stages.append(StageRecord(name="quality-gate", order=2, status=StageStatus.FAILURE))
        state.stages.append(
            StageRecord(name="build", order=3, status=StageStatus.SKIPPED, skip_reason="stopped_early")
        )
        state.record_diagnostic(
            DiagnosticEntry(
                stage="quality-gate",
                kind="gate_failure",
                message="quality gate returned ERROR",
                operation_id="quality-gate",
                output="line one\nline two",
                verdict="ERROR",
            )
        )
    elif outcome is Outcome.ABORTED:
        state.stages.append(StageRecord(name="build", order=2, status=StageStatus.ABORTED))
    state.transition(outcome)
    return state.snapshot()


def test_render_subject_and_success_body() -> None:
    dispatcher = NotificationDispatcher(RecordingTransport(), recipients=("team@example.com",))
    message = dispatcher.render(_report(Outcome.SUCCESS))

    assert message.subject == "[SUCCESS] svc #42"
    assert message.recipients == ("team@example.com",)
    assert message.outcome is Outcome.SUCCESS
    assert "Pipeline: svc" in message.body
    assert "image: reg.local/svc" in message.body
    assert "Failed stage" not in message.body


def test_failure_body_names_stage_and_diagnostics() -> None:
    body = render_body(_report(Outcome.FAILURE))

    assert "Outcome: FAILURE" in body
    assert "Failed stage: quality-gate" in body
    assert "[gate_failure] quality-gate/quality-gate: quality gate returned ERROR verdict=ERROR" in body
    assert "      | line two" in body


def test_aborted_body_says_so() -> None:
    body = render_body(_report(Outcome.ABORTED), extra_metadata={"trigger": "manual"})
    assert "The run was aborted." in body
    assert "trigger: manual" in body


async def test_run_is_announced_at_most_once() -> None:
    transport = RecordingTransport()
    dispatcher = NotificationDispatcher(
        transport,
        recipients=("a@example.com", "b@example.com"),
        subject_template="{pipeline_name} build {build_number}: {outcome}",
    )
    report = _report(Outcome.FAILURE)

    assert await dispatcher.dispatch(report)
    assert await dispatcher.dispatch(report)
    await dispatcher(report)

    assert len(transport.sent) == 1
    assert transport.sent[0].subject == "svc build 42: FAILURE"


async def test_delivery_failure_surfaces_to_hook_runner() -> None:
    dispatcher = NotificationDispatcher(RecordingTransport(fail=True), recipients=("a@example.com",))
    report = _report(Outcome.SUCCESS)

    assert not await dispatcher.dispatch(report)
    with pytest.raises(NotificationDeliveryError, match="run-n"):
        await dispatcher(report)


def test_dispatcher_rejects_bad_configuration() -> None:
    with pytest.raises(ValueError, match="recipients"):
        NotificationDispatcher(LogTransport(), recipients=())
    with pytest.raises(ValueError, match="unknown subject placeholder"):
        NotificationDispatcher(LogTransport(), recipients=("a@example.com",), subject_template="{branch}")


async def test_command_transport_pipes_message_to_mailer() -> None:
    executor = RecordingExecutor()
    transport = CommandTransport(executor, sender="ci@example.com")
    dispatcher = NotificationDispatcher(transport, recipients=("a@example.com", "b@example.com"))

    await dispatcher(_report(Outcome.SUCCESS))

    [spec] = executor.specs
    assert spec.argv == ("sendmail", "-t")
    parsed = email.message_from_string(spec.stdin_text or "")
    assert parsed["To"] == "a@example.com, b@example.com"
    assert parsed["From"] == "ci@example.com"
    assert parsed["Subject"] == "[SUCCESS] svc #42"
    assert "Build: #42" in parsed.get_payload()


async def test_command_transport_failure_raises() -> None:
    transport = CommandTransport(RecordingExecutor(exit_code=75))
    message = NotificationMessage(
        subject="s", body="b", recipients=("a@example.com",), outcome=Outcome.FAILURE
    )
    with pytest.raises(NotificationDeliveryError, match="mail transport failed"):
        await transport.send(message)
