"""Unit tests for run state, outcome transitions and report export."""

from __future__ import annotations

import json

import pytest

from stage_orchestrator.domain.models import (
    Artifact,
    Condition,
    DiagnosticEntry,
    GateVerdict,
    HookResult,
    InvalidOutcomeTransition,
    OperationResult,
    Outcome,
    QualityGateResult,
    RunState,
    Stage,
    StageRecord,
    StageStatus,
)
from stage_orchestrator.engine.operations import CallableOperation


async def _noop(context: object) -> None:
    return None


def _state() -> RunState:
    return RunState(run_id="run-test", pipeline_name="svc", build_number=7)


def test_outcome_transitions_are_monotonic() -> None:
    state = _state()
    assert state.outcome is Outcome.PENDING
    state.transition(Outcome.RUNNING)
    assert state.started_at
    state.transition(Outcome.FAILURE)
    assert state.finished_at

    with pytest.raises(InvalidOutcomeTransition):
        state.transition(Outcome.SUCCESS)
    with pytest.raises(InvalidOutcomeTransition):
        state.transition(Outcome.RUNNING)
    state.transition(Outcome.FAILURE)


def test_pending_run_may_be_aborted_before_it_starts() -> None:
    state = _state()
    state.transition(Outcome.ABORTED)
    assert state.outcome.is_terminal


def test_pending_run_cannot_jump_to_success() -> None:
    with pytest.raises(InvalidOutcomeTransition, match="pending to success"):
        _state().transition(Outcome.SUCCESS)


def test_snapshot_requires_terminal_outcome() -> None:
    state = _state()
    state.transition(Outcome.RUNNING)
    with pytest.raises(InvalidOutcomeTransition):
        state.snapshot()


def test_condition_matching_covers_stage_status_and_outcome() -> None:
    assert Condition.ALWAYS.matches_stage(StageStatus.SKIPPED)
    assert Condition.SUCCESS.matches_stage(StageStatus.SUCCESS)
    assert not Condition.SUCCESS.matches_stage(StageStatus.ABORTED)
    assert Condition.FAILURE.matches_stage(StageStatus.FAILURE)
    assert not Condition.FAILURE.matches_stage(StageStatus.ABORTED)

    for outcome in (Outcome.SUCCESS, Outcome.FAILURE, Outcome.ABORTED):
        assert Condition.ALWAYS.matches_outcome(outcome)
    assert not Condition.ALWAYS.matches_outcome(Outcome.RUNNING)
    assert not Condition.SUCCESS.matches_outcome(Outcome.ABORTED)
    assert not Condition.FAILURE.matches_outcome(Outcome.ABORTED)


def test_artifact_retagging_returns_new_reference_to_same_content() -> None:
    artifact = Artifact(name="app", digest="sha256:abc", tags=frozenset({"41"}))
    retagged = artifact.with_tags(["42", "latest"])

    assert retagged is not artifact
    assert retagged.digest == artifact.digest
    assert artifact.tags == frozenset({"41"})
    assert retagged.tags == frozenset({"42", "latest"})
    assert retagged.to_dict()["tags"] == ["42", "latest"]

    with pytest.raises(ValueError, match="digest"):
        Artifact(name="app", digest=" ")


def test_stage_rejects_duplicate_operation_ids_and_bad_order() -> None:
    operation = CallableOperation(operation_id="op", body=_noop)
    with pytest.raises(ValueError, match="duplicate operation id"):
        Stage(name="build", order=1, operations=(operation, operation))
    with pytest.raises(ValueError, match="order"):
        Stage(name="build", order=0)
    with pytest.raises(ValueError, match="name"):
        Stage(name="  ", order=1)


def test_run_report_is_json_safe_and_truncates_long_output() -> None:
    state = _state()
    state.transition(Outcome.RUNNING)
    record = StageRecord(name="build", order=1, status=StageStatus.FAILURE)
    record.operation_results.append(
        OperationResult(
            operation_id="package",
            succeeded=False,
            exit_code=2,
            output="x" * 10_000,
            error_kind="operation_failure",
            error="mvn exited with status 2",
        )
    )
    state.stages.append(record)
    state.record_diagnostic(
        DiagnosticEntry(stage="build", kind="operation_failure", message="boom", operation_id="package")
    )
    state.gate_results.append(
        QualityGateResult(verdict=GateVerdict.ERROR, correlation_id="task-1")
    )
    state.artifacts["app"] = Artifact(name="app", digest="sha256:1")
    state.transition(Outcome.FAILURE)

    report = state.snapshot([HookResult(name="notify", condition=Condition.ALWAYS, succeeded=True)])
    payload = report.to_dict()
    json.dumps(payload)

    assert payload["outcome"] == "failure"
    assert payload["stages"][0]["status"] == "failure"
    output = payload["stages"][0]["operations"][0]["output"]
    assert output.startswith("...[truncated ")
    assert payload["gate_results"] == [
        {"verdict": "ERROR", "correlation_id": "task-1", "details": None}
    ]
    assert payload["hook_results"][0]["condition"] == "always"
    assert report.failed_stage is not None and report.failed_stage.name == "build"
    assert report.stage_statuses == {"build": StageStatus.FAILURE}
    with pytest.raises(KeyError):
        report.stage("deploy")


def test_snapshot_is_isolated_from_later_state_mutation() -> None:
    state = _state()
    state.transition(Outcome.RUNNING)
    state.stages.append(StageRecord(name="test", order=1, status=StageStatus.SUCCESS))
    state.transition(Outcome.SUCCESS)

    report = state.snapshot()
    state.stages[0].operation_results.append(OperationResult(operation_id="late", succeeded=True))

    assert report.stages[0].operation_results == []


def test_best_effort_failure_is_not_the_failed_stage() -> None:
    state = _state()
    state.transition(Outcome.RUNNING)
    state.stages.append(
        StageRecord(name="scan", order=1, status=StageStatus.FAILURE, best_effort=True)
    )
    state.transition(Outcome.SUCCESS)
    assert state.failed_stage() is None
    assert state.snapshot().failed_stage is None
