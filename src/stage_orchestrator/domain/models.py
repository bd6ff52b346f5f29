"""
stage-orchestrator — domain models

File: src/stage_orchestrator/domain/models.py

Purpose
- Typed records for stages, operation results, artifacts, gate verdicts and
  the per-run state object written only by the stage graph executor.

Normative behavior
- ``Outcome`` transitions are monotonic: PENDING -> RUNNING -> terminal.
- Artifacts are immutable; retagging returns a new ``Artifact``.
- ``RunReport`` is a frozen snapshot built once the outcome is terminal.
"""

from __future__ import annotations

import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
from typing import TYPE_CHECKING, Final

from stage_orchestrator.constants import RUN_REPORT_SCHEMA_VERSION

if TYPE_CHECKING:
    from stage_orchestrator.engine.operations import Operation

_MAX_OUTPUT_EXCERPT: Final[int] = 4000


class Outcome(StrEnum):
    """Pipeline-level outcome."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_OUTCOMES


_TERMINAL_OUTCOMES: Final[frozenset[Outcome]] = frozenset(
    {Outcome.SUCCESS, Outcome.FAILURE, Outcome.ABORTED}
)

_ALLOWED_TRANSITIONS: Final[Mapping[Outcome, frozenset[Outcome]]] = {
    Outcome.PENDING: frozenset({Outcome.RUNNING, Outcome.ABORTED}),
    Outcome.RUNNING: _TERMINAL_OUTCOMES,
    Outcome.SUCCESS: frozenset(),
    Outcome.FAILURE: frozenset(),
    Outcome.ABORTED: frozenset(),
}


class StageStatus(StrEnum):
    """Terminal (or in-flight) status of one stage."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"
    ABORTED = "aborted"


class Condition(StrEnum):
    """Condition class selecting post-actions and post-execution hooks."""

    ALWAYS = "always"
    SUCCESS = "success"
    FAILURE = "failure"

    def matches_stage(self, status: StageStatus) -> bool:
        if self is Condition.ALWAYS:
            return True
        if self is Condition.SUCCESS:
            return status is StageStatus.SUCCESS
        return status is StageStatus.FAILURE

    def matches_outcome(self, outcome: Outcome) -> bool:
        if self is Condition.ALWAYS:
            return outcome.is_terminal
        if self is Condition.SUCCESS:
            return outcome is Outcome.SUCCESS
        return outcome is Outcome.FAILURE


class GateVerdict(StrEnum):
    """Quality gate verdicts reported by the external analysis system."""

    OK = "OK"
    WARN = "WARN"
    ERROR = "ERROR"
    TIMEOUT = "TIMEOUT"

    @property
    def is_terminal(self) -> bool:
        return self is not GateVerdict.TIMEOUT


@dataclass(frozen=True, slots=True)
class QualityGateResult:
    """Verdict correlated to the analysis submission that produced it."""

    verdict: GateVerdict
    correlation_id: str
    details: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "verdict": self.verdict.value,
            "correlation_id": self.correlation_id,
            "details": self.details,
        }


@dataclass(frozen=True, slots=True)
class Artifact:
    """Build output with a content identity and immutable version tags."""

    name: str
    digest: str
    location: str | None = None
    tags: frozenset[str] = frozenset()

    def __post_init__(self) -> None:
        if not self.name.strip():
            raise ValueError("Artifact.name must be non-empty")
        if not self.digest.strip():
            raise ValueError("Artifact.digest must be non-empty")
        object.__setattr__(self, "tags", frozenset(self.tags))

    def with_tags(self, tags: Sequence[str] | frozenset[str]) -> Artifact:
        """Return a new reference to the same content carrying ``tags``."""

        return Artifact(
            name=self.name,
            digest=self.digest,
            location=self.location,
            tags=frozenset(tags),
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "name": self.name,
            "digest": self.digest,
            "location": self.location,
            "tags": sorted(self.tags),
        }


@dataclass(frozen=True, slots=True)
class OperationResult:
    """Outcome of one operation: status, captured output and optional artifact."""

    operation_id: str
    succeeded: bool
    exit_code: int | None = None
    output: str = ""
    timed_out: bool = False
    duration_ms: int = 0
    error_kind: str | None = None
    error: str | None = None
    artifact: Artifact | None = None
    published: tuple[Artifact, ...] = ()
    gate_result: QualityGateResult | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "operation_id": self.operation_id,
            "succeeded": self.succeeded,
            "exit_code": self.exit_code,
            "timed_out": self.timed_out,
            "duration_ms": self.duration_ms,
            "error_kind": self.error_kind,
            "error": self.error,
            "output": _excerpt(self.output),
            "artifact": self.artifact.to_dict() if self.artifact is not None else None,
            "published": [item.to_dict() for item in self.published],
            "gate_result": self.gate_result.to_dict() if self.gate_result is not None else None,
        }


@dataclass(frozen=True, slots=True)
class PostAction:
    """Operation attached to a stage and run when ``condition`` matches its status."""

    condition: Condition
    operation: Operation


@dataclass(frozen=True, slots=True)
class Stage:
    """Stage definition: body operations, post-actions and failure policy."""

    name: str
    order: int
    operations: tuple[Operation, ...] = ()
    post_actions: tuple[PostAction, ...] = ()
    best_effort: bool = False
    parallel: bool = False

    def __post_init__(self) -> None:
        if not self.name.strip():
            raise ValueError("Stage.name must be non-empty")
        if self.order <= 0:
            raise ValueError("Stage.order must be > 0")
        object.__setattr__(self, "operations", tuple(self.operations))
        object.__setattr__(self, "post_actions", tuple(self.post_actions))
        seen: set[str] = set()
        for operation in self.operations:
            if operation.operation_id in seen:
                raise ValueError(
                    f"Stage {self.name!r} has duplicate operation id {operation.operation_id!r}"
                )
            seen.add(operation.operation_id)


@dataclass(frozen=True, slots=True)
class DiagnosticEntry:
    """One recorded failure in the run's diagnostic trail."""

    stage: str
    kind: str
    message: str
    operation_id: str | None = None
    best_effort: bool = False
    post_action: bool = False
    output: str = ""
    verdict: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "stage": self.stage,
            "kind": self.kind,
            "message": self.message,
            "operation_id": self.operation_id,
            "best_effort": self.best_effort,
            "post_action": self.post_action,
            "output": _excerpt(self.output),
            "verdict": self.verdict,
        }


@dataclass(slots=True)
class StageRecord:
    """Execution record for one stage."""

    name: str
    order: int
    status: StageStatus = StageStatus.PENDING
    best_effort: bool = False
    operation_results: list[OperationResult] = field(default_factory=list)
    post_action_results: list[OperationResult] = field(default_factory=list)
    duration_ms: int = 0
    skip_reason: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "name": self.name,
            "order": self.order,
            "status": self.status.value,
            "best_effort": self.best_effort,
            "duration_ms": self.duration_ms,
            "skip_reason": self.skip_reason,
            "operations": [item.to_dict() for item in self.operation_results],
            "post_actions": [item.to_dict() for item in self.post_action_results],
        }


@dataclass(frozen=True, slots=True)
class HookResult:
    """Result of one post-execution hook invocation."""

    name: str
    condition: Condition
    succeeded: bool
    error: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "name": self.name,
            "condition": self.condition.value,
            "succeeded": self.succeeded,
            "error": self.error,
        }


class InvalidOutcomeTransition(ValueError):
    """Raised when an outcome transition would move backwards."""


@dataclass(slots=True)
class RunState:
    """Mutable state for a single pipeline run."""

    run_id: str
    pipeline_name: str
    build_number: int
    metadata: dict[str, str] = field(default_factory=dict)
    outcome: Outcome = Outcome.PENDING
    stages: list[StageRecord] = field(default_factory=list)
    diagnostics: list[DiagnosticEntry] = field(default_factory=list)
    artifacts: dict[str, Artifact] = field(default_factory=dict)
    published: list[Artifact] = field(default_factory=list)
    gate_results: list[QualityGateResult] = field(default_factory=list)
    started_at: str = ""
    finished_at: str = ""
    _started_monotonic: float = field(default=0.0, repr=False)
    duration_ms: int = 0

    def transition(self, outcome: Outcome) -> None:
        if outcome is self.outcome:
            return
        if outcome not in _ALLOWED_TRANSITIONS[self.outcome]:
            raise InvalidOutcomeTransition(
                f"cannot move outcome from {self.outcome.value} to {outcome.value}"
            )
        self.outcome = outcome
        if outcome is Outcome.RUNNING:
            self.started_at = _utc_now()
            self._started_monotonic = time.monotonic()
        elif outcome.is_terminal:
            self.finished_at = _utc_now()
            if self._started_monotonic:
                elapsed = max(time.monotonic() - self._started_monotonic, 0.0)
                self.duration_ms = int(round(elapsed * 1000))

    def record_diagnostic(self, entry: DiagnosticEntry) -> None:
        self.diagnostics.append(entry)

    def stage_record(self, name: str) -> StageRecord | None:
        for record in self.stages:
            if record.name == name:
                return record
        return None

    def failed_stage(self) -> StageRecord | None:
        for record in self.stages:
            if record.status is StageStatus.FAILURE and not record.best_effort:
                return record
        return None

    def snapshot(self, hook_results: Sequence[HookResult] = ()) -> RunReport:
        if not self.outcome.is_terminal:
            raise InvalidOutcomeTransition("run report requires a terminal outcome")
        return RunReport(
            run_id=self.run_id,
            pipeline_name=self.pipeline_name,
            build_number=self.build_number,
            outcome=self.outcome,
            metadata=dict(self.metadata),
            stages=tuple(_copy_stage_record(record) for record in self.stages),
            diagnostics=tuple(self.diagnostics),
            artifacts=tuple(self.artifacts[name] for name in sorted(self.artifacts)),
            published=tuple(self.published),
            gate_results=tuple(self.gate_results),
            hook_results=tuple(hook_results),
            started_at=self.started_at,
            finished_at=self.finished_at,
            duration_ms=self.duration_ms,
        )


@dataclass(frozen=True, slots=True)
class RunReport:
    """Frozen view of a finished run, consumed by hooks and observers."""

    run_id: str
    pipeline_name: str
    build_number: int
    outcome: Outcome
    metadata: dict[str, str]
    stages: tuple[StageRecord, ...]
    diagnostics: tuple[DiagnosticEntry, ...]
    artifacts: tuple[Artifact, ...] = ()
    published: tuple[Artifact, ...] = ()
    gate_results: tuple[QualityGateResult, ...] = ()
    hook_results: tuple[HookResult, ...] = ()
    started_at: str = ""
    finished_at: str = ""
    duration_ms: int = 0

    def stage(self, name: str) -> StageRecord:
        for record in self.stages:
            if record.name == name:
                return record
        raise KeyError(name)

    @property
    def stage_statuses(self) -> dict[str, StageStatus]:
        return {record.name: record.status for record in self.stages}

    @property
    def failed_stage(self) -> StageRecord | None:
        for record in self.stages:
            if record.status is StageStatus.FAILURE and not record.best_effort:
                return record
        return None

    def with_hook_results(self, hook_results: Sequence[HookResult]) -> RunReport:
        return RunReport(
            run_id=self.run_id,
            pipeline_name=self.pipeline_name,
            build_number=self.build_number,
            outcome=self.outcome,
            metadata=self.metadata,
            stages=self.stages,
            diagnostics=self.diagnostics,
            artifacts=self.artifacts,
            published=self.published,
            gate_results=self.gate_results,
            hook_results=tuple(hook_results),
            started_at=self.started_at,
            finished_at=self.finished_at,
            duration_ms=self.duration_ms,
        )

    def to_dict(self) -> dict[str, object]:
        """Stable-key JSON-safe export written as the run report."""

        return {
            "schema_version": RUN_REPORT_SCHEMA_VERSION,
            "run_id": self.run_id,
            "pipeline_name": self.pipeline_name,
            "build_number": self.build_number,
            "outcome": self.outcome.value,
            "metadata": dict(sorted(self.metadata.items())),
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "duration_ms": self.duration_ms,
            "stages": [record.to_dict() for record in self.stages],
            "diagnostics": [entry.to_dict() for entry in self.diagnostics],
            "artifacts": [item.to_dict() for item in self.artifacts],
            "published": [item.to_dict() for item in self.published],
            "gate_results": [item.to_dict() for item in self.gate_results],
            "hook_results": [item.to_dict() for item in self.hook_results],
        }


@dataclass(frozen=True, slots=True)
class NotificationMessage:
    """Read-only outcome message rendered once after the run is terminal."""

    subject: str
    body: str
    recipients: tuple[str, ...]
    outcome: Outcome


def _copy_stage_record(record: StageRecord) -> StageRecord:
    return StageRecord(
        name=record.name,
        order=record.order,
        status=record.status,
        best_effort=record.best_effort,
        operation_results=list(record.operation_results),
        post_action_results=list(record.post_action_results),
        duration_ms=record.duration_ms,
        skip_reason=record.skip_reason,
    )


def _excerpt(text: str) -> str:
    if len(text) <= _MAX_OUTPUT_EXCERPT:
        return text
    omitted = len(text) - _MAX_OUTPUT_EXCERPT
    return f"...[truncated {omitted} chars]\n{text[-_MAX_OUTPUT_EXCERPT:]}"


def _utc_now() -> str:
    return datetime.now(tz=timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


__all__ = [
    "Artifact",
    "Condition",
    "DiagnosticEntry",
    "GateVerdict",
    "HookResult",
    "InvalidOutcomeTransition",
    "NotificationMessage",
    "OperationResult",
    "Outcome",
    "PostAction",
    "QualityGateResult",
    "RunReport",
    "RunState",
    "Stage",
    "StageRecord",
    "StageStatus",
]
