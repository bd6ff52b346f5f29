"""Domain types shared across the orchestrator: stages, outcomes, artifacts, errors."""

from stage_orchestrator.domain.errors import (
    AbortRequested,
    CredentialResolutionFailure,
    GateFailure,
    OperationFailure,
    PipelineError,
)
from stage_orchestrator.domain.ids import generate_run_id, validate_run_id
from stage_orchestrator.domain.models import (
    Artifact,
    Condition,
    DiagnosticEntry,
    GateVerdict,
    HookResult,
    InvalidOutcomeTransition,
    NotificationMessage,
    OperationResult,
    Outcome,
    PostAction,
    QualityGateResult,
    RunReport,
    RunState,
    Stage,
    StageRecord,
    StageStatus,
)

__all__ = [
    "AbortRequested",
    "Artifact",
    "Condition",
    "CredentialResolutionFailure",
    "DiagnosticEntry",
    "GateFailure",
    "GateVerdict",
    "HookResult",
    "InvalidOutcomeTransition",
    "NotificationMessage",
    "OperationFailure",
    "OperationResult",
    "Outcome",
    "PipelineError",
    "PostAction",
    "QualityGateResult",
    "RunReport",
    "RunState",
    "Stage",
    "StageRecord",
    "StageStatus",
    "generate_run_id",
    "validate_run_id",
]
