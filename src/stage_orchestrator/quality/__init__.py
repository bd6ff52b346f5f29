"""Quality gate: analysis submission and verdict polling."""

from stage_orchestrator.quality.gate import (
    AnalysisServer,
    CommandAnalysisServer,
    QualityGateOperation,
    QualityGatePolicy,
    QualityGateWaiter,
)

__all__ = [
    "AnalysisServer",
    "CommandAnalysisServer",
    "QualityGateOperation",
    "QualityGatePolicy",
    "QualityGateWaiter",
]
