"""Stage graph execution, operations and post-execution hooks.

``stage_orchestrator.engine.orchestrator`` is imported explicitly; it depends
on the notification and pipeline packages, which in turn use the operation
types exported here.
"""

from stage_orchestrator.engine.executor import (
    SKIP_ABORTED,
    SKIP_STOPPED_EARLY,
    StageGraphExecutor,
    order_stages,
)
from stage_orchestrator.engine.hooks import HookRunner, RegisteredHook
from stage_orchestrator.engine.operations import (
    ArchiveReportsOperation,
    ArtifactSpec,
    CallableOperation,
    CommandOperation,
    Operation,
    OperationContext,
)

__all__ = [
    "SKIP_ABORTED",
    "SKIP_STOPPED_EARLY",
    "ArchiveReportsOperation",
    "ArtifactSpec",
    "CallableOperation",
    "CommandOperation",
    "HookRunner",
    "Operation",
    "OperationContext",
    "RegisteredHook",
    "StageGraphExecutor",
    "order_stages",
]
