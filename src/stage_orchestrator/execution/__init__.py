"""External command execution with timeout and termination handling."""

from stage_orchestrator.execution.command import (
    CommandExecutor,
    CommandResult,
    CommandSpec,
    LocalSubprocessExecutor,
)

__all__ = ["CommandExecutor", "CommandResult", "CommandSpec", "LocalSubprocessExecutor"]
