"""Configuration loading and validation."""

from stage_orchestrator.config.loader import (
    ConfigLoadError,
    dump_effective_config,
    load_config,
)
from stage_orchestrator.config.schema import (
    ConfigValidationError,
    ConfigValidationIssue,
    OrchestratorConfig,
    default_config,
    dump_redacted,
    validate_config,
)

__all__ = [
    "ConfigLoadError",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "OrchestratorConfig",
    "default_config",
    "dump_effective_config",
    "dump_redacted",
    "load_config",
    "validate_config",
]
