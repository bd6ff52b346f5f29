"""Pipeline definitions: YAML-declared stage lists and the built-in catalog."""

from stage_orchestrator.pipeline.definition import (
    PipelineDefinition,
    PipelineDefinitionError,
    load_definition,
    parse_definition,
)
from stage_orchestrator.pipeline.standard import STANDARD_STAGE_NAMES, build_standard_pipeline

__all__ = [
    "STANDARD_STAGE_NAMES",
    "PipelineDefinition",
    "PipelineDefinitionError",
    "build_standard_pipeline",
    "load_definition",
    "parse_definition",
]
