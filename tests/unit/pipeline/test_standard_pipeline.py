"""Unit tests for the built-in stage catalog."""

from __future__ import annotations

from typing import Any

import pytest

from stage_orchestrator.config.schema import OrchestratorConfig, default_config, merge_config
from stage_orchestrator.domain.models import Condition
from stage_orchestrator.engine.operations import ArchiveReportsOperation, CommandOperation
from stage_orchestrator.pipeline.standard import (
    STANDARD_STAGE_NAMES,
    build_standard_pipeline,
    catalog_variables,
)
from stage_orchestrator.quality.gate import QualityGateOperation
from stage_orchestrator.versioning.tags import PublishOperation


def _config(**overlay: Any) -> OrchestratorConfig:
    return OrchestratorConfig.from_mapping(merge_config(default_config(), overlay))


def test_catalog_stage_order() -> None:
    definition = build_standard_pipeline(_config(pipeline={"name": "svc"}))

    assert definition.name == "svc"
    assert definition.stage_names == STANDARD_STAGE_NAMES
    assert [stage.order for stage in definition.stages] == list(range(1, 10))


def test_quality_gate_stage_is_omitted_when_disabled() -> None:
    definition = build_standard_pipeline(_config(quality_gate={"enabled": False}))

    assert "quality-gate" not in definition.stage_names
    assert definition.stage_names[:2] == ("test", "fs-scan")
    assert [stage.order for stage in definition.stages] == list(range(1, 9))


def test_test_stage_archives_reports_always() -> None:
    test_stage = build_standard_pipeline(_config()).stages[0]

    [post] = test_stage.post_actions
    assert post.condition is Condition.ALWAYS
    assert isinstance(post.operation, ArchiveReportsOperation)
    assert post.operation.operation_id == "archive-test-reports"


def test_operation_kinds_and_credentials() -> None:
    config = _config(
        credentials={"deploy": "DEPLOY_TOKEN", "registry": "REGISTRY_TOKEN", "sonar": "SONAR_TOKEN"},
        commands={"deploy_credential": "deploy"},
        registry={"image_credential": "registry"},
        quality_gate={"credential": "sonar"},
    )
    stages = {stage.name: stage for stage in build_standard_pipeline(config).stages}

    [gate] = stages["quality-gate"].operations
    assert isinstance(gate, QualityGateOperation)
    assert gate.credentials == ("sonar",)

    [build] = stages["build"].operations
    assert isinstance(build, CommandOperation)
    assert build.artifact is not None and build.artifact.name == "package"

    [image_build] = stages["image-build"].operations
    assert isinstance(image_build, CommandOperation)
    assert image_build.credential_env == {"registry": "REGISTRY_TOKEN"}

    [push] = stages["image-push"].operations
    assert isinstance(push, PublishOperation)
    assert push.artifact_name == "image"
    assert push.credentials == ("registry",)

    [deploy] = stages["deploy"].operations
    assert isinstance(deploy, CommandOperation)
    assert deploy.credential_env == {"deploy": "DEPLOY_TOKEN"}


def test_catalog_variables() -> None:
    variables = catalog_variables(_config(registry={"image_registry": "reg.local/"}))
    assert variables["image"] == "reg.local/app"
    assert variables["image_name"] == "app"
    assert variables["repository_url"] == "http://localhost:8081/repository/releases"


def test_unknown_placeholder_in_configured_command_fails() -> None:
    with pytest.raises(ValueError, match=r"unknown placeholder \{branch\}"):
        build_standard_pipeline(_config(commands={"test": ["mvn", "-Dbranch={branch}", "test"]}))
    with pytest.raises(ValueError, match=r"unknown placeholder \{mirror\}"):
        build_standard_pipeline(_config(registry={"image_push_command": ["docker", "push", "{mirror}"]}))
