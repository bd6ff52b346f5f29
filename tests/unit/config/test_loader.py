"""
stage-orchestrator — unit tests for config loader

File: tests/unit/config/test_loader.py

Purpose
- Validate deterministic config loading from defaults, TOML, env overrides, and CLI overrides.

What this test file should cover
- Precedence: CLI > env > file > defaults.
- Env var path mapping and type coercion.
- Path normalization relative to the config file.
- Redacted effective config dumping.
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from stage_orchestrator.config.loader import (
    ConfigLoadError,
    dump_effective_config,
    env_name_for_path,
    load_config,
)
from stage_orchestrator.config.schema import ConfigValidationError


def _write_config(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")


def test_loader_precedence_default_file_env_cli(tmp_path: Path) -> None:
    config_path = tmp_path / "orchestrator.toml"
    default_path = tmp_path / "default.toml"
    _write_config(default_path, "")
    _write_config(
        config_path,
        """
[pipeline]
build_number = 4
""".strip(),
    )
    env = {"STAGE_ORCH_PIPELINE_BUILD_NUMBER": "6"}

    default_loaded = load_config(default_path, environ={})
    file_loaded = load_config(config_path, environ={})
    env_loaded = load_config(config_path, environ=env)
    cli_loaded = load_config(
        config_path, environ=env, cli_overrides={"pipeline.build_number": 7}
    )

    assert default_loaded.pipeline.build_number == 0
    assert file_loaded.pipeline.build_number == 4
    assert env_loaded.pipeline.build_number == 6
    assert cli_loaded.pipeline.build_number == 7


def test_env_mapping_coerces_types(tmp_path: Path) -> None:
    config_path = tmp_path / "orchestrator.toml"
    _write_config(config_path, "")

    loaded = load_config(
        config_path,
        environ={
            "STAGE_ORCH_QUALITY_GATE_ENABLED": "off",
            "STAGE_ORCH_QUALITY_GATE_TIMEOUT_SECONDS": "90.5",
            "STAGE_ORCH_PIPELINE_NAME": " payments ",
            "STAGE_ORCH_REGISTRY_IMAGE_REGISTRY": "reg.local",
        },
    )

    assert loaded.quality_gate.enabled is False
    assert loaded.quality_gate.timeout_seconds == 90.5
    assert loaded.pipeline.name == "payments"
    assert loaded.registry.image_reference == "reg.local/app"
    assert env_name_for_path(("pipeline", "build_number")) == "STAGE_ORCH_PIPELINE_BUILD_NUMBER"


@pytest.mark.parametrize(
    ("env_name", "raw", "message"),
    [
        ("STAGE_ORCH_PIPELINE_BUILD_NUMBER", "forty-two", "must be an integer"),
        ("STAGE_ORCH_EXECUTION_HOOK_TIMEOUT_SECONDS", "soon", "must be a number"),
        ("STAGE_ORCH_NOTIFICATION_ENABLED", "maybe", "must be a boolean"),
    ],
)
def test_env_coercion_errors(tmp_path: Path, env_name: str, raw: str, message: str) -> None:
    config_path = tmp_path / "orchestrator.toml"
    _write_config(config_path, "")
    with pytest.raises(ConfigLoadError, match=message):
        load_config(config_path, environ={env_name: raw})


def test_credential_sources_are_not_env_overridable(tmp_path: Path) -> None:
    config_path = tmp_path / "orchestrator.toml"
    _write_config(config_path, '[credentials]\nregistry = "REGISTRY_TOKEN"\n')

    loaded = load_config(config_path, environ={"STAGE_ORCH_CREDENTIALS_REGISTRY": "OTHER"})

    assert loaded.credentials == {"registry": "REGISTRY_TOKEN"}


def test_paths_are_resolved_against_config_directory(tmp_path: Path) -> None:
    config_dir = tmp_path / "conf"
    config_path = config_dir / "orchestrator.toml"
    _write_config(
        config_path,
        """
[pipeline]
workspace = "../checkout"
definition = "pipeline.yaml"

[observability]
log_dir = "/var/log/stage-orchestrator"
""".strip(),
    )

    loaded = load_config(config_path, environ={})

    assert loaded.pipeline.workspace == (tmp_path / "checkout").resolve()
    assert loaded.pipeline.definition == config_dir.resolve() / "pipeline.yaml"
    assert loaded.pipeline.reports_dir == config_dir.resolve() / "reports"
    assert loaded.observability.log_dir == Path("/var/log/stage-orchestrator")


def test_missing_explicit_config_is_an_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigLoadError, match="config file not found"):
        load_config(tmp_path / "absent.toml")


def test_invalid_toml_is_reported(tmp_path: Path) -> None:
    config_path = tmp_path / "orchestrator.toml"
    _write_config(config_path, "[pipeline\nname = 1")
    with pytest.raises(ConfigLoadError, match="invalid TOML"):
        load_config(config_path, environ={})


def test_validation_failures_surface_from_loader(tmp_path: Path) -> None:
    config_path = tmp_path / "orchestrator.toml"
    _write_config(
        config_path,
        """
[registry]
password = "hunter2"

[notification]
enabled = true
""".strip(),
    )

    with pytest.raises(ConfigValidationError) as excinfo:
        load_config(config_path, environ={})

    by_path = {issue.path: issue.message for issue in excinfo.value.issues}
    assert by_path["registry.password"].startswith("embedded secret values are forbidden")
    assert by_path["notification.recipients"] == "must not be empty when notification is enabled"
    assert "hunter2" not in str(excinfo.value)


def test_dump_effective_config_is_deterministic(tmp_path: Path) -> None:
    config_path = tmp_path / "orchestrator.toml"
    _write_config(config_path, '[credentials]\ndeploy = "DEPLOY_TOKEN"\n')

    first = dump_effective_config(load_config(config_path, environ={}))
    second = dump_effective_config(load_config(config_path, environ={}))

    assert first == second
    payload = json.loads(first)
    assert payload["credentials"] == {"deploy": "DEPLOY_TOKEN"}
    assert payload["pipeline"]["name"] == "pipeline"
