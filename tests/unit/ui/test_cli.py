"""CLI routing tests: validate, config and run against a throwaway workspace."""

from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest

from stage_orchestrator.domain.models import Outcome, RunState
from stage_orchestrator.pipeline.standard import STANDARD_STAGE_NAMES
from stage_orchestrator.ui.cli import (
    EXIT_ABORTED,
    EXIT_CONFIG_ERROR,
    EXIT_FAILURE,
    EXIT_SUCCESS,
    build_parser,
    exit_code_for,
    run_cli,
)


def _write_project(tmp_path: Path, *, failing: bool = False) -> Path:
    config_path = tmp_path / "orchestrator.toml"
    config_path.write_text(
        "\n".join(
            [
                "[pipeline]",
                'name = "svc"',
                "build_number = 3",
                'definition = "pipeline.yaml"',
                "",
                "[observability]",
                "log_to_stdout = false",
                "",
            ]
        ),
        encoding="utf-8",
    )
    second = "import sys; sys.exit(3)" if failing else "print('packaged')"
    definition = {
        "name": "svc",
        "stages": [
            {
                "name": "test",
                "operations": [{"id": "unit", "argv": [sys.executable, "-c", "print('tests ok')"]}],
            },
            {
                "name": "build",
                "operations": [{"id": "package", "argv": [sys.executable, "-c", second]}],
            },
            {
                "name": "deploy",
                "operations": [{"id": "rollout", "argv": [sys.executable, "-c", "print('deployed')"]}],
            },
        ],
    }
    (tmp_path / "pipeline.yaml").write_text(json.dumps(definition), encoding="utf-8")
    return config_path


def _json_output(capsys: pytest.CaptureFixture[str]) -> dict[str, object]:
    out = capsys.readouterr().out.strip().splitlines()
    return json.loads(out[-1])


def test_validate_json_lists_stages(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    config_path = _write_project(tmp_path)

    assert run_cli(["validate", "--config", str(config_path), "--json"]) == EXIT_SUCCESS

    payload = _json_output(capsys)
    assert payload == {
        "command": "validate",
        "valid": True,
        "pipeline": "svc",
        "stages": ["test", "build", "deploy"],
    }


def test_validate_builtin_catalog_in_text_mode(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    config_path = tmp_path / "orchestrator.toml"
    config_path.write_text('[pipeline]\nname = "svc"\n', encoding="utf-8")

    assert run_cli(["validate", "--config", str(config_path)]) == EXIT_SUCCESS

    out = capsys.readouterr().out
    for name in STANDARD_STAGE_NAMES:
        assert name in out
    assert "always:archive-test-reports" in out
    assert "Configuration and pipeline definition are valid." in out


def test_config_json_applies_overrides(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    config_path = _write_project(tmp_path)

    exit_code = run_cli(
        [
            "config",
            "--config",
            str(config_path),
            "--json",
            "--set",
            "execution.max_parallel_operations=2",
            "--set",
            "notification.recipients=[a@example.com]",
        ]
    )

    assert exit_code == EXIT_SUCCESS
    payload = _json_output(capsys)
    assert payload["command"] == "config"
    config = payload["config"]
    assert isinstance(config, dict)
    assert config["execution"]["max_parallel_operations"] == 2
    assert config["notification"]["recipients"] == ["a@example.com"]


@pytest.mark.parametrize(
    ("extra_args", "message"),
    [
        (["--set", "notification.enabled=true"], "must not be empty when notification is enabled"),
        (["--set", "no-equals-sign"], "expects KEY=VALUE"),
        (["--set", "pipeline.colour=blue"], "pipeline.colour: unknown field"),
    ],
)
def test_config_errors_exit_with_config_code(
    tmp_path: Path,
    capsys: pytest.CaptureFixture[str],
    extra_args: list[str],
    message: str,
) -> None:
    config_path = _write_project(tmp_path)

    assert run_cli(["validate", "--config", str(config_path), *extra_args]) == EXIT_CONFIG_ERROR

    err = capsys.readouterr().err
    assert err.startswith("error: ")
    assert message in err


def test_missing_config_file_is_a_config_error(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert run_cli(["config", "--config", str(tmp_path / "absent.toml")]) == EXIT_CONFIG_ERROR
    assert "config file not found" in capsys.readouterr().err


def test_bad_definition_is_a_config_error(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    config_path = _write_project(tmp_path)
    (tmp_path / "pipeline.yaml").write_text("name: svc\nstages: []\n", encoding="utf-8")

    assert run_cli(["validate", "--config", str(config_path)]) == EXIT_CONFIG_ERROR
    assert "stages: expected a non-empty list" in capsys.readouterr().err


@pytest.mark.integration
def test_run_success_writes_report_and_log(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    config_path = _write_project(tmp_path)

    exit_code = run_cli(
        ["run", "--config", str(config_path), "--json", "--meta", "trigger=push"]
    )

    assert exit_code == EXIT_SUCCESS
    payload = _json_output(capsys)
    report = payload["report"]
    assert isinstance(report, dict)
    assert report["outcome"] == "success"
    assert report["build_number"] == 3
    assert report["metadata"]["trigger"] == "push"
    assert [stage["status"] for stage in report["stages"]] == ["success", "success", "success"]
    report_path = Path(str(payload["report_path"]))
    assert report_path.parent == (tmp_path / "reports").resolve()
    assert json.loads(report_path.read_text(encoding="utf-8"))["run_id"] == report["run_id"]
    log_path = tmp_path / "logs" / str(report["run_id"]) / "orchestrator.jsonl"
    assert log_path.exists()


@pytest.mark.integration
def test_run_failure_and_reused_build_number(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    config_path = _write_project(tmp_path, failing=True)

    assert run_cli(["run", "--config", str(config_path)]) == EXIT_FAILURE
    out = capsys.readouterr().out
    assert "Outcome: FAILURE" in out
    assert "stopped early" in out

    assert run_cli(["run", "--config", str(config_path)]) == EXIT_CONFIG_ERROR
    assert "is not greater than previously used 3" in capsys.readouterr().err

    assert run_cli(["run", "--config", str(config_path), "--build-number", "4"]) == EXIT_FAILURE


@pytest.mark.parametrize(
    ("outcome", "expected"),
    [(Outcome.SUCCESS, EXIT_SUCCESS), (Outcome.FAILURE, EXIT_FAILURE), (Outcome.ABORTED, EXIT_ABORTED)],
)
def test_exit_code_for_outcome(outcome: Outcome, expected: int) -> None:
    state = RunState(run_id="r", pipeline_name="p", build_number=1)
    state.transition(Outcome.RUNNING)
    state.transition(outcome)
    assert exit_code_for(state.snapshot()) == expected


def test_parser_requires_a_command() -> None:
    with pytest.raises(SystemExit) as excinfo:
        build_parser().parse_args([])
    assert excinfo.value.code == 2
