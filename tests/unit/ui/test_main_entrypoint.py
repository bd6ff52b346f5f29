"""Exit-code normalization at the process boundary."""

from __future__ import annotations

import os
import subprocess
import sys
from pathlib import Path

import pytest

from stage_orchestrator import main as main_module
from stage_orchestrator.config.loader import ConfigLoadError
from stage_orchestrator.main import ExitCode, cli_entrypoint
from stage_orchestrator.ui import cli as cli_module

SRC_ROOT = Path(__file__).resolve().parents[3] / "src"


def _patch_run_cli(monkeypatch: pytest.MonkeyPatch, behaviour: object) -> None:
    def fake_run_cli(argv: object = None) -> int:
        if isinstance(behaviour, BaseException):
            raise behaviour
        return behaviour  # type: ignore[return-value]

    monkeypatch.setattr(cli_module, "run_cli", fake_run_cli)


@pytest.mark.parametrize(
    ("behaviour", "expected"),
    [
        (0, ExitCode.SUCCESS),
        (1, ExitCode.PIPELINE_FAILED),
        (130, ExitCode.ABORTED),
        (77, ExitCode.INTERNAL_ERROR),
        (KeyboardInterrupt(), ExitCode.ABORTED),
        (SystemExit(2), ExitCode.CONFIG_ERROR),
        (SystemExit(None), ExitCode.SUCCESS),
        (ConfigLoadError("config file not found: x"), ExitCode.CONFIG_ERROR),
        (FileNotFoundError("workspace"), ExitCode.CONFIG_ERROR),
        (RuntimeError("boom"), ExitCode.INTERNAL_ERROR),
    ],
)
def test_exit_codes_are_normalized(
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
    behaviour: object,
    expected: ExitCode,
) -> None:
    _patch_run_cli(monkeypatch, behaviour)
    assert cli_entrypoint([]) == int(expected)


def test_chained_config_error_is_a_config_error(monkeypatch: pytest.MonkeyPatch) -> None:
    try:
        try:
            raise ConfigLoadError("bad override")
        except ConfigLoadError as exc:
            raise RuntimeError("wrapped") from exc
    except RuntimeError as wrapped:
        _patch_run_cli(monkeypatch, wrapped)
    assert cli_entrypoint([]) == int(ExitCode.CONFIG_ERROR)


def test_internal_error_prints_traceback(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    _patch_run_cli(monkeypatch, RuntimeError("kaboom"))
    cli_entrypoint([])
    err = capsys.readouterr().err
    assert "Traceback" in err
    assert "RuntimeError: kaboom" in err


def test_main_raises_system_exit(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(main_module, "cli_entrypoint", lambda argv=None: 1)
    with pytest.raises(SystemExit) as excinfo:
        main_module.main()
    assert excinfo.value.code == 1


def test_unknown_command_exits_with_config_code(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli_entrypoint(["deploy-everything"]) == int(ExitCode.CONFIG_ERROR)


@pytest.mark.integration
def test_module_entrypoint_help() -> None:
    env = dict(os.environ)
    env["PYTHONPATH"] = os.pathsep.join(filter(None, [str(SRC_ROOT), env.get("PYTHONPATH")]))
    completed = subprocess.run(
        [sys.executable, "-m", "stage_orchestrator", "--help"],
        capture_output=True,
        text=True,
        env=env,
        timeout=60,
        check=False,
    )
    assert completed.returncode == 0
    assert "validate" in completed.stdout
