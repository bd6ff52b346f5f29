"""Command-line interface router for stage-orchestrator."""

from __future__ import annotations

import argparse
import asyncio
import json
import signal
import sys
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Final

import yaml

from stage_orchestrator.config import (
    ConfigLoadError,
    ConfigValidationError,
    OrchestratorConfig,
    dump_redacted,
    load_config,
)
from stage_orchestrator.domain.ids import generate_run_id
from stage_orchestrator.domain.models import Outcome
from stage_orchestrator.engine.orchestrator import (
    PipelineController,
    RunOutcome,
    resolve_definition,
)
from stage_orchestrator.observability.logging import (
    LoggingConfig,
    setup_structured_logging,
    shutdown_logging,
)
from stage_orchestrator.ui.render import CLIRenderer, render_definition, render_report
from stage_orchestrator.versioning.tags import BuildNumberReused

if TYPE_CHECKING:
    from stage_orchestrator.domain.models import RunReport

EXIT_SUCCESS: Final[int] = 0
EXIT_FAILURE: Final[int] = 1
EXIT_CONFIG_ERROR: Final[int] = 2
EXIT_ABORTED: Final[int] = 130

_OUTCOME_EXIT_CODES: Final[dict[Outcome, int]] = {
    Outcome.SUCCESS: EXIT_SUCCESS,
    Outcome.FAILURE: EXIT_FAILURE,
    Outcome.ABORTED: EXIT_ABORTED,
}


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    message: str
    exit_code: int = 1

    def __str__(self) -> str:
        return self.message


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router for all supported CLI workflows."""

    parser = argparse.ArgumentParser(
        prog="stage-orchestrator",
        description=(
            "stage-orchestrator — staged build pipeline engine.\n\n"
            "Common workflows:\n"
            "  stage-orchestrator run --build-number 42   Run the configured pipeline\n"
            "  stage-orchestrator validate                 Check config and definition\n"
            "  stage-orchestrator config                   Show effective config\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to orchestrator TOML config (default: ./orchestrator.toml if present).",
    )
    common.add_argument(
        "--definition",
        default=None,
        help="YAML pipeline definition (default: built-in stage catalog).",
    )
    common.add_argument(
        "--set",
        dest="overrides",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Override a config value by dotted key; VALUE is parsed as YAML.",
    )
    common.add_argument("--json", action="store_true", help="Emit JSON output")
    common.add_argument(
        "--verbose", "-v", action="store_true", default=False, help="Show detailed output."
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser(
        "run",
        parents=[common],
        help="Execute the pipeline",
        description=(
            "Execute every stage in order, run post-execution hooks and write the run\n"
            "report. Exit status: 0 success, 1 failure, 130 aborted.\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    run_parser.add_argument("--build-number", type=int, default=None, help="Build number to claim")
    run_parser.add_argument("--workspace", default=None, help="Workspace directory")
    run_parser.add_argument(
        "--meta",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Extra metadata recorded in the run report.",
    )
    run_parser.set_defaults(handler=_cmd_run)

    validate_parser = subparsers.add_parser(
        "validate",
        parents=[common],
        help="Validate configuration and pipeline definition",
    )
    validate_parser.set_defaults(handler=_cmd_validate)

    config_parser = subparsers.add_parser(
        "config",
        parents=[common],
        help="Show effective configuration (redacted)",
    )
    config_parser.set_defaults(handler=_cmd_config)
    return parser


# ---------------------------------------------------------------------------
# Entrypoints
# ---------------------------------------------------------------------------


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return EXIT_CONFIG_ERROR

    try:
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    return int(result)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_run(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    metadata = _parse_pairs(args.meta, "--meta")
    try:
        controller = PipelineController(config)
    except ValueError as exc:
        raise CLIError(str(exc), exit_code=EXIT_CONFIG_ERROR) from exc

    run_id = generate_run_id()
    observability = config.observability
    handle = setup_structured_logging(
        LoggingConfig(
            run_id=run_id,
            base_log_dir=observability.log_dir,
            level=observability.log_level,
            log_to_stdout=observability.log_to_stdout and not args.json,
            redact_secrets=observability.redact_secrets,
            text_redactor=controller.masker,
        )
    )
    try:
        outcome = asyncio.run(_run_with_signals(controller, run_id=run_id, metadata=metadata))
    except BuildNumberReused as exc:
        raise CLIError(str(exc), exit_code=EXIT_CONFIG_ERROR) from exc
    finally:
        shutdown_logging(handle)

    report = outcome.report
    if args.json:
        _emit_json(
            {
                "command": "run",
                "report_path": str(outcome.report_path),
                "report": report.to_dict(),
            }
        )
    else:
        render_report(
            CLIRenderer(verbose=args.verbose), report, report_path=str(outcome.report_path)
        )
    return exit_code_for(report)


def _cmd_validate(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    try:
        definition = resolve_definition(config)
    except ValueError as exc:
        raise CLIError(str(exc), exit_code=EXIT_CONFIG_ERROR) from exc

    if args.json:
        _emit_json(
            {
                "command": "validate",
                "valid": True,
                "pipeline": definition.name,
                "stages": list(definition.stage_names),
            }
        )
        return EXIT_SUCCESS
    renderer = CLIRenderer(verbose=args.verbose)
    render_definition(renderer, definition)
    renderer.section("Configuration and pipeline definition are valid.")
    return EXIT_SUCCESS


def _cmd_config(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    redacted = dump_redacted(config)
    if args.json:
        _emit_json({"command": "config", "config": redacted})
        return EXIT_SUCCESS
    CLIRenderer().text(json.dumps(redacted, indent=2, sort_keys=True, ensure_ascii=False))
    return EXIT_SUCCESS


async def _run_with_signals(
    controller: PipelineController,
    *,
    run_id: str,
    metadata: Mapping[str, str],
) -> RunOutcome:
    """Run with SIGINT/SIGTERM mapped onto the controller's cancellation token."""

    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, controller.cancel, f"received {sig.name}")
        except (NotImplementedError, RuntimeError):
            continue
        installed.append(sig)
    try:
        return await controller.run(run_id=run_id, metadata=metadata)
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


def exit_code_for(report: RunReport) -> int:
    return _OUTCOME_EXIT_CODES[report.outcome]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _load_effective_config(args: argparse.Namespace) -> OrchestratorConfig:
    overrides: dict[str, object] = {}
    for key, raw in _parse_pairs(args.overrides, "--set").items():
        try:
            overrides[key] = yaml.safe_load(raw) if raw else ""
        except yaml.YAMLError as exc:
            raise CLIError(f"--set {key}: value is not valid YAML: {exc}", exit_code=2) from exc
    if args.definition is not None:
        overrides["pipeline.definition"] = str(Path(args.definition).resolve())
    if getattr(args, "build_number", None) is not None:
        overrides["pipeline.build_number"] = args.build_number
    if getattr(args, "workspace", None) is not None:
        overrides["pipeline.workspace"] = str(Path(args.workspace).resolve())

    try:
        return load_config(args.config_path, cli_overrides=overrides)
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc), exit_code=EXIT_CONFIG_ERROR) from exc


def _parse_pairs(raw_pairs: Sequence[str], flag: str) -> dict[str, str]:
    pairs: dict[str, str] = {}
    for raw in raw_pairs:
        key, separator, value = raw.partition("=")
        if not separator or not key.strip():
            raise CLIError(f"{flag} expects KEY=VALUE, got {raw!r}", exit_code=EXIT_CONFIG_ERROR)
        pairs[key.strip()] = value
    return pairs


def _emit_json(payload: Mapping[str, object]) -> None:
    """Emit a JSON payload to stdout with deterministic formatting."""

    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


__all__ = [
    "EXIT_ABORTED",
    "EXIT_CONFIG_ERROR",
    "EXIT_FAILURE",
    "EXIT_SUCCESS",
    "CLIError",
    "build_parser",
    "exit_code_for",
    "run_cli",
]
