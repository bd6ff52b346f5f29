"""
stage-orchestrator — operations

File: src/stage_orchestrator/engine/operations.py

Purpose
- Define the unit of external work a stage body is made of, and the context
  the stage graph executor hands to it.

Normative behavior
- Operations declare their timeout and the credential names they need; the
  executor opens the credential scope before ``execute`` is called.
- Argument templates are validated when the operation is constructed, so an
  undefined placeholder fails before the run starts.
- A command operation raises ``OperationFailure`` for non-zero exits, timeouts
  and launch errors; the executor turns that into a failed ``OperationResult``.
"""

from __future__ import annotations

import string
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Final, Protocol, runtime_checkable

import structlog

from stage_orchestrator.domain.errors import OperationFailure
from stage_orchestrator.domain.models import Artifact, OperationResult
from stage_orchestrator.execution.command import CommandSpec
from stage_orchestrator.utils.fs import collect_matching, copy_into, resolve_within
from stage_orchestrator.utils.hashing import content_digest

if TYPE_CHECKING:
    from stage_orchestrator.credentials.scope import CredentialBindings
    from stage_orchestrator.execution.command import CommandExecutor
    from stage_orchestrator.utils.concurrency import CancellationToken

logger = structlog.get_logger(__name__)

RUNTIME_PLACEHOLDERS: Final[frozenset[str]] = frozenset(
    {"build_number", "run_id", "pipeline_name", "stage_name", "workspace"}
)

_FORMATTER: Final[string.Formatter] = string.Formatter()


@dataclass(frozen=True, slots=True)
class OperationContext:
    """Everything an operation may touch while it runs."""

    run_id: str
    pipeline_name: str
    build_number: int
    stage_name: str
    workspace: Path
    executor: CommandExecutor
    credentials: CredentialBindings
    cancel_token: CancellationToken
    timeout_seconds: float
    artifacts: Mapping[str, Artifact] = field(default_factory=dict)
    reports_dir: Path | None = None

    def placeholders(self) -> dict[str, str]:
        return {
            "build_number": str(self.build_number),
            "run_id": self.run_id,
            "pipeline_name": self.pipeline_name,
            "stage_name": self.stage_name,
            "workspace": str(self.workspace),
        }

    def artifact(self, name: str) -> Artifact:
        try:
            return self.artifacts[name]
        except KeyError:
            raise OperationFailure(
                f"artifact {name!r} has not been produced by an earlier stage"
            ) from None


@runtime_checkable
class Operation(Protocol):
    """Atomic unit of external work with a declared timeout and credential set."""

    @property
    def operation_id(self) -> str: ...

    @property
    def timeout_seconds(self) -> float | None: ...

    @property
    def credentials(self) -> tuple[str, ...]: ...

    async def execute(self, context: OperationContext) -> OperationResult: ...


@dataclass(frozen=True, slots=True)
class ArtifactSpec:
    """File produced by a command, identified by the digest of its content."""

    name: str
    path: str
    location: str | None = None

    def __post_init__(self) -> None:
        if not self.name.strip():
            raise ValueError("ArtifactSpec.name: must be non-empty")
        if not self.path.strip():
            raise ValueError("ArtifactSpec.path: must be non-empty")


@dataclass(frozen=True, slots=True)
class CommandOperation:
    """Run one external command; optionally fingerprint the file it produces."""

    operation_id: str
    argv: tuple[str, ...]
    timeout_seconds: float | None = None
    credentials: tuple[str, ...] = ()
    credential_env: Mapping[str, str] = field(default_factory=dict)
    env: Mapping[str, str] = field(default_factory=dict)
    cwd: str | None = None
    allowed_exit_codes: tuple[int, ...] = (0,)
    artifact: ArtifactSpec | None = None
    stdin_text: str | None = None
    variables: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.operation_id.strip():
            raise ValueError("CommandOperation.operation_id: must be non-empty")
        object.__setattr__(self, "argv", tuple(self.argv))
        object.__setattr__(self, "credentials", tuple(dict.fromkeys(self.credentials)))
        object.__setattr__(self, "allowed_exit_codes", tuple(self.allowed_exit_codes))
        object.__setattr__(self, "variables", dict(self.variables))
        if not self.argv:
            raise ValueError(f"{self.operation_id}.argv: must contain at least one item")
        if self.timeout_seconds is not None and self.timeout_seconds <= 0:
            raise ValueError(f"{self.operation_id}.timeout_seconds: must be > 0")
        unknown = sorted(set(self.credential_env) - set(self.credentials))
        if unknown:
            raise ValueError(
                f"{self.operation_id}.credential_env: names not declared as credentials: "
                + ", ".join(unknown)
            )
        recognized = RUNTIME_PLACEHOLDERS | set(self.variables)
        templates = [*self.argv, *self.env.values()]
        if self.cwd is not None:
            templates.append(self.cwd)
        if self.artifact is not None:
            templates.append(self.artifact.path)
            if self.artifact.location is not None:
                templates.append(self.artifact.location)
        for template in templates:
            for placeholder in template_fields(template):
                if placeholder not in recognized:
                    raise ValueError(
                        f"{self.operation_id}: unknown placeholder {{{placeholder}}}"
                    )

    async def execute(self, context: OperationContext) -> OperationResult:
        values = {**self.variables, **context.placeholders()}
        argv = tuple(item.format_map(values) for item in self.argv)
        env = {key: value.format_map(values) for key, value in self.env.items()}
        env.update(context.credentials.as_env(self.credential_env))
        cwd = context.workspace
        if self.cwd is not None:
            cwd = resolve_within(context.workspace, self.cwd.format_map(values))

        spec = CommandSpec(
            argv=argv,
            cwd=str(cwd),
            env=env,
            stdin_text=self.stdin_text,
            timeout_seconds=context.timeout_seconds,
            allowed_exit_codes=self.allowed_exit_codes,
        )
        logger.info(
            "operation_command_started",
            operation_id=self.operation_id,
            program=spec.program,
        )
        result = await context.executor.execute(spec, context.timeout_seconds)
        if not result.is_success(spec):
            raise OperationFailure(
                result.describe(),
                operation_id=self.operation_id,
                exit_code=result.exit_code,
                timed_out=result.timed_out,
                output=result.output,
            )

        artifact = None
        if self.artifact is not None:
            artifact = self._fingerprint(self.artifact, context, values, result.output)
        return OperationResult(
            operation_id=self.operation_id,
            succeeded=True,
            exit_code=result.exit_code,
            output=result.output,
            duration_ms=result.duration_ms,
            artifact=artifact,
        )

    def _fingerprint(
        self,
        artifact_spec: ArtifactSpec,
        context: OperationContext,
        values: Mapping[str, str],
        output: str,
    ) -> Artifact:
        path = resolve_within(context.workspace, artifact_spec.path.format_map(values))
        if not path.is_file():
            raise OperationFailure(
                f"expected artifact {artifact_spec.name!r} at {path} was not produced",
                operation_id=self.operation_id,
                output=output,
            )
        location = str(path)
        if artifact_spec.location is not None:
            location = artifact_spec.location.format_map(values)
        return Artifact(name=artifact_spec.name, digest=content_digest(path), location=location)


OperationBody = Callable[["OperationContext"], Awaitable["OperationResult | None"]]


@dataclass(frozen=True, slots=True)
class CallableOperation:
    """Adapt an async function into an operation."""

    operation_id: str
    body: OperationBody
    timeout_seconds: float | None = None
    credentials: tuple[str, ...] = ()

    async def execute(self, context: OperationContext) -> OperationResult:
        result = await self.body(context)
        if result is None:
            return OperationResult(operation_id=self.operation_id, succeeded=True)
        return result


@dataclass(frozen=True, slots=True)
class ArchiveReportsOperation:
    """Copy files matching ``pattern`` into the run's report directory."""

    operation_id: str
    pattern: str
    destination: str = "archive"
    allow_empty: bool = True
    timeout_seconds: float | None = None
    credentials: tuple[str, ...] = ()

    async def execute(self, context: OperationContext) -> OperationResult:
        matches = collect_matching(context.workspace, self.pattern)
        if not matches and not self.allow_empty:
            raise OperationFailure(
                f"no files matched {self.pattern!r}",
                operation_id=self.operation_id,
            )
        reports_root = context.reports_dir or (context.workspace / "reports")
        target = reports_root / context.run_id / self.destination
        copied = copy_into(matches, target, root=context.workspace)
        return OperationResult(
            operation_id=self.operation_id,
            succeeded=True,
            output=f"archived {len(copied)} file(s) matching {self.pattern!r} to {target}",
        )


def template_fields(template: str) -> set[str]:
    """Return top-level placeholder names in a ``str.format`` template."""

    names: set[str] = set()
    try:
        parsed = list(_FORMATTER.parse(template))
    except ValueError as exc:
        raise ValueError(f"malformed template {template!r}: {exc}") from exc
    for _, field_name, _, _ in parsed:
        if field_name is None:
            continue
        if not field_name or field_name.isdigit():
            raise ValueError(f"positional placeholder in template {template!r}")
        names.add(field_name.split(".", 1)[0].split("[", 1)[0])
    return names


__all__ = [
    "RUNTIME_PLACEHOLDERS",
    "ArchiveReportsOperation",
    "ArtifactSpec",
    "CallableOperation",
    "CommandOperation",
    "Operation",
    "OperationBody",
    "OperationContext",
    "template_fields",
]
