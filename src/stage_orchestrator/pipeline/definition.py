"""
stage-orchestrator — pipeline definitions

File: src/stage_orchestrator/pipeline/definition.py

Purpose
- Load an ordered pipeline (stages, operations, post blocks) from YAML.

Normative behavior
- Stage order follows document order, starting at 1.
- Unknown keys are rejected at every level with a dotted path in the message.
- Operation kinds are mutually exclusive: ``argv`` (command), ``archive``
  (report archiving), ``publish`` (tag and push an artifact) and
  ``quality_gate`` (submit analysis and wait for a verdict).
- Post blocks are keyed ``always``, ``success`` and ``failure``.

Example
    name: service
    variables: {image: registry.local/service}
    stages:
      - name: test
        operations:
          - id: unit
            argv: [mvn, -B, test]
            timeout: 600
        post:
          always:
            - id: archive-tests
              archive: target/surefire-reports/*.xml
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Final

import yaml

from stage_orchestrator.domain.models import Condition, PostAction, Stage
from stage_orchestrator.engine.operations import (
    RUNTIME_PLACEHOLDERS,
    ArchiveReportsOperation,
    ArtifactSpec,
    CommandOperation,
    Operation,
    OperationContext,
    template_fields,
)
from stage_orchestrator.quality.gate import (
    CommandAnalysisServer,
    QualityGateOperation,
    QualityGatePolicy,
)
from stage_orchestrator.versioning.tags import (
    REGISTRY_PLACEHOLDERS,
    CommandArtifactRegistry,
    PublishOperation,
)

_ROOT_KEYS: Final[frozenset[str]] = frozenset({"name", "variables", "stages"})
_STAGE_KEYS: Final[frozenset[str]] = frozenset(
    {"name", "best_effort", "parallel", "operations", "post"}
)
_COMMON_OPERATION_KEYS: Final[frozenset[str]] = frozenset(
    {"id", "timeout", "credentials", "credential_env"}
)
_KIND_KEYS: Final[dict[str, frozenset[str]]] = {
    "argv": frozenset({"env", "cwd", "allowed_exit_codes", "artifact", "stdin"}),
    "archive": frozenset({"destination", "allow_empty"}),
    "publish": frozenset(),
    "quality_gate": frozenset(),
}
_ARTIFACT_KEYS: Final[frozenset[str]] = frozenset({"name", "path", "location"})
_PUBLISH_KEYS: Final[frozenset[str]] = frozenset({"artifact", "push", "tag"})
_GATE_KEYS: Final[frozenset[str]] = frozenset(
    {"project_key", "submit", "query", "source_ref", "timeout", "poll_interval", "fail_on_warn"}
)
_POST_KEYS: Final[dict[str, Condition]] = {
    "always": Condition.ALWAYS,
    "success": Condition.SUCCESS,
    "failure": Condition.FAILURE,
}


class PipelineDefinitionError(ValueError):
    """Raised when a pipeline definition is malformed."""


@dataclass(frozen=True, slots=True)
class PipelineDefinition:
    """Named, ordered stage list."""

    name: str
    stages: tuple[Stage, ...]
    variables: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "stages", tuple(self.stages))
        names = [stage.name for stage in self.stages]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise PipelineDefinitionError(f"duplicate stage name(s): {', '.join(duplicates)}")

    @property
    def stage_names(self) -> tuple[str, ...]:
        return tuple(stage.name for stage in self.stages)


def load_definition(path: str | Path) -> PipelineDefinition:
    source = Path(path)
    try:
        text = source.read_text(encoding="utf-8")
    except OSError as exc:
        raise PipelineDefinitionError(f"unable to read pipeline definition {source}: {exc}") from exc
    return parse_definition(text, source=str(source))


def parse_definition(text: str, *, source: str = "<string>") -> PipelineDefinition:
    try:
        payload = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise PipelineDefinitionError(f"invalid YAML in {source}: {exc}") from exc
    return build_definition(payload)


def build_definition(payload: object) -> PipelineDefinition:
    root = _mapping(payload, "<root>")
    _reject_unknown(root, _ROOT_KEYS, "")
    name = _string(root.get("name"), "name")
    variables = _string_map(root.get("variables", {}), "variables")
    raw_stages = root.get("stages")
    if not isinstance(raw_stages, list) or not raw_stages:
        raise PipelineDefinitionError("stages: expected a non-empty list")

    stages = [
        _build_stage(raw, f"stages[{index}]", order=index + 1, variables=variables)
        for index, raw in enumerate(raw_stages)
    ]
    return PipelineDefinition(name=name, stages=tuple(stages), variables=variables)


def _build_stage(
    payload: object, path: str, *, order: int, variables: Mapping[str, str]
) -> Stage:
    raw = _mapping(payload, path)
    _reject_unknown(raw, _STAGE_KEYS, path)
    name = _string(raw.get("name"), f"{path}.name")
    operations = _build_operations(raw.get("operations", []), f"{path}.operations", variables)

    post_actions: list[PostAction] = []
    post = _mapping(raw.get("post", {}), f"{path}.post")
    _reject_unknown(post, frozenset(_POST_KEYS), f"{path}.post")
    for key, condition in _POST_KEYS.items():
        if key not in post:
            continue
        for operation in _build_operations(post[key], f"{path}.post.{key}", variables):
            post_actions.append(PostAction(condition=condition, operation=operation))

    try:
        return Stage(
            name=name,
            order=order,
            operations=tuple(operations),
            post_actions=tuple(post_actions),
            best_effort=_bool(raw.get("best_effort", False), f"{path}.best_effort"),
            parallel=_bool(raw.get("parallel", False), f"{path}.parallel"),
        )
    except ValueError as exc:
        raise PipelineDefinitionError(f"{path}: {exc}") from exc


def _build_operations(
    payload: object, path: str, variables: Mapping[str, str]
) -> list[Operation]:
    if not isinstance(payload, list):
        raise PipelineDefinitionError(f"{path}: expected a list of operations")
    return [
        _build_operation(item, f"{path}[{index}]", variables)
        for index, item in enumerate(payload)
    ]


def _build_operation(payload: object, path: str, variables: Mapping[str, str]) -> Operation:
    raw = _mapping(payload, path)
    kinds = [kind for kind in _KIND_KEYS if kind in raw]
    if len(kinds) != 1:
        raise PipelineDefinitionError(
            f"{path}: expected exactly one of {', '.join(_KIND_KEYS)}"
        )
    kind = kinds[0]
    _reject_unknown(raw, _COMMON_OPERATION_KEYS | _KIND_KEYS[kind] | {kind}, path)

    operation_id = _string(raw.get("id"), f"{path}.id")
    timeout = _optional_seconds(raw.get("timeout"), f"{path}.timeout")
    credentials = tuple(_string_list(raw.get("credentials", []), f"{path}.credentials"))
    credential_env = _string_map(raw.get("credential_env", {}), f"{path}.credential_env")

    try:
        if kind == "argv":
            return _command_operation(
                raw, path, operation_id, timeout, credentials, credential_env, variables
            )
        if kind == "archive":
            return ArchiveReportsOperation(
                operation_id=operation_id,
                pattern=_string(raw["archive"], f"{path}.archive"),
                destination=_string(raw.get("destination", "archive"), f"{path}.destination"),
                allow_empty=_bool(raw.get("allow_empty", True), f"{path}.allow_empty"),
                timeout_seconds=timeout,
            )
        if kind == "publish":
            return _publish_operation(
                raw["publish"], f"{path}.publish", operation_id, timeout, credentials,
                credential_env, variables,
            )
        return _gate_operation(
            raw["quality_gate"], f"{path}.quality_gate", operation_id, timeout, credentials,
            credential_env,
        )
    except PipelineDefinitionError:
        raise
    except ValueError as exc:
        raise PipelineDefinitionError(f"{path}: {exc}") from exc


def _command_operation(
    raw: Mapping[str, Any],
    path: str,
    operation_id: str,
    timeout: float | None,
    credentials: tuple[str, ...],
    credential_env: Mapping[str, str],
    variables: Mapping[str, str],
) -> CommandOperation:
    artifact = None
    if "artifact" in raw:
        artifact_raw = _mapping(raw["artifact"], f"{path}.artifact")
        _reject_unknown(artifact_raw, _ARTIFACT_KEYS, f"{path}.artifact")
        location = artifact_raw.get("location")
        artifact = ArtifactSpec(
            name=_string(artifact_raw.get("name"), f"{path}.artifact.name"),
            path=_string(artifact_raw.get("path"), f"{path}.artifact.path"),
            location=_string(location, f"{path}.artifact.location") if location is not None else None,
        )
    cwd = raw.get("cwd")
    stdin = raw.get("stdin")
    exit_codes = raw.get("allowed_exit_codes", [0])
    if not isinstance(exit_codes, list) or not all(
        isinstance(code, int) and not isinstance(code, bool) for code in exit_codes
    ):
        raise PipelineDefinitionError(f"{path}.allowed_exit_codes: expected a list of integers")
    return CommandOperation(
        operation_id=operation_id,
        argv=tuple(_string_list(raw["argv"], f"{path}.argv")),
        timeout_seconds=timeout,
        credentials=credentials,
        credential_env=credential_env,
        env=_string_map(raw.get("env", {}), f"{path}.env"),
        cwd=_string(cwd, f"{path}.cwd") if cwd is not None else None,
        allowed_exit_codes=tuple(exit_codes),
        artifact=artifact,
        stdin_text=_string(stdin, f"{path}.stdin") if stdin is not None else None,
        variables=variables,
    )


def _publish_operation(
    payload: object,
    path: str,
    operation_id: str,
    timeout: float | None,
    credentials: tuple[str, ...],
    credential_env: Mapping[str, str],
    variables: Mapping[str, str],
) -> PublishOperation:
    raw = _mapping(payload, path)
    _reject_unknown(raw, _PUBLISH_KEYS, path)
    push_argv = tuple(_string_list(raw.get("push"), f"{path}.push"))
    tag_argv = tuple(_string_list(raw["tag"], f"{path}.tag")) if "tag" in raw else None
    recognized = RUNTIME_PLACEHOLDERS | REGISTRY_PLACEHOLDERS | set(variables)
    for template in (*push_argv, *(tag_argv or ())):
        unknown = template_fields(template) - recognized
        if unknown:
            raise PipelineDefinitionError(f"{path}: unknown placeholder {{{sorted(unknown)[0]}}}")
    credential_names = dict(credential_env)

    def registry_factory(context: OperationContext) -> CommandArtifactRegistry:
        return CommandArtifactRegistry(
            context.executor,
            push_argv=push_argv,
            tag_argv=tag_argv,
            cwd=str(context.workspace),
            env=context.credentials.as_env(credential_names),
            timeout_seconds=context.timeout_seconds,
            variables={**variables, **context.placeholders()},
        )

    return PublishOperation(
        operation_id=operation_id,
        artifact_name=_string(raw.get("artifact"), f"{path}.artifact"),
        registry_factory=registry_factory,
        timeout_seconds=timeout,
        credentials=credentials,
    )


def _gate_operation(
    payload: object,
    path: str,
    operation_id: str,
    timeout: float | None,
    credentials: tuple[str, ...],
    credential_env: Mapping[str, str],
) -> QualityGateOperation:
    raw = _mapping(payload, path)
    _reject_unknown(raw, _GATE_KEYS, path)
    submit_argv = tuple(_string_list(raw.get("submit"), f"{path}.submit"))
    query_argv = tuple(_string_list(raw.get("query"), f"{path}.query"))
    credential_names = dict(credential_env)

    def server_factory(context: OperationContext) -> CommandAnalysisServer:
        return CommandAnalysisServer(
            context.executor,
            submit_argv=submit_argv,
            query_argv=query_argv,
            cwd=str(context.workspace),
            env=context.credentials.as_env(credential_names),
        )

    extra: dict[str, Any] = {}
    if "source_ref" in raw:
        extra["source_ref"] = _string(raw["source_ref"], f"{path}.source_ref")
    if "timeout" in raw:
        extra["gate_timeout_seconds"] = _optional_seconds(raw["timeout"], f"{path}.timeout")
    if "poll_interval" in raw:
        extra["poll_interval_seconds"] = _optional_seconds(
            raw["poll_interval"], f"{path}.poll_interval"
        )
    return QualityGateOperation(
        operation_id=operation_id,
        server_factory=server_factory,
        project_key=_string(raw.get("project_key"), f"{path}.project_key"),
        policy=QualityGatePolicy(
            fail_on_warn=_bool(raw.get("fail_on_warn", True), f"{path}.fail_on_warn")
        ),
        timeout_seconds=timeout,
        credentials=credentials,
        **extra,
    )


def _mapping(value: object, path: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise PipelineDefinitionError(f"{path}: expected a mapping, got {type(value).__name__}")
    for key in value:
        if not isinstance(key, str):
            raise PipelineDefinitionError(f"{path}: keys must be strings")
    return value


def _reject_unknown(payload: Mapping[str, Any], allowed: frozenset[str], path: str) -> None:
    unknown = sorted(set(payload) - allowed)
    if unknown:
        where = f"{path}." if path else ""
        raise PipelineDefinitionError(f"{where}{unknown[0]}: unknown field")


def _string(value: object, path: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise PipelineDefinitionError(f"{path}: expected a non-empty string")
    return value


def _bool(value: object, path: str) -> bool:
    if not isinstance(value, bool):
        raise PipelineDefinitionError(f"{path}: expected a boolean")
    return value


def _optional_seconds(value: object, path: str) -> float | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise PipelineDefinitionError(f"{path}: expected a positive number of seconds")
    return float(value)


def _string_list(value: object, path: str) -> list[str]:
    if not isinstance(value, list):
        raise PipelineDefinitionError(f"{path}: expected a list of strings")
    return [_string(item, f"{path}[{index}]") for index, item in enumerate(value)]


def _string_map(value: object, path: str) -> dict[str, str]:
    raw = _mapping(value, path)
    out: dict[str, str] = {}
    for key, item in raw.items():
        if isinstance(item, bool) or not isinstance(item, (str, int, float)):
            raise PipelineDefinitionError(f"{path}.{key}: expected a scalar value")
        out[key] = str(item)
    return out


__all__ = [
    "PipelineDefinition",
    "PipelineDefinitionError",
    "build_definition",
    "load_definition",
    "parse_definition",
]
