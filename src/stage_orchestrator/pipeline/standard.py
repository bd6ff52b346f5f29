"""
stage-orchestrator — built-in stage catalog

File: src/stage_orchestrator/pipeline/standard.py

Purpose
- Assemble the canonical delivery chain from the typed configuration:
  test -> quality gate -> filesystem scan -> build -> publish -> image build
  -> image scan -> image push -> deploy.

Normative behavior
- Scan reports are written to well-known workspace-relative paths.
- The test stage archives its reports in an ``always`` post-action, so they
  survive a failing test run.
- The quality gate stage is omitted when ``quality_gate.enabled`` is false.
- Image tagging runs as part of the push stage, numeric tag before ``latest``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Final

from stage_orchestrator.constants import (
    FS_SCAN_REPORT,
    IMAGE_ID_FILE,
    IMAGE_SCAN_REPORT,
    TEST_REPORTS_GLOB,
)
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
from stage_orchestrator.pipeline.definition import PipelineDefinition
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

if TYPE_CHECKING:
    from stage_orchestrator.config.schema import OrchestratorConfig

PACKAGE_ARTIFACT: Final[str] = "package"
IMAGE_ARTIFACT: Final[str] = "image"

STANDARD_STAGE_NAMES: Final[tuple[str, ...]] = (
    "test",
    "quality-gate",
    "fs-scan",
    "build",
    "publish",
    "image-build",
    "image-scan",
    "image-push",
    "deploy",
)


def catalog_variables(config: OrchestratorConfig) -> dict[str, str]:
    """Placeholders the catalog commands may use besides the runtime ones."""

    variables = {
        "image": config.registry.image_reference,
        "image_name": config.registry.image_name,
        "project_key": config.quality_gate.project_key,
        "fs_scan_report": str(FS_SCAN_REPORT),
        "image_scan_report": str(IMAGE_SCAN_REPORT),
    }
    if config.registry.repository_url:
        variables["repository_url"] = config.registry.repository_url
    return variables


def build_standard_pipeline(config: OrchestratorConfig) -> PipelineDefinition:
    variables = catalog_variables(config)
    commands = config.commands
    registry = config.registry
    credential_env = dict(config.credentials)

    def command(
        operation_id: str,
        argv: tuple[str, ...],
        *,
        credential: str | None = None,
        artifact: ArtifactSpec | None = None,
    ) -> CommandOperation:
        credentials = (credential,) if credential else ()
        return CommandOperation(
            operation_id=operation_id,
            argv=argv,
            credentials=credentials,
            credential_env={name: credential_env[name] for name in credentials},
            artifact=artifact,
            variables=variables,
        )

    stage_bodies: list[tuple[str, tuple[Operation, ...], tuple[PostAction, ...]]] = [
        (
            "test",
            (command("unit-tests", commands.test),),
            (
                PostAction(
                    condition=Condition.ALWAYS,
                    operation=ArchiveReportsOperation(
                        operation_id="archive-test-reports",
                        pattern=TEST_REPORTS_GLOB,
                        destination="test-reports",
                    ),
                ),
            ),
        ),
    ]
    if config.quality_gate.enabled:
        stage_bodies.append(("quality-gate", (_quality_gate_operation(config),), ()))
    stage_bodies.extend(
        [
            ("fs-scan", (command("fs-scan", commands.fs_scan),), ()),
            (
                "build",
                (
                    command(
                        "package",
                        commands.build,
                        artifact=ArtifactSpec(name=PACKAGE_ARTIFACT, path=commands.artifact_path),
                    ),
                ),
                (),
            ),
            (
                "publish",
                (
                    _publish_operation(
                        "publish-package",
                        PACKAGE_ARTIFACT,
                        push_argv=registry.push_command,
                        tag_argv=None,
                        credential=registry.repository_credential,
                        credential_env=credential_env,
                        variables=variables,
                    ),
                ),
                (),
            ),
            (
                "image-build",
                (
                    command(
                        "image-build",
                        registry.image_build_command,
                        credential=registry.image_credential,
                        artifact=ArtifactSpec(
                            name=IMAGE_ARTIFACT,
                            path=str(IMAGE_ID_FILE),
                            location=registry.image_reference,
                        ),
                    ),
                ),
                (),
            ),
            ("image-scan", (command("image-scan", commands.image_scan),), ()),
            (
                "image-push",
                (
                    _publish_operation(
                        "image-push",
                        IMAGE_ARTIFACT,
                        push_argv=registry.image_push_command,
                        tag_argv=registry.image_tag_command,
                        credential=registry.image_credential,
                        credential_env=credential_env,
                        variables=variables,
                    ),
                ),
                (),
            ),
            (
                "deploy",
                (command("deploy", commands.deploy, credential=commands.deploy_credential),),
                (),
            ),
        ]
    )

    stages = tuple(
        Stage(name=name, order=index + 1, operations=operations, post_actions=post_actions)
        for index, (name, operations, post_actions) in enumerate(stage_bodies)
    )
    return PipelineDefinition(name=config.pipeline.name, stages=stages, variables=variables)


def _quality_gate_operation(config: OrchestratorConfig) -> QualityGateOperation:
    gate = config.quality_gate
    credentials = (gate.credential,) if gate.credential else ()
    credential_env = {name: config.credentials[name] for name in credentials}

    def server_factory(context: OperationContext) -> CommandAnalysisServer:
        return CommandAnalysisServer(
            context.executor,
            submit_argv=gate.submit_command,
            query_argv=gate.query_command,
            cwd=str(context.workspace),
            env=context.credentials.as_env(credential_env),
        )

    return QualityGateOperation(
        operation_id="quality-gate",
        server_factory=server_factory,
        project_key=gate.project_key,
        gate_timeout_seconds=gate.timeout_seconds,
        poll_interval_seconds=gate.poll_interval_seconds,
        policy=QualityGatePolicy(fail_on_warn=gate.fail_on_warn),
        credentials=credentials,
    )


def _publish_operation(
    operation_id: str,
    artifact_name: str,
    *,
    push_argv: tuple[str, ...],
    tag_argv: tuple[str, ...] | None,
    credential: str | None,
    credential_env: dict[str, str],
    variables: dict[str, str],
) -> PublishOperation:
    credentials = (credential,) if credential else ()
    names = {name: credential_env[name] for name in credentials}
    recognized = RUNTIME_PLACEHOLDERS | REGISTRY_PLACEHOLDERS | set(variables)
    for template in (*push_argv, *(tag_argv or ())):
        unknown = template_fields(template) - recognized
        if unknown:
            raise ValueError(f"{operation_id}: unknown placeholder {{{sorted(unknown)[0]}}}")

    def registry_factory(context: OperationContext) -> CommandArtifactRegistry:
        return CommandArtifactRegistry(
            context.executor,
            push_argv=push_argv,
            tag_argv=tag_argv,
            cwd=str(context.workspace),
            env=context.credentials.as_env(names),
            timeout_seconds=context.timeout_seconds,
            variables={**variables, **context.placeholders()},
        )

    return PublishOperation(
        operation_id=operation_id,
        artifact_name=artifact_name,
        registry_factory=registry_factory,
        credentials=credentials,
    )


__all__ = [
    "IMAGE_ARTIFACT",
    "PACKAGE_ARTIFACT",
    "STANDARD_STAGE_NAMES",
    "build_standard_pipeline",
    "catalog_variables",
]
