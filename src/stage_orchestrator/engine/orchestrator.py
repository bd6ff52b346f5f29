"""
stage-orchestrator — pipeline controller

File: src/stage_orchestrator/engine/orchestrator.py

Purpose
- Wire the configured collaborators together and drive one run end to end:
  claim the build number, execute the stage graph, run post-execution hooks
  and persist the run report.

Normative behavior
- A build number is claimed before any stage runs; a reused number aborts the
  run before it starts.
- Credential source variables are withheld from every child process unless an
  operation's scope injects them explicitly.
- Every value a credential scope resolves is masked in captured output and in
  the report for the rest of the run.
- The report is written atomically to ``<reports_dir>/<run_id>.json`` after
  hooks have run, whatever the outcome.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

from stage_orchestrator.credentials.scope import (
    CredentialProvider,
    CredentialScopeManager,
    EnvCredentialProvider,
)
from stage_orchestrator.domain.ids import generate_run_id
from stage_orchestrator.domain.models import Condition, RunReport, RunState
from stage_orchestrator.engine.executor import StageGraphExecutor
from stage_orchestrator.engine.hooks import HookFunction, HookRunner
from stage_orchestrator.execution.command import CommandExecutor, LocalSubprocessExecutor
from stage_orchestrator.notify.dispatcher import (
    CommandTransport,
    LogTransport,
    NotificationDispatcher,
    NotificationTransport,
)
from stage_orchestrator.pipeline.definition import PipelineDefinition, load_definition
from stage_orchestrator.pipeline.standard import build_standard_pipeline
from stage_orchestrator.security.redaction import SecretMasker
from stage_orchestrator.utils.concurrency import CancellationToken
from stage_orchestrator.utils.fs import atomic_write_json
from stage_orchestrator.versioning.tags import BuildNumberLedger

if TYPE_CHECKING:
    from stage_orchestrator.config.schema import OrchestratorConfig

logger = structlog.get_logger(__name__)

NOTIFICATION_HOOK_NAME = "notify"


@dataclass(frozen=True, slots=True)
class RunOutcome:
    """Terminal report plus where it was written."""

    report: RunReport
    report_path: Path


def resolve_definition(config: OrchestratorConfig) -> PipelineDefinition:
    """YAML definition when configured, otherwise the built-in catalog."""

    if config.pipeline.definition is not None:
        return load_definition(config.pipeline.definition)
    return build_standard_pipeline(config)


class PipelineController:
    """Controller coordinating ledger -> stages -> hooks -> report for one run."""

    def __init__(
        self,
        config: OrchestratorConfig,
        *,
        definition: PipelineDefinition | None = None,
        environ: Mapping[str, str] | None = None,
        credential_provider: CredentialProvider | None = None,
        command_executor: CommandExecutor | None = None,
        transport: NotificationTransport | None = None,
        ledger: BuildNumberLedger | None = None,
    ) -> None:
        self._config = config
        self._definition = definition if definition is not None else resolve_definition(config)
        self._masker = SecretMasker()
        provider = credential_provider or EnvCredentialProvider(config.credentials, environ=environ)
        self._scopes = CredentialScopeManager(provider, masker=self._masker)

        execution = config.execution
        self._command_executor = command_executor or LocalSubprocessExecutor(
            default_timeout_seconds=execution.default_timeout_seconds,
            termination_grace_seconds=execution.termination_grace_seconds,
            max_output_chars=execution.max_output_chars,
            redactor=self._masker,
            withheld_env=config.credentials.values(),
        )
        self._ledger = ledger if ledger is not None else BuildNumberLedger(config.pipeline.ledger_path)
        self._hooks = HookRunner(timeout_seconds=execution.hook_timeout_seconds)
        self._cancel_token = CancellationToken()

        notification = config.notification
        if notification.enabled:
            dispatcher = NotificationDispatcher(
                transport or self._default_transport(),
                recipients=notification.recipients,
                subject_template=notification.subject_template,
            )
            self._hooks.always(NOTIFICATION_HOOK_NAME, dispatcher)

    @property
    def definition(self) -> PipelineDefinition:
        return self._definition

    @property
    def hooks(self) -> HookRunner:
        return self._hooks

    @property
    def masker(self) -> SecretMasker:
        return self._masker

    @property
    def cancel_token(self) -> CancellationToken:
        return self._cancel_token

    def add_hook(self, condition: Condition | str, name: str, function: HookFunction) -> None:
        self._hooks.register(Condition(condition), name, function)

    def cancel(self, reason: str = "abort requested") -> None:
        self._cancel_token.cancel(reason)

    async def run(
        self,
        *,
        run_id: str | None = None,
        metadata: Mapping[str, str] | None = None,
    ) -> RunOutcome:
        pipeline = self._config.pipeline
        self._ledger.claim(self._definition.name, pipeline.build_number)

        state = RunState(
            run_id=run_id or generate_run_id(),
            pipeline_name=self._definition.name,
            build_number=pipeline.build_number,
            metadata={**self._default_metadata(), **dict(metadata or {})},
        )
        executor = StageGraphExecutor(
            command_executor=self._command_executor,
            credentials=self._scopes,
            workspace=pipeline.workspace,
            reports_dir=pipeline.reports_dir,
            default_timeout_seconds=self._config.execution.default_timeout_seconds,
            termination_grace_seconds=self._config.execution.termination_grace_seconds,
            max_parallel_operations=self._config.execution.max_parallel_operations,
            redactor=self._masker,
        )
        report = await executor.run(
            self._definition.stages, state=state, cancel_token=self._cancel_token
        )
        report = await self._hooks.finalize(report)

        report_path = pipeline.reports_dir / f"{report.run_id}.json"
        atomic_write_json(report_path, report.to_dict())
        logger.info(
            "run_report_written",
            run_id=report.run_id,
            outcome=report.outcome.value,
            path=str(report_path),
        )
        return RunOutcome(report=report, report_path=report_path)

    def _default_metadata(self) -> dict[str, str]:
        registry = self._config.registry
        metadata = {"image": registry.image_reference}
        if registry.repository_url:
            metadata["repository"] = registry.repository_url
        return metadata

    def _default_transport(self) -> NotificationTransport:
        notification = self._config.notification
        if notification.transport == "command":
            return CommandTransport(
                self._command_executor,
                argv=notification.command,
                sender=notification.sender,
            )
        return LogTransport()


__all__ = [
    "NOTIFICATION_HOOK_NAME",
    "PipelineController",
    "RunOutcome",
    "resolve_definition",
]
