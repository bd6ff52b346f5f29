"""
stage-orchestrator — stage graph executor

File: src/stage_orchestrator/engine/executor.py

Purpose
- Drive one pipeline run: execute stages in declared order, apply the failure
  policy, run stage post-actions and produce the terminal ``RunReport``.

Normative behavior
- Stages run strictly one after another. A ``parallel`` stage fans its
  operations out over a bounded worker pool; its result is the conjunction of
  the operation results.
- A failing non best-effort stage sets the outcome to FAILURE at once and every
  later stage is SKIPPED. A failing best-effort stage is recorded only.
- An abort (cancellation token) is observed at stage boundaries and inside
  running operations. The interrupted stage becomes ABORTED, later stages are
  SKIPPED, and the outcome becomes ABORTED unless it was already terminal.
- Post-actions for stage N run before stage N+1 starts, with their own
  cancellation token so an abort does not cut them short. Their failures land
  in the diagnostic trail and never change stage status or outcome.
- Only this module writes ``RunState``.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Mapping, Sequence
from dataclasses import replace
from pathlib import Path
from typing import TYPE_CHECKING, Final

import structlog

from stage_orchestrator.constants import (
    DEFAULT_OPERATION_TIMEOUT_SECONDS,
    DEFAULT_TERMINATION_GRACE_SECONDS,
)
from stage_orchestrator.domain.errors import (
    AbortRequested,
    CredentialResolutionFailure,
    GateFailure,
    OperationFailure,
    PipelineError,
)
from stage_orchestrator.domain.ids import generate_run_id
from stage_orchestrator.domain.models import (
    DiagnosticEntry,
    GateVerdict,
    OperationResult,
    Outcome,
    QualityGateResult,
    RunReport,
    RunState,
    Stage,
    StageRecord,
    StageStatus,
)
from stage_orchestrator.engine.operations import OperationContext
from stage_orchestrator.observability.logging import correlation_scope
from stage_orchestrator.utils.concurrency import CancellationToken, WorkerPool, run_with_timeout

if TYPE_CHECKING:
    from stage_orchestrator.credentials.scope import CredentialScopeManager
    from stage_orchestrator.engine.operations import Operation
    from stage_orchestrator.execution.command import CommandExecutor, TextRedactor

logger = structlog.get_logger(__name__)

SKIP_STOPPED_EARLY: Final[str] = "stopped_early"
SKIP_ABORTED: Final[str] = "aborted"

# Slack on top of an operation's timeout so the command executor's own
# timeout path (graceful termination) fires before the outer deadline.
_TIMEOUT_MARGIN_SECONDS: Final[float] = 1.0


class StageGraphExecutor:
    """Run an ordered sequence of stages against one ``RunState``."""

    def __init__(
        self,
        *,
        command_executor: CommandExecutor,
        credentials: CredentialScopeManager,
        workspace: Path | str = ".",
        reports_dir: Path | str | None = None,
        default_timeout_seconds: float = DEFAULT_OPERATION_TIMEOUT_SECONDS,
        termination_grace_seconds: float = DEFAULT_TERMINATION_GRACE_SECONDS,
        max_parallel_operations: int = 4,
        redactor: TextRedactor | None = None,
    ) -> None:
        if default_timeout_seconds <= 0:
            raise ValueError("default_timeout_seconds must be > 0")
        if termination_grace_seconds < 0:
            raise ValueError("termination_grace_seconds must be >= 0")
        if max_parallel_operations <= 0:
            raise ValueError("max_parallel_operations must be > 0")
        self._command_executor = command_executor
        self._credentials = credentials
        self._workspace = Path(workspace).resolve()
        self._reports_dir = Path(reports_dir) if reports_dir is not None else None
        self._default_timeout_seconds = float(default_timeout_seconds)
        self._grace_seconds = float(termination_grace_seconds)
        self._max_parallel_operations = max_parallel_operations
        self._redactor = redactor

    async def run(
        self,
        stages: Sequence[Stage],
        *,
        state: RunState | None = None,
        cancel_token: CancellationToken | None = None,
        pipeline_name: str = "pipeline",
        build_number: int = 0,
        metadata: Mapping[str, str] | None = None,
    ) -> RunReport:
        """Execute ``stages`` and return the report carrying the terminal outcome."""

        ordered = order_stages(stages)
        token = cancel_token or CancellationToken()
        run_state = state or RunState(
            run_id=generate_run_id(),
            pipeline_name=pipeline_name,
            build_number=build_number,
            metadata=dict(metadata or {}),
        )
        run_state.stages = [
            StageRecord(name=stage.name, order=stage.order, best_effort=stage.best_effort)
            for stage in ordered
        ]

        with correlation_scope(run_id=run_state.run_id):
            run_state.transition(Outcome.RUNNING)
            logger.info(
                "pipeline_run_started",
                run_id=run_state.run_id,
                pipeline=run_state.pipeline_name,
                build_number=run_state.build_number,
                stage_count=len(ordered),
            )

            halted: str | None = None
            for stage, record in zip(ordered, run_state.stages, strict=True):
                if halted is None and token.is_cancelled:
                    halted = SKIP_ABORTED
                    self._abort(run_state, stage.name, token)

                if halted is not None:
                    record.status = StageStatus.SKIPPED
                    record.skip_reason = halted
                else:
                    await self._run_stage(stage, record, run_state, token)
                    if record.status is StageStatus.ABORTED:
                        halted = SKIP_ABORTED
                        self._abort(run_state, stage.name, token)
                    elif record.status is StageStatus.FAILURE and not stage.best_effort:
                        halted = SKIP_STOPPED_EARLY
                        run_state.transition(Outcome.FAILURE)

                await self._run_post_actions(stage, record, run_state)

            if halted is None and token.is_cancelled:
                # Abort arrived during the last stage's post-actions.
                last = ordered[-1].name if ordered else run_state.pipeline_name
                self._abort(run_state, last, token)
            if run_state.outcome is Outcome.RUNNING:
                run_state.transition(Outcome.SUCCESS)
            logger.info(
                "pipeline_run_finished",
                run_id=run_state.run_id,
                outcome=run_state.outcome.value,
                duration_ms=run_state.duration_ms,
            )
        return run_state.snapshot()

    async def _run_stage(
        self,
        stage: Stage,
        record: StageRecord,
        state: RunState,
        token: CancellationToken,
    ) -> None:
        record.status = StageStatus.RUNNING
        start = time.perf_counter()
        with correlation_scope(stage=stage.name):
            logger.info("stage_started", stage=stage.name, order=stage.order)
            try:
                if stage.parallel and len(stage.operations) > 1:
                    await self._run_parallel(stage, record, state, token)
                else:
                    await self._run_sequential(stage, record, state, token)
            except asyncio.CancelledError:
                if not token.is_cancelled:
                    raise
                record.status = StageStatus.ABORTED
            else:
                succeeded = all(result.succeeded for result in record.operation_results)
                record.status = StageStatus.SUCCESS if succeeded else StageStatus.FAILURE
            record.duration_ms = _duration_ms(start)
            logger.info(
                "stage_finished",
                stage=stage.name,
                status=record.status.value,
                best_effort=stage.best_effort,
                duration_ms=record.duration_ms,
            )

    async def _run_sequential(
        self,
        stage: Stage,
        record: StageRecord,
        state: RunState,
        token: CancellationToken,
    ) -> None:
        for operation in stage.operations:
            token.raise_if_cancelled()
            result = await self._run_operation(stage, operation, state, token)
            record.operation_results.append(result)
            if not result.succeeded:
                return

    async def _run_parallel(
        self,
        stage: Stage,
        record: StageRecord,
        state: RunState,
        token: CancellationToken,
    ) -> None:
        pool: WorkerPool[OperationResult] = WorkerPool(
            max_concurrency=min(self._max_parallel_operations, len(stage.operations)),
            cancel_token=token,
        )
        results: list[OperationResult] = []
        coroutines = [
            self._run_operation(stage, operation, state, token) for operation in stage.operations
        ]
        position = {operation.operation_id: index for index, operation in enumerate(stage.operations)}
        try:
            async for result in pool.run(coroutines):
                results.append(result)
        finally:
            results.sort(key=lambda item: position[item.operation_id])
            record.operation_results.extend(results)

    async def _run_post_actions(self, stage: Stage, record: StageRecord, state: RunState) -> None:
        for post_action in stage.post_actions:
            if not post_action.condition.matches_stage(record.status):
                continue
            with correlation_scope(stage=stage.name):
                result = await self._run_operation(
                    stage,
                    post_action.operation,
                    state,
                    CancellationToken(),
                    post_action=True,
                )
            record.post_action_results.append(result)

    async def _run_operation(
        self,
        stage: Stage,
        operation: Operation,
        state: RunState,
        token: CancellationToken,
        *,
        post_action: bool = False,
    ) -> OperationResult:
        timeout = operation.timeout_seconds or self._default_timeout_seconds
        start = time.perf_counter()
        with correlation_scope(operation_id=operation.operation_id):
            try:
                async with self._credentials.scope(operation.credentials) as bindings:
                    context = OperationContext(
                        run_id=state.run_id,
                        pipeline_name=state.pipeline_name,
                        build_number=state.build_number,
                        stage_name=stage.name,
                        workspace=self._workspace,
                        executor=self._command_executor,
                        credentials=bindings,
                        cancel_token=token,
                        timeout_seconds=timeout,
                        artifacts=dict(state.artifacts),
                        reports_dir=self._reports_dir,
                    )
                    result = await run_with_timeout(
                        operation.execute(context),
                        timeout + self._grace_seconds + _TIMEOUT_MARGIN_SECONDS,
                        token,
                    )
            except AbortRequested as exc:
                token.cancel(str(exc) or "abort requested")
                raise asyncio.CancelledError(str(exc)) from exc
            except GateFailure as exc:
                gate_result = QualityGateResult(
                    verdict=_coerce_verdict(exc.verdict),
                    correlation_id=exc.correlation_id,
                    details=str(exc),
                )
                state.gate_results.append(gate_result)
                result = self._failed(
                    operation, start, kind="gate_failure", message=str(exc), gate_result=gate_result
                )
            except OperationFailure as exc:
                result = self._failed(
                    operation,
                    start,
                    kind="operation_failure",
                    message=str(exc),
                    exit_code=exc.exit_code,
                    timed_out=exc.timed_out,
                    output=exc.output,
                )
            except CredentialResolutionFailure as exc:
                result = self._failed(
                    operation, start, kind="credential_resolution_failure", message=str(exc)
                )
            except PipelineError as exc:
                result = self._failed(operation, start, kind="pipeline_error", message=str(exc))
            except TimeoutError:
                result = self._failed(
                    operation,
                    start,
                    kind="timeout",
                    message=f"operation timed out after {timeout:.3f}s",
                    timed_out=True,
                )
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                logger.exception("operation_internal_error", operation_id=operation.operation_id)
                result = self._failed(
                    operation,
                    start,
                    kind="internal_error",
                    message=f"{type(exc).__name__}: {exc}",
                )

            if result.succeeded and result.output:
                result = replace(result, output=self._redact(result.output))
            self._record(stage, result, state, post_action=post_action)
        return result

    def _record(
        self,
        stage: Stage,
        result: OperationResult,
        state: RunState,
        *,
        post_action: bool,
    ) -> None:
        if result.artifact is not None:
            state.artifacts[result.artifact.name] = result.artifact
        state.published.extend(result.published)
        if result.gate_result is not None and result.succeeded:
            state.gate_results.append(result.gate_result)
        if result.succeeded:
            return

        kind = result.error_kind or "operation_failure"
        message = result.error or f"operation {result.operation_id} failed"
        logger.warning(
            "operation_failed",
            stage=stage.name,
            operation_id=result.operation_id,
            kind=kind,
            detail=message,
            best_effort=stage.best_effort,
            post_action=post_action,
        )
        state.record_diagnostic(
            DiagnosticEntry(
                stage=stage.name,
                kind=kind,
                message=message,
                operation_id=result.operation_id,
                best_effort=stage.best_effort,
                post_action=post_action,
                output=result.output,
                verdict=result.gate_result.verdict.value if result.gate_result else None,
            )
        )

    def _failed(
        self,
        operation: Operation,
        start: float,
        *,
        kind: str,
        message: str,
        exit_code: int | None = None,
        timed_out: bool = False,
        output: str = "",
        gate_result: QualityGateResult | None = None,
    ) -> OperationResult:
        return OperationResult(
            operation_id=operation.operation_id,
            succeeded=False,
            exit_code=exit_code,
            output=self._redact(output),
            timed_out=timed_out,
            duration_ms=_duration_ms(start),
            error_kind=kind,
            error=self._redact(message),
            gate_result=gate_result,
        )

    def _abort(self, state: RunState, stage_name: str, token: CancellationToken) -> None:
        reason = token.reason or "abort requested"
        state.record_diagnostic(
            DiagnosticEntry(stage=stage_name, kind="abort_requested", message=reason)
        )
        if not state.outcome.is_terminal:
            state.transition(Outcome.ABORTED)
        logger.warning("pipeline_run_aborted", stage=stage_name, reason=reason)

    def _redact(self, text: str) -> str:
        if self._redactor is None or not text:
            return text
        return self._redactor(text)


def order_stages(stages: Sequence[Stage]) -> tuple[Stage, ...]:
    """Return ``stages`` sorted by ordinal; names and ordinals must be unique."""

    names: set[str] = set()
    orders: set[int] = set()
    for stage in stages:
        if stage.name in names:
            raise ValueError(f"duplicate stage name {stage.name!r}")
        if stage.order in orders:
            raise ValueError(f"duplicate stage order {stage.order} ({stage.name!r})")
        names.add(stage.name)
        orders.add(stage.order)
    return tuple(sorted(stages, key=lambda stage: stage.order))


def _coerce_verdict(value: str) -> GateVerdict:
    try:
        return GateVerdict(value)
    except ValueError:
        return GateVerdict.ERROR


def _duration_ms(start: float) -> int:
    return max(int(round((time.perf_counter() - start) * 1000)), 0)


__all__ = [
    "SKIP_ABORTED",
    "SKIP_STOPPED_EARLY",
    "StageGraphExecutor",
    "order_stages",
]
