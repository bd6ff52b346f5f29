"""
stage-orchestrator — quality gate waiter

File: src/stage_orchestrator/quality/gate.py

Purpose
- Submit source for static analysis and wait for the analysis server's gate
  verdict before the pipeline may progress.

Normative behavior
- ``QualityGateWaiter.await_verdict`` polls at a fixed interval and returns a
  TIMEOUT verdict once ``deadline`` passes without a terminal verdict. It never
  polls past its own deadline; retrying is the caller's business.
- The gate operation treats every verdict other than OK as failure. WARN is
  accepted only when ``QualityGatePolicy.fail_on_warn`` is false.
- The gate window (``gate_timeout_seconds``) starts when the operation starts
  and covers submission as well as polling. The operation timeout is never
  shorter than the window, so a missing verdict always surfaces as TIMEOUT.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Final, Protocol, runtime_checkable

import structlog

from stage_orchestrator.constants import (
    DEFAULT_GATE_POLL_INTERVAL_SECONDS,
    DEFAULT_GATE_TIMEOUT_SECONDS,
)
from stage_orchestrator.domain.errors import GateFailure, OperationFailure
from stage_orchestrator.domain.models import GateVerdict, OperationResult, QualityGateResult
from stage_orchestrator.execution.command import CommandSpec

if TYPE_CHECKING:
    from stage_orchestrator.engine.operations import OperationContext
    from stage_orchestrator.execution.command import CommandExecutor

logger = structlog.get_logger(__name__)

Clock = Callable[[], float]
Sleeper = Callable[[float], Awaitable[None]]

PENDING_WORDS: Final[frozenset[str]] = frozenset({"PENDING", "IN_PROGRESS", "NONE", "QUEUED"})


@runtime_checkable
class AnalysisServer(Protocol):
    """External static-analysis system."""

    async def submit(self, source_ref: str, project_key: str) -> str:
        """Start an analysis and return the correlation id of the submission."""
        ...

    async def query_verdict(self, correlation_id: str) -> QualityGateResult | None:
        """Return the verdict, or ``None`` while the analysis is still in progress."""
        ...


class CommandAnalysisServer:
    """Analysis server reached through two external commands.

    The submit command prints the correlation id on its last non-empty line.
    The query command prints one of OK, WARN, ERROR, or a pending word such as
    PENDING / IN_PROGRESS on its last non-empty line.
    """

    def __init__(
        self,
        executor: CommandExecutor,
        *,
        submit_argv: tuple[str, ...],
        query_argv: tuple[str, ...],
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
        command_timeout_seconds: float | None = None,
    ) -> None:
        self._executor = executor
        self._submit_argv = tuple(submit_argv)
        self._query_argv = tuple(query_argv)
        self._cwd = cwd
        self._env = dict(env or {})
        self._command_timeout_seconds = command_timeout_seconds

    async def submit(self, source_ref: str, project_key: str) -> str:
        values = {"source_ref": source_ref, "project_key": project_key}
        output = await self._run(self._submit_argv, values, purpose="submit")
        correlation_id = _last_line(output)
        if not correlation_id:
            raise OperationFailure(
                "analysis submission printed no correlation id",
                operation_id="analysis-submit",
                output=output,
            )
        return correlation_id

    async def query_verdict(self, correlation_id: str) -> QualityGateResult | None:
        output = await self._run(
            self._query_argv, {"correlation_id": correlation_id}, purpose="query"
        )
        word = _last_line(output).upper()
        if word in PENDING_WORDS or not word:
            return None
        try:
            verdict = GateVerdict(word)
        except ValueError:
            raise OperationFailure(
                f"analysis server reported unrecognized verdict {word!r}",
                operation_id="analysis-query",
                output=output,
            ) from None
        if not verdict.is_terminal:
            return None
        return QualityGateResult(verdict=verdict, correlation_id=correlation_id)

    async def _run(
        self,
        argv_template: tuple[str, ...],
        values: Mapping[str, str],
        *,
        purpose: str,
    ) -> str:
        spec = CommandSpec(
            argv=tuple(item.format_map(values) for item in argv_template),
            cwd=self._cwd,
            env=self._env,
            timeout_seconds=self._command_timeout_seconds,
        )
        result = await self._executor.execute(spec, self._command_timeout_seconds)
        if not result.is_success(spec):
            raise OperationFailure(
                f"analysis {purpose} failed: {result.describe()}",
                operation_id=f"analysis-{purpose}",
                exit_code=result.exit_code,
                timed_out=result.timed_out,
                output=result.output,
            )
        return result.output


@dataclass(frozen=True, slots=True)
class QualityGatePolicy:
    """Which verdicts let the pipeline progress."""

    fail_on_warn: bool = True

    def accepts(self, verdict: GateVerdict) -> bool:
        if verdict is GateVerdict.OK:
            return True
        if verdict is GateVerdict.WARN:
            return not self.fail_on_warn
        return False


class QualityGateWaiter:
    """Poll an analysis server until a terminal verdict or the deadline."""

    def __init__(
        self,
        server: AnalysisServer,
        *,
        poll_interval_seconds: float = DEFAULT_GATE_POLL_INTERVAL_SECONDS,
        clock: Clock = time.monotonic,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        if poll_interval_seconds <= 0:
            raise ValueError("poll_interval_seconds must be > 0")
        self._server = server
        self._poll_interval_seconds = float(poll_interval_seconds)
        self._clock = clock
        self._sleep = sleep

    def deadline_after(self, timeout_seconds: float) -> float:
        return self._clock() + timeout_seconds

    async def await_verdict(self, correlation_id: str, deadline: float) -> QualityGateResult:
        """Return the first terminal verdict for ``correlation_id`` seen before ``deadline``.

        ``deadline`` is expressed on this waiter's clock (``time.monotonic`` by
        default). A query still in flight when the deadline passes is cancelled.
        """

        polls = 0
        while True:
            remaining = deadline - self._clock()
            if remaining <= 0:
                break
            polls += 1
            try:
                result = await asyncio.wait_for(
                    self._server.query_verdict(correlation_id), timeout=remaining
                )
            except TimeoutError:
                break
            if result is not None and result.verdict.is_terminal:
                logger.info(
                    "quality_gate_verdict",
                    correlation_id=correlation_id,
                    verdict=result.verdict.value,
                    polls=polls,
                )
                return result
            remaining = deadline - self._clock()
            if remaining <= 0:
                break
            await self._sleep(min(self._poll_interval_seconds, remaining))

        logger.warning("quality_gate_timeout", correlation_id=correlation_id, polls=polls)
        return QualityGateResult(
            verdict=GateVerdict.TIMEOUT,
            correlation_id=correlation_id,
            details=f"no terminal verdict after {polls} poll(s)",
        )


ServerFactory = Callable[["OperationContext"], AnalysisServer]


@dataclass(frozen=True, slots=True)
class QualityGateOperation:
    """Submit an analysis, wait for its verdict, fail the stage unless accepted."""

    operation_id: str
    server_factory: ServerFactory
    project_key: str
    source_ref: str = "{workspace}"
    gate_timeout_seconds: float = DEFAULT_GATE_TIMEOUT_SECONDS
    poll_interval_seconds: float = DEFAULT_GATE_POLL_INTERVAL_SECONDS
    policy: QualityGatePolicy = field(default_factory=QualityGatePolicy)
    timeout_seconds: float | None = None
    credentials: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if not self.project_key.strip():
            raise ValueError(f"{self.operation_id}.project_key: must be non-empty")
        if self.gate_timeout_seconds <= 0:
            raise ValueError(f"{self.operation_id}.gate_timeout_seconds: must be > 0")
        if self.timeout_seconds is None:
            object.__setattr__(self, "timeout_seconds", float(self.gate_timeout_seconds))
        elif self.timeout_seconds < self.gate_timeout_seconds:
            raise ValueError(
                f"{self.operation_id}.timeout_seconds: must be >= gate_timeout_seconds "
                f"({self.gate_timeout_seconds:g})"
            )
        object.__setattr__(self, "credentials", tuple(self.credentials))

    async def execute(self, context: OperationContext) -> OperationResult:
        started = time.monotonic()
        deadline = started + self.gate_timeout_seconds
        server = self.server_factory(context)
        source_ref = self.source_ref.format_map(context.placeholders())
        try:
            correlation_id = await asyncio.wait_for(
                server.submit(source_ref, self.project_key),
                timeout=max(deadline - time.monotonic(), 0.0),
            )
        except TimeoutError as exc:
            logger.warning(
                "quality_gate_submit_timeout",
                operation_id=self.operation_id,
                project_key=self.project_key,
            )
            raise GateFailure(
                f"quality gate verdict {GateVerdict.TIMEOUT.value} for {self.project_key}: "
                "analysis submission did not finish",
                verdict=GateVerdict.TIMEOUT.value,
            ) from exc
        logger.info(
            "quality_gate_submitted",
            operation_id=self.operation_id,
            project_key=self.project_key,
            correlation_id=correlation_id,
        )

        waiter = QualityGateWaiter(server, poll_interval_seconds=self.poll_interval_seconds)
        result = await waiter.await_verdict(correlation_id, deadline)
        if not self.policy.accepts(result.verdict):
            raise GateFailure(
                f"quality gate verdict {result.verdict.value} for {self.project_key}",
                verdict=result.verdict.value,
                correlation_id=correlation_id,
            )
        return OperationResult(
            operation_id=self.operation_id,
            succeeded=True,
            output=f"quality gate {result.verdict.value} ({correlation_id})",
            duration_ms=int((time.monotonic() - started) * 1000),
            gate_result=result,
        )


def _last_line(text: str) -> str:
    for line in reversed(text.splitlines()):
        stripped = line.strip()
        if stripped:
            return stripped
    return ""


__all__ = [
    "PENDING_WORDS",
    "AnalysisServer",
    "CommandAnalysisServer",
    "QualityGateOperation",
    "QualityGatePolicy",
    "QualityGateWaiter",
    "ServerFactory",
]
