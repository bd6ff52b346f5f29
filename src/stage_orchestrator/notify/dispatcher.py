"""
stage-orchestrator — notification dispatcher

File: src/stage_orchestrator/notify/dispatcher.py

Purpose
- Render one outcome message from a finished run and hand it to a transport.

Normative behavior
- Rendering reads only the terminal ``RunReport``; it never mutates run state.
- A run is announced at most once per dispatcher.
- Delivery failures are logged and surfaced as ``NotificationDeliveryError``
  to the hook runner, which records them without touching the outcome.
"""

from __future__ import annotations

from collections.abc import Sequence
from email.message import EmailMessage
from typing import TYPE_CHECKING, Final, Protocol, runtime_checkable

import structlog

from stage_orchestrator.constants import DEFAULT_SUBJECT_TEMPLATE
from stage_orchestrator.domain.models import NotificationMessage, Outcome, RunReport
from stage_orchestrator.engine.operations import template_fields
from stage_orchestrator.execution.command import CommandSpec

if TYPE_CHECKING:
    from stage_orchestrator.execution.command import CommandExecutor

logger = structlog.get_logger(__name__)

SUBJECT_PLACEHOLDERS: Final[frozenset[str]] = frozenset(
    {"outcome", "pipeline_name", "build_number", "run_id"}
)

_OUTPUT_TAIL_LINES: Final[int] = 20


class NotificationDeliveryError(RuntimeError):
    """The transport did not accept the message."""


@runtime_checkable
class NotificationTransport(Protocol):
    async def send(self, message: NotificationMessage) -> None: ...


class LogTransport:
    """Write the message to the log instead of delivering it."""

    async def send(self, message: NotificationMessage) -> None:
        logger.info(
            "notification_logged",
            subject=message.subject,
            recipients=list(message.recipients),
            outcome=message.outcome.value,
        )


class CommandTransport:
    """Pipe an RFC 5322 message into an external mail command (``sendmail -t``)."""

    def __init__(
        self,
        executor: CommandExecutor,
        *,
        argv: Sequence[str] = ("sendmail", "-t"),
        sender: str | None = None,
        timeout_seconds: float = 60.0,
    ) -> None:
        self._executor = executor
        self._argv = tuple(argv)
        self._sender = sender
        self._timeout_seconds = timeout_seconds

    def format(self, message: NotificationMessage) -> str:
        email = EmailMessage()
        email["To"] = ", ".join(message.recipients)
        if self._sender:
            email["From"] = self._sender
        email["Subject"] = message.subject
        email.set_content(message.body)
        return email.as_string()

    async def send(self, message: NotificationMessage) -> None:
        spec = CommandSpec(
            argv=self._argv,
            stdin_text=self.format(message),
            timeout_seconds=self._timeout_seconds,
        )
        result = await self._executor.execute(spec, self._timeout_seconds)
        if not result.is_success(spec):
            raise NotificationDeliveryError(f"mail transport failed: {result.describe()}")


class NotificationDispatcher:
    """Hook that announces the terminal outcome of a run."""

    def __init__(
        self,
        transport: NotificationTransport,
        *,
        recipients: Sequence[str],
        subject_template: str = DEFAULT_SUBJECT_TEMPLATE,
        metadata: dict[str, str] | None = None,
    ) -> None:
        if not recipients:
            raise ValueError("recipients must not be empty")
        self._transport = transport
        self._recipients = tuple(recipients)
        self._subject_template = subject_template
        self._metadata = dict(metadata or {})
        self._announced: set[str] = set()
        _check_subject_template(subject_template)

    def render(self, report: RunReport) -> NotificationMessage:
        if not report.outcome.is_terminal:
            raise ValueError("notifications require a terminal outcome")
        subject = self._subject_template.format(
            outcome=report.outcome.value.upper(),
            pipeline_name=report.pipeline_name,
            build_number=report.build_number,
            run_id=report.run_id,
        )
        return NotificationMessage(
            subject=subject,
            body=render_body(report, extra_metadata=self._metadata),
            recipients=self._recipients,
            outcome=report.outcome,
        )

    async def dispatch(self, report: RunReport) -> bool:
        """Render and send; return whether the transport accepted the message."""

        if report.run_id in self._announced:
            logger.info("notification_already_sent", run_id=report.run_id)
            return True
        message = self.render(report)
        try:
            await self._transport.send(message)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "notification_delivery_failed",
                run_id=report.run_id,
                error=f"{type(exc).__name__}: {exc}",
            )
            return False
        self._announced.add(report.run_id)
        logger.info("notification_sent", run_id=report.run_id, subject=message.subject)
        return True

    async def __call__(self, report: RunReport) -> None:
        if not await self.dispatch(report):
            raise NotificationDeliveryError(f"notification for {report.run_id} was not delivered")


def render_body(report: RunReport, *, extra_metadata: dict[str, str] | None = None) -> str:
    lines = [
        f"Pipeline: {report.pipeline_name}",
        f"Build: #{report.build_number}",
        f"Run: {report.run_id}",
        f"Outcome: {report.outcome.value.upper()}",
        f"Duration: {report.duration_ms / 1000:.1f}s",
    ]
    metadata = {**report.metadata, **(extra_metadata or {})}
    for key in sorted(metadata):
        lines.append(f"{key}: {metadata[key]}")

    lines.extend(("", "Stages:"))
    for record in report.stages:
        flag = " (best effort)" if record.best_effort else ""
        lines.append(f"  {record.order:>2}. {record.name:<24} {record.status.value}{flag}")

    failed = report.failed_stage
    if failed is not None:
        lines.extend(("", f"Failed stage: {failed.name}"))
    if report.outcome is Outcome.ABORTED:
        lines.extend(("", "The run was aborted."))

    if report.published:
        lines.extend(("", "Published:"))
        for artifact in report.published:
            lines.append(f"  {artifact.name} {artifact.digest} [{', '.join(sorted(artifact.tags))}]")

    if report.diagnostics:
        lines.extend(("", "Diagnostics:"))
        for entry in report.diagnostics:
            where = entry.stage if entry.operation_id is None else f"{entry.stage}/{entry.operation_id}"
            verdict = f" verdict={entry.verdict}" if entry.verdict else ""
            lines.append(f"  - [{entry.kind}] {where}: {entry.message}{verdict}")
            tail = entry.output.splitlines()[-_OUTPUT_TAIL_LINES:]
            lines.extend(f"      | {line}" for line in tail)
    return "\n".join(lines) + "\n"


def _check_subject_template(template: str) -> None:
    unknown = template_fields(template) - SUBJECT_PLACEHOLDERS
    if unknown:
        raise ValueError(f"unknown subject placeholder(s): {', '.join(sorted(unknown))}")


__all__ = [
    "DEFAULT_SUBJECT_TEMPLATE",
    "CommandTransport",
    "LogTransport",
    "NotificationDeliveryError",
    "NotificationDispatcher",
    "NotificationTransport",
    "render_body",
]
