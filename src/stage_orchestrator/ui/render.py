"""Plain-text rendering for CLI output.

Output is deterministic and uncoloured; ``--json`` bypasses this module
entirely.
"""

from __future__ import annotations

import sys
from typing import TYPE_CHECKING, TextIO

if TYPE_CHECKING:
    from collections.abc import Sequence

    from stage_orchestrator.domain.models import RunReport
    from stage_orchestrator.pipeline.definition import PipelineDefinition


class CLIRenderer:
    """Thin CLI output renderer."""

    def __init__(self, *, stream: TextIO | None = None, verbose: bool = False) -> None:
        self.verbose = verbose
        self._stream = stream

    def _print(self, line: str = "") -> None:
        print(line, file=self._stream if self._stream is not None else sys.stdout)

    def kv(self, key: str, value: object) -> None:
        self._print(f"{key}: {value}")

    def text(self, line: str) -> None:
        self._print(line)

    def section(self, title: str) -> None:
        self._print(f"\n{title}")

    def items(self, entries: Sequence[str], *, prefix: str = "- ") -> None:
        for entry in entries:
            self._print(f"  {prefix}{entry}")

    def table(self, headers: Sequence[str], rows: Sequence[Sequence[str]]) -> None:
        """Print an aligned ASCII table; nothing for an empty row set."""

        if not rows:
            return
        widths = [len(header) for header in headers]
        for row in rows:
            for index, cell in enumerate(row[: len(headers)]):
                widths[index] = max(widths[index], len(cell))

        def _pad(cells: Sequence[str]) -> str:
            return "  ".join(
                (cells[index] if index < len(cells) else "").ljust(width)
                for index, width in enumerate(widths)
            ).rstrip()

        self._print(f"  {_pad(headers)}")
        self._print(f"  {'  '.join('-' * width for width in widths)}")
        for row in rows:
            self._print(f"  {_pad(row)}")


def render_report(renderer: CLIRenderer, report: RunReport, *, report_path: str | None = None) -> None:
    renderer.kv("Run ID", report.run_id)
    renderer.kv("Pipeline", f"{report.pipeline_name} #{report.build_number}")
    renderer.kv("Outcome", report.outcome.value.upper())
    if report_path is not None:
        renderer.kv("Report", report_path)

    renderer.section("Stages:")
    renderer.table(
        ("#", "stage", "status", "duration", "note"),
        [
            (
                str(record.order),
                record.name,
                record.status.value,
                f"{record.duration_ms / 1000:.1f}s",
                _stage_note(record.best_effort, record.skip_reason),
            )
            for record in report.stages
        ],
    )

    if report.published:
        renderer.section("Published:")
        renderer.items(
            [f"{item.name} {item.digest} [{', '.join(sorted(item.tags))}]" for item in report.published]
        )
    if report.diagnostics:
        renderer.section("Diagnostics:")
        for entry in report.diagnostics:
            where = entry.stage if entry.operation_id is None else f"{entry.stage}/{entry.operation_id}"
            renderer.items([f"[{entry.kind}] {where}: {entry.message}"])
            if renderer.verbose and entry.output:
                for line in entry.output.splitlines()[-20:]:
                    renderer.text(f"      | {line}")
    failed_hooks = [hook for hook in report.hook_results if not hook.succeeded]
    if failed_hooks:
        renderer.section("Hook failures:")
        renderer.items([f"{hook.name}: {hook.error}" for hook in failed_hooks])


def render_definition(renderer: CLIRenderer, definition: PipelineDefinition) -> None:
    renderer.kv("Pipeline", definition.name)
    renderer.section("Stages:")
    rows = []
    for stage in definition.stages:
        flags = [
            flag
            for flag, enabled in (("best-effort", stage.best_effort), ("parallel", stage.parallel))
            if enabled
        ]
        posts = [f"{post.condition.value}:{post.operation.operation_id}" for post in stage.post_actions]
        rows.append(
            (
                str(stage.order),
                stage.name,
                ", ".join(operation.operation_id for operation in stage.operations) or "-",
                ", ".join(posts) or "-",
                ", ".join(flags),
            )
        )
    renderer.table(("#", "stage", "operations", "post", "flags"), rows)


def _stage_note(best_effort: bool, skip_reason: str | None) -> str:
    notes = []
    if best_effort:
        notes.append("best effort")
    if skip_reason:
        notes.append(skip_reason.replace("_", " "))
    return ", ".join(notes)


__all__ = ["CLIRenderer", "render_definition", "render_report"]
