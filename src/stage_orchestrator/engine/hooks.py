"""Post-execution hooks keyed by the terminal outcome of a run."""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Final

import structlog

from stage_orchestrator.domain.models import Condition, HookResult, Outcome, RunReport

logger = structlog.get_logger(__name__)

HookFunction = Callable[[RunReport], Awaitable[None] | None]

DEFAULT_HOOK_TIMEOUT_SECONDS: Final[float] = 120.0


@dataclass(frozen=True, slots=True)
class RegisteredHook:
    name: str
    condition: Condition
    function: HookFunction


class HookRunner:
    """Run hooks after the last stage (or an abort) has completed.

    The outcome-specific hooks (SUCCESS or FAILURE) run first, then ALWAYS
    hooks. An ABORTED run only gets ALWAYS hooks. A hook that raises or times
    out is logged and recorded; the report's outcome is never touched.
    """

    def __init__(self, *, timeout_seconds: float = DEFAULT_HOOK_TIMEOUT_SECONDS) -> None:
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        self._timeout_seconds = float(timeout_seconds)
        self._hooks: list[RegisteredHook] = []

    @property
    def hooks(self) -> tuple[RegisteredHook, ...]:
        return tuple(self._hooks)

    def register(self, condition: Condition, name: str, function: HookFunction) -> None:
        if not name.strip():
            raise ValueError("hook name must be non-empty")
        if any(hook.name == name for hook in self._hooks):
            raise ValueError(f"hook {name!r} is already registered")
        self._hooks.append(RegisteredHook(name=name, condition=Condition(condition), function=function))

    def on_success(self, name: str, function: HookFunction) -> None:
        self.register(Condition.SUCCESS, name, function)

    def on_failure(self, name: str, function: HookFunction) -> None:
        self.register(Condition.FAILURE, name, function)

    def always(self, name: str, function: HookFunction) -> None:
        self.register(Condition.ALWAYS, name, function)

    def selected(self, outcome: Outcome) -> tuple[RegisteredHook, ...]:
        """Hooks that ``outcome`` triggers, in execution order."""

        if not outcome.is_terminal:
            raise ValueError(f"hooks require a terminal outcome, got {outcome.value}")
        specific = [
            hook
            for hook in self._hooks
            if hook.condition is not Condition.ALWAYS and hook.condition.matches_outcome(outcome)
        ]
        always = [hook for hook in self._hooks if hook.condition is Condition.ALWAYS]
        return (*specific, *always)

    async def finalize(self, report: RunReport) -> RunReport:
        results: list[HookResult] = []
        for hook in self.selected(report.outcome):
            results.append(await self._invoke(hook, report))
        return report.with_hook_results((*report.hook_results, *results))

    async def _invoke(self, hook: RegisteredHook, report: RunReport) -> HookResult:
        try:
            outcome = hook.function(report)
            if inspect.isawaitable(outcome):
                await asyncio.wait_for(outcome, timeout=self._timeout_seconds)
        except asyncio.CancelledError:
            raise
        except TimeoutError:
            logger.warning("hook_timed_out", hook=hook.name, timeout_seconds=self._timeout_seconds)
            return HookResult(
                name=hook.name,
                condition=hook.condition,
                succeeded=False,
                error=f"hook timed out after {self._timeout_seconds:.3f}s",
            )
        except Exception as exc:  # noqa: BLE001
            logger.exception("hook_failed", hook=hook.name)
            return HookResult(
                name=hook.name,
                condition=hook.condition,
                succeeded=False,
                error=f"{type(exc).__name__}: {exc}",
            )
        logger.info("hook_completed", hook=hook.name, condition=hook.condition.value)
        return HookResult(name=hook.name, condition=hook.condition, succeeded=True)


__all__ = [
    "DEFAULT_HOOK_TIMEOUT_SECONDS",
    "HookFunction",
    "HookRunner",
    "RegisteredHook",
]
