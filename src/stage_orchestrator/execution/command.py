"""
stage-orchestrator — command executor

File: src/stage_orchestrator/execution/command.py

Purpose
- Run one external tool invocation, capture its combined output and report a
  faithful status back to the calling operation.

Normative behavior
- Every invocation runs under a hard wall-clock timeout.
- On timeout or cancellation the process group receives SIGTERM, gets a grace
  period to exit, then receives SIGKILL.
- A timeout is reported as ``timed_out=True`` with ``exit_code=None`` so it is
  never confused with an ordinary non-zero exit.
- Output is captured regardless of outcome, truncated and passed through the
  configured redactor before leaving this module.
- Side effects of the external tool are its own concern.
"""

from __future__ import annotations

import asyncio
import os
import signal
import sys
import time
from collections.abc import Callable, Iterable, Mapping
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Final, Protocol, runtime_checkable

import structlog

from stage_orchestrator.constants import (
    DEFAULT_OPERATION_TIMEOUT_SECONDS,
    DEFAULT_TERMINATION_GRACE_SECONDS,
)

TextRedactor = Callable[[str], str]

_DEFAULT_MAX_OUTPUT_CHARS: Final[int] = 200_000
_READ_CHUNK_BYTES: Final[int] = 64 * 1024

logger = structlog.get_logger(__name__)


def _identity_redactor(text: str) -> str:
    return text


@dataclass(slots=True)
class CommandSpec:
    """Portable description of one external tool invocation."""

    argv: tuple[str, ...]
    cwd: str | None = None
    env: Mapping[str, str] = field(default_factory=dict)
    stdin_text: str | None = None
    timeout_seconds: float | None = None
    allowed_exit_codes: tuple[int, ...] = (0,)
    inherit_env: bool = True

    def __post_init__(self) -> None:
        argv = tuple(self.argv)
        if not argv:
            raise ValueError("CommandSpec.argv: must contain at least one item")
        for index, item in enumerate(argv):
            if not isinstance(item, str) or not item:
                raise ValueError(f"CommandSpec.argv[{index}]: must be a non-empty string")
        self.argv = argv
        self.env = {str(key): str(value) for key, value in sorted(dict(self.env).items())}
        if self.timeout_seconds is not None:
            self.timeout_seconds = float(self.timeout_seconds)
            if self.timeout_seconds <= 0:
                raise ValueError("CommandSpec.timeout_seconds: must be > 0")
        codes = tuple(int(code) for code in self.allowed_exit_codes)
        if not codes:
            raise ValueError("CommandSpec.allowed_exit_codes: must not be empty")
        self.allowed_exit_codes = tuple(sorted(set(codes)))

    def resolved_timeout(self, default_timeout_seconds: float) -> float:
        if self.timeout_seconds is not None:
            return self.timeout_seconds
        return default_timeout_seconds

    def build_env(self, withheld: Iterable[str] = ()) -> dict[str, str]:
        """Child environment; ``withheld`` names are dropped unless set explicitly."""

        env = dict(os.environ) if self.inherit_env else {}
        for name in withheld:
            env.pop(name, None)
        env.update(self.env)
        return env

    @property
    def program(self) -> str:
        return self.argv[0]


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Status, combined output and timing for one finished invocation."""

    argv: tuple[str, ...]
    exit_code: int | None
    output: str
    duration_ms: int
    timed_out: bool = False
    error: str | None = None

    def __post_init__(self) -> None:
        if self.timed_out and self.exit_code is not None:
            raise ValueError("CommandResult.exit_code: must be None when timed_out is true")
        if self.duration_ms < 0:
            raise ValueError("CommandResult.duration_ms: must be >= 0")

    def is_success(self, spec: CommandSpec | None = None) -> bool:
        if self.timed_out or self.error is not None or self.exit_code is None:
            return False
        if spec is None:
            return self.exit_code == 0
        return self.exit_code in spec.allowed_exit_codes

    def describe(self) -> str:
        if self.timed_out:
            return f"{self.argv[0]} timed out after {self.duration_ms}ms"
        if self.error is not None:
            return f"{self.argv[0]} could not be started: {self.error}"
        return f"{self.argv[0]} exited with status {self.exit_code}"


@runtime_checkable
class CommandExecutor(Protocol):
    """Pluggable async command execution interface."""

    async def execute(
        self,
        spec: CommandSpec,
        timeout_seconds: float | None = None,
    ) -> CommandResult: ...


class LocalSubprocessExecutor(CommandExecutor):
    """Run commands as local subprocesses in their own process group.

    ``withheld_env`` names environment variables (typically credential sources)
    that children do not inherit; an operation that needs one receives it
    through its own ``CommandSpec.env``.
    """

    def __init__(
        self,
        *,
        default_timeout_seconds: float = DEFAULT_OPERATION_TIMEOUT_SECONDS,
        termination_grace_seconds: float = DEFAULT_TERMINATION_GRACE_SECONDS,
        max_output_chars: int | None = _DEFAULT_MAX_OUTPUT_CHARS,
        redactor: TextRedactor | None = None,
        withheld_env: Iterable[str] = (),
    ) -> None:
        if default_timeout_seconds <= 0:
            raise ValueError("default_timeout_seconds must be > 0")
        if termination_grace_seconds < 0:
            raise ValueError("termination_grace_seconds must be >= 0")
        if max_output_chars is not None and max_output_chars <= 0:
            raise ValueError("max_output_chars must be > 0")
        self._default_timeout_seconds = float(default_timeout_seconds)
        self._grace_seconds = float(termination_grace_seconds)
        self._max_output_chars = max_output_chars
        self._redactor = redactor if redactor is not None else _identity_redactor
        self._withheld_env = frozenset(withheld_env)

    @property
    def termination_grace_seconds(self) -> float:
        return self._grace_seconds

    async def execute(
        self,
        spec: CommandSpec,
        timeout_seconds: float | None = None,
    ) -> CommandResult:
        started_ns = time.monotonic_ns()
        timeout = (
            float(timeout_seconds)
            if timeout_seconds is not None
            else spec.resolved_timeout(self._default_timeout_seconds)
        )

        try:
            process = await asyncio.create_subprocess_exec(
                *spec.argv,
                cwd=spec.cwd,
                env=spec.build_env(self._withheld_env),
                stdin=(
                    asyncio.subprocess.PIPE
                    if spec.stdin_text is not None
                    else asyncio.subprocess.DEVNULL
                ),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                start_new_session=sys.platform != "win32",
            )
        except OSError as exc:
            logger.warning("command_start_failed", program=spec.program, error=str(exc))
            return CommandResult(
                argv=spec.argv,
                exit_code=None,
                output="",
                duration_ms=_elapsed_ms(started_ns),
                error=self._redactor(str(exc)),
            )

        buffer = bytearray()
        drain_task = asyncio.create_task(_drain(process, spec.stdin_text, buffer))
        timed_out = False
        try:
            await asyncio.wait_for(process.wait(), timeout=timeout)
        except TimeoutError:
            timed_out = True
            logger.warning("command_timed_out", program=spec.program, timeout_seconds=timeout)
            await self._terminate(process)
        except asyncio.CancelledError:
            logger.info("command_cancelled", program=spec.program)
            await self._terminate(process)
            await _finish_drain(drain_task, self._grace_seconds)
            raise
        await _finish_drain(drain_task, self._grace_seconds)

        output = self._redactor(
            _truncate_text(_normalize_output_text(bytes(buffer)), self._max_output_chars)
        )
        return CommandResult(
            argv=spec.argv,
            exit_code=None if timed_out else process.returncode,
            output=output,
            duration_ms=_elapsed_ms(started_ns),
            timed_out=timed_out,
        )

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        """SIGTERM the process group, wait the grace period, then SIGKILL."""

        _signal_group(process, signal.SIGTERM)
        try:
            await asyncio.wait_for(process.wait(), timeout=max(self._grace_seconds, 0.01))
            return
        except TimeoutError:
            pass
        _signal_group(process, _KILL_SIGNAL)
        with suppress(TimeoutError):
            await asyncio.wait_for(process.wait(), timeout=max(self._grace_seconds, 1.0))


_KILL_SIGNAL: Final[int] = getattr(signal, "SIGKILL", signal.SIGTERM)


def _signal_group(process: asyncio.subprocess.Process, sig: int) -> None:
    if sys.platform == "win32":
        with suppress(ProcessLookupError):
            if sig == signal.SIGTERM:
                process.terminate()
            else:
                process.kill()
        return
    try:
        os.killpg(process.pid, sig)
    except (ProcessLookupError, PermissionError):
        with suppress(ProcessLookupError):
            process.send_signal(sig)


async def _drain(
    process: asyncio.subprocess.Process,
    stdin_text: str | None,
    buffer: bytearray,
) -> None:
    if stdin_text is not None and process.stdin is not None:
        with suppress(BrokenPipeError, ConnectionResetError):
            process.stdin.write(stdin_text.encode("utf-8"))
            await process.stdin.drain()
        process.stdin.close()
    if process.stdout is None:
        return
    while chunk := await process.stdout.read(_READ_CHUNK_BYTES):
        buffer.extend(chunk)


async def _finish_drain(task: asyncio.Task[None], grace_seconds: float) -> None:
    # Orphaned grandchildren can keep the pipe open; keep what was read so far.
    try:
        await asyncio.wait_for(asyncio.shield(task), timeout=max(grace_seconds, 1.0))
    except TimeoutError:
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task


def _elapsed_ms(started_ns: int) -> int:
    delta_ns = time.monotonic_ns() - started_ns
    if delta_ns < 0:
        return 0
    return delta_ns // 1_000_000


def _normalize_output_text(raw: bytes) -> str:
    text = raw.decode("utf-8", errors="replace")
    return text.replace("\r\n", "\n").replace("\r", "\n")


def _truncate_text(text: str, max_chars: int | None) -> str:
    if max_chars is None or len(text) <= max_chars:
        return text
    omitted = len(text) - max_chars
    return f"...[truncated {omitted} chars]\n{text[-max_chars:]}"


__all__ = [
    "CommandExecutor",
    "CommandResult",
    "CommandSpec",
    "LocalSubprocessExecutor",
    "TextRedactor",
]
