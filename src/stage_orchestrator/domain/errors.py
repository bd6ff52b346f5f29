"""Exception taxonomy for pipeline execution failures."""

from __future__ import annotations


class PipelineError(RuntimeError):
    """Base class for failures that end a stage body."""


class OperationFailure(PipelineError):
    """An external tool returned failure, a non-zero exit, or timed out."""

    def __init__(
        self,
        message: str,
        *,
        operation_id: str = "",
        exit_code: int | None = None,
        timed_out: bool = False,
        output: str = "",
    ) -> None:
        super().__init__(message)
        self.operation_id = operation_id
        self.exit_code = exit_code
        self.timed_out = timed_out
        self.output = output


class GateFailure(PipelineError):
    """The quality gate verdict was not acceptable (or never arrived)."""

    def __init__(self, message: str, *, verdict: str, correlation_id: str = "") -> None:
        super().__init__(message)
        self.verdict = verdict
        self.correlation_id = correlation_id


class CredentialResolutionFailure(PipelineError):
    """A named credential is absent or inaccessible."""

    def __init__(self, name: str, reason: str = "credential not available") -> None:
        super().__init__(f"credential {name!r}: {reason}")
        self.name = name
        self.reason = reason


class AbortRequested(PipelineError):
    """External cancellation of the pipeline run."""


__all__ = [
    "AbortRequested",
    "CredentialResolutionFailure",
    "GateFailure",
    "OperationFailure",
    "PipelineError",
]
