"""Utility exports for filesystem, hashing, and concurrency helpers."""

from stage_orchestrator.utils.concurrency import CancellationToken, WorkerPool, run_with_timeout
from stage_orchestrator.utils.fs import (
    atomic_write,
    atomic_write_json,
    collect_matching,
    copy_into,
    resolve_within,
)
from stage_orchestrator.utils.hashing import content_digest, sha256_file, sha256_text

__all__ = [
    "CancellationToken",
    "WorkerPool",
    "atomic_write",
    "atomic_write_json",
    "collect_matching",
    "content_digest",
    "copy_into",
    "resolve_within",
    "run_with_timeout",
    "sha256_file",
    "sha256_text",
]
