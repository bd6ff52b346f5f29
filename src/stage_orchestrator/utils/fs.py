"""
stage-orchestrator — filesystem utilities

File: src/stage_orchestrator/utils/fs.py

Purpose
- Atomic writes for run reports and the build-number ledger.
- Workspace-relative path resolution and report collection for archiving.

Functional requirements
- Atomic writes create a temp file in the destination directory and replace
  the target in one step; missing parent directories are created first.
- Paths handed in by pipeline definitions must stay inside the workspace.
"""

from __future__ import annotations

import contextlib
import json
import os
import shutil
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Mapping

PathLike = str | os.PathLike[str]

__all__ = [
    "atomic_write",
    "atomic_write_json",
    "collect_matching",
    "copy_into",
    "resolve_within",
]


def atomic_write(path: PathLike, data: bytes | str, *, encoding: str = "utf-8") -> None:
    """Atomically write ``data`` to ``path`` via a sibling temp file and ``os.replace``."""

    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(
        prefix=f".{target.name}.",
        suffix=".tmp",
        dir=str(target.parent),
    )
    temp_path = Path(temp_name)
    payload = data if isinstance(data, bytes) else data.encode(encoding)

    try:
        with os.fdopen(fd, "wb") as file_handle:
            file_handle.write(payload)
            file_handle.flush()
            os.fsync(file_handle.fileno())
        os.replace(temp_path, target)
    except Exception:
        with contextlib.suppress(OSError):
            temp_path.unlink(missing_ok=True)
        raise


def atomic_write_json(path: PathLike, payload: Mapping[str, object]) -> None:
    text = json.dumps(payload, indent=2, sort_keys=True, ensure_ascii=False)
    atomic_write(path, text + "\n")


def resolve_within(root: PathLike, relative: PathLike) -> Path:
    """Resolve ``relative`` against ``root`` and refuse escapes from ``root``."""

    base = Path(root).resolve()
    candidate = (base / relative).resolve()
    try:
        candidate.relative_to(base)
    except ValueError as exc:
        raise ValueError(f"path escapes workspace: {relative!s}") from exc
    return candidate


def collect_matching(root: PathLike, pattern: str) -> list[Path]:
    """Return files under ``root`` matching glob ``pattern`` in sorted order."""

    base = Path(root)
    return sorted(path for path in base.glob(pattern) if path.is_file())


def copy_into(sources: list[Path], destination: PathLike, *, root: PathLike) -> list[Path]:
    """Copy ``sources`` under ``destination`` preserving paths relative to ``root``."""

    base = Path(root).resolve()
    dest = Path(destination)
    copied: list[Path] = []
    for source in sources:
        relative = source.resolve().relative_to(base)
        target = dest / relative
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(source, target)
        copied.append(target)
    return copied
