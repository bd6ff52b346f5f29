"""Unit tests for atomic writes, workspace path resolution and report collection."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

import pytest

from stage_orchestrator.utils.fs import (
    atomic_write,
    atomic_write_json,
    collect_matching,
    copy_into,
    resolve_within,
)
from stage_orchestrator.utils.hashing import content_digest, sha256_file, sha256_text

if TYPE_CHECKING:
    from pathlib import Path


def test_atomic_write_creates_parents_and_leaves_no_temp_files(tmp_path: Path) -> None:
    target = tmp_path / "nested" / "dir" / "report.json"
    atomic_write_json(target, {"b": 1, "a": [1, 2]})

    assert json.loads(target.read_text(encoding="utf-8")) == {"a": [1, 2], "b": 1}
    assert [item.name for item in target.parent.iterdir()] == ["report.json"]

    atomic_write(target, b"replaced")
    assert target.read_bytes() == b"replaced"


def test_resolve_within_rejects_escapes(tmp_path: Path) -> None:
    assert resolve_within(tmp_path, "target/app.jar") == (tmp_path / "target" / "app.jar").resolve()
    with pytest.raises(ValueError, match="escapes workspace"):
        resolve_within(tmp_path, "../outside.txt")
    with pytest.raises(ValueError, match="escapes workspace"):
        resolve_within(tmp_path, "/etc/passwd")


def test_collect_and_copy_preserve_relative_layout(tmp_path: Path) -> None:
    workspace = tmp_path / "ws"
    reports = workspace / "target" / "surefire-reports"
    reports.mkdir(parents=True)
    (reports / "TEST-b.xml").write_text("<b/>", encoding="utf-8")
    (reports / "TEST-a.xml").write_text("<a/>", encoding="utf-8")
    (reports / "notes.txt").write_text("skip", encoding="utf-8")

    matches = collect_matching(workspace, "target/surefire-reports/*.xml")
    assert [path.name for path in matches] == ["TEST-a.xml", "TEST-b.xml"]

    copied = copy_into(matches, tmp_path / "archive", root=workspace)
    assert sorted(path.relative_to(tmp_path / "archive").as_posix() for path in copied) == [
        "target/surefire-reports/TEST-a.xml",
        "target/surefire-reports/TEST-b.xml",
    ]


def test_content_digest_matches_text_digest(tmp_path: Path) -> None:
    path = tmp_path / "artifact.bin"
    path.write_text("hello", encoding="utf-8")

    assert sha256_file(path, chunk_size=2) == sha256_text("hello")
    assert content_digest(path) == f"sha256:{sha256_text('hello')}"
    with pytest.raises(ValueError, match="chunk_size"):
        sha256_file(path, chunk_size=0)
