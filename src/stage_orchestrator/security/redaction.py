"""
stage-orchestrator — secret redaction

File: src/stage_orchestrator/security/redaction.py

Purpose
- Mask secret-like text in captured command output, diagnostics and logs.
- Track literal secret values resolved by credential scopes so that tool
  output echoing a token is masked even when no pattern would match it.

Functional requirements
- Redaction is deterministic and idempotent for stable inputs.
- Literal values are masked longest-first so overlapping secrets never leak
  a suffix.
- Structures are deep-copied with sensitive keys replaced wholesale.
"""

from __future__ import annotations

import re
import threading
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Final

REDACTED_VALUE: Final[str] = "***REDACTED***"

_MIN_LITERAL_LENGTH: Final[int] = 4

SENSITIVE_KEYS: Final[frozenset[str]] = frozenset(
    {
        "access_token",
        "api_key",
        "apikey",
        "auth_token",
        "authorization",
        "client_secret",
        "password",
        "passwd",
        "private_key",
        "secret",
        "secret_key",
        "token",
    }
)

_SENSITIVE_KEY_SUFFIXES: Final[tuple[str, ...]] = (
    "_api_key",
    "_password",
    "_secret",
    "_token",
)

_NON_ALNUM = re.compile(r"[^a-z0-9]+")


@dataclass(frozen=True, slots=True)
class _TextRule:
    name: str
    pattern: re.Pattern[str]
    sensitive_group: int | None = None


_TEXT_RULES: Final[tuple[_TextRule, ...]] = (
    _TextRule(
        name="private_key_block",
        pattern=re.compile(
            r"-----BEGIN(?: [A-Z0-9]+)* PRIVATE KEY-----"
            r"[\s\S]+?"
            r"-----END(?: [A-Z0-9]+)* PRIVATE KEY-----"
        ),
    ),
    _TextRule(
        name="authorization_bearer",
        pattern=re.compile(r"(?i)(\bauthorization\s*:\s*bearer\s+)([A-Za-z0-9\-._~+/=]{8,})"),
        sensitive_group=2,
    ),
    _TextRule(
        name="secret_assignment",
        pattern=re.compile(
            r"(?i)(\b(?:password|passwd|secret|token|api[_-]?key|client[_-]?secret|"
            r"access[_-]?token)\b\s*[:=]\s*[\"']?)"
            r"([A-Za-z0-9._~+/=-]{6,})"
        ),
        sensitive_group=2,
    ),
    _TextRule(
        name="url_userinfo",
        pattern=re.compile(r"(?i)(\b[a-z][a-z0-9+.-]*://[^/\s:@]+:)([^/\s@]+)(@)"),
        sensitive_group=2,
    ),
    _TextRule(name="aws_access_key", pattern=re.compile(r"\b(?:AKIA|ASIA)[A-Z0-9]{16}\b")),
    _TextRule(name="github_token", pattern=re.compile(r"\bgh[pousr]_[A-Za-z0-9]{20,255}\b")),
)


def redact_text(text: str, *, replacement: str = REDACTED_VALUE) -> str:
    """Apply pattern rules to ``text``."""

    if not isinstance(text, str):
        raise TypeError(f"text must be a string, got {type(text).__name__}")
    redacted = text
    for rule in _TEXT_RULES:
        redacted = _apply_rule(redacted, rule, replacement)
    return redacted


def is_sensitive_key(key: str) -> bool:
    normalized = _NON_ALNUM.sub("_", key.strip().lower()).strip("_")
    if normalized in SENSITIVE_KEYS:
        return True
    return normalized.endswith(_SENSITIVE_KEY_SUFFIXES)


def redact_structure(value: object, *, replacement: str = REDACTED_VALUE) -> object:
    """Return a deep-redacted copy of JSON-like nested structures."""

    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, str):
        return redact_text(value, replacement=replacement)
    if isinstance(value, Mapping):
        out: dict[object, object] = {}
        for key in sorted(value, key=str):
            item = value[key]
            if isinstance(key, str) and is_sensitive_key(key) and item not in (None, ""):
                out[key] = replacement
            else:
                out[key] = redact_structure(item, replacement=replacement)
        return out
    if isinstance(value, (list, tuple)):
        items = [redact_structure(item, replacement=replacement) for item in value]
        return items if isinstance(value, list) else tuple(items)
    if isinstance(value, (set, frozenset)):
        return sorted((redact_structure(item, replacement=replacement) for item in value), key=repr)
    return value


class SecretMasker:
    """Registry of literal secret values plus the pattern rules.

    Credential scopes register every value they resolve; values stay masked for
    the remainder of the run since tool output may be inspected after the scope
    that produced it has closed.
    """

    def __init__(self, *, replacement: str = REDACTED_VALUE) -> None:
        self._replacement = replacement
        self._lock = threading.Lock()
        self._literals: set[str] = set()
        self._ordered: tuple[str, ...] = ()

    @property
    def replacement(self) -> str:
        return self._replacement

    def register(self, value: str) -> None:
        stripped = value.strip()
        if len(stripped) < _MIN_LITERAL_LENGTH:
            return
        with self._lock:
            if stripped in self._literals:
                return
            self._literals.add(stripped)
            self._ordered = tuple(sorted(self._literals, key=len, reverse=True))

    def __len__(self) -> int:
        return len(self._literals)

    def __contains__(self, value: object) -> bool:
        return isinstance(value, str) and value.strip() in self._literals

    def redact(self, text: str) -> str:
        masked = text
        for literal in self._ordered:
            if literal in masked:
                masked = masked.replace(literal, self._replacement)
        return redact_text(masked, replacement=self._replacement)

    __call__ = redact


def _apply_rule(text: str, rule: _TextRule, replacement: str) -> str:
    def repl(match: re.Match[str]) -> str:
        if rule.sensitive_group is None:
            return replacement
        start, end = match.span(rule.sensitive_group)
        whole_start = match.start()
        full = match.group(0)
        return full[: start - whole_start] + replacement + full[end - whole_start :]

    return rule.pattern.sub(repl, text)


__all__ = [
    "REDACTED_VALUE",
    "SENSITIVE_KEYS",
    "SecretMasker",
    "is_sensitive_key",
    "redact_structure",
    "redact_text",
]
