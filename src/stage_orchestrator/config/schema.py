"""
stage-orchestrator — configuration schema

File: src/stage_orchestrator/config/schema.py

Purpose
- Define the strict schema for ``orchestrator.toml`` and the typed, frozen view
  of it the rest of the orchestrator consumes.

Normative behavior
- Unknown keys are rejected at every level.
- Secret values never appear in config; credentials are named and mapped to
  environment variables under ``[credentials]``.
- Every credential referenced by another section must be defined under
  ``[credentials]``.
- Validation reports all issues with dotted field paths, in deterministic order.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Final

from stage_orchestrator.constants import (
    BUILD_LEDGER_FILE,
    CONFIG_SCHEMA_VERSION,
    DEFAULT_GATE_POLL_INTERVAL_SECONDS,
    DEFAULT_GATE_TIMEOUT_SECONDS,
    DEFAULT_OPERATION_TIMEOUT_SECONDS,
    DEFAULT_SUBJECT_TEMPLATE,
    DEFAULT_TERMINATION_GRACE_SECONDS,
    FS_SCAN_REPORT,
    IMAGE_ID_FILE,
    IMAGE_SCAN_REPORT,
    LOGS_DIR,
    REPORTS_DIR,
)
from stage_orchestrator.security.redaction import is_sensitive_key, redact_structure

_ENV_NAME_PATTERN: Final[re.Pattern[str]] = re.compile(r"^[A-Z_][A-Z0-9_]*$")
_CREDENTIAL_NAME_PATTERN: Final[re.Pattern[str]] = re.compile(r"^[a-z][a-z0-9_-]*$")

LOG_LEVELS: Final[tuple[str, ...]] = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")
NOTIFICATION_TRANSPORTS: Final[tuple[str, ...]] = ("log", "command")

PATH_FIELDS: Final[tuple[tuple[str, str], ...]] = (
    ("pipeline", "workspace"),
    ("pipeline", "reports_dir"),
    ("pipeline", "ledger_path"),
    ("pipeline", "definition"),
    ("observability", "log_dir"),
)

DEFAULT_CONFIG: Final[dict[str, Any]] = {
    "meta": {"schema_version": CONFIG_SCHEMA_VERSION},
    "pipeline": {
        "name": "pipeline",
        "build_number": 0,
        "workspace": ".",
        "reports_dir": str(REPORTS_DIR),
        "ledger_path": str(BUILD_LEDGER_FILE),
    },
    "commands": {
        "test": ["mvn", "-B", "test"],
        "fs_scan": [
            "trivy", "fs", "--format", "json", "--output", str(FS_SCAN_REPORT), ".",
        ],
        "build": ["mvn", "-B", "-DskipTests", "package"],
        "artifact_path": "target/app.jar",
        "image_scan": [
            "trivy", "image", "--format", "json", "--output", str(IMAGE_SCAN_REPORT),
            "{image}:{build_number}",
        ],
        "deploy": ["kubectl", "set", "image", "deployment/{image_name}", "app={image}:{build_number}"],
    },
    "registry": {
        "image_name": "app",
        "repository_url": "http://localhost:8081/repository/releases",
        "push_command": [
            "curl", "--fail", "--silent", "--show-error", "--upload-file", "{location}",
            "{repository_url}/{name}/{tag}/{file_name}",
        ],
        "image_build_command": [
            "docker", "build", "--iidfile", str(IMAGE_ID_FILE), "-t", "{image}:{build_number}", ".",
        ],
        "image_tag_command": ["docker", "tag", "{image}:{build_number}", "{image}:{tag}"],
        "image_push_command": ["docker", "push", "{image}:{tag}"],
    },
    "quality_gate": {
        "enabled": True,
        "project_key": "app",
        "submit_command": ["sonar-submit", "{project_key}", "{source_ref}"],
        "query_command": ["sonar-status", "{correlation_id}"],
        "timeout_seconds": DEFAULT_GATE_TIMEOUT_SECONDS,
        "poll_interval_seconds": DEFAULT_GATE_POLL_INTERVAL_SECONDS,
        "fail_on_warn": True,
    },
    "execution": {
        "default_timeout_seconds": DEFAULT_OPERATION_TIMEOUT_SECONDS,
        "termination_grace_seconds": DEFAULT_TERMINATION_GRACE_SECONDS,
        "max_output_chars": 200_000,
        "max_parallel_operations": 4,
        "hook_timeout_seconds": 120.0,
    },
    "notification": {
        "enabled": False,
        "recipients": [],
        "subject_template": DEFAULT_SUBJECT_TEMPLATE,
        "transport": "log",
        "command": ["sendmail", "-t"],
    },
    "observability": {
        "log_level": "INFO",
        "log_dir": str(LOGS_DIR),
        "log_to_stdout": True,
        "redact_secrets": True,
    },
    "credentials": {},
}


# ---------------------------------------------------------------------------
# Typed view
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class PipelineSettings:
    name: str
    build_number: int
    workspace: Path
    reports_dir: Path
    ledger_path: Path
    definition: Path | None = None


@dataclass(frozen=True, slots=True)
class CommandSettings:
    """Command lines for the built-in stage catalog."""

    test: tuple[str, ...]
    fs_scan: tuple[str, ...]
    build: tuple[str, ...]
    artifact_path: str
    image_scan: tuple[str, ...]
    deploy: tuple[str, ...]
    deploy_credential: str | None = None


@dataclass(frozen=True, slots=True)
class RegistrySettings:
    image_name: str
    push_command: tuple[str, ...]
    image_build_command: tuple[str, ...]
    image_tag_command: tuple[str, ...]
    image_push_command: tuple[str, ...]
    repository_url: str | None = None
    image_registry: str | None = None
    repository_credential: str | None = None
    image_credential: str | None = None

    @property
    def image_reference(self) -> str:
        if self.image_registry:
            return f"{self.image_registry.rstrip('/')}/{self.image_name}"
        return self.image_name


@dataclass(frozen=True, slots=True)
class QualityGateSettings:
    enabled: bool
    project_key: str
    submit_command: tuple[str, ...]
    query_command: tuple[str, ...]
    timeout_seconds: float
    poll_interval_seconds: float
    fail_on_warn: bool
    credential: str | None = None


@dataclass(frozen=True, slots=True)
class ExecutionSettings:
    default_timeout_seconds: float
    termination_grace_seconds: float
    max_output_chars: int
    max_parallel_operations: int
    hook_timeout_seconds: float


@dataclass(frozen=True, slots=True)
class NotificationSettings:
    enabled: bool
    recipients: tuple[str, ...]
    subject_template: str
    transport: str
    command: tuple[str, ...]
    sender: str | None = None


@dataclass(frozen=True, slots=True)
class ObservabilitySettings:
    log_level: str
    log_dir: Path
    log_to_stdout: bool
    redact_secrets: bool


@dataclass(frozen=True, slots=True)
class OrchestratorConfig:
    """Validated configuration, populated once at process start."""

    pipeline: PipelineSettings
    commands: CommandSettings
    registry: RegistrySettings
    quality_gate: QualityGateSettings
    execution: ExecutionSettings
    notification: NotificationSettings
    observability: ObservabilitySettings
    credentials: Mapping[str, str] = field(default_factory=dict)
    raw: Mapping[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def from_mapping(cls, payload: Mapping[str, object]) -> OrchestratorConfig:
        """Validate ``payload`` and build the typed view."""

        normalized = assert_valid_config(payload)
        return _build_typed(normalized)

    def to_dict(self) -> dict[str, Any]:
        return copy.deepcopy(dict(self.raw))


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """Single structured validation failure."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Raised when strict config validation fails."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        if not self.issues:
            rendered = "unknown validation failure"
        else:
            rendered = "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
        super().__init__(f"invalid config:\n{rendered}")


class _IssueCollector:
    __slots__ = ("_items",)

    def __init__(self) -> None:
        self._items: list[ConfigValidationIssue] = []

    def add(self, path: str, message: str) -> None:
        self._items.append(ConfigValidationIssue(path=path, message=message))

    def items(self) -> tuple[ConfigValidationIssue, ...]:
        return tuple(self._items)

    @property
    def has_issues(self) -> bool:
        return bool(self._items)


def default_config() -> dict[str, Any]:
    """Return a deep copy of the built-in defaults."""

    return copy.deepcopy(DEFAULT_CONFIG)


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deep-merge ``overlay`` onto ``base``; lists and scalars are replaced."""

    merged = copy.deepcopy(dict(base))
    _merge_into(merged, overlay)
    return merged


def validate_config(config: Mapping[str, object] | object) -> ConfigValidationResult:
    """Validate a fully merged config mapping."""

    issues = _IssueCollector()
    root = _as_object(config, "<root>", issues)
    if root is None:
        return ConfigValidationResult(config=None, issues=issues.items())

    _reject_unknown_keys(root, set(_SECTION_VALIDATORS), "", issues)
    normalized: dict[str, Any] = {}
    for key, validator in _SECTION_VALIDATORS.items():
        raw = root.get(key)
        if raw is None:
            issues.add(key, "missing required section")
            continue
        section = _as_object(raw, key, issues)
        if section is None:
            continue
        normalized[key] = validator(section, key, issues)

    if not issues.has_issues:
        _check_credential_references(normalized, issues)
    if issues.has_issues:
        return ConfigValidationResult(config=None, issues=issues.items())
    return ConfigValidationResult(config=normalized, issues=())


def assert_valid_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    result = validate_config(config)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def dump_redacted(config: OrchestratorConfig | Mapping[str, object]) -> dict[str, Any]:
    """Return the effective config with secret-looking values masked.

    ``[credentials]`` only maps names to environment variable names, so it is
    rendered as-is.
    """

    payload = config.to_dict() if isinstance(config, OrchestratorConfig) else copy.deepcopy(dict(config))
    credentials = payload.pop("credentials", {})
    redacted = redact_structure(payload)
    out = dict(redacted) if isinstance(redacted, Mapping) else {}
    out["credentials"] = dict(sorted(dict(credentials).items()))
    return out


# ---------------------------------------------------------------------------
# Section validators
# ---------------------------------------------------------------------------


def _validate_meta(payload: Mapping[str, object], path: str, issues: _IssueCollector) -> dict[str, Any]:
    _reject_unknown_keys(payload, {"schema_version"}, path, issues)
    _require_keys(payload, {"schema_version"}, path, issues)
    out: dict[str, Any] = {}
    if "schema_version" in payload:
        parsed = _as_int(payload["schema_version"], _join(path, "schema_version"), issues, minimum=1)
        if parsed is not None:
            if parsed != CONFIG_SCHEMA_VERSION:
                issues.add(
                    _join(path, "schema_version"),
                    f"unsupported schema version {parsed}; expected {CONFIG_SCHEMA_VERSION}",
                )
            out["schema_version"] = parsed
    return out


def _validate_pipeline(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    allowed = {"name", "build_number", "workspace", "reports_dir", "ledger_path", "definition"}
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed - {"definition"}, path, issues)
    out: dict[str, Any] = {}
    _field(payload, "name", path, issues, out, _as_str)
    _field(payload, "build_number", path, issues, out, lambda v, p, i: _as_int(v, p, i, minimum=0))
    for key in ("workspace", "reports_dir", "ledger_path", "definition"):
        _field(payload, key, path, issues, out, _as_path_text)
    return out


def _validate_commands(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    argv_keys = {"test", "fs_scan", "build", "image_scan", "deploy"}
    allowed = argv_keys | {"artifact_path", "deploy_credential"}
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, argv_keys | {"artifact_path"}, path, issues)
    out: dict[str, Any] = {}
    for key in sorted(argv_keys):
        _field(payload, key, path, issues, out, _as_argv)
    _field(payload, "artifact_path", path, issues, out, _as_path_text)
    _field(payload, "deploy_credential", path, issues, out, _as_credential_name)
    return out


def _validate_registry(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    argv_keys = {"push_command", "image_build_command", "image_tag_command", "image_push_command"}
    optional = {"repository_url", "image_registry", "repository_credential", "image_credential"}
    _reject_unknown_keys(payload, argv_keys | optional | {"image_name"}, path, issues)
    _require_keys(payload, argv_keys | {"image_name"}, path, issues)
    out: dict[str, Any] = {}
    _field(payload, "image_name", path, issues, out, _as_str)
    for key in sorted(argv_keys):
        _field(payload, key, path, issues, out, _as_argv)
    for key in ("repository_url", "image_registry"):
        _field(payload, key, path, issues, out, _as_str)
    for key in ("repository_credential", "image_credential"):
        _field(payload, key, path, issues, out, _as_credential_name)
    return out


def _validate_quality_gate(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    required = {
        "enabled",
        "project_key",
        "submit_command",
        "query_command",
        "timeout_seconds",
        "poll_interval_seconds",
        "fail_on_warn",
    }
    _reject_unknown_keys(payload, required | {"credential"}, path, issues)
    _require_keys(payload, required, path, issues)
    out: dict[str, Any] = {}
    _field(payload, "enabled", path, issues, out, _as_bool)
    _field(payload, "fail_on_warn", path, issues, out, _as_bool)
    _field(payload, "project_key", path, issues, out, _as_str)
    _field(payload, "submit_command", path, issues, out, _as_argv)
    _field(payload, "query_command", path, issues, out, _as_argv)
    _field(payload, "timeout_seconds", path, issues, out, _as_positive_float)
    _field(payload, "poll_interval_seconds", path, issues, out, _as_positive_float)
    _field(payload, "credential", path, issues, out, _as_credential_name)
    if (
        "poll_interval_seconds" in out
        and "timeout_seconds" in out
        and out["poll_interval_seconds"] > out["timeout_seconds"]
    ):
        issues.add(_join(path, "poll_interval_seconds"), "must not exceed timeout_seconds")
    return out


def _validate_execution(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    allowed = {
        "default_timeout_seconds",
        "termination_grace_seconds",
        "max_output_chars",
        "max_parallel_operations",
        "hook_timeout_seconds",
    }
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)
    out: dict[str, Any] = {}
    _field(payload, "default_timeout_seconds", path, issues, out, _as_positive_float)
    _field(payload, "termination_grace_seconds", path, issues, out, _as_positive_float)
    _field(payload, "hook_timeout_seconds", path, issues, out, _as_positive_float)
    _field(payload, "max_output_chars", path, issues, out, lambda v, p, i: _as_int(v, p, i, minimum=1))
    _field(
        payload, "max_parallel_operations", path, issues, out, lambda v, p, i: _as_int(v, p, i, minimum=1)
    )
    return out


def _validate_notification(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    required = {"enabled", "recipients", "subject_template", "transport", "command"}
    _reject_unknown_keys(payload, required | {"sender"}, path, issues)
    _require_keys(payload, required, path, issues)
    out: dict[str, Any] = {}
    _field(payload, "enabled", path, issues, out, _as_bool)
    _field(payload, "subject_template", path, issues, out, _as_str)
    _field(
        payload,
        "transport",
        path,
        issues,
        out,
        lambda v, p, i: _as_enum(v, p, i, allowed_values=NOTIFICATION_TRANSPORTS),
    )
    _field(payload, "command", path, issues, out, _as_argv)
    _field(payload, "sender", path, issues, out, _as_str)
    if "recipients" in payload:
        recipients = _as_str_list(payload["recipients"], _join(path, "recipients"), issues)
        if recipients is not None:
            out["recipients"] = recipients
            if out.get("enabled") and not recipients:
                issues.add(_join(path, "recipients"), "must not be empty when notification is enabled")
    return out


def _validate_observability(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    allowed = {"log_level", "log_dir", "log_to_stdout", "redact_secrets"}
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)
    out: dict[str, Any] = {}
    if "log_level" in payload:
        raw = payload["log_level"]
        normalized = raw.strip().upper() if isinstance(raw, str) else raw
        level = _as_enum(normalized, _join(path, "log_level"), issues, allowed_values=LOG_LEVELS)
        if level is not None:
            out["log_level"] = level
    _field(payload, "log_dir", path, issues, out, _as_path_text)
    _field(payload, "log_to_stdout", path, issues, out, _as_bool)
    _field(payload, "redact_secrets", path, issues, out, _as_bool)
    return out


def _validate_credentials(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for name in sorted(payload):
        item_path = _join(path, name)
        if not _CREDENTIAL_NAME_PATTERN.fullmatch(name):
            issues.add(item_path, "credential names must match [a-z][a-z0-9_-]*")
            continue
        env_name = _as_env_name(payload[name], item_path, issues)
        if env_name is not None:
            out[name] = env_name
    return out


_SECTION_VALIDATORS: Final[
    dict[str, Callable[[Mapping[str, object], str, _IssueCollector], dict[str, Any]]]
] = {
    "meta": _validate_meta,
    "pipeline": _validate_pipeline,
    "commands": _validate_commands,
    "registry": _validate_registry,
    "quality_gate": _validate_quality_gate,
    "execution": _validate_execution,
    "notification": _validate_notification,
    "observability": _validate_observability,
    "credentials": _validate_credentials,
}

_CREDENTIAL_REFERENCES: Final[tuple[tuple[str, str], ...]] = (
    ("commands", "deploy_credential"),
    ("registry", "repository_credential"),
    ("registry", "image_credential"),
    ("quality_gate", "credential"),
)


def _check_credential_references(normalized: Mapping[str, Any], issues: _IssueCollector) -> None:
    defined = normalized.get("credentials", {})
    for section, key in _CREDENTIAL_REFERENCES:
        referenced = normalized.get(section, {}).get(key)
        if referenced is not None and referenced not in defined:
            issues.add(
                _join(section, key),
                f"credential {referenced!r} is not defined under [credentials]",
            )


# ---------------------------------------------------------------------------
# Typed construction
# ---------------------------------------------------------------------------


def _build_typed(normalized: Mapping[str, Any]) -> OrchestratorConfig:
    pipeline = normalized["pipeline"]
    commands = normalized["commands"]
    registry = normalized["registry"]
    gate = normalized["quality_gate"]
    execution = normalized["execution"]
    notification = normalized["notification"]
    observability = normalized["observability"]
    definition = pipeline.get("definition")
    return OrchestratorConfig(
        pipeline=PipelineSettings(
            name=pipeline["name"],
            build_number=pipeline["build_number"],
            workspace=Path(pipeline["workspace"]),
            reports_dir=Path(pipeline["reports_dir"]),
            ledger_path=Path(pipeline["ledger_path"]),
            definition=Path(definition) if definition is not None else None,
        ),
        commands=CommandSettings(
            test=tuple(commands["test"]),
            fs_scan=tuple(commands["fs_scan"]),
            build=tuple(commands["build"]),
            artifact_path=commands["artifact_path"],
            image_scan=tuple(commands["image_scan"]),
            deploy=tuple(commands["deploy"]),
            deploy_credential=commands.get("deploy_credential"),
        ),
        registry=RegistrySettings(
            image_name=registry["image_name"],
            push_command=tuple(registry["push_command"]),
            image_build_command=tuple(registry["image_build_command"]),
            image_tag_command=tuple(registry["image_tag_command"]),
            image_push_command=tuple(registry["image_push_command"]),
            repository_url=registry.get("repository_url"),
            image_registry=registry.get("image_registry"),
            repository_credential=registry.get("repository_credential"),
            image_credential=registry.get("image_credential"),
        ),
        quality_gate=QualityGateSettings(
            enabled=gate["enabled"],
            project_key=gate["project_key"],
            submit_command=tuple(gate["submit_command"]),
            query_command=tuple(gate["query_command"]),
            timeout_seconds=gate["timeout_seconds"],
            poll_interval_seconds=gate["poll_interval_seconds"],
            fail_on_warn=gate["fail_on_warn"],
            credential=gate.get("credential"),
        ),
        execution=ExecutionSettings(**execution),
        notification=NotificationSettings(
            enabled=notification["enabled"],
            recipients=tuple(notification["recipients"]),
            subject_template=notification["subject_template"],
            transport=notification["transport"],
            command=tuple(notification["command"]),
            sender=notification.get("sender"),
        ),
        observability=ObservabilitySettings(
            log_level=observability["log_level"],
            log_dir=Path(observability["log_dir"]),
            log_to_stdout=observability["log_to_stdout"],
            redact_secrets=observability["redact_secrets"],
        ),
        credentials=dict(normalized["credentials"]),
        raw=copy.deepcopy(dict(normalized)),
    )


# ---------------------------------------------------------------------------
# Primitive coercion helpers
# ---------------------------------------------------------------------------


def _field(
    payload: Mapping[str, object],
    key: str,
    path: str,
    issues: _IssueCollector,
    out: dict[str, Any],
    parser: Callable[[object, str, _IssueCollector], Any],
) -> None:
    if key not in payload:
        return
    parsed = parser(payload[key], _join(path, key), issues)
    if parsed is not None:
        out[key] = parsed


def _as_object(value: object, path: str, issues: _IssueCollector) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.add(path, f"expected object, got {type(value).__name__}")
        return None
    out: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            issues.add(path, f"object key must be string, got {type(key).__name__}")
            continue
        out[key] = item
    return out


def _as_str(value: object, path: str, issues: _IssueCollector) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    parsed = value.strip()
    if not parsed:
        issues.add(path, "must not be empty")
        return None
    return parsed


def _as_path_text(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if "\x00" in parsed:
        issues.add(path, "must not contain NUL bytes")
        return None
    return parsed


def _as_env_name(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if not _ENV_NAME_PATTERN.fullmatch(parsed):
        issues.add(path, "must be an env var name (example: REGISTRY_TOKEN)")
        return None
    return parsed


def _as_credential_name(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if not _CREDENTIAL_NAME_PATTERN.fullmatch(parsed):
        issues.add(path, "credential names must match [a-z][a-z0-9_-]*")
        return None
    return parsed


def _as_bool(value: object, path: str, issues: _IssueCollector) -> bool | None:
    if isinstance(value, bool):
        return value
    issues.add(path, f"expected boolean, got {type(value).__name__}")
    return None


def _as_int(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: int | None = None,
) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        issues.add(path, f"expected integer, got {type(value).__name__}")
        return None
    if minimum is not None and value < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return value


def _as_positive_float(value: object, path: str, issues: _IssueCollector) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        issues.add(path, f"expected number, got {type(value).__name__}")
        return None
    parsed = float(value)
    if not math.isfinite(parsed):
        issues.add(path, "must be finite")
        return None
    if parsed <= 0:
        issues.add(path, "must be > 0")
        return None
    return parsed


def _as_enum(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    allowed_values: tuple[str, ...],
) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if parsed not in allowed_values:
        expected = ", ".join(sorted(allowed_values))
        issues.add(path, f"invalid value {parsed!r}; expected one of: {expected}")
        return None
    return parsed


def _as_str_list(value: object, path: str, issues: _IssueCollector) -> list[str] | None:
    if not isinstance(value, (list, tuple)):
        issues.add(path, f"expected array of strings, got {type(value).__name__}")
        return None
    out: list[str] = []
    for index, item in enumerate(value):
        parsed = _as_str(item, f"{path}[{index}]", issues)
        if parsed is None:
            return None
        out.append(parsed)
    return out


def _as_argv(value: object, path: str, issues: _IssueCollector) -> list[str] | None:
    parsed = _as_str_list(value, path, issues)
    if parsed is None:
        return None
    if not parsed:
        issues.add(path, "must contain at least one item")
        return None
    return parsed


def _reject_unknown_keys(
    payload: Mapping[str, object],
    allowed: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(payload):
        if key in allowed:
            continue
        key_path = _join(path, key)
        if is_sensitive_key(key):
            issues.add(
                key_path,
                "embedded secret values are forbidden; declare the credential under [credentials]",
            )
        else:
            issues.add(key_path, "unknown field")


def _require_keys(
    payload: Mapping[str, object],
    required: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(required):
        if key not in payload:
            issues.add(_join(path, key), "missing required field")


def _merge_into(target: dict[str, Any], overlay: Mapping[str, object]) -> None:
    for key, value in overlay.items():
        existing = target.get(key)
        if isinstance(existing, dict) and isinstance(value, Mapping):
            _merge_into(existing, value)
        else:
            target[key] = copy.deepcopy(value)


def _join(path: str, key: str) -> str:
    return f"{path}.{key}" if path else key


__all__ = [
    "DEFAULT_CONFIG",
    "LOG_LEVELS",
    "NOTIFICATION_TRANSPORTS",
    "PATH_FIELDS",
    "CommandSettings",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "ExecutionSettings",
    "NotificationSettings",
    "ObservabilitySettings",
    "OrchestratorConfig",
    "PipelineSettings",
    "QualityGateSettings",
    "RegistrySettings",
    "assert_valid_config",
    "default_config",
    "dump_redacted",
    "merge_config",
    "validate_config",
]
