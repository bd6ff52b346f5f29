"""
stage-orchestrator — artifact versioning

File: src/stage_orchestrator/versioning/tags.py

Purpose
- Derive version tags for build artifacts and publish them so consumers never
  observe a half-published release.

Normative behavior
- The default scheme yields exactly two tags: the run's numeric build number
  and ``latest``; both point at the same content digest.
- A numeric tag is bound to one digest forever. ``latest`` is the only tag that
  moves between digests.
- ``BuildNumberLedger`` refuses a build number that is not strictly greater
  than every build number previously claimed by the same pipeline.
- Registries publish numeric tags before ``latest`` so that a consumer who
  resolves ``latest`` always finds the matching numeric tag in place.
"""

from __future__ import annotations

import asyncio
import json
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Final, Protocol, runtime_checkable

import structlog

from stage_orchestrator.constants import LATEST_TAG
from stage_orchestrator.domain.errors import OperationFailure
from stage_orchestrator.domain.models import Artifact, OperationResult
from stage_orchestrator.execution.command import CommandSpec
from stage_orchestrator.utils.fs import atomic_write_json

if TYPE_CHECKING:
    from stage_orchestrator.engine.operations import OperationContext
    from stage_orchestrator.execution.command import CommandExecutor

logger = structlog.get_logger(__name__)

REGISTRY_PLACEHOLDERS: Final[frozenset[str]] = frozenset(
    {"name", "digest", "location", "file_name", "tag"}
)


@runtime_checkable
class TagScheme(Protocol):
    def tags_for(self, artifact: Artifact) -> frozenset[str]: ...


@dataclass(frozen=True, slots=True)
class DefaultTagScheme:
    """``{<build_number>, "latest"}``."""

    build_number: int

    def __post_init__(self) -> None:
        if isinstance(self.build_number, bool) or self.build_number < 0:
            raise ValueError("DefaultTagScheme.build_number: must be a non-negative integer")

    def tags_for(self, artifact: Artifact) -> frozenset[str]:
        return frozenset({str(self.build_number), LATEST_TAG})


def is_numeric_tag(tag: str) -> bool:
    return tag.isdigit()


def ordered_for_publish(tags: frozenset[str]) -> tuple[str, ...]:
    """Immutable tags first, ``latest`` last."""

    numeric = sorted((tag for tag in tags if is_numeric_tag(tag)), key=int)
    other = sorted(tag for tag in tags if not is_numeric_tag(tag) and tag != LATEST_TAG)
    tail = [LATEST_TAG] if LATEST_TAG in tags else []
    return (*numeric, *other, *tail)


class ArtifactVersioner:
    """Apply a tag scheme to artifacts."""

    def tag(self, artifact: Artifact, scheme: TagScheme) -> frozenset[str]:
        tags = frozenset(scheme.tags_for(artifact))
        if not tags:
            raise ValueError(f"tag scheme produced no tags for {artifact.name!r}")
        for tag in tags:
            if not tag or tag != tag.strip():
                raise ValueError(f"invalid tag {tag!r} for {artifact.name!r}")
        return tags

    def apply(self, artifact: Artifact, scheme: TagScheme) -> Artifact:
        return artifact.with_tags(self.tag(artifact, scheme))


class BuildNumberReused(ValueError):
    """Raised when a build number would repeat within a pipeline lineage."""


class BuildNumberLedger:
    """Highest build number claimed per pipeline, optionally persisted as JSON."""

    def __init__(self, path: Path | str | None = None) -> None:
        self._path = Path(path) if path is not None else None
        self._lock = threading.Lock()
        self._claimed: dict[str, int] = self._load()

    def last(self, pipeline_name: str) -> int | None:
        return self._claimed.get(pipeline_name)

    def claim(self, pipeline_name: str, build_number: int) -> None:
        if isinstance(build_number, bool) or build_number < 0:
            raise ValueError("build_number must be a non-negative integer")
        with self._lock:
            previous = self._claimed.get(pipeline_name)
            if previous is not None and build_number <= previous:
                raise BuildNumberReused(
                    f"build number {build_number} for pipeline {pipeline_name!r} "
                    f"is not greater than previously used {previous}"
                )
            self._claimed[pipeline_name] = build_number
            self._persist()

    def _load(self) -> dict[str, int]:
        if self._path is None or not self._path.exists():
            return {}
        payload = json.loads(self._path.read_text(encoding="utf-8"))
        pipelines = payload.get("pipelines", {}) if isinstance(payload, Mapping) else {}
        if not isinstance(pipelines, Mapping):
            raise ValueError(f"{self._path}: 'pipelines' must be an object")
        return {str(name): int(value) for name, value in pipelines.items()}

    def _persist(self) -> None:
        if self._path is None:
            return
        atomic_write_json(self._path, {"pipelines": dict(sorted(self._claimed.items()))})


class TagConflict(RuntimeError):
    """A numeric tag already points at different content."""


@runtime_checkable
class ArtifactRegistry(Protocol):
    async def publish(self, artifact: Artifact) -> Artifact: ...


class InMemoryArtifactRegistry:
    """Registry whose tag table is swapped under one lock per publish."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._tags: dict[tuple[str, str], str] = {}
        self._content: dict[str, Artifact] = {}

    async def publish(self, artifact: Artifact) -> Artifact:
        if not artifact.tags:
            raise ValueError(f"artifact {artifact.name!r} has no tags to publish")
        async with self._lock:
            for tag in artifact.tags:
                if tag == LATEST_TAG:
                    continue
                existing = self._tags.get((artifact.name, tag))
                if existing is not None and existing != artifact.digest:
                    raise TagConflict(
                        f"{artifact.name}:{tag} already points at {existing}"
                    )
            for tag in ordered_for_publish(artifact.tags):
                self._tags[(artifact.name, tag)] = artifact.digest
            self._content[artifact.digest] = artifact
        return artifact

    def resolve(self, name: str, tag: str) -> Artifact | None:
        digest = self._tags.get((name, tag))
        if digest is None:
            return None
        stored = self._content[digest]
        tags = frozenset(t for (n, t), d in self._tags.items() if n == name and d == digest)
        return stored.with_tags(tags)


class CommandArtifactRegistry:
    """Publish by running an external push command once per tag.

    ``push_argv`` may reference ``{name}``, ``{digest}``, ``{location}``,
    ``{file_name}`` and ``{tag}``, plus any key of ``variables``. An optional
    ``tag_argv`` runs before each push (e.g. a container ``tag`` command).
    ``latest`` is always pushed last.
    """

    def __init__(
        self,
        executor: CommandExecutor,
        *,
        push_argv: tuple[str, ...],
        tag_argv: tuple[str, ...] | None = None,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
        timeout_seconds: float | None = None,
        variables: Mapping[str, str] | None = None,
    ) -> None:
        self._executor = executor
        self._variables = dict(variables or {})
        self._push_argv = tuple(push_argv)
        self._tag_argv = tuple(tag_argv) if tag_argv else None
        self._cwd = cwd
        self._env = dict(env or {})
        self._timeout_seconds = timeout_seconds

    async def publish(self, artifact: Artifact) -> Artifact:
        for tag in ordered_for_publish(artifact.tags):
            location = artifact.location or artifact.name
            values = {
                **self._variables,
                "name": artifact.name,
                "digest": artifact.digest,
                "location": location,
                "file_name": PurePosixPath(location).name,
                "tag": tag,
            }
            if self._tag_argv is not None:
                await self._run(self._tag_argv, values)
            await self._run(self._push_argv, values)
            logger.info("artifact_tag_published", artifact=artifact.name, tag=tag)
        return artifact

    async def _run(self, template: tuple[str, ...], values: Mapping[str, str]) -> None:
        spec = CommandSpec(
            argv=tuple(item.format_map(values) for item in template),
            cwd=self._cwd,
            env=self._env,
            timeout_seconds=self._timeout_seconds,
        )
        result = await self._executor.execute(spec, self._timeout_seconds)
        if not result.is_success(spec):
            raise OperationFailure(
                f"publishing {values['name']}:{values['tag']} failed: {result.describe()}",
                exit_code=result.exit_code,
                timed_out=result.timed_out,
                output=result.output,
            )


RegistryFactory = Callable[["OperationContext"], ArtifactRegistry]
SchemeFactory = Callable[["OperationContext"], TagScheme]


def default_scheme_factory(context: OperationContext) -> TagScheme:
    return DefaultTagScheme(context.build_number)


@dataclass(frozen=True, slots=True)
class PublishOperation:
    """Tag an artifact produced earlier in the run and publish it."""

    operation_id: str
    artifact_name: str
    registry_factory: RegistryFactory
    scheme_factory: SchemeFactory = default_scheme_factory
    timeout_seconds: float | None = None
    credentials: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "credentials", tuple(self.credentials))

    async def execute(self, context: OperationContext) -> OperationResult:
        artifact = context.artifact(self.artifact_name)
        tagged = ArtifactVersioner().apply(artifact, self.scheme_factory(context))
        registry = self.registry_factory(context)
        try:
            published = await registry.publish(tagged)
        except TagConflict as exc:
            raise OperationFailure(str(exc), operation_id=self.operation_id) from exc
        except OperationFailure as exc:
            raise OperationFailure(
                str(exc),
                operation_id=self.operation_id,
                exit_code=exc.exit_code,
                timed_out=exc.timed_out,
                output=exc.output,
            ) from exc
        return OperationResult(
            operation_id=self.operation_id,
            succeeded=True,
            output=f"published {published.name} as {', '.join(ordered_for_publish(published.tags))}",
            artifact=published,
            published=(published,),
        )


__all__ = [
    "REGISTRY_PLACEHOLDERS",
    "ArtifactRegistry",
    "ArtifactVersioner",
    "BuildNumberLedger",
    "BuildNumberReused",
    "CommandArtifactRegistry",
    "DefaultTagScheme",
    "InMemoryArtifactRegistry",
    "PublishOperation",
    "RegistryFactory",
    "SchemeFactory",
    "TagConflict",
    "TagScheme",
    "default_scheme_factory",
    "is_numeric_tag",
    "ordered_for_publish",
]
