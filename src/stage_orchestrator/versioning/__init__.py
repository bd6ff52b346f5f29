"""Artifact version tags, build-number ledger and registries."""

from stage_orchestrator.versioning.tags import (
    ArtifactRegistry,
    ArtifactVersioner,
    BuildNumberLedger,
    BuildNumberReused,
    CommandArtifactRegistry,
    DefaultTagScheme,
    InMemoryArtifactRegistry,
    PublishOperation,
    TagConflict,
    TagScheme,
)

__all__ = [
    "ArtifactRegistry",
    "ArtifactVersioner",
    "BuildNumberLedger",
    "BuildNumberReused",
    "CommandArtifactRegistry",
    "DefaultTagScheme",
    "InMemoryArtifactRegistry",
    "PublishOperation",
    "TagConflict",
    "TagScheme",
]
