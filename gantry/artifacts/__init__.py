"""Artifact stores: versioned build outputs shared between build and deploy."""

from gantry.artifacts.base import ArtifactStore, validate_coordinate
from gantry.artifacts.filesystem import FileSystemArtifactStore
from gantry.artifacts.memory import InMemoryArtifactStore
from gantry.artifacts.nexus import NexusArtifactStore

__all__ = [
    "ArtifactStore",
    "FileSystemArtifactStore",
    "InMemoryArtifactStore",
    "NexusArtifactStore",
    "validate_coordinate",
]
