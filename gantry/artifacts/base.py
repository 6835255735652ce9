"""Base interface for artifact stores."""

import re
from abc import ABC, abstractmethod
from typing import List

_SEGMENT = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._+-]*$")


def validate_coordinate(repository: str, version: str, filename: str) -> str:
    """
    Check each coordinate segment and return the display form.

    Raises:
        ValueError: If a segment is empty or could escape its directory
    """
    for label, value in (("repository", repository), ("version", version), ("filename", filename)):
        if not value or not _SEGMENT.match(value) or ".." in value:
            raise ValueError(f"Invalid artifact {label} '{value}'")
    return f"{repository}/{version}/{filename}"


class ArtifactStore(ABC):
    """Versioned artifact repository.

    Coordinates are (repository, version, filename). A version is immutable
    once uploaded: re-uploading an existing coordinate needs ``overwrite``.
    """

    @abstractmethod
    def upload(self, repository: str, version: str, filename: str, data: bytes, overwrite: bool = False) -> str:
        """
        Store ``data`` at the coordinate.

        Returns:
            Location of the stored artifact

        Raises:
            ConflictError: If the coordinate exists and overwrite is False
        """

    @abstractmethod
    def download(self, repository: str, version: str, filename: str) -> bytes:
        """
        Fetch the artifact bytes.

        Raises:
            NotFoundError: If the coordinate does not exist
        """

    @abstractmethod
    def exists(self, repository: str, version: str, filename: str) -> bool:
        """Whether the coordinate exists."""

    def list_versions(self, repository: str) -> List[str]:
        """Versions present in a repository (optional capability)."""
        raise NotImplementedError(f"{type(self).__name__} cannot list versions")
