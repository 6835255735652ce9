"""In-process artifact store."""

import threading
from typing import Dict, List, Tuple

from gantry.artifacts.base import ArtifactStore, validate_coordinate
from gantry.errors import ConflictError, NotFoundError


class InMemoryArtifactStore(ArtifactStore):
    """Thread-safe dictionary-backed store, used for tests and local runs."""

    def __init__(self) -> None:
        self._blobs: Dict[Tuple[str, str, str], bytes] = {}
        self._lock = threading.Lock()

    def upload(self, repository: str, version: str, filename: str, data: bytes, overwrite: bool = False) -> str:
        coordinate = validate_coordinate(repository, version, filename)
        key = (repository, version, filename)
        with self._lock:
            if key in self._blobs and not overwrite:
                raise ConflictError(f"Artifact already exists: {coordinate}")
            self._blobs[key] = bytes(data)
        return f"memory://{coordinate}"

    def download(self, repository: str, version: str, filename: str) -> bytes:
        coordinate = validate_coordinate(repository, version, filename)
        with self._lock:
            try:
                return self._blobs[(repository, version, filename)]
            except KeyError:
                raise NotFoundError(f"Artifact not found: {coordinate}") from None

    def exists(self, repository: str, version: str, filename: str) -> bool:
        with self._lock:
            return (repository, version, filename) in self._blobs

    def list_versions(self, repository: str) -> List[str]:
        with self._lock:
            return sorted({version for repo, version, _ in self._blobs if repo == repository})
