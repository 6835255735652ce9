"""Artifact store laid out on a local directory tree."""

import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import List, Optional

from gantry.artifacts.base import ArtifactStore, validate_coordinate
from gantry.errors import ConflictError, NotFoundError

logger = logging.getLogger(__name__)


class FileSystemArtifactStore(ArtifactStore):
    """Stores artifacts at ``<root>/<repository>/<version>/<filename>``."""

    def __init__(self, root: Optional[str] = None):
        self.root = Path(root or os.path.join(os.getcwd(), "artifacts"))
        self.root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _path(self, repository: str, version: str, filename: str) -> Path:
        validate_coordinate(repository, version, filename)
        return self.root / repository / version / filename

    def upload(self, repository: str, version: str, filename: str, data: bytes, overwrite: bool = False) -> str:
        target = self._path(repository, version, filename)
        with self._lock:
            if target.exists() and not overwrite:
                raise ConflictError(f"Artifact already exists: {repository}/{version}/{filename}")
            target.parent.mkdir(parents=True, exist_ok=True)
            # Write then rename so readers never see a partial file
            fd, tmp_path = tempfile.mkstemp(dir=target.parent, prefix=".upload-")
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(data)
                os.replace(tmp_path, target)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.remove(tmp_path)
                raise
        logger.info(f"Stored artifact {target} ({len(data)} bytes)")
        return target.as_uri()

    def download(self, repository: str, version: str, filename: str) -> bytes:
        target = self._path(repository, version, filename)
        if not target.is_file():
            raise NotFoundError(f"Artifact not found: {repository}/{version}/{filename}")
        return target.read_bytes()

    def exists(self, repository: str, version: str, filename: str) -> bool:
        return self._path(repository, version, filename).is_file()

    def list_versions(self, repository: str) -> List[str]:
        repo_dir = self.root / repository
        if not repo_dir.is_dir():
            return []
        return sorted(p.name for p in repo_dir.iterdir() if p.is_dir())
