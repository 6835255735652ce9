"""Nexus-style HTTP artifact store.

Contract:
    PUT /{repository}/{version}/{filename}   upload
    GET /{repository}/{version}/{filename}   download
    HEAD /{repository}/{version}/{filename}  existence check
"""

import logging
from typing import Optional, Tuple

import requests

from gantry.artifacts.base import ArtifactStore, validate_coordinate
from gantry.connectors.base import BaseConnector
from gantry.errors import ConflictError
from gantry.utils.http_errors import raise_for_artifact_status
from gantry.utils.retry import RetryConfig

logger = logging.getLogger(__name__)


class NexusArtifactStore(BaseConnector, ArtifactStore):
    """Artifact store talking to a raw-format Nexus (or compatible) repository."""

    def __init__(
        self,
        base_url: str,
        auth: Optional[Tuple[str, str]] = None,
        timeout_seconds: int = 120,
        retry_config: Optional[RetryConfig] = None,
        session: Optional[requests.Session] = None,
    ):
        super().__init__(
            base_url=base_url,
            auth=auth,
            timeout_seconds=timeout_seconds,
            retry_config=retry_config,
            session=session,
        )

    def upload(self, repository: str, version: str, filename: str, data: bytes, overwrite: bool = False) -> str:
        coordinate = validate_coordinate(repository, version, filename)
        url = self.url(repository, version, filename)

        # Raw repositories may allow redeploy, so immutability is enforced client-side too
        if not overwrite and self.exists(repository, version, filename):
            raise ConflictError(f"Artifact already exists: {coordinate}")

        response = self.request(
            "PUT", url, data=data, headers={"Content-Type": "application/octet-stream"}
        )
        raise_for_artifact_status(response, coordinate, upload=True)
        logger.info(f"Uploaded {coordinate} to {self.base_url} ({len(data)} bytes)")
        return url

    def download(self, repository: str, version: str, filename: str) -> bytes:
        coordinate = validate_coordinate(repository, version, filename)
        response = self.request("GET", self.url(repository, version, filename))
        raise_for_artifact_status(response, coordinate)
        return response.content

    def exists(self, repository: str, version: str, filename: str) -> bool:
        coordinate = validate_coordinate(repository, version, filename)
        response = self.request("HEAD", self.url(repository, version, filename))
        if response.status_code == 404:
            return False
        raise_for_artifact_status(response, coordinate)
        return True
