"""Shared HTTP error translation for external services."""

import logging
from typing import Optional

import requests

from gantry.errors import ConflictError, NotFoundError, TriggerError
from gantry.utils.retry import ServiceUnavailableError

logger = logging.getLogger(__name__)


def extract_retry_after(response: requests.Response) -> Optional[float]:
    """
    Extract a Retry-After value (seconds) from a response.

    Args:
        response: HTTP response

    Returns:
        Float seconds to wait, or None if not available
    """
    retry_after_header = response.headers.get("retry-after")
    if retry_after_header:
        try:
            return float(retry_after_header)
        except ValueError:
            pass
    return None


def raise_for_artifact_status(response: requests.Response, coordinate: str, upload: bool = False) -> None:
    """
    Translate artifact repository responses into pipeline errors.

    Raises:
        ServiceUnavailableError: 502/503/504
        NotFoundError: 404
        ConflictError: 409, or a 400 answering an upload (Nexus refuses release redeploys that way)
        requests.HTTPError: anything else non-2xx
    """
    status = response.status_code
    if status in (502, 503, 504):
        logger.warning(f"Artifact repository unavailable (status {status}) for {coordinate}")
        raise ServiceUnavailableError(
            f"Artifact repository unavailable: {status}",
            retry_after=extract_retry_after(response),
        )
    if status == 404:
        raise NotFoundError(f"Artifact not found: {coordinate}")
    if status == 409 or (upload and status == 400):
        raise ConflictError(f"Artifact already exists: {coordinate}")
    response.raise_for_status()


def raise_for_trigger_status(response: requests.Response, job_ref: str) -> None:
    """
    Translate downstream job API responses into TriggerError.

    Raises:
        ServiceUnavailableError: 502/503/504 (retryable)
        TriggerError: 404 (unknown job) and any other non-2xx status
    """
    status = response.status_code
    if status in (502, 503, 504):
        logger.warning(f"Job service unavailable (status {status}) for {job_ref}")
        raise ServiceUnavailableError(
            f"Job service unavailable: {status}",
            retry_after=extract_retry_after(response),
        )
    if status == 404:
        raise TriggerError(f"Unknown downstream job '{job_ref}'")
    if status >= 400:
        raise TriggerError(f"Triggering '{job_ref}' failed with status {status}: {response.text[:200]}")
