"""Transport retries for HTTP-backed capabilities.

Only a busy or unreachable service is retried: 503/504 responses, connection
errors and request timeouts. Conflicts, missing artifacts and failed jobs are
answers, not outages, and surface on the first attempt.
"""

import logging
import random
import time
from typing import Callable, Optional, Tuple, TypeVar

import requests

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ServiceUnavailableError(Exception):
    """The remote service is busy or down (HTTP 503/504, open circuit)."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


TRANSIENT_ERRORS = (ServiceUnavailableError, requests.ConnectionError, requests.Timeout)


class RetryConfig:
    """Backoff policy for one connector: delays double from ``base_delay`` up to ``max_delay``."""

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        jitter: bool = True,
        retryable_status_codes: Tuple[int, ...] = (503, 504),
    ):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self.retryable_status_codes = retryable_status_codes

    def delay_before(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """Seconds to sleep before retry number ``attempt`` (0-indexed); Retry-After wins when sent."""
        if retry_after is not None:
            delay = min(retry_after, self.max_delay)
        else:
            delay = min(self.base_delay * 2 ** attempt, self.max_delay)
        if self.jitter:
            delay = max(0.1, delay * random.uniform(0.75, 1.25))
        return delay


def retry_transient(send: Callable[[], T], config: RetryConfig, target: str) -> T:
    """
    Call ``send`` until it returns or fails with a non-transient error.

    Raises:
        The last transient error once ``config.max_retries`` retries are spent
    """
    for attempt in range(config.max_retries + 1):
        try:
            return send()
        except TRANSIENT_ERRORS as e:
            if attempt >= config.max_retries:
                logger.error(f"{target}: giving up after {attempt + 1} attempts: {e}")
                raise
            delay = config.delay_before(attempt, getattr(e, "retry_after", None))
            logger.warning(f"{target}: attempt {attempt + 1} failed ({e}), retrying in {delay:.2f}s")
            time.sleep(delay)
