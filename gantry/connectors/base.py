"""Base connector with rate limiting, retry logic, and timeout handling."""

import logging
import time
from datetime import datetime
from typing import Any, Optional, Tuple

import requests

from gantry.utils.http_errors import extract_retry_after
from gantry.utils.retry import RetryConfig, ServiceUnavailableError, retry_transient

logger = logging.getLogger(__name__)


class TokenBucket:
    """Token bucket rate limiter."""

    def __init__(self, rate_per_second: float):
        """
        Initialize token bucket.

        Args:
            rate_per_second: Maximum requests per second
        """
        self.rate = rate_per_second
        self.tokens = rate_per_second
        self.last_update = time.time()
        self.capacity = rate_per_second

    def acquire(self, tokens: int = 1) -> float:
        """
        Acquire tokens, blocking if necessary.

        Args:
            tokens: Number of tokens to acquire

        Returns:
            float: Time waited in seconds
        """
        now = time.time()
        elapsed = now - self.last_update
        self.tokens = min(self.capacity, self.tokens + elapsed * self.rate)
        self.last_update = now

        if self.tokens >= tokens:
            self.tokens -= tokens
            return 0.0

        wait_time = (tokens - self.tokens) / self.rate
        time.sleep(wait_time)
        self.tokens = 0.0
        self.last_update = time.time()
        return wait_time


class BaseConnector:
    """Base connector for HTTP-backed external services (Nexus, job server, webhooks)."""

    def __init__(
        self,
        base_url: str,
        auth: Optional[Tuple[str, str]] = None,
        rate_limit_per_second: float = 10.0,
        timeout_seconds: int = 60,
        retry_config: Optional[RetryConfig] = None,
        session: Optional[requests.Session] = None,
    ):
        """
        Initialize base connector.

        Args:
            base_url: Base URL for the service API
            auth: Optional (user, password) for HTTP basic auth
            rate_limit_per_second: Maximum requests per second
            timeout_seconds: Request timeout in seconds
            retry_config: Transport retry policy (503/504/connection errors only)
            session: Optional requests session (tests inject their own)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout_seconds
        self.retry_config = retry_config or RetryConfig()
        self.session = session or requests.Session()
        if auth:
            self.session.auth = auth

        # Rate limiter
        self.rate_limiter = TokenBucket(rate_limit_per_second)

        # Circuit breaker state
        self.circuit_breaker_failures = 0
        self.circuit_breaker_last_failure = None
        self.circuit_breaker_threshold = 5
        self.circuit_breaker_reset_timeout = 60  # seconds

    def is_circuit_open(self) -> bool:
        """Check if circuit breaker is open."""
        if self.circuit_breaker_failures < self.circuit_breaker_threshold:
            return False

        if self.circuit_breaker_last_failure is None:
            return False

        elapsed = (datetime.now() - self.circuit_breaker_last_failure).total_seconds()
        if elapsed > self.circuit_breaker_reset_timeout:
            self.circuit_breaker_failures = 0
            self.circuit_breaker_last_failure = None
            return False

        return True

    def record_failure(self):
        """Record a failure for circuit breaker."""
        self.circuit_breaker_failures += 1
        self.circuit_breaker_last_failure = datetime.now()

    def record_success(self):
        """Record a success, reset circuit breaker."""
        self.circuit_breaker_failures = 0
        self.circuit_breaker_last_failure = None

    def url(self, *segments: str) -> str:
        return "/".join([self.base_url] + [s.strip("/") for s in segments])

    def request(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        """
        Send a request with rate limiting, circuit breaking and transport retries.

        Status codes are not interpreted here; callers translate them.
        """
        kwargs.setdefault("timeout", self.timeout)

        def _send() -> requests.Response:
            self.rate_limiter.acquire()
            if self.is_circuit_open():
                raise ServiceUnavailableError(f"Circuit breaker is open for {self.base_url}")
            try:
                response = self.session.request(method, url, **kwargs)
            except (requests.ConnectionError, requests.Timeout):
                self.record_failure()
                raise
            if response.status_code in self.retry_config.retryable_status_codes:
                self.record_failure()
                raise ServiceUnavailableError(
                    f"{method} {url} returned {response.status_code}",
                    retry_after=extract_retry_after(response),
                )
            self.record_success()
            return response

        return retry_transient(_send, self.retry_config, f"{method} {url}")

