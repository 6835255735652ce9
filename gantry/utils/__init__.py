"""Utility modules for gantry.

This package contains shared utilities:
- helpers: logging helper, durations and timestamps
- retry: Retry logic for HTTP-backed capabilities
- http_errors: HTTP status translation into pipeline errors
"""

from gantry.utils.helpers import (
    MASK,
    debug_run_log,
    format_duration,
    parse_duration,
    seconds_between,
    truncate_output,
    utcnow_iso,
)

from gantry.utils.retry import (
    RetryConfig,
    ServiceUnavailableError,
    retry_transient,
)

__all__ = [
    # helpers
    "MASK",
    "debug_run_log",
    "format_duration",
    "parse_duration",
    "seconds_between",
    "truncate_output",
    "utcnow_iso",
    # retry
    "RetryConfig",
    "ServiceUnavailableError",
    "retry_transient",
]
