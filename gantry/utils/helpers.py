import os
import re
from datetime import datetime, timezone
from typing import Optional, Union

from flask import current_app

MASK = "****"

_DURATION_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0, None: 1.0}


def _debug_runs_enabled() -> bool:
    return os.environ.get("GANTRY_DEBUG_RUNS", "").lower() in ("1", "true", "yes")


def debug_run_log(message: str) -> None:
    if not _debug_runs_enabled():
        return
    try:
        current_app.logger.info(message)
    except RuntimeError:
        print(message)


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def parse_duration(value: Union[str, int, float, None]) -> Optional[float]:
    """Parse '90', '90s', '10m', '1.5h' or a number into seconds."""
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    match = _DURATION_PATTERN.match(value)
    if not match:
        raise ValueError(f"Invalid duration '{value}'")
    return float(match.group(1)) * _DURATION_UNITS[match.group(2)]


def seconds_between(started_at: Optional[str], finished_at: Optional[str]) -> Optional[float]:
    if not started_at or not finished_at:
        return None
    return (datetime.fromisoformat(finished_at) - datetime.fromisoformat(started_at)).total_seconds()


def format_duration(seconds: Optional[float]) -> str:
    if seconds is None:
        return "-"
    if seconds < 1:
        return f"{int(seconds * 1000)}ms"
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, secs = divmod(int(seconds), 60)
    return f"{minutes}m{secs:02d}s"


def truncate_output(text: str, limit: int = 64 * 1024) -> str:
    """Keep the tail of long command output."""
    if len(text) <= limit:
        return text
    return "...[truncated]...\n" + text[-limit:]
