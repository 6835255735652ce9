"""Lexically scoped pipeline environment.

An Environment is an immutable chain of frames. ``overlay()`` returns a new
child frame that shadows its parent; the parent is never mutated, so frames
can be shared freely between parallel branches.
"""

import logging
import os
import re
from typing import Any, Dict, Iterator, Mapping, Optional

logger = logging.getLogger(__name__)

VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class Environment(Mapping[str, str]):
    """Read-only mapping of variable name to string value with overlay frames."""

    def __init__(
        self,
        entries: Optional[Mapping[str, Any]] = None,
        parent: Optional["Environment"] = None,
        masked: Optional[set] = None,
    ):
        self._frame: Dict[str, str] = {k: _to_str(v) for k, v in (entries or {}).items()}
        self._parent = parent
        self._masked = set(masked or ())
        if parent is not None:
            self._masked |= parent._masked

    def overlay(self, entries: Optional[Mapping[str, Any]] = None, masked: Optional[set] = None) -> "Environment":
        """Create a child frame. An empty overlay still yields an independent frame."""
        return Environment(entries, parent=self, masked=masked)

    @property
    def parent(self) -> Optional["Environment"]:
        return self._parent

    @property
    def masked(self) -> set:
        """Names whose values must not appear in logs or snapshots."""
        return set(self._masked)

    @property
    def depth(self) -> int:
        return 0 if self._parent is None else self._parent.depth + 1

    def __getitem__(self, key: str) -> str:
        if key in self._frame:
            return self._frame[key]
        if self._parent is not None:
            return self._parent[key]
        raise KeyError(key)

    def __contains__(self, key: object) -> bool:
        if key in self._frame:
            return True
        return self._parent is not None and key in self._parent

    def __iter__(self) -> Iterator[str]:
        return iter(self.as_dict())

    def __len__(self) -> int:
        return len(self.as_dict())

    def as_dict(self) -> Dict[str, str]:
        """Flatten the chain, innermost frame wins."""
        merged = self._parent.as_dict() if self._parent is not None else {}
        merged.update(self._frame)
        return merged

    def masked_dict(self, mask: str = "****") -> Dict[str, str]:
        return {k: (mask if k in self._masked else v) for k, v in self.as_dict().items()}

    def process_env(self, inherit: bool = True) -> Dict[str, str]:
        """Environment handed to external processes."""
        env = dict(os.environ) if inherit else {}
        env.update(self.as_dict())
        return env

    def interpolate(self, value: Any) -> Any:
        """Expand ``${VAR}`` references in strings, dicts and lists."""
        if isinstance(value, str):
            def replace_var(match):
                var_name = match.group(1)
                if var_name not in self:
                    logger.warning(f"Variable '{var_name}' is not defined, using empty string")
                    return ""
                return self[var_name]

            return VAR_PATTERN.sub(replace_var, value)
        elif isinstance(value, dict):
            return {k: self.interpolate(v) for k, v in value.items()}
        elif isinstance(value, list):
            return [self.interpolate(item) for item in value]
        return value

    def __repr__(self) -> str:
        return f"Environment(depth={self.depth}, vars={len(self)})"


def _to_str(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    return str(value)
