"""Registry of named scanners available to ``scan`` steps."""

import logging
import threading
from typing import Dict, List, Optional

from gantry.errors import CapabilityMissing
from gantry.scanners.base import Scanner

logger = logging.getLogger(__name__)


class ScannerRegistry:
    """Thread-safe name -> Scanner lookup."""

    def __init__(self, scanners: Optional[Dict[str, Scanner]] = None):
        self._scanners: Dict[str, Scanner] = dict(scanners or {})
        self._lock = threading.Lock()

    def register(self, scanner: Scanner, name: Optional[str] = None) -> None:
        key = name or scanner.name
        with self._lock:
            if key in self._scanners:
                logger.warning(f"Replacing scanner '{key}'")
            self._scanners[key] = scanner

    def get(self, name: str) -> Scanner:
        with self._lock:
            scanner = self._scanners.get(name)
        if scanner is None:
            raise CapabilityMissing(f"No scanner registered under '{name}'")
        return scanner

    def names(self) -> List[str]:
        with self._lock:
            return sorted(self._scanners)

    def __contains__(self, name: str) -> bool:
        with self._lock:
            return name in self._scanners
