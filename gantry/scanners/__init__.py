"""Scanners for static analysis / quality-gate steps."""

from .base import ScanReport, Scanner
from .command import CommandScanner
from .registry import ScannerRegistry

__all__ = ["ScanReport", "Scanner", "CommandScanner", "ScannerRegistry"]
