"""Scanner interface for static analysis and quality-gate steps."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from gantry.pipeline.cancellation import CancellationToken
from gantry.pipeline.environment import Environment


@dataclass
class ScanReport:
    """Outcome of a scan step. ``passed`` decides the step result."""

    scanner: str
    passed: bool
    findings: List[str] = field(default_factory=list)
    summary: str = ""
    output: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scanner": self.scanner,
            "passed": self.passed,
            "findings": len(self.findings),
            "summary": self.summary,
        }


class Scanner(ABC):
    """A named analysis tool invoked by ``scan`` steps."""

    name: str = "scanner"

    @abstractmethod
    def scan(
        self,
        config: Dict[str, Any],
        env: Environment,
        token: Optional[CancellationToken] = None,
        cwd: Optional[str] = None,
    ) -> ScanReport:
        """
        Run the scanner.

        Args:
            config: Step-level scanner configuration (already interpolated)
            env: Active environment of the step
            token: Cancellation token of the calling stage
            cwd: Working directory for the scan

        Returns:
            ScanReport
        """
