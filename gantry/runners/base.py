"""Base interface for process runners."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Mapping, Optional

from gantry.pipeline.cancellation import CancellationToken


@dataclass
class ProcessResult:
    """Outcome of one external command."""
    command: str
    exit_code: Optional[int]
    output: str = ""
    duration_ms: int = 0
    cancelled: bool = False  # Stopped because the token was cancelled
    killed: bool = False     # Needed SIGKILL after the grace period

    @property
    def succeeded(self) -> bool:
        return not self.cancelled and self.exit_code == 0


class ProcessRunner(ABC):
    """Runs an external command and reports its exit code and output."""

    @abstractmethod
    def run(
        self,
        command: str,
        cwd: Optional[str] = None,
        env: Optional[Mapping[str, str]] = None,
        token: Optional[CancellationToken] = None,
        on_output: Optional[Callable[[str], None]] = None,
    ) -> ProcessResult:
        """
        Execute ``command`` and block until it exits or ``token`` is cancelled.

        Args:
            command: Shell command line
            cwd: Working directory
            env: Full process environment
            token: Cancellation token; the process is stopped when it fires
            on_output: Called with each output line as it is produced

        Returns:
            ProcessResult (``cancelled`` set when stopped by the token)
        """
