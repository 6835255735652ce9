"""Downstream job trigger interface."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from gantry.pipeline.cancellation import CancellationToken

# Downstream states reported by trigger implementations
QUEUED = "QUEUED"
RUNNING = "RUNNING"
SUCCESS = "SUCCESS"
FAILURE = "FAILURE"
ABORTED = "ABORTED"

TERMINAL_STATES = {SUCCESS, FAILURE, ABORTED}


@dataclass
class TriggerResult:
    """Acknowledgment (wait=False) or final outcome (wait=True) of a downstream job."""

    job: str
    status: str
    run_id: Optional[str] = None
    exit_code: Optional[int] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def finished(self) -> bool:
        return self.status in TERMINAL_STATES

    @property
    def succeeded(self) -> bool:
        return self.status == SUCCESS


class DeploymentTrigger(ABC):
    """Enqueues downstream jobs (deployments, release jobs) with parameters."""

    @abstractmethod
    def trigger(
        self,
        job_ref: str,
        parameters: Mapping[str, str],
        wait: bool = True,
        token: Optional[CancellationToken] = None,
    ) -> TriggerResult:
        """
        Start a downstream job.

        Args:
            job_ref: Name of the downstream job
            parameters: String parameters handed to the job
            wait: Block until the downstream run is terminal
            token: Cancellation token of the calling stage

        Returns:
            TriggerResult; terminal when ``wait`` is true

        Raises:
            TriggerError: If the job is unknown or cannot be started
        """
