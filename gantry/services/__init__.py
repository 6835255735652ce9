"""Background run execution for the HTTP service."""

from gantry.services.run_service import RunService
from gantry.services.run_worker import RunJob, RunWorker

__all__ = ["RunService", "RunJob", "RunWorker"]
