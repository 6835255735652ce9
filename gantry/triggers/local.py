"""In-process deployment trigger running downstream pipelines on a PipelineEngine."""

import logging
import threading
import uuid
from collections import OrderedDict
from typing import Dict, Mapping, Optional

from gantry.errors import ConfigurationError, TriggerError
from gantry.pipeline.cancellation import CancellationToken
from gantry.pipeline.schema import PipelineDefinition, PipelineRun
from gantry.triggers.base import QUEUED, DeploymentTrigger, TriggerResult

logger = logging.getLogger(__name__)


class LocalDeploymentTrigger(DeploymentTrigger):
    """
    Runs registered downstream pipelines in this process.

    Awaited runs execute on the caller's thread under a child of the caller's
    token, so aborting or timing out the upstream stage stops them too.
    Fire-and-forget runs get their own thread and token.

    Only the most recent ``keep_runs`` finished runs stay in ``runs``.
    """

    def __init__(
        self,
        jobs: Optional[Dict[str, PipelineDefinition]] = None,
        engine=None,
        keep_runs: int = 100,
    ):
        self.jobs: Dict[str, PipelineDefinition] = dict(jobs or {})
        self.engine = engine
        self.keep_runs = keep_runs
        self.runs: "OrderedDict[str, PipelineRun]" = OrderedDict()
        self._threads: Dict[str, threading.Thread] = {}
        self._lock = threading.Lock()

    def register(self, job_ref: str, definition: PipelineDefinition) -> None:
        self.jobs[job_ref] = definition

    def attach(self, engine) -> None:
        """Use ``engine`` for downstream runs (it may be the upstream engine itself)."""
        self.engine = engine

    def _engine(self):
        if self.engine is None:
            from gantry.pipeline.executor import PipelineEngine
            self.engine = PipelineEngine(trigger=self)
        return self.engine

    def trigger(
        self,
        job_ref: str,
        parameters: Mapping[str, str],
        wait: bool = True,
        token: Optional[CancellationToken] = None,
    ) -> TriggerResult:
        definition = self.jobs.get(job_ref)
        if definition is None:
            raise TriggerError(f"Unknown downstream job '{job_ref}'")

        run_id = f"{job_ref}-{uuid.uuid4().hex[:8]}"
        engine = self._engine()

        if wait:
            try:
                run = engine.execute(definition, dict(parameters), run_id=run_id, parent_token=token)
            except ConfigurationError as e:
                raise TriggerError(f"Invalid parameters for downstream job '{job_ref}': {e}")
            self._remember(run)
            return TriggerResult(
                job=job_ref,
                status=run.status.value,
                run_id=run.run_id,
                exit_code=run.exit_code,
            )

        def _background():
            try:
                self._remember(engine.execute(definition, dict(parameters), run_id=run_id))
            except Exception as e:
                logger.error(f"Downstream job {job_ref} ({run_id}) crashed: {e}", exc_info=True)
            finally:
                with self._lock:
                    self._threads.pop(run_id, None)

        thread = threading.Thread(target=_background, name=f"downstream-{run_id}", daemon=True)
        with self._lock:
            self._threads[run_id] = thread
        thread.start()
        return TriggerResult(job=job_ref, status=QUEUED, run_id=run_id)

    def _remember(self, run: PipelineRun) -> None:
        with self._lock:
            self.runs[run.run_id] = run
            while len(self.runs) > self.keep_runs:
                self.runs.popitem(last=False)

    def join(self, run_id: str, timeout: Optional[float] = None) -> Optional[PipelineRun]:
        """Wait for a fire-and-forget run; returns it once finished."""
        with self._lock:
            thread = self._threads.get(run_id)
        if thread is not None:
            thread.join(timeout)
        with self._lock:
            return self.runs.get(run_id)
