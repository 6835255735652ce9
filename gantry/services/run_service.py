"""Run orchestration service for background execution.

Accepts run requests, validates them synchronously (so a bad request never
creates a run), persists every state change of a run, and restores runs
after a restart.
"""

import logging
import threading
import uuid
from typing import Any, Dict, List, Mapping, Optional

from pydantic import ValidationError

from gantry.errors import ConfigurationError, ConflictError, NotFoundError
from gantry.pipeline.executor import PipelineEngine
from gantry.pipeline.loader import PipelineLoader, PipelineRegistry
from gantry.pipeline.parameters import resolve_parameters
from gantry.pipeline.schema import (
    ApprovalEvent,
    FailureCause,
    ParameterType,
    PendingGate,
    PipelineDefinition,
    PipelineRun,
    RunStatus,
    StageResult,
)
from gantry.services.run_worker import RunJob, RunWorker
from gantry.strategies.router import StrategyRouter
from gantry.utils import debug_run_log

logger = logging.getLogger(__name__)

RECOVERY_ERROR = "Run interrupted by a service restart"


class RunService:
    """Submits runs to the worker and keeps their persisted snapshots current."""

    def __init__(
        self,
        engine: PipelineEngine,
        router: StrategyRouter,
        repository,
        pipelines: Optional[PipelineRegistry] = None,
        loader: Optional[PipelineLoader] = None,
        max_concurrent_runs: int = 4,
    ):
        self.engine = engine
        self.router = router
        self.repository = repository
        self.pipelines = pipelines or PipelineRegistry()
        self.loader = loader or self.pipelines.loader
        self.worker = RunWorker(self, max_concurrent_runs=max_concurrent_runs)
        self._live: Dict[str, PipelineRun] = {}
        self._live_lock = threading.Lock()
        # Open gates per run; a run gives its worker slot back once, at its first open gate
        self._parked: Dict[str, int] = {}
        self._parked_lock = threading.Lock()

    # ------------------------------------------------------------------ submit

    def submit(self, request: Mapping[str, Any]) -> Dict[str, Any]:
        """
        Validate a run request and queue it.

        Accepted request shapes:
            {"application": ..., "component": ..., "parameters": {...}}  (strategy router)
            {"pipeline": "<registered name>", "parameters": {...}}
            {"definition": {<pipeline definition>}, "parameters": {...}}

        Returns:
            Snapshot of the PENDING run

        Raises:
            UnrecognizedStrategy: Unknown application
            NotFoundError: Unknown registered pipeline
            ConfigurationError / ParameterError: Invalid request, definition or parameters
        """
        if not isinstance(request, Mapping):
            raise ConfigurationError("Run request must be a JSON object")

        definition, parameters = self._definition_for(request)
        # Fail before anything is queued
        resolve_parameters(definition.parameters, parameters)

        run_id = str(uuid.uuid4())
        run = PipelineRun(
            run_id=run_id,
            pipeline_name=definition.name,
            root_stage=definition.root_stage(),
            status=RunStatus.PENDING,
        )
        stored_request = self._persistable_request(request, definition)
        run.request = stored_request
        self.repository.save(run, request=stored_request, definition=definition.model_dump(mode="json"))

        self.worker.enqueue(RunJob(
            run_id=run_id,
            definition=definition,
            parameters=dict(parameters),
            request=stored_request,
        ))
        logger.info(f"Queued run {run_id} of {definition.name}")
        return run.snapshot()

    def _definition_for(self, request: Mapping[str, Any]):
        if "application" in request:
            config = self.router.resolve(request)
            return self.router.build(config), dict(config.parameters)

        parameters = request.get("parameters") or {}
        if not isinstance(parameters, Mapping):
            raise ConfigurationError("'parameters' must be an object")

        if "definition" in request:
            if not isinstance(request["definition"], Mapping):
                raise ConfigurationError("'definition' must be an object")
            return self.loader.load_from_dict(dict(request["definition"])), dict(parameters)

        if "pipeline" in request:
            definition = self.pipelines.get_pipeline(str(request["pipeline"]))
            if definition is None:
                raise NotFoundError(f"Unknown pipeline '{request['pipeline']}'")
            return definition, dict(parameters)

        raise ConfigurationError("Run request needs 'application', 'pipeline' or 'definition'")

    @staticmethod
    def _persistable_request(request: Mapping[str, Any], definition: PipelineDefinition) -> Dict[str, Any]:
        """Copy of the request without password parameter values."""
        secrets = {p.name for p in definition.parameters if p.type == ParameterType.PASSWORD}
        stored = dict(request)
        if isinstance(stored.get("parameters"), Mapping):
            stored["parameters"] = {k: v for k, v in stored["parameters"].items() if k not in secrets}
        return stored

    # --------------------------------------------------------------- execution

    def execute_job(self, job: RunJob) -> Optional[PipelineRun]:
        """Run a queued job to completion on the calling thread (worker thread)."""
        debug_run_log(f"[run-debug] run start: {job.run_id} pipeline={job.definition.name}")
        try:
            run = self.engine.execute(
                job.definition,
                job.parameters,
                run_id=job.run_id,
                prior_results=job.prior_results,
                request=job.request,
                on_update=self._persist,
                on_pause=self._on_pause,
                on_resume=self._on_resume,
            )
        except ConfigurationError as e:
            # Parameters that were valid at submit time can fail on recovery
            logger.error(f"Run {job.run_id} could not start: {e}")
            self.repository.update_status(job.run_id, RunStatus.FAILURE.value, FailureCause.ERROR.value, str(e))
            return None
        finally:
            with self._live_lock:
                self._live.pop(job.run_id, None)
        return run

    def _persist(self, run: PipelineRun) -> None:
        with self._live_lock:
            self._live[run.run_id] = run
        try:
            self.repository.save(run)
        except Exception as e:
            logger.error(f"Failed to persist run {run.run_id}: {e}")

    def _on_pause(self, run: PipelineRun, gate: PendingGate) -> None:
        with self._parked_lock:
            open_gates = self._parked.get(run.run_id, 0) + 1
            self._parked[run.run_id] = open_gates
        self._persist(run)
        if open_gates == 1:
            self.worker.release_slot()
            debug_run_log(f"[run-debug] run {run.run_id} parked at '{gate.stage}', slot released")

    def _on_resume(self, run: PipelineRun, gate: PendingGate) -> None:
        with self._parked_lock:
            open_gates = self._parked.get(run.run_id, 0)
            if open_gates <= 1:
                self._parked.pop(run.run_id, None)
            else:
                self._parked[run.run_id] = open_gates - 1
        if open_gates == 1:
            self.worker.acquire_slot()
            debug_run_log(f"[run-debug] run {run.run_id} resumed after '{gate.stage}', slot taken")
        self._persist(run)

    # ------------------------------------------------------------------ queries

    def get(self, run_id: str) -> Optional[Dict[str, Any]]:
        """Current snapshot of a run (live state when it is executing)."""
        with self._live_lock:
            run = self._live.get(run_id)
        if run is not None:
            return run.snapshot()
        record = self.repository.get(run_id)
        return record["snapshot"] if record else None

    def list(self, limit: int = 50) -> List[Dict[str, Any]]:
        return self.repository.list_recent(limit)

    def pending_gates(self, run_id: str) -> List[Dict[str, Any]]:
        return [gate.model_dump(mode="json") for gate in self.engine.approvals.pending(run_id)]

    # ----------------------------------------------------------------- control

    def approve(self, run_id: str, payload: Mapping[str, Any]) -> Dict[str, Any]:
        """
        Deliver an approval event to an open gate of a run.

        Raises:
            NotFoundError: Unknown run
            GateNotFound: The run has no such open gate
            ApprovalRejected: The approver is not allowed
            ConfigurationError / ParameterError: Malformed event or supplied parameters
        """
        if self.get(run_id) is None:
            raise NotFoundError(f"Unknown run {run_id}")
        try:
            event = ApprovalEvent(**{**dict(payload), "runId": run_id})
        except ValidationError as e:
            raise ConfigurationError(f"Invalid approval event: {e}")
        gate = self.engine.approvals.submit(event)
        return gate.model_dump(mode="json")

    def abort(self, run_id: str) -> Dict[str, Any]:
        """
        Abort a queued or executing run.

        Raises:
            NotFoundError: Unknown run
            ConflictError: The run already finished
        """
        if self.engine.abort(run_id):
            return {"run_id": run_id, "aborted": True}

        snapshot = self.get(run_id)
        if snapshot is None:
            raise NotFoundError(f"Unknown run {run_id}")
        if RunStatus(snapshot["status"]).is_terminal:
            raise ConflictError(f"Run {run_id} already finished with status {snapshot['status']}")

        if self.worker.cancel_pending(run_id):
            self.repository.update_status(run_id, RunStatus.ABORTED.value, FailureCause.ABORTED.value)
            logger.warning(f"Aborted queued run {run_id}")
            return {"run_id": run_id, "aborted": True}

        # Started between the two checks
        return {"run_id": run_id, "aborted": self.engine.abort(run_id)}

    # ---------------------------------------------------------------- recovery

    def start(self, app=None) -> None:
        self.worker.start(app)

    def stop(self) -> None:
        """
        Stop dispatching and abort every run still executing.

        Branch threads parked at an input gate would otherwise keep the
        interpreter from exiting.
        """
        self.worker.stop()
        with self._live_lock:
            run_ids = list(self._live)
        for run_id in run_ids:
            if self.engine.abort(run_id):
                logger.warning(f"Aborted run {run_id} on shutdown")

    def recover(self) -> int:
        """
        Restore runs persisted by a previous process.

        PENDING runs are queued again, runs paused at an input gate re-enter
        their pipeline with PASSED/SKIPPED results reused, and runs that were
        RUNNING are marked ABORTED.

        Returns:
            Number of runs queued again
        """
        requeued = 0
        rows = self.repository.list_by_statuses([
            RunStatus.PENDING.value,
            RunStatus.RUNNING.value,
            RunStatus.PAUSED_FOR_INPUT.value,
        ])
        for row in rows:
            run_id = row["run_id"]
            if row["status"] == RunStatus.RUNNING.value or not row.get("definition"):
                self.repository.update_status(
                    run_id, RunStatus.ABORTED.value, FailureCause.ABORTED.value, RECOVERY_ERROR
                )
                logger.warning(f"Run {run_id} was interrupted while running; marked ABORTED")
                continue

            try:
                definition = PipelineDefinition(**row["definition"])
            except ValidationError as e:
                logger.error(f"Cannot recover run {run_id}: stored definition is invalid: {e}")
                self.repository.update_status(
                    run_id, RunStatus.FAILURE.value, FailureCause.ERROR.value, "Stored definition is invalid"
                )
                continue

            request = row.get("request") or {}
            parameters = request.get("parameters") or {}
            prior_results = None
            if row["status"] == RunStatus.PAUSED_FOR_INPUT.value:
                prior_results = {
                    path: StageResult(**result)
                    for path, result in (row["snapshot"].get("stage_results") or {}).items()
                }

            self.worker.enqueue(RunJob(
                run_id=run_id,
                definition=definition,
                parameters=dict(parameters),
                request=request,
                prior_results=prior_results,
            ))
            requeued += 1
            logger.info(f"Recovered run {run_id} ({row['status']})")
        return requeued
