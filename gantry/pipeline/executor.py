"""Pipeline engine: executes a PipelineDefinition as one run.

The engine owns the run lifecycle. It resolves parameters, builds the root
environment and token, walks the stage tree through StageExecutor, derives
the run status, and finally runs post hooks. Events are emitted for every
transition so SSE clients and logs can follow along.
"""

import logging
import threading
import time
import uuid
from typing import Any, Callable, Dict, Mapping, Optional

from gantry.errors import GantryError
from gantry.events import EventBus, EventEmitter
from gantry.pipeline.approvals import ApprovalBroker, GateCallback
from gantry.pipeline.cancellation import CancellationToken
from gantry.pipeline.environment import Environment
from gantry.pipeline.locks import LockManager
from gantry.pipeline.parameters import mask_values, resolve_parameters
from gantry.pipeline.schema import (
    FailureCause,
    PipelineDefinition,
    PipelineRun,
    RunStatus,
    Stage,
    StageResult,
    StageStatus,
)
from gantry.pipeline.stage_executor import RunContext, StageExecutor
from gantry.runners.base import ProcessRunner
from gantry.utils.helpers import utcnow_iso

logger = logging.getLogger(__name__)

RunCallback = Callable[[PipelineRun], None]


class PipelineEngine:
    """Execute pipelines stage-by-stage with event broadcasting."""

    def __init__(
        self,
        runner: Optional[ProcessRunner] = None,
        artifact_store=None,
        trigger=None,
        scanners=None,
        notifier=None,
        approvals: Optional[ApprovalBroker] = None,
        lock_manager: Optional[LockManager] = None,
        event_bus: Optional[EventBus] = None,
        workspace: Optional[str] = None,
        default_timeout: Optional[float] = None,
        post_timeout: float = 300.0,
    ):
        """
        Initialize pipeline engine.

        Args:
            runner: Process runner for command steps
            artifact_store: ArtifactStore capability
            trigger: DeploymentTrigger capability
            scanners: ScannerRegistry capability
            notifier: Notifier capability
            approvals: Approval broker shared with the API layer
            lock_manager: Named resource locks
            event_bus: Event bus (defaults to the global bus)
            workspace: Working directory for steps
            default_timeout: Global timeout for pipelines that declare none
            post_timeout: Time limit for each post hook group
        """
        self.approvals = approvals or ApprovalBroker()
        self.stage_executor = StageExecutor(
            runner=runner,
            artifact_store=artifact_store,
            trigger=trigger,
            scanners=scanners,
            notifier=notifier,
            approvals=self.approvals,
            lock_manager=lock_manager,
        )
        self.event_bus = event_bus
        self.workspace = workspace
        self.default_timeout = default_timeout
        self.post_timeout = post_timeout
        self._tokens: Dict[str, CancellationToken] = {}
        self._tokens_lock = threading.Lock()

    def execute(
        self,
        definition: PipelineDefinition,
        parameters: Optional[Mapping[str, Any]] = None,
        run_id: Optional[str] = None,
        prior_results: Optional[Dict[str, StageResult]] = None,
        parent_token: Optional[CancellationToken] = None,
        request: Optional[Dict[str, Any]] = None,
        on_update: Optional[RunCallback] = None,
        on_pause: Optional[GateCallback] = None,
        on_resume: Optional[GateCallback] = None,
    ) -> PipelineRun:
        """
        Execute a pipeline to completion.

        Args:
            definition: Pipeline to run
            parameters: Caller-supplied parameter values
            run_id: Run ID (generated if not provided)
            prior_results: Results of an earlier attempt of this run; PASSED and
                SKIPPED stages are reused instead of re-executed
            parent_token: Token of an upstream stage (downstream runs)
            request: Original run request, kept on the run for recovery
            on_update: Called with the run after every stage and status change
            on_pause: Called when the run parks at an input gate
            on_resume: Called when the gate is resolved

        Returns:
            The terminal PipelineRun

        Raises:
            ParameterError: Parameters failed validation; nothing was executed
        """
        values, secrets = resolve_parameters(definition.parameters, parameters)

        run_id = run_id or str(uuid.uuid4())
        root = definition.root_stage()
        env = Environment(
            {"PIPELINE_NAME": definition.name, "RUN_ID": run_id, "BUILD_ID": run_id},
        ).overlay(values, masked=secrets)

        run = PipelineRun(
            run_id=run_id,
            pipeline_name=definition.name,
            root_stage=root,
            definition=definition,
            status=RunStatus.RUNNING,
            parameters=mask_values(values, secrets),
            environment=env.overlay(definition.environment).masked_dict(),
            started_at=utcnow_iso(),
            request=request or {},
        )
        emitter = EventEmitter(run_id, self.event_bus)
        context = RunContext(
            run=run,
            emitter=emitter,
            continue_after_failure=definition.continue_after_failure,
            prior_results=dict(prior_results or {}),
            workspace=self.workspace,
            on_update=on_update,
            on_pause=on_pause,
            on_resume=on_resume,
        )

        timeout = definition.timeout_seconds or self.default_timeout
        token = CancellationToken(parent=parent_token, timeout=timeout, timeout_cause=FailureCause.GLOBAL_TIMEOUT)
        self._register(run_id, token)

        emitter.run_started(definition.name, definition.version, run.parameters)
        logger.info(f"Run {run_id} of {definition.name} started")
        context.update()
        started = time.monotonic()

        try:
            root_result = self.stage_executor.execute(root, env, token, context, path=root.name)
            self._finish(run, root_result, token)
        except GantryError as e:
            self._fail(run, e, emitter)
        except Exception as e:
            logger.error(f"Run {run_id} crashed: {e}", exc_info=True)
            self._fail(run, e, emitter)

        self._run_post_hooks(definition, run, env, context)
        run.finished_at = utcnow_iso()
        self._unregister(run_id)

        duration_ms = int((time.monotonic() - started) * 1000)
        emitter.run_completed(run.status.value, duration_ms, run.exit_code)
        logger.info(
            f"Run {run_id} finished: {run.status.value}"
            + (f" ({run.cause.value})" if run.cause else "")
            + f", exit code {run.exit_code}"
        )
        context.update()
        return run

    def abort(self, run_id: str) -> bool:
        """
        Abort a running run. In-flight processes are terminated; the run ends ABORTED.

        Returns:
            True if the run was active in this engine
        """
        with self._tokens_lock:
            token = self._tokens.get(run_id)
        if token is None:
            return False
        logger.warning(f"Aborting run {run_id}")
        EventEmitter(run_id, self.event_bus).cancelled("aborted by operator")
        token.cancel(FailureCause.ABORTED)
        self.approvals.wake()
        return True

    def is_active(self, run_id: str) -> bool:
        with self._tokens_lock:
            return run_id in self._tokens

    def _register(self, run_id: str, token: CancellationToken) -> None:
        with self._tokens_lock:
            self._tokens[run_id] = token

    def _unregister(self, run_id: str) -> None:
        with self._tokens_lock:
            self._tokens.pop(run_id, None)

    @staticmethod
    def _finish(run: PipelineRun, root_result: StageResult, token: CancellationToken) -> None:
        if root_result.status in (StageStatus.PASSED, StageStatus.SKIPPED):
            run.status = RunStatus.SUCCESS
            return
        run.error = root_result.error
        if token.reason == FailureCause.ABORTED or root_result.cause == FailureCause.ABORTED:
            run.status = RunStatus.ABORTED
            run.cause = FailureCause.ABORTED
        else:
            run.status = RunStatus.FAILURE
            run.cause = root_result.cause

    @staticmethod
    def _fail(run: PipelineRun, error: Exception, emitter: EventEmitter) -> None:
        run.status = RunStatus.FAILURE
        run.cause = FailureCause.ERROR
        run.error = f"{type(error).__name__}: {error}"
        emitter.error(str(error), {"type": type(error).__name__})
        emitter.run_failed(run.error)

    def _run_post_hooks(
        self,
        definition: PipelineDefinition,
        run: PipelineRun,
        env: Environment,
        context: RunContext,
    ) -> None:
        """Run ``post`` groups for the final status. They never change the run status."""
        groups = definition.post.for_status(run.status)
        if not groups:
            return

        hook_env = env.overlay(definition.environment).overlay({"PIPELINE_STATUS": run.status.value})
        hook_context = RunContext(
            run=run,
            emitter=context.emitter,
            workspace=context.workspace,
            on_update=context.on_update,
            post_hook=True,
        )
        for group, steps in groups:
            token = CancellationToken(timeout=self.post_timeout)
            self._register(run.run_id, token)
            stage = Stage(name=f"post-{group}", steps=steps)
            try:
                result = self.stage_executor.execute(stage, hook_env, token, hook_context, path=stage.name)
                if result.status.is_failure:
                    logger.warning(f"Post hook '{group}' of run {run.run_id} {result.status.value}: {result.error}")
            except Exception as e:
                logger.error(f"Post hook '{group}' of run {run.run_id} raised: {e}")
