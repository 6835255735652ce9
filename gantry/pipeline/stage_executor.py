"""Stage execution.

StageExecutor runs one node of the stage tree: it evaluates the node's
when-condition, waits at its input gate, holds its resource lock, applies its
timeout, and then either runs the leaf's steps in order or walks the node's
children (sequentially on the calling thread, or concurrently with a full
join for parallel nodes).

Stage-local failures become StageResults. PipelineError subclasses are
recorded on the stage and re-raised so the run fails where they happened.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional

from gantry.errors import (
    CapabilityMissing,
    GateDenied,
    GateTimedOut,
    RunAborted,
    StepFailure,
    TimeoutExceeded,
)
from gantry.events import EventEmitter
from gantry.pipeline.approvals import ApprovalBroker, GateCallback
from gantry.pipeline.cancellation import CancellationToken
from gantry.pipeline.environment import Environment
from gantry.pipeline.gating import ConditionEvaluator, ContextBuilder
from gantry.pipeline.locks import DEFAULT_LOCK_MANAGER, LockManager
from gantry.pipeline.schema import (
    FailureCause,
    PipelineRun,
    Stage,
    StageKind,
    StageResult,
    StageStatus,
    Step,
    StepKind,
)
from gantry.runners.base import ProcessRunner
from gantry.runners.subprocess_runner import SubprocessRunner
from gantry.utils.helpers import MASK, debug_run_log, truncate_output, utcnow_iso

logger = logging.getLogger(__name__)


@dataclass
class RunContext:
    """Per-run state shared by every stage of one execution."""

    run: PipelineRun
    emitter: EventEmitter
    continue_after_failure: bool = False
    prior_results: Dict[str, StageResult] = field(default_factory=dict)
    workspace: Optional[str] = None
    on_update: Optional[Callable[[PipelineRun], None]] = None
    on_pause: Optional[GateCallback] = None
    on_resume: Optional[GateCallback] = None
    post_hook: bool = False

    def record(self, result: StageResult) -> None:
        if self.post_hook:
            with self.run._lock:
                self.run.post_results[result.stage] = result
        else:
            self.run.record(result)

    def update(self) -> None:
        if self.on_update is not None:
            self.on_update(self.run)


class StageExecutor:
    """Execute stages against injected capabilities."""

    def __init__(
        self,
        runner: Optional[ProcessRunner] = None,
        artifact_store=None,
        trigger=None,
        scanners=None,
        notifier=None,
        approvals: Optional[ApprovalBroker] = None,
        lock_manager: Optional[LockManager] = None,
        evaluator: Optional[ConditionEvaluator] = None,
    ):
        """
        Initialize stage executor.

        Args:
            runner: Process runner for command steps
            artifact_store: ArtifactStore for artifact steps
            trigger: DeploymentTrigger for downstream_build steps
            scanners: ScannerRegistry for scan steps
            notifier: Notifier for notify steps
            approvals: Broker that parks gated stages
            lock_manager: Named resource locks (shared process-wide by default)
            evaluator: When-condition evaluator
        """
        self.runner = runner or SubprocessRunner()
        self.artifact_store = artifact_store
        self.trigger = trigger
        self.scanners = scanners
        self.notifier = notifier
        self.approvals = approvals or ApprovalBroker()
        self.lock_manager = lock_manager or DEFAULT_LOCK_MANAGER
        self.evaluator = evaluator or ConditionEvaluator()
        self.context_builder = ContextBuilder()

    # ------------------------------------------------------------------
    # Stage level
    # ------------------------------------------------------------------

    def execute(
        self,
        stage: Stage,
        env: Environment,
        token: CancellationToken,
        context: RunContext,
        path: Optional[str] = None,
    ) -> StageResult:
        """
        Execute one stage (and its subtree).

        Args:
            stage: Stage definition (never mutated)
            env: Environment inherited from the parent
            token: Parent cancellation token
            context: Run context
            path: Stage path; defaults to the stage name

        Returns:
            The stage's terminal StageResult

        Raises:
            PipelineError: Raised by a step; already recorded on the stage
        """
        path = path or stage.name

        reused = self._reuse_prior(path, context)
        if reused is not None:
            return reused

        if stage.when is not None:
            evaluation = self.evaluator.evaluate(stage.when, self.context_builder.build(env, context.run))
            if not evaluation.result:
                debug_run_log(f"[run-debug] {path} skipped: {evaluation.debug_info}")
                return self._skip_tree(stage, path, context, FailureCause.WHEN_FALSE, "when condition is false")

        result = StageResult(stage=path, status=StageStatus.RUNNING, started_at=utcnow_iso())
        context.record(result)
        context.emitter.stage_started(path, stage.kind.value)
        started = time.monotonic()

        stage_token = token.child(stage.timeout_seconds) if stage.timeout_seconds else token
        stage_env = env.overlay(env.interpolate(stage.environment))
        lock_ticket = None

        try:
            if stage.input is not None:
                stage_env = self._await_gate(stage, path, stage_env, stage_token, context)
            if stage.lock:
                if self.lock_manager.is_locked(stage.lock):
                    queued = self.lock_manager.waiting(stage.lock)
                    context.emitter.log_line(path, f"Waiting for lock '{stage.lock}' ({queued} queued ahead)")
                lock_ticket = self.lock_manager.acquire(
                    stage.lock, stage_token, owner=f"{context.run.run_id}:{path}"
                )
            stage_token.raise_if_cancelled()

            if stage.kind == StageKind.LEAF:
                outputs = self._run_leaf(stage, stage_env, stage_token, context, path, result)
                result.status = StageStatus.PASSED
            elif stage.kind == StageKind.SEQUENTIAL:
                outputs, failed = self._run_sequential(stage, stage_env, stage_token, context, path)
                self._settle_composite(result, failed)
            else:
                outputs, failed = self._run_parallel(stage, stage_env, stage_token, context, path)
                self._settle_composite(result, failed)
                if result.status.is_failure:
                    reason = stage_token.reason
                    if reason is not None and reason.is_timeout:
                        result.status = StageStatus.TIMED_OUT
                        result.cause = reason
                    else:
                        result.status = StageStatus.FAILED
            result.outputs = outputs

        except StepFailure as e:
            result.status = StageStatus.FAILED
            result.cause = FailureCause.STEP_FAILURE
            result.error = str(e)
        except TimeoutExceeded as e:
            result.status = StageStatus.TIMED_OUT
            result.cause = stage_token.reason if stage_token.reason is not None else FailureCause.STAGE_TIMEOUT
            result.error = str(e)
        except RunAborted as e:
            result.status = StageStatus.FAILED
            result.cause = FailureCause.ABORTED
            result.error = str(e)
        except GateDenied as e:
            result.status = StageStatus.FAILED
            result.cause = FailureCause.GATE_DENIED
            result.error = str(e)
        except GateTimedOut as e:
            result.status = StageStatus.FAILED
            result.cause = FailureCause.GATE_TIMED_OUT
            result.error = str(e)
        except Exception as e:
            result.status = StageStatus.FAILED
            result.cause = FailureCause.ERROR
            result.error = str(e)
            logger.error(f"Stage {path} failed with {type(e).__name__}: {e}")
            raise
        finally:
            if lock_ticket is not None:
                self.lock_manager.release(stage.lock, lock_ticket)
            result.finished_at = utcnow_iso()
            result.output = truncate_output(result.output)
            context.record(result)
            context.emitter.stage_finished(
                path,
                result.status.value,
                int((time.monotonic() - started) * 1000),
                cause=result.cause.value if result.cause else None,
                error=result.error,
            )
            context.update()

        logger.info(f"Stage {path}: {result.status.value}" + (f" ({result.cause.value})" if result.cause else ""))
        return result

    def _reuse_prior(self, path: str, context: RunContext) -> Optional[StageResult]:
        """Replay a PASSED/SKIPPED result (and its subtree) from an earlier attempt of this run."""
        prior = context.prior_results.get(path)
        if prior is None or prior.status not in (StageStatus.PASSED, StageStatus.SKIPPED):
            return None
        prefix = f"{path}/"
        for other_path, other in context.prior_results.items():
            if other_path == path or other_path.startswith(prefix):
                context.record(other)
        logger.info(f"Stage {path}: reusing {prior.status.value} result from before restart")
        return prior

    def _skip_tree(
        self,
        stage: Stage,
        path: str,
        context: RunContext,
        cause: FailureCause,
        reason: str,
    ) -> StageResult:
        """Record ``stage`` and all of its descendants as SKIPPED."""
        now = utcnow_iso()
        top = None
        for sub_path, _ in stage.walk(path.rsplit("/", 1)[0] if "/" in path else ""):
            skipped = StageResult(
                stage=sub_path,
                status=StageStatus.SKIPPED,
                started_at=now,
                finished_at=now,
                cause=cause,
                error=reason if sub_path == path else None,
            )
            context.record(skipped)
            if top is None:
                top = skipped
        context.emitter.stage_skipped(path, reason)
        return top

    def _await_gate(
        self,
        stage: Stage,
        path: str,
        env: Environment,
        token: CancellationToken,
        context: RunContext,
    ) -> Environment:
        gate = stage.input.model_copy(update={"message": env.interpolate(stage.input.message)})
        context.emitter.gate_opened(path, gate.message, list(gate.approvers))
        context.emitter.run_paused(path, gate.message)
        try:
            values, secrets, approver = self.approvals.wait(
                context.run,
                path,
                gate,
                token,
                on_pause=context.on_pause,
                on_resume=context.on_resume,
            )
        except GateDenied as e:
            context.emitter.gate_resolved(path, "DENIED", e.approver)
            raise
        except GateTimedOut:
            context.emitter.gate_resolved(path, "TIMED_OUT")
            raise
        context.emitter.gate_resolved(path, "APPROVED", approver)
        context.emitter.run_resumed(path)
        return env.overlay(values, masked=secrets)

    @staticmethod
    def _settle_composite(result: StageResult, failed: Optional[StageResult]) -> None:
        if failed is None:
            result.status = StageStatus.PASSED
            return
        result.status = failed.status
        result.cause = failed.cause
        result.error = f"Stage '{failed.name}' {failed.status.value.lower()}"

    # ------------------------------------------------------------------
    # Composite traversal
    # ------------------------------------------------------------------

    def _run_sequential(
        self,
        stage: Stage,
        env: Environment,
        token: CancellationToken,
        context: RunContext,
        path: str,
    ):
        """Children in order; returns (published outputs, first failing child result)."""
        outputs: Dict[str, str] = {}
        first_failure: Optional[StageResult] = None

        for index, child in enumerate(stage.stages):
            child_path = f"{path}/{child.name}"
            try:
                child_result = self.execute(child, env, token, context, child_path)
            except Exception:
                self._skip_remaining(stage.stages[index + 1:], path, context)
                raise

            if child_result.outputs:
                outputs.update(child_result.outputs)
                env = env.overlay(child_result.outputs)

            if child_result.status.is_failure:
                if first_failure is None:
                    first_failure = child_result
                if not context.continue_after_failure or token.cancelled:
                    self._skip_remaining(stage.stages[index + 1:], path, context)
                    break

        return outputs, first_failure

    def _skip_remaining(self, stages: List[Stage], path: str, context: RunContext) -> None:
        for sibling in stages:
            self._skip_tree(
                sibling,
                f"{path}/{sibling.name}",
                context,
                FailureCause.UPSTREAM_FAILED,
                "an earlier stage did not pass",
            )

    def _run_parallel(
        self,
        stage: Stage,
        env: Environment,
        token: CancellationToken,
        context: RunContext,
        path: str,
    ):
        """
        All children concurrently with a full join.

        Each branch gets its own overlay frame. Outputs are merged after the
        join in declared child order. The first PipelineError (declared
        order) is re-raised once every branch has finished.
        """
        children = stage.stages
        with ThreadPoolExecutor(max_workers=len(children), thread_name_prefix=f"stage-{stage.name}") as pool:
            futures = [
                pool.submit(self.execute, child, env.overlay(), token, context, f"{path}/{child.name}")
                for child in children
            ]
            outcomes = []
            for future in futures:
                try:
                    outcomes.append((future.result(), None))
                except Exception as e:
                    outcomes.append((None, e))

        outputs: Dict[str, str] = {}
        first_failure: Optional[StageResult] = None
        for child_result, error in outcomes:
            if error is not None:
                raise error
            outputs.update(child_result.outputs)
            if child_result.status.is_failure and first_failure is None:
                first_failure = child_result
        return outputs, first_failure

    # ------------------------------------------------------------------
    # Leaf steps
    # ------------------------------------------------------------------

    def _run_leaf(
        self,
        stage: Stage,
        env: Environment,
        token: CancellationToken,
        context: RunContext,
        path: str,
        result: StageResult,
    ) -> Dict[str, str]:
        """Run steps in order; returns the stage's declared outputs."""
        local = env.overlay()
        lines: List[str] = []

        def collect(line: str) -> None:
            line = _mask(line, local)
            lines.append(line)
            context.emitter.log_line(path, line)

        try:
            for index, step in enumerate(stage.steps):
                token.raise_if_cancelled()
                if step.environment:
                    local = local.overlay(local.interpolate(step.environment))

                context.emitter.step_started(path, index, step.label, step.kind.value)
                step_started = time.monotonic()
                try:
                    variables = self._run_step(step, local, token, context, path, collect)
                except StepFailure as e:
                    context.emitter.step_failed(path, index, str(e), continued=step.continue_on_error)
                    token.raise_if_cancelled()
                    if not step.continue_on_error:
                        raise
                    logger.warning(f"Stage {path} step {index} failed, continuing: {e}")
                    continue

                if variables:
                    local = local.overlay(variables)
                context.emitter.step_completed(path, index, int((time.monotonic() - step_started) * 1000))
        finally:
            result.output = "\n".join(lines)

        published = {}
        for name in stage.outputs:
            if name in local:
                published[name] = local[name]
            else:
                logger.warning(f"Stage {path} declares output '{name}' but never set it")
                context.emitter.warning(f"Output '{name}' was never set", {"stage": path})
        return published

    def _run_step(
        self,
        step: Step,
        env: Environment,
        token: CancellationToken,
        context: RunContext,
        path: str,
        collect: Callable[[str], None],
    ) -> Optional[Dict[str, str]]:
        """Run one step. Returns leaf-local variables it produced."""
        if step.kind == StepKind.COMMAND:
            return self._run_command(step, env, token, context, collect)
        if step.kind == StepKind.ARTIFACT_UPLOAD:
            return self._upload(step, env, context, collect)
        if step.kind == StepKind.ARTIFACT_DOWNLOAD:
            return self._download(step, env, context, collect)
        if step.kind == StepKind.DOWNSTREAM_BUILD:
            return self._downstream(step, env, token, context, collect)
        if step.kind == StepKind.SCAN:
            return self._scan(step, env, token, context, collect)
        if step.kind == StepKind.NOTIFY:
            return self._notify(step, env, context, path, collect)
        if step.kind == StepKind.EMIT:
            message = env.interpolate(step.message)
            logger.info(f"[{context.run.run_id}] {path}: {message}")
            collect(message)
            return None
        raise CapabilityMissing(f"Unsupported step kind: {step.kind}")

    def _run_command(self, step, env, token, context, collect):
        collect(f"+ {step.label}")
        process = self.runner.run(
            step.command,
            cwd=context.workspace,
            env=env.process_env(),
            token=token,
            on_output=collect,
        )
        if process.cancelled:
            token.raise_if_cancelled()
        if not process.succeeded:
            raise StepFailure(
                f"Command '{step.label}' exited with code {process.exit_code}",
                exit_code=process.exit_code,
                output=process.output,
            )
        if step.capture:
            return {step.capture: process.output.strip()}
        return None

    def _require_store(self):
        if self.artifact_store is None:
            raise CapabilityMissing("No artifact store configured")
        return self.artifact_store

    def _workspace_path(self, context: RunContext, relative: str) -> Path:
        return Path(context.workspace or ".") / relative

    def _upload(self, step, env, context, collect):
        store = self._require_store()
        repository, version, filename = env.interpolate([step.repository, step.version, step.filename])
        source = self._workspace_path(context, env.interpolate(step.path or filename))
        try:
            data = source.read_bytes()
        except OSError as e:
            raise StepFailure(f"Cannot read artifact file {source}: {e}")

        location = store.upload(repository, version, filename, data, overwrite=step.overwrite)
        coordinate = f"{repository}/{version}/{filename}"
        collect(f"Uploaded {coordinate} ({len(data)} bytes)")
        context.emitter.artifact_uploaded(coordinate, len(data), location)
        return None

    def _download(self, step, env, context, collect):
        store = self._require_store()
        repository, version, filename = env.interpolate([step.repository, step.version, step.filename])
        data = store.download(repository, version, filename)
        target = self._workspace_path(context, env.interpolate(step.path or filename))
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as e:
            raise StepFailure(f"Cannot write artifact file {target}: {e}")

        coordinate = f"{repository}/{version}/{filename}"
        collect(f"Downloaded {coordinate} ({len(data)} bytes)")
        context.emitter.artifact_downloaded(coordinate, len(data))
        return None

    def _downstream(self, step, env, token, context, collect):
        if self.trigger is None:
            raise CapabilityMissing("No deployment trigger configured")
        job = env.interpolate(step.job)
        parameters = env.interpolate(step.parameters)
        collect(f"Triggering downstream job {job}")

        outcome = self.trigger.trigger(job, parameters, wait=step.wait, token=token)
        context.emitter.downstream_triggered(job, outcome.status, outcome.run_id, step.wait)
        collect(f"Downstream job {job} ({outcome.run_id}): {outcome.status}")

        if step.wait and not outcome.succeeded:
            token.raise_if_cancelled()
            if step.propagate:
                raise StepFailure(f"Downstream job '{job}' finished {outcome.status}", exit_code=outcome.exit_code)
            logger.warning(f"Downstream job {job} finished {outcome.status}; not propagated")
            context.emitter.warning(f"Downstream job '{job}' finished {outcome.status}", {"job": job, "run_id": outcome.run_id})
        return None

    def _scan(self, step, env, token, context, collect):
        if self.scanners is None:
            raise CapabilityMissing("No scanners configured")
        scanner = self.scanners.get(step.scanner)
        report = scanner.scan(env.interpolate(step.scanner_config), env, token=token, cwd=context.workspace)
        for line in report.output.splitlines():
            collect(line)
        token.raise_if_cancelled()
        collect(f"Scanner {step.scanner}: {report.summary}")
        if not report.passed:
            raise StepFailure(f"Scanner '{step.scanner}' failed: {report.summary}", output=report.output)
        return None

    def _notify(self, step, env, context, path, collect):
        if self.notifier is None:
            raise CapabilityMissing("No notifier configured")
        message = env.interpolate(step.message)
        try:
            self.notifier.notify(
                message,
                channel=step.channel,
                context={"run_id": context.run.run_id, "stage": path},
            )
        except Exception as e:
            raise StepFailure(f"Notification failed: {e}")
        collect(f"Notified{' ' + step.channel if step.channel else ''}: {message}")
        return None


def _mask(line: str, env: Environment) -> str:
    """Replace the values of masked variables in output."""
    for name in env.masked:
        value = env.get(name)
        if value:
            line = line.replace(value, MASK)
    return line
