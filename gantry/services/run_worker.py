"""Background run worker with bounded concurrent slots."""

from dataclasses import dataclass, field
import queue
import threading
from typing import Any, Dict, Optional, Set

from gantry.pipeline.schema import PipelineDefinition, StageResult
from gantry.utils import debug_run_log


@dataclass
class RunJob:
    """A run waiting for a worker slot."""
    run_id: str
    definition: PipelineDefinition
    parameters: Dict[str, Any]
    request: Dict[str, Any] = field(default_factory=dict)
    # Results of an earlier attempt (resuming a run paused before a restart)
    prior_results: Optional[Dict[str, StageResult]] = None


class RunWorker:
    """
    Dispatches queued runs onto their own threads, at most ``max_concurrent_runs``
    at a time. A run parked at an input gate gives its slot back until the gate
    is resolved.
    """

    def __init__(self, run_service: Any, max_concurrent_runs: int = 4):
        self.run_service = run_service
        self.max_concurrent_runs = max_concurrent_runs
        self._queue: "queue.Queue[RunJob]" = queue.Queue()
        self._slots = threading.Semaphore(max_concurrent_runs)
        self._cancelled: Set[str] = set()
        self._queued: Set[str] = set()
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._app = None

    def start(self, app=None) -> None:
        if self._thread:
            return
        self._app = app
        self._thread = threading.Thread(target=self._dispatch, name="run-dispatcher", daemon=True)
        self._thread.start()
        debug_run_log(f"[run-debug] RunWorker started ({self.max_concurrent_runs} slots)")

    def stop(self) -> None:
        self._stop_event.set()

    def enqueue(self, job: RunJob) -> None:
        with self._lock:
            self._queued.add(job.run_id)
        self._queue.put(job)
        debug_run_log(f"[run-debug] enqueued run {job.run_id}")

    def cancel_pending(self, run_id: str) -> bool:
        """Drop a run that has not started yet. Returns False if it is not queued."""
        with self._lock:
            if run_id not in self._queued:
                return False
            self._cancelled.add(run_id)
            self._queued.discard(run_id)
            return True

    def release_slot(self) -> None:
        self._slots.release()

    def acquire_slot(self) -> None:
        self._slots.acquire()

    def _dispatch(self) -> None:
        while not self._stop_event.is_set():
            try:
                job = self._queue.get(timeout=1.0)
            except queue.Empty:
                continue

            with self._lock:
                if job.run_id in self._cancelled:
                    self._cancelled.discard(job.run_id)
                    self._queue.task_done()
                    debug_run_log(f"[run-debug] dropped cancelled run {job.run_id}")
                    continue

            while not self._slots.acquire(timeout=1.0):
                if self._stop_event.is_set():
                    return

            if self._stop_event.is_set():
                # Stays PENDING in the store; recovery picks it up on the next start
                self._slots.release()
                return

            with self._lock:
                if job.run_id in self._cancelled:
                    # Aborted while waiting for a slot
                    self._cancelled.discard(job.run_id)
                    self._slots.release()
                    self._queue.task_done()
                    continue
                self._queued.discard(job.run_id)
            thread = threading.Thread(target=self._run, args=(job,), name=f"run-{job.run_id}", daemon=True)
            thread.start()
            self._queue.task_done()

    def _run(self, job: RunJob) -> None:
        try:
            if self._app is not None:
                with self._app.app_context():
                    self.run_service.execute_job(job)
            else:
                self.run_service.execute_job(job)
            debug_run_log(f"[run-debug] run completed: {job.run_id}")
        finally:
            self._slots.release()
