"""Event broadcasting system for pipeline runs.

Provides a lightweight event system for tracking run progress, stage
transitions, gates and artifacts. Events can be consumed by:
- SSE streams (/api/runs/<run_id>/events)
- Logging systems
- Tests (subscribe a callback and assert on what was published)
"""

from enum import Enum
from typing import Any, Callable, Dict, List, Optional
from dataclasses import dataclass, field
import logging
import threading

from gantry.utils.helpers import utcnow_iso

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Types of events emitted during a run."""

    # Run events
    RUN_STARTED = "run_started"
    RUN_PAUSED = "run_paused"
    RUN_RESUMED = "run_resumed"
    RUN_COMPLETED = "run_completed"
    RUN_FAILED = "run_failed"

    # Stage events
    STAGE_STARTED = "stage_started"
    STAGE_PASSED = "stage_passed"
    STAGE_FAILED = "stage_failed"
    STAGE_SKIPPED = "stage_skipped"
    STAGE_TIMED_OUT = "stage_timed_out"

    # Step events
    STEP_STARTED = "step_started"
    STEP_COMPLETED = "step_completed"
    STEP_FAILED = "step_failed"
    LOG_LINE = "log_line"

    # Gate events
    GATE_OPENED = "gate_opened"
    GATE_RESOLVED = "gate_resolved"

    # Capability events
    ARTIFACT_UPLOADED = "artifact_uploaded"
    ARTIFACT_DOWNLOADED = "artifact_downloaded"
    DOWNSTREAM_TRIGGERED = "downstream_triggered"

    # Error events
    ERROR = "error"
    WARNING = "warning"

    # Cancellation events
    CANCELLED = "cancelled"


@dataclass
class Event:
    """Base event class."""

    type: EventType
    run_id: str
    timestamp: str = field(default_factory=utcnow_iso)
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert event to dictionary for serialization."""
        return {
            "type": self.type.value,
            "run_id": self.run_id,
            "timestamp": self.timestamp,
            "data": self.data,
        }


class EventBus:
    """Central event bus for publishing and subscribing to events.

    Thread-safe: parallel branches publish concurrently. Supports:
    - Multiple subscribers per event type
    - Wildcard subscriptions (all events)
    - Bounded history for late subscribers
    """

    def __init__(self, max_history: int = 1000):
        """Initialize event bus."""
        self._subscribers: Dict[EventType, List[Callable]] = {}
        self._wildcard_subscribers: List[Callable] = []
        self._event_history: List[Event] = []
        self._max_history = max_history
        self._lock = threading.RLock()
        self._sse_manager = None

    def attach_sse_manager(self, sse_manager) -> None:
        """Forward every event to ``sse_manager``, from any thread."""
        self._sse_manager = sse_manager

    def subscribe(self, event_type: Optional[EventType], callback: Callable[[Event], None]):
        """
        Subscribe to events.

        Args:
            event_type: Type of event to subscribe to, or None for all events
            callback: Function to call when event is published
        """
        with self._lock:
            if event_type is None:
                self._wildcard_subscribers.append(callback)
            else:
                self._subscribers.setdefault(event_type, []).append(callback)

    def unsubscribe(self, event_type: Optional[EventType], callback: Callable[[Event], None]):
        """
        Unsubscribe from events.

        Args:
            event_type: Type of event to unsubscribe from
            callback: Callback function to remove
        """
        with self._lock:
            if event_type is None:
                if callback in self._wildcard_subscribers:
                    self._wildcard_subscribers.remove(callback)
            elif callback in self._subscribers.get(event_type, []):
                self._subscribers[event_type].remove(callback)

    def publish(self, event: Event):
        """
        Publish event to all subscribers.

        Args:
            event: Event to publish
        """
        with self._lock:
            self._event_history.append(event)
            if len(self._event_history) > self._max_history:
                self._event_history.pop(0)
            callbacks = list(self._wildcard_subscribers) + list(self._subscribers.get(event.type, []))

        logger.debug(f"Event published: {event.type.value} for run {event.run_id}")

        self._forward_to_sse(event)

        for callback in callbacks:
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Error in event callback for {event.type.value}: {e}")

    def _forward_to_sse(self, event: Event):
        """
        Forward event to SSE connections (if an SSE manager is available).

        Args:
            event: Event to forward
        """
        try:
            sse_manager = self._sse_manager
            if sse_manager is None:
                from flask import current_app, has_app_context

                if not has_app_context():
                    return
                sse_manager = getattr(current_app, "sse_manager", None)
            if sse_manager is not None:
                sse_manager.broadcast(
                    run_id=event.run_id,
                    event_type=event.type.value,
                    data=event.data,
                )
        except Exception as e:
            # SSE forwarding is optional, don't fail if it's not available
            logger.debug(f"Could not forward event to SSE: {e}")

    def get_history(self, run_id: Optional[str] = None, event_type: Optional[EventType] = None) -> List[Event]:
        """
        Get event history.

        Args:
            run_id: Filter by run ID (optional)
            event_type: Filter by event type (optional)

        Returns:
            List of events matching filters
        """
        with self._lock:
            events = list(self._event_history)

        if run_id:
            events = [e for e in events if e.run_id == run_id]

        if event_type:
            events = [e for e in events if e.type == event_type]

        return events


# Global event bus instance
_global_event_bus: Optional[EventBus] = None


def get_event_bus() -> EventBus:
    """
    Get global event bus instance (singleton).

    Returns:
        Global EventBus instance
    """
    global _global_event_bus
    if _global_event_bus is None:
        _global_event_bus = EventBus()
    return _global_event_bus


class EventEmitter:
    """Helper class for emitting events from the engine and stage executor."""

    def __init__(self, run_id: str, event_bus: Optional[EventBus] = None):
        """
        Initialize event emitter.

        Args:
            run_id: Run ID for all events
            event_bus: EventBus to use (defaults to global)
        """
        self.run_id = run_id
        self.event_bus = event_bus or get_event_bus()

    def emit(self, event_type, data: Optional[Dict[str, Any]] = None):
        """
        Emit an event.

        Args:
            event_type: Type of event (EventType enum or string)
            data: Event data (optional)
        """
        if isinstance(event_type, str):
            try:
                event_type = EventType(event_type)
            except ValueError:
                logger.warning(f"Unknown event type: {event_type}")
                return

        event = Event(
            type=event_type,
            run_id=self.run_id,
            data=data or {},
        )
        self.event_bus.publish(event)

    def run_started(self, pipeline_name: str, pipeline_version: str, parameters: Dict[str, str]):
        self.emit(EventType.RUN_STARTED, {
            "pipeline_name": pipeline_name,
            "pipeline_version": pipeline_version,
            "parameters": parameters,
        })

    def run_paused(self, stage: str, message: str):
        self.emit(EventType.RUN_PAUSED, {"stage": stage, "message": message})

    def run_resumed(self, stage: str):
        self.emit(EventType.RUN_RESUMED, {"stage": stage})

    def run_completed(self, status: str, duration_ms: int, exit_code: int):
        self.emit(EventType.RUN_COMPLETED, {
            "status": status,
            "duration_ms": duration_ms,
            "exit_code": exit_code,
        })

    def run_failed(self, error: str):
        self.emit(EventType.RUN_FAILED, {"error": error})

    def stage_started(self, stage: str, kind: str):
        self.emit(EventType.STAGE_STARTED, {"stage": stage, "kind": kind})

    def stage_finished(self, stage: str, status: str, duration_ms: int, cause: Optional[str] = None,
                       error: Optional[str] = None):
        """Emit the terminal event matching ``status``."""
        event_type = {
            "PASSED": EventType.STAGE_PASSED,
            "FAILED": EventType.STAGE_FAILED,
            "SKIPPED": EventType.STAGE_SKIPPED,
            "TIMED_OUT": EventType.STAGE_TIMED_OUT,
        }.get(status, EventType.STAGE_FAILED)
        data = {"stage": stage, "status": status, "duration_ms": duration_ms}
        if cause:
            data["cause"] = cause
        if error:
            data["error"] = error
        self.emit(event_type, data)

    def stage_skipped(self, stage: str, reason: str):
        self.emit(EventType.STAGE_SKIPPED, {"stage": stage, "status": "SKIPPED", "reason": reason})

    def step_started(self, stage: str, index: int, label: str, kind: str):
        self.emit(EventType.STEP_STARTED, {
            "stage": stage,
            "index": index,
            "step": label,
            "kind": kind,
        })

    def step_completed(self, stage: str, index: int, duration_ms: int):
        self.emit(EventType.STEP_COMPLETED, {
            "stage": stage,
            "index": index,
            "duration_ms": duration_ms,
        })

    def step_failed(self, stage: str, index: int, error: str, continued: bool = False):
        self.emit(EventType.STEP_FAILED, {
            "stage": stage,
            "index": index,
            "error": error,
            "continued": continued,
        })

    def log_line(self, stage: str, line: str):
        self.emit(EventType.LOG_LINE, {"stage": stage, "line": line})

    def gate_opened(self, stage: str, message: str, approvers: List[str]):
        self.emit(EventType.GATE_OPENED, {
            "stage": stage,
            "message": message,
            "approvers": approvers,
        })

    def gate_resolved(self, stage: str, state: str, approver: Optional[str] = None):
        self.emit(EventType.GATE_RESOLVED, {
            "stage": stage,
            "state": state,
            "approver": approver,
        })

    def artifact_uploaded(self, coordinate: str, size: int, location: str):
        self.emit(EventType.ARTIFACT_UPLOADED, {
            "coordinate": coordinate,
            "size": size,
            "location": location,
        })

    def artifact_downloaded(self, coordinate: str, size: int):
        self.emit(EventType.ARTIFACT_DOWNLOADED, {"coordinate": coordinate, "size": size})

    def downstream_triggered(self, job: str, status: str, downstream_run_id: Optional[str], wait: bool):
        self.emit(EventType.DOWNSTREAM_TRIGGERED, {
            "job": job,
            "status": status,
            "downstream_run_id": downstream_run_id,
            "wait": wait,
        })

    def cancelled(self, reason: str):
        self.emit(EventType.CANCELLED, {"reason": reason})

    def error(self, error_message: str, context: Optional[Dict[str, Any]] = None):
        """Emit error event."""
        self.emit(EventType.ERROR, {
            "error": error_message,
            "context": context or {},
        })

    def warning(self, warning_message: str, context: Optional[Dict[str, Any]] = None):
        """Emit warning event."""
        self.emit(EventType.WARNING, {
            "warning": warning_message,
            "context": context or {},
        })
