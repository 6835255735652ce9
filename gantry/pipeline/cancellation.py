"""Cooperative cancellation for stage execution.

Tokens form a tree mirroring the stage tree. The run's root token carries the
global timeout and operator aborts; a stage with a timeout derives a child
token with its own deadline. A token is cancelled when it was cancelled
explicitly, when its deadline passed, or when any ancestor is cancelled.
"""

import threading
import time
from typing import List, Optional

from gantry.errors import RunAborted, TimeoutExceeded
from gantry.pipeline.schema import FailureCause


class CancellationToken:
    """Run-scoped cancellation context shared by a stage and its descendants."""

    def __init__(
        self,
        parent: Optional["CancellationToken"] = None,
        timeout: Optional[float] = None,
        timeout_cause: FailureCause = FailureCause.STAGE_TIMEOUT,
    ):
        self._event = threading.Event()
        self._parent = parent
        self._deadline = time.monotonic() + timeout if timeout is not None else None
        self._timeout_cause = timeout_cause
        self._reason: Optional[FailureCause] = None
        self._children: List["CancellationToken"] = []
        self._lock = threading.Lock()
        if parent is not None:
            parent._register(self)

    @classmethod
    def for_run(cls, timeout: Optional[float] = None) -> "CancellationToken":
        return cls(timeout=timeout, timeout_cause=FailureCause.GLOBAL_TIMEOUT)

    def child(self, timeout: Optional[float] = None) -> "CancellationToken":
        return CancellationToken(parent=self, timeout=timeout)

    def _register(self, child: "CancellationToken") -> None:
        with self._lock:
            self._children.append(child)
            cancelled = self._event.is_set()
        if cancelled:
            child._event.set()

    def cancel(self, reason: FailureCause = FailureCause.ABORTED) -> None:
        """Cancel this token and every descendant."""
        with self._lock:
            if self._reason is None:
                self._reason = reason
            self._event.set()
            children = list(self._children)
        for child in children:
            child.cancel(reason)

    def _deadline_passed(self) -> bool:
        return self._deadline is not None and time.monotonic() >= self._deadline

    @property
    def cancelled(self) -> bool:
        if self._event.is_set() or self._deadline_passed():
            return True
        return self._parent is not None and self._parent.cancelled

    @property
    def reason(self) -> Optional[FailureCause]:
        """Why the token is cancelled, or None while it is not."""
        if self._reason is not None:
            return self._reason
        if self._parent is not None and self._parent.cancelled:
            parent_reason = self._parent.reason
            parent_deadline = self._parent.deadline
            if (
                self._deadline_passed()
                and parent_reason is not None
                and parent_reason.is_timeout
                and parent_deadline is not None
                and self._deadline < parent_deadline
            ):
                return self._timeout_cause
            return parent_reason
        if self._deadline_passed():
            return self._timeout_cause
        return None

    @property
    def deadline(self) -> Optional[float]:
        """Earliest monotonic deadline along the ancestor chain."""
        parent_deadline = self._parent.deadline if self._parent is not None else None
        candidates = [d for d in (self._deadline, parent_deadline) if d is not None]
        return min(candidates) if candidates else None

    def remaining(self) -> Optional[float]:
        """Seconds left before the nearest deadline, None when unbounded."""
        deadline = self.deadline
        if deadline is None:
            return None
        return max(0.0, deadline - time.monotonic())

    def wait(self, timeout: Optional[float] = None) -> bool:
        """
        Sleep until cancelled, the nearest deadline, or ``timeout``.

        Returns:
            True if the token is cancelled when the wait ends
        """
        bounds = [b for b in (timeout, self.remaining()) if b is not None]
        self._event.wait(min(bounds) if bounds else None)
        return self.cancelled

    def raise_if_cancelled(self) -> None:
        reason = self.reason
        if reason is None:
            return
        if reason.is_timeout:
            scope = "pipeline" if reason == FailureCause.GLOBAL_TIMEOUT else "stage"
            raise TimeoutExceeded(f"{scope.capitalize()} timeout exceeded", scope=scope)
        raise RunAborted("Run aborted")
