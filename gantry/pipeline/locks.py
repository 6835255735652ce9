"""Named resource locks shared by concurrently running pipelines.

Acquisition is FIFO-fair: waiters are served in arrival order. A waiter whose
cancellation token fires leaves the queue without acquiring.
"""

import itertools
import logging
import threading
from collections import deque
from typing import Deque, Dict, Optional

from gantry.pipeline.cancellation import CancellationToken

logger = logging.getLogger(__name__)


class LockManager:
    """FIFO lock per resource name."""

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._queues: Dict[str, Deque[int]] = {}
        self._holders: Dict[str, Optional[int]] = {}
        self._tickets = itertools.count(1)

    def acquire(self, resource: str, token: Optional[CancellationToken] = None, owner: str = "") -> int:
        """
        Block until ``resource`` is held by the caller.

        Returns:
            Ticket to pass to ``release``

        Raises:
            TimeoutExceeded/RunAborted: If the token is cancelled while waiting
        """
        with self._cond:
            ticket = next(self._tickets)
            queue = self._queues.setdefault(resource, deque())
            queue.append(ticket)
            if len(queue) > 1 or self._holders.get(resource) is not None:
                logger.info(f"Waiting for lock '{resource}' ({owner}), {len(queue) - 1} ahead")
            try:
                while not (queue[0] == ticket and self._holders.get(resource) is None):
                    if token is not None and token.cancelled:
                        token.raise_if_cancelled()
                    wait_for = 0.5
                    if token is not None and token.remaining() is not None:
                        wait_for = min(wait_for, token.remaining())
                    self._cond.wait(wait_for)
            except BaseException:
                queue.remove(ticket)
                self._cond.notify_all()
                raise
            queue.popleft()
            self._holders[resource] = ticket
        logger.debug(f"Lock '{resource}' acquired by {owner} (ticket {ticket})")
        return ticket

    def release(self, resource: str, ticket: int) -> None:
        with self._cond:
            if self._holders.get(resource) != ticket:
                raise RuntimeError(f"Lock '{resource}' is not held by ticket {ticket}")
            self._holders[resource] = None
            if not self._queues.get(resource):
                self._queues.pop(resource, None)
                self._holders.pop(resource, None)
            self._cond.notify_all()
        logger.debug(f"Lock '{resource}' released (ticket {ticket})")

    def is_locked(self, resource: str) -> bool:
        with self._cond:
            return self._holders.get(resource) is not None

    def waiting(self, resource: str) -> int:
        with self._cond:
            return len(self._queues.get(resource, ()))


# Process-wide lock manager, shared by every engine by default
DEFAULT_LOCK_MANAGER = LockManager()
