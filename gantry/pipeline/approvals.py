"""Input-approval gates.

A stage with an ``input`` gate parks its thread in ``ApprovalBroker.wait``
until an approval event arrives, the gate expires, or the stage's token is
cancelled. The gate moves through:

    AWAITING_ENGINE -> PAUSED_FOR_INPUT -> APPROVED | DENIED | TIMED_OUT

Waiting is done on a single ``threading.Condition``; deadlines come from the
gate timeout and the stage token, and aborts wake waiters through ``wake()``.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Set, Tuple

from gantry.errors import ApprovalRejected, GateDenied, GateNotFound, GateTimedOut
from gantry.pipeline.cancellation import CancellationToken
from gantry.pipeline.parameters import resolve_parameters
from gantry.pipeline.schema import (
    ApprovalDecision,
    ApprovalEvent,
    GateState,
    InputGate,
    PendingGate,
    PipelineRun,
)
from gantry.utils.helpers import utcnow_iso

logger = logging.getLogger(__name__)

GateCallback = Callable[[PipelineRun, PendingGate], None]


@dataclass
class _Ticket:
    pending: PendingGate
    gate: InputGate
    state: GateState = GateState.AWAITING_ENGINE
    approver: Optional[str] = None
    values: Dict[str, str] = field(default_factory=dict)
    secrets: Set[str] = field(default_factory=set)


class ApprovalBroker:
    """Holds open gates and matches approval events to the waiting stages."""

    def __init__(self):
        self._cond = threading.Condition()
        self._tickets: Dict[Tuple[str, str], _Ticket] = {}
        self._listeners: List[GateCallback] = []

    def add_listener(self, callback: GateCallback) -> None:
        """Call ``callback(run, pending_gate)`` whenever a gate opens."""
        self._listeners.append(callback)

    def wait(
        self,
        run: PipelineRun,
        stage_path: str,
        gate: InputGate,
        token: Optional[CancellationToken] = None,
        on_pause: Optional[GateCallback] = None,
        on_resume: Optional[GateCallback] = None,
    ) -> Tuple[Dict[str, str], Set[str], Optional[str]]:
        """
        Open a gate and block until it is resolved.

        Args:
            run: Owning run; switched to PAUSED_FOR_INPUT while the gate is open
            stage_path: Path of the gated stage
            gate: Gate definition
            token: Stage token; cancellation ends the wait
            on_pause: Called once the gate is registered (persist, release slot)
            on_resume: Called after the gate is resolved, whatever the outcome

        Returns:
            (values, secret_names, approver) for an approved gate

        Raises:
            GateDenied: The gate was denied
            GateTimedOut: The gate expired
            TimeoutExceeded / RunAborted: The token was cancelled first
        """
        key = (run.run_id, stage_path)
        opened = time.monotonic()
        expires_at = None
        if gate.timeout_seconds is not None:
            expires_at = (datetime.now(timezone.utc) + timedelta(seconds=gate.timeout_seconds)).isoformat()

        pending = PendingGate(
            run_id=run.run_id,
            stage=stage_path,
            message=gate.message,
            approvers=list(gate.approvers),
            parameters=list(gate.parameters),
            state=GateState.AWAITING_ENGINE,
            opened_at=utcnow_iso(),
            expires_at=expires_at,
        )
        ticket = _Ticket(pending=pending, gate=gate)

        with self._cond:
            if key in self._tickets:
                raise ApprovalRejected(f"Gate for '{stage_path}' is already open")
            self._tickets[key] = ticket
            ticket.state = GateState.PAUSED_FOR_INPUT
            pending.state = GateState.PAUSED_FOR_INPUT

        run.open_gate(pending)
        logger.info(f"Run {run.run_id} paused for input at '{stage_path}': {gate.message}")

        try:
            if on_pause is not None:
                on_pause(run, pending)
            for listener in list(self._listeners):
                try:
                    listener(run, pending)
                except Exception as e:
                    logger.error(f"Gate listener failed for {stage_path}: {e}")

            with self._cond:
                while ticket.state == GateState.PAUSED_FOR_INPUT:
                    if token is not None and token.cancelled:
                        break
                    bounds = []
                    if gate.timeout_seconds is not None:
                        left = gate.timeout_seconds - (time.monotonic() - opened)
                        if left <= 0:
                            ticket.state = GateState.TIMED_OUT
                            break
                        bounds.append(left)
                    if token is not None and token.remaining() is not None:
                        bounds.append(token.remaining())
                    self._cond.wait(min(bounds) if bounds else None)
                state = ticket.state
        finally:
            with self._cond:
                self._tickets.pop(key, None)
            run.close_gate(stage_path)
            if on_resume is not None:
                on_resume(run, pending)

        pending.state = state
        if state == GateState.APPROVED:
            logger.info(f"Gate '{stage_path}' of run {run.run_id} approved by {ticket.approver}")
            return ticket.values, ticket.secrets, ticket.approver
        if state == GateState.DENIED:
            raise GateDenied(f"Input denied by {ticket.approver}", approver=ticket.approver)
        if state == GateState.TIMED_OUT:
            raise GateTimedOut(f"Input gate expired after {gate.timeout_seconds}s")

        # Still PAUSED_FOR_INPUT: the token ended the wait
        if token is not None:
            token.raise_if_cancelled()
        raise GateTimedOut("Input gate closed without a decision")

    def submit(self, event: ApprovalEvent) -> PendingGate:
        """
        Apply an approval event to an open gate.

        The stage may be given by full path or, when unambiguous, by name.

        Raises:
            ApprovalRejected: No such open gate, or the approver is not allowed
            ParameterError: Supplied parameters fail the gate's declarations
        """
        with self._cond:
            ticket = self._find(event.run_id, event.stage)
            if ticket.state != GateState.PAUSED_FOR_INPUT:
                raise GateNotFound(f"Gate at '{ticket.pending.stage}' is already {ticket.state.value}")
            approvers = ticket.gate.approvers
            if approvers and event.approver not in approvers:
                logger.warning(
                    f"Rejected approval of '{ticket.pending.stage}' by {event.approver}: "
                    f"not in {approvers}"
                )
                raise ApprovalRejected(f"'{event.approver}' is not allowed to answer this gate")

            if event.decision == ApprovalDecision.APPROVE:
                values, secrets = resolve_parameters(ticket.gate.parameters, event.parameters)
                ticket.values = values
                ticket.secrets = secrets
                ticket.state = GateState.APPROVED
            else:
                ticket.state = GateState.DENIED
            ticket.approver = event.approver
            ticket.pending.state = ticket.state
            self._cond.notify_all()
            return ticket.pending

    def _find(self, run_id: str, stage: str) -> _Ticket:
        ticket = self._tickets.get((run_id, stage))
        if ticket is not None:
            return ticket
        matches = [
            t for (rid, path), t in self._tickets.items()
            if rid == run_id and path.rsplit("/", 1)[-1] == stage
        ]
        if len(matches) == 1:
            return matches[0]
        if len(matches) > 1:
            raise ApprovalRejected(f"Stage name '{stage}' is ambiguous; use the stage path")
        raise GateNotFound(f"Run {run_id} has no open gate at '{stage}'")

    def pending(self, run_id: Optional[str] = None) -> List[PendingGate]:
        with self._cond:
            return [
                t.pending for (rid, _), t in self._tickets.items()
                if run_id is None or rid == run_id
            ]

    def wake(self) -> None:
        """Wake every waiter so it re-checks its token (used after an abort)."""
        with self._cond:
            self._cond.notify_all()
