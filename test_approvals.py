#!/usr/bin/env python3
"""Tests for input-approval gates."""

import threading
import time

import pytest

from conftest import ScriptedRunner, wait_for
from gantry.errors import ApprovalRejected, GateNotFound, ParameterError
from gantry.events import EventType
from gantry.pipeline.schema import (
    ApprovalEvent,
    FailureCause,
    PipelineDefinition,
    RunStatus,
    StageStatus,
)


def gated_pipeline(gate=None, steps=("ship",)):
    gate = gate or {
        "message": "Ship ${VERSION}?",
        "approvers": ["alice"],
        "parameters": [{"name": "REASON", "required": True}],
    }
    return PipelineDefinition(
        name="demo",
        environment={"VERSION": "1.4.0"},
        stages=[
            {"name": "Build", "steps": ["compile"]},
            {"name": "Approve", "input": gate, "steps": list(steps)},
        ],
    )


def start(engine, definition, run_id, **kwargs):
    result = {}

    def target():
        result["run"] = engine.execute(definition, run_id=run_id, **kwargs)

    thread = threading.Thread(target=target)
    thread.start()
    assert wait_for(lambda: engine.approvals.pending(run_id))
    return thread, result


def event(run_id, approver, decision="approve", stage="Approve", **parameters):
    return ApprovalEvent(
        runId=run_id,
        stageName=stage,
        approver=approver,
        decision=decision,
        suppliedParameters=parameters,
    )


# ============================================================================
# Approval Tests
# ============================================================================

def test_only_listed_approvers_can_answer(make_engine, runner):
    engine = make_engine(runner)
    thread, result = start(engine, gated_pipeline(), "run-gate")

    with pytest.raises(ApprovalRejected):
        engine.approvals.submit(event("run-gate", "mallory", REASON="sneaky"))

    # The rejected event leaves the gate open
    gates = engine.approvals.pending("run-gate")
    assert len(gates) == 1
    assert gates[0].stage == "demo/Approve"
    assert gates[0].message == "Ship 1.4.0?"
    assert "ship" not in runner.commands

    engine.approvals.submit(event("run-gate", "alice", REASON="hotfix"))
    thread.join(timeout=5)

    run = result["run"]
    assert run.status == RunStatus.SUCCESS
    assert runner.env_for("ship")["REASON"] == "hotfix"
    assert run.pending_gates == {}


def test_gate_parameters_are_validated(make_engine, runner):
    engine = make_engine(runner)
    thread, result = start(engine, gated_pipeline(), "run-params")

    with pytest.raises(ParameterError):
        engine.approvals.submit(event("run-params", "alice"))
    assert engine.approvals.pending("run-params")

    engine.approvals.submit(event("run-params", "alice", REASON="release"))
    thread.join(timeout=5)
    assert result["run"].status == RunStatus.SUCCESS


def test_denied_gate_fails_stage(make_engine, runner):
    engine = make_engine(runner)
    thread, result = start(engine, gated_pipeline(), "run-deny")

    engine.approvals.submit(event("run-deny", "alice", decision="deny"))
    thread.join(timeout=5)

    run = result["run"]
    stage = run.stage_results["demo/Approve"]
    assert stage.status == StageStatus.FAILED
    assert stage.cause == FailureCause.GATE_DENIED
    assert run.status == RunStatus.FAILURE
    assert run.exit_code == 1
    assert "ship" not in runner.commands


def test_gate_expiry_counts_as_denial(make_engine, runner):
    engine = make_engine(runner)
    definition = gated_pipeline(gate={"message": "Proceed?", "timeout_seconds": 0.3})

    run = engine.execute(definition)

    stage = run.stage_results["demo/Approve"]
    assert stage.status == StageStatus.FAILED
    assert stage.cause == FailureCause.GATE_TIMED_OUT
    assert run.status == RunStatus.FAILURE
    assert engine.approvals.pending() == []


def test_unknown_gate_is_rejected(make_engine):
    engine = make_engine(ScriptedRunner())

    with pytest.raises(GateNotFound):
        engine.approvals.submit(event("no-such-run", "alice"))


def test_abort_while_paused(make_engine, runner):
    engine = make_engine(runner)
    thread, result = start(engine, gated_pipeline(), "run-abort")

    engine.abort("run-abort")
    thread.join(timeout=5)

    run = result["run"]
    assert run.status == RunStatus.ABORTED
    assert run.exit_code == 3
    assert run.stage_results["demo/Approve"].cause == FailureCause.ABORTED
    assert engine.approvals.pending("run-abort") == []


def test_ambiguous_stage_names_need_full_path(make_engine, runner):
    engine = make_engine(runner)
    definition = PipelineDefinition(
        name="demo",
        stages=[{"name": "Regions", "parallel": [
            {"name": region, "stages": [{"name": "Confirm", "input": {"message": "Go?"}, "steps": [region]}]}
            for region in ("EU", "US")
        ]}],
    )
    result = {}
    thread = threading.Thread(target=lambda: result.update(run=engine.execute(definition, run_id="run-regions")))
    thread.start()
    assert wait_for(lambda: len(engine.approvals.pending("run-regions")) == 2)

    with pytest.raises(ApprovalRejected, match="ambiguous"):
        engine.approvals.submit(event("run-regions", "bob", stage="Confirm"))

    engine.approvals.submit(event("run-regions", "bob", stage="demo/Regions/EU/Confirm"))
    engine.approvals.submit(event("run-regions", "bob", stage="demo/Regions/US/Confirm"))
    thread.join(timeout=5)

    assert result["run"].status == RunStatus.SUCCESS
    assert sorted(runner.commands) == ["EU", "US"]



def test_time_spent_waiting_counts_against_stage_timeout(make_engine):
    runner = ScriptedRunner({"ship": {"sleep": 0.6}})
    engine = make_engine(runner)
    definition = PipelineDefinition(
        name="demo",
        stages=[{"name": "Approve", "timeout_seconds": 1, "input": {"approvers": ["alice"]}, "steps": ["ship"]}],
    )
    result = {}
    thread = threading.Thread(target=lambda: result.update(run=engine.execute(definition, run_id="run-slow-approval")))
    started = time.monotonic()
    thread.start()
    assert wait_for(lambda: engine.approvals.pending("run-slow-approval"))

    time.sleep(max(0.0, 0.6 - (time.monotonic() - started)))
    engine.approvals.submit(event("run-slow-approval", "alice"))
    thread.join(timeout=5)

    run = result["run"]
    stage = run.stage_results["demo/Approve"]
    assert stage.status == StageStatus.TIMED_OUT
    assert stage.cause == FailureCause.STAGE_TIMEOUT
    assert run.exit_code == 2
    assert time.monotonic() - started < 3


# ============================================================================
# Pause Callback and Event Tests
# ============================================================================

def test_pause_and_resume_callbacks(make_engine, runner, event_bus):
    engine = make_engine(runner)
    calls = []

    def on_pause(run, gate):
        calls.append(("pause", gate.stage, run.status))

    def on_resume(run, gate):
        calls.append(("resume", gate.stage, run.status))

    thread, result = start(
        engine, gated_pipeline(gate={"message": "Go?"}), "run-callbacks",
        on_pause=on_pause, on_resume=on_resume,
    )
    engine.approvals.submit(event("run-callbacks", "anyone"))
    thread.join(timeout=5)

    assert calls == [
        ("pause", "demo/Approve", RunStatus.PAUSED_FOR_INPUT),
        ("resume", "demo/Approve", RunStatus.RUNNING),
    ]
    types = [e.type for e in event_bus.get_history("run-callbacks")]
    assert EventType.GATE_OPENED in types
    assert EventType.RUN_PAUSED in types
    resolved = event_bus.get_history("run-callbacks", EventType.GATE_RESOLVED)[0]
    assert resolved.data["state"] == "APPROVED"
    assert result["run"].status == RunStatus.SUCCESS


def test_gate_listener_is_notified(make_engine, runner):
    engine = make_engine(runner)
    engine.approvals.add_listener(
        lambda run, gate: engine.approvals.submit(event(run.run_id, "bot", stage=gate.stage))
    )

    run = engine.execute(gated_pipeline(gate={"message": "Auto?"}))

    assert run.status == RunStatus.SUCCESS
    assert "ship" in runner.commands
