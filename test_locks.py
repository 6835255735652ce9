#!/usr/bin/env python3
"""Tests for named resource locks."""

import threading
import time

import pytest

from conftest import ScriptedRunner, wait_for
from gantry.errors import TimeoutExceeded
from gantry.events import EventType
from gantry.pipeline.cancellation import CancellationToken
from gantry.pipeline.locks import LockManager
from gantry.pipeline.schema import PipelineDefinition, RunStatus


# ============================================================================
# Lock Manager Tests
# ============================================================================

def test_acquire_and_release():
    locks = LockManager()

    ticket = locks.acquire("deploy-prod")

    assert locks.is_locked("deploy-prod")
    locks.release("deploy-prod", ticket)
    assert not locks.is_locked("deploy-prod")


def test_release_with_wrong_ticket_fails():
    locks = LockManager()
    locks.acquire("db")

    with pytest.raises(RuntimeError):
        locks.release("db", 999)


def test_waiters_are_served_in_arrival_order():
    locks = LockManager()
    order = []
    first = locks.acquire("terraform")

    def contender(name):
        ticket = locks.acquire("terraform", owner=name)
        order.append(name)
        locks.release("terraform", ticket)

    threads = []
    for name in ("a", "b", "c"):
        thread = threading.Thread(target=contender, args=(name,))
        thread.start()
        threads.append(thread)
        assert wait_for(lambda n=len(threads): locks.waiting("terraform") == n)

    locks.release("terraform", first)
    for thread in threads:
        thread.join(timeout=5)

    assert order == ["a", "b", "c"]
    assert not locks.is_locked("terraform")


def test_cancelled_waiter_leaves_queue():
    locks = LockManager()
    held = locks.acquire("db")
    token = CancellationToken(timeout=0.2)

    with pytest.raises(TimeoutExceeded):
        locks.acquire("db", token=token)

    assert locks.waiting("db") == 0
    locks.release("db", held)
    # The lock is usable again
    locks.release("db", locks.acquire("db"))


# ============================================================================
# Locked Stage Tests
# ============================================================================

def test_runs_sharing_a_lock_do_not_overlap(make_engine):
    active = []
    overlaps = []
    guard = threading.Lock()

    class TrackingRunner(ScriptedRunner):
        def run(self, command, cwd=None, env=None, token=None, on_output=None):
            with guard:
                active.append(command)
                if len(active) > 1:
                    overlaps.append(list(active))
            time.sleep(0.2)
            with guard:
                active.remove(command)
            return super().run(command, cwd, env, token, on_output)

    locks = LockManager()
    engines = [make_engine(TrackingRunner(), lock_manager=locks) for _ in range(2)]
    definitions = [
        PipelineDefinition(name=f"p{i}", stages=[{"name": "Apply", "lock": "terraform-network", "steps": [f"apply-{i}"]}])
        for i in range(2)
    ]
    results = []

    threads = [
        threading.Thread(target=lambda e=e, d=d: results.append(e.execute(d)))
        for e, d in zip(engines, definitions)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=5)

    assert overlaps == []
    assert [r.status for r in results] == [RunStatus.SUCCESS, RunStatus.SUCCESS]


def test_stage_logs_while_waiting_for_busy_lock(make_engine, runner, event_bus):
    locks = LockManager()
    held = locks.acquire("deploy-prod", owner="operator")
    engine = make_engine(runner, lock_manager=locks)
    definition = PipelineDefinition(name="demo", stages=[{"name": "Ship", "lock": "deploy-prod", "steps": ["ship"]}])
    result = {}
    thread = threading.Thread(target=lambda: result.update(run=engine.execute(definition, run_id="run-lock-wait")))
    thread.start()

    def waiting_lines():
        return [e.data["line"] for e in event_bus.get_history("run-lock-wait", EventType.LOG_LINE)]

    assert wait_for(lambda: "Waiting for lock 'deploy-prod' (0 queued ahead)" in waiting_lines())
    assert "ship" not in runner.commands

    locks.release("deploy-prod", held)
    thread.join(timeout=5)

    assert result["run"].status == RunStatus.SUCCESS
    assert runner.commands == ["ship"]
