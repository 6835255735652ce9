#!/usr/bin/env python3
"""Regression tests: SSE streaming of run events."""

import threading
import time

from gantry.events import EventBus, EventEmitter
from gantry.sse.stream import SSEConnection, SSEManager, format_keepalive, format_sse_message


# ============================================================================
# SSEConnection Tests
# ============================================================================

def test_sse_connection_send_event():
    """Queued events come back with their type, data and a timestamp."""
    conn = SSEConnection(run_id="run-123", client_id="client-1")

    conn.send_event("stage_started", {"stage": "Build"})

    events = conn.get_events(timeout=0.1)
    assert len(events) == 1
    assert events[0]["event"] == "stage_started"
    assert events[0]["data"]["stage"] == "Build"
    assert "timestamp" in events[0]


def test_sse_connection_get_events_timeout():
    conn = SSEConnection(run_id="run-123", client_id="client-1")

    start = time.time()
    events = conn.get_events(timeout=0.3)

    assert events == []
    assert time.time() - start >= 0.3


def test_sse_connection_drains_queue_in_order():
    conn = SSEConnection(run_id="run-123", client_id="client-1")

    for index in range(3):
        conn.send_event("log_line", {"index": index})

    events = conn.get_events(timeout=0.1)
    assert [e["data"]["index"] for e in events] == [0, 1, 2]


# ============================================================================
# SSEManager Tests
# ============================================================================

def test_sse_manager_connect_sends_connected_event():
    manager = SSEManager()

    conn = manager.connect(run_id="run-123")

    assert conn.client_id.startswith("client-")
    assert manager.get_connection_count("run-123") == 1
    events = conn.get_events(timeout=0.1)
    assert events[0]["event"] == "connected"
    assert events[0]["data"]["run_id"] == "run-123"


def test_sse_manager_disconnect():
    manager = SSEManager()

    manager.connect(run_id="run-123", client_id="client-1")
    manager.disconnect(run_id="run-123", client_id="client-1")

    assert manager.get_connection_count("run-123") == 0


def test_sse_manager_broadcast_is_isolated_by_run():
    manager = SSEManager()
    conn1 = manager.connect(run_id="run-123", client_id="client-1")
    conn2 = manager.connect(run_id="run-456", client_id="client-2")

    count = manager.broadcast(run_id="run-123", event_type="stage_passed", data={"stage": "Test"})

    assert count == 1
    passed1 = [e for e in conn1.get_events(timeout=0.1) if e["event"] == "stage_passed"]
    passed2 = [e for e in conn2.get_events(timeout=0.1) if e["event"] == "stage_passed"]
    assert len(passed1) == 1
    assert passed2 == []


def test_sse_manager_cleanup_stale():
    manager = SSEManager()
    conn = manager.connect(run_id="run-123", client_id="client-1")
    conn.connected_at = time.time() - 7200

    removed = manager.cleanup_stale_connections(max_age_seconds=3600)

    assert removed == 1
    assert manager.get_connection_count("run-123") == 0


# ============================================================================
# Event Bus Forwarding Tests
# ============================================================================

def test_event_bus_forwards_to_attached_manager_from_any_thread():
    """Parallel branches publish from worker threads without a Flask context."""
    manager = SSEManager()
    bus = EventBus()
    bus.attach_sse_manager(manager)
    conn = manager.connect(run_id="run-789", client_id="client-1")

    emitter = EventEmitter("run-789", bus)
    worker = threading.Thread(target=emitter.stage_started, args=("Build/Lint", "leaf"))
    worker.start()
    worker.join()

    events = [e for e in conn.get_events(timeout=0.5) if e["event"] == "stage_started"]
    assert len(events) == 1
    assert events[0]["data"]["stage"] == "Build/Lint"


def test_event_bus_history_is_bounded():
    bus = EventBus(max_history=5)
    emitter = EventEmitter("run-1", bus)

    for index in range(10):
        emitter.log_line("Build", f"line {index}")

    history = bus.get_history("run-1")
    assert len(history) == 5
    assert history[-1].data["line"] == "line 9"


# ============================================================================
# SSE Formatting Tests
# ============================================================================

def test_format_sse_message():
    msg = format_sse_message("run_completed", {"status": "SUCCESS"})

    assert msg.startswith("event: run_completed\n")
    assert '"status": "SUCCESS"' in msg
    assert msg.endswith("\n\n")


def test_format_keepalive():
    msg = format_keepalive()

    assert msg.startswith(": keepalive")
    assert msg.endswith("\n\n")


# ============================================================================
# Concurrent Access Tests
# ============================================================================

def test_sse_manager_thread_safety():
    manager = SSEManager()
    errors = []

    def connect_client(client_id):
        try:
            manager.connect(run_id="run-123", client_id=client_id)
        except Exception as e:
            errors.append(e)

    def broadcast_event(index):
        try:
            manager.broadcast(run_id="run-123", event_type="log_line", data={"index": index})
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=connect_client, args=(f"client-{i}",)) for i in range(5)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    threads = [threading.Thread(target=broadcast_event, args=(i,)) for i in range(10)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert manager.get_connection_count("run-123") == 5
