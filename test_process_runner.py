#!/usr/bin/env python3
"""Tests for the subprocess runner and cancellation tokens."""

import os
import threading
import time

import pytest

from gantry.errors import RunAborted, TimeoutExceeded
from gantry.pipeline.cancellation import CancellationToken
from gantry.pipeline.schema import FailureCause
from gantry.runners import SubprocessRunner

posix_only = pytest.mark.skipif(os.name != "posix", reason="uses /bin/sh")


# ============================================================================
# Subprocess Runner Tests
# ============================================================================

@posix_only
def test_runs_command_and_streams_output(tmp_path):
    lines = []

    result = SubprocessRunner().run("echo one; echo two >&2", cwd=str(tmp_path), on_output=lines.append)

    assert result.succeeded
    assert result.exit_code == 0
    assert lines == ["one", "two"]
    assert result.output == "one\ntwo\n"


@posix_only
def test_reports_exit_code():
    result = SubprocessRunner().run("exit 3")

    assert not result.succeeded
    assert result.exit_code == 3
    assert not result.cancelled


@posix_only
def test_passes_environment():
    result = SubprocessRunner().run("echo $GREETING", env={"GREETING": "hello", "PATH": os.environ.get("PATH", "")})

    assert result.output.strip() == "hello"


@posix_only
def test_cancellation_terminates_process():
    token = CancellationToken().child(0.5)

    started = time.monotonic()
    result = SubprocessRunner(kill_grace_seconds=2).run("sleep 10", token=token)

    assert time.monotonic() - started < 5
    assert result.cancelled
    assert not result.succeeded


@posix_only
def test_process_ignoring_sigterm_is_killed():
    token = CancellationToken(timeout=0.3)

    result = SubprocessRunner(kill_grace_seconds=0.5).run("trap '' TERM; sleep 10", token=token)

    assert result.cancelled
    assert result.killed


@posix_only
def test_creates_missing_working_directory(tmp_path):
    workspace = tmp_path / "new" / "workspace"

    result = SubprocessRunner().run("pwd", cwd=str(workspace))

    assert workspace.is_dir()
    assert result.output.strip().endswith("workspace")


# ============================================================================
# Cancellation Token Tests
# ============================================================================

def test_cancel_propagates_to_children():
    root = CancellationToken.for_run()
    child = root.child()
    grandchild = child.child(60)

    root.cancel()

    assert child.cancelled and grandchild.cancelled
    assert grandchild.reason == FailureCause.ABORTED
    with pytest.raises(RunAborted):
        grandchild.raise_if_cancelled()


def test_child_created_after_cancel_is_cancelled():
    root = CancellationToken()
    root.cancel()

    assert root.child().cancelled


def test_stage_deadline_reports_stage_timeout():
    root = CancellationToken.for_run(timeout=60)
    stage = root.child(0.05)

    assert stage.wait(1) is True
    assert stage.reason == FailureCause.STAGE_TIMEOUT
    assert root.cancelled is False
    with pytest.raises(TimeoutExceeded) as exc:
        stage.raise_if_cancelled()
    assert exc.value.scope == "stage"


def test_global_deadline_reaches_descendants():
    root = CancellationToken.for_run(timeout=0.05)
    stage = root.child(60)

    time.sleep(0.1)

    assert stage.cancelled
    assert stage.reason == FailureCause.GLOBAL_TIMEOUT
    assert stage.remaining() == 0.0


def test_wait_returns_false_when_not_cancelled():
    token = CancellationToken()

    assert token.wait(0.01) is False
    assert token.remaining() is None
    token.raise_if_cancelled()


def test_wait_wakes_on_cancel():
    token = CancellationToken()
    threading.Timer(0.05, token.cancel).start()

    started = time.monotonic()
    assert token.wait(5) is True
    assert time.monotonic() - started < 2
