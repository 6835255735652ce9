"""Shared fakes and fixtures for the gantry test suite."""

import json
import threading
import time
from typing import Any, Callable, Dict, List, Optional

import pytest
import requests

from gantry.artifacts import InMemoryArtifactStore
from gantry.events import EventBus
from gantry.notifiers import LogNotifier
from gantry.pipeline.approvals import ApprovalBroker
from gantry.pipeline.executor import PipelineEngine
from gantry.pipeline.locks import LockManager
from gantry.runners.base import ProcessResult, ProcessRunner


class ScriptedRunner(ProcessRunner):
    """
    Spy runner. Every command is recorded with the environment it saw.

    ``scripts`` maps a command to its behavior:
        {"exit_code": 1, "output": "text", "sleep": 10}
    ``output`` may be a callable taking the process environment.
    Unknown commands succeed immediately with no output.
    """

    def __init__(self, scripts: Optional[Dict[str, Dict[str, Any]]] = None):
        self.scripts = scripts or {}
        self.calls: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    @property
    def commands(self) -> List[str]:
        with self._lock:
            return [call["command"] for call in self.calls]

    def env_for(self, command: str) -> Dict[str, str]:
        with self._lock:
            for call in self.calls:
                if call["command"] == command:
                    return call["env"]
        raise KeyError(command)

    def run(self, command, cwd=None, env=None, token=None, on_output=None):
        with self._lock:
            self.calls.append({"command": command, "env": dict(env or {}), "cwd": cwd})
        script = self.scripts.get(command, {})

        sleep = script.get("sleep", 0)
        if sleep:
            if token is not None:
                if token.wait(sleep):
                    return ProcessResult(command=command, exit_code=None, cancelled=True)
            else:
                time.sleep(sleep)

        output = script.get("output", "")
        if callable(output):
            output = output(dict(env or {}))
        for line in output.splitlines():
            if on_output is not None:
                on_output(line)
        return ProcessResult(command=command, exit_code=script.get("exit_code", 0), output=output)


def make_response(status_code: int = 200, body: Any = None, content: bytes = b"", headers=None) -> requests.Response:
    response = requests.Response()
    response.status_code = status_code
    response.headers.update(headers or {})
    response._content = json.dumps(body).encode() if body is not None else content
    response.url = "http://fake"
    return response


class FakeSession:
    """
    Stand-in for ``requests.Session``.

    ``routes`` maps (METHOD, url) to a response or a list of responses
    served in order (the last one repeats).
    """

    def __init__(self, routes: Optional[Dict[tuple, Any]] = None):
        self.routes = {key: list(value) if isinstance(value, list) else [value] for key, value in (routes or {}).items()}
        self.requests: List[Dict[str, Any]] = []
        self.auth = None

    def request(self, method, url, **kwargs):
        self.requests.append({"method": method, "url": url, **kwargs})
        queue = self.routes.get((method, url))
        if not queue:
            return make_response(404, {"error": "not found"})
        return queue.pop(0) if len(queue) > 1 else queue[0]


def wait_for(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.02) -> bool:
    """Poll ``predicate`` until it holds or ``timeout`` passes."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def runner():
    return ScriptedRunner()


@pytest.fixture
def store():
    return InMemoryArtifactStore()


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def make_engine(store, event_bus, tmp_path):
    """Factory for engines wired to fakes; every engine gets its own locks and approvals."""

    def _make(runner: ProcessRunner, **kwargs) -> PipelineEngine:
        kwargs.setdefault("artifact_store", store)
        kwargs.setdefault("notifier", LogNotifier())
        kwargs.setdefault("approvals", ApprovalBroker())
        kwargs.setdefault("lock_manager", LockManager())
        kwargs.setdefault("event_bus", event_bus)
        kwargs.setdefault("workspace", str(tmp_path))
        kwargs.setdefault("post_timeout", 5.0)
        return PipelineEngine(runner=runner, **kwargs)

    return _make
