#!/usr/bin/env python3
"""Tests for scanners, notifiers and service configuration."""

import pytest
import requests

from conftest import FakeSession, ScriptedRunner, make_response
from gantry.artifacts import InMemoryArtifactStore
from gantry.config_loader import ConfigLoader, build_engine
from gantry.errors import CapabilityMissing, ConfigurationError
from gantry.notifiers import LogNotifier, WebhookNotifier
from gantry.pipeline.environment import Environment
from gantry.pipeline.schema import FailureCause, PipelineDefinition, RunStatus, StageStatus
from gantry.scanners import CommandScanner, ScannerRegistry
from gantry.triggers.local import LocalDeploymentTrigger
from gantry.utils.retry import RetryConfig

HOOK = "http://hooks.local/deploys"


# ============================================================================
# Scanner Tests
# ============================================================================

def test_command_scanner_counts_findings():
    runner = ScriptedRunner({"sonar-scanner": {"output": "INFO ok\nERROR bad import\nERROR unused var\n"}})
    scanner = CommandScanner("sonar", runner, command="sonar-scanner", findings_pattern="^ERROR")

    report = scanner.scan({"max_findings": 5}, Environment())
    strict = scanner.scan({}, Environment())

    assert report.passed
    assert len(report.findings) == 2
    assert not strict.passed
    assert "exceed the limit of 0" in strict.summary


def test_command_scanner_fails_on_exit_code():
    runner = ScriptedRunner({"npm audit": {"exit_code": 1}})
    scanner = CommandScanner("audit", runner)

    report = scanner.scan({"command": "npm audit"}, Environment())

    assert not report.passed
    assert report.to_dict()["passed"] is False


def test_command_scanner_needs_a_command():
    with pytest.raises(ConfigurationError):
        CommandScanner("empty", ScriptedRunner()).scan({}, Environment())


def test_scanner_registry():
    registry = ScannerRegistry()
    registry.register(CommandScanner("sonar", ScriptedRunner(), command="sonar-scanner"))

    assert "sonar" in registry
    assert registry.names() == ["sonar"]
    with pytest.raises(CapabilityMissing):
        registry.get("checkmarx")


def test_scan_step_failure_fails_stage(make_engine):
    runner = ScriptedRunner({"lint-report": {"output": "WARN style\nERROR security\n"}})
    scanners = ScannerRegistry()
    scanners.register(CommandScanner("lint", runner, command="lint-report", findings_pattern="^ERROR"))
    engine = make_engine(runner, scanners=scanners)
    definition = PipelineDefinition(name="demo", stages=[
        {"name": "Analysis", "steps": [{"kind": "scan", "scanner": "lint"}]},
    ])

    run = engine.execute(definition)

    result = run.stage_results["demo/Analysis"]
    assert result.status == StageStatus.FAILED
    assert result.cause == FailureCause.STEP_FAILURE
    assert "ERROR security" in result.output


# ============================================================================
# Notifier Tests
# ============================================================================

def test_webhook_notifier_posts_payload():
    session = FakeSession({("POST", HOOK): make_response(200, {"ok": True})})
    notifier = WebhookNotifier(HOOK, default_channel="#deploys", session=session)

    notifier.notify("cart deployed", context={"run_id": "r1"})

    assert session.requests[0]["json"] == {
        "text": "cart deployed",
        "channel": "#deploys",
        "context": {"run_id": "r1"},
    }


def test_webhook_failure_raises():
    session = FakeSession({("POST", HOOK): make_response(500)})
    notifier = WebhookNotifier(HOOK, session=session, retry_config=RetryConfig(max_retries=0))

    with pytest.raises(requests.HTTPError):
        notifier.notify("hello")


def test_notify_step_uses_notifier(make_engine):
    notifier = LogNotifier()
    engine = make_engine(ScriptedRunner(), notifier=notifier)
    definition = PipelineDefinition(
        name="demo",
        environment={"COMPONENT": "cart"},
        stages=[{"name": "Announce", "steps": [{"kind": "notify", "message": "${COMPONENT} is out", "channel": "#ops"}]}],
    )

    run = engine.execute(definition, run_id="run-notify")

    assert run.status == RunStatus.SUCCESS
    assert notifier.sent == [{
        "message": "cart is out",
        "channel": "#ops",
        "context": {"run_id": "run-notify", "stage": "demo/Announce"},
    }]


def test_failed_notification_fails_step(make_engine):
    session = FakeSession({("POST", HOOK): make_response(500)})
    notifier = WebhookNotifier(HOOK, session=session, retry_config=RetryConfig(max_retries=0))
    engine = make_engine(ScriptedRunner(), notifier=notifier)
    definition = PipelineDefinition(name="demo", stages=[
        {"name": "Announce", "steps": [{"kind": "notify", "message": "hi"}]},
    ])

    run = engine.execute(definition)

    assert run.stage_results["demo/Announce"].cause == FailureCause.STEP_FAILURE


def test_missing_capability_fails_run(make_engine):
    engine = make_engine(ScriptedRunner(), artifact_store=None)
    definition = PipelineDefinition(name="demo", stages=[
        {"name": "Fetch", "steps": [{"kind": "artifact_download", "repository": "r", "version": "1", "filename": "f"}]},
    ])

    run = engine.execute(definition)

    assert run.status == RunStatus.FAILURE
    assert run.cause == FailureCause.ERROR
    assert "CapabilityMissing" in run.error


# ============================================================================
# Service Configuration Tests
# ============================================================================

SERVICE_YAML = """
workspace: {workspace}
max_concurrent_runs: 2
default_timeout: 30m
pipelines_dir: {pipelines}
artifact_store:
  type: memory
trigger:
  type: local
notifier:
  type: webhook
  url: ${{GANTRY_TEST_HOOK}}
  channel: "#deploys"
scanners:
  - name: sonar
    command: sonar-scanner
    findings_pattern: "^ERROR"
"""


def write_config(tmp_path, text):
    path = tmp_path / "service.yaml"
    path.write_text(text)
    return path


def test_service_config_builds_capabilities(tmp_path, monkeypatch):
    monkeypatch.setenv("GANTRY_TEST_HOOK", HOOK)
    pipelines = tmp_path / "pipelines"
    pipelines.mkdir()
    (pipelines / "cart-deploy.yaml").write_text("stages:\n  - name: Rollout\n    steps: [rollout]\n")
    path = write_config(tmp_path, SERVICE_YAML.format(workspace=tmp_path / "ws", pipelines=pipelines))

    caps = ConfigLoader.build_capabilities(ConfigLoader.load_service_config(path))

    assert isinstance(caps.artifact_store, InMemoryArtifactStore)
    assert isinstance(caps.notifier, WebhookNotifier)
    assert caps.notifier.base_url == HOOK
    assert caps.scanners.names() == ["sonar"]
    assert caps.max_concurrent_runs == 2
    assert caps.default_timeout == 1800
    assert caps.pipelines.list_all() == ["cart-deploy"]
    assert isinstance(caps.trigger, LocalDeploymentTrigger)
    assert "cart-deploy" in caps.trigger.jobs

    engine = build_engine(caps)
    assert caps.trigger.engine is engine
    assert engine.default_timeout == 1800


@pytest.mark.parametrize("text, message", [
    ("artifact_store:\n  type: s3\n", "artifact_store.type"),
    ("artifact_store:\n  type: nexus\n", "requires 'url'"),
    ("trigger:\n  type: http\n", "requires 'url'"),
    ("notifier:\n  type: pager\n", "notifier.type"),
    ("scanners:\n  - name: sonar\n", "missing 'command'"),
    ("scanners:\n  - {name: a, command: x}\n  - {name: a, command: y}\n", "Duplicate scanner"),
    ("max_concurrent_runs: 0\n", "at least 1"),
    ("default_timeout: soon\n", "Invalid service configuration"),
])
def test_invalid_service_config(tmp_path, text, message):
    path = write_config(tmp_path, text)

    with pytest.raises(ConfigurationError, match=message):
        ConfigLoader.load_service_config(path)


def test_missing_service_config_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        ConfigLoader.load_service_config(tmp_path / "nope.yaml")


def test_unset_variables_resolve_to_empty(monkeypatch):
    monkeypatch.delenv("GANTRY_TEST_UNSET", raising=False)

    assert ConfigLoader.resolve_env_vars({"url": "${GANTRY_TEST_UNSET}/x"}) == {"url": "/x"}
