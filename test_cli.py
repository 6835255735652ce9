#!/usr/bin/env python3
"""Tests for the command-line entry point."""

import json
import os
import re

import pytest

from gantry.cli import USAGE_ERROR, main
from gantry.utils.helpers import format_duration, seconds_between

posix_only = pytest.mark.skipif(os.name != "posix", reason="uses /bin/sh")

PIPELINE = """
parameters:
  - name: TARGET
    default: staging
stages:
  - name: Build
    steps:
      - command: echo building for $TARGET
  - name: Approve
    input:
      approvers: [alice]
    steps:
      - command: {final}
"""


@pytest.fixture
def service_config(tmp_path):
    path = tmp_path / "service.yaml"
    path.write_text(
        f"workspace: {tmp_path / 'workspace'}\n"
        "artifact_store:\n  type: memory\n"
        "trigger:\n  type: local\n"
        "notifier:\n  type: log\n"
    )
    return str(path)


def write_pipeline(tmp_path, final="echo done"):
    path = tmp_path / "release.yaml"
    path.write_text(PIPELINE.format(final=final))
    return str(path)


# ============================================================================
# Validate Tests
# ============================================================================

def test_validate_reports_each_file(tmp_path, capsys):
    good = write_pipeline(tmp_path)
    bad = tmp_path / "broken.yaml"
    bad.write_text("stages: []\n")

    assert main(["validate", good]) == 0
    assert main(["validate", good, str(bad)]) == 1

    output = capsys.readouterr().out
    assert "[ok]" in output
    assert "[error]" in output


# ============================================================================
# Exec Tests
# ============================================================================

@posix_only
def test_exec_with_auto_approve(tmp_path, service_config, capsys):
    path = write_pipeline(tmp_path)

    code = main(["exec", path, "--config", service_config, "--auto-approve", "--quiet", "--json", "-p", "TARGET=prod"])

    snapshot = json.loads(capsys.readouterr().out)
    assert code == 0
    assert snapshot["status"] == "SUCCESS"
    assert snapshot["parameters"] == {"TARGET": "prod"}
    assert snapshot["stage_results"]["release/Approve"]["status"] == "PASSED"


@posix_only
def test_exec_failure_exit_code(tmp_path, service_config, capsys):
    path = write_pipeline(tmp_path, final="exit 4")

    code = main(["exec", path, "--config", service_config, "--auto-approve", "--quiet"])

    output = capsys.readouterr().out
    assert code == 1
    assert "FAILED" in output
    assert "release/Approve (step_failure)" in output
    assert re.search(r"^PASSED +\d+(ms|\.\ds)  release/Build$", output, re.MULTILINE)
    assert re.search(r"FAILURE in \d+(ms|\.\ds)", output)


def test_exec_rejects_unknown_parameter(tmp_path, service_config, capsys):
    path = write_pipeline(tmp_path)

    code = main(["exec", path, "--config", service_config, "-p", "COLOR=blue"])

    assert code == USAGE_ERROR
    assert "ParameterError" in capsys.readouterr().out


def test_malformed_parameter_flag(tmp_path, service_config):
    path = write_pipeline(tmp_path)

    assert main(["exec", path, "--config", service_config, "-p", "TARGET"]) == USAGE_ERROR


def test_missing_pipeline_file(tmp_path):
    assert main(["exec", str(tmp_path / "nope.yaml")]) == USAGE_ERROR


def test_unknown_application(capsys):
    assert main(["run", "cobol", "ledger"]) == USAGE_ERROR
    assert "UnrecognizedStrategy" in capsys.readouterr().out


# ============================================================================
# Summary Formatting Tests
# ============================================================================

@pytest.mark.parametrize("started, finished, expected", [
    ("2024-01-01T00:00:00+00:00", "2024-01-01T00:00:00.250000+00:00", "250ms"),
    ("2024-01-01T00:00:00+00:00", "2024-01-01T00:00:12.500000+00:00", "12.5s"),
    ("2024-01-01T00:00:00+00:00", "2024-01-01T00:03:05+00:00", "3m05s"),
    ("2024-01-01T00:00:00+00:00", None, "-"),
])
def test_stage_durations(started, finished, expected):
    assert format_duration(seconds_between(started, finished)) == expected
