#!/usr/bin/env python3
"""Regression tests: when-condition evaluation."""

import pytest

from gantry.pipeline.environment import Environment
from gantry.pipeline.gating import ConditionEvaluator, ContextBuilder
from gantry.pipeline.schema import (
    Condition,
    ConditionOperator,
    PipelineRun,
    Stage,
    StageResult,
    StageStatus,
)


def context(**env):
    return {"env": env, "params": {}, "run": {}}


# ============================================================================
# Condition Evaluator Unit Tests
# ============================================================================

def test_string_equality():
    evaluator = ConditionEvaluator()
    condition = Condition(field="env.BRANCH_NAME", operator=ConditionOperator.EQ, value="main")

    result = evaluator.evaluate(condition, context(BRANCH_NAME="main"))

    assert result.result is True
    assert result.resolved_values["env.BRANCH_NAME"] == "main"


def test_bare_name_reads_environment():
    evaluator = ConditionEvaluator()
    condition = Condition(field="BRANCH_NAME", operator=ConditionOperator.NEQ, value="main")

    assert evaluator.evaluate(condition, context(BRANCH_NAME="feature/x")).result is True


def test_numeric_comparison_on_string_values():
    """Environment values are strings; numeric operators parse them."""
    evaluator = ConditionEvaluator()
    ctx = context(BUILD_NUMBER="42")

    assert evaluator.evaluate(Condition(field="BUILD_NUMBER", operator=">", value=10), ctx).result is True
    assert evaluator.evaluate(Condition(field="BUILD_NUMBER", operator="<=", value=41), ctx).result is False
    assert evaluator.evaluate(Condition(field="BUILD_NUMBER", operator="==", value=42), ctx).result is True


def test_boolean_value_matches_string_spelling():
    evaluator = ConditionEvaluator()
    condition = Condition(field="DEPLOY", operator=ConditionOperator.EQ, value=True)

    assert evaluator.evaluate(condition, context(DEPLOY="true")).result is True
    assert evaluator.evaluate(condition, context(DEPLOY="TRUE")).result is True
    assert evaluator.evaluate(condition, context(DEPLOY="false")).result is False


def test_membership_and_regex():
    evaluator = ConditionEvaluator()
    ctx = context(TARGET_ENV="prod", BRANCH_NAME="release/1.2")

    assert evaluator.evaluate(Condition(field="TARGET_ENV", operator="in", value=["dev", "prod"]), ctx).result
    assert not evaluator.evaluate(Condition(field="TARGET_ENV", operator="not_in", value=["prod"]), ctx).result
    assert evaluator.evaluate(Condition(field="BRANCH_NAME", operator="matches", value=r"release/.*"), ctx).result
    assert not evaluator.evaluate(Condition(field="BRANCH_NAME", operator="matches", value=r"release"), ctx).result


def test_exists_treats_empty_as_missing():
    evaluator = ConditionEvaluator()
    condition = Condition(field="TAG", operator=ConditionOperator.EXISTS)

    assert evaluator.evaluate(condition, context(TAG="v1")).result is True
    assert evaluator.evaluate(condition, context(TAG="")).result is False
    assert evaluator.evaluate(condition, context()).result is False


def test_and_condition_one_false():
    evaluator = ConditionEvaluator()
    condition = Condition(
        field="DEPLOY",
        value=True,
        and_conditions=[Condition(field="TARGET_ENV", operator="!=", value="prod")],
    )

    result = evaluator.evaluate(condition, context(DEPLOY="true", TARGET_ENV="prod"))

    assert result.result is False
    assert "AND condition failed" in result.debug_info


def test_or_condition_one_true():
    evaluator = ConditionEvaluator()
    condition = Condition(
        field="BRANCH_NAME",
        value="main",
        or_conditions=[Condition(field="BRANCH_NAME", operator="matches", value=r"hotfix/.*")],
    )

    assert evaluator.evaluate(condition, context(BRANCH_NAME="hotfix/cart")).result is True
    assert evaluator.evaluate(condition, context(BRANCH_NAME="feature/cart")).result is False


def test_negate_inverts_result():
    evaluator = ConditionEvaluator()
    condition = Condition(field="SKIP_TESTS", value=True, negate=True)

    result = evaluator.evaluate(condition, context(SKIP_TESTS="false"))

    assert result.result is True
    assert result.debug_info.startswith("NOT (")


def test_missing_path_behavior_none():
    evaluator = ConditionEvaluator()
    condition = Condition(field="env.UNDEFINED", value="x")

    result = evaluator.evaluate(condition, context())

    assert result.result is False
    assert result.resolved_values["env.UNDEFINED"] is None


def test_missing_path_behavior_error():
    evaluator = ConditionEvaluator(missing_path_behavior="error")
    condition = Condition(field="env.UNDEFINED", value="x")

    with pytest.raises(ValueError, match="not found"):
        evaluator.evaluate(condition, context())


def test_uncomparable_values_are_false():
    evaluator = ConditionEvaluator()
    condition = Condition(field="VERSION", operator=">", value=2)

    assert evaluator.evaluate(condition, context(VERSION="not-a-number")).result is False


# ============================================================================
# Context Builder Tests
# ============================================================================

def test_context_builder_env_only():
    env = Environment({"BRANCH_NAME": "main"}).overlay({"STAGE_VAR": "x"})

    ctx = ContextBuilder().build(env)

    assert ctx["env"] == {"BRANCH_NAME": "main", "STAGE_VAR": "x"}
    assert ctx["params"] == {}


def test_context_builder_run_context():
    run = PipelineRun(
        run_id="run-1",
        pipeline_name="demo",
        root_stage=Stage(name="demo", steps=["true"]),
        parameters={"DEPLOY": "true"},
    )
    run.record(StageResult(stage="demo/Build", status=StageStatus.PASSED))
    # A stage overlay shadows the parameter value
    env = Environment({"DEPLOY": "true"}).overlay({"DEPLOY": "false"})

    ctx = ContextBuilder().build(env, run)

    assert ctx["params"] == {"DEPLOY": "false"}
    assert ctx["run"]["id"] == "run-1"
    assert ctx["run"]["results"] == {"demo/Build": "PASSED"}


def test_condition_on_earlier_stage_result():
    run = PipelineRun(run_id="run-1", pipeline_name="demo", root_stage=Stage(name="demo", steps=["true"]))
    run.record(StageResult(stage="demo/Build", status=StageStatus.FAILED))
    ctx = ContextBuilder().build(Environment(), run)
    condition = Condition(field="run.results.demo/Build", value="FAILED")

    assert ConditionEvaluator().evaluate(condition, ctx).result is True
