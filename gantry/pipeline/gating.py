"""When-condition evaluation for conditional stage execution.

Provides:
- ConditionEvaluator: Evaluate when-conditions
- ContextBuilder: Build evaluation context from the active environment
- Field path resolution for deterministic condition evaluation
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional

from gantry.pipeline.environment import Environment
from gantry.pipeline.schema import Condition, ConditionOperator, PipelineRun

logger = logging.getLogger(__name__)


@dataclass
class EvaluationResult:
    """Result of condition evaluation."""
    result: bool  # True if condition met
    resolved_values: Dict[str, Any]  # Field paths resolved during evaluation
    debug_info: Optional[str] = None  # Human-readable explanation


class ContextBuilder:
    """Build evaluation context from the active environment.

    Context structure:
    {
        "env": {"BRANCH_NAME": "main", "DEPLOY": "true", ...},
        "params": {"DEPLOY": "true", ...},
        "run": {"id": "...", "pipeline": "...", "results": {"Build": "PASSED"}}
    }
    """

    def build(self, env: Environment, run: Optional[PipelineRun] = None) -> Dict[str, Any]:
        values = env.as_dict()
        context: Dict[str, Any] = {"env": values, "params": {}, "run": {}}
        if run is not None:
            context["params"] = {name: values.get(name) for name in run.parameters}
            context["run"] = {
                "id": run.run_id,
                "pipeline": run.pipeline_name,
                "results": {path: r.status.value for path, r in run.stage_results.items()},
            }
        return context


class ConditionEvaluator:
    """Evaluate when-conditions against an environment context.

    Supports:
    - Comparisons: ==, !=, >, >=, <, <= (numeric when both sides parse as numbers)
    - Membership, regex match and existence checks
    - Boolean composition via and_conditions / or_conditions, plus negate
    - Missing path behavior: Treat as None (configurable)
    """

    def __init__(self, missing_path_behavior: str = "none"):
        """
        Initialize condition evaluator.

        Args:
            missing_path_behavior: How to handle missing paths
                - "none": Treat as None (default)
                - "error": Raise ValueError
        """
        self.missing_path_behavior = missing_path_behavior

    def evaluate(self, condition: Condition, context: Dict[str, Any]) -> EvaluationResult:
        """
        Evaluate a condition.

        Args:
            condition: Condition to evaluate
            context: Evaluation context (from ContextBuilder)

        Returns:
            EvaluationResult with result and resolved values
        """
        result = self._evaluate(condition, context)
        if condition.negate:
            result.result = not result.result
            result.debug_info = f"NOT ({result.debug_info})"
        return result

    def _evaluate(self, condition: Condition, context: Dict[str, Any]) -> EvaluationResult:
        resolved_values = {}

        field_value = self._resolve_path(condition.field, context)
        resolved_values[condition.field] = field_value

        base_result = self._compare(field_value, condition.operator, condition.value)

        # AND: base and every and_condition must hold
        if condition.and_conditions:
            if not base_result:
                return EvaluationResult(
                    result=False,
                    resolved_values=resolved_values,
                    debug_info=f"Base condition failed: {condition.field} {condition.operator.value} {condition.value}",
                )

            for and_cond in condition.and_conditions:
                and_result = self.evaluate(and_cond, context)
                resolved_values.update(and_result.resolved_values)
                if not and_result.result:
                    return EvaluationResult(
                        result=False,
                        resolved_values=resolved_values,
                        debug_info=f"AND condition failed: {and_cond.field} {and_cond.operator.value} {and_cond.value}",
                    )

            return EvaluationResult(
                result=True,
                resolved_values=resolved_values,
                debug_info="All AND conditions met",
            )

        # OR: base or any or_condition
        if condition.or_conditions:
            if base_result:
                return EvaluationResult(
                    result=True,
                    resolved_values=resolved_values,
                    debug_info="Base condition met (OR)",
                )

            for or_cond in condition.or_conditions:
                or_result = self.evaluate(or_cond, context)
                resolved_values.update(or_result.resolved_values)
                if or_result.result:
                    return EvaluationResult(
                        result=True,
                        resolved_values=resolved_values,
                        debug_info=f"OR condition met: {or_cond.field}",
                    )

            return EvaluationResult(
                result=False,
                resolved_values=resolved_values,
                debug_info="No OR conditions met",
            )

        return EvaluationResult(
            result=base_result,
            resolved_values=resolved_values,
            debug_info=f"{condition.field}={field_value!r} {condition.operator.value} {condition.value!r} → {base_result}",
        )

    def _resolve_path(self, path: str, context: Dict[str, Any]) -> Any:
        """
        Resolve a dot-separated path in context.

        Examples:
            "env.BRANCH_NAME" → context["env"]["BRANCH_NAME"]
            "params.DEPLOY" → context["params"]["DEPLOY"]
            "BRANCH_NAME" → context["env"]["BRANCH_NAME"] (bare names read the environment)
        """
        parts = path.split(".")
        if parts[0] not in context:
            parts = ["env"] + parts
        current = context

        for part in parts:
            if isinstance(current, dict) and part in current:
                current = current[part]
            else:
                if self.missing_path_behavior == "error":
                    raise ValueError(f"Path '{path}' not found in context (missing at '{part}')")
                logger.debug(f"Path '{path}' not found, returning None")
                return None

        return current

    def _compare(self, left: Any, operator: ConditionOperator, right: Any) -> bool:
        """
        Compare values using operator.

        Environment values are strings, so booleans and numbers on the right
        side are compared against their string spelling or parsed value.
        """
        if operator == ConditionOperator.EXISTS:
            present = left is not None and left != ""
            return present if right is None else present == bool(right)

        if isinstance(right, bool):
            right = "true" if right else "false"
            left = left.lower() if isinstance(left, str) else left

        try:
            if operator == ConditionOperator.EQ:
                return _normalize(left, right) == _normalize(right, left)
            elif operator == ConditionOperator.NEQ:
                return _normalize(left, right) != _normalize(right, left)
            elif operator == ConditionOperator.IN:
                return left in [str(item) for item in (right or [])]
            elif operator == ConditionOperator.NOT_IN:
                return left not in [str(item) for item in (right or [])]
            elif operator == ConditionOperator.MATCHES:
                return left is not None and re.fullmatch(str(right), str(left)) is not None

            if left is None:
                return False
            left_num, right_num = float(left), float(right)
            if operator == ConditionOperator.GT:
                return left_num > right_num
            elif operator == ConditionOperator.GTE:
                return left_num >= right_num
            elif operator == ConditionOperator.LT:
                return left_num < right_num
            elif operator == ConditionOperator.LTE:
                return left_num <= right_num
            else:
                raise ValueError(f"Unknown operator: {operator}")
        except (TypeError, ValueError) as e:
            logger.error(f"Cannot compare {left!r} {operator.value} {right!r}: {e}")
            return False


def _normalize(value: Any, other: Any) -> Any:
    """Compare numbers numerically when the other side is numeric."""
    if isinstance(other, (int, float)) and not isinstance(other, bool) and isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    return value
