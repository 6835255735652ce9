"""Parameter resolution and validation."""

import logging
import re
from typing import Any, Dict, List, Mapping, Optional, Set, Tuple

from gantry.errors import ParameterError
from gantry.pipeline.schema import Parameter, ParameterType
from gantry.utils.helpers import MASK

logger = logging.getLogger(__name__)

_TRUE = {"true", "yes", "1", "on"}
_FALSE = {"false", "no", "0", "off", ""}


def coerce_value(parameter: Parameter, value: Any) -> str:
    """
    Validate one value against a parameter declaration.

    Returns:
        The value as the string exposed through the environment

    Raises:
        ParameterError: If the value violates the type or constraints
    """
    if parameter.type == ParameterType.BOOLEAN:
        if isinstance(value, bool):
            return "true" if value else "false"
        text = str(value).strip().lower()
        if text in _TRUE:
            return "true"
        if text in _FALSE:
            return "false"
        raise ParameterError(f"Parameter '{parameter.name}' expects a boolean, got '{value}'", parameter.name)

    if isinstance(value, (dict, list)):
        raise ParameterError(f"Parameter '{parameter.name}' expects a scalar value", parameter.name)
    text = "" if value is None else str(value)

    if parameter.type == ParameterType.CHOICE and text not in (parameter.choices or []):
        raise ParameterError(
            f"Parameter '{parameter.name}' must be one of {parameter.choices}, got '{text}'",
            parameter.name,
        )

    if parameter.type == ParameterType.STRING and "\n" in text:
        raise ParameterError(f"Parameter '{parameter.name}' is single-line; use type 'text'", parameter.name)

    if parameter.pattern and re.fullmatch(parameter.pattern, text) is None:
        raise ParameterError(
            f"Parameter '{parameter.name}' does not match pattern '{parameter.pattern}'",
            parameter.name,
        )

    return text


def resolve_parameters(
    declared: List[Parameter],
    supplied: Optional[Mapping[str, Any]] = None,
    allow_unknown: bool = False,
) -> Tuple[Dict[str, str], Set[str]]:
    """
    Resolve caller-supplied values against declared parameters.

    Args:
        declared: Parameter declarations
        supplied: Caller values by name
        allow_unknown: Accept names that are not declared (passed through as strings)

    Returns:
        (values, secret_names) where secret_names lists password parameters

    Raises:
        ParameterError: Unknown names, missing required values or invalid values
    """
    supplied = dict(supplied or {})
    declared_names = {p.name for p in declared}

    unknown = sorted(set(supplied) - declared_names)
    if unknown and not allow_unknown:
        raise ParameterError(f"Unknown parameter(s): {', '.join(unknown)}", unknown[0])

    values: Dict[str, str] = {}
    secrets: Set[str] = set()
    for parameter in declared:
        if parameter.name in supplied:
            raw = supplied[parameter.name]
        elif parameter.default is not None:
            raw = parameter.default
        elif parameter.type == ParameterType.CHOICE:
            raw = parameter.choices[0]
        elif parameter.required:
            raise ParameterError(f"Missing required parameter '{parameter.name}'", parameter.name)
        elif parameter.type == ParameterType.BOOLEAN:
            raw = False
        else:
            raw = ""
        values[parameter.name] = coerce_value(parameter, raw)
        if parameter.type == ParameterType.PASSWORD:
            secrets.add(parameter.name)

    for name in unknown:
        values[name] = "" if supplied[name] is None else str(supplied[name])

    logger.debug(f"Resolved {len(values)} parameter(s), {len(secrets)} secret")
    return values, secrets


def mask_values(values: Mapping[str, str], secrets: Set[str]) -> Dict[str, str]:
    return {k: (MASK if k in secrets else v) for k, v in values.items()}
