"""Checks for procedure-defined custom parameters.

A procedure defines the shape of its custom parameters; rules under it may
only condition on defined, active parameters, and findings evaluated against
it must supply values that respect each definition's validation rules.
"""

from __future__ import annotations

import re
from datetime import date
from typing import Any, Dict, Iterable, List, Optional

from .matcher import split_condition, to_bool, to_number
from .models import CustomParameterDefinition, CustomParameterType, ThresholdOperator

_ORDERING = {ThresholdOperator.gt, ThresholdOperator.lt, ThresholdOperator.ge, ThresholdOperator.le}


def _kind_error(definition: CustomParameterDefinition, value: Any) -> Optional[str]:
    kind = definition.parameter_type
    if kind == CustomParameterType.number:
        if isinstance(value, bool) or to_number(value) is None:
            return f"expected a number, got {value!r}"
    elif kind == CustomParameterType.boolean:
        if to_bool(value) is None:
            return f"expected a boolean, got {value!r}"
    elif kind == CustomParameterType.date:
        if isinstance(value, date):
            return None
        try:
            date.fromisoformat(str(value))
        except ValueError:
            return f"expected an ISO date, got {value!r}"
    elif not isinstance(value, str):
        return f"expected text, got {value!r}"
    return None


def condition_error(definition: CustomParameterDefinition, condition: Any) -> Optional[str]:
    """Why a rule's condition on ``definition`` is malformed, or ``None``."""
    raw_operator, expected = split_condition(condition)
    try:
        operator = ThresholdOperator(raw_operator)
    except ValueError:
        return f"unknown operator {raw_operator!r}"
    if expected is None:
        return "condition value is required"
    error = _kind_error(definition, expected)
    if error:
        return error
    if definition.parameter_type == CustomParameterType.boolean and operator in _ORDERING:
        return f"operator {operator.value} is not valid for a boolean parameter"
    if definition.parameter_type == CustomParameterType.number and isinstance(expected, str):
        return "numeric condition values must be numbers, not text"
    if definition.parameter_type in (CustomParameterType.text, CustomParameterType.date) and not isinstance(
        expected, str
    ):
        return "text and date condition values must be strings"
    return None


def value_error(definition: CustomParameterDefinition, value: Any) -> Optional[str]:
    """Why a finding's value breaks ``definition``'s bounds or pattern, or ``None``.

    A value of the wrong kind is not an error here; the matcher treats it as a
    non-match.
    """
    rules = definition.validation_rules
    if definition.parameter_type == CustomParameterType.number and not isinstance(value, bool):
        number = to_number(value)
        if number is not None:
            if rules.min is not None and number < rules.min:
                return f"{number} is below the minimum {rules.min}"
            if rules.max is not None and number > rules.max:
                return f"{number} is above the maximum {rules.max}"
    if rules.regex and isinstance(value, str) and not re.fullmatch(rules.regex, value):
        return f"{value!r} does not match {rules.regex!r}"
    return None


def finding_parameter_errors(
    definitions: Iterable[CustomParameterDefinition], values: Dict[str, Any]
) -> Dict[str, str]:
    errors: Dict[str, str] = {}
    for definition in definitions:
        if not definition.is_active:
            continue
        name = definition.parameter_name
        if name not in values or values[name] is None:
            if definition.validation_rules.required:
                errors[name] = "required parameter is missing"
            continue
        error = value_error(definition, values[name])
        if error:
            errors[name] = error
    return errors


def active_by_name(definitions: Iterable[CustomParameterDefinition]) -> Dict[str, CustomParameterDefinition]:
    return {d.parameter_name: d for d in definitions if d.is_active}


def definition_errors(definition_fields: Dict[str, Any], existing: List[CustomParameterDefinition]) -> Dict[str, str]:
    errors: Dict[str, str] = {}
    name = definition_fields.get("parameter_name")
    if name and any(d.parameter_name == name for d in existing):
        errors["parameter_name"] = f"parameter {name!r} is already defined for this procedure"
    rules = definition_fields.get("validation_rules") or {}
    low, high = rules.get("min"), rules.get("max")
    if low is not None and high is not None and low > high:
        errors["validation_rules"] = "min must not exceed max"
    pattern = rules.get("regex")
    if pattern:
        try:
            re.compile(pattern)
        except re.error as exc:
            errors["validation_rules.regex"] = f"invalid pattern: {exc}"
    return errors
