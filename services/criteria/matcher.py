"""Condition matching of a single rule against a single finding.

Everything here is a pure function of its arguments. A rule that does not
apply is reported as a mismatch, never as an exception: coercion failures,
missing elevations and missing custom parameters all simply fail the match.
"""

from __future__ import annotations

import math
from typing import Any, Callable, Dict, Optional, Union

from .models import ALL_STRUCTURE_GROUPS, Finding, Rule, ThresholdOperator

Number = Union[int, float]

_OPERATORS: Dict[ThresholdOperator, Callable[[Any, Any], bool]] = {
    ThresholdOperator.gt: lambda a, b: a > b,
    ThresholdOperator.lt: lambda a, b: a < b,
    ThresholdOperator.ge: lambda a, b: a >= b,
    ThresholdOperator.le: lambda a, b: a <= b,
    ThresholdOperator.eq: lambda a, b: a == b,
    ThresholdOperator.ne: lambda a, b: a != b,
}

_TRUE_TEXT = {"true", "yes", "1"}
_FALSE_TEXT = {"false", "no", "0"}


def _operator(raw: Any) -> Optional[ThresholdOperator]:
    if isinstance(raw, ThresholdOperator):
        return raw
    try:
        return ThresholdOperator(raw)
    except ValueError:
        return None


def to_number(value: Any) -> Optional[float]:
    """Coerce to float; ``None`` when the value is not numeric."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def to_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        low = value.strip().lower()
        if low in _TRUE_TEXT:
            return True
        if low in _FALSE_TEXT:
            return False
    return None


def compare_numeric(actual: Any, operator: Any, threshold: Number) -> bool:
    op = _operator(operator)
    number = to_number(actual)
    if op is None or number is None:
        return False
    # Exact IEEE comparison, no epsilon.
    return _OPERATORS[op](number, float(threshold))


def compare_text(actual: Any, operator: Any, threshold: str) -> bool:
    op = _operator(operator)
    if op is None or actual is None:
        return False
    return _OPERATORS[op](str(actual), threshold)


def compare_bool(actual: Any, operator: Any, expected: bool) -> bool:
    op = _operator(operator)
    flag = to_bool(actual)
    if flag is None or op not in (ThresholdOperator.eq, ThresholdOperator.ne):
        return False
    return _OPERATORS[op](flag, expected)


def compare(actual: Any, operator: Any, expected: Any) -> bool:
    """Compare with the kind of ``expected`` deciding numeric, boolean or text semantics."""
    if isinstance(expected, bool):
        return compare_bool(actual, operator, expected)
    if isinstance(expected, (int, float)):
        return compare_numeric(actual, operator, expected)
    if expected is None:
        return False
    return compare_text(actual, operator, str(expected))


def split_condition(condition: Any) -> tuple:
    """A custom parameter condition is ``{"operator", "value"}`` or a bare value meaning ``==``."""
    if isinstance(condition, dict) and "value" in condition:
        return condition.get("operator") or ThresholdOperator.eq.value, condition["value"]
    return ThresholdOperator.eq.value, condition


def _elevation_ok(rule: Rule, finding: Finding) -> bool:
    if rule.elevation_min is None and rule.elevation_max is None:
        return True
    elevation = finding.elevation
    if elevation is None or math.isnan(elevation):
        return False
    if rule.elevation_min is not None and elevation < rule.elevation_min:
        return False
    if rule.elevation_max is not None and elevation > rule.elevation_max:
        return False
    return True


def _threshold_ok(rule: Rule, finding: Finding) -> bool:
    if rule.threshold_value is not None:
        return compare_numeric(finding.value, rule.threshold_operator, rule.threshold_value)
    if rule.threshold_text is not None:
        return compare_text(finding.value, rule.threshold_operator, rule.threshold_text)
    return True


def first_mismatch(rule: Rule, finding: Finding) -> Optional[str]:
    """Name of the first condition ``rule`` fails for ``finding``; ``None`` when it matches."""
    if rule.structure_group != ALL_STRUCTURE_GROUPS and rule.structure_group != finding.structure_group:
        return "structure_group"
    if rule.defect_code_id != finding.defect_code:
        return "defect_code"
    if rule.defect_type_id != finding.defect_type:
        return "defect_type"
    if rule.jobpack_type and rule.jobpack_type != finding.jobpack_type:
        return "jobpack_type"
    if not _elevation_ok(rule, finding):
        return "elevation"
    if not _threshold_ok(rule, finding):
        return "threshold"
    for name, condition in rule.custom_parameters.items():
        if name not in finding.custom_parameters:
            return f"custom_parameter:{name}"
        operator, expected = split_condition(condition)
        if not compare(finding.custom_parameters[name], operator, expected):
            return f"custom_parameter:{name}"
    return None


def matches(rule: Rule, finding: Finding) -> bool:
    return first_mismatch(rule, finding) is None
