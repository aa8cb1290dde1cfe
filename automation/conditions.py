"""
Condition evaluation against a run context.

Values are compared after string coercion so that conditions authored in the
visual editor behave the same regardless of whether the context holds a number,
a boolean or a string. Coercion follows the editor's rules:

- ``None`` becomes ``""``
- booleans become ``"true"`` / ``"false"``
- integral floats drop their fraction (``80.0`` -> ``"80"``)
- datetimes render as ISO-8601
- lists join their coerced items with ``","``

then the result is trimmed and lower-cased. One consequence: ``None`` and
``""`` compare equal, as do ``0`` and ``"0"``.

``greater_than`` and ``less_than`` compare numerically when both sides read as
numbers. ``None``, ``""`` and booleans count as numbers here (``0``, ``0``,
``1``/``0``), so a missing field sorts below any positive threshold.
"""

from __future__ import annotations

import json
import logging
import math
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Sequence

from pydantic import BaseModel

logger = logging.getLogger(__name__)

MatchType = Literal["any", "all"]


class ConditionOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    IS_EMPTY = "is_empty"
    IS_NOT_EMPTY = "is_not_empty"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"


class ConditionResult(BaseModel):
    matched: bool
    evaluated_value: Any = None
    reason: Optional[str] = None


class ConditionsResult(BaseModel):
    matched: bool
    matched_index: int = -1
    results: List[ConditionResult] = []


def resolve_field(field: str, context: Any) -> Any:
    """Resolve a dot path such as ``contact.attributes.score``. Missing segments yield ``None``."""
    value = context
    for part in field.split("."):
        if value is None:
            return None
        if isinstance(value, dict):
            value = value.get(part)
        elif isinstance(value, (list, tuple)) and part.isdigit():
            index = int(part)
            value = value[index] if index < len(value) else None
        else:
            return None
    return value


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        if value.is_integer():
            return str(int(value))
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (list, tuple)):
        return ",".join(_stringify(item) for item in value)
    if isinstance(value, dict):
        return json.dumps(value, sort_keys=True, default=str)
    return str(value)


def normalize_value(value: Any) -> str:
    return _stringify(value).strip().lower()


def _to_number(value: Any) -> Optional[float]:
    if value is None:
        return 0.0
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        number = float(value)
        return None if math.isnan(number) else number
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return 0.0
        try:
            number = float(text)
        except ValueError:
            return None
        # float() accepts "nan"/"inf" spellings that are not numbers in the editor
        if math.isnan(number) or math.isinf(number):
            return None
        return number
    return None


def _compare(field_value: Any, compare_value: Any) -> int:
    left = _to_number(field_value)
    right = _to_number(compare_value)
    if left is None or right is None:
        a, b = normalize_value(field_value), normalize_value(compare_value)
        return (a > b) - (a < b)
    return (left > right) - (left < right)


def _contains(field_value: Any, search_value: Any) -> bool:
    needle = normalize_value(search_value)
    if isinstance(field_value, (list, tuple)):
        return any(normalize_value(item) == needle for item in field_value)
    return needle in normalize_value(field_value)


def is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, dict)):
        return len(value) == 0
    return False


def compare_values(field_value: Any, operator: str, compare_value: Any) -> bool:
    """Apply ``operator``. Unknown operators never match."""
    try:
        op = ConditionOperator(operator)
    except ValueError:
        logger.warning("Unknown condition operator: %s", operator)
        return False

    if op == ConditionOperator.EQUALS:
        return normalize_value(field_value) == normalize_value(compare_value)
    if op == ConditionOperator.NOT_EQUALS:
        return normalize_value(field_value) != normalize_value(compare_value)
    if op == ConditionOperator.CONTAINS:
        return _contains(field_value, compare_value)
    if op == ConditionOperator.NOT_CONTAINS:
        return not _contains(field_value, compare_value)
    if op == ConditionOperator.GREATER_THAN:
        return _compare(field_value, compare_value) > 0
    if op == ConditionOperator.LESS_THAN:
        return _compare(field_value, compare_value) < 0
    if op == ConditionOperator.IS_EMPTY:
        return is_empty(field_value)
    if op == ConditionOperator.IS_NOT_EMPTY:
        return not is_empty(field_value)
    if op == ConditionOperator.STARTS_WITH:
        return normalize_value(field_value).startswith(normalize_value(compare_value))
    if op == ConditionOperator.ENDS_WITH:
        return normalize_value(field_value).endswith(normalize_value(compare_value))
    return False


def evaluate_condition(field: str, operator: str, value: Any, context: Dict[str, Any]) -> ConditionResult:
    """Evaluate a single condition against ``context``."""
    logger.debug("Evaluating condition %s %s", field, operator)

    field_value = resolve_field(field, context)
    matched = compare_values(field_value, operator, value)

    if matched:
        reason = f'Field "{field}" {operator} {value}'
    else:
        reason = f'Field "{field}" did not match: got "{field_value}"'

    return ConditionResult(matched=matched, evaluated_value=field_value, reason=reason)


def evaluate_conditions(
    conditions: Sequence[Any],
    context: Dict[str, Any],
    match_type: MatchType = "all",
) -> ConditionsResult:
    """
    Evaluate a list of conditions.

    Each condition is a mapping (or object) with ``field``, ``operator`` and an
    optional ``value``. With ``"any"`` evaluation stops at the first match; with
    ``"all"`` every condition must match. ``matched_index`` is the index of the
    first matching condition, or -1.
    """
    results: List[ConditionResult] = []
    matched_index = -1

    for i, condition in enumerate(conditions):
        field, operator, value = _unpack(condition)
        result = evaluate_condition(field, operator, value, context)
        results.append(result)

        if result.matched and matched_index == -1:
            matched_index = i

        if match_type == "any" and result.matched:
            return ConditionsResult(matched=True, matched_index=i, results=results)

    if match_type == "all":
        matched = all(r.matched for r in results)
    else:
        matched = matched_index != -1

    return ConditionsResult(matched=matched, matched_index=matched_index, results=results)


def _unpack(condition: Any) -> tuple[str, str, Any]:
    if isinstance(condition, dict):
        return condition.get("field", ""), condition.get("operator", ""), condition.get("value")
    return condition.field, condition.operator, getattr(condition, "value", None)
