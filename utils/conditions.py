"""
Automation conditions over event data.

An automation sees one dict per event:

    {"event_type": "message.status",
     "message": {...Message...}, "session": {...Session...}, "payload": {...},
     "context": {...session context...}}

Field paths use dots; a numeric segment indexes a list, so
`message.payload.template.components.0.type` reaches into the stored
Graph payload. Numbers stored as strings (webhook timestamps, context
values collected by flows) compare numerically against numeric values.
Unknown operators and malformed regexes never match.
"""
from __future__ import annotations

import re
import structlog
from typing import Any, Callable, Optional

from models.schemas import AutomationCondition, Message, Session

logger = structlog.get_logger()

_MISSING = object()


def event_data(
    event_type: str,
    session: Optional[Session] = None,
    message: Optional[Message] = None,
    payload: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    session_data = session.model_dump(mode="json") if session else None
    return {
        "event_type": event_type,
        "session": session_data,
        "message": message.model_dump(mode="json") if message else None,
        "payload": payload or {},
        "context": (session_data or {}).get("context") or {},
    }


def resolve_field(data: Any, path: str) -> Any:
    """Value at a dotted path, or None when any segment is absent."""
    current = data
    for segment in path.split("."):
        if isinstance(current, dict):
            current = current.get(segment, _MISSING)
        elif isinstance(current, (list, tuple)) and re.fullmatch(r"-?\d+", segment):
            index = int(segment)
            current = current[index] if -len(current) <= index < len(current) else _MISSING
        else:
            return None
        if current is _MISSING:
            return None
    return current


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _coerce_pair(actual: Any, expected: Any) -> tuple[Any, Any]:
    """Both sides as floats when both read as numbers, otherwise unchanged."""
    a, b = _number(actual), _number(expected)
    if a is not None and b is not None and (
        not isinstance(actual, str) or not isinstance(expected, str)
    ):
        return a, b
    return actual, expected


def _equals(actual: Any, expected: Any) -> bool:
    a, b = _coerce_pair(actual, expected)
    return a == b


def _ordered(compare: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def check(actual: Any, expected: Any) -> bool:
        if actual is None or expected is None:
            return False
        a, b = _coerce_pair(actual, expected)
        if isinstance(a, float) != isinstance(b, float):
            return False
        return compare(a, b)
    return check


def _member(actual: Any, expected: Any) -> bool:
    """Field value (or any of its items) appears in the expected collection."""
    if not isinstance(expected, (list, tuple, set)):
        expected = [expected]
    candidates = actual if isinstance(actual, (list, tuple, set)) else [actual]
    return any(_equals(c, e) for c in candidates for e in expected)


def _contains(actual: Any, expected: Any) -> bool:
    if isinstance(actual, (list, tuple, set)):
        return any(_equals(item, expected) for item in actual)
    if isinstance(actual, dict):
        return expected in actual
    if actual is None:
        return False
    return str(expected) in str(actual)


def _regex(actual: Any, expected: Any) -> bool:
    if actual is None:
        return False
    try:
        return re.search(str(expected), str(actual)) is not None
    except re.error as e:
        logger.warning("condition_regex_invalid", pattern=str(expected), error=str(e))
        return False


OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "eq": _equals,
    "neq": lambda a, b: not _equals(a, b),
    "gt": _ordered(lambda a, b: a > b),
    "gte": _ordered(lambda a, b: a >= b),
    "lt": _ordered(lambda a, b: a < b),
    "lte": _ordered(lambda a, b: a <= b),
    "in": _member,
    "not_in": lambda a, b: not _member(a, b),
    "contains": _contains,
    "not_contains": lambda a, b: not _contains(a, b),
    "starts_with": lambda a, b: isinstance(a, str) and a.startswith(str(b)),
    "ends_with": lambda a, b: isinstance(a, str) and a.endswith(str(b)),
    "regex": _regex,
    "exists": lambda a, b: a is not None,
    "not_exists": lambda a, b: a is None,
}


def evaluate_condition(condition: AutomationCondition, data: dict[str, Any]) -> bool:
    check = OPERATORS.get(condition.operator)
    if check is None:
        logger.warning("condition_operator_unknown",
                       operator=condition.operator, field=condition.field)
        return False
    try:
        return bool(check(resolve_field(data, condition.field), condition.value))
    except TypeError:
        return False


def evaluate_conditions(conditions: list[AutomationCondition], data: dict[str, Any]) -> bool:
    """AND of every condition; an empty list passes."""
    return all(evaluate_condition(c, data) for c in conditions)
