from __future__ import annotations

import logging
from numbers import Real
from typing import Any, Mapping

from pydantic import TypeAdapter, ValidationError

from .schemas import ConditionGroup, ConditionNode, ConditionPredicate

logger = logging.getLogger("flowdesk.rules")

_NODE_ADAPTER: TypeAdapter[ConditionNode] = TypeAdapter(ConditionNode)
_MISSING = object()

_LEGACY_OPERATORS = {
    "gt": "greater_than",
    "gte": "greater_or_equal",
    "lt": "less_than",
    "lte": "less_or_equal",
    "eq": "equals",
    "neq": "not_equals",
    "contains": "contains",
}


def _is_number(value: Any) -> bool:
    return isinstance(value, Real) and not isinstance(value, bool)


def resolve_field(data: Mapping[str, Any], path: str) -> Any:
    current: Any = data
    for part in path.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        else:
            return _MISSING
    return current


def evaluate_predicate(predicate: ConditionPredicate, data: Mapping[str, Any]) -> bool:
    operator = predicate.operator
    if operator == "manual":
        return True

    actual = resolve_field(data, predicate.field or "")
    expected = predicate.value
    if actual is _MISSING:
        return operator == "not_equals"

    if operator == "equals":
        return actual == expected
    if operator == "not_equals":
        return actual != expected
    if operator == "contains":
        if isinstance(actual, str) and isinstance(expected, str):
            return expected in actual
        if isinstance(actual, (list, tuple, set)):
            return expected in actual
        return False
    if operator == "in":
        return isinstance(expected, (list, tuple, set)) and actual in expected

    if not (_is_number(actual) and _is_number(expected)):
        return False
    if operator == "greater_than":
        return actual > expected
    if operator == "greater_or_equal":
        return actual >= expected
    if operator == "less_than":
        return actual < expected
    if operator == "less_or_equal":
        return actual <= expected
    return False


def evaluate(node: ConditionNode, data: Mapping[str, Any]) -> bool:
    if isinstance(node, ConditionPredicate):
        return evaluate_predicate(node, data)
    if not node.conditions:
        return False
    results = (evaluate(child, data) for child in node.conditions)
    if node.logic == "OR":
        return any(results)
    return all(results)


def _legacy_predicate(raw: Mapping[str, Any]) -> ConditionPredicate:
    kind = raw.get("type")
    if kind == "manual":
        return ConditionPredicate(operator="manual")
    if kind == "entityType":
        return ConditionPredicate(field="entity_type", operator="equals", value=raw.get("value"))
    operator = _LEGACY_OPERATORS.get(str(raw.get("operator")), str(raw.get("operator")))
    if kind == "amount":
        return ConditionPredicate(field="amount", operator=operator, value=raw.get("value"))
    if kind == "field":
        return ConditionPredicate(field=raw.get("field"), operator=operator, value=raw.get("value"))
    raise ValueError(f"unsupported legacy condition type: {kind}")


def parse_conditions(raw: Mapping[str, Any]) -> ConditionNode:
    """Accepts a condition tree or the flat ``{"conditions": [...], "logic": ...}`` form."""
    if "kind" in raw:
        return _NODE_ADAPTER.validate_python(raw)
    return ConditionGroup(
        logic=raw.get("logic", "AND"),
        conditions=[_legacy_predicate(item) for item in raw.get("conditions", [])],
    )


def safe_parse_conditions(raw: Mapping[str, Any], rule_id: str | None = None) -> ConditionNode | None:
    try:
        return parse_conditions(raw)
    except (ValidationError, ValueError, TypeError):
        logger.error("rule_conditions_invalid", extra={"extra_fields": {"rule_id": rule_id}}, exc_info=True)
        return None
