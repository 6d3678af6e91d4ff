"""Filter node implementation.

Partitions a list into ``matched`` and ``unmatched`` by a set of field
conditions. Every input item lands in exactly one of the two partitions.
"""

import math
from typing import Any, Callable, Dict, List

import structlog

from core.exceptions import ExecutionError
from nodes.base_node import BaseNode, NodeTypeDescriptor, ParameterSpec, PortSpec

logger = structlog.get_logger(__name__)

_MISSING = object()


def resolve_path(item: Any, path: str) -> Any:
    """Dot-notation lookup into mappings and lists (e.g. 'user.tags.0').

    Returns None when any segment is missing.
    """
    if not path:
        return item
    current = item
    for part in path.split("."):
        if isinstance(current, dict):
            current = current.get(part, _MISSING)
        elif isinstance(current, (list, tuple)):
            try:
                current = current[int(part)]
            except (ValueError, IndexError):
                return None
        else:
            return None
        if current is _MISSING:
            return None
    return current


def _to_number(value: Any) -> float:
    if isinstance(value, bool) or value is None:
        return math.nan
    try:
        return float(value)
    except (TypeError, ValueError):
        return math.nan


def _text(value: Any) -> str:
    return "" if value is None else str(value)


OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "equals": lambda a, b: a == b,
    "notEquals": lambda a, b: a != b,
    "contains": lambda a, b: _text(b) in _text(a),
    "notContains": lambda a, b: _text(b) not in _text(a),
    # NaN comparisons are always false
    "greaterThan": lambda a, b: _to_number(a) > _to_number(b),
    "lessThan": lambda a, b: _to_number(a) < _to_number(b),
    "greaterOrEqual": lambda a, b: _to_number(a) >= _to_number(b),
    "lessOrEqual": lambda a, b: _to_number(a) <= _to_number(b),
    "exists": lambda a, b: a is not None,
    "notExists": lambda a, b: a is None,
}


def evaluate_condition(item: Any, condition: Dict[str, Any]) -> bool:
    operator = condition.get("operator", "equals")
    compare = OPERATORS.get(operator)
    if compare is None:
        raise ExecutionError(f"Unknown filter operator: {operator}")
    return compare(resolve_path(item, condition.get("field", "")), condition.get("value"))


def matches(item: Any, conditions: List[Dict[str, Any]], combine: str = "AND") -> bool:
    """Whether an item satisfies the conditions under the combination mode."""
    if not conditions:
        return True
    results = (evaluate_condition(item, c) for c in conditions)
    if combine.upper() == "OR":
        return any(results)
    return all(results)


def partition(items: List[Any], conditions: List[Dict[str, Any]], combine: str = "AND"):
    matched, unmatched = [], []
    for item in items:
        (matched if matches(item, conditions, combine) else unmatched).append(item)
    return matched, unmatched


class FilterNode(BaseNode):
    """Split a list into matched / unmatched items.

    Parameters:
        conditions: [{"field": "a.b", "operator": "equals", "value": 1}, ...]
        combine: "AND" | "OR" (default: AND)
        emit_empty: Populate a port even when its partition is empty (default: false)
    """

    descriptor = NodeTypeDescriptor(
        type="data.filter",
        display_name="Filter",
        description="Route items to matched or unmatched by field conditions",
        category="data",
        inputs=[PortSpec("data", "array", required=True, description="Items to filter")],
        outputs=[
            PortSpec("matched", "array", description="Items satisfying the conditions"),
            PortSpec("unmatched", "array", description="Items failing the conditions"),
        ],
        parameters=[
            ParameterSpec("conditions", "array", default=[], description="Field conditions"),
            ParameterSpec("combine", "string", default="AND", options=["AND", "OR"]),
            ParameterSpec("emit_empty", "boolean", default=False),
        ],
    )

    def validate_parameters(self, parameters: Dict[str, Any]) -> None:
        for i, condition in enumerate(parameters.get("conditions") or []):
            if not isinstance(condition, dict):
                raise ValueError(f"conditions[{i}] must be an object")
            operator = condition.get("operator", "equals")
            if operator not in OPERATORS:
                raise ValueError(f"conditions[{i}] has unknown operator '{operator}'")

    async def execute(self, inputs, parameters, context) -> Dict[str, Any]:
        data = inputs.get("data")
        if not isinstance(data, (list, tuple)):
            raise ExecutionError(f"Filter input must be a list, got {type(data).__name__}")

        matched, unmatched = partition(
            list(data),
            parameters.get("conditions") or [],
            parameters.get("combine") or "AND",
        )
        logger.debug("Filter partitioned items", matched=len(matched), unmatched=len(unmatched))

        outputs: Dict[str, Any] = {}
        emit_empty = bool(parameters.get("emit_empty"))
        if matched or emit_empty:
            outputs["matched"] = matched
        if unmatched or emit_empty:
            outputs["unmatched"] = unmatched
        return outputs


# Export for node registry
FILTER_NODE_TYPES = {
    "data.filter": FilterNode,
}
