"""If-node condition evaluation and branch selection.

Operators are namespaced by data type, e.g. ``number_greater_than`` or ``string_contains``.
Both operands are templates rendered against the variable registry; an operand that is a
single ``{{reference}}`` keeps the bound value as-is.

A condition that cannot be evaluated (missing type or operator, unknown operator, invalid
regular expression, operands that do not convert) is ``False``.
"""

import logging
import math
import re
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from apps.flows.const import BranchHandle, DataStoreFieldType, LogicOperator, NodeType
from apps.flows.exceptions import FormulaError, GraphIncomplete, TypeMismatch
from apps.flows.flow import Edge, Flow, IfCondition, Node
from apps.flows.utils import render_template, single_reference
from apps.flows.variables import VariableRegistry

logger = logging.getLogger("flows.conditions")

TRUE_STRINGS = frozenset({"true", "1", "yes"})
FALSE_STRINGS = frozenset({"false", "0", "no"})

UNARY_OPERATORS = frozenset({"exists", "not_exists", "is_empty", "is_not_empty", "is_true", "is_false"})


def to_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, int | float):
        return None if math.isnan(value) else float(value)
    try:
        number = float(str(value).strip())
    except (TypeError, ValueError):
        return None
    return None if math.isnan(number) else number


def to_integer(value: Any) -> int | None:
    number = to_number(value)
    if number is None or math.isinf(number):
        return None
    return int(number)


def to_boolean(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in TRUE_STRINGS:
        return True
    if text in FALSE_STRINGS:
        return False
    return None


def to_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


CONVERTERS: dict[DataStoreFieldType, Callable[[Any], Any]] = {
    DataStoreFieldType.STRING: to_text,
    DataStoreFieldType.NUMBER: to_number,
    DataStoreFieldType.INTEGER: to_integer,
    DataStoreFieldType.BOOLEAN: to_boolean,
}


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, list | dict | tuple):
        return len(value) == 0
    return to_text(value).strip() == ""


def _regex_matches(value: str, pattern: str) -> bool | None:
    try:
        return re.search(pattern, value) is not None
    except re.error:
        logger.debug("Invalid regular expression in condition: %s", pattern)
        return None


def _compare(converter, op):
    def compare(left, right):
        left, right = converter(left), converter(right)
        if left is None or right is None:
            return False
        return op(left, right)

    return compare


def _string_ops() -> dict[str, Callable[[Any, Any], bool]]:
    def text(fn):
        return lambda left, right: fn(to_text(left), to_text(right))

    def matches(left, right):
        return bool(_regex_matches(to_text(left), to_text(right)))

    def not_matches(left, right):
        result = _regex_matches(to_text(left), to_text(right))
        return True if result is None else not result

    return {
        "equals": text(lambda a, b: a == b),
        "not_equals": text(lambda a, b: a != b),
        "contains": text(lambda a, b: b in a),
        "not_contains": text(lambda a, b: b not in a),
        "starts_with": text(lambda a, b: a.startswith(b)),
        "not_starts_with": text(lambda a, b: not a.startswith(b)),
        "ends_with": text(lambda a, b: a.endswith(b)),
        "not_ends_with": text(lambda a, b: not a.endswith(b)),
        "matches_regex": matches,
        "not_matches_regex": not_matches,
    }


def _numeric_ops(converter) -> dict[str, Callable[[Any, Any], bool]]:
    return {
        "equals": _compare(converter, lambda a, b: a == b),
        "not_equals": _compare(converter, lambda a, b: a != b),
        "greater_than": _compare(converter, lambda a, b: a > b),
        "less_than": _compare(converter, lambda a, b: a < b),
        "greater_than_or_equals": _compare(converter, lambda a, b: a >= b),
        "less_than_or_equals": _compare(converter, lambda a, b: a <= b),
    }


def _boolean_ops() -> dict[str, Callable[[Any, Any], bool]]:
    return {
        "equals": _compare(to_boolean, lambda a, b: a == b),
        "not_equals": _compare(to_boolean, lambda a, b: a != b),
        "is_true": lambda left, _: to_boolean(left) is True,
        "is_false": lambda left, _: to_boolean(left) is False,
    }


def _presence_ops(converter) -> dict[str, Callable[[Any, Any], bool]]:
    # the operand is converted first: "abc" does not exist as a number
    def convert(value):
        return None if value is None else converter(value)

    return {
        "exists": lambda left, _: convert(left) is not None,
        "not_exists": lambda left, _: convert(left) is None,
        "is_empty": lambda left, _: _is_empty(convert(left)),
        "is_not_empty": lambda left, _: not _is_empty(convert(left)),
    }

OPERATORS: dict[DataStoreFieldType, dict[str, Callable[[Any, Any], bool]]] = {
    DataStoreFieldType.STRING: {**_presence_ops(to_text), **_string_ops()},
    DataStoreFieldType.NUMBER: {**_presence_ops(to_number), **_numeric_ops(to_number)},
    DataStoreFieldType.INTEGER: {**_presence_ops(to_integer), **_numeric_ops(to_integer)},
    DataStoreFieldType.BOOLEAN: {**_presence_ops(to_boolean), **_boolean_ops()},
}


def operator_names(data_type: DataStoreFieldType) -> list[str]:
    """Fully qualified operator names for ``data_type`` e.g. ``number_greater_than``."""
    return [f"{data_type}_{name}" for name in OPERATORS[DataStoreFieldType(data_type)]]


def is_unary(operator: str) -> bool:
    return any(operator.endswith(f"_{name}") for name in UNARY_OPERATORS)


def render_operand(operand: str | None, registry: VariableRegistry) -> Any:
    """A single reference resolves to the bound value (None if unknown); anything else is rendered as text."""
    if operand is None:
        return None
    reference = single_reference(operand)
    if reference is not None:
        return registry.get(reference)
    return render_template(operand, registry.as_context())


def evaluate_condition(condition: IfCondition, registry: VariableRegistry) -> bool:
    if condition.dataType is None or not condition.operator:
        return False

    prefix = f"{condition.dataType}_"
    if not condition.operator.startswith(prefix):
        logger.debug("Operator %s does not apply to %s values", condition.operator, condition.dataType)
        return False
    compare = OPERATORS[condition.dataType].get(condition.operator[len(prefix) :])
    if compare is None:
        logger.debug("Unknown condition operator %s", condition.operator)
        return False

    try:
        left = render_operand(condition.value1, registry)
        right = None if is_unary(condition.operator) else render_operand(condition.value2, registry)
    except FormulaError as e:
        logger.debug("Condition %s could not be rendered: %s", condition.id, e)
        return False
    return compare(left, right)


def evaluate_conditions(
    conditions: list[IfCondition], logic_operator: LogicOperator, registry: VariableRegistry
) -> bool:
    """Combine the conditions with AND / OR.

    With no conditions, AND is ``True`` (vacuous truth) and OR is ``False``.
    """
    results = (evaluate_condition(condition, registry) for condition in conditions)
    if LogicOperator(logic_operator) == LogicOperator.OR:
        return any(results)
    return all(results)


@dataclass(frozen=True)
class BranchSelection:
    handle: BranchHandle
    edge: Edge

    @property
    def target(self) -> str:
        return self.edge.target


def select_branch(flow: Flow, node: Node | str, registry: VariableRegistry) -> BranchSelection:
    if isinstance(node, str):
        node = flow.get_node(node)
    if node.type != NodeType.IF:
        raise TypeMismatch(
            f"Node '{node.id}' is not an if node", node_id=node.id, expected=NodeType.IF, actual=node.type
        )

    outcome = evaluate_conditions(node.data.conditions, node.data.logicOperator, registry)
    handle = BranchHandle.TRUE if outcome else BranchHandle.FALSE
    edge = flow.edge_for_handle(node.id, handle)
    if edge is None:
        raise GraphIncomplete(f"If node has no '{handle}' branch", node_id=node.id)
    if flow.node_by_id(edge.target) is None:
        raise GraphIncomplete(
            f"The '{handle}' branch points to a missing node '{edge.target}'", node_id=node.id, edge_ids=[edge.id]
        )
    logger.debug("If node %s took the %s branch", node.id, handle)
    return BranchSelection(handle=handle, edge=edge)
