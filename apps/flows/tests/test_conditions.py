import pytest

from apps.flows.conditions import evaluate_condition, evaluate_conditions, operator_names, select_branch
from apps.flows.const import BranchHandle, DataStoreFieldType, LogicOperator
from apps.flows.exceptions import GraphIncomplete, TypeMismatch
from apps.flows.flow import IfCondition
from apps.flows.tests.utils import branching_flow
from apps.flows.variables import VariableRegistry
from apps.utils.factories.flows import IfConditionFactory


@pytest.fixture()
def registry():
    return VariableRegistry(
        system={"char": {"name": "Aria"}},
        data_store={"score": 7, "mood": "cheerful", "visited": "yes", "empty": "", "count": "3.9"},
    )


def _condition(data_type, operator, value1, value2=""):
    return IfCondition(dataType=data_type, operator=operator, value1=value1, value2=value2)


@pytest.mark.parametrize(
    ("data_type", "operator", "value1", "value2", "expected"),
    [
        ("number", "number_greater_than", "{{score}}", "5", True),
        ("number", "number_less_than_or_equals", "{{score}}", "7", True),
        ("number", "number_equals", "{{score}}", "7.0", True),
        ("number", "number_greater_than", "{{mood}}", "5", False),
        ("integer", "integer_equals", "{{count}}", "3", True),
        ("string", "string_equals", "{{char.name}}", "Aria", True),
        ("string", "string_contains", "{{mood}}", "cheer", True),
        ("string", "string_not_starts_with", "{{mood}}", "sad", True),
        ("string", "string_ends_with", "Hello {{char.name}}", "Aria", True),
        ("string", "string_matches_regex", "{{mood}}", "^che+r", True),
        ("string", "string_matches_regex", "{{mood}}", "(", False),
        ("string", "string_not_matches_regex", "{{mood}}", "(", True),
        ("string", "string_is_empty", "{{empty}}", "", True),
        ("string", "string_is_not_empty", "{{mood}}", "ignored", True),
        ("string", "string_exists", "{{missing}}", "", False),
        ("string", "string_not_exists", "{{missing}}", "", True),
        ("number", "number_exists", "abc", "", False),
        ("number", "number_exists", "{{score}}", "", True),
        ("number", "number_not_exists", "{{mood}}", "", True),
        ("number", "number_is_empty", "abc", "", True),
        ("number", "number_is_not_empty", "{{count}}", "", True),
        ("integer", "integer_exists", "{{mood}}", "", False),
        ("boolean", "boolean_exists", "maybe", "", False),
        ("boolean", "boolean_is_not_empty", "{{visited}}", "", True),
        ("boolean", "boolean_is_true", "{{visited}}", "", True),
        ("boolean", "boolean_is_false", "{{visited}}", "", False),
        ("boolean", "boolean_equals", "{{visited}}", "true", True),
    ],
)
def test_evaluate_condition(registry, data_type, operator, value1, value2, expected):
    assert evaluate_condition(_condition(data_type, operator, value1, value2), registry) is expected


@pytest.mark.parametrize(
    "condition",
    [
        IfCondition(dataType=None, operator="number_equals", value1="1", value2="1"),
        IfCondition(dataType="number", operator=None, value1="1", value2="1"),
        IfCondition(dataType="number", operator="string_equals", value1="1", value2="1"),
        IfCondition(dataType="number", operator="number_between", value1="1", value2="1"),
    ],
)
def test_incomplete_conditions_are_false(registry, condition):
    assert evaluate_condition(condition, registry) is False


def test_operator_names():
    names = operator_names(DataStoreFieldType.BOOLEAN)
    assert "boolean_is_true" in names
    assert "boolean_greater_than" not in names


@pytest.mark.parametrize(
    ("results", "logic_operator", "expected"),
    [
        ([True, True], LogicOperator.AND, True),
        ([True, False], LogicOperator.AND, False),
        ([True, False], LogicOperator.OR, True),
        ([False, False], LogicOperator.OR, False),
        ([], LogicOperator.AND, True),
        ([], LogicOperator.OR, False),
    ],
)
def test_evaluate_conditions(registry, results, logic_operator, expected):
    conditions = [IfConditionFactory(value2="5" if result else "100") for result in results]
    assert evaluate_conditions(conditions, logic_operator, registry) is expected


class TestSelectBranch:
    def _flow(self, threshold):
        flow = branching_flow()
        condition = IfConditionFactory(value2=str(threshold))
        nodes = [
            node.model_copy(update={"data": node.data.model_copy(update={"conditions": [condition]})})
            if node.id == "check"
            else node
            for node in flow.nodes
        ]
        return flow.update(nodes=nodes)

    def test_true_branch(self, registry):
        selection = select_branch(self._flow(5), "check", registry)
        assert selection.handle == BranchHandle.TRUE
        assert selection.target == "b"

    def test_false_branch(self, registry):
        selection = select_branch(self._flow(10), "check", registry)
        assert selection.handle == BranchHandle.FALSE
        assert selection.target == "c"

    def test_missing_branch(self, registry):
        flow = self._flow(10)
        flow = flow.update(edges=[edge for edge in flow.edges if edge.sourceHandle != "false"])
        with pytest.raises(GraphIncomplete) as exc_info:
            select_branch(flow, "check", registry)
        assert exc_info.value.node_id == "check"

    def test_not_an_if_node(self, registry):
        with pytest.raises(TypeMismatch):
            select_branch(branching_flow(), "a", registry)
