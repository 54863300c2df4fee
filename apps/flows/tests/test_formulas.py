import pytest

from apps.flows.const import DataStoreFieldType
from apps.flows.exceptions import FormulaError
from apps.flows.flow import DataStoreSchemaField
from apps.flows.formulas import FormulaLexer, coerce_value, is_text_template, parse_formula, resolve_formula
from apps.flows.variables import VariableRegistry


@pytest.fixture()
def registry():
    return VariableRegistry(
        system={"char": {"name": "Aria"}},
        data_store={"health": 50, "gold": 12, "name": "Rin", "flag": True},
        agent_output={"narrator": {"delta": -3, "mood": "tense"}},
    )


def _field(field_type=DataStoreFieldType.NUMBER, **kwargs):
    return DataStoreSchemaField(name="value", type=field_type, **kwargs)


def test_delta_formula(registry):
    assert resolve_formula("{{health}} + -3", registry, _field()) == 47


def test_agent_output_reference(registry):
    assert resolve_formula("{{health}} + {{narrator.delta}}", registry, _field()) == 47


@pytest.mark.parametrize(
    ("logic", "expected"),
    [
        ("1 + 2 * 3", 7),
        ("(1 + 2) * 3", 9),
        ("10 / 4", 2.5),
        ("10 % 4", 2),
        ("-{{gold}} + 20", 8),
        ("{{gold}} > 10 ? 1 : 0", 1),
        ("{{gold}} > 10 && {{health}} < 10 ? 1 : 0", 0),
        ("!{{flag}} || {{gold}} == 12 ? 5 : 6", 5),
        ("max(0, {{health}} - 60)", 0),
        ("Math.min({{health}}, 30)", 30),
        ("clamp({{health}} * 3, 0, 100)", 100),
        ("round(2.5)", 3),
        ("round(2.345, 2)", 2.35),
        ("floor(2.7) + ceil(2.1)", 5),
        ("abs(-4)", 4),
        ("if({{gold}} >= 12, 1, 2)", 1),
        ("len('abc')", 3),
        ("int('7') + float('0.5')", 7.5),
    ],
)
def test_number_formulas(registry, logic, expected):
    assert resolve_formula(logic, registry, _field()) == expected


@pytest.mark.parametrize(
    ("logic", "expected"),
    [
        ("{{name}}", "Rin"),
        ("Hello {{char.name}}", "Hello Aria"),
        ("'Sir ' + {{name}}", "Sir Rin"),
        ("{{narrator.mood}} == 'tense' ? 'fight' : 'rest'", "fight"),
        ("It's {{narrator.mood}} (very)", "It's tense (very)"),
        ("{{gold}} + 0.0", "12"),
    ],
)
def test_string_formulas(registry, logic, expected):
    assert resolve_formula(logic, registry, _field(DataStoreFieldType.STRING)) == expected


def test_boolean_and_integer_coercion(registry):
    assert resolve_formula("{{gold}} > 5", registry, _field(DataStoreFieldType.BOOLEAN)) is True
    assert resolve_formula("{{gold}} / 5", registry, _field(DataStoreFieldType.INTEGER)) == 2


def test_clamping(registry):
    field = _field(minValue=0, maxValue=40)
    assert resolve_formula("{{health}}", registry, field) == 40
    assert resolve_formula("{{health}} - 100", registry, field) == 0


@pytest.mark.parametrize("logic", [None, "", "   ", "null", "'undefined'"])
def test_no_value(registry, logic):
    assert resolve_formula(logic, registry, _field()) is None


class TestErrors:
    def test_unresolved_variable(self, registry):
        with pytest.raises(FormulaError) as exc_info:
            resolve_formula("{{missing}} + 1", registry, _field())
        assert exc_info.value.variable == "missing"
        assert exc_info.value.logic == "{{missing}} + 1"

    def test_unresolved_in_text_template(self, registry):
        with pytest.raises(FormulaError) as exc_info:
            resolve_formula("{{missing}}", registry, _field(DataStoreFieldType.STRING))
        assert exc_info.value.variable == "missing"

    @pytest.mark.parametrize("logic", ["1 +", "(1 + 2", "1 $ 2", "'open", "{{a b}} + 1", "1 2"])
    def test_malformed(self, registry, logic):
        with pytest.raises(FormulaError):
            resolve_formula(logic, registry, _field())

    @pytest.mark.parametrize("logic", ["1 / 0", "5 % 0"])
    def test_division_by_zero(self, registry, logic):
        with pytest.raises(FormulaError, match="Division by zero"):
            resolve_formula(logic, registry, _field())

    def test_unknown_function(self, registry):
        with pytest.raises(FormulaError):
            parse_formula("eval('1')")

    @pytest.mark.parametrize(
        "logic", ["clamp(1, 2)", "round()", "round(1, 2, 3)", "abs()", "Math.floor(1, 2)", "if(true, 1)", "min()"]
    )
    def test_wrong_argument_count(self, registry, logic):
        with pytest.raises(FormulaError, match="argument"):
            parse_formula(logic)

    @pytest.mark.parametrize("logic", ["floor(1e999)", "ceil(-1e999)", "round(1e999)", "int(1e999)", "1e999 % 2"])
    def test_infinite_values(self, registry, logic):
        with pytest.raises(FormulaError) as exc_info:
            resolve_formula(logic, registry, _field())
        assert exc_info.value.logic == logic

    def test_failed_coercion(self, registry):
        with pytest.raises(FormulaError):
            resolve_formula("{{name}}", registry, _field())


def test_references():
    formula = parse_formula("{{health}} + narrator.delta * {{health}}")
    assert formula.references == ("health", "narrator.delta")
    assert not formula.is_template


@pytest.mark.parametrize(
    ("logic", "expected"),
    [
        ("{{health}}", True),
        ("Chapter {{chapter}}", True),
        ("{{health}} + 1", False),
        ("max(1, 2)", False),
    ],
)
def test_is_text_template(logic, expected):
    assert is_text_template(logic) is expected


def test_lexer_tokens():
    tokens = FormulaLexer("{{a.b}} >= 1.5 && 'x\\'y'").tokenize()
    assert [(token.type, token.value) for token in tokens] == [
        ("REFERENCE", "a.b"),
        ("SYMBOL", ">="),
        ("NUMBER", 1.5),
        ("SYMBOL", "&&"),
        ("STRING", "x'y"),
        ("EOF", None),
    ]


@pytest.mark.parametrize(
    ("value", "field_type", "expected"),
    [
        ("12", DataStoreFieldType.NUMBER, 12),
        ("1.5", DataStoreFieldType.NUMBER, 1.5),
        ("3.9", DataStoreFieldType.INTEGER, 3),
        ("yes", DataStoreFieldType.BOOLEAN, True),
        (2.0, DataStoreFieldType.STRING, "2"),
        (False, DataStoreFieldType.STRING, "false"),
        ("undefined", DataStoreFieldType.NUMBER, None),
    ],
)
def test_coerce_value(value, field_type, expected):
    assert coerce_value(value, field_type) == expected
