"""Data-store logic strings.

A logic string is either a *text template* or a *formula*:

* Text template: the text outside ``{{ ... }}`` contains no operator, parenthesis or quote
  characters, e.g. ``{{narrator.mood}}`` or ``Chapter {{chapter}}``. References are
  substituted; a logic string that is exactly one reference yields the bound value unchanged.
* Formula: an expression in the grammar below, evaluated without any dynamic code
  execution::

    expr        := ternary
    ternary     := or ( "?" expr ":" expr )?
    or          := and ( "||" and )*
    and         := comparison ( "&&" comparison )*
    comparison  := additive ( ("=="|"!="|"<"|"<="|">"|">=") additive )?
    additive    := term ( ("+"|"-") term )*
    term        := unary ( ("*"|"/"|"%") unary )*
    unary       := ("-"|"+"|"!") unary | primary
    primary     := NUMBER | STRING | "true" | "false" | "null"
                 | "{{" dotted "}}" | dotted | call | "(" expr ")"
    call        := dotted "(" [expr ("," expr)*] ")"

Only the functions in ``FUNCTIONS`` can be called.
"""

import logging
import math
import re
from collections.abc import Callable
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from functools import lru_cache
from typing import Any

from apps.flows.conditions import to_boolean, to_integer, to_number, to_text
from apps.flows.config import get_settings
from apps.flows.const import DataStoreFieldType
from apps.flows.exceptions import FormulaError
from apps.flows.flow import DataStoreSchemaField
from apps.flows.utils import TEMPLATE_REFERENCE_RE, single_reference, template_references
from apps.flows.variables import VariableRegistry

logger = logging.getLogger("flows.formulas")

DOTTED_NAME_RE = re.compile(r"[A-Za-z_]\w*(?:\.[A-Za-z_]\w*)*")
NAME_RE = re.compile(r"[A-Za-z_]\w*")
NUMBER_RE = re.compile(r"\d+(?:\.\d+)?(?:[eE][+-]?\d+)?|\.\d+")
ANY_REFERENCE_RE = re.compile(r"\{\{.*?\}\}")

# presence of any of these outside {{ }} makes a logic string a formula
FORMULA_CHARACTERS = frozenset("+-*/%<>=!?:&|()\"'")

# longest first
SYMBOLS = ("==", "!=", "<=", ">=", "&&", "||", "+", "-", "*", "/", "%", "<", ">", "!", "?", ":", ",", "(", ")", ".")
COMPARISON_OPERATORS = frozenset({"==", "!=", "<", "<=", ">", ">="})
KEYWORDS = {"true": True, "false": False, "null": None}

# values that mean "no value": the field keeps its previous value
EMPTY_RESULTS = frozenset({"", "undefined", "null"})


@dataclass
class Token:
    type: str
    value: Any
    position: int


class FormulaLexer:
    NUMBER = "NUMBER"
    STRING = "STRING"
    NAME = "NAME"
    REFERENCE = "REFERENCE"
    SYMBOL = "SYMBOL"
    EOF = "EOF"

    def __init__(self, source: str):
        self.source = source

    def tokenize(self) -> list[Token]:
        tokens = []
        source = self.source
        index = 0
        while index < len(source):
            char = source[index]
            if char.isspace():
                index += 1
            elif source.startswith("{{", index):
                index = self._reference(index, tokens)
            elif char.isdigit() or (char == "." and source[index + 1 : index + 2].isdigit()):
                match = NUMBER_RE.match(source, index)
                text = match.group(0)
                value = float(text) if any(c in text for c in ".eE") else int(text)
                tokens.append(Token(self.NUMBER, value, index))
                index = match.end()
            elif char in "\"'":
                index = self._string(index, tokens)
            elif char.isalpha() or char == "_":
                match = NAME_RE.match(source, index)
                tokens.append(Token(self.NAME, match.group(0), index))
                index = match.end()
            else:
                symbol = next((s for s in SYMBOLS if source.startswith(s, index)), None)
                if symbol is None:
                    raise FormulaError(f"Unexpected character {char!r} at position {index}", logic=source)
                tokens.append(Token(self.SYMBOL, symbol, index))
                index += len(symbol)
        tokens.append(Token(self.EOF, None, len(source)))
        return tokens

    def _reference(self, index: int, tokens: list[Token]) -> int:
        end = self.source.find("}}", index + 2)
        if end == -1:
            raise FormulaError(f"Unclosed '{{{{' at position {index}", logic=self.source)
        name = self.source[index + 2 : end].strip()
        if not DOTTED_NAME_RE.fullmatch(name):
            raise FormulaError(f"Invalid variable reference '{{{{{name}}}}}'", logic=self.source)
        tokens.append(Token(self.REFERENCE, name, index))
        return end + 2

    def _string(self, index: int, tokens: list[Token]) -> int:
        quote = self.source[index]
        chars = []
        position = index + 1
        while position < len(self.source):
            char = self.source[position]
            if char == "\\" and position + 1 < len(self.source):
                chars.append(self.source[position + 1])
                position += 2
                continue
            if char == quote:
                tokens.append(Token(self.STRING, "".join(chars), index))
                return position + 1
            chars.append(char)
            position += 1
        raise FormulaError(f"Unterminated string starting at position {index}", logic=self.source)


# --- Expression tree ---


class Expr:
    def evaluate(self, registry: VariableRegistry) -> Any:
        raise NotImplementedError()

    def references(self) -> list[str]:
        return []


@dataclass(frozen=True)
class Literal(Expr):
    value: Any

    def evaluate(self, registry):
        return self.value


@dataclass(frozen=True)
class Reference(Expr):
    name: str

    def evaluate(self, registry):
        try:
            return registry.resolve(self.name)
        except KeyError:
            raise FormulaError(f"Unresolved variable '{self.name}'", variable=self.name) from None

    def references(self):
        return [self.name]


@dataclass(frozen=True)
class Unary(Expr):
    operator: str
    operand: Expr

    def evaluate(self, registry):
        value = self.operand.evaluate(registry)
        if self.operator == "!":
            return not truthy(value)
        number = as_number(value, self.operator)
        return -number if self.operator == "-" else number

    def references(self):
        return self.operand.references()


@dataclass(frozen=True)
class Binary(Expr):
    operator: str
    left: Expr
    right: Expr

    def evaluate(self, registry):
        if self.operator == "&&":
            left = self.left.evaluate(registry)
            return truthy(left) and truthy(self.right.evaluate(registry))
        if self.operator == "||":
            left = self.left.evaluate(registry)
            return truthy(left) or truthy(self.right.evaluate(registry))
        return BINARY_OPERATIONS[self.operator](self.left.evaluate(registry), self.right.evaluate(registry))

    def references(self):
        return self.left.references() + self.right.references()


@dataclass(frozen=True)
class Conditional(Expr):
    condition: Expr
    when_true: Expr
    when_false: Expr

    def evaluate(self, registry):
        if truthy(self.condition.evaluate(registry)):
            return self.when_true.evaluate(registry)
        return self.when_false.evaluate(registry)

    def references(self):
        return self.condition.references() + self.when_true.references() + self.when_false.references()


@dataclass(frozen=True)
class Call(Expr):
    name: str
    args: tuple[Expr, ...]

    def evaluate(self, registry):
        if self.name == "if":
            if len(self.args) != 3:
                raise FormulaError("if() takes exactly 3 arguments")
            condition, when_true, when_false = self.args
            branch = when_true if truthy(condition.evaluate(registry)) else when_false
            return branch.evaluate(registry)
        function = FUNCTIONS[self.name]
        args = [arg.evaluate(registry) for arg in self.args]
        try:
            return function(*args)
        except (TypeError, ValueError, ArithmeticError) as e:
            raise FormulaError(f"{self.name}() failed: {e}") from e

    def references(self):
        return [name for arg in self.args for name in arg.references()]


class FormulaParser:
    """Recursive-descent parser producing an ``Expr`` tree."""

    def __init__(self, source: str):
        self.source = source
        self.tokens = FormulaLexer(source).tokenize()
        self.index = 0

    def parse(self) -> Expr:
        if self._peek().type == FormulaLexer.EOF:
            raise FormulaError("Empty expression", logic=self.source)
        expression = self._ternary()
        token = self._peek()
        if token.type != FormulaLexer.EOF:
            raise self._unexpected(token)
        return expression

    def _peek(self) -> Token:
        return self.tokens[self.index]

    def _advance(self) -> Token:
        token = self.tokens[self.index]
        self.index += 1
        return token

    def _match(self, *symbols: str) -> str | None:
        token = self._peek()
        if token.type == FormulaLexer.SYMBOL and token.value in symbols:
            self.index += 1
            return token.value
        return None

    def _expect(self, symbol: str):
        if not self._match(symbol):
            raise self._unexpected(self._peek(), expected=symbol)

    def _unexpected(self, token: Token, expected: str = None) -> FormulaError:
        found = "end of expression" if token.type == FormulaLexer.EOF else repr(token.value)
        message = f"Unexpected {found} at position {token.position}"
        if expected:
            message += f", expected '{expected}'"
        return FormulaError(message, logic=self.source)

    def _ternary(self) -> Expr:
        condition = self._or()
        if self._match("?"):
            when_true = self._ternary()
            self._expect(":")
            when_false = self._ternary()
            return Conditional(condition, when_true, when_false)
        return condition

    def _or(self) -> Expr:
        left = self._and()
        while self._match("||"):
            left = Binary("||", left, self._and())
        return left

    def _and(self) -> Expr:
        left = self._comparison()
        while self._match("&&"):
            left = Binary("&&", left, self._comparison())
        return left

    def _comparison(self) -> Expr:
        left = self._additive()
        operator = self._match(*COMPARISON_OPERATORS)
        if operator:
            return Binary(operator, left, self._additive())
        return left

    def _additive(self) -> Expr:
        left = self._term()
        while operator := self._match("+", "-"):
            left = Binary(operator, left, self._term())
        return left

    def _term(self) -> Expr:
        left = self._unary()
        while operator := self._match("*", "/", "%"):
            left = Binary(operator, left, self._unary())
        return left

    def _unary(self) -> Expr:
        operator = self._match("-", "+", "!")
        if operator:
            return Unary(operator, self._unary())
        return self._primary()

    def _primary(self) -> Expr:
        token = self._advance()
        if token.type in (FormulaLexer.NUMBER, FormulaLexer.STRING):
            return Literal(token.value)
        if token.type == FormulaLexer.REFERENCE:
            return Reference(token.value)
        if token.type == FormulaLexer.NAME:
            return self._name(token)
        if token.type == FormulaLexer.SYMBOL and token.value == "(":
            expression = self._ternary()
            self._expect(")")
            return expression
        raise self._unexpected(token)

    def _name(self, token: Token) -> Expr:
        parts = [token.value]
        while self._match("."):
            part = self._advance()
            if part.type != FormulaLexer.NAME:
                raise self._unexpected(part)
            parts.append(part.value)
        name = ".".join(parts)

        if self._match("("):
            if name not in FUNCTIONS and name != "if":
                raise FormulaError(f"Unknown function '{name}'", logic=self.source)
            args = []
            if not self._match(")"):
                args.append(self._ternary())
                while self._match(","):
                    args.append(self._ternary())
                self._expect(")")
            check_arity(name, len(args), self.source)
            return Call(name, tuple(args))

        if len(parts) == 1 and name in KEYWORDS:
            return Literal(KEYWORDS[name])
        return Reference(name)


# --- Value semantics ---


def truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value != "" and value.lower() not in ("false", "0")
    return bool(value)


def is_numeric(value: Any) -> bool:
    if isinstance(value, bool | int | float):
        return True
    return isinstance(value, str) and value.strip() != "" and to_number(value) is not None


def as_number(value: Any, operator: str = None) -> int | float:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int | float):
        return value
    number = to_number(value) if value is not None else None
    if number is None:
        where = f" for '{operator}'" if operator else ""
        raise FormulaError(f"Expected a number{where}, got {value!r}")
    return int(number) if number.is_integer() and "." not in str(value) else number


def _add(left, right):
    if is_numeric(left) and is_numeric(right):
        return as_number(left, "+") + as_number(right, "+")
    return to_text(left) + to_text(right)


def _divide(left, right):
    divisor = as_number(right, "/")
    if divisor == 0:
        raise FormulaError("Division by zero")
    return as_number(left, "/") / divisor


def _modulo(left, right):
    divisor = as_number(right, "%")
    if divisor == 0:
        raise FormulaError("Division by zero")
    return math.fmod(as_number(left, "%"), divisor)


def _comparison(operator):
    def compare(left, right):
        if is_numeric(left) and is_numeric(right):
            return operator(as_number(left), as_number(right))
        if left is None or right is None:
            return operator(left is None, right is None) if operator in (_eq, _ne) else False
        return operator(to_text(left), to_text(right))

    return compare


def _eq(a, b):
    return a == b


def _ne(a, b):
    return a != b


BINARY_OPERATIONS: dict[str, Callable[[Any, Any], Any]] = {
    "+": _add,
    "-": lambda left, right: as_number(left, "-") - as_number(right, "-"),
    "*": lambda left, right: as_number(left, "*") * as_number(right, "*"),
    "/": _divide,
    "%": _modulo,
    "==": _comparison(_eq),
    "!=": _comparison(_ne),
    "<": _comparison(lambda a, b: a < b),
    "<=": _comparison(lambda a, b: a <= b),
    ">": _comparison(lambda a, b: a > b),
    ">=": _comparison(lambda a, b: a >= b),
}


def _numbers(name: str, values, minimum: int = 1) -> list:
    if len(values) < minimum:
        raise FormulaError(f"{name}() expects at least {minimum} argument(s)")
    return [as_number(value, name) for value in values]


def _clamp(value, low, high):
    value, low, high = _numbers("clamp", (value, low, high), 3)
    return max(low, min(high, value))


def _round(value, digits=0):
    number = Decimal(str(as_number(value, "round")))
    digits = int(as_number(digits, "round"))
    rounded = number.quantize(Decimal(1).scaleb(-digits), rounding=ROUND_HALF_UP)
    return int(rounded) if digits <= 0 else float(rounded)


def _one(name, fn):
    def call(*args):
        if len(args) != 1:
            raise FormulaError(f"{name}() takes exactly 1 argument")
        return fn(args[0])

    return call


FUNCTIONS: dict[str, Callable[..., Any]] = {
    "min": lambda *args: min(_numbers("min", args)),
    "max": lambda *args: max(_numbers("max", args)),
    "clamp": _clamp,
    "abs": _one("abs", lambda value: abs(as_number(value, "abs"))),
    "round": _round,
    "floor": _one("floor", lambda value: math.floor(as_number(value, "floor"))),
    "ceil": _one("ceil", lambda value: math.ceil(as_number(value, "ceil"))),
    "int": _one("int", lambda value: int(as_number(value, "int"))),
    "float": _one("float", lambda value: float(as_number(value, "float"))),
    "str": _one("str", to_text),
    "len": _one("len", lambda value: len(value) if isinstance(value, list | dict) else len(to_text(value))),
}
# accepted aliases
FUNCTIONS.update({f"Math.{name}": FUNCTIONS[name] for name in ("min", "max", "abs", "round", "floor", "ceil")})

# (minimum, maximum) number of arguments; None means no upper bound
FUNCTION_ARITY: dict[str, tuple[int, int | None]] = {
    "if": (3, 3),
    "min": (1, None),
    "max": (1, None),
    "clamp": (3, 3),
    "round": (1, 2),
    **{name: (1, 1) for name in ("abs", "floor", "ceil", "int", "float", "str", "len")},
}
FUNCTION_ARITY.update(
    {f"Math.{name}": FUNCTION_ARITY[name] for name in ("min", "max", "abs", "round", "floor", "ceil")}
)


def check_arity(name: str, count: int, logic: str = None):
    minimum, maximum = FUNCTION_ARITY[name]
    if count < minimum or (maximum is not None and count > maximum):
        if minimum == maximum:
            expected = f"exactly {minimum}"
        elif maximum is None:
            expected = f"at least {minimum}"
        else:
            expected = f"{minimum} to {maximum}"
        raise FormulaError(f"{name}() takes {expected} argument(s), got {count}", logic=logic)


# --- Public API ---


@dataclass(frozen=True)
class Formula:
    source: str
    expression: Expr | None
    references: tuple[str, ...] = ()

    @property
    def is_template(self) -> bool:
        return self.expression is None

    def evaluate(self, registry: VariableRegistry) -> Any:
        if self.expression is not None:
            return self.expression.evaluate(registry)
        return render_text_template(self.source, registry)


def is_text_template(logic: str) -> bool:
    outside = ANY_REFERENCE_RE.sub("", logic)
    return not any(char in FORMULA_CHARACTERS for char in outside)


def text_template(logic: str) -> Formula:
    return Formula(source=logic, expression=None, references=tuple(template_references(logic)))


def _parse(logic: str) -> Formula:
    if is_text_template(logic):
        return text_template(logic)
    expression = FormulaParser(logic).parse()
    return Formula(source=logic, expression=expression, references=tuple(dict.fromkeys(expression.references())))


_parse_cached = lru_cache(maxsize=get_settings().formula_cache_size)(_parse)


def parse_formula(logic: str) -> Formula:
    """Parse ``logic`` (cached). Raises ``FormulaError`` for malformed expressions."""
    return _parse_cached(logic)


def render_text_template(template: str, registry: VariableRegistry) -> Any:
    reference = single_reference(template)
    if reference is not None:
        return _resolve(reference, registry)

    def substitute(match: re.Match) -> str:
        return to_text(_resolve(match.group(1), registry))

    return TEMPLATE_REFERENCE_RE.sub(substitute, template)


def _resolve(name: str, registry: VariableRegistry) -> Any:
    try:
        return registry.resolve(name)
    except KeyError:
        raise FormulaError(f"Unresolved variable '{name}'", variable=name) from None


def _normalise_number(value: float) -> int | float:
    return int(value) if value.is_integer() else value


def coerce_value(value: Any, field_type: DataStoreFieldType) -> Any:
    """Convert an evaluated value to the field type. Returns None for "no value"."""
    if value is None or (isinstance(value, str) and value.strip() in EMPTY_RESULTS):
        return None

    field_type = DataStoreFieldType(field_type)
    if field_type == DataStoreFieldType.STRING:
        if isinstance(value, float):
            value = _normalise_number(value)
        return to_text(value)
    if field_type == DataStoreFieldType.BOOLEAN:
        converted = to_boolean(value)
    elif field_type == DataStoreFieldType.INTEGER:
        converted = to_integer(value)
    else:
        converted = to_number(value)
        if converted is not None:
            converted = _normalise_number(converted)
    if converted is None:
        raise FormulaError(f"Value {value!r} cannot be converted to {field_type}")
    return converted


def clamp_value(value: Any, field: DataStoreSchemaField) -> Any:
    if value is None or field.type not in (DataStoreFieldType.NUMBER, DataStoreFieldType.INTEGER):
        return value
    if field.minValue is not None and value < field.minValue:
        value = field.minValue
    if field.maxValue is not None and value > field.maxValue:
        value = field.maxValue
    if field.type == DataStoreFieldType.INTEGER:
        return int(value)
    return _normalise_number(float(value))


def resolve_formula(logic: str | None, registry: VariableRegistry, field: DataStoreSchemaField) -> Any:
    """Evaluate ``logic`` for ``field``.

    Returns the value coerced to the field type and clamped to the field's min / max, or None
    when the logic is blank or evaluates to no value. Raises ``FormulaError``.
    """
    if logic is None or not logic.strip():
        return None
    try:
        formula = parse_formula(logic)
    except FormulaError:
        if field.type != DataStoreFieldType.STRING:
            raise
        # plain text that happens to contain punctuation
        formula = text_template(logic)

    try:
        value = formula.evaluate(registry)
        return clamp_value(coerce_value(value, field.type), field)
    except FormulaError as e:
        e.logic = logic
        raise
    except (TypeError, ValueError, ArithmeticError) as e:
        raise FormulaError(f"Formula could not be evaluated: {e}", logic=logic) from e
