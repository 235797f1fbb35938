"""Restricted expression language for decision conditions.

Conditions are small JavaScript-flavoured expressions written by workflow
authors, after ``{{variable}}`` substitution. They are parsed by a
tokenizer and a precedence-climbing parser into a tuple AST and evaluated
without touching any host object. Supported syntax:

* literals: numbers, single/double quoted strings, ``true``, ``false``,
  ``null``, ``undefined``, ``NaN``, ``Infinity``, array and object literals
* unary ``! - +``; binary ``* / %``, ``+ -``, ``< <= > >=``,
  ``== != === !==``, ``&&``, ``||``, ``??``; ternary ``a ? b : c``
* member access ``.name`` / ``[index]``, ``length`` and the string/array
  methods listed in ``ALLOWED_METHODS``

Identifiers never resolve to anything, so a bare name is an error.
"""

import math
import re
from typing import Any, List, Tuple

from .exceptions import ExpressionError


class _Undefined:
    """The JavaScript ``undefined`` value."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self):
        return "undefined"

    def __bool__(self):
        return False


UNDEFINED = _Undefined()

ALLOWED_METHODS = frozenset({
    "includes", "startsWith", "endsWith", "indexOf",
    "toLowerCase", "toUpperCase", "trim",
})

KEYWORDS = {
    "true": True,
    "false": False,
    "null": None,
    "undefined": UNDEFINED,
    "NaN": float("nan"),
    "Infinity": float("inf"),
}

OPERATORS = (
    "===", "!==", "==", "!=", "<=", ">=", "&&", "||", "??",
    "<", ">", "+", "-", "*", "/", "%", "!",
    "(", ")", "[", "]", "{", "}", ",", ".", "?", ":",
)

_NUMBER = re.compile(r"(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?")
_IDENTIFIER = re.compile(r"[A-Za-z_$][A-Za-z0-9_$]*")
_NUMERIC_STRING = re.compile(r"^[+-]?(\d+\.?\d*([eE][+-]?\d+)?|\.\d+([eE][+-]?\d+)?|Infinity)$")

_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "b": "\b", "f": "\f", "v": "\v", "0": "\0"}

# Binary operator precedence, higher binds tighter
_BINARY_PRECEDENCE = {
    "??": 1,
    "||": 2,
    "&&": 3,
    "==": 4, "!=": 4, "===": 4, "!==": 4,
    "<": 5, "<=": 5, ">": 5, ">=": 5,
    "+": 6, "-": 6,
    "*": 7, "/": 7, "%": 7,
}
_LOGICAL = {"&&", "||", "??"}

Token = Tuple[str, Any, int]


# ---------------------------------------------------------------------------
# Tokenizer
# ---------------------------------------------------------------------------

def tokenize(text: str) -> List[Token]:
    """Split ``text`` into (kind, value, position) tokens."""
    tokens: List[Token] = []
    pos = 0
    length = len(text)

    while pos < length:
        char = text[pos]

        if char.isspace():
            pos += 1
            continue

        if char.isdigit() or (char == "." and pos + 1 < length and text[pos + 1].isdigit()):
            match = _NUMBER.match(text, pos)
            tokens.append(("num", float(match.group(0)), pos))
            pos = match.end()
            continue

        if char in ("'", '"'):
            value, end = _read_string(text, pos)
            tokens.append(("str", value, pos))
            pos = end
            continue

        match = _IDENTIFIER.match(text, pos)
        if match:
            tokens.append(("ident", match.group(0), pos))
            pos = match.end()
            continue

        for operator in OPERATORS:
            if text.startswith(operator, pos):
                tokens.append(("op", operator, pos))
                pos += len(operator)
                break
        else:
            raise ExpressionError(f"Unexpected character '{char}'", expression=text, position=pos)

    tokens.append(("eof", None, length))
    return tokens


def _read_string(text: str, start: int) -> Tuple[str, int]:
    quote = text[start]
    pos = start + 1
    chars = []

    while pos < len(text):
        char = text[pos]
        if char == quote:
            return "".join(chars), pos + 1
        if char == "\\":
            pos += 1
            if pos >= len(text):
                break
            escaped = text[pos]
            if escaped == "u" and pos + 4 < len(text):
                try:
                    chars.append(chr(int(text[pos + 1:pos + 5], 16)))
                    pos += 5
                    continue
                except ValueError:
                    raise ExpressionError("Invalid unicode escape", expression=text, position=pos)
            chars.append(_ESCAPES.get(escaped, escaped))
        else:
            chars.append(char)
        pos += 1

    raise ExpressionError("Unterminated string literal", expression=text, position=start)


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

class Parser:
    """Precedence-climbing parser producing a tuple AST."""

    def __init__(self, text: str):
        self.text = text
        self.tokens = tokenize(text)
        self.index = 0

    @property
    def current(self) -> Token:
        return self.tokens[self.index]

    def _advance(self) -> Token:
        token = self.tokens[self.index]
        self.index += 1
        return token

    def _is_op(self, value: str) -> bool:
        kind, token_value, _ = self.current
        return kind == "op" and token_value == value

    def _expect(self, value: str) -> Token:
        if not self._is_op(value):
            self._fail(f"Expected '{value}'")
        return self._advance()

    def _fail(self, message: str):
        kind, value, position = self.current
        found = "end of input" if kind == "eof" else repr(value)
        raise ExpressionError(f"{message} but found {found}", expression=self.text, position=position)

    def parse(self):
        if self.current[0] == "eof":
            raise ExpressionError("Empty expression", expression=self.text, position=0)
        node = self.parse_ternary()
        if self.current[0] != "eof":
            self._fail("Unexpected token")
        return node

    def parse_ternary(self):
        test = self.parse_binary(1)
        if self._is_op("?"):
            self._advance()
            consequent = self.parse_ternary()
            self._expect(":")
            alternate = self.parse_ternary()
            return ("cond", test, consequent, alternate)
        return test

    def parse_binary(self, min_precedence: int):
        left = self.parse_unary()
        while True:
            kind, operator, _ = self.current
            precedence = _BINARY_PRECEDENCE.get(operator) if kind == "op" else None
            if precedence is None or precedence < min_precedence:
                return left
            self._advance()
            right = self.parse_binary(precedence + 1)
            node_type = "logical" if operator in _LOGICAL else "binary"
            left = (node_type, operator, left, right)

    def parse_unary(self):
        kind, value, _ = self.current
        if kind == "op" and value in ("!", "-", "+"):
            self._advance()
            return ("unary", value, self.parse_unary())
        return self.parse_postfix(self.parse_primary())

    def parse_postfix(self, node):
        while True:
            if self._is_op("."):
                self._advance()
                kind, name, _ = self.current
                if kind != "ident":
                    self._fail("Expected property name")
                self._advance()
                if self._is_op("("):
                    node = ("call", node, name, self._parse_arguments())
                else:
                    node = ("member", node, ("lit", name))
            elif self._is_op("["):
                self._advance()
                prop = self.parse_ternary()
                self._expect("]")
                node = ("member", node, prop)
            elif self._is_op("("):
                self._fail("Only allow-listed methods can be called")
            else:
                return node

    def _parse_arguments(self):
        self._expect("(")
        args = []
        if not self._is_op(")"):
            args.append(self.parse_ternary())
            while self._is_op(","):
                self._advance()
                args.append(self.parse_ternary())
        self._expect(")")
        return args

    def parse_primary(self):
        kind, value, _ = self.current

        if kind == "num" or kind == "str":
            self._advance()
            return ("lit", value)

        if kind == "ident":
            self._advance()
            if value in KEYWORDS:
                return ("lit", KEYWORDS[value])
            return ("ident", value)

        if self._is_op("("):
            self._advance()
            node = self.parse_ternary()
            self._expect(")")
            return node

        if self._is_op("["):
            return self._parse_array()

        if self._is_op("{"):
            return self._parse_object()

        self._fail("Unexpected token")

    def _parse_array(self):
        self._expect("[")
        items = []
        while not self._is_op("]"):
            items.append(self.parse_ternary())
            if not self._is_op(","):
                break
            self._advance()
        self._expect("]")
        return ("array", items)

    def _parse_object(self):
        self._expect("{")
        entries = []
        while not self._is_op("}"):
            kind, key, _ = self.current
            if kind == "num":
                key = to_js_string(key)
            elif kind not in ("str", "ident"):
                self._fail("Expected property key")
            self._advance()
            self._expect(":")
            entries.append((key, self.parse_ternary()))
            if not self._is_op(","):
                break
            self._advance()
        self._expect("}")
        return ("object", entries)


def parse_expression(text: str):
    """Parse ``text`` into an AST, raising ExpressionError on bad syntax."""
    return Parser(text).parse()


# ---------------------------------------------------------------------------
# Value semantics
# ---------------------------------------------------------------------------

def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def type_of(value: Any) -> str:
    if value is None:
        return "null"
    if value is UNDEFINED:
        return "undefined"
    if isinstance(value, bool):
        return "boolean"
    if _is_number(value):
        return "number"
    if isinstance(value, str):
        return "string"
    return "object"


def is_truthy(value: Any) -> bool:
    """JavaScript truthiness: empty arrays and objects are truthy."""
    if value is None or value is UNDEFINED:
        return False
    if isinstance(value, bool):
        return value
    if _is_number(value):
        return not (value == 0 or math.isnan(value))
    if isinstance(value, str):
        return value != ""
    return True


def to_number(value: Any) -> float:
    if value is None:
        return 0.0
    if value is UNDEFINED:
        return float("nan")
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if _is_number(value):
        return float(value)
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return 0.0
        if _NUMERIC_STRING.match(stripped):
            return float(stripped.replace("Infinity", "inf"))
        return float("nan")
    return to_number(to_js_string(value))


def _format_number(value: float) -> str:
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "Infinity" if value > 0 else "-Infinity"
    if float(value).is_integer() and abs(value) < 1e21:
        return str(int(value))
    return repr(float(value))


def to_js_string(value: Any) -> str:
    if value is None:
        return "null"
    if value is UNDEFINED:
        return "undefined"
    if isinstance(value, bool):
        return "true" if value else "false"
    if _is_number(value):
        return _format_number(value)
    if isinstance(value, str):
        return value
    if isinstance(value, (list, tuple)):
        return ",".join("" if item is None or item is UNDEFINED else to_js_string(item) for item in value)
    return "[object Object]"


def _to_primitive(value: Any) -> Any:
    if isinstance(value, (list, tuple, dict)):
        return to_js_string(value)
    return value


def strict_equals(left: Any, right: Any) -> bool:
    left_type, right_type = type_of(left), type_of(right)
    if left_type != right_type:
        return False
    if left_type == "number":
        return float(left) == float(right)
    if left_type == "object":
        return left is right
    return left == right


def loose_equals(left: Any, right: Any) -> bool:
    left_type, right_type = type_of(left), type_of(right)
    if left_type == right_type:
        return strict_equals(left, right)

    nullish = ("null", "undefined")
    if left_type in nullish or right_type in nullish:
        return left_type in nullish and right_type in nullish

    if left_type == "boolean":
        return loose_equals(to_number(left), right)
    if right_type == "boolean":
        return loose_equals(left, to_number(right))

    if left_type == "object":
        return loose_equals(_to_primitive(left), right)
    if right_type == "object":
        return loose_equals(left, _to_primitive(right))

    return to_number(left) == to_number(right)


def _compare(operator: str, left: Any, right: Any) -> bool:
    left, right = _to_primitive(left), _to_primitive(right)
    if isinstance(left, str) and isinstance(right, str):
        a, b = left, right
    else:
        a, b = to_number(left), to_number(right)
        if math.isnan(a) or math.isnan(b):
            return False
    if operator == "<":
        return a < b
    if operator == "<=":
        return a <= b
    if operator == ">":
        return a > b
    return a >= b


def _divide(left: float, right: float) -> float:
    if right == 0:
        if left == 0 or math.isnan(left):
            return float("nan")
        return math.copysign(float("inf"), left) * math.copysign(1.0, right)
    return left / right


def _remainder(left: float, right: float) -> float:
    if right == 0 or math.isnan(left) or math.isnan(right) or math.isinf(left):
        return float("nan")
    if math.isinf(right):
        return left
    return math.fmod(left, right)


def _binary(operator: str, left: Any, right: Any) -> Any:
    if operator == "+":
        left, right = _to_primitive(left), _to_primitive(right)
        if isinstance(left, str) or isinstance(right, str):
            return to_js_string(left) + to_js_string(right)
        return to_number(left) + to_number(right)
    if operator == "-":
        return to_number(left) - to_number(right)
    if operator == "*":
        a, b = to_number(left), to_number(right)
        if (math.isinf(a) and b == 0) or (math.isinf(b) and a == 0):
            return float("nan")
        return a * b
    if operator == "/":
        return _divide(to_number(left), to_number(right))
    if operator == "%":
        return _remainder(to_number(left), to_number(right))
    if operator == "===":
        return strict_equals(left, right)
    if operator == "!==":
        return not strict_equals(left, right)
    if operator == "==":
        return loose_equals(left, right)
    if operator == "!=":
        return not loose_equals(left, right)
    return _compare(operator, left, right)


def _index_of(sequence: list, target: Any) -> int:
    for position, item in enumerate(sequence):
        if strict_equals(item, target):
            return position
    return -1


def _get_member(obj: Any, prop: Any) -> Any:
    if obj is None or obj is UNDEFINED:
        raise ExpressionError(
            f"Cannot read properties of {to_js_string(obj)} (reading '{to_js_string(prop)}')"
        )

    if isinstance(obj, (str, list, tuple)):
        if prop == "length":
            return float(len(obj))
        if _is_number(prop) or isinstance(prop, str):
            number = to_number(prop)
            if not math.isnan(number) and number.is_integer() and 0 <= number < len(obj):
                return obj[int(number)]
        return UNDEFINED

    if isinstance(obj, dict):
        key = prop if isinstance(prop, str) else to_js_string(prop)
        return obj.get(key, UNDEFINED)

    return UNDEFINED


def _call_method(obj: Any, name: str, args: List[Any]) -> Any:
    argument = args[0] if args else UNDEFINED

    if isinstance(obj, str) and name in ALLOWED_METHODS:
        if name == "includes":
            return to_js_string(argument) in obj
        if name == "startsWith":
            return obj.startswith(to_js_string(argument))
        if name == "endsWith":
            return obj.endswith(to_js_string(argument))
        if name == "indexOf":
            return float(obj.find(to_js_string(argument)))
        if name == "toLowerCase":
            return obj.lower()
        if name == "toUpperCase":
            return obj.upper()
        if name == "trim":
            return obj.strip()

    if isinstance(obj, (list, tuple)):
        if name == "includes":
            if _is_number(argument) and math.isnan(argument):
                return any(_is_number(item) and math.isnan(item) for item in obj)
            return _index_of(list(obj), argument) >= 0
        if name == "indexOf":
            return float(_index_of(list(obj), argument))

    raise ExpressionError(f"{type_of(obj)}.{name} is not a function")


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------

def evaluate_node(node) -> Any:
    """Evaluate a parsed AST node."""
    node_type = node[0]

    if node_type == "lit":
        return node[1]

    if node_type == "ident":
        raise ExpressionError(f"{node[1]} is not defined")

    if node_type == "array":
        return [evaluate_node(item) for item in node[1]]

    if node_type == "object":
        return {key: evaluate_node(value) for key, value in node[1]}

    if node_type == "unary":
        operand = evaluate_node(node[2])
        if node[1] == "!":
            return not is_truthy(operand)
        if node[1] == "-":
            return -to_number(operand)
        return to_number(operand)

    if node_type == "logical":
        operator, left_node, right_node = node[1], node[2], node[3]
        left = evaluate_node(left_node)
        if operator == "&&":
            return evaluate_node(right_node) if is_truthy(left) else left
        if operator == "||":
            return left if is_truthy(left) else evaluate_node(right_node)
        return evaluate_node(right_node) if left is None or left is UNDEFINED else left

    if node_type == "binary":
        return _binary(node[1], evaluate_node(node[2]), evaluate_node(node[3]))

    if node_type == "cond":
        return evaluate_node(node[2]) if is_truthy(evaluate_node(node[1])) else evaluate_node(node[3])

    if node_type == "member":
        return _get_member(evaluate_node(node[1]), evaluate_node(node[2]))

    if node_type == "call":
        target = evaluate_node(node[1])
        if target is None or target is UNDEFINED:
            raise ExpressionError(
                f"Cannot read properties of {to_js_string(target)} (reading '{node[2]}')"
            )
        args = [evaluate_node(arg) for arg in node[3]]
        return _call_method(target, node[2], args)

    raise ExpressionError(f"Unknown expression node: {node_type}")


def evaluate_expression(text: str) -> Any:
    """Parse and evaluate ``text``, returning the raw JavaScript-like value."""
    return evaluate_node(parse_expression(text))
