"""Sandboxed formula evaluation.

Switch conditions, switch index expressions and Set's ``expression`` type all
evaluate small formulas after template resolution, e.g.::

    12 > 10 && "gold" === "gold"
    'Hello'.toLowerCase().includes('ell')
    price * quantity

The text is parsed with ``ast`` and interpreted node by node over a fixed
grammar: literals, names bound to context values, arithmetic, comparisons,
boolean connectives, a handful of pure functions and string/list predicates.
Nothing is ever handed to eval/compile and there is no attribute access beyond
the whitelisted methods, so formulas cannot reach the host environment.
"""

import ast
import math
import operator
import re
from typing import Any, Callable, Dict, Mapping, Optional

from core.logging import get_logger
from services.execution.context import MISSING, get_path

logger = get_logger(__name__)

MAX_EXPRESSION_LENGTH = 2000
MAX_EXPONENT = 100


class ExpressionError(ValueError):
    """Formula could not be parsed or evaluated."""


# JS-style operators and literals are rewritten outside of string literals
_TOKEN = re.compile(
    r"""(?P<str>"(?:\\.|[^"\\])*"|'(?:\\.|[^'\\])*')"""
    r"""|(?P<op>===|!==|&&|\|\||!(?!=))"""
    r"""|(?P<word>\b(?:true|false|null|undefined)\b)"""
)

_REWRITES = {
    "===": "==",
    "!==": "!=",
    "&&": " and ",
    "||": " or ",
    "!": " not ",
    "true": "True",
    "false": "False",
    "null": "None",
    "undefined": "None",
}


def normalize(expression: str) -> str:
    """Rewrite JS operators and literals into the Python grammar."""
    def replace(match: "re.Match") -> str:
        if match.group("str") is not None:
            return match.group("str")
        return _REWRITES[match.group(0)]

    return _TOKEN.sub(replace, expression).strip()


def to_number(value: Any) -> Optional[float]:
    """Numeric value of ``value`` or None (booleans are not numbers here)."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return None if isinstance(value, float) and math.isnan(value) else value
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            return None
        if math.isnan(number) or math.isinf(number):
            return None
        return int(number) if number.is_integer() and re.fullmatch(r"[+-]?\d+", text) else number
    return None


def _loose_equals(left: Any, right: Any) -> bool:
    ln, rn = to_number(left), to_number(right)
    if ln is not None and rn is not None:
        return ln == rn
    return left == right


def _ordered(op: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def compare(left: Any, right: Any) -> bool:
        ln, rn = to_number(left), to_number(right)
        if ln is not None and rn is not None:
            return op(ln, rn)
        if isinstance(left, str) and isinstance(right, str):
            return op(left, right)
        raise ExpressionError(f"Cannot compare {type(left).__name__} with {type(right).__name__}")
    return compare


_COMPARATORS: Dict[type, Callable[[Any, Any], bool]] = {
    ast.Eq: _loose_equals,
    ast.NotEq: lambda a, b: not _loose_equals(a, b),
    ast.Lt: _ordered(operator.lt),
    ast.LtE: _ordered(operator.le),
    ast.Gt: _ordered(operator.gt),
    ast.GtE: _ordered(operator.ge),
    ast.In: lambda a, b: a in b if isinstance(b, (str, list, tuple, dict)) else False,
    ast.NotIn: lambda a, b: a not in b if isinstance(b, (str, list, tuple, dict)) else True,
}

_FUNCTIONS: Dict[str, Callable[..., Any]] = {
    "len": len,
    "min": min,
    "max": max,
    "abs": abs,
    "round": round,
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "Number": lambda v: to_number(v) if to_number(v) is not None else 0,
    "String": lambda v: "" if v is None else str(v),
}

_STRING_METHODS: Dict[str, Callable[..., Any]] = {
    "includes": lambda s, sub: str(sub) in s,
    "startsWith": lambda s, p: s.startswith(str(p)),
    "endsWith": lambda s, p: s.endswith(str(p)),
    "toLowerCase": lambda s: s.lower(),
    "toUpperCase": lambda s: s.upper(),
    "trim": lambda s: s.strip(),
    "indexOf": lambda s, sub: s.find(str(sub)),
    "lower": lambda s: s.lower(),
    "upper": lambda s: s.upper(),
    "strip": lambda s: s.strip(),
    "startswith": lambda s, p: s.startswith(str(p)),
    "endswith": lambda s, p: s.endswith(str(p)),
}

_LIST_METHODS: Dict[str, Callable[..., Any]] = {
    "includes": lambda items, v: v in items,
    "indexOf": lambda items, v: items.index(v) if v in items else -1,
}


class _Interpreter:
    def __init__(self, names: Mapping[str, Any]):
        self.names = names

    def visit(self, node: ast.AST) -> Any:
        handler = getattr(self, f"visit_{type(node).__name__}", None)
        if handler is None:
            raise ExpressionError(f"Unsupported syntax: {type(node).__name__}")
        return handler(node)

    def visit_Expression(self, node: ast.Expression) -> Any:
        return self.visit(node.body)

    def visit_Constant(self, node: ast.Constant) -> Any:
        if isinstance(node.value, (str, int, float, bool)) or node.value is None:
            return node.value
        raise ExpressionError("Unsupported literal")

    def visit_Name(self, node: ast.Name) -> Any:
        if node.id in ("True", "False", "None"):
            return {"True": True, "False": False, "None": None}[node.id]
        value = get_path(self.names, node.id)
        if value is MISSING:
            raise ExpressionError(f"Unknown name: {node.id}")
        return value

    def visit_List(self, node: ast.List) -> Any:
        return [self.visit(e) for e in node.elts]

    visit_Tuple = visit_List

    def visit_Dict(self, node: ast.Dict) -> Any:
        if any(k is None for k in node.keys):
            raise ExpressionError("Dict unpacking is not supported")
        return {self.visit(k): self.visit(v) for k, v in zip(node.keys, node.values)}

    def visit_BoolOp(self, node: ast.BoolOp) -> Any:
        result = None
        for value_node in node.values:
            result = self.visit(value_node)
            if isinstance(node.op, ast.And) and not result:
                return result
            if isinstance(node.op, ast.Or) and result:
                return result
        return result

    def visit_UnaryOp(self, node: ast.UnaryOp) -> Any:
        operand = self.visit(node.operand)
        if isinstance(node.op, ast.Not):
            return not operand
        number = to_number(operand)
        if number is None:
            raise ExpressionError("Unary arithmetic on a non-number")
        if isinstance(node.op, ast.USub):
            return -number
        if isinstance(node.op, ast.UAdd):
            return number
        raise ExpressionError("Unsupported unary operator")

    def visit_BinOp(self, node: ast.BinOp) -> Any:
        left, right = self.visit(node.left), self.visit(node.right)

        if isinstance(node.op, ast.Add) and (isinstance(left, str) or isinstance(right, str)):
            return f"{_as_text(left)}{_as_text(right)}"
        if isinstance(node.op, ast.Add) and isinstance(left, list) and isinstance(right, list):
            return left + right

        ln, rn = to_number(left), to_number(right)
        if ln is None or rn is None:
            raise ExpressionError("Arithmetic on a non-number")

        if isinstance(node.op, ast.Add):
            return ln + rn
        if isinstance(node.op, ast.Sub):
            return ln - rn
        if isinstance(node.op, ast.Mult):
            return ln * rn
        if isinstance(node.op, (ast.Div, ast.FloorDiv, ast.Mod)):
            if rn == 0:
                raise ExpressionError("Division by zero")
            if isinstance(node.op, ast.Div):
                return ln / rn
            return ln // rn if isinstance(node.op, ast.FloorDiv) else ln % rn
        if isinstance(node.op, ast.Pow):
            if abs(rn) > MAX_EXPONENT:
                raise ExpressionError("Exponent too large")
            result = ln ** rn
            if isinstance(result, complex):
                raise ExpressionError("Power has no real result")
            return result
        raise ExpressionError("Unsupported operator")

    def visit_Compare(self, node: ast.Compare) -> bool:
        left = self.visit(node.left)
        for op, right_node in zip(node.ops, node.comparators):
            comparator = _COMPARATORS.get(type(op))
            if comparator is None:
                raise ExpressionError(f"Unsupported comparison: {type(op).__name__}")
            right = self.visit(right_node)
            if not comparator(left, right):
                return False
            left = right
        return True

    def visit_IfExp(self, node: ast.IfExp) -> Any:
        return self.visit(node.body) if self.visit(node.test) else self.visit(node.orelse)

    def visit_Attribute(self, node: ast.Attribute) -> Any:
        target = self.visit(node.value)
        if node.attr == "length" and isinstance(target, (str, list, tuple, dict)):
            return len(target)
        if isinstance(target, Mapping) and node.attr in target:
            return target[node.attr]
        raise ExpressionError(f"Unknown attribute: {node.attr}")

    def visit_Subscript(self, node: ast.Subscript) -> Any:
        target = self.visit(node.value)
        key = self.visit(node.slice)
        try:
            if isinstance(target, Mapping):
                return target[key]
            if isinstance(target, (list, tuple, str)) and isinstance(key, int) and not isinstance(key, bool):
                return target[key]
        except (KeyError, IndexError) as e:
            raise ExpressionError(f"Index not found: {key!r}") from e
        raise ExpressionError("Unsupported subscript")

    def visit_Call(self, node: ast.Call) -> Any:
        if node.keywords:
            raise ExpressionError("Keyword arguments are not supported")
        args = [self.visit(a) for a in node.args]

        if isinstance(node.func, ast.Name):
            function = _FUNCTIONS.get(node.func.id)
            if function is None:
                raise ExpressionError(f"Unknown function: {node.func.id}")
            return _call(function, args)

        if isinstance(node.func, ast.Attribute):
            target = self.visit(node.func.value)
            if isinstance(target, str):
                method = _STRING_METHODS.get(node.func.attr)
            elif isinstance(target, (list, tuple)):
                method = _LIST_METHODS.get(node.func.attr)
            else:
                method = None
            if method is None:
                raise ExpressionError(f"Unknown method: {node.func.attr}")
            return _call(method, [target, *args])

        raise ExpressionError("Unsupported call")


def _call(function: Callable[..., Any], args: list) -> Any:
    try:
        return function(*args)
    except (TypeError, ValueError) as e:
        raise ExpressionError(str(e)) from e


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def evaluate_expression(expression: str, names: Optional[Mapping[str, Any]] = None) -> Any:
    """Evaluate a formula against ``names`` (usually the execution context).

    Raises:
        ExpressionError: when the text is not a supported formula.
    """
    if not isinstance(expression, str):
        raise ExpressionError("Expression must be a string")
    if len(expression) > MAX_EXPRESSION_LENGTH:
        raise ExpressionError("Expression is too long")

    source = normalize(expression)
    if not source:
        raise ExpressionError("Expression is empty")

    try:
        tree = ast.parse(source, mode="eval")
    except SyntaxError as e:
        raise ExpressionError(f"Invalid expression: {e.msg}") from e

    try:
        return _Interpreter(names or {}).visit(tree)
    except RecursionError as e:
        raise ExpressionError("Expression is nested too deeply") from e
    except (ArithmeticError, TypeError, ValueError) as e:
        raise ExpressionError(f"Cannot evaluate expression: {e}") from e


def evaluate_boolean(expression: str, names: Optional[Mapping[str, Any]] = None) -> bool:
    return bool(evaluate_expression(expression, names))
