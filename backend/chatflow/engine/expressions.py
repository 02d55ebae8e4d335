# /chatflow/engine/expressions.py

"""
A small expression language for calculator and transform nodes.

Expressions use Python syntax but are walked node by node over the parsed
tree; nothing is ever passed to `eval`. Supported: literals, variable names,
`.field` and `[index]` access into dicts and lists, arithmetic, comparisons,
`and`/`or`/`not`, `x if cond else y`, list/dict literals and calls to the
functions in `FUNCTIONS`.
"""

import ast
import json
import math
import operator
from typing import Any, Callable, Dict, Mapping

MAX_EXPRESSION_LENGTH = 2000
MAX_POWER_EXPONENT = 100


class ExpressionError(ValueError):
    pass


def _number(value: Any) -> float:
    if isinstance(value, bool):
        raise ExpressionError(f"Expected a number, got {value!r}")
    if isinstance(value, (int, float)):
        return value
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ExpressionError(f"Expected a number, got {value!r}")
    return int(number) if number.is_integer() else number


def _parse_json(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    try:
        return json.loads(value)
    except ValueError:
        raise ExpressionError(f"Not valid JSON: {value[:50]!r}")


def _power(base, exponent):
    if abs(exponent) > MAX_POWER_EXPONENT:
        raise ExpressionError(f"Exponent {exponent} is too large")
    return operator.pow(base, exponent)


BINARY_OPERATORS: Dict[type, Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: _power,
}

UNARY_OPERATORS: Dict[type, Callable[[Any], Any]] = {
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
    ast.Not: operator.not_,
}

COMPARISONS: Dict[type, Callable[[Any, Any], bool]] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
}

FUNCTIONS: Dict[str, Callable[..., Any]] = {
    "abs": abs,
    "round": round,
    "min": min,
    "max": max,
    "sum": sum,
    "len": len,
    "sorted": sorted,
    "int": int,
    "float": float,
    "str": str,
    "bool": bool,
    "number": _number,
    "floor": math.floor,
    "ceil": math.ceil,
    "sqrt": math.sqrt,
    "upper": lambda s: str(s).upper(),
    "lower": lambda s: str(s).lower(),
    "trim": lambda s: str(s).strip(),
    "split": lambda s, sep=None: str(s).split(sep),
    "join": lambda items, sep="": str(sep).join(str(i) for i in items),
    "replace": lambda s, old, new: str(s).replace(old, new),
    "keys": lambda d: list(d.keys()),
    "values": lambda d: list(d.values()),
    "json": _parse_json,
    "to_json": lambda v: json.dumps(v, ensure_ascii=False),
}


def evaluate(expression: str, names: Mapping[str, Any]) -> Any:
    """Evaluates `expression` with `names` as the only variables in scope."""
    if not expression or not expression.strip():
        raise ExpressionError("Expression is empty")
    if len(expression) > MAX_EXPRESSION_LENGTH:
        raise ExpressionError("Expression is too long")
    try:
        tree = ast.parse(expression.strip(), mode="eval")
    except SyntaxError as e:
        raise ExpressionError(f"Invalid expression: {e.msg}")
    try:
        return _Evaluator(names).visit(tree.body)
    except ExpressionError:
        raise
    except (ArithmeticError, TypeError, ValueError, KeyError, IndexError) as e:
        raise ExpressionError(f"{type(e).__name__}: {e}")


def check_syntax(expression: str) -> None:
    """Raises ExpressionError for expressions that could never evaluate."""
    try:
        tree = ast.parse(expression.strip(), mode="eval")
    except SyntaxError as e:
        raise ExpressionError(f"Invalid expression: {e.msg}")
    for node in ast.walk(tree):
        if isinstance(node, ast.Call) and not (isinstance(node.func, ast.Name) and node.func.id in FUNCTIONS):
            raise ExpressionError("Only built-in functions can be called")


class _Evaluator:
    def __init__(self, names: Mapping[str, Any]):
        self.names = names

    def visit(self, node: ast.AST) -> Any:
        method = getattr(self, f"visit_{type(node).__name__}", None)
        if method is None:
            raise ExpressionError(f"Unsupported syntax: {type(node).__name__}")
        return method(node)

    def visit_Constant(self, node: ast.Constant):
        return node.value

    def visit_Name(self, node: ast.Name):
        if node.id in ("true", "false", "null"):
            return {"true": True, "false": False, "null": None}[node.id]
        if node.id not in self.names:
            raise ExpressionError(f"Unknown variable '{node.id}'")
        return self.names[node.id]

    def visit_Attribute(self, node: ast.Attribute):
        container = self.visit(node.value)
        if not isinstance(container, Mapping) or node.attr not in container:
            raise ExpressionError(f"No field '{node.attr}'")
        return container[node.attr]

    def visit_Subscript(self, node: ast.Subscript):
        container = self.visit(node.value)
        index = self.visit(node.slice)
        if isinstance(container, (str, list, tuple)) and isinstance(index, bool):
            raise ExpressionError("Index must be a number")
        return container[index]

    def visit_Slice(self, node: ast.Slice):
        parts = [self.visit(part) if part is not None else None for part in (node.lower, node.upper, node.step)]
        return slice(*parts)

    def visit_BinOp(self, node: ast.BinOp):
        op = BINARY_OPERATORS.get(type(node.op))
        if op is None:
            raise ExpressionError(f"Unsupported operator: {type(node.op).__name__}")
        return op(self.visit(node.left), self.visit(node.right))

    def visit_UnaryOp(self, node: ast.UnaryOp):
        op = UNARY_OPERATORS.get(type(node.op))
        if op is None:
            raise ExpressionError(f"Unsupported operator: {type(node.op).__name__}")
        return op(self.visit(node.operand))

    def visit_BoolOp(self, node: ast.BoolOp):
        result = None
        for value in node.values:
            result = self.visit(value)
            if isinstance(node.op, ast.And) and not result:
                return result
            if isinstance(node.op, ast.Or) and result:
                return result
        return result

    def visit_Compare(self, node: ast.Compare):
        left = self.visit(node.left)
        for op, comparator in zip(node.ops, node.comparators):
            right = self.visit(comparator)
            if not COMPARISONS[type(op)](left, right):
                return False
            left = right
        return True

    def visit_IfExp(self, node: ast.IfExp):
        return self.visit(node.body) if self.visit(node.test) else self.visit(node.orelse)

    def visit_List(self, node: ast.List):
        return [self.visit(element) for element in node.elts]

    def visit_Tuple(self, node: ast.Tuple):
        return [self.visit(element) for element in node.elts]

    def visit_Dict(self, node: ast.Dict):
        if any(key is None for key in node.keys):
            raise ExpressionError("Dict unpacking is not supported")
        return {self.visit(k): self.visit(v) for k, v in zip(node.keys, node.values)}

    def visit_Call(self, node: ast.Call):
        if not isinstance(node.func, ast.Name) or node.func.id not in FUNCTIONS:
            raise ExpressionError("Only built-in functions can be called")
        if node.keywords:
            raise ExpressionError("Keyword arguments are not supported")
        return FUNCTIONS[node.func.id](*[self.visit(arg) for arg in node.args])
