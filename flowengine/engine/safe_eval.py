"""Safe Expression Evaluator for step inputs, conditions and transforms

Uses Python's ast module to parse and evaluate expressions in a restricted
sandbox. Caller-supplied text is never compiled or executed as code; the
AST is walked by a hand-written interpreter that only understands the
constructs listed below.

Supported expressions:
- Comparisons: x > 10, status == "success", count != 0, "a" in tags
- Boolean logic: x > 0 and y < 100, not is_error
- Literals: "string", 42, 3.14, true/false/null (and Python spellings)
- Field access: results["fetch"], results.fetch.status (mapping dot access)
- Arithmetic: + - * / // %
- Conditional: "hi" if score > 5 else "lo"
- Calls to a fixed allowlist: len(items), lower(name), get(user, "a.b")
"""

from __future__ import annotations

import ast
import logging
import operator
from collections.abc import Mapping
from typing import Any, Callable, Dict, List

from .. import settings
from ..errors import ExpressionError
from ..utils import get_path

logger = logging.getLogger(__name__)

# Safe comparison operators
_SAFE_COMPARE_OPS = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
}

_SAFE_BIN_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
}

_SAFE_UNARY_OPS = {
    ast.Not: operator.not_,
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
}

_CONSTANT_NAMES = {
    "true": True,
    "True": True,
    "false": False,
    "False": False,
    "null": None,
    "none": None,
    "None": None,
}


def _as_str(value: Any) -> str:
    return "" if value is None else str(value)


def _contains(container: Any, item: Any) -> bool:
    if container is None:
        return False
    if isinstance(container, str):
        return _as_str(item) in container
    return item in container


def _get(obj: Any, path: Any, default: Any = None) -> Any:
    return get_path(obj, str(path), default)


def _keys(obj: Mapping) -> List[Any]:
    return list(obj.keys())


def _values(obj: Mapping) -> List[Any]:
    return list(obj.values())


# Function allowlist. Nothing outside this table is callable.
SAFE_FUNCTIONS: Dict[str, Callable[..., Any]] = {
    "len": len,
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "abs": abs,
    "round": round,
    "min": min,
    "max": max,
    "sum": sum,
    "lower": lambda s: _as_str(s).lower(),
    "upper": lambda s: _as_str(s).upper(),
    "strip": lambda s: _as_str(s).strip(),
    "contains": _contains,
    "startswith": lambda s, prefix: _as_str(s).startswith(_as_str(prefix)),
    "endswith": lambda s, suffix: _as_str(s).endswith(_as_str(suffix)),
    "get": _get,
    "keys": _keys,
    "values": _values,
    "exists": lambda value: value is not None,
}


def safe_eval(expression: str, context: Mapping[str, Any]) -> Any:
    """Safely evaluate an expression against a namespace mapping.

    Args:
        expression: The expression string to evaluate
        context: Mapping of variable names to values

    Returns:
        The result of evaluating the expression

    Raises:
        ExpressionError: If expression is invalid or uses unsupported constructs
    """
    if not isinstance(expression, str) or not expression.strip():
        raise ExpressionError("Expression cannot be empty")

    expression = expression.strip()

    max_length = settings.EXPRESSION_MAX_LENGTH
    if len(expression) > max_length:
        raise ExpressionError(
            f"Expression too long ({len(expression)} chars, max {max_length})"
        )

    try:
        tree = ast.parse(expression, mode="eval")
    except SyntaxError as e:
        raise ExpressionError(f"Invalid expression syntax: {e}") from e

    try:
        return _eval_node(tree.body, context)
    except ExpressionError:
        raise
    except Exception as e:
        raise ExpressionError(f"Evaluation error: {e}") from e


def evaluate_node(node: ast.AST, context: Mapping[str, Any]) -> Any:
    """Evaluate an already-parsed expression node (used by the script runner)."""
    try:
        return _eval_node(node, context)
    except ExpressionError:
        raise
    except Exception as e:
        raise ExpressionError(f"Evaluation error: {e}") from e


def _check_repetition(left: Any, right: Any) -> None:
    """Refuse sequence repetition that would exceed EXPRESSION_MAX_SEQUENCE."""
    for seq, count in ((left, right), (right, left)):
        if isinstance(seq, (str, list, tuple)) and isinstance(count, int) and not isinstance(count, bool):
            if len(seq) * max(count, 0) > settings.EXPRESSION_MAX_SEQUENCE:
                raise ExpressionError(
                    f"Repetition result too large (max {settings.EXPRESSION_MAX_SEQUENCE})"
                )


def _check_concat(result: Any) -> Any:
    if isinstance(result, (str, list, tuple)) and len(result) > settings.EXPRESSION_MAX_SEQUENCE:
        raise ExpressionError(
            f"Sequence result too large (max {settings.EXPRESSION_MAX_SEQUENCE})"
        )
    return result


def _eval_node(node: ast.AST, context: Mapping[str, Any]) -> Any:
    """Recursively evaluate an AST node."""

    # Literal values: 42, "hello", True, None
    if isinstance(node, ast.Constant):
        return node.value

    # Variable names: x, results, item
    if isinstance(node, ast.Name):
        name = node.id
        if name in context:
            return context[name]
        if name in _CONSTANT_NAMES:
            return _CONSTANT_NAMES[name]
        raise ExpressionError(f"Unknown variable: '{name}'")

    # Comparisons: x > 10, a == b, x in [1,2,3]
    if isinstance(node, ast.Compare):
        left = _eval_node(node.left, context)
        for op, comparator in zip(node.ops, node.comparators):
            op_func = _SAFE_COMPARE_OPS.get(type(op))
            if op_func is None:
                raise ExpressionError(f"Unsupported comparison: {type(op).__name__}")
            right = _eval_node(comparator, context)
            if not op_func(left, right):
                return False
            left = right
        return True

    # Boolean operators: x and y, a or b
    if isinstance(node, ast.BoolOp):
        if isinstance(node.op, ast.And):
            return all(_eval_node(v, context) for v in node.values)
        if isinstance(node.op, ast.Or):
            return any(_eval_node(v, context) for v in node.values)
        raise ExpressionError(f"Unsupported boolean op: {type(node.op).__name__}")

    # Unary operators: not x, -n
    if isinstance(node, ast.UnaryOp):
        op_func = _SAFE_UNARY_OPS.get(type(node.op))
        if op_func is None:
            raise ExpressionError(f"Unsupported unary op: {type(node.op).__name__}")
        return op_func(_eval_node(node.operand, context))

    # Binary operators: x + 1, total / count
    if isinstance(node, ast.BinOp):
        op_func = _SAFE_BIN_OPS.get(type(node.op))
        if op_func is None:
            raise ExpressionError(f"Unsupported binary op: {type(node.op).__name__}")
        left = _eval_node(node.left, context)
        right = _eval_node(node.right, context)
        if isinstance(node.op, ast.Mult):
            _check_repetition(left, right)
        if isinstance(node.op, ast.Mod) and isinstance(left, str):
            # No printf-style formatting
            raise ExpressionError("String formatting is not allowed")
        result = op_func(left, right)
        if isinstance(node.op, ast.Add):
            _check_concat(result)
        return result

    # Subscript access: data["key"], items[0]
    if isinstance(node, ast.Subscript):
        value = _eval_node(node.value, context)
        if isinstance(node.slice, ast.Slice):
            raise ExpressionError("Slices are not allowed")
        key = _eval_node(node.slice, context)
        try:
            return value[key]
        except (KeyError, IndexError, TypeError) as e:
            raise ExpressionError(f"Subscript access failed: {e}") from e

    # Attribute access: result.status (only on mappings)
    if isinstance(node, ast.Attribute):
        value = _eval_node(node.value, context)
        if isinstance(value, Mapping):
            if node.attr in value:
                return value[node.attr]
            raise ExpressionError(f"Key '{node.attr}' not found")
        raise ExpressionError(
            "Attribute access only supported on dict-like objects"
        )

    # Allowlisted calls: len(items), lower(name)
    if isinstance(node, ast.Call):
        if not isinstance(node.func, ast.Name) or node.func.id not in SAFE_FUNCTIONS:
            raise ExpressionError(f"Function not allowed: {ast.unparse(node.func)}")
        if node.keywords:
            raise ExpressionError("Keyword arguments are not allowed")
        args = []
        for arg in node.args:
            if isinstance(arg, ast.Starred):
                raise ExpressionError("Star expressions are not allowed")
            args.append(_eval_node(arg, context))
        return SAFE_FUNCTIONS[node.func.id](*args)

    # List literals: [1, 2, 3]
    if isinstance(node, ast.List):
        return [_eval_node(elt, context) for elt in node.elts]

    # Tuple literals: (1, 2)
    if isinstance(node, ast.Tuple):
        return tuple(_eval_node(elt, context) for elt in node.elts)

    # Dict literals: {"a": 1}
    if isinstance(node, ast.Dict):
        if any(k is None for k in node.keys):
            raise ExpressionError("Dict unpacking is not allowed")
        return {
            _eval_node(k, context): _eval_node(v, context)
            for k, v in zip(node.keys, node.values)
        }

    # IfExp: x if condition else y
    if isinstance(node, ast.IfExp):
        if _eval_node(node.test, context):
            return _eval_node(node.body, context)
        return _eval_node(node.orelse, context)

    raise ExpressionError(f"Unsupported expression type: {type(node).__name__}")


def validate_expression(expression: str) -> list[str]:
    """Validate an expression without evaluating it.

    Args:
        expression: The expression string to validate

    Returns:
        List of validation error strings. Empty if valid.
    """
    errors = []

    if not isinstance(expression, str) or not expression.strip():
        errors.append("Expression cannot be empty")
        return errors

    expression = expression.strip()

    max_length = settings.EXPRESSION_MAX_LENGTH
    if len(expression) > max_length:
        errors.append(
            f"Expression too long ({len(expression)} chars, max {max_length})"
        )
        return errors

    try:
        tree = ast.parse(expression, mode="eval")
    except SyntaxError as e:
        errors.append(f"Invalid syntax: {e}")
        return errors

    # Walk tree to check for unsafe constructs
    for node in ast.walk(tree):
        if isinstance(node, ast.Call):
            if not isinstance(node.func, ast.Name) or node.func.id not in SAFE_FUNCTIONS:
                errors.append(f"Function not allowed: {ast.unparse(node.func)}")
        elif isinstance(node, ast.Lambda):
            errors.append("Lambda expressions are not allowed")
        elif isinstance(node, ast.ListComp | ast.SetComp | ast.DictComp | ast.GeneratorExp):
            errors.append("Comprehensions are not allowed")
        elif isinstance(node, ast.Await):
            errors.append("Await expressions are not allowed")
        elif isinstance(node, ast.Starred):
            errors.append("Star expressions are not allowed")
        elif isinstance(node, ast.NamedExpr):
            errors.append("Assignment expressions are not allowed")
        elif isinstance(node, ast.Attribute) and node.attr.startswith("_"):
            errors.append(f"Private attribute access is not allowed: {node.attr}")

    return errors
