"""Condition expressions for workflow branching.

A small, restricted subset of Python expression syntax. The editor stores
conditions written in JavaScript style (``x > 0 && status === 'ok'``), so the
common JS operators and literals are translated before parsing.
"""

import ast
import logging
import re
from typing import Any

from flowpilot.errors import ExpressionError

logger = logging.getLogger(__name__)

SAFE_BUILTINS = {
    "len": len,
    "int": int,
    "float": float,
    "str": str,
    "bool": bool,
    "abs": abs,
    "min": min,
    "max": max,
}

_ALLOWED_NODES = (
    ast.Expression,
    ast.BoolOp, ast.And, ast.Or,
    ast.UnaryOp, ast.Not, ast.USub, ast.UAdd,
    ast.BinOp, ast.Add, ast.Sub, ast.Mult, ast.Div, ast.Mod, ast.FloorDiv,
    ast.Compare, ast.Eq, ast.NotEq, ast.Lt, ast.LtE, ast.Gt, ast.GtE,
    ast.In, ast.NotIn, ast.Is, ast.IsNot,
    ast.IfExp,
    ast.Constant, ast.Name, ast.Load,
    ast.Attribute, ast.Subscript, ast.Slice,
    ast.List, ast.Tuple, ast.Dict,
    ast.Call,
)

# Quoted strings are copied through untouched by the JS translation
_STRING_LITERAL = re.compile(r'''("(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')''')

_JS_REPLACEMENTS = [
    (re.compile(r'==='), '=='),
    (re.compile(r'!=='), '!='),
    (re.compile(r'&&'), ' and '),
    (re.compile(r'\|\|'), ' or '),
    (re.compile(r'!(?!=)'), ' not '),
    (re.compile(r'\btrue\b'), 'True'),
    (re.compile(r'\bfalse\b'), 'False'),
    (re.compile(r'\bnull\b'), 'None'),
    (re.compile(r'\bundefined\b'), 'None'),
]


class _DotDict(dict):
    """Dict that also allows attribute access (``lastOutput.success``)."""

    def __getattr__(self, key: str) -> Any:
        if key.startswith('_'):
            raise AttributeError(key)
        try:
            return self[key]
        except KeyError:
            raise AttributeError(key) from None


def _wrap(value: Any) -> Any:
    if isinstance(value, dict):
        return _DotDict({k: _wrap(v) for k, v in value.items()})
    if isinstance(value, list):
        return [_wrap(v) for v in value]
    return value


def translate_js(expression: str) -> str:
    """Rewrite JS operator spellings outside of string literals."""
    parts = _STRING_LITERAL.split(expression)
    for i in range(0, len(parts), 2):
        chunk = parts[i]
        for pattern, replacement in _JS_REPLACEMENTS:
            chunk = pattern.sub(replacement, chunk)
        parts[i] = chunk
    return ''.join(parts).strip()


def _validate(tree: ast.AST, expression: str):
    for node in ast.walk(tree):
        if not isinstance(node, _ALLOWED_NODES):
            raise ExpressionError(
                f"Unsupported syntax '{type(node).__name__}' in expression: {expression}"
            )
        if isinstance(node, ast.Name) and node.id.startswith('_'):
            raise ExpressionError(f"Access to '{node.id}' is not allowed")
        if isinstance(node, ast.Attribute) and node.attr.startswith('_'):
            raise ExpressionError(f"Access to '{node.attr}' is not allowed")
        if isinstance(node, ast.Call):
            if not isinstance(node.func, ast.Name) or node.func.id not in SAFE_BUILTINS:
                raise ExpressionError(f"Function call not allowed in expression: {expression}")
            if node.keywords:
                raise ExpressionError("Keyword arguments are not allowed in expressions")


def compile_expression(expression: str):
    """Translate, parse and validate an expression. Raises ExpressionError."""
    if not expression or not expression.strip():
        raise ExpressionError("Empty condition expression")

    source = translate_js(expression)
    try:
        tree = ast.parse(source, mode='eval')
    except SyntaxError as e:
        raise ExpressionError(f"Invalid expression '{expression}': {e.msg}") from e

    _validate(tree, expression)
    return compile(tree, '<condition>', 'eval')


def evaluate(expression: str, namespace: dict[str, Any]) -> Any:
    """Evaluate an expression against a namespace of context values."""
    code = compile_expression(expression)
    names = {k: _wrap(v) for k, v in namespace.items() if not k.startswith('_')}
    try:
        return eval(code, {"__builtins__": SAFE_BUILTINS}, names)
    except Exception as e:
        logger.debug("Expression eval failed: %r -> %s", expression, e)
        raise ExpressionError(f"Error evaluating '{expression}': {e}") from e


def evaluate_condition(expression: str, namespace: dict[str, Any]) -> bool:
    return bool(evaluate(expression, namespace))
