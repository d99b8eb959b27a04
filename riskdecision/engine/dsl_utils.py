from __future__ import annotations

import ast
import re

from .dsl_errors import DslValidationError

__all__ = [
    "BOUND_NAMES",
    "BUILTIN_FUNCTIONS",
    "CONSTANT_NAMES",
    "compile_expr",
    "validate_expr",
]

BOUND_NAMES = frozenset({"x", "value"})
BUILTIN_FUNCTIONS = frozenset({"abs", "min", "max", "round", "is_missing"})
CONSTANT_NAMES = {
    "TRUE": True,
    "FALSE": False,
    "true": True,
    "false": False,
    "NA": None,
    "NULL": None,
}

_UNARY_PREFIX_RE = re.compile(r"^(==|!=|<=|>=|<|>|not\s+in\b|in\b)")
# string literals are matched first so operators inside them are left alone
_SYMBOLIC_OR_LITERAL_RE = re.compile(r"""('(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*")|(&&|\|\||!(?!=))""")
_SYMBOLIC_WORDS = {"&&": " and ", "||": " or ", "!": " not "}

_KNOWN_NAMES = BOUND_NAMES | BUILTIN_FUNCTIONS | frozenset(CONSTANT_NAMES)

_BOOL_OPS = (ast.And, ast.Or)
_UNARY_OPS = (ast.Not, ast.USub, ast.UAdd)
_ARITHMETIC_OPS = (ast.Add, ast.Sub, ast.Mult, ast.Div, ast.Mod)
_COMPARE_OPS = (ast.Eq, ast.NotEq, ast.Lt, ast.LtE, ast.Gt, ast.GtE, ast.In, ast.NotIn)
_MEMBERSHIP_OPS = (ast.In, ast.NotIn)


def _require(op: ast.AST, allowed: tuple[type, ...], what: str) -> None:
    if not isinstance(op, allowed):
        raise DslValidationError(f"{what} {type(op).__name__} is not allowed in conditions")


class _ConditionChecker(ast.NodeVisitor):
    """Reject every node a condition may not contain."""

    def visit_Expression(self, node: ast.Expression) -> None:
        self.visit(node.body)

    def visit_BoolOp(self, node: ast.BoolOp) -> None:
        _require(node.op, _BOOL_OPS, "boolean operator")
        for operand in node.values:
            self.visit(operand)

    def visit_UnaryOp(self, node: ast.UnaryOp) -> None:
        _require(node.op, _UNARY_OPS, "unary operator")
        self.visit(node.operand)

    def visit_BinOp(self, node: ast.BinOp) -> None:
        _require(node.op, _ARITHMETIC_OPS, "arithmetic operator")
        self.visit(node.left)
        self.visit(node.right)

    def visit_Compare(self, node: ast.Compare) -> None:
        self.visit(node.left)
        for op, operand in zip(node.ops, node.comparators):
            _require(op, _COMPARE_OPS, "comparison")
            if isinstance(op, _MEMBERSHIP_OPS) and not isinstance(operand, (ast.Tuple, ast.List)):
                raise DslValidationError("membership tests need a tuple or list literal on the right")
            self.visit(operand)

    def visit_Call(self, node: ast.Call) -> None:
        if not isinstance(node.func, ast.Name) or node.func.id not in BUILTIN_FUNCTIONS:
            raise DslValidationError(f"only {', '.join(sorted(BUILTIN_FUNCTIONS))} can be called")
        if node.keywords:
            raise DslValidationError("keyword arguments are not allowed in conditions")
        for argument in node.args:
            self.visit(argument)

    def visit_Tuple(self, node: ast.Tuple) -> None:
        for element in node.elts:
            self.visit(element)

    visit_List = visit_Tuple

    def visit_Name(self, node: ast.Name) -> None:
        if node.id.startswith("__"):
            raise DslValidationError(f"name '{node.id}' is not allowed in conditions")
        if node.id not in _KNOWN_NAMES:
            raise DslValidationError(f"unknown identifier '{node.id}'")

    def visit_Constant(self, node: ast.Constant) -> None:
        if isinstance(node.value, (complex, bytes)):
            raise DslValidationError(f"{type(node.value).__name__} literals are not supported")

    def generic_visit(self, node: ast.AST) -> None:
        raise DslValidationError(f"{type(node).__name__} is not allowed in conditions")


def _rewrite_symbolic(match: re.Match[str]) -> str:
    literal, symbol = match.groups()
    return literal if literal is not None else _SYMBOLIC_WORDS[symbol]


def _normalize(source: str) -> str:
    if not isinstance(source, str):
        raise DslValidationError("condition must be text")
    text = source.strip()
    if not text:
        raise DslValidationError("condition is empty")
    if _UNARY_PREFIX_RE.match(text):
        text = f"x {text}"
    return _SYMBOLIC_OR_LITERAL_RE.sub(_rewrite_symbolic, text).strip()


def compile_expr(source: str) -> ast.Expression:
    """Parse and validate a condition written against a single bound value.

    A condition starting with a comparison operator is a unary predicate whose
    implicit left operand is the bound value, so ``"> 0.8"`` compiles the same
    as ``"x > 0.8"``.
    """

    text = _normalize(source)
    try:
        tree = ast.parse(text, mode="eval")
        _ConditionChecker().visit(tree)
    except SyntaxError as exc:
        raise DslValidationError(f"invalid expression: {exc.msg}") from exc
    except ValueError as exc:
        raise DslValidationError(f"invalid expression: {exc}") from exc
    except (RecursionError, MemoryError) as exc:
        raise DslValidationError("condition is nested too deeply") from exc
    return tree


def validate_expr(source: str) -> None:
    compile_expr(source)
