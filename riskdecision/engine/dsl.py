from __future__ import annotations

import ast
import operator
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional

from .dsl_errors import DslRuntimeError, DslValidationError
from .dsl_runtime import EvaluationBudget, build_namespace, current_budget
from .dsl_utils import compile_expr

__all__ = ["CompiledCondition", "SafeEvaluator", "compile_condition"]


def _number(value: Any) -> float:
    if isinstance(value, str) or value is None:
        raise DslRuntimeError(f"expected a number, got {value!r}")
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise DslRuntimeError(f"expected a number, got {value!r}") from exc


def _divide(left: float, right: float) -> float:
    if right == 0:
        raise DslRuntimeError("division by zero")
    return left / right


def _modulo(left: float, right: float) -> float:
    if right == 0:
        raise DslRuntimeError("division by zero")
    return left % right


_ARITHMETIC: dict[type, Callable[[float, float], float]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: _divide,
    ast.Mod: _modulo,
}

# ordering comparisons coerce both sides to numbers; the rest compare as-is
_ORDERING: dict[type, Callable[[Any, Any], bool]] = {
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
}
_EQUALITY: dict[type, Callable[[Any, Any], bool]] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.In: lambda item, group: item in group,
    ast.NotIn: lambda item, group: item not in group,
}


class SafeEvaluator(ast.NodeVisitor):
    """Interpret a validated condition tree against one bound value.

    When a budget is given it is checked before every node, so a runaway
    condition stops with DslTimeoutError instead of spinning.
    """

    def __init__(self, namespace: Mapping[str, Any], budget: Optional[EvaluationBudget] = None) -> None:
        self._names = namespace
        self._budget = budget

    def evaluate(self, node: ast.AST) -> Any:
        return self.visit(node)

    def visit(self, node: ast.AST) -> Any:
        if self._budget is not None:
            self._budget.check()
        return super().visit(node)

    def visit_Expression(self, node: ast.Expression) -> Any:
        return self.visit(node.body)

    def visit_BoolOp(self, node: ast.BoolOp) -> bool:
        want = isinstance(node.op, ast.Or)
        for operand in node.values:
            if bool(self.visit(operand)) is want:
                return want
        return not want

    def visit_UnaryOp(self, node: ast.UnaryOp) -> Any:
        value = self.visit(node.operand)
        if isinstance(node.op, ast.Not):
            return not value
        number = _number(value)
        return -number if isinstance(node.op, ast.USub) else number

    def visit_BinOp(self, node: ast.BinOp) -> Any:
        apply = _ARITHMETIC.get(type(node.op))
        if apply is None:
            raise DslRuntimeError(f"{type(node.op).__name__} is not supported")
        return apply(_number(self.visit(node.left)), _number(self.visit(node.right)))

    def visit_Compare(self, node: ast.Compare) -> bool:
        left = self.visit(node.left)
        for op, comparator in zip(node.ops, node.comparators):
            right = self.visit(comparator)
            kind = type(op)
            if kind in _ORDERING:
                holds = _ORDERING[kind](_number(left), _number(right))
            elif kind in _EQUALITY:
                holds = _EQUALITY[kind](left, right)
            else:
                raise DslRuntimeError(f"{kind.__name__} is not supported")
            if not holds:
                return False
            left = right
        return True

    def visit_Call(self, node: ast.Call) -> Any:
        function = self.visit(node.func)
        if not callable(function):
            raise DslRuntimeError(f"{ast.unparse(node.func)} is not callable")
        arguments = [self.visit(argument) for argument in node.args]
        try:
            return function(*arguments)
        except (TypeError, ValueError) as exc:
            raise DslRuntimeError(f"{ast.unparse(node.func)}() failed: {exc}") from exc

    def visit_Tuple(self, node: ast.Tuple) -> tuple[Any, ...]:
        return tuple(self.visit(element) for element in node.elts)

    visit_List = visit_Tuple

    def visit_Name(self, node: ast.Name) -> Any:
        try:
            return self._names[node.id]
        except KeyError:
            raise DslRuntimeError(f"unknown identifier: {node.id}") from None

    def visit_Constant(self, node: ast.Constant) -> Any:
        return node.value

    def generic_visit(self, node: ast.AST) -> Any:
        raise DslRuntimeError(f"{type(node).__name__} cannot be evaluated")


@dataclass(frozen=True, slots=True)
class CompiledCondition:
    source: str
    expression: ast.Expression | None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.expression is not None

    def __call__(self, value: Any) -> Any:
        """Evaluate against ``value`` under the budget active on this thread."""

        if self.expression is None:
            raise DslValidationError(self.error or "condition did not compile")
        evaluator = SafeEvaluator(build_namespace(value), budget=current_budget())
        result = evaluator.evaluate(self.expression)
        if callable(result):
            # bare function name, e.g. "is_missing"
            result = result(value)
        return result


def compile_condition(source: str) -> CompiledCondition:
    """Compile ``source`` once; a failure is kept on the returned object."""

    try:
        expression = compile_expr(source)
    except DslValidationError as exc:
        return CompiledCondition(source=str(source), expression=None, error=str(exc))
    return CompiledCondition(source=source, expression=expression)
