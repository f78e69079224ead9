"""
Parameter substitution and constant folding.

Turns spec expressions into the closed operand set used by plans. Numbers
are carried as floats so that `30`, `30.0` and a folded `15 * 2` all have
the same canonical form.
"""

import math
import operator
from typing import Callable, Mapping

from ..models.plan import Const, Feature, Op, Operand, RuleResult
from ..models.spec import (
    BinaryOp,
    Expr,
    FeatureRef,
    Literal,
    Parameter,
    ParameterRef,
    RuleRef,
    ScalarValue,
)


class FoldError(ValueError):
    """Expression cannot be evaluated at compile time."""

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code


_BINARY: dict[str, Callable[[ScalarValue, ScalarValue], ScalarValue]] = {
    "+": operator.add,
    "-": operator.sub,
    "*": operator.mul,
    ">": operator.gt,
    "<": operator.lt,
    ">=": operator.ge,
    "<=": operator.le,
    "==": operator.eq,
    "!=": operator.ne,
}


def canonical_scalar(value: ScalarValue) -> ScalarValue:
    """Normalize a scalar: numbers become floats, -0.0 becomes 0.0."""
    if isinstance(value, bool) or isinstance(value, str):
        return value
    as_float = float(value)
    if not math.isfinite(as_float):
        raise FoldError("NON_FINITE_VALUE", f"Constant expression is not finite: {as_float!r}")
    return 0.0 if as_float == 0 else as_float


def fold_expr(expr: Expr, parameters: Mapping[str, Parameter]) -> Operand:
    """
    Substitute parameters and fold constant sub-expressions.

    Args:
        expr: Resolved spec expression (references are assumed valid)
        parameters: Parameters by name

    Returns:
        Operand tree with no parameter references left

    Raises:
        FoldError: On division by zero, a non-finite result or an unknown operator
    """
    if isinstance(expr, Literal):
        return Const(canonical_scalar(expr.value))
    if isinstance(expr, ParameterRef):
        return Const(canonical_scalar(parameters[expr.name].value))
    if isinstance(expr, RuleRef):
        return RuleResult(expr.rule_id)
    if isinstance(expr, FeatureRef):
        return Feature(expr.name)
    if isinstance(expr, BinaryOp):
        left = fold_expr(expr.left, parameters)
        right = fold_expr(expr.right, parameters)
        if isinstance(left, Const) and isinstance(right, Const):
            return Const(evaluate(expr.op, left.value, right.value))
        return Op(expr.op, left, right)
    raise FoldError("MALFORMED_NODE", f"Cannot fold node {expr!r}")


def evaluate(op: str, left: ScalarValue, right: ScalarValue) -> ScalarValue:
    """Evaluate one binary operator over constants."""
    if op == "and":
        return bool(left) and bool(right)
    if op == "or":
        return bool(left) or bool(right)
    if op == "/":
        if right == 0:
            raise FoldError("DIVISION_BY_ZERO", "Division by zero in constant expression")
        return canonical_scalar(left / right)  # type: ignore[operator]

    func = _BINARY.get(op)
    if func is None:
        raise FoldError("UNKNOWN_OPERATOR", f"Unknown operator: {op}")

    result = func(left, right)
    return canonical_scalar(result)
