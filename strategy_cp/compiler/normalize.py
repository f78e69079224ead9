"""
Spec normalization stage.

Canonicalizes identifiers, kinds, operators, parameter values and the
ordering of parameters, constraints, action arguments and requirement tags
so that semantically identical specs normalize identically. Rule order is
part of the strategy's meaning and is kept as declared.
"""

import math
from dataclasses import replace
from typing import Any, Optional

from ..models.plan import Diagnostic
from ..models.spec import (
    ACTION_KINDS,
    CONSTRAINT_KINDS,
    EXPR_TYPES,
    PARAMETER_TYPES,
    Action,
    BinaryOp,
    Expr,
    FeatureRef,
    Literal,
    Parameter,
    ParameterRef,
    RiskConstraint,
    Rule,
    RuleRef,
    StrategySpec,
)

# Errors after which later stages cannot run meaningfully
STRUCTURAL_CODES = frozenset({"MALFORMED_NODE", "EMPTY_IDENTIFIER", "NON_FINITE_VALUE"})


def normalize_tag(tag: str) -> str:
    """Canonical form of a capability tag."""
    return tag.strip().lower()


def normalize_spec(spec: StrategySpec) -> tuple[StrategySpec, list[Diagnostic]]:
    """
    Produce the canonical form of a spec.

    Returns:
        Tuple of (normalized spec, diagnostics). The input is never mutated.
    """
    diagnostics: list[Diagnostic] = []

    if not spec.strategy_id.strip():
        diagnostics.append(Diagnostic.error("EMPTY_IDENTIFIER", "Strategy id is empty", "strategy_id"))
    if isinstance(spec.version, bool) or not isinstance(spec.version, int) or spec.version < 1:
        diagnostics.append(Diagnostic.error(
            "INVALID_VERSION", f"Version must be a positive integer, got {spec.version!r}", "version"
        ))

    parameters = _normalize_parameters(spec.parameters, diagnostics)
    rules = _normalize_rules(spec.rules, diagnostics)
    constraints = _normalize_constraints(spec.constraints, diagnostics)
    requirements = frozenset(
        normalize_tag(tag) for tag in spec.requirements if tag and tag.strip()
    )

    normalized = replace(
        spec,
        strategy_id=spec.strategy_id.strip(),
        rules=rules,
        constraints=constraints,
        parameters=parameters,
        requirements=requirements,
    )
    return normalized, diagnostics


def _normalize_parameters(
    params: tuple[Parameter, ...], diagnostics: list[Diagnostic]
) -> tuple[Parameter, ...]:
    seen: dict[str, Parameter] = {}

    for i, param in enumerate(params):
        location = f"parameters[{i}]"
        name = param.name.strip()
        if not name:
            diagnostics.append(Diagnostic.error(
                "EMPTY_IDENTIFIER", "Parameter name is empty", location
            ))
            continue
        if name in seen:
            diagnostics.append(Diagnostic.error(
                "DUPLICATE_PARAMETER", f"Parameter '{name}' is declared more than once", location
            ))
            continue

        param_type = param.type.strip().lower()
        if param_type not in PARAMETER_TYPES:
            diagnostics.append(Diagnostic.error(
                "UNKNOWN_PARAMETER_TYPE",
                f"Parameter '{name}' has unknown type '{param.type}'",
                f"{location}.type",
            ))
            continue

        if _is_non_finite(param.value):
            diagnostics.append(Diagnostic.error(
                "NON_FINITE_VALUE",
                f"Parameter '{name}' has non-finite value {param.value!r}",
                f"{location}.value",
            ))
            continue

        value = _coerce_value(param_type, param.value)
        if value is None:
            diagnostics.append(Diagnostic.error(
                "PARAMETER_TYPE_MISMATCH",
                f"Parameter '{name}' declared {param_type} but has value {param.value!r}",
                f"{location}.value",
            ))
            continue

        seen[name] = Parameter(name=name, type=param_type, value=value)

    return tuple(seen[name] for name in sorted(seen))


def _is_non_finite(value: Any) -> bool:
    return isinstance(value, float) and not math.isfinite(value)


def _coerce_value(param_type: str, value: Any) -> Optional[Any]:
    is_number = isinstance(value, (int, float)) and not isinstance(value, bool)
    if param_type == "bool":
        return value if isinstance(value, bool) else None
    if param_type == "str":
        return value if isinstance(value, str) else None
    if param_type == "float":
        return float(value) if is_number else None
    if param_type == "int":
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        if isinstance(value, float) and value.is_integer():
            return int(value)
        return None
    return None


def _normalize_rules(rules: tuple[Rule, ...], diagnostics: list[Diagnostic]) -> tuple[Rule, ...]:
    seen: set[str] = set()
    normalized = []

    for i, rule in enumerate(rules):
        location = f"rules[{i}]"
        rule_id = rule.rule_id.strip() if isinstance(rule.rule_id, str) else ""
        if not rule_id:
            diagnostics.append(Diagnostic.error("EMPTY_IDENTIFIER", "Rule id is empty", location))
            continue
        if rule_id in seen:
            diagnostics.append(Diagnostic.error(
                "DUPLICATE_RULE", f"Rule '{rule_id}' is declared more than once", location
            ))
            continue
        seen.add(rule_id)

        condition = normalize_expr(rule.condition, f"{location}.condition", diagnostics)

        kind = rule.action.kind.strip().lower()
        if kind not in ACTION_KINDS:
            diagnostics.append(Diagnostic.error(
                "UNKNOWN_ACTION",
                f"Rule '{rule_id}' uses unknown action '{rule.action.kind}'",
                f"{location}.action",
            ))

        arguments: dict[str, Expr] = {}
        for name, expr in rule.action.arguments:
            arg_name = name.strip()
            arg_location = f"{location}.action.arguments.{arg_name}"
            if arg_name in arguments:
                diagnostics.append(Diagnostic.error(
                    "DUPLICATE_ARGUMENT", f"Argument '{arg_name}' given more than once", arg_location
                ))
                continue
            arguments[arg_name] = normalize_expr(expr, arg_location, diagnostics)

        normalized.append(Rule(
            rule_id=rule_id,
            condition=condition,
            action=Action(
                kind=kind,
                arguments=tuple((name, arguments[name]) for name in sorted(arguments)),
            ),
        ))

    return tuple(normalized)


def _normalize_constraints(
    constraints: tuple[RiskConstraint, ...], diagnostics: list[Diagnostic]
) -> tuple[RiskConstraint, ...]:
    by_kind: dict[str, RiskConstraint] = {}

    for i, constraint in enumerate(constraints):
        location = f"constraints[{i}]"
        kind = constraint.kind.strip().lower()
        if kind not in CONSTRAINT_KINDS:
            diagnostics.append(Diagnostic.error(
                "UNKNOWN_CONSTRAINT", f"Unknown risk constraint kind '{constraint.kind}'", location
            ))
            continue
        if kind in by_kind:
            diagnostics.append(Diagnostic.error(
                "DUPLICATE_CONSTRAINT", f"Constraint '{kind}' is declared more than once", location
            ))
            continue

        by_kind[kind] = RiskConstraint(
            kind=kind,
            lower=(normalize_expr(constraint.lower, f"{location}.lower", diagnostics)
                   if constraint.lower is not None else None),
            upper=(normalize_expr(constraint.upper, f"{location}.upper", diagnostics)
                   if constraint.upper is not None else None),
        )

    return tuple(by_kind[kind] for kind in sorted(by_kind))


def normalize_expr(expr: Expr, location: str, diagnostics: list[Diagnostic]) -> Expr:
    """Canonicalize names and operators inside one expression tree."""
    if not isinstance(expr, EXPR_TYPES):
        diagnostics.append(Diagnostic.error(
            "MALFORMED_NODE", f"Unsupported expression node {type(expr).__name__}", location
        ))
        return expr

    if isinstance(expr, Literal):
        if _is_non_finite(expr.value):
            diagnostics.append(Diagnostic.error(
                "NON_FINITE_VALUE", f"Literal {expr.value!r} is not a finite number", location
            ))
            return expr
        if isinstance(expr.value, (int, float)) and not isinstance(expr.value, bool):
            return Literal(float(expr.value))
        return expr
    if isinstance(expr, (ParameterRef, FeatureRef)):
        name = expr.name.strip()
        if not name:
            diagnostics.append(Diagnostic.error("EMPTY_IDENTIFIER", "Reference name is empty", location))
        return type(expr)(name)
    if isinstance(expr, RuleRef):
        rule_id = expr.rule_id.strip()
        if not rule_id:
            diagnostics.append(Diagnostic.error("EMPTY_IDENTIFIER", "Rule reference is empty", location))
        return RuleRef(rule_id)

    return BinaryOp(
        op=expr.op.strip().lower(),
        left=normalize_expr(expr.left, f"{location}.left", diagnostics),
        right=normalize_expr(expr.right, f"{location}.right", diagnostics),
    )
