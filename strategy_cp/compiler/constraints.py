"""
Risk constraint validation stage.

Folds each constraint's bounds to numbers and checks them for internal
consistency and against the configured hard caps. Legal but unusual values
produce warnings. Spec-level shape checks (rule count, presence of an exit
rule) also live here.
"""

from typing import Mapping, Optional

from ..config.defaults import CompilerParams
from ..models.plan import Bounds, Const, Diagnostic, RiskEnvelope
from ..models.spec import Expr, Parameter, StrategySpec
from .folding import FoldError, fold_expr

ENTRY_ACTIONS = frozenset({"enter_long", "enter_short"})


def validate_constraints(
    spec: StrategySpec, params: CompilerParams
) -> tuple[Optional[RiskEnvelope], list[Diagnostic]]:
    """
    Validate risk constraints and build the resolved risk envelope.

    Args:
        spec: Normalized spec whose references have been resolved
        params: Compiler parameters holding caps and warning thresholds

    Returns:
        Tuple of (envelope or None if any bound failed, diagnostics)
    """
    diagnostics: list[Diagnostic] = []
    parameters = {p.name: p for p in spec.parameters}
    resolved: list[tuple[str, Bounds]] = []
    envelope_ok = True

    for i, constraint in enumerate(spec.constraints):
        location = f"constraints[{i}]"
        kind = constraint.kind

        if constraint.lower is None and constraint.upper is None:
            diagnostics.append(Diagnostic.error(
                "EMPTY_CONSTRAINT", f"Constraint '{kind}' has neither lower nor upper bound", location
            ))
            envelope_ok = False
            continue

        lower = _fold_bound(constraint.lower, parameters, f"{location}.lower", diagnostics)
        upper = _fold_bound(constraint.upper, parameters, f"{location}.upper", diagnostics)
        if (constraint.lower is not None and lower is None) or \
                (constraint.upper is not None and upper is None):
            envelope_ok = False
            continue

        bounds_ok = True
        for name, value in (("lower", lower), ("upper", upper)):
            if value is not None and value < 0:
                diagnostics.append(Diagnostic.error(
                    "NEGATIVE_BOUND", f"{kind} {name} bound {value} is negative", f"{location}.{name}"
                ))
                bounds_ok = False

        if lower is not None and upper is not None and lower > upper:
            diagnostics.append(Diagnostic.error(
                "INVERTED_BOUNDS",
                f"{kind} lower bound {lower} is greater than upper bound {upper}",
                location,
            ))
            bounds_ok = False

        cap = params.upper_caps.get(kind)
        if cap is not None:
            for name, value in (("lower", lower), ("upper", upper)):
                if value is not None and value > cap:
                    diagnostics.append(Diagnostic.error(
                        "CAP_EXCEEDED", f"{kind} {name} bound {value} exceeds cap {cap}",
                        f"{location}.{name}",
                    ))
                    bounds_ok = False

        floor = params.lower_caps.get(kind)
        if floor is not None:
            for name, value in (("lower", lower), ("upper", upper)):
                if value is not None and value < floor:
                    diagnostics.append(Diagnostic.error(
                        "BELOW_MINIMUM", f"{kind} {name} bound {value} is below minimum {floor}",
                        f"{location}.{name}",
                    ))
                    bounds_ok = False

        if bounds_ok:
            diagnostics.extend(_bound_warnings(kind, lower, upper, params, location))
            resolved.append((kind, Bounds(lower=lower, upper=upper)))
        else:
            envelope_ok = False

    diagnostics.extend(_shape_checks(spec, params))

    envelope = RiskEnvelope(bounds=tuple(resolved)) if envelope_ok else None
    return envelope, diagnostics


def _fold_bound(
    expr: Optional[Expr],
    parameters: Mapping[str, Parameter],
    location: str,
    diagnostics: list[Diagnostic],
) -> Optional[float]:
    if expr is None:
        return None
    try:
        folded = fold_expr(expr, parameters)
    except FoldError as e:
        diagnostics.append(Diagnostic.error(e.code, str(e), location))
        return None
    except KeyError:
        # Unresolved parameter, already reported by the resolve stage
        return None

    if not isinstance(folded, Const) or isinstance(folded.value, (bool, str)):
        diagnostics.append(Diagnostic.error(
            "BOUND_NOT_CONSTANT", "Risk bound must fold to a number", location
        ))
        return None
    return float(folded.value)


def _bound_warnings(
    kind: str,
    lower: Optional[float],
    upper: Optional[float],
    params: CompilerParams,
    location: str,
) -> list[Diagnostic]:
    warnings = []

    if lower is not None and upper is not None and upper > 0:
        if (upper - lower) < params.tight_bound_ratio * upper:
            warnings.append(Diagnostic.warning(
                "TIGHT_BOUNDS", f"{kind} bounds [{lower}, {upper}] leave very little room", location
            ))

    if kind == "leverage" and upper is not None and upper > params.leverage_warning:
        warnings.append(Diagnostic.warning(
            "HIGH_LEVERAGE", f"Leverage above {params.leverage_warning}x increases risk significantly",
            location,
        ))

    if kind == "position" and upper is not None and upper >= params.position_warning:
        warnings.append(Diagnostic.warning(
            "HIGH_POSITION_COUNT", "High number of concurrent positions", location
        ))

    return warnings


def _shape_checks(spec: StrategySpec, params: CompilerParams) -> list[Diagnostic]:
    diagnostics = []

    if not spec.rules:
        diagnostics.append(Diagnostic.error("NO_RULES", "Spec declares no rules", "rules"))
        return diagnostics

    if len(spec.rules) > params.max_rules:
        diagnostics.append(Diagnostic.error(
            "TOO_MANY_RULES", f"Spec declares {len(spec.rules)} rules, limit is {params.max_rules}",
            "rules",
        ))

    if len(spec.rules) == 1:
        diagnostics.append(Diagnostic.warning(
            "SINGLE_RULE", "Single rule strategies may generate false signals", "rules"
        ))

    kinds = {rule.action.kind for rule in spec.rules}
    if kinds & ENTRY_ACTIONS and "exit" not in kinds:
        diagnostics.append(Diagnostic.warning(
            "NO_EXIT_RULE", "Strategy enters positions but declares no exit rule", "rules"
        ))

    return diagnostics
