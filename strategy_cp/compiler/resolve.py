"""
Reference resolution and static typing stage.

Checks that every parameter, rule and feature reference resolves, infers
the type of each expression and builds the rule dependency graph. Rule
dependency cycles are reported here as well, since they make the
topological instruction order undefined.
"""

from dataclasses import dataclass, field
from typing import Mapping, Optional

from ..models.plan import Diagnostic
from ..models.spec import (
    ARITHMETIC_OPS,
    COMPARISON_OPS,
    LOGICAL_OPS,
    BinaryOp,
    Expr,
    FeatureRef,
    Literal,
    ParameterRef,
    RuleRef,
    StrategySpec,
)

NUMBER = "number"
BOOL = "bool"
STR = "str"

_ORDERING_OPS = frozenset({">", "<", ">=", "<="})

_VALUE_TYPES = {"int": NUMBER, "float": NUMBER, "bool": BOOL, "str": STR}


@dataclass
class Resolution:
    """Output of the resolve stage."""
    # rule_id -> referenced rule ids, in declaration order
    dependencies: dict[str, tuple[str, ...]] = field(default_factory=dict)
    diagnostics: list[Diagnostic] = field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        return any(d.is_error for d in self.diagnostics)


class _Resolver:
    def __init__(self, spec: StrategySpec, features: Mapping[str, str]):
        self.parameters = {p.name: p for p in spec.parameters}
        self.rule_order = {rule.rule_id: i for i, rule in enumerate(spec.rules)}
        self.features = features
        self.diagnostics: list[Diagnostic] = []

    def infer(self, expr: Expr, location: str, refs: set[str], allow_runtime: bool = True) -> Optional[str]:
        """Return the static type of expr, or None when it is already in error."""
        if isinstance(expr, Literal):
            if isinstance(expr.value, bool):
                return BOOL
            if isinstance(expr.value, str):
                return STR
            return NUMBER

        if isinstance(expr, ParameterRef):
            param = self.parameters.get(expr.name)
            if param is None:
                self.diagnostics.append(Diagnostic.error(
                    "UNRESOLVED_PARAMETER", f"Unknown parameter '{expr.name}'", location
                ))
                return None
            return _VALUE_TYPES[param.type]

        if isinstance(expr, RuleRef):
            if not allow_runtime:
                self.diagnostics.append(Diagnostic.error(
                    "INVALID_BOUND_REFERENCE", "Risk bounds cannot reference rules", location
                ))
                return None
            if expr.rule_id not in self.rule_order:
                self.diagnostics.append(Diagnostic.error(
                    "UNRESOLVED_RULE", f"Unknown rule '{expr.rule_id}'", location
                ))
                return None
            refs.add(expr.rule_id)
            return BOOL

        if isinstance(expr, FeatureRef):
            if not allow_runtime:
                self.diagnostics.append(Diagnostic.error(
                    "INVALID_BOUND_REFERENCE", "Risk bounds cannot reference market features", location
                ))
                return None
            feature_type = self.features.get(expr.name)
            if feature_type is None:
                self.diagnostics.append(Diagnostic.error(
                    "UNKNOWN_FEATURE", f"Unknown market feature '{expr.name}'", location
                ))
                return None
            return _VALUE_TYPES.get(feature_type, NUMBER)

        if isinstance(expr, BinaryOp):
            return self._infer_binary(expr, location, refs, allow_runtime)

        return None

    def _infer_binary(self, expr: BinaryOp, location: str, refs: set[str],
                      allow_runtime: bool) -> Optional[str]:
        left = self.infer(expr.left, f"{location}.left", refs, allow_runtime)
        right = self.infer(expr.right, f"{location}.right", refs, allow_runtime)

        if expr.op not in ARITHMETIC_OPS | COMPARISON_OPS | LOGICAL_OPS:
            self.diagnostics.append(Diagnostic.error(
                "UNKNOWN_OPERATOR", f"Unknown operator '{expr.op}'", location
            ))
            return None
        if left is None or right is None:
            return None

        if expr.op in ARITHMETIC_OPS:
            expected, result = NUMBER, NUMBER
        elif expr.op in _ORDERING_OPS:
            expected, result = NUMBER, BOOL
        elif expr.op in LOGICAL_OPS:
            expected, result = BOOL, BOOL
        else:
            # == and != compare any two values of the same type
            if left != right:
                self.diagnostics.append(Diagnostic.error(
                    "TYPE_MISMATCH",
                    f"Cannot compare {left} with {right} using '{expr.op}'",
                    location,
                ))
                return None
            return BOOL

        if left != expected or right != expected:
            self.diagnostics.append(Diagnostic.error(
                "TYPE_MISMATCH",
                f"Operator '{expr.op}' needs {expected} operands, got {left} and {right}",
                location,
            ))
            return None
        return result


def resolve_references(spec: StrategySpec, features: Mapping[str, str]) -> Resolution:
    """
    Resolve every reference in a normalized spec.

    Args:
        spec: Normalized spec
        features: Allowed runtime features mapped to their value type

    Returns:
        Resolution with the dependency graph and diagnostics
    """
    resolver = _Resolver(spec, features)
    resolution = Resolution()

    for i, rule in enumerate(spec.rules):
        location = f"rules[{i}]"
        refs: set[str] = set()

        cond_type = resolver.infer(rule.condition, f"{location}.condition", refs)
        if cond_type is not None and cond_type != BOOL:
            resolver.diagnostics.append(Diagnostic.error(
                "CONDITION_NOT_BOOLEAN",
                f"Condition of rule '{rule.rule_id}' is {cond_type}, expected bool",
                f"{location}.condition",
            ))

        for name, expr in rule.action.arguments:
            resolver.infer(expr, f"{location}.action.arguments.{name}", refs)

        if rule.rule_id in refs:
            resolver.diagnostics.append(Diagnostic.error(
                "SELF_REFERENCE", f"Rule '{rule.rule_id}' references itself", location
            ))
            refs.discard(rule.rule_id)

        resolution.dependencies[rule.rule_id] = tuple(
            sorted(refs, key=lambda rid: resolver.rule_order[rid])
        )

    for i, constraint in enumerate(spec.constraints):
        for bound_name in ("lower", "upper"):
            bound = getattr(constraint, bound_name)
            if bound is None:
                continue
            location = f"constraints[{i}].{bound_name}"
            bound_type = resolver.infer(bound, location, set(), allow_runtime=False)
            if bound_type is not None and bound_type != NUMBER:
                resolver.diagnostics.append(Diagnostic.error(
                    "TYPE_MISMATCH",
                    f"Bound of constraint '{constraint.kind}' must be a number, got {bound_type}",
                    location,
                ))

    cycle = find_cycle(resolution.dependencies, list(resolver.rule_order))
    if cycle:
        resolver.diagnostics.append(Diagnostic.error(
            "DEPENDENCY_CYCLE",
            "Rule dependency cycle: " + " -> ".join(cycle),
            f"rules[{resolver.rule_order[cycle[0]]}]",
        ))

    resolution.diagnostics = resolver.diagnostics
    return resolution


def find_cycle(dependencies: Mapping[str, tuple[str, ...]], order: list[str]) -> Optional[list[str]]:
    """Return one dependency cycle as a closed path, or None."""
    WHITE, GREY, BLACK = 0, 1, 2
    color = {node: WHITE for node in order}
    stack: list[str] = []

    def visit(node: str) -> Optional[list[str]]:
        color[node] = GREY
        stack.append(node)
        for dep in dependencies.get(node, ()):
            if color.get(dep) == GREY:
                return stack[stack.index(dep):] + [dep]
            if color.get(dep) == WHITE:
                found = visit(dep)
                if found:
                    return found
        stack.pop()
        color[node] = BLACK
        return None

    for node in order:
        if color[node] == WHITE:
            found = visit(node)
            if found:
                return found
    return None
