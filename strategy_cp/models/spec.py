"""
Strategy spec data model.

A spec is the declarative input to the compiler: an ordered list of rules
(condition -> action), a set of risk constraints and typed parameters.
Expressions inside rules and constraints are a closed set of node types so
every reference can be checked at compile time.
"""

from dataclasses import dataclass, field
from typing import Optional, Union

ScalarValue = Union[bool, int, float, str]

PARAMETER_TYPES = ("int", "float", "bool", "str")

ARITHMETIC_OPS = frozenset({"+", "-", "*", "/"})
COMPARISON_OPS = frozenset({">", "<", ">=", "<=", "==", "!="})
LOGICAL_OPS = frozenset({"and", "or"})
ALL_OPS = ARITHMETIC_OPS | COMPARISON_OPS | LOGICAL_OPS

ACTION_KINDS = frozenset({"enter_long", "enter_short", "exit", "scale", "hold"})
CONSTRAINT_KINDS = frozenset({
    "exposure", "position", "leverage", "risk_per_trade", "stop_loss", "drawdown",
})


@dataclass(frozen=True)
class Literal:
    """Constant value written directly in the spec."""
    value: ScalarValue


@dataclass(frozen=True)
class ParameterRef:
    """Reference to a named spec parameter."""
    name: str


@dataclass(frozen=True)
class RuleRef:
    """Reference to another rule's outcome (true when that rule fires)."""
    rule_id: str


@dataclass(frozen=True)
class FeatureRef:
    """Runtime market feature supplied to the worker at evaluation time."""
    name: str


@dataclass(frozen=True)
class BinaryOp:
    """Binary arithmetic, comparison or logical expression."""
    op: str
    left: "Expr"
    right: "Expr"


Expr = Union[Literal, ParameterRef, RuleRef, FeatureRef, BinaryOp]
EXPR_TYPES = (Literal, ParameterRef, RuleRef, FeatureRef, BinaryOp)


@dataclass(frozen=True)
class Action:
    """What a rule does when its condition holds."""
    kind: str
    arguments: tuple[tuple[str, Expr], ...] = ()


@dataclass(frozen=True)
class Rule:
    """Condition -> action pair, identified by rule_id."""
    rule_id: str
    condition: Expr
    action: Action


@dataclass(frozen=True)
class RiskConstraint:
    """Bounds on exposure, position count, leverage and similar limits."""
    kind: str
    lower: Optional[Expr] = None
    upper: Optional[Expr] = None


@dataclass(frozen=True)
class Parameter:
    """Named, typed constant usable from rules and constraints."""
    name: str
    type: str
    value: ScalarValue


@dataclass(frozen=True)
class StrategySpec:
    """
    Declarative strategy definition.

    Immutable once submitted; an edit is submitted as a new version.
    strategy_id, version and author are metadata and do not contribute
    to the compiled plan's fingerprint.
    """
    strategy_id: str
    version: int
    author: str
    rules: tuple[Rule, ...] = ()
    constraints: tuple[RiskConstraint, ...] = ()
    parameters: tuple[Parameter, ...] = ()
    requirements: frozenset[str] = field(default_factory=frozenset)
    description: Optional[str] = None

    def parameter(self, name: str) -> Optional[Parameter]:
        """First parameter declared with the name."""
        for param in self.parameters:
            if param.name == name:
                return param
        return None

    def rule_ids(self) -> list[str]:
        return [rule.rule_id for rule in self.rules]
