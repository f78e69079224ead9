"""
Compiled plan data model.

An ExecutionPlan is the immutable output of the compiler, identified solely
by its fingerprint. Its instructions use a closed operand set in which all
parameter references have been substituted and constants folded.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union

from .spec import ScalarValue


class Severity(str, Enum):
    """Diagnostic severity."""
    ERROR = "error"
    WARNING = "warning"


class RiskGrade(str, Enum):
    """Coarse risk classification attached to a plan."""
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


@dataclass(frozen=True)
class Diagnostic:
    """Compiler finding with a location inside the spec."""
    severity: Severity
    code: str
    message: str
    location: str = ""

    @classmethod
    def error(cls, code: str, message: str, location: str = "") -> "Diagnostic":
        return cls(severity=Severity.ERROR, code=code, message=message, location=location)

    @classmethod
    def warning(cls, code: str, message: str, location: str = "") -> "Diagnostic":
        return cls(severity=Severity.WARNING, code=code, message=message, location=location)

    @property
    def is_error(self) -> bool:
        return self.severity == Severity.ERROR

    def to_dict(self) -> dict[str, str]:
        return {
            "severity": self.severity.value,
            "code": self.code,
            "message": self.message,
            "location": self.location,
        }


@dataclass(frozen=True)
class Const:
    """Folded constant."""
    value: ScalarValue

    def to_canonical(self) -> Any:
        return {"const": self.value}


@dataclass(frozen=True)
class Feature:
    """Runtime market feature read."""
    name: str

    def to_canonical(self) -> Any:
        return {"feature": self.name}


@dataclass(frozen=True)
class RuleResult:
    """Outcome of an earlier instruction."""
    rule_id: str

    def to_canonical(self) -> Any:
        return {"rule": self.rule_id}


@dataclass(frozen=True)
class Op:
    """Operation that could not be folded at compile time."""
    op: str
    left: "Operand"
    right: "Operand"

    def to_canonical(self) -> Any:
        return {"op": self.op, "args": [self.left.to_canonical(), self.right.to_canonical()]}


Operand = Union[Const, Feature, RuleResult, Op]


@dataclass(frozen=True)
class Instruction:
    """Resolved rule in execution order."""
    index: int
    rule_id: str
    condition: Operand
    action_kind: str
    arguments: tuple[tuple[str, Operand], ...] = ()
    depends_on: tuple[str, ...] = ()

    def to_canonical(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "rule_id": self.rule_id,
            "condition": self.condition.to_canonical(),
            "action": self.action_kind,
            "arguments": [[name, operand.to_canonical()] for name, operand in self.arguments],
            "depends_on": list(self.depends_on),
        }


@dataclass(frozen=True)
class Bounds:
    """Resolved numeric bounds of one risk constraint."""
    lower: Optional[float] = None
    upper: Optional[float] = None

    def contains(self, value: float) -> bool:
        if self.lower is not None and value < self.lower:
            return False
        if self.upper is not None and value > self.upper:
            return False
        return True


@dataclass(frozen=True)
class RiskEnvelope:
    """All resolved risk bounds of a plan, sorted by constraint kind."""
    bounds: tuple[tuple[str, Bounds], ...] = ()

    def get(self, kind: str) -> Optional[Bounds]:
        for name, bounds in self.bounds:
            if name == kind:
                return bounds
        return None

    def kinds(self) -> list[str]:
        return [name for name, _ in self.bounds]

    def to_canonical(self) -> dict[str, Any]:
        return {name: [b.lower, b.upper] for name, b in self.bounds}


@dataclass(frozen=True)
class PlanSource:
    """Spec version that produced a plan."""
    strategy_id: str
    version: int
    author: str = ""


@dataclass(frozen=True)
class ExecutionPlan:
    """
    Immutable compilation output.

    Only compiler_version, instructions, risk_envelope and requirements are
    hashed into the fingerprint; risk_grade and source are descriptive and
    excluded from equality.
    """
    fingerprint: str
    instructions: tuple[Instruction, ...]
    risk_envelope: RiskEnvelope
    requirements: frozenset[str]
    compiler_version: str
    risk_grade: RiskGrade = field(default=RiskGrade.LOW, compare=False)
    source: Optional[PlanSource] = field(default=None, compare=False)

    def to_canonical(self) -> dict[str, Any]:
        return plan_canonical(
            self.compiler_version, self.instructions, self.risk_envelope, self.requirements
        )


def plan_canonical(
    compiler_version: str,
    instructions: tuple[Instruction, ...],
    risk_envelope: RiskEnvelope,
    requirements: frozenset[str],
) -> dict[str, Any]:
    """Canonical, JSON-serializable content a fingerprint is computed over."""
    return {
        "compiler_version": compiler_version,
        "instructions": [instruction.to_canonical() for instruction in instructions],
        "risk_envelope": risk_envelope.to_canonical(),
        "requirements": sorted(requirements),
    }


@dataclass
class CompilationResult:
    """Result of one compilation attempt."""
    plan: Optional[ExecutionPlan] = None
    diagnostics: list[Diagnostic] = field(default_factory=list)

    @classmethod
    def succeeded(cls, plan: ExecutionPlan, diagnostics: list[Diagnostic]) -> "CompilationResult":
        return cls(plan=plan, diagnostics=list(diagnostics))

    @classmethod
    def failed(cls, diagnostics: list[Diagnostic]) -> "CompilationResult":
        return cls(plan=None, diagnostics=list(diagnostics))

    @property
    def success(self) -> bool:
        return self.plan is not None

    @property
    def fingerprint(self) -> Optional[str]:
        return self.plan.fingerprint if self.plan else None

    @property
    def errors(self) -> list[Diagnostic]:
        return [d for d in self.diagnostics if d.is_error]

    @property
    def warnings(self) -> list[Diagnostic]:
        return [d for d in self.diagnostics if not d.is_error]
