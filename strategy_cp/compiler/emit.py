"""
Fold and emit stage.

Builds the final instruction sequence in dependency order, derives worker
requirements and the risk grade, and computes the content fingerprint.
"""

import hashlib
import heapq
from typing import Mapping

import orjson

from ..models.plan import (
    Diagnostic,
    ExecutionPlan,
    Instruction,
    PlanSource,
    RiskEnvelope,
    RiskGrade,
    plan_canonical,
)
from ..models.spec import StrategySpec
from .folding import FoldError, fold_expr


def topological_order(
    rule_ids: list[str], dependencies: Mapping[str, tuple[str, ...]]
) -> list[str]:
    """
    Order rules so dependencies come first; ties keep declaration order.

    Args:
        rule_ids: Rule ids in declaration order
        dependencies: rule_id -> rule ids it references (must be acyclic)
    """
    position = {rule_id: i for i, rule_id in enumerate(rule_ids)}
    remaining = {rule_id: len(set(dependencies.get(rule_id, ()))) for rule_id in rule_ids}
    dependents: dict[str, list[str]] = {rule_id: [] for rule_id in rule_ids}
    for rule_id in rule_ids:
        for dep in set(dependencies.get(rule_id, ())):
            dependents[dep].append(rule_id)

    ready = [position[rule_id] for rule_id, count in remaining.items() if count == 0]
    heapq.heapify(ready)
    ordered = []
    while ready:
        rule_id = rule_ids[heapq.heappop(ready)]
        ordered.append(rule_id)
        for dependent in dependents[rule_id]:
            remaining[dependent] -= 1
            if remaining[dependent] == 0:
                heapq.heappush(ready, position[dependent])

    if len(ordered) != len(rule_ids):
        raise ValueError("Rule dependencies contain a cycle")
    return ordered


def check_folding(spec: StrategySpec) -> list[Diagnostic]:
    """Report rule expressions that cannot be folded (e.g. division by zero)."""
    parameters = {p.name: p for p in spec.parameters}
    diagnostics = []

    for i, rule in enumerate(spec.rules):
        exprs = [(f"rules[{i}].condition", rule.condition)]
        exprs.extend(
            (f"rules[{i}].action.arguments.{name}", expr) for name, expr in rule.action.arguments
        )
        for location, expr in exprs:
            try:
                fold_expr(expr, parameters)
            except FoldError as e:
                diagnostics.append(Diagnostic.error(e.code, str(e), location))

    return diagnostics


def build_instructions(
    spec: StrategySpec, dependencies: Mapping[str, tuple[str, ...]]
) -> tuple[Instruction, ...]:
    """Fold every rule into an instruction, in execution order."""
    parameters = {p.name: p for p in spec.parameters}
    rules = {rule.rule_id: rule for rule in spec.rules}

    instructions = []
    for index, rule_id in enumerate(topological_order(spec.rule_ids(), dependencies)):
        rule = rules[rule_id]
        instructions.append(Instruction(
            index=index,
            rule_id=rule_id,
            condition=fold_expr(rule.condition, parameters),
            action_kind=rule.action.kind,
            arguments=tuple(
                (name, fold_expr(expr, parameters)) for name, expr in rule.action.arguments
            ),
            depends_on=tuple(dependencies.get(rule_id, ())),
        ))
    return tuple(instructions)


def derive_requirements(spec: StrategySpec, envelope: RiskEnvelope) -> frozenset[str]:
    """Explicit requirement tags plus capabilities implied by the plan."""
    tags = set(spec.requirements)

    if any(rule.action.kind == "enter_short" for rule in spec.rules):
        tags.add("short_selling")

    leverage = envelope.get("leverage")
    if leverage is not None and leverage.upper is not None and leverage.upper > 1:
        tags.add("margin")

    return frozenset(tags)


def grade_risk(spec: StrategySpec, envelope: RiskEnvelope) -> RiskGrade:
    """Score the plan's risk profile into LOW / MEDIUM / HIGH."""
    score = 0

    risk = envelope.get("risk_per_trade")
    if risk is not None and risk.upper is not None:
        if risk.upper > 1.5:
            score += 2
        elif risk.upper > 1.0:
            score += 1

    leverage = envelope.get("leverage")
    if leverage is not None and leverage.upper is not None:
        if leverage.upper > 2:
            score += 2
        elif leverage.upper > 1:
            score += 1

    stop = envelope.get("stop_loss")
    if stop is not None and stop.lower is not None and stop.lower < 0.5:
        score += 1

    if any(rule.action.kind == "enter_short" for rule in spec.rules):
        score += 1

    if score >= 4:
        return RiskGrade.HIGH
    if score >= 2:
        return RiskGrade.MEDIUM
    return RiskGrade.LOW


def compute_fingerprint(canonical: dict) -> str:
    """sha256 over canonical JSON with sorted keys."""
    payload = orjson.dumps(canonical, option=orjson.OPT_SORT_KEYS)
    return hashlib.sha256(payload).hexdigest()


def emit_plan(
    spec: StrategySpec,
    dependencies: Mapping[str, tuple[str, ...]],
    envelope: RiskEnvelope,
    compiler_version: str,
) -> ExecutionPlan:
    """Assemble the immutable execution plan."""
    instructions = build_instructions(spec, dependencies)
    requirements = derive_requirements(spec, envelope)
    canonical = plan_canonical(compiler_version, instructions, envelope, requirements)

    return ExecutionPlan(
        fingerprint=compute_fingerprint(canonical),
        instructions=instructions,
        risk_envelope=envelope,
        requirements=requirements,
        compiler_version=compiler_version,
        risk_grade=grade_risk(spec, envelope),
        source=PlanSource(strategy_id=spec.strategy_id, version=spec.version, author=spec.author),
    )
