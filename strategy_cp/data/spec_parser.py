"""
Strategy spec parsing from raw payloads.

Raw specs arrive as JSON strings, YAML files or decoded dictionaries. This
module converts them into StrategySpec objects. Only structural problems
(wrong container types, missing required fields, unknown expression nodes)
are raised here as MalformedSpecError; semantic checks belong to the
compiler so they can be reported as diagnostics.

Expression encoding::

    3.5                                  -> Literal(3.5)
    {"literal": 3.5}                     -> Literal(3.5)
    {"param": "rsi_floor"}               -> ParameterRef("rsi_floor")
    {"rule": "entry"}                    -> RuleRef("entry")
    {"feature": "rsi"}                   -> FeatureRef("rsi")
    {"op": "<", "left": ..., "right": ...} -> BinaryOp
"""

from pathlib import Path
from typing import Any, Union

import orjson
import yaml

from ..errors import MalformedSpecError
from ..logging.config import get_logger
from ..models.spec import (
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

logger = get_logger(__name__)

REQUIRED_FIELDS = ("strategy_id", "version", "author")


def parse_spec(raw: Union[str, bytes, dict[str, Any]]) -> StrategySpec:
    """
    Parse a raw spec payload.

    Args:
        raw: JSON text/bytes or a decoded mapping

    Returns:
        Parsed StrategySpec

    Raises:
        MalformedSpecError: If the payload is structurally invalid
    """
    if isinstance(raw, (str, bytes)):
        try:
            data = orjson.loads(raw)
        except orjson.JSONDecodeError as e:
            raise MalformedSpecError(
                f"Spec is not valid JSON: {e}",
                raw_data=raw[:200] if isinstance(raw, str) else raw[:200].decode(errors="replace"),
            ) from e
    else:
        data = raw

    if not isinstance(data, dict):
        raise MalformedSpecError("Spec must be a mapping", location="")

    return spec_from_dict(data)


def parse_spec_file(path: Union[str, Path]) -> StrategySpec:
    """Load a spec from a .json, .yaml or .yml file."""
    path = Path(path)
    text = path.read_text()

    if path.suffix.lower() in (".yaml", ".yml"):
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise MalformedSpecError(f"Spec is not valid YAML: {e}", raw_data=text[:200]) from e
        if not isinstance(data, dict):
            raise MalformedSpecError("Spec must be a mapping", location="")
        return spec_from_dict(data)

    return parse_spec(text)


def spec_from_dict(data: dict[str, Any]) -> StrategySpec:
    """Build a StrategySpec from a decoded mapping."""
    for field_name in REQUIRED_FIELDS:
        if field_name not in data or data[field_name] is None:
            raise MalformedSpecError(f"Missing required field: {field_name}", location=field_name)

    strategy_id = data["strategy_id"]
    if not isinstance(strategy_id, str) or not strategy_id.strip():
        raise MalformedSpecError("strategy_id must be a non-empty string", location="strategy_id")

    try:
        version = int(data["version"])
    except (TypeError, ValueError) as e:
        raise MalformedSpecError(f"Invalid version: {e}", location="version") from e
    if isinstance(data["version"], bool) or version < 1:
        raise MalformedSpecError("version must be a positive integer", location="version")

    rules_data = data.get("rules") or []
    if not isinstance(rules_data, list):
        raise MalformedSpecError("rules must be a list", location="rules")

    constraints_data = data.get("constraints") or []
    if not isinstance(constraints_data, list):
        raise MalformedSpecError("constraints must be a list", location="constraints")

    requirements = data.get("requirements") or []
    if not isinstance(requirements, (list, tuple, set, frozenset)):
        raise MalformedSpecError("requirements must be a list of tags", location="requirements")

    logger.debug(
        "Parsing strategy spec",
        strategy_id=strategy_id,
        version=version,
        rule_count=len(rules_data),
    )

    return StrategySpec(
        strategy_id=strategy_id,
        version=version,
        author=str(data["author"]),
        rules=tuple(_parse_rule(r, f"rules[{i}]") for i, r in enumerate(rules_data)),
        constraints=tuple(
            _parse_constraint(c, f"constraints[{i}]") for i, c in enumerate(constraints_data)
        ),
        parameters=_parse_parameters(data.get("parameters") or []),
        requirements=frozenset(str(tag) for tag in requirements),
        description=data.get("description"),
    )


def _parse_parameters(raw: Any) -> tuple[Parameter, ...]:
    # Accept both {"name": {"type": .., "value": ..}} and [{"name": .., ...}]
    if isinstance(raw, dict):
        items = [dict(body, name=name) if isinstance(body, dict) else body
                 for name, body in raw.items()]
    elif isinstance(raw, list):
        items = raw
    else:
        raise MalformedSpecError("parameters must be a mapping or list", location="parameters")

    params = []
    for i, item in enumerate(items):
        location = f"parameters[{i}]"
        if not isinstance(item, dict):
            raise MalformedSpecError("parameter must be a mapping", location=location)
        for key in ("name", "type", "value"):
            if key not in item:
                raise MalformedSpecError(f"parameter missing '{key}'", location=location)
        params.append(Parameter(name=str(item["name"]), type=str(item["type"]), value=item["value"]))
    return tuple(params)


def _parse_rule(raw: Any, location: str) -> Rule:
    if not isinstance(raw, dict):
        raise MalformedSpecError("rule must be a mapping", location=location)

    rule_id = raw.get("id", raw.get("rule_id"))
    if rule_id is None:
        raise MalformedSpecError("rule missing 'id'", location=location)

    if "condition" not in raw:
        raise MalformedSpecError("rule missing 'condition'", location=location)

    action_raw = raw.get("action")
    if isinstance(action_raw, str):
        action = Action(kind=action_raw)
    elif isinstance(action_raw, dict) and "kind" in action_raw:
        args_raw = action_raw.get("arguments") or {}
        if not isinstance(args_raw, dict):
            raise MalformedSpecError("action arguments must be a mapping",
                                     location=f"{location}.action.arguments")
        action = Action(
            kind=str(action_raw["kind"]),
            arguments=tuple(
                (str(name), parse_expr(value, f"{location}.action.arguments.{name}"))
                for name, value in args_raw.items()
            ),
        )
    else:
        raise MalformedSpecError("rule action must be a kind or a mapping with 'kind'",
                                 location=f"{location}.action")

    return Rule(
        rule_id=str(rule_id),
        condition=parse_expr(raw["condition"], f"{location}.condition"),
        action=action,
    )


def _parse_constraint(raw: Any, location: str) -> RiskConstraint:
    if not isinstance(raw, dict) or "kind" not in raw:
        raise MalformedSpecError("constraint must be a mapping with 'kind'", location=location)

    lower = raw.get("lower")
    upper = raw.get("upper")
    return RiskConstraint(
        kind=str(raw["kind"]),
        lower=parse_expr(lower, f"{location}.lower") if lower is not None else None,
        upper=parse_expr(upper, f"{location}.upper") if upper is not None else None,
    )


def parse_expr(raw: Any, location: str = "") -> Expr:
    """Decode one expression node."""
    if isinstance(raw, (bool, int, float, str)):
        return Literal(raw)

    if not isinstance(raw, dict):
        raise MalformedSpecError(f"Unsupported expression node: {raw!r}", location=location)

    if "literal" in raw:
        value = raw["literal"]
        if not isinstance(value, (bool, int, float, str)):
            raise MalformedSpecError("literal must be a scalar", location=location)
        return Literal(value)
    if "param" in raw:
        return ParameterRef(str(raw["param"]))
    if "rule" in raw:
        return RuleRef(str(raw["rule"]))
    if "feature" in raw:
        return FeatureRef(str(raw["feature"]))
    if "op" in raw:
        if "left" not in raw or "right" not in raw:
            raise MalformedSpecError("operator node needs 'left' and 'right'", location=location)
        return BinaryOp(
            op=str(raw["op"]),
            left=parse_expr(raw["left"], f"{location}.left"),
            right=parse_expr(raw["right"], f"{location}.right"),
        )

    raise MalformedSpecError(f"Unknown expression node keys: {sorted(raw)}", location=location)


def expr_to_raw(expr: Expr) -> Any:
    """Inverse of parse_expr."""
    if isinstance(expr, Literal):
        return {"literal": expr.value}
    if isinstance(expr, ParameterRef):
        return {"param": expr.name}
    if isinstance(expr, RuleRef):
        return {"rule": expr.rule_id}
    if isinstance(expr, FeatureRef):
        return {"feature": expr.name}
    return {"op": expr.op, "left": expr_to_raw(expr.left), "right": expr_to_raw(expr.right)}


def spec_to_dict(spec: StrategySpec) -> dict[str, Any]:
    """Serialize a spec back to its raw mapping form."""
    return {
        "strategy_id": spec.strategy_id,
        "version": spec.version,
        "author": spec.author,
        "description": spec.description,
        "parameters": [
            {"name": p.name, "type": p.type, "value": p.value} for p in spec.parameters
        ],
        "rules": [
            {
                "id": rule.rule_id,
                "condition": expr_to_raw(rule.condition),
                "action": {
                    "kind": rule.action.kind,
                    "arguments": {name: expr_to_raw(e) for name, e in rule.action.arguments},
                },
            }
            for rule in spec.rules
        ],
        "constraints": [
            {
                "kind": c.kind,
                "lower": expr_to_raw(c.lower) if c.lower is not None else None,
                "upper": expr_to_raw(c.upper) if c.upper is not None else None,
            }
            for c in spec.constraints
        ],
        "requirements": sorted(spec.requirements),
    }
