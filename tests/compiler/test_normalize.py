"""Tests for spec normalization."""

from strategy_cp.compiler.normalize import normalize_spec, normalize_tag
from strategy_cp.models.spec import (
    Action,
    BinaryOp,
    FeatureRef,
    Literal,
    Parameter,
    ParameterRef,
    RiskConstraint,
    Rule,
    StrategySpec,
)


def _spec(**kwargs) -> StrategySpec:
    base = dict(
        strategy_id="s1",
        version=1,
        author="bob",
        rules=(Rule("r1", BinaryOp(">", FeatureRef("rsi"), Literal(50)), Action("exit")),),
    )
    base.update(kwargs)
    return StrategySpec(**base)


def _codes(diagnostics):
    return [d.code for d in diagnostics]


class TestNormalizeSpec:
    """Test canonical form of specs."""

    def test_identifiers_and_kinds_canonicalized(self):
        """Whitespace is stripped and kinds and operators are lower-cased."""
        spec = _spec(
            strategy_id="  s1 ",
            rules=(Rule(" r1 ", BinaryOp(" AND ", Literal(True), Literal(False)), Action(" EXIT ")),),
            constraints=(RiskConstraint(" Leverage ", upper=Literal(2)),),
        )

        normalized, diagnostics = normalize_spec(spec)

        assert diagnostics == []
        assert normalized.strategy_id == "s1"
        assert normalized.rules[0].rule_id == "r1"
        assert normalized.rules[0].action.kind == "exit"
        assert normalized.rules[0].condition.op == "and"
        assert normalized.constraints[0].kind == "leverage"

    def test_parameters_and_constraints_sorted(self):
        """Parameters sort by name and constraints by kind."""
        spec = _spec(
            parameters=(Parameter("b", "float", 1.0), Parameter("a", "float", 2.0)),
            constraints=(
                RiskConstraint("stop_loss", lower=Literal(1)),
                RiskConstraint("leverage", upper=Literal(2)),
            ),
        )

        normalized, _ = normalize_spec(spec)

        assert [p.name for p in normalized.parameters] == ["a", "b"]
        assert [c.kind for c in normalized.constraints] == ["leverage", "stop_loss"]

    def test_rule_order_preserved(self):
        """Rule declaration order is kept."""
        rules = tuple(
            Rule(rid, Literal(True), Action("hold")) for rid in ("zeta", "alpha", "mid")
        )
        normalized, _ = normalize_spec(_spec(rules=rules))

        assert [r.rule_id for r in normalized.rules] == ["zeta", "alpha", "mid"]

    def test_action_arguments_sorted(self):
        rule = Rule("r1", Literal(True), Action("scale", (("z", Literal(1)), ("a", Literal(2)))))
        normalized, _ = normalize_spec(_spec(rules=(rule,)))

        assert [name for name, _ in normalized.rules[0].action.arguments] == ["a", "z"]

    def test_numeric_values_become_floats(self):
        """Int literals and float parameters declared with ints become floats."""
        spec = _spec(parameters=(Parameter("p", "float", 3),))

        normalized, _ = normalize_spec(spec)

        assert normalized.parameters[0].value == 3.0
        assert isinstance(normalized.parameters[0].value, float)
        assert normalized.rules[0].condition.right == Literal(50.0)
        assert isinstance(normalized.rules[0].condition.right.value, float)

    def test_requirements_normalized(self):
        spec = _spec(requirements=frozenset({" Margin", "equities", "  "}))

        normalized, _ = normalize_spec(spec)

        assert normalized.requirements == frozenset({"margin", "equities"})

    def test_input_not_mutated(self):
        spec = _spec(strategy_id=" s1 ")
        normalize_spec(spec)
        assert spec.strategy_id == " s1 "


class TestNormalizeDiagnostics:
    """Test error diagnostics raised during normalization."""

    def test_duplicate_rule(self):
        rules = (
            Rule("r1", Literal(True), Action("hold")),
            Rule("r1 ", Literal(True), Action("exit")),
        )
        _, diagnostics = normalize_spec(_spec(rules=rules))

        assert _codes(diagnostics) == ["DUPLICATE_RULE"]
        assert diagnostics[0].location == "rules[1]"

    def test_duplicate_parameter(self):
        params = (Parameter("p", "float", 1.0), Parameter("p", "float", 2.0))
        _, diagnostics = normalize_spec(_spec(parameters=params))
        assert _codes(diagnostics) == ["DUPLICATE_PARAMETER"]

    def test_duplicate_constraint(self):
        constraints = (
            RiskConstraint("leverage", upper=Literal(1)),
            RiskConstraint("LEVERAGE", upper=Literal(2)),
        )
        _, diagnostics = normalize_spec(_spec(constraints=constraints))
        assert _codes(diagnostics) == ["DUPLICATE_CONSTRAINT"]

    def test_unknown_action_and_constraint(self):
        spec = _spec(
            rules=(Rule("r1", Literal(True), Action("teleport")),),
            constraints=(RiskConstraint("vibes", upper=Literal(1)),),
        )
        _, diagnostics = normalize_spec(spec)
        assert _codes(diagnostics) == ["UNKNOWN_ACTION", "UNKNOWN_CONSTRAINT"]

    def test_parameter_type_mismatch(self):
        params = (
            Parameter("flag", "bool", 1),
            Parameter("count", "int", 2.5),
            Parameter("name", "str", 3),
        )
        _, diagnostics = normalize_spec(_spec(parameters=params))
        assert _codes(diagnostics) == ["PARAMETER_TYPE_MISMATCH"] * 3

    def test_unknown_parameter_type(self):
        _, diagnostics = normalize_spec(_spec(parameters=(Parameter("p", "decimal", 1),)))
        assert _codes(diagnostics) == ["UNKNOWN_PARAMETER_TYPE"]

    def test_empty_identifiers_are_structural(self):
        spec = _spec(rules=(Rule("r1", ParameterRef("  "), Action("hold")),))
        _, diagnostics = normalize_spec(spec)
        assert _codes(diagnostics) == ["EMPTY_IDENTIFIER"]
        assert diagnostics[0].location == "rules[0].condition"

    def test_malformed_node(self):
        spec = _spec(rules=(Rule("r1", {"op": ">"}, Action("hold")),))
        _, diagnostics = normalize_spec(spec)
        assert _codes(diagnostics) == ["MALFORMED_NODE"]

    def test_invalid_version(self):
        _, diagnostics = normalize_spec(_spec(version=0))
        assert _codes(diagnostics) == ["INVALID_VERSION"]


def test_normalize_tag():
    assert normalize_tag("  Short_Selling ") == "short_selling"
