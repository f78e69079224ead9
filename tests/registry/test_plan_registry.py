"""Tests for the content-addressed plan registry."""

import threading
from dataclasses import replace
from unittest.mock import Mock

import pytest

from strategy_cp.compiler import compile_spec
from strategy_cp.errors import PlanNotFoundError, RegistryCorruptionError
from strategy_cp.models.plan import RiskEnvelope
from strategy_cp.registry.plan_registry import PlanRegistry


@pytest.fixture
def registry(clock):
    return PlanRegistry(clock=clock)


@pytest.fixture
def plan(sample_spec):
    return compile_spec(sample_spec).plan


class TestPlanStorage:
    """Test storing and retrieving plans."""

    def test_put_and_get(self, registry, plan):
        fingerprint = registry.put(plan)

        assert fingerprint == plan.fingerprint
        assert registry.get(fingerprint) == plan
        assert registry.contains(fingerprint)
        assert registry.refcount(fingerprint) == 1

    def test_identical_plan_shares_entry(self, registry, make_spec):
        """Two specs differing only in metadata share one entry."""
        first = compile_spec(make_spec()).plan
        second = compile_spec(make_spec(strategy_id="copy", author="zed")).plan

        registry.put(first)
        registry.put(second)

        assert registry.fingerprints() == [first.fingerprint]
        assert registry.refcount(first.fingerprint) == 2

    def test_collision_is_fatal(self, registry, plan):
        registry.put(plan)
        forged = replace(plan, risk_envelope=RiskEnvelope())

        with pytest.raises(RegistryCorruptionError) as exc_info:
            registry.put(forged)

        assert exc_info.value.fingerprint == plan.fingerprint
        assert exc_info.value.recoverable is False
        assert registry.get(plan.fingerprint) == plan

    def test_missing_plan(self, registry):
        with pytest.raises(PlanNotFoundError):
            registry.get("deadbeef")
        with pytest.raises(PlanNotFoundError):
            registry.release("deadbeef")

    def test_release_never_goes_negative(self, registry, plan):
        registry.put(plan)
        assert registry.release(plan.fingerprint) == 0
        assert registry.release(plan.fingerprint) == 0

    def test_concurrent_puts_share_entry(self, registry, plan):
        threads = [threading.Thread(target=registry.put, args=(plan,)) for _ in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert registry.refcount(plan.fingerprint) == 20

    def test_closed_registry_rejects_puts(self, registry, plan):
        registry.close()
        with pytest.raises(RuntimeError):
            registry.put(plan)


class TestGarbageCollection:
    """Test removal of unreferenced plans."""

    def test_unreferenced_plans_removed(self, registry, plan):
        registry.put(plan)
        registry.release(plan.fingerprint)

        assert registry.collect_garbage() == [plan.fingerprint]
        assert not registry.contains(plan.fingerprint)

    def test_referenced_plans_kept(self, registry, plan):
        registry.put(plan)
        assert registry.collect_garbage() == []
        assert registry.contains(plan.fingerprint)

    def test_protected_plans_kept(self, registry, plan):
        registry.put(plan)
        registry.release(plan.fingerprint)

        assert registry.collect_garbage(protected=[plan.fingerprint]) == []
        assert registry.contains(plan.fingerprint)


class TestSpecHistory:
    """Test spec version history and lineage."""

    def test_record_spec_versions(self, registry, make_spec):
        assert registry.latest_version("rsi-reversion") is None

        assert registry.record_spec(make_spec(version=1))
        assert registry.record_spec(make_spec(version=3))
        assert not registry.record_spec(make_spec(version=3))

        assert registry.latest_version("rsi-reversion") == 3
        assert [s.version for s in registry.spec_history("rsi-reversion")] == [1, 3]
        assert registry.get_spec("rsi-reversion", 1).version == 1
        assert registry.get_spec("rsi-reversion", 2) is None

    def test_lineage(self, registry, plan):
        registry.record_lineage("rsi-reversion", 1, plan.fingerprint)
        registry.record_lineage("rsi-reversion", 2, plan.fingerprint)
        registry.record_lineage("rsi-reversion", 2, plan.fingerprint)

        assert registry.lineage(plan.fingerprint) == [("rsi-reversion", 1), ("rsi-reversion", 2)]
        assert registry.fingerprint_for("rsi-reversion", 2) == plan.fingerprint
        assert registry.fingerprint_for("rsi-reversion", 9) is None


class TestAuditLog:
    """Test the compilation attempt log."""

    def test_attempts_recorded(self, registry, make_spec, sample_spec_dict, clock):
        good = make_spec()
        rules = [dict(r) for r in sample_spec_dict["rules"]]
        rules[0]["condition"] = {"param": "missing"}
        bad = make_spec(version=2, rules=rules)

        registry.record_attempt(good, compile_spec(good))
        failed = registry.record_attempt(bad, compile_spec(bad))

        log = registry.audit_log("rsi-reversion")
        assert [a.success for a in log] == [True, False]
        assert failed.timestamp == clock.now()
        assert "UNRESOLVED_PARAMETER" in [d["code"] for d in failed.diagnostics]
        assert registry.audit_log("other") == []

    def test_stats(self, registry, plan, sample_spec):
        registry.put(plan)
        registry.record_spec(sample_spec)
        registry.record_attempt(sample_spec, compile_spec(sample_spec))

        assert registry.stats() == {"plans": 1, "referenced": 1, "strategies": 1, "attempts": 1}

    def test_audit_store_mirrored(self, clock, plan, sample_spec):
        store = Mock()
        registry = PlanRegistry(audit_store=store, clock=clock)

        registry.put(plan)
        registry.put(plan)
        registry.record_spec(sample_spec)
        registry.record_attempt(sample_spec, compile_spec(sample_spec))

        store.record_plan.assert_called_once_with(plan)
        store.record_spec.assert_called_once()
        store.record_attempt.assert_called_once_with(
            "rsi-reversion", 1, plan.fingerprint, []
        )
