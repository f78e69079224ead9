"""End-to-end lifecycle tests for the control plane."""

import math
from dataclasses import replace
from unittest.mock import patch

import pytest

from strategy_cp.compiler import compile_spec
from strategy_cp.control_plane import ControlPlane
from strategy_cp.errors import (
    InstanceNotFoundError,
    RegistryCorruptionError,
    StateTransitionError,
)
from strategy_cp.models.plan import RiskEnvelope
from strategy_cp.persistence import AuditStore
from strategy_cp.registry.plan_registry import PlanRegistry
from strategy_cp.state.models import HealthSeverity, HealthSignal, OutcomeEvent
from strategy_cp.state.models import LifecycleEvent as E
from strategy_cp.state.models import LifecycleState as S


def _with_floor(sample_spec_dict, floor):
    return dict(sample_spec_dict["parameters"], rsi_floor={"type": "float", "value": floor})


class TestSubmission:
    """Test spec submission and compilation outcomes."""

    def test_valid_spec_validated(self, control_plane, sample_spec):
        submission = control_plane.submit_spec(sample_spec)

        assert submission.success
        assert submission.instance.state == S.VALIDATED
        assert submission.instance.plan_fingerprint == submission.fingerprint
        assert submission.instance.spec_version == 1
        assert control_plane.registry.refcount(submission.fingerprint) == 1
        assert control_plane.registry.lineage(submission.fingerprint) == [("rsi-reversion", 1)]

    def test_raw_payload_accepted(self, control_plane, sample_spec_dict):
        submission = control_plane.submit_spec(sample_spec_dict)
        assert submission.instance_id == "rsi-reversion"
        assert submission.success

    def test_undefined_parameter_stays_draft(self, control_plane, make_spec, sample_spec_dict):
        """One diagnostic, no plan and no recorded transition."""
        rules = [dict(r) for r in sample_spec_dict["rules"]]
        rules[0]["condition"] = {"op": "<", "left": {"feature": "rsi"}, "right": {"param": "ghost"}}

        submission = control_plane.submit_spec(make_spec(rules=rules))

        assert not submission.success
        assert [d.code for d in submission.diagnostics] == ["UNRESOLVED_PARAMETER"]
        instance = control_plane.get_instance("rsi-reversion")
        assert instance.state == S.DRAFT
        assert instance.plan_fingerprint is None
        assert control_plane.get_history("rsi-reversion") == ()
        assert control_plane.registry.fingerprints() == []
        assert control_plane.registry.latest_version("rsi-reversion") is None

    def test_failed_update_keeps_current_plan(self, control_plane, make_spec, sample_spec_dict):
        first = control_plane.submit_spec(make_spec())
        rules = [dict(r) for r in sample_spec_dict["rules"]]
        rules[0]["condition"] = {"param": "ghost"}

        second = control_plane.submit_spec(make_spec(version=2, rules=rules))

        assert not second.success
        assert second.instance.state == S.VALIDATED
        assert second.instance.plan_fingerprint == first.fingerprint

    def test_non_finite_values_never_reach_registry(self, control_plane, make_spec, sample_spec_dict):
        """Distinct non-finite specs fail compilation instead of colliding in the registry."""
        submissions = [
            control_plane.submit_spec(make_spec(strategy_id=name, parameters=_with_floor(sample_spec_dict, value)))
            for name, value in (("a", math.inf), ("b", -math.inf), ("c", math.nan), ("d", math.nan))
        ]

        assert all(s.diagnostics[0].code == "NON_FINITE_VALUE" for s in submissions)
        assert all(s.instance.state == S.DRAFT for s in submissions)
        assert control_plane.registry.fingerprints() == []

    def test_whitespace_strategy_id_stripped(self, control_plane, make_spec):
        submission = control_plane.submit_spec(make_spec(strategy_id="  rsi-reversion "))
        assert submission.instance_id == "rsi-reversion"
        assert control_plane.get_instance("rsi-reversion").state == S.VALIDATED


class TestVersioning:
    """Test spec version monotonicity."""

    def test_identical_resubmission_is_duplicate(self, control_plane, make_spec):
        first = control_plane.submit_spec(make_spec())
        history = control_plane.get_history("rsi-reversion")

        again = control_plane.submit_spec(make_spec())

        assert again.duplicate
        assert again.fingerprint == first.fingerprint
        assert control_plane.get_history("rsi-reversion") == history
        assert control_plane.registry.refcount(first.fingerprint) == 1

    def test_changed_spec_with_same_version_rejected(self, control_plane, make_spec, sample_spec_dict):
        control_plane.submit_spec(make_spec())

        rejected = control_plane.submit_spec(make_spec(parameters=_with_floor(sample_spec_dict, 20)))

        assert not rejected.success
        assert [d.code for d in rejected.diagnostics] == ["VERSION_NOT_MONOTONIC"]
        assert control_plane.registry.audit_log("rsi-reversion")[-1].success is False

    def test_older_version_rejected(self, control_plane, make_spec):
        control_plane.submit_spec(make_spec(version=3))
        rejected = control_plane.submit_spec(make_spec(version=2))
        assert [d.code for d in rejected.diagnostics] == ["VERSION_NOT_MONOTONIC"]

    def test_new_version_updates_plan(self, control_plane, make_spec, sample_spec_dict):
        first = control_plane.submit_spec(make_spec())

        second = control_plane.submit_spec(
            make_spec(version=2, parameters=_with_floor(sample_spec_dict, 25))
        )

        assert second.instance.state == S.VALIDATED
        assert second.instance.plan_fingerprint == second.fingerprint != first.fingerprint
        assert second.instance.history[-1].event == E.PLAN_UPDATED
        assert control_plane.registry.refcount(first.fingerprint) == 0

    def test_metadata_only_version_keeps_plan(self, control_plane, make_spec):
        first = control_plane.submit_spec(make_spec())

        second = control_plane.submit_spec(make_spec(version=2, author="bob"))

        assert second.fingerprint == first.fingerprint
        assert second.instance.spec_version == 2
        assert len(second.instance.history) == 1
        assert control_plane.registry.refcount(first.fingerprint) == 1


class TestDeployment:
    """Test deployment, acceptance and worker selection."""

    def test_deploy_and_accept(self, control_plane, sample_spec):
        control_plane.register_worker("worker-1", ["equities"])
        instance_id = control_plane.submit_spec(sample_spec).instance_id

        deploying = control_plane.deploy(instance_id)
        assert deploying.state == S.DEPLOYING
        assert deploying.pending_offer.worker_id == "worker-1"

        active = control_plane.accept_assignment("worker-1", instance_id)
        assert active.state == S.ACTIVE
        assert active.assigned_worker == "worker-1"
        assert active.pending_offer is None

    def test_heartbeat_counts_as_acceptance(self, control_plane, sample_spec):
        control_plane.register_worker("worker-1", ["equities"])
        instance_id = control_plane.submit_spec(sample_spec).instance_id
        control_plane.deploy(instance_id)

        control_plane.worker_heartbeat("worker-1", instance_id)

        assert control_plane.get_instance(instance_id).state == S.ACTIVE

    def test_acceptance_requires_matching_offer(self, control_plane, sample_spec, clock):
        control_plane.register_worker("worker-1", ["equities"])
        control_plane.register_worker("worker-2", ["equities"])
        instance_id = control_plane.submit_spec(sample_spec).instance_id
        offered = control_plane.deploy(instance_id).pending_offer.worker_id
        other = "worker-2" if offered == "worker-1" else "worker-1"

        assert control_plane.accept_assignment(other, instance_id) is None

        clock.advance(11)
        assert control_plane.accept_assignment(offered, instance_id) is None
        assert control_plane.get_instance(instance_id).state == S.DEPLOYING

    def test_requirements_filter_workers(self, control_plane, sample_spec):
        control_plane.register_worker("crypto-1", ["crypto"])
        instance_id = control_plane.submit_spec(sample_spec).instance_id

        deploying = control_plane.deploy(instance_id)

        assert deploying.state == S.DEPLOYING
        assert deploying.pending_offer is None

    def test_deploy_requires_validated(self, control_plane, active_instance):
        with pytest.raises(StateTransitionError):
            control_plane.deploy(active_instance)

    def test_unknown_instance(self, control_plane):
        with pytest.raises(InstanceNotFoundError):
            control_plane.deploy("missing")

    def test_load_balanced_across_workers(self, control_plane, make_spec):
        control_plane.register_worker("worker-1", ["equities"])
        control_plane.register_worker("worker-2", ["equities"])

        offers = []
        for name in ("a", "b"):
            instance_id = control_plane.submit_spec(make_spec(strategy_id=name)).instance_id
            offers.append(control_plane.deploy(instance_id).pending_offer.worker_id)

        assert sorted(offers) == ["worker-1", "worker-2"]


class TestDeployRetries:
    """Test deploy timeouts, backoff and exhaustion."""

    def test_timeout_backs_off_and_retries(self, control_plane, sample_spec, clock):
        instance_id = control_plane.submit_spec(sample_spec).instance_id
        control_plane.deploy(instance_id)

        clock.advance(11)
        report = control_plane.sweep()

        assert report.timed_out == [instance_id]
        instance = control_plane.get_instance(instance_id)
        assert instance.state == S.VALIDATED
        assert (instance.next_retry_at - clock.now()).total_seconds() == 1

        clock.advance(1)
        report = control_plane.sweep()

        assert report.retried == [instance_id]
        instance = control_plane.get_instance(instance_id)
        assert instance.state == S.DEPLOYING
        assert instance.deploy_attempts == 2

    def test_fails_after_max_attempts(self, control_plane, sample_spec, clock):
        """Backoff doubles per attempt and the fifth timeout fails the instance."""
        submission = control_plane.submit_spec(sample_spec)
        instance_id = submission.instance_id
        control_plane.deploy(instance_id)

        backoffs = []
        for _ in range(4):
            clock.advance(11)
            control_plane.sweep()
            instance = control_plane.get_instance(instance_id)
            backoffs.append((instance.next_retry_at - clock.now()).total_seconds())
            clock.advance(backoffs[-1])
            control_plane.sweep()

        clock.advance(11)
        report = control_plane.sweep()

        assert backoffs == [1, 2, 4, 8]
        assert report.failed == [instance_id]
        assert control_plane.get_instance(instance_id).state == S.FAILED
        assert report.collected == [submission.fingerprint]

    def test_worker_arriving_before_retry_gets_offer(self, control_plane, sample_spec, clock):
        instance_id = control_plane.submit_spec(sample_spec).instance_id
        control_plane.deploy(instance_id)
        control_plane.register_worker("late", ["equities"])

        report = control_plane.sweep()

        assert report.offered == [instance_id]
        assert control_plane.get_instance(instance_id).pending_offer.worker_id == "late"


class TestLiveness:
    """Test heartbeat loss handling."""

    def test_heartbeat_loss_pauses_on_read(self, control_plane, active_instance, clock):
        clock.advance(31)

        instance = control_plane.get_instance(active_instance)

        assert instance.state == S.PAUSED
        assert instance.assigned_worker is None
        assert instance.pause_cause == E.HEARTBEAT_MISSED
        assert not control_plane.workers.holds("worker-1", active_instance)

    def test_heartbeats_keep_instance_active(self, control_plane, active_instance, clock):
        clock.advance(20)
        control_plane.worker_heartbeat("worker-1", active_instance)
        clock.advance(20)
        control_plane.worker_heartbeat("worker-1")
        clock.advance(20)

        assert control_plane.get_instance(active_instance).state == S.ACTIVE

    def test_heartbeat_from_other_worker_ignored(self, control_plane, active_instance, clock):
        control_plane.register_worker("worker-2", ["equities"])
        clock.advance(20)
        control_plane.worker_heartbeat("worker-2", active_instance)
        clock.advance(15)

        assert control_plane.get_instance(active_instance).state == S.PAUSED

    def test_superseded_holder_heartbeat_ignored(self, control_plane, active_instance, clock):
        """A heartbeat observed against an outdated holder does not refresh the new one."""
        stale = control_plane.instances.get(active_instance)
        control_plane.register_worker("worker-2", ["equities"])
        control_plane.instances.update(active_instance, lambda i: replace(i, assigned_worker="worker-2"))
        clock.advance(5)

        with patch.object(control_plane.instances, "find", return_value=stale):
            control_plane.worker_heartbeat("worker-1", active_instance)

        current = control_plane.instances.get(active_instance)
        assert current.assigned_worker == "worker-2"
        assert current.last_heartbeat == stale.last_heartbeat

    def test_sweep_pauses_then_auto_resumes(self, control_plane, active_instance, clock):
        clock.advance(31)
        report = control_plane.sweep()

        assert report.paused == [active_instance]
        assert report.resumed == []

        control_plane.register_worker("worker-2", ["equities"])
        report = control_plane.sweep()

        assert report.resumed == [active_instance]
        instance = control_plane.get_instance(active_instance)
        assert instance.state == S.DEPLOYING
        assert instance.pending_offer.worker_id == "worker-2"

    def test_no_auto_resume_without_worker(self, control_plane, active_instance, clock):
        clock.advance(31)
        control_plane.sweep()
        report = control_plane.sweep()

        assert report.resumed == []
        assert control_plane.get_instance(active_instance).state == S.PAUSED

    def test_auto_resume_can_be_disabled(self, clock, sample_spec):
        cp = ControlPlane.from_config_dir(
            overrides={"control_plane": {"auto_resume_on_heartbeat_loss": False}}, clock=clock
        )
        cp.register_worker("worker-1", ["equities"])
        instance_id = cp.submit_spec(sample_spec).instance_id
        cp.deploy(instance_id)
        cp.accept_assignment("worker-1", instance_id)

        clock.advance(31)
        cp.sweep()
        cp.register_worker("worker-2", ["equities"])

        assert cp.sweep().resumed == []
        cp.close()

    def test_deregistered_worker_pauses_instances(self, control_plane, active_instance):
        assert control_plane.deregister_worker("worker-1") == [active_instance]
        assert control_plane.get_instance(active_instance).state == S.PAUSED


class TestCollaboratorSignals:
    """Test health signals, pause requests and outcomes."""

    def test_critical_health_pauses(self, control_plane, active_instance, clock):
        control_plane.register_worker("worker-2", ["equities"])

        instance = control_plane.report_health(
            HealthSignal(active_instance, HealthSeverity.CRITICAL, score=0.1, reason="drawdown")
        )

        assert instance.state == S.PAUSED
        assert instance.pause_cause == E.HEALTH_CRITICAL
        assert instance.last_health.timestamp == clock.now()
        assert control_plane.sweep().resumed == []

    def test_warning_health_recorded_only(self, control_plane, active_instance):
        instance = control_plane.report_health(HealthSignal(active_instance, HealthSeverity.WARNING))

        assert instance.state == S.ACTIVE
        assert len(control_plane.health_log(active_instance)) == 1

    def test_pause_resume_retire(self, control_plane, active_instance):
        fingerprint = control_plane.get_instance(active_instance).plan_fingerprint

        assert control_plane.request_pause(active_instance, "manual review").state == S.PAUSED
        resumed = control_plane.resume(active_instance)
        assert resumed.state == S.DEPLOYING
        control_plane.accept_assignment("worker-1", active_instance)
        control_plane.request_pause(active_instance)

        retired = control_plane.retire(active_instance)

        assert retired.state == S.RETIRED
        assert control_plane.registry.refcount(fingerprint) == 0
        assert control_plane.sweep().collected == [fingerprint]
        with pytest.raises(StateTransitionError):
            control_plane.resume(active_instance)

    def test_retire_requires_pause(self, control_plane, active_instance):
        with pytest.raises(StateTransitionError):
            control_plane.retire(active_instance)

    def test_resubmission_after_retire_starts_fresh(self, control_plane, active_instance, make_spec):
        control_plane.request_pause(active_instance)
        control_plane.retire(active_instance)

        submission = control_plane.submit_spec(make_spec(version=2))

        assert submission.instance.state == S.VALIDATED
        assert [i.state for i in control_plane.instances.archived(active_instance)] == [S.RETIRED]

    def test_resubmission_after_concurrent_reset(self, control_plane, active_instance, make_spec):
        """A terminal state observed before another submitter reset the instance is not an error."""
        control_plane.request_pause(active_instance)
        control_plane.retire(active_instance)
        stale = control_plane.instances.get(active_instance)
        control_plane.instances.reset(active_instance)

        with patch.object(control_plane.instances, "get_or_create", return_value=stale):
            submission = control_plane.submit_spec(make_spec(version=2))

        assert submission.instance.state == S.VALIDATED
        assert len(control_plane.instances.archived(active_instance)) == 1

    def test_naive_outcome_timestamp_treated_as_utc(self, control_plane, active_instance, clock):
        fingerprint = control_plane.get_instance(active_instance).plan_fingerprint
        naive = clock.now().replace(tzinfo=None)

        record = control_plane.report_outcome(OutcomeEvent(active_instance, fingerprint, naive))

        assert not record.flagged
        assert control_plane.plan_at(active_instance, naive) == fingerprint

    def test_outcomes_flagged_against_active_plan(self, control_plane, active_instance, clock,
                                                  make_spec, sample_spec_dict):
        """Outcomes from a superseded plan are kept but flagged."""
        old = control_plane.get_instance(active_instance).plan_fingerprint
        activated_at = clock.now()
        clock.advance(5)
        update = control_plane.submit_spec(
            make_spec(version=2, parameters=_with_floor(sample_spec_dict, 25))
        )

        on_time = control_plane.report_outcome(OutcomeEvent(active_instance, old, activated_at))
        late = control_plane.report_outcome(OutcomeEvent(active_instance, old, clock.now()))

        assert update.instance.state == S.DEPLOYING
        assert not on_time.flagged
        assert late.flagged
        assert late.expected_fingerprint is None

        clock.advance(1)
        control_plane.accept_assignment("worker-1", active_instance)
        fresh = control_plane.report_outcome(OutcomeEvent(active_instance, update.fingerprint, clock.now()))

        assert not fresh.flagged
        assert [r.flagged for r in control_plane.outcomes(active_instance)] == [False, True, False]

    def test_plan_update_while_active_redeploys(self, control_plane, active_instance, make_spec,
                                                sample_spec_dict):
        old = control_plane.get_instance(active_instance).plan_fingerprint

        update = control_plane.submit_spec(
            make_spec(version=2, parameters=_with_floor(sample_spec_dict, 25))
        )

        instance = update.instance
        assert instance.state == S.DEPLOYING
        assert instance.plan_fingerprint == update.fingerprint
        assert instance.assigned_worker is None
        assert instance.pending_offer.worker_id == "worker-1"
        assert control_plane.registry.refcount(old) == 0


class TestGlobalHalt:
    """Test the operator halt."""

    def test_halt_pauses_and_blocks(self, control_plane, active_instance, make_spec):
        validated = control_plane.submit_spec(make_spec(strategy_id="other")).instance_id

        paused = control_plane.halt_all("exchange outage", operator="ops")

        assert paused == [active_instance]
        assert control_plane.halted
        assert control_plane.get_instance(active_instance).pause_cause == E.PAUSE_REQUESTED
        assert control_plane.deploy(validated) is None
        assert control_plane.resume(active_instance) is None
        assert control_plane.status()["halt_reason"] == "exchange outage"

    def test_clear_requires_operator_and_reason(self, control_plane):
        control_plane.halt_all("test")
        with pytest.raises(ValueError):
            control_plane.clear_halt("", "done")
        with pytest.raises(ValueError):
            control_plane.clear_halt("ops", "")
        assert control_plane.halted

    def test_clear_does_not_resume(self, control_plane, active_instance):
        control_plane.halt_all("test")
        control_plane.clear_halt("ops", "resolved")

        assert not control_plane.halted
        assert control_plane.sweep().resumed == []
        assert control_plane.get_instance(active_instance).state == S.PAUSED
        assert control_plane.resume(active_instance).state == S.DEPLOYING


class TestOperations:
    """Test status, configuration and persistence wiring."""

    def test_status(self, control_plane, active_instance, make_spec):
        control_plane.submit_spec(make_spec(strategy_id="other"))

        status = control_plane.status()

        assert status["instances"]["active"] == 1
        assert status["instances"]["validated"] == 1
        assert status["workers"] == 1
        assert status["stale_workers"] == 0
        assert status["halted"] is False
        assert status["registry"]["plans"] == 1

    def test_invalid_config_rejected(self, tmp_path):
        with pytest.raises(ValueError, match="max_deploy_attempts"):
            ControlPlane.from_config_dir(
                tmp_path, overrides={"control_plane": {"max_deploy_attempts": 0}}
            )

    def test_config_overrides_applied(self, tmp_path, clock):
        cp = ControlPlane.from_config_dir(
            tmp_path, overrides={"control_plane": {"staleness_threshold_seconds": 5}}, clock=clock
        )
        assert cp.params.staleness_threshold_seconds == 5
        assert cp.workers.staleness_threshold_seconds == 5
        cp.close()

    def test_transitions_persisted(self, tmp_path, clock, sample_spec):
        store = AuditStore(str(tmp_path / "audit.db"))
        cp = ControlPlane(clock=clock, audit_store=store)
        cp.register_worker("worker-1", ["equities"])
        submission = cp.submit_spec(sample_spec)
        cp.deploy(submission.instance_id)
        cp.accept_assignment("worker-1", submission.instance_id)
        cp.halt_all("drill", operator="ops")

        events = [t["event"] for t in store.get_transitions(submission.instance_id)]
        stats = store.get_stats()
        cp.close()

        assert events == ["compile_succeeded", "deploy_requested", "worker_accepted", "pause_requested"]
        assert stats["plans"] == 1
        assert stats["spec_versions"] == 1
        assert stats["compile_attempts"] == 1
        assert stats["halt_events"] == 1

    def test_registry_collision_fails_instance(self, clock, sample_spec):
        plan = compile_spec(sample_spec).plan
        registry = PlanRegistry(clock=clock)
        registry.put(replace(plan, risk_envelope=RiskEnvelope()))
        cp = ControlPlane(clock=clock, registry=registry)

        with pytest.raises(RegistryCorruptionError):
            cp.submit_spec(sample_spec)

        assert cp.get_instance("rsi-reversion").state == S.FAILED
        cp.close()
