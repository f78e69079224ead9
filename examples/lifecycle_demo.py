#!/usr/bin/env python3
"""
Lifecycle Demo - Strategy Control Plane

Walks one strategy through its lifecycle on a manual clock:
- compile a spec and land in VALIDATED
- deploy to a worker and go ACTIVE on acceptance
- lose the worker's heartbeat and get PAUSED
- recover on a second worker, push a new spec version, retire

Run: python examples/lifecycle_demo.py
"""

import sys
from dataclasses import replace
from pathlib import Path

project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from strategy_cp.control_plane import ControlPlane
from strategy_cp.data.spec_parser import parse_spec_file
from strategy_cp.logging.config import configure_logging
from strategy_cp.state.models import HealthSeverity, HealthSignal
from strategy_cp.utils.time import ManualClock

SPEC_PATH = Path(__file__).parent / "specs" / "rsi_mean_reversion.yaml"


def show(cp: ControlPlane, instance_id: str, label: str) -> None:
    instance = cp.get_instance(instance_id)
    worker = instance.assigned_worker or "-"
    print(f"  {label:<38} state={instance.state.value:<10} worker={worker}")


def main():
    configure_logging(level="WARNING")
    clock = ManualClock()
    cp = ControlPlane(clock=clock)

    print("🚀 STRATEGY LIFECYCLE DEMO")
    print("=" * 60)

    spec = parse_spec_file(SPEC_PATH)
    submission = cp.submit_spec(spec)
    instance_id = submission.instance_id
    print(f"📄 Submitted {instance_id} v{spec.version}: fingerprint {submission.fingerprint[:16]}...")
    show(cp, instance_id, "after compile")

    cp.register_worker("worker-a", ["equities"])
    cp.register_worker("worker-b", ["equities", "margin"])

    offered = cp.deploy(instance_id)
    offer_worker = offered.pending_offer.worker_id
    print(f"📦 Offered to {offer_worker}")
    cp.accept_assignment(offer_worker, instance_id)
    show(cp, instance_id, "after acceptance")

    # The other worker keeps heartbeating, the holder goes silent
    other = "worker-b" if offer_worker == "worker-a" else "worker-a"
    for _ in range(4):
        clock.advance(10)
        cp.worker_heartbeat(other)
    show(cp, instance_id, "after holder went silent")

    report = cp.sweep()
    print(f"🔄 Sweep resumed: {report.resumed or '-'}")
    instance = cp.get_instance(instance_id)
    if instance.pending_offer is not None:
        cp.worker_heartbeat(instance.pending_offer.worker_id, instance_id)
    show(cp, instance_id, "after recovery")

    cp.report_health(HealthSignal(instance_id, HealthSeverity.CRITICAL, score=12.0, reason="drawdown"))
    show(cp, instance_id, "after critical health signal")

    parameters = tuple(
        replace(p, value=25.0) if p.name == "rsi_floor" else p for p in spec.parameters
    )
    update = cp.submit_spec(replace(spec, version=2, parameters=parameters))
    print(f"📄 Submitted v2: fingerprint {update.fingerprint[:16]}...")
    show(cp, instance_id, "after plan update while paused")

    cp.retire(instance_id)
    show(cp, instance_id, "after retire")

    print("\n📊 HISTORY")
    for record in cp.get_history(instance_id):
        print(f"  {record.prior_state.value:>10} --{record.event.value}--> {record.new_state.value}"
              f"  ({record.cause})")

    print(f"\n📈 Status: {cp.status()['instances']}")
    cp.close()


if __name__ == "__main__":
    main()
