"""Pytest configuration and shared fixtures."""

import copy
from datetime import datetime, timezone
from typing import Any, Callable, Dict

import pytest

from strategy_cp.control_plane import ControlPlane
from strategy_cp.data.spec_parser import parse_spec
from strategy_cp.models.spec import StrategySpec
from strategy_cp.utils.time import ManualClock

START = datetime(2024, 1, 2, 9, 30, 0, tzinfo=timezone.utc)


@pytest.fixture
def sample_spec_dict() -> Dict[str, Any]:
    """Raw RSI mean-reversion spec that compiles without diagnostics."""
    return {
        "strategy_id": "rsi-reversion",
        "version": 1,
        "author": "alice",
        "parameters": {
            "rsi_floor": {"type": "float", "value": 30},
            "rsi_exit": {"type": "float", "value": 55},
        },
        "rules": [
            {
                "id": "entry",
                "condition": {"op": "<", "left": {"feature": "rsi"}, "right": {"param": "rsi_floor"}},
                "action": {"kind": "enter_long", "arguments": {"size": 1}},
            },
            {
                "id": "exit",
                "condition": {"op": ">", "left": {"feature": "rsi"}, "right": {"param": "rsi_exit"}},
                "action": "exit",
            },
        ],
        "constraints": [
            {"kind": "risk_per_trade", "upper": 1.0},
            {"kind": "stop_loss", "lower": 0.5, "upper": 2.0},
        ],
        "requirements": ["Equities"],
    }


@pytest.fixture
def make_spec(sample_spec_dict) -> Callable[..., StrategySpec]:
    """Factory building specs from the sample with top-level overrides."""
    def _make(**overrides: Any) -> StrategySpec:
        data = copy.deepcopy(sample_spec_dict)
        data.update(overrides)
        return parse_spec(data)
    return _make


@pytest.fixture
def sample_spec(make_spec) -> StrategySpec:
    return make_spec()


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(START)


@pytest.fixture
def control_plane(clock):
    """Control plane on a manual clock with default configuration."""
    cp = ControlPlane(clock=clock)
    yield cp
    cp.close()


@pytest.fixture
def active_instance(control_plane, sample_spec):
    """Instance deployed and accepted by worker-1."""
    control_plane.register_worker("worker-1", ["equities"])
    submission = control_plane.submit_spec(sample_spec)
    control_plane.deploy(submission.instance_id)
    control_plane.accept_assignment("worker-1", submission.instance_id)
    return submission.instance_id
