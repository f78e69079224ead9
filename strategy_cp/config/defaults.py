"""Default configuration parameters for the compiler and control plane."""

from dataclasses import dataclass, field


def _default_features() -> dict[str, str]:
    # Runtime market features a rule may read, with their value type
    return {
        "current_price": "float",
        "rsi": "float",
        "price_to_sma20": "float",
        "price_to_sma50": "float",
        "volatility": "float",
        "volume_ratio": "float",
        "relative_strength": "float",
        "market_regime": "str",
    }


def _default_upper_caps() -> dict[str, float]:
    return {
        "risk_per_trade": 2.0,                       # Max % of capital at risk per trade
        "position": 5.0,                             # Max concurrent positions
        "leverage": 3.0,                             # Max leverage multiple
    }


def _default_lower_caps() -> dict[str, float]:
    return {
        "stop_loss": 0.25,                           # Tightest allowed stop loss %
    }


@dataclass(frozen=True)
class CompilerParams:
    """Static validation parameters."""
    version: str = "1.0.0"                           # Compiler version tag stamped on plans
    allowed_features: dict[str, str] = field(default_factory=_default_features)
    upper_caps: dict[str, float] = field(default_factory=_default_upper_caps)
    lower_caps: dict[str, float] = field(default_factory=_default_lower_caps)
    tight_bound_ratio: float = 0.05                  # Width below this share of upper bound warns
    leverage_warning: float = 2.0                    # Leverage above this warns
    position_warning: float = 4.0                    # Positions at or above this warn
    max_rules: int = 64


@dataclass(frozen=True)
class ControlPlaneParams:
    """Lifecycle coordination parameters."""
    staleness_threshold_seconds: float = 30.0        # Heartbeat silence before presumed failed
    deploy_timeout_seconds: float = 10.0             # Time a deploy attempt may wait for acceptance
    max_deploy_attempts: int = 5                     # Attempts before the instance fails
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 60.0
    auto_resume_on_heartbeat_loss: bool = True       # Redeploy instances paused by lost heartbeats


@dataclass(frozen=True)
class WorkerParams:
    """Worker fleet parameters."""
    max_load_per_worker: int = 4


@dataclass(frozen=True)
class LoggingParams:
    """Logging output parameters."""
    level: str = "INFO"
    format_json: bool = False


@dataclass(frozen=True)
class PersistenceParams:
    """Audit store parameters."""
    enabled: bool = False
    db_path: str = "strategy_cp.db"


@dataclass(frozen=True)
class DefaultConfig:
    """Complete default configuration."""
    compiler: CompilerParams
    control_plane: ControlPlaneParams
    workers: WorkerParams
    logging: LoggingParams
    persistence: PersistenceParams


def get_default_config() -> DefaultConfig:
    """Get the default configuration instance."""
    return DefaultConfig(
        compiler=CompilerParams(),
        control_plane=ControlPlaneParams(),
        workers=WorkerParams(),
        logging=LoggingParams(),
        persistence=PersistenceParams(),
    )
