"""Configuration validation utilities."""

from dataclasses import dataclass
from typing import Any

VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
VALID_FEATURE_TYPES = {"int", "float", "bool", "str"}


@dataclass(frozen=True)
class ValidationError:
    """Represents a configuration validation error."""
    field: str
    message: str
    value: Any


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class ConfigValidator:
    """Validates configuration parameters."""

    @staticmethod
    def validate_compiler_params(params: dict[str, Any]) -> list[ValidationError]:
        """Validate compiler parameters."""
        errors = []

        if "tight_bound_ratio" in params:
            value = params["tight_bound_ratio"]
            if not _is_number(value) or value < 0 or value >= 1:
                errors.append(ValidationError(
                    field="tight_bound_ratio",
                    message="Must be a number in [0, 1)",
                    value=value
                ))

        if "max_rules" in params:
            value = params["max_rules"]
            if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
                errors.append(ValidationError(
                    field="max_rules",
                    message="Must be a positive integer",
                    value=value
                ))

        if "allowed_features" in params:
            value = params["allowed_features"]
            if not isinstance(value, dict):
                errors.append(ValidationError(
                    field="allowed_features",
                    message="Must be a mapping of feature name to type",
                    value=value
                ))
            else:
                for name, feature_type in value.items():
                    if feature_type not in VALID_FEATURE_TYPES:
                        errors.append(ValidationError(
                            field=f"allowed_features.{name}",
                            message=f"Type must be one of {sorted(VALID_FEATURE_TYPES)}",
                            value=feature_type
                        ))

        for caps_field in ("upper_caps", "lower_caps"):
            caps = params.get(caps_field)
            if caps is None:
                continue
            if not isinstance(caps, dict):
                errors.append(ValidationError(
                    field=caps_field,
                    message="Must be a mapping of constraint kind to number",
                    value=caps
                ))
                continue
            for kind, cap in caps.items():
                if not _is_number(cap) or cap < 0:
                    errors.append(ValidationError(
                        field=f"{caps_field}.{kind}",
                        message="Must be a non-negative number",
                        value=cap
                    ))

        return errors

    @staticmethod
    def validate_control_plane_params(params: dict[str, Any]) -> list[ValidationError]:
        """Validate lifecycle coordination parameters."""
        errors = []

        for name in ("staleness_threshold_seconds", "deploy_timeout_seconds",
                     "backoff_base_seconds", "backoff_max_seconds"):
            if name in params:
                value = params[name]
                if not _is_number(value) or value <= 0:
                    errors.append(ValidationError(
                        field=name,
                        message="Must be a positive number",
                        value=value
                    ))

        if "max_deploy_attempts" in params:
            value = params["max_deploy_attempts"]
            if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
                errors.append(ValidationError(
                    field="max_deploy_attempts",
                    message="Must be a positive integer",
                    value=value
                ))

        base = params.get("backoff_base_seconds")
        ceiling = params.get("backoff_max_seconds")
        if _is_number(base) and _is_number(ceiling) and base > ceiling:
            errors.append(ValidationError(
                field="backoff_max_seconds",
                message="Must be greater than or equal to backoff_base_seconds",
                value=ceiling
            ))

        if "auto_resume_on_heartbeat_loss" in params:
            value = params["auto_resume_on_heartbeat_loss"]
            if not isinstance(value, bool):
                errors.append(ValidationError(
                    field="auto_resume_on_heartbeat_loss",
                    message="Must be a boolean",
                    value=value
                ))

        return errors

    @staticmethod
    def validate_worker_params(params: dict[str, Any]) -> list[ValidationError]:
        """Validate worker fleet parameters."""
        errors = []

        if "max_load_per_worker" in params:
            value = params["max_load_per_worker"]
            if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
                errors.append(ValidationError(
                    field="max_load_per_worker",
                    message="Must be a positive integer",
                    value=value
                ))

        return errors

    @staticmethod
    def validate_config(config: dict[str, Any]) -> list[ValidationError]:
        """Validate complete configuration."""
        errors = []

        if "compiler" in config:
            errors.extend(ConfigValidator.validate_compiler_params(config["compiler"]))

        if "control_plane" in config:
            errors.extend(ConfigValidator.validate_control_plane_params(config["control_plane"]))

        if "workers" in config:
            errors.extend(ConfigValidator.validate_worker_params(config["workers"]))

        level = config.get("logging", {}).get("level")
        if level is not None and str(level).upper() not in VALID_LOG_LEVELS:
            errors.append(ValidationError(
                field="logging.level",
                message=f"Must be one of {sorted(VALID_LOG_LEVELS)}",
                value=level
            ))

        return errors
