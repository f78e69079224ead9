"""
Centralized logging configuration for the strategy control plane.

This module provides standardized logging configuration using structlog
for all components. All logging throughout the system should use this
configuration to ensure consistent formatting and structured logging.
"""
import logging
import sys
from typing import Any, Optional

import structlog
from structlog.types import FilteringBoundLogger


def configure_logging(
    level: str = "INFO",
    format_json: bool = False,
    include_timestamp: bool = True,
    include_caller: bool = False,
    extra_processors: Optional[list] = None
) -> None:
    """
    Configure structlog for the entire application.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format_json: If True, output JSON format; otherwise human-readable
        include_timestamp: Include timestamp in log output
        include_caller: Include caller information (filename, line number)
        extra_processors: Additional structlog processors to include
    """
    # Convert string level to logging constant
    log_level = getattr(logging, level.upper())

    # Configure standard library logging
    logging.basicConfig(
        level=log_level,
        stream=sys.stdout,
        format="%(message)s"  # structlog will handle formatting
    )

    # Build processor chain
    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    # Add timestamp if requested
    if include_timestamp:
        processors.append(structlog.processors.TimeStamper(fmt="iso"))

    # Add caller information if requested
    if include_caller:
        processors.append(structlog.processors.CallsiteParameterAdder(
            parameters=[structlog.processors.CallsiteParameter.FILENAME,
                       structlog.processors.CallsiteParameter.LINENO]
        ))

    # Add any extra processors
    if extra_processors:
        processors.extend(extra_processors)

    # Add final formatting processor
    if format_json:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    # Configure structlog
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> FilteringBoundLogger:
    """
    Get a configured structlog logger instance.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Configured structlog logger instance
    """
    return structlog.get_logger(name)


def get_compiler_logger(name: str) -> FilteringBoundLogger:
    """
    Get a logger bound for compiler diagnostics.

    Compilation events carry the strategy id, spec version and fingerprint
    so every attempt can be traced back to its source spec.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Configured structlog logger for compilation events
    """
    logger = get_logger(name)

    # Add compiler-specific binding for context
    return logger.bind(
        subsystem="compiler",
        audit_trail=True
    )


def get_state_logger(name: str) -> FilteringBoundLogger:
    """
    Get a logger specifically configured for state transitions.

    This logger includes additional context processors specifically
    for instance lifecycle logging.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Configured structlog logger for state transitions
    """
    logger = get_logger(name)

    # Add state-specific binding for context
    return logger.bind(
        subsystem="state_machine",
        audit_trail=True
    )


def log_compilation(
    logger: FilteringBoundLogger,
    strategy_id: str,
    version: int,
    fingerprint: Optional[str],
    errors: int,
    warnings: int,
    context: Optional[dict[str, Any]] = None
) -> None:
    """
    Log a compilation outcome with standardized format.

    Args:
        logger: Structlog logger instance
        strategy_id: Strategy being compiled
        version: Spec version
        fingerprint: Plan fingerprint, None when compilation failed
        errors: Number of error diagnostics
        warnings: Number of warning diagnostics
        context: Additional context data
    """
    # Use the logger's bind method to avoid conflicts
    bound_logger = logger.bind(
        strategy_id=strategy_id,
        spec_version=version,
        fingerprint=fingerprint,
        error_count=errors,
        warning_count=warnings,
        compile_result="PASS" if fingerprint else "FAIL",
    )

    if context:
        bound_logger = bound_logger.bind(context=context)

    if fingerprint:
        bound_logger.info("Compilation succeeded")
    else:
        bound_logger.warning("Compilation failed")


def log_state_transition(
    logger: FilteringBoundLogger,
    instance_id: str,
    from_state: str,
    to_state: str,
    trigger: str,
    context: Optional[dict[str, Any]] = None
) -> None:
    """
    Log a state transition with standardized format.

    Args:
        logger: Structlog logger instance
        instance_id: ID of the strategy instance transitioning
        from_state: Current state
        to_state: Target state
        trigger: Event that triggered the transition
        context: Additional context data
    """
    # Use the logger's bind method to avoid conflicts
    bound_logger = logger.bind(
        instance_id=instance_id,
        from_state=from_state,
        to_state=to_state,
        trigger=trigger,
    )

    if context:
        bound_logger = bound_logger.bind(context=context)

    bound_logger.info("State transition")
