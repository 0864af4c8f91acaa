"""Engine configuration with validation.

All bounds are checked at construction time; invalid settings raise
ConfigurationError before any task is reconciled.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field

from .backoff import READ_BACKOFF, WRITE_BACKOFF, BackoffPolicy


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_MAX_CONCURRENCY = 8
MIN_MAX_CONCURRENCY = 1
MAX_MAX_CONCURRENCY = 64

DEFAULT_CALL_TIMEOUT_SECONDS = 300
MIN_CALL_TIMEOUT_SECONDS = 1
MAX_CALL_TIMEOUT_SECONDS = 3600


@dataclass(frozen=True)
class EngineConfig:
    """Convergence engine configuration.

    Attributes:
        max_concurrency: Upper bound on reconciliations in flight.
        fail_fast: Stop starting new tasks after the first failure.
        call_timeout_seconds: Upper bound on a single adapter call.
        read_backoff: Backoff for find calls.
        write_backoff: Backoff for create and update calls.
    """

    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    fail_fast: bool = True
    call_timeout_seconds: int = DEFAULT_CALL_TIMEOUT_SECONDS
    read_backoff: BackoffPolicy = field(default=READ_BACKOFF)
    write_backoff: BackoffPolicy = field(default=WRITE_BACKOFF)

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not MIN_MAX_CONCURRENCY <= self.max_concurrency <= MAX_MAX_CONCURRENCY:
            errors.append(
                f"CONVERGE_MAX_CONCURRENCY must be between {MIN_MAX_CONCURRENCY} "
                f"and {MAX_MAX_CONCURRENCY}"
            )

        if not MIN_CALL_TIMEOUT_SECONDS <= self.call_timeout_seconds <= MAX_CALL_TIMEOUT_SECONDS:
            errors.append(
                f"CONVERGE_CALL_TIMEOUT must be between {MIN_CALL_TIMEOUT_SECONDS} "
                f"and {MAX_CALL_TIMEOUT_SECONDS} seconds"
            )

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from environment variables.

        Environment Variables:
            CONVERGE_MAX_CONCURRENCY: Reconciliations in flight (default: 8)
            CONVERGE_FAIL_FAST: If "false", keep scheduling after a failure (default: true)
            CONVERGE_CALL_TIMEOUT: Seconds per adapter call (default: 300)

        Backoff Variables (PREFIX is CONVERGE_READ_BACKOFF or CONVERGE_WRITE_BACKOFF):
            PREFIX_INITIAL: Seconds before the second attempt (default: 1)
            PREFIX_FACTOR: Delay multiplier (default: 1.5)
            PREFIX_JITTER: Random fraction of the delay (default: 0.1)
            PREFIX_STEPS: Total attempts (default: 4 for reads, 5 for writes)
        """
        errors: list[str] = []

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        def get_backoff(prefix: str, default: BackoffPolicy) -> BackoffPolicy:
            try:
                return BackoffPolicy(
                    initial_delay=get_float(f"{prefix}_INITIAL", default.initial_delay),
                    factor=get_float(f"{prefix}_FACTOR", default.factor),
                    jitter=get_float(f"{prefix}_JITTER", default.jitter),
                    max_attempts=get_int(f"{prefix}_STEPS", default.max_attempts),
                )
            except ValueError as e:
                errors.append(f"{prefix}: {e}")
                return default

        read_backoff = get_backoff("CONVERGE_READ_BACKOFF", READ_BACKOFF)
        write_backoff = get_backoff("CONVERGE_WRITE_BACKOFF", WRITE_BACKOFF)
        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

        return cls(
            max_concurrency=get_int("CONVERGE_MAX_CONCURRENCY", DEFAULT_MAX_CONCURRENCY),
            fail_fast=get_bool("CONVERGE_FAIL_FAST", True),
            call_timeout_seconds=get_int("CONVERGE_CALL_TIMEOUT", DEFAULT_CALL_TIMEOUT_SECONDS),
            read_backoff=read_backoff,
            write_backoff=write_backoff,
        )
