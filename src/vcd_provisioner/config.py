"""Configuration management with validation.

All limits are enforced at configuration load time so a misconfigured
provisioner fails before it issues a single remote call.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_OPERATION_TIMEOUT_SECONDS = 600
MIN_OPERATION_TIMEOUT_SECONDS = 10
MAX_OPERATION_TIMEOUT_SECONDS = 7200

DEFAULT_RETRY_BACKOFF_BASE_SECONDS = 3.0
DEFAULT_RETRY_BACKOFF_MAX_SECONDS = 30.0
MAX_RETRY_BACKOFF_BASE_SECONDS = 60.0

DEFAULT_TASK_POLL_INTERVAL_SECONDS = 2.0

DEFAULT_RECONCILE_INTERVAL_SECONDS = 300
MIN_RECONCILE_INTERVAL_SECONDS = 10
MAX_RECONCILE_INTERVAL_SECONDS = 3600

DEFAULT_MAX_CONCURRENT_RECONCILES = 4
MAX_CONCURRENT_RECONCILES = 64

DEFAULT_IMPORT_SEPARATOR = "."

# Spec files larger than this are rejected before parsing
MAX_SPEC_FILE_SIZE_BYTES = 1024 * 1024
MAX_STATE_FILE_SIZE_BYTES = 16 * 1024 * 1024


@dataclass(frozen=True)
class Config:
    """Provisioner configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    # Timeout budget shared by task waits and retry loops
    operation_timeout_seconds: int = DEFAULT_OPERATION_TIMEOUT_SECONDS

    # Retry backoff
    retry_backoff_base_seconds: float = DEFAULT_RETRY_BACKOFF_BASE_SECONDS
    retry_backoff_max_seconds: float = DEFAULT_RETRY_BACKOFF_MAX_SECONDS
    task_poll_interval_seconds: float = DEFAULT_TASK_POLL_INTERVAL_SECONDS

    # Import path syntax
    import_separator: str = DEFAULT_IMPORT_SEPARATOR

    # Reconciliation loop
    reconcile_interval_seconds: int = DEFAULT_RECONCILE_INTERVAL_SECONDS
    max_concurrent_reconciles: int = DEFAULT_MAX_CONCURRENT_RECONCILES

    # Paths
    specs_dir: Path = field(default_factory=lambda: Path("./specs"))
    state_file: Path | None = None

    # Behavior
    dry_run: bool = False

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not (
            MIN_OPERATION_TIMEOUT_SECONDS
            <= self.operation_timeout_seconds
            <= MAX_OPERATION_TIMEOUT_SECONDS
        ):
            errors.append(
                f"VCD_OPERATION_TIMEOUT must be between {MIN_OPERATION_TIMEOUT_SECONDS} "
                f"and {MAX_OPERATION_TIMEOUT_SECONDS} seconds"
            )

        if not 0 <= self.retry_backoff_base_seconds <= MAX_RETRY_BACKOFF_BASE_SECONDS:
            errors.append(
                f"VCD_RETRY_BACKOFF_BASE must be between 0 and "
                f"{MAX_RETRY_BACKOFF_BASE_SECONDS} seconds"
            )

        if self.retry_backoff_max_seconds < self.retry_backoff_base_seconds:
            errors.append("VCD_RETRY_BACKOFF_MAX must not be lower than VCD_RETRY_BACKOFF_BASE")

        if self.task_poll_interval_seconds <= 0:
            errors.append("VCD_TASK_POLL_INTERVAL must be positive")

        if not self.import_separator:
            errors.append("VCD_IMPORT_SEPARATOR must not be empty")
        elif any(ch.isspace() for ch in self.import_separator):
            errors.append("VCD_IMPORT_SEPARATOR must not contain whitespace")

        if not (
            MIN_RECONCILE_INTERVAL_SECONDS
            <= self.reconcile_interval_seconds
            <= MAX_RECONCILE_INTERVAL_SECONDS
        ):
            errors.append(
                f"VCD_RECONCILE_INTERVAL must be between {MIN_RECONCILE_INTERVAL_SECONDS} "
                f"and {MAX_RECONCILE_INTERVAL_SECONDS} seconds"
            )

        if not 1 <= self.max_concurrent_reconciles <= MAX_CONCURRENT_RECONCILES:
            errors.append(
                f"VCD_MAX_CONCURRENT_RECONCILES must be between 1 and {MAX_CONCURRENT_RECONCILES}"
            )

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            VCD_OPERATION_TIMEOUT: Timeout budget for remote calls in seconds (default: 600)
            VCD_RETRY_BACKOFF_BASE: First retry delay in seconds (default: 3)
            VCD_RETRY_BACKOFF_MAX: Maximum retry delay in seconds (default: 30)
            VCD_TASK_POLL_INTERVAL: Seconds between task status polls (default: 2)
            VCD_IMPORT_SEPARATOR: Separator used by import paths (default: ".")
            VCD_RECONCILE_INTERVAL: Seconds between reconciliation loops (default: 300)
            VCD_MAX_CONCURRENT_RECONCILES: Parallel instance reconciliations (default: 4)
            VCD_SPECS_DIR: Path to YAML specs (default: ./specs)
            VCD_STATE_FILE: Path to the YAML state file (default: in-memory state)
            VCD_DRY_RUN: If "true", plans are logged but never executed (default: false)
        """

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

        state_file = os.environ.get("VCD_STATE_FILE")

        return cls(
            operation_timeout_seconds=get_int(
                "VCD_OPERATION_TIMEOUT", DEFAULT_OPERATION_TIMEOUT_SECONDS
            ),
            retry_backoff_base_seconds=get_float(
                "VCD_RETRY_BACKOFF_BASE", DEFAULT_RETRY_BACKOFF_BASE_SECONDS
            ),
            retry_backoff_max_seconds=get_float(
                "VCD_RETRY_BACKOFF_MAX", DEFAULT_RETRY_BACKOFF_MAX_SECONDS
            ),
            task_poll_interval_seconds=get_float(
                "VCD_TASK_POLL_INTERVAL", DEFAULT_TASK_POLL_INTERVAL_SECONDS
            ),
            import_separator=os.environ.get("VCD_IMPORT_SEPARATOR", DEFAULT_IMPORT_SEPARATOR),
            reconcile_interval_seconds=get_int(
                "VCD_RECONCILE_INTERVAL", DEFAULT_RECONCILE_INTERVAL_SECONDS
            ),
            max_concurrent_reconciles=get_int(
                "VCD_MAX_CONCURRENT_RECONCILES", DEFAULT_MAX_CONCURRENT_RECONCILES
            ),
            specs_dir=Path(os.environ.get("VCD_SPECS_DIR", "./specs")),
            state_file=Path(state_file) if state_file else None,
            dry_run=get_bool("VCD_DRY_RUN", False),
        )
