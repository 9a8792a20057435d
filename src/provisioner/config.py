"""Configuration management with validation.

All timing knobs of the reconciliation engine (LRO polling, soft-delete
convergence, lock acquisition, per-operation deadlines) live here so that
no waiter or orchestrator hardcodes them.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path

from .errors import ConfigurationError

# Per-operation deadlines (seconds)
DEFAULT_CREATE_TIMEOUT_SECONDS = 30 * 60
DEFAULT_READ_TIMEOUT_SECONDS = 5 * 60
DEFAULT_UPDATE_TIMEOUT_SECONDS = 30 * 60
DEFAULT_DELETE_TIMEOUT_SECONDS = 30 * 60

# Long-running operation polling
DEFAULT_LRO_POLL_INTERVAL_SECONDS = 10.0
DEFAULT_LRO_TRANSPORT_RETRY_BUDGET = 3

# Soft-delete convergence. The count guards against eventually-consistent
# reads; it was chosen empirically and is not backed by a documented SLA.
DEFAULT_SOFT_DELETE_POLL_INTERVAL_SECONDS = 5.0
DEFAULT_SOFT_DELETE_CONSECUTIVE_OBSERVATIONS = 3

# Named lock acquisition (0 disables the timeout)
DEFAULT_LOCK_TIMEOUT_SECONDS = 0.0

# Transient error retry (409/429/5xx)
DEFAULT_TRANSIENT_RETRY_ATTEMPTS = 3
DEFAULT_TRANSIENT_RETRY_BACKOFF_SECONDS = 5.0

MAX_OPERATION_TIMEOUT_SECONDS = 24 * 60 * 60

VALID_SUBSCRIPTION_ID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
VALID_LOCATION_PATTERN = r"^[a-z]{2,}[a-z0-9]*$"
VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True)
class TimeoutsConfig:
    """Deadlines for each lifecycle operation."""

    create_seconds: float = DEFAULT_CREATE_TIMEOUT_SECONDS
    read_seconds: float = DEFAULT_READ_TIMEOUT_SECONDS
    update_seconds: float = DEFAULT_UPDATE_TIMEOUT_SECONDS
    delete_seconds: float = DEFAULT_DELETE_TIMEOUT_SECONDS


@dataclass(frozen=True)
class EngineConfig:
    """Engine configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-apply.
    """

    subscription_id: str
    location: str | None = None

    # Azure Stack Hub Resource Manager endpoint; None targets public Azure
    arm_endpoint: str | None = None
    managed_identity_client_id: str | None = None

    state_file: Path = field(default_factory=lambda: Path("provisioner.state.json"))

    timeouts: TimeoutsConfig = field(default_factory=TimeoutsConfig)

    lro_poll_interval_seconds: float = DEFAULT_LRO_POLL_INTERVAL_SECONDS
    lro_transport_retry_budget: int = DEFAULT_LRO_TRANSPORT_RETRY_BUDGET

    soft_delete_poll_interval_seconds: float = DEFAULT_SOFT_DELETE_POLL_INTERVAL_SECONDS
    soft_delete_consecutive_observations: int = DEFAULT_SOFT_DELETE_CONSECUTIVE_OBSERVATIONS
    purge_soft_delete_on_destroy: bool = True

    lock_timeout_seconds: float = DEFAULT_LOCK_TIMEOUT_SECONDS

    transient_retry_attempts: int = DEFAULT_TRANSIENT_RETRY_ATTEMPTS
    transient_retry_backoff_seconds: float = DEFAULT_TRANSIENT_RETRY_BACKOFF_SECONDS

    log_level: str = "INFO"

    def __post_init__(self) -> None:
        """Validate configuration after initialization (fail-fast)."""
        errors: list[str] = []

        if not self.subscription_id:
            errors.append("AZURE_SUBSCRIPTION_ID is required")
        elif not re.match(VALID_SUBSCRIPTION_ID_PATTERN, self.subscription_id.lower()):
            errors.append(f"AZURE_SUBSCRIPTION_ID must be a valid GUID: {self.subscription_id}")

        if self.arm_endpoint and not self.arm_endpoint.lower().startswith("https://"):
            errors.append(f"AZURE_RESOURCE_MANAGER_URL must be an https URL: {self.arm_endpoint}")

        if self.location and not re.match(VALID_LOCATION_PATTERN, self.location.lower()):
            errors.append(f"AZURE_LOCATION must be a valid Azure region: {self.location}")

        for name, value in (
            ("CREATE_TIMEOUT", self.timeouts.create_seconds),
            ("READ_TIMEOUT", self.timeouts.read_seconds),
            ("UPDATE_TIMEOUT", self.timeouts.update_seconds),
            ("DELETE_TIMEOUT", self.timeouts.delete_seconds),
        ):
            if not (0 < value <= MAX_OPERATION_TIMEOUT_SECONDS):
                errors.append(
                    f"{name} must be positive and at most {MAX_OPERATION_TIMEOUT_SECONDS} seconds"
                )

        if self.lro_poll_interval_seconds < 0:
            errors.append("LRO_POLL_INTERVAL must not be negative")
        if self.lro_transport_retry_budget < 0:
            errors.append("LRO_TRANSPORT_RETRY_BUDGET must not be negative")

        if self.soft_delete_poll_interval_seconds < 0:
            errors.append("SOFT_DELETE_POLL_INTERVAL must not be negative")
        if self.soft_delete_consecutive_observations < 1:
            errors.append("SOFT_DELETE_CONSECUTIVE_OBSERVATIONS must be at least 1")

        if self.lock_timeout_seconds < 0:
            errors.append("LOCK_TIMEOUT must not be negative")

        if self.transient_retry_attempts < 1:
            errors.append("TRANSIENT_RETRY_ATTEMPTS must be at least 1")
        if self.transient_retry_backoff_seconds < 0:
            errors.append("TRANSIENT_RETRY_BACKOFF must not be negative")

        if self.log_level.upper() not in VALID_LOG_LEVELS:
            errors.append(f"PROVISIONER_LOG_LEVEL must be one of {list(VALID_LOG_LEVELS)}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from environment variables.

        Environment Variables:
            AZURE_SUBSCRIPTION_ID: Target subscription (required)
            AZURE_LOCATION: Default location for created resources
            AZURE_RESOURCE_MANAGER_URL: Resource Manager endpoint of the Azure Stack stamp
            AZURE_CLIENT_ID: Client ID of a user-assigned managed identity
            PROVISIONER_STATE_FILE: Path of the JSON state file
            PROVISIONER_LOG_LEVEL: Root log level (default: INFO)
            CREATE_TIMEOUT / READ_TIMEOUT / UPDATE_TIMEOUT / DELETE_TIMEOUT:
                Per-operation deadlines in seconds (default: 1800/300/1800/1800)
            LRO_POLL_INTERVAL: Seconds between LRO polls (default: 10)
            LRO_TRANSPORT_RETRY_BUDGET: Consecutive 4xx/5xx polls tolerated (default: 3)
            SOFT_DELETE_POLL_INTERVAL: Seconds between soft-delete polls (default: 5)
            SOFT_DELETE_CONSECUTIVE_OBSERVATIONS: Not-found observations required (default: 3)
            PURGE_SOFT_DELETE_ON_DESTROY: Purge Key Vault items on destroy (default: true)
            LOCK_TIMEOUT: Seconds to wait for a named lock, 0 = forever (default: 0)
            TRANSIENT_RETRY_ATTEMPTS: Attempts for 409/429/5xx responses (default: 3)
            TRANSIENT_RETRY_BACKOFF: Base backoff in seconds (default: 5)
        """

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        return cls(
            subscription_id=os.environ.get("AZURE_SUBSCRIPTION_ID", ""),
            location=os.environ.get("AZURE_LOCATION") or None,
            arm_endpoint=os.environ.get("AZURE_RESOURCE_MANAGER_URL") or None,
            managed_identity_client_id=os.environ.get("AZURE_CLIENT_ID") or None,
            state_file=Path(os.environ.get("PROVISIONER_STATE_FILE", "provisioner.state.json")),
            timeouts=TimeoutsConfig(
                create_seconds=get_float("CREATE_TIMEOUT", DEFAULT_CREATE_TIMEOUT_SECONDS),
                read_seconds=get_float("READ_TIMEOUT", DEFAULT_READ_TIMEOUT_SECONDS),
                update_seconds=get_float("UPDATE_TIMEOUT", DEFAULT_UPDATE_TIMEOUT_SECONDS),
                delete_seconds=get_float("DELETE_TIMEOUT", DEFAULT_DELETE_TIMEOUT_SECONDS),
            ),
            lro_poll_interval_seconds=get_float(
                "LRO_POLL_INTERVAL", DEFAULT_LRO_POLL_INTERVAL_SECONDS
            ),
            lro_transport_retry_budget=get_int(
                "LRO_TRANSPORT_RETRY_BUDGET", DEFAULT_LRO_TRANSPORT_RETRY_BUDGET
            ),
            soft_delete_poll_interval_seconds=get_float(
                "SOFT_DELETE_POLL_INTERVAL", DEFAULT_SOFT_DELETE_POLL_INTERVAL_SECONDS
            ),
            soft_delete_consecutive_observations=get_int(
                "SOFT_DELETE_CONSECUTIVE_OBSERVATIONS",
                DEFAULT_SOFT_DELETE_CONSECUTIVE_OBSERVATIONS,
            ),
            purge_soft_delete_on_destroy=get_bool("PURGE_SOFT_DELETE_ON_DESTROY", True),
            lock_timeout_seconds=get_float("LOCK_TIMEOUT", DEFAULT_LOCK_TIMEOUT_SECONDS),
            transient_retry_attempts=get_int(
                "TRANSIENT_RETRY_ATTEMPTS", DEFAULT_TRANSIENT_RETRY_ATTEMPTS
            ),
            transient_retry_backoff_seconds=get_float(
                "TRANSIENT_RETRY_BACKOFF", DEFAULT_TRANSIENT_RETRY_BACKOFF_SECONDS
            ),
            log_level=os.environ.get("PROVISIONER_LOG_LEVEL", "INFO").upper(),
        )
