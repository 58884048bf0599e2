"""Configuration management with validation.

All limits are enforced at configuration load time so that the engine
never starts with settings that would hammer the provider API or retry
forever.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class DriftPolicy(str, Enum):
    """How last-applied state is trusted between cycles."""

    TRUST = "trust"  # Last-written state is the truth
    REFRESH = "refresh"  # Read live provider state every cycle


class ProviderName(str, Enum):
    """Supported provider backends."""

    AZURE = "azure"
    MEMORY = "memory"


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_RECONCILE_INTERVAL_SECONDS = 300
MIN_RECONCILE_INTERVAL_SECONDS = 10
MAX_RECONCILE_INTERVAL_SECONDS = 3600

DEFAULT_PARTIAL_RETRY_INTERVAL_SECONDS = 60

DEFAULT_MAX_PARALLELISM = 4
MAX_PARALLELISM_LIMIT = 32

DEFAULT_MAX_ATTEMPTS = 3
MAX_ATTEMPTS_LIMIT = 10
RETRY_BACKOFF_BASE_SECONDS = 5.0
RETRY_BACKOFF_MAX_SECONDS = 300.0

DEFAULT_OPERATION_TIMEOUT_SECONDS = 1800
DEFAULT_LEASE_TTL_SECONDS = 3600

# Size limits for the desired-state document
MAX_DOCUMENT_FILE_SIZE_BYTES = 1024 * 1024  # 1MB
MAX_RESOURCES_PER_DOCUMENT = 500

# Input validation patterns
VALID_LOGICAL_NAME_PATTERN = r"^[a-z][a-z0-9_-]{0,62}$"
VALID_SUBSCRIPTION_ID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"


@dataclass(frozen=True)
class RetryConfig:
    """Retry policy for transient provider failures."""

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff_base_seconds: float = RETRY_BACKOFF_BASE_SECONDS
    backoff_max_seconds: float = RETRY_BACKOFF_MAX_SECONDS

    def delay_for(self, attempt: int) -> float:
        """Backoff (without jitter) after the given failed attempt (1-based)."""
        backoff = self.backoff_base_seconds * (2 ** (attempt - 1))
        return min(backoff, self.backoff_max_seconds)


@dataclass(frozen=True)
class Config:
    """Engine configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-cycle.
    """

    desired_state_path: Path
    state_dir: Path = field(default_factory=lambda: Path("/var/lib/converge"))

    provider: ProviderName = ProviderName.AZURE
    subscription_id: str | None = None
    client_id: str | None = None

    # Timing
    reconcile_interval_seconds: int = DEFAULT_RECONCILE_INTERVAL_SECONDS
    partial_retry_interval_seconds: int = DEFAULT_PARTIAL_RETRY_INTERVAL_SECONDS
    operation_timeout_seconds: int = DEFAULT_OPERATION_TIMEOUT_SECONDS
    lease_ttl_seconds: int = DEFAULT_LEASE_TTL_SECONDS

    # Execution
    max_parallelism: int = DEFAULT_MAX_PARALLELISM
    retry: RetryConfig = field(default_factory=RetryConfig)
    drift_policy: DriftPolicy = DriftPolicy.TRUST

    # Behavior
    dry_run: bool = False
    enable_audit_logging: bool = True
    enable_default_normalization_rules: bool = True

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        import re

        errors: list[str] = []

        if self.desired_state_path == Path(""):
            errors.append("DESIRED_STATE_PATH is required")

        if self.provider == ProviderName.AZURE:
            if not self.subscription_id:
                errors.append("AZURE_SUBSCRIPTION_ID is required when PROVIDER is azure")
            elif not re.match(VALID_SUBSCRIPTION_ID_PATTERN, self.subscription_id.lower()):
                errors.append(
                    f"AZURE_SUBSCRIPTION_ID must be a valid GUID: {self.subscription_id}"
                )

        # Timing validation
        if not (
            MIN_RECONCILE_INTERVAL_SECONDS
            <= self.reconcile_interval_seconds
            <= MAX_RECONCILE_INTERVAL_SECONDS
        ):
            errors.append(
                f"RECONCILE_INTERVAL must be between {MIN_RECONCILE_INTERVAL_SECONDS} "
                f"and {MAX_RECONCILE_INTERVAL_SECONDS} seconds"
            )

        if self.partial_retry_interval_seconds < 1:
            errors.append("PARTIAL_RETRY_INTERVAL must be at least 1 second")
        elif self.partial_retry_interval_seconds >= self.reconcile_interval_seconds:
            errors.append("PARTIAL_RETRY_INTERVAL must be shorter than RECONCILE_INTERVAL")

        if self.operation_timeout_seconds < 1:
            errors.append("OPERATION_TIMEOUT must be at least 1 second")

        if self.lease_ttl_seconds < 1:
            errors.append("LEASE_TTL must be at least 1 second")

        # Execution limits
        if not (1 <= self.max_parallelism <= MAX_PARALLELISM_LIMIT):
            errors.append(f"MAX_PARALLELISM must be between 1 and {MAX_PARALLELISM_LIMIT}")

        if not (1 <= self.retry.max_attempts <= MAX_ATTEMPTS_LIMIT):
            errors.append(f"MAX_ATTEMPTS must be between 1 and {MAX_ATTEMPTS_LIMIT}")

        if self.retry.backoff_base_seconds < 0:
            errors.append("RETRY_BACKOFF_BASE cannot be negative")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            DESIRED_STATE_PATH: Path to the resolved desired-state document
            STATE_DIR: Directory holding persisted state (default: /var/lib/converge)
            PROVIDER: azure or memory (default: azure)
            AZURE_SUBSCRIPTION_ID: Target subscription (required for azure)
            AZURE_CLIENT_ID: User-assigned managed identity client id (optional)
            RECONCILE_INTERVAL: Seconds between cycles (default: 300)
            PARTIAL_RETRY_INTERVAL: Seconds before retrying a partial cycle (default: 60)
            OPERATION_TIMEOUT: Timeout per provider operation (default: 1800)
            LEASE_TTL: Seconds after which a held lease is considered stale (default: 3600)
            MAX_PARALLELISM: Concurrent provider operations per stage (default: 4)
            MAX_ATTEMPTS: Attempts per operation for transient errors (default: 3)
            RETRY_BACKOFF_BASE: Base backoff in seconds (default: 5)
            DRIFT_POLICY: trust or refresh (default: trust)
            DRY_RUN: If "true", plan without applying (default: false)
            ENABLE_AUDIT_LOGGING: Emit per-cycle provenance records (default: true)
            ENABLE_DEFAULT_NORMALIZATION_RULES: Built-in value normalization rules
                for field comparison (default: true)
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

        def get_enum(key: str, enum_cls: type[Enum], default: Enum) -> Enum:
            value = os.environ.get(key)
            if not value:
                return default
            try:
                return enum_cls(value.lower())
            except ValueError as e:
                valid = [member.value for member in enum_cls]
                raise ConfigurationError(f"{key} must be one of {valid}: {value}") from e

        return cls(
            desired_state_path=Path(os.environ.get("DESIRED_STATE_PATH", "")),
            state_dir=Path(os.environ.get("STATE_DIR", "/var/lib/converge")),
            provider=get_enum("PROVIDER", ProviderName, ProviderName.AZURE),  # type: ignore[arg-type]
            subscription_id=os.environ.get("AZURE_SUBSCRIPTION_ID"),
            client_id=os.environ.get("AZURE_CLIENT_ID"),
            reconcile_interval_seconds=get_int(
                "RECONCILE_INTERVAL", DEFAULT_RECONCILE_INTERVAL_SECONDS
            ),
            partial_retry_interval_seconds=get_int(
                "PARTIAL_RETRY_INTERVAL", DEFAULT_PARTIAL_RETRY_INTERVAL_SECONDS
            ),
            operation_timeout_seconds=get_int(
                "OPERATION_TIMEOUT", DEFAULT_OPERATION_TIMEOUT_SECONDS
            ),
            lease_ttl_seconds=get_int("LEASE_TTL", DEFAULT_LEASE_TTL_SECONDS),
            max_parallelism=get_int("MAX_PARALLELISM", DEFAULT_MAX_PARALLELISM),
            retry=RetryConfig(
                max_attempts=get_int("MAX_ATTEMPTS", DEFAULT_MAX_ATTEMPTS),
                backoff_base_seconds=get_float("RETRY_BACKOFF_BASE", RETRY_BACKOFF_BASE_SECONDS),
            ),
            drift_policy=get_enum("DRIFT_POLICY", DriftPolicy, DriftPolicy.TRUST),  # type: ignore[arg-type]
            dry_run=get_bool("DRY_RUN", False),
            enable_audit_logging=get_bool("ENABLE_AUDIT_LOGGING", True),
            enable_default_normalization_rules=get_bool(
                "ENABLE_DEFAULT_NORMALIZATION_RULES", True
            ),
        )
