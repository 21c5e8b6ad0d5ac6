"""Configuration management with validation.

Limits are enforced at configuration load time so that a misconfigured
orchestrator fails at start-up rather than in the middle of provisioning.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class DriftRemediationPolicy(str, Enum):
    """What the drift detector does after reporting drift."""

    NONE = "none"
    TAGS = "tags"
    CUSTOMIZATIONS = "customizations"


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_RECONCILE_INTERVAL_SECONDS = 60
MIN_RECONCILE_INTERVAL_SECONDS = 5
MAX_RECONCILE_INTERVAL_SECONDS = 3600

DEFAULT_DRIFT_INTERVAL_SECONDS = 3600
MIN_DRIFT_INTERVAL_SECONDS = 60
MAX_DRIFT_INTERVAL_SECONDS = 86400

DEFAULT_EXTERNAL_CALL_TIMEOUT_SECONDS = 900
DEFAULT_MAX_CONCURRENT_RECONCILES = 10
MAX_CONCURRENT_RECONCILES = 100
DEFAULT_MAX_REMEDIATIONS_PER_ACCOUNT = 3

# Retry defaults for transient collaborator failures
RETRY_BACKOFF_BASE_SECONDS = 5.0
RETRY_BACKOFF_MAX_SECONDS = 300.0
RETRY_MAX_TOTAL_SECONDS = 3600.0
RETRY_MAX_ATTEMPTS = 10
RETRY_JITTER_RATIO = 0.2

# Request files larger than this are rejected before parsing
MAX_REQUEST_FILE_SIZE_BYTES = 256 * 1024

VALID_REGION_PATTERN = r"^[a-z]{2}(-[a-z]+)+-\d$"


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with jitter, capped by attempts and total time.

    The delay before attempt ``n`` (1-based) is
    ``min(base * 2 ** (n - 1), max_delay)`` plus up to ``jitter_ratio`` of
    that value. Once ``max_total_seconds`` of waiting has been spent, or
    ``max_attempts`` failures have been seen, the caller gives up.
    """

    base_seconds: float = RETRY_BACKOFF_BASE_SECONDS
    max_delay_seconds: float = RETRY_BACKOFF_MAX_SECONDS
    max_total_seconds: float = RETRY_MAX_TOTAL_SECONDS
    max_attempts: int = RETRY_MAX_ATTEMPTS
    jitter_ratio: float = RETRY_JITTER_RATIO

    def __post_init__(self) -> None:
        errors: list[str] = []
        if self.base_seconds < 0:
            errors.append("retry base_seconds must not be negative")
        if self.max_delay_seconds < self.base_seconds:
            errors.append("retry max_delay_seconds must be >= base_seconds")
        if self.max_total_seconds < 0:
            errors.append("retry max_total_seconds must not be negative")
        if self.max_attempts < 1:
            errors.append("retry max_attempts must be at least 1")
        if not 0 <= self.jitter_ratio <= 1:
            errors.append("retry jitter_ratio must be between 0 and 1")
        if errors:
            raise ConfigurationError("Invalid retry policy:\n  - " + "\n  - ".join(errors))

    def backoff(self, attempt: int) -> float:
        """Return the base delay (without jitter) before retry ``attempt``."""
        return min(self.base_seconds * (2 ** (attempt - 1)), self.max_delay_seconds)


@dataclass(frozen=True)
class Config:
    """Orchestrator configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    # Paths
    requests_dir: Path = field(default_factory=lambda: Path("/requests"))
    state_file: Path | None = None

    # AWS context used by the boto3 collaborators
    region: str = "us-east-1"
    customization_state_machine_arn: str | None = None
    identity_store_id: str | None = None
    sso_instance_arn: str | None = None
    sso_permission_set_arn: str | None = None

    # Timing
    reconcile_interval_seconds: int = DEFAULT_RECONCILE_INTERVAL_SECONDS
    drift_interval_seconds: int = DEFAULT_DRIFT_INTERVAL_SECONDS
    external_call_timeout_seconds: int = DEFAULT_EXTERNAL_CALL_TIMEOUT_SECONDS

    # Behavior
    max_concurrent_reconciles: int = DEFAULT_MAX_CONCURRENT_RECONCILES
    drift_remediation: DriftRemediationPolicy = DriftRemediationPolicy.NONE
    max_remediations_per_account: int = DEFAULT_MAX_REMEDIATIONS_PER_ACCOUNT
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not re.match(VALID_REGION_PATTERN, self.region):
            errors.append(f"AWS_REGION must be a valid AWS region: {self.region}")

        if not (
            MIN_RECONCILE_INTERVAL_SECONDS
            <= self.reconcile_interval_seconds
            <= MAX_RECONCILE_INTERVAL_SECONDS
        ):
            errors.append(
                f"RECONCILE_INTERVAL must be between {MIN_RECONCILE_INTERVAL_SECONDS} "
                f"and {MAX_RECONCILE_INTERVAL_SECONDS} seconds"
            )

        if not (
            MIN_DRIFT_INTERVAL_SECONDS <= self.drift_interval_seconds <= MAX_DRIFT_INTERVAL_SECONDS
        ):
            errors.append(
                f"DRIFT_INTERVAL must be between {MIN_DRIFT_INTERVAL_SECONDS} "
                f"and {MAX_DRIFT_INTERVAL_SECONDS} seconds"
            )

        if self.external_call_timeout_seconds < 1:
            errors.append("EXTERNAL_CALL_TIMEOUT must be at least 1 second")

        if not 1 <= self.max_concurrent_reconciles <= MAX_CONCURRENT_RECONCILES:
            errors.append(
                f"MAX_CONCURRENT_RECONCILES must be between 1 and {MAX_CONCURRENT_RECONCILES}"
            )

        if self.max_remediations_per_account < 0:
            errors.append("MAX_REMEDIATIONS_PER_ACCOUNT must not be negative")

        if not self.requests_dir.exists():
            errors.append(f"Requests directory does not exist: {self.requests_dir}")

        if self.state_file is not None and not self.state_file.parent.exists():
            errors.append(f"State file directory does not exist: {self.state_file.parent}")

        # Identity Center assignment needs all three identifiers or none
        sso_values = (self.identity_store_id, self.sso_instance_arn, self.sso_permission_set_arn)
        if any(sso_values) and not all(sso_values):
            errors.append(
                "IDENTITY_STORE_ID, SSO_INSTANCE_ARN and SSO_PERMISSION_SET_ARN "
                "must be set together"
            )

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            REQUESTS_DIR: Directory of account request YAML files (default: /requests)
            STATE_FILE: JSON file used to persist requests and managed accounts
            AWS_REGION: Region for AWS API clients (default: us-east-1)
            CUSTOMIZATION_STATE_MACHINE_ARN: Step Functions machine running bundles
            IDENTITY_STORE_ID: Identity Center identity store for SSO users
            SSO_INSTANCE_ARN: Identity Center instance ARN
            SSO_PERMISSION_SET_ARN: Permission set assigned to the SSO user
            RECONCILE_INTERVAL: Seconds between reconcile sweeps (default: 60)
            DRIFT_INTERVAL: Seconds between drift checks per account (default: 3600)
            EXTERNAL_CALL_TIMEOUT: Timeout for a single external call (default: 900)
            MAX_CONCURRENT_RECONCILES: Requests driven in parallel (default: 10)
            DRIFT_REMEDIATION: none, tags or customizations (default: none)
            MAX_REMEDIATIONS_PER_ACCOUNT: Remediations per account per day (default: 3)
            RETRY_BASE_SECONDS: First backoff delay (default: 5)
            RETRY_MAX_SECONDS: Largest single backoff delay (default: 300)
            RETRY_MAX_TOTAL_SECONDS: Total time spent retrying one phase (default: 3600)
            RETRY_MAX_ATTEMPTS: Failed attempts before giving up (default: 10)
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

        def get_policy(value: str | None) -> DriftRemediationPolicy:
            if not value:
                return DriftRemediationPolicy.NONE
            try:
                return DriftRemediationPolicy(value.lower())
            except ValueError as e:
                valid = [p.value for p in DriftRemediationPolicy]
                raise ConfigurationError(
                    f"DRIFT_REMEDIATION must be one of {valid}: {value}"
                ) from e

        state_file = os.environ.get("STATE_FILE")

        return cls(
            requests_dir=Path(os.environ.get("REQUESTS_DIR", "/requests")),
            state_file=Path(state_file) if state_file else None,
            region=os.environ.get("AWS_REGION", "us-east-1"),
            customization_state_machine_arn=os.environ.get("CUSTOMIZATION_STATE_MACHINE_ARN"),
            identity_store_id=os.environ.get("IDENTITY_STORE_ID"),
            sso_instance_arn=os.environ.get("SSO_INSTANCE_ARN"),
            sso_permission_set_arn=os.environ.get("SSO_PERMISSION_SET_ARN"),
            reconcile_interval_seconds=get_int(
                "RECONCILE_INTERVAL", DEFAULT_RECONCILE_INTERVAL_SECONDS
            ),
            drift_interval_seconds=get_int("DRIFT_INTERVAL", DEFAULT_DRIFT_INTERVAL_SECONDS),
            external_call_timeout_seconds=get_int(
                "EXTERNAL_CALL_TIMEOUT", DEFAULT_EXTERNAL_CALL_TIMEOUT_SECONDS
            ),
            max_concurrent_reconciles=get_int(
                "MAX_CONCURRENT_RECONCILES", DEFAULT_MAX_CONCURRENT_RECONCILES
            ),
            drift_remediation=get_policy(os.environ.get("DRIFT_REMEDIATION")),
            max_remediations_per_account=get_int(
                "MAX_REMEDIATIONS_PER_ACCOUNT", DEFAULT_MAX_REMEDIATIONS_PER_ACCOUNT
            ),
            retry=RetryPolicy(
                base_seconds=get_float("RETRY_BASE_SECONDS", RETRY_BACKOFF_BASE_SECONDS),
                max_delay_seconds=get_float("RETRY_MAX_SECONDS", RETRY_BACKOFF_MAX_SECONDS),
                max_total_seconds=get_float("RETRY_MAX_TOTAL_SECONDS", RETRY_MAX_TOTAL_SECONDS),
                max_attempts=get_int("RETRY_MAX_ATTEMPTS", RETRY_MAX_ATTEMPTS),
            ),
        )
