"""
Configuration management (SSOT).

This module defines ALL configuration for receipt-recon.
All config keys are defined here; no other module should invent config keys.

Key invariants:
- The classifier/extractor endpoint is required; without it nothing can run
- Reconciliation tolerances are configuration, not constants in the matcher
- Environment variables override values from the YAML file
"""

import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path

import yaml

from .errors import ConfigurationError

DEFAULT_ACCEPTED_MIME_TYPES = ("application/pdf",)


@dataclass
class CapabilityConfig:
    """Classifier/extractor service configuration.

    - base_url: Service root; /classify and /extract are appended
    - auth_header: Optional "Bearer <token>" or "Header-Name: value"
    """

    base_url: str = ""
    auth_header: str | None = None
    # HTTP read timeout (seconds)
    timeout_seconds: int = 30


@dataclass
class PipelineConfig:
    """Stage pipeline settings."""

    # Parallel document workers for batch processing
    max_workers: int = 4
    # Hard bound on one classify/extract call, including the HTTP round trip
    capability_timeout_seconds: float = 60.0
    # How long a second request for an in-flight fingerprint waits (None = block)
    lock_timeout_seconds: float | None = None
    # Attachment types that become DocumentJobs
    accepted_mime_types: tuple[str, ...] = DEFAULT_ACCEPTED_MIME_TYPES


@dataclass
class ReconciliationConfig:
    """Reconciliation settings."""

    # Posting-date lag absorbed by the matcher (days)
    date_tolerance_days: int = 3
    # Absolute amount tolerance for rounding differences
    amount_epsilon: Decimal = Decimal("0.01")
    # Ranking preference on ties: "date" ranks exact dates first, "amount" exact amounts
    prefer: str = "date"


@dataclass
class StatementConfig:
    """Bank statement export settings."""

    delimiter: str = ","


@dataclass
class Config:
    """Application configuration (SSOT).

    All configuration is centralized here. No other module should define
    configuration keys or defaults.
    """

    capability: CapabilityConfig = field(default_factory=CapabilityConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    reconciliation: ReconciliationConfig = field(default_factory=ReconciliationConfig)
    statement: StatementConfig = field(default_factory=StatementConfig)
    state_db_path: Path = field(default_factory=lambda: Path("data/state.db"))

    def validate(self) -> list[str]:
        """Validate configuration completeness and consistency.

        Returns:
            List of validation errors (empty if valid)
        """
        errors: list[str] = []

        if not self.capability.base_url:
            errors.append("capability.base_url is required")
        if self.capability.timeout_seconds <= 0:
            errors.append("capability.timeout_seconds must be positive")

        if self.pipeline.max_workers < 1:
            errors.append("pipeline.max_workers must be >= 1")
        if self.pipeline.capability_timeout_seconds <= 0:
            errors.append("pipeline.capability_timeout_seconds must be positive")
        if self.pipeline.lock_timeout_seconds is not None and self.pipeline.lock_timeout_seconds < 0:
            errors.append("pipeline.lock_timeout_seconds must be >= 0 or null")
        if not self.pipeline.accepted_mime_types:
            errors.append("pipeline.accepted_mime_types must not be empty")

        if self.reconciliation.date_tolerance_days < 0:
            errors.append("reconciliation.date_tolerance_days must be >= 0")
        if self.reconciliation.amount_epsilon < 0:
            errors.append("reconciliation.amount_epsilon must be >= 0")
        if self.reconciliation.prefer not in ("date", "amount"):
            errors.append("reconciliation.prefer must be 'date' or 'amount'")

        if len(self.statement.delimiter) != 1:
            errors.append("statement.delimiter must be a single character")

        return errors

    def require_valid(self) -> None:
        """Raise ConfigurationError if validation fails."""
        errors = self.validate()
        if errors:
            raise ConfigurationError(errors)


def _to_decimal(value: object, key: str) -> Decimal:
    try:
        return Decimal(str(value))
    except InvalidOperation as e:
        raise ConfigurationError([f"{key} must be a decimal, got {value!r}"]) from e


def load_config(config_path: Path) -> Config:
    """
    Load configuration from YAML file.

    Environment variables can override config values:
    - RECON_CAPABILITY_URL
    - RECON_CAPABILITY_AUTH
    - RECON_CAPABILITY_TIMEOUT (request timeout in seconds)
    - RECON_MAX_WORKERS
    - RECON_DATE_TOLERANCE_DAYS
    - RECON_AMOUNT_EPSILON
    - RECON_STATE_DB
    """
    if config_path.exists():
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    else:
        data = {}

    # Capability config
    cap_data = data.get("capability", {})
    capability = CapabilityConfig(
        base_url=os.environ.get("RECON_CAPABILITY_URL", cap_data.get("base_url", "")),
        auth_header=os.environ.get("RECON_CAPABILITY_AUTH", cap_data.get("auth_header")),
        timeout_seconds=int(
            os.environ.get("RECON_CAPABILITY_TIMEOUT", cap_data.get("timeout_seconds", 30))
        ),
    )

    # Pipeline config
    pipe_data = data.get("pipeline", {})
    mime_types = pipe_data.get("accepted_mime_types") or list(DEFAULT_ACCEPTED_MIME_TYPES)
    pipeline = PipelineConfig(
        max_workers=int(os.environ.get("RECON_MAX_WORKERS", pipe_data.get("max_workers", 4))),
        capability_timeout_seconds=float(pipe_data.get("capability_timeout_seconds", 60.0)),
        lock_timeout_seconds=pipe_data.get("lock_timeout_seconds"),
        accepted_mime_types=tuple(m.lower() for m in mime_types),
    )

    # Reconciliation config
    recon_data = data.get("reconciliation", {})
    reconciliation = ReconciliationConfig(
        date_tolerance_days=int(
            os.environ.get(
                "RECON_DATE_TOLERANCE_DAYS", recon_data.get("date_tolerance_days", 3)
            )
        ),
        amount_epsilon=_to_decimal(
            os.environ.get("RECON_AMOUNT_EPSILON", recon_data.get("amount_epsilon", "0.01")),
            "reconciliation.amount_epsilon",
        ),
        prefer=recon_data.get("prefer", "date"),
    )

    statement_data = data.get("statement", {})
    statement = StatementConfig(delimiter=statement_data.get("delimiter", ","))

    # State DB
    state_db = os.environ.get("RECON_STATE_DB", data.get("state_db_path", "data/state.db"))

    return Config(
        capability=capability,
        pipeline=pipeline,
        reconciliation=reconciliation,
        statement=statement,
        state_db_path=Path(state_db),
    )


def create_default_config(config_path: Path) -> None:
    """Create a default configuration file."""
    default_config = """# receipt-recon configuration
#
# Environment variables (RECON_*) override the values below.

# Classifier/extractor service (required)
capability:
  base_url: "http://localhost:9000"        # POST /classify and /extract
  auth_header: null                         # "Bearer <token>" or "Header: value"
  timeout_seconds: 30

# Stage pipeline
pipeline:
  max_workers: 4                            # Documents processed in parallel
  capability_timeout_seconds: 60            # Hard bound per classify/extract call
  lock_timeout_seconds: null                # Wait for in-flight fingerprint (null = block)
  accepted_mime_types:
    - "application/pdf"

# Reconciliation tolerances
reconciliation:
  date_tolerance_days: 3                    # Posting-date lag
  amount_epsilon: "0.01"                    # Absolute amount tolerance
  prefer: "date"                            # Tie-break: "date" or "amount"

# Bank statement exports
statement:
  delimiter: ","

# State database path
state_db_path: "data/state.db"
"""

    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w") as f:
        f.write(default_config)
