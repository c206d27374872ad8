"""
Configuration management (SSOT).

This module defines ALL configuration for TollBridge.
All config keys are defined here; no other module should invent config keys.

Key invariants:
- The uniqueness constraint on import_hash in the state DB is the only
  source of truth for "already imported"; nothing here can turn it off.
- Reconciliation groups by plate + date + VAT + country; there is no looser
  grouping mode.
"""

import os
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path

import yaml


class ConfigValidationError(Exception):
    """Raised when configuration validation fails."""

    pass


@dataclass
class ImportConfig:
    """Batch import settings."""

    # Rows per multi-row INSERT (payload size, not parallelism)
    chunk_size: int = 500
    # VAT percentage applied when the export carries none
    default_vat_rate: Decimal = Decimal("21")
    # Time joins the hash when MORE than this share of rows carry a real time
    time_ratio_threshold: float = 0.5
    # Stored when a row has no time
    time_sentinel: str = "00:00"


@dataclass
class ReconciliationConfig:
    """Reconciliation settings."""

    # Automatic matcher may append new toll lines instead of reporting the group
    create_missing_lines: bool = False
    # Maximum number of new transactions scanned per run
    scan_limit: int = 5000
    # Retries when another writer changed the chosen invoice line first
    max_conflict_retries: int = 3
    # Currency minor unit (2 → cents)
    currency_exponent: int = 2


@dataclass
class Config:
    """Application configuration (SSOT).

    All configuration is centralized here. No other module should define
    configuration keys or defaults.
    """

    imports: ImportConfig = field(default_factory=ImportConfig)
    reconciliation: ReconciliationConfig = field(default_factory=ReconciliationConfig)
    state_db_path: Path = field(default_factory=lambda: Path("data/toll.db"))

    def validate(self) -> list[str]:
        """Validate configuration completeness and consistency.

        Returns:
            List of validation errors (empty if valid)
        """
        errors: list[str] = []

        if self.imports.chunk_size <= 0:
            errors.append("imports.chunk_size must be a positive integer")
        if not 0.0 <= self.imports.time_ratio_threshold <= 1.0:
            errors.append("imports.time_ratio_threshold must be between 0 and 1")
        if self.imports.default_vat_rate < 0:
            errors.append("imports.default_vat_rate must not be negative")

        if self.reconciliation.scan_limit <= 0:
            errors.append("reconciliation.scan_limit must be a positive integer")
        if self.reconciliation.max_conflict_retries < 1:
            errors.append("reconciliation.max_conflict_retries must be at least 1")
        if not 0 <= self.reconciliation.currency_exponent <= 4:
            errors.append("reconciliation.currency_exponent must be between 0 and 4")

        return errors


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name, "").strip().lower()
    if value in ("1", "true", "yes", "on"):
        return True
    if value in ("0", "false", "no", "off"):
        return False
    return default


def load_config(config_path: Path | str) -> Config:
    """
    Load configuration from YAML file.

    Environment variables can override config values:
    - TOLLBRIDGE_STATE_DB
    - TOLLBRIDGE_CHUNK_SIZE
    - TOLLBRIDGE_CREATE_MISSING_LINES (true/false)
    """
    config_path = Path(config_path)
    if config_path.exists():
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    else:
        data = {}

    import_data = data.get("imports", {})
    chunk_size = import_data.get("chunk_size", 500)
    chunk_env = os.environ.get("TOLLBRIDGE_CHUNK_SIZE", "")
    if chunk_env:
        try:
            chunk_size = int(chunk_env)
        except ValueError:
            pass  # Keep configured value

    imports = ImportConfig(
        chunk_size=chunk_size,
        default_vat_rate=Decimal(str(import_data.get("default_vat_rate", 21))),
        time_ratio_threshold=float(import_data.get("time_ratio_threshold", 0.5)),
        time_sentinel=import_data.get("time_sentinel", "00:00"),
    )

    recon_data = data.get("reconciliation", {})
    reconciliation = ReconciliationConfig(
        create_missing_lines=_env_bool(
            "TOLLBRIDGE_CREATE_MISSING_LINES", recon_data.get("create_missing_lines", False)
        ),
        scan_limit=recon_data.get("scan_limit", 5000),
        max_conflict_retries=recon_data.get("max_conflict_retries", 3),
        currency_exponent=recon_data.get("currency_exponent", 2),
    )

    state_db = os.environ.get("TOLLBRIDGE_STATE_DB", data.get("state_db_path", "data/toll.db"))

    return Config(
        imports=imports,
        reconciliation=reconciliation,
        state_db_path=Path(state_db),
    )


def load_valid_config(config_path: Path | str) -> Config:
    """Load configuration and raise ConfigValidationError if it does not validate."""
    config = load_config(config_path)
    errors = config.validate()
    if errors:
        raise ConfigValidationError("; ".join(errors))
    return config


def create_default_config(config_path: Path) -> None:
    """Create a default configuration file."""
    default_config = """# TollBridge configuration

# Toll export import
imports:
  chunk_size: 500                # Rows per multi-row insert
  default_vat_rate: 21           # VAT % when the export has no VAT column
  time_ratio_threshold: 0.5      # Hash includes time when more rows than this carry one
  time_sentinel: "00:00"         # Stored when a row has no time

# Invoice-line reconciliation
reconciliation:
  create_missing_lines: false    # Automatic run reports groups without a toll line
  scan_limit: 5000               # New transactions scanned per run
  max_conflict_retries: 3        # Retries when an invoice line changed underneath us
  currency_exponent: 2           # Round totals to cents

# State database path
state_db_path: "data/toll.db"
"""

    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w") as f:
        f.write(default_config)
