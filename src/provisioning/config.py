"""Configuration management with validation.

All settings are validated at load time so that a misconfigured process fails
before it touches the store.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class AtomicityPolicy(str, Enum):
    """How a resource provisioner treats a directory with invalid files."""

    # Any invalid file aborts the call before the first store write
    ALL_OR_NOTHING = "all_or_nothing"
    # Invalid files are skipped, valid files are applied, the call still fails
    BEST_EFFORT = "best_effort"


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Fixed subdirectories of the provisioning path
DATASOURCES_DIR = "datasources"
DASHBOARDS_DIR = "dashboards"
PLUGINS_DIR = "plugins"
NOTIFIERS_DIR = "notifiers"
ALERTING_DIR = "alerting"

# Dashboard polling bounds
DEFAULT_DASHBOARD_UPDATE_INTERVAL_SECONDS = 10
MIN_DASHBOARD_UPDATE_INTERVAL_SECONDS = 1

# Alert rule scheduling
DEFAULT_ALERTING_BASE_INTERVAL_SECONDS = 10
DEFAULT_ALERTING_RULE_INTERVAL_SECONDS = 60
MAX_ALERTING_INTERVAL_SECONDS = 24 * 3600

# Limits on provisioning input
MAX_CONFIG_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max provisioning file
MAX_DASHBOARD_FILE_SIZE_BYTES = 10 * 1024 * 1024  # 10MB max dashboard JSON

VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True)
class Config:
    """Provisioning engine configuration.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    provisioning_path: Path = field(default_factory=lambda: Path("/etc/provisioning"))

    # JSON state file backing the bundled store; None keeps state in memory
    state_file: Path | None = None

    # Directory scanned for installed plugins (one subdirectory per plugin)
    plugins_dir: Path | None = None

    atomicity_policy: AtomicityPolicy = AtomicityPolicy.ALL_OR_NOTHING

    alerting_base_interval_seconds: int = DEFAULT_ALERTING_BASE_INTERVAL_SECONDS
    alerting_default_rule_interval_seconds: int = DEFAULT_ALERTING_RULE_INTERVAL_SECONDS

    log_level: str = "INFO"

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.provisioning_path.is_dir():
            errors.append(f"Provisioning path does not exist: {self.provisioning_path}")

        if self.state_file is not None and not self.state_file.parent.is_dir():
            errors.append(f"State file directory does not exist: {self.state_file.parent}")

        if self.plugins_dir is not None and not self.plugins_dir.is_dir():
            errors.append(f"Plugins directory does not exist: {self.plugins_dir}")

        base = self.alerting_base_interval_seconds
        if not (1 <= base <= MAX_ALERTING_INTERVAL_SECONDS):
            errors.append(
                f"ALERTING_BASE_INTERVAL must be between 1 and {MAX_ALERTING_INTERVAL_SECONDS} seconds"
            )
        elif self.alerting_default_rule_interval_seconds % base != 0:
            errors.append(
                "ALERTING_DEFAULT_RULE_INTERVAL must be a multiple of ALERTING_BASE_INTERVAL"
            )

        if self.alerting_default_rule_interval_seconds < 1:
            errors.append("ALERTING_DEFAULT_RULE_INTERVAL must be at least 1 second")

        if self.log_level not in VALID_LOG_LEVELS:
            errors.append(f"LOG_LEVEL must be one of {VALID_LOG_LEVELS}: {self.log_level}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    def resource_path(self, subdir: str) -> Path:
        """Path of one resource kind's configuration directory."""
        return self.provisioning_path / subdir

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            PROVISIONING_PATH: Base directory holding the per-kind subdirectories
                (default: /etc/provisioning)
            STATE_FILE: JSON file the bundled store persists to (default: in memory)
            PLUGINS_DIR: Directory of installed plugins (default: none installed)
            ATOMICITY_POLICY: all_or_nothing or best_effort (default: all_or_nothing)
            ALERTING_BASE_INTERVAL: Scheduler tick in seconds (default: 10)
            ALERTING_DEFAULT_RULE_INTERVAL: Rule group interval when a group
                declares none, in seconds (default: 60)
            LOG_LEVEL: Root log level (default: INFO)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_path(key: str) -> Path | None:
            value = os.environ.get(key)
            return Path(value) if value else None

        def get_policy(value: str | None) -> AtomicityPolicy:
            if not value:
                return AtomicityPolicy.ALL_OR_NOTHING
            try:
                return AtomicityPolicy(value.lower())
            except ValueError as e:
                valid = [p.value for p in AtomicityPolicy]
                raise ConfigurationError(f"ATOMICITY_POLICY must be one of {valid}: {value}") from e

        return cls(
            provisioning_path=Path(os.environ.get("PROVISIONING_PATH", "/etc/provisioning")),
            state_file=get_path("STATE_FILE"),
            plugins_dir=get_path("PLUGINS_DIR"),
            atomicity_policy=get_policy(os.environ.get("ATOMICITY_POLICY")),
            alerting_base_interval_seconds=get_int(
                "ALERTING_BASE_INTERVAL", DEFAULT_ALERTING_BASE_INTERVAL_SECONDS
            ),
            alerting_default_rule_interval_seconds=get_int(
                "ALERTING_DEFAULT_RULE_INTERVAL", DEFAULT_ALERTING_RULE_INTERVAL_SECONDS
            ),
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        )
