"""
Configuration settings management for govflow.

This module handles loading, validating, and saving configuration settings
from YAML files with support for environment variable overrides.

Configuration is loaded from ~/.govflow/config.yaml by default, with the
path overridable via the GOVFLOW_CONFIG environment variable.
"""

import os
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

# Default configuration directory
DEFAULT_CONFIG_DIR = Path.home() / ".govflow"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.yaml"


@dataclass
class StorageConfig:
    """Persistence and blob storage settings."""

    # Busy timeout for SQLite and the bound on any single storage wait
    io_timeout_seconds: float = 10.0
    chunk_size: int = 64 * 1024


@dataclass
class SlaConfig:
    """
    Default SLA policy, used for tenants without a stored policy.

    Set enabled to False to skip such tenants instead.
    """

    enabled: bool = True
    policy_code: str = "MONTH_END"
    tz: str = "UTC"
    cutoff_day: int = 5
    grace_hours: int = 0
    escal1_hours: int = 24
    escal2_hours: int = 48


@dataclass
class EvidenceConfig:
    """Evidence packaging settings."""

    binder_format: str = "ZIP"


@dataclass
class AttestationConfig:
    """Attestation signing settings."""

    # PEM-encoded Ed25519 private key; attestations are checksum-only when empty
    signing_key_path: str = ""


@dataclass
class EventsConfig:
    """Outbound event delivery settings."""

    sink: str = "log"
    webhook_url: str = ""
    webhook_timeout_seconds: float = 10.0


@dataclass
class SchedulerConfig:
    """SLA clock scheduling settings."""

    interval_seconds: int = 900
    max_workers: int = 4


@dataclass
class Settings:
    """
    Complete govflow configuration settings.

    Settings are loaded from a YAML configuration file and can be overridden
    by environment variables prefixed with GOVFLOW_.

    Attributes:
        data_dir: Directory for the database, evidence objects and binders.
        log_level: Logging verbosity (DEBUG, INFO, WARNING, ERROR).
        storage: Persistence settings.
        sla: Default SLA policy.
        evidence: Evidence packaging settings.
        attestation: Attestation signing settings.
        events: Outbound event sink settings.
        scheduler: SLA clock scheduling settings.
    """

    data_dir: str = str(DEFAULT_CONFIG_DIR / "data")
    log_level: str = "INFO"

    storage: StorageConfig = field(default_factory=StorageConfig)
    sla: SlaConfig = field(default_factory=SlaConfig)
    evidence: EvidenceConfig = field(default_factory=EvidenceConfig)
    attestation: AttestationConfig = field(default_factory=AttestationConfig)
    events: EventsConfig = field(default_factory=EventsConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)


class ConfigurationError(Exception):
    """Raised when configuration is invalid or cannot be loaded."""

    pass


def get_config_path() -> Path:
    """
    Get the configuration file path.

    Returns the path from GOVFLOW_CONFIG environment variable if set,
    otherwise returns the default path (~/.govflow/config.yaml).
    """
    env_path = os.environ.get("GOVFLOW_CONFIG")
    if env_path:
        return Path(env_path)
    return DEFAULT_CONFIG_FILE


def load_config(config_path: Path | None = None) -> Settings:
    """
    Load configuration from YAML file.

    Reads configuration from the specified path (or default if not provided),
    applies environment variable overrides, and validates the configuration.

    Args:
        config_path: Optional path to configuration file. If not provided,
                    uses GOVFLOW_CONFIG environment variable or default path.

    Returns:
        Validated Settings instance.

    Raises:
        ConfigurationError: If the configuration file cannot be read or
                          contains invalid settings.
    """
    if config_path is None:
        config_path = get_config_path()

    settings = Settings()

    if config_path.exists():
        try:
            with open(config_path) as f:
                config_data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}") from e
        except OSError as e:
            raise ConfigurationError(f"Cannot read config file: {e}") from e

        if not isinstance(config_data, dict):
            raise ConfigurationError("Config file must contain a mapping")

        settings = _apply_config_data(settings, config_data)

    settings = _apply_environment_overrides(settings)

    _validate_config(settings)

    return settings


def save_config(settings: Settings, config_path: Path | None = None) -> None:
    """
    Save configuration to YAML file.

    Raises:
        ConfigurationError: If the configuration cannot be written.
    """
    if config_path is None:
        config_path = get_config_path()

    config_path.parent.mkdir(parents=True, exist_ok=True)

    config_data = _settings_to_dict(settings)

    try:
        with open(config_path, "w") as f:
            yaml.safe_dump(config_data, f, default_flow_style=False, sort_keys=False)
    except OSError as e:
        raise ConfigurationError(f"Cannot write config file: {e}") from e


def _apply_config_data(settings: Settings, data: dict[str, Any]) -> Settings:
    """Apply configuration data from parsed YAML to settings."""
    govflow_data = data.get("govflow", {})

    if "data_dir" in govflow_data:
        settings.data_dir = str(govflow_data["data_dir"])
    if "log_level" in govflow_data:
        settings.log_level = str(govflow_data["log_level"]).upper()

    storage = data.get("storage", {})
    if "io_timeout_seconds" in storage:
        settings.storage.io_timeout_seconds = float(storage["io_timeout_seconds"])
    if "chunk_size" in storage:
        settings.storage.chunk_size = int(storage["chunk_size"])

    sla = data.get("sla", {})
    if "enabled" in sla:
        settings.sla.enabled = bool(sla["enabled"])
    if "policy_code" in sla:
        settings.sla.policy_code = str(sla["policy_code"])
    if "tz" in sla:
        settings.sla.tz = str(sla["tz"])
    for key in ("cutoff_day", "grace_hours", "escal1_hours", "escal2_hours"):
        if key in sla:
            setattr(settings.sla, key, int(sla[key]))

    evidence = data.get("evidence", {})
    if "binder_format" in evidence:
        settings.evidence.binder_format = str(evidence["binder_format"]).upper()

    attestation = data.get("attestation", {})
    if "signing_key_path" in attestation:
        settings.attestation.signing_key_path = str(attestation["signing_key_path"] or "")

    events = data.get("events", {})
    if "sink" in events:
        settings.events.sink = str(events["sink"]).lower()
    if "webhook_url" in events:
        settings.events.webhook_url = str(events["webhook_url"] or "")
    if "webhook_timeout_seconds" in events:
        settings.events.webhook_timeout_seconds = float(events["webhook_timeout_seconds"])

    scheduler = data.get("scheduler", {})
    if "interval_seconds" in scheduler:
        settings.scheduler.interval_seconds = int(scheduler["interval_seconds"])
    if "max_workers" in scheduler:
        settings.scheduler.max_workers = int(scheduler["max_workers"])

    return settings


def _apply_environment_overrides(settings: Settings) -> Settings:
    """Apply environment variable overrides to settings."""
    env_map: dict[str, tuple[str, Callable[[str], Any]]] = {
        "GOVFLOW_DATA_DIR": ("data_dir", str),
        "GOVFLOW_LOG_LEVEL": ("log_level", lambda x: x.upper()),
        "GOVFLOW_IO_TIMEOUT": ("storage.io_timeout_seconds", float),
        "GOVFLOW_SLA_TZ": ("sla.tz", str),
        "GOVFLOW_BINDER_FORMAT": ("evidence.binder_format", lambda x: x.upper()),
        "GOVFLOW_SIGNING_KEY": ("attestation.signing_key_path", str),
        "GOVFLOW_EVENT_SINK": ("events.sink", lambda x: x.lower()),
        "GOVFLOW_WEBHOOK_URL": ("events.webhook_url", str),
        "GOVFLOW_SLA_INTERVAL": ("scheduler.interval_seconds", int),
    }

    for env_var, (attr_path, converter) in env_map.items():
        value = os.environ.get(env_var)
        if value is not None:
            try:
                _set_nested_attr(settings, attr_path, converter(value))
            except ValueError as e:
                raise ConfigurationError(f"Invalid value for {env_var}: {value}") from e

    return settings


def _set_nested_attr(obj: Any, path: str, value: Any) -> None:
    """Set a nested attribute on an object using dot notation."""
    parts = path.split(".")
    for part in parts[:-1]:
        obj = getattr(obj, part)
    setattr(obj, parts[-1], value)


def _validate_config(settings: Settings) -> None:
    """
    Validate configuration settings.

    Raises:
        ConfigurationError: If configuration is invalid.
    """
    valid_log_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
    if settings.log_level not in valid_log_levels:
        raise ConfigurationError(
            f"Invalid log_level: {settings.log_level}. "
            f"Must be one of: {', '.join(sorted(valid_log_levels))}"
        )

    if settings.storage.io_timeout_seconds <= 0:
        raise ConfigurationError("io_timeout_seconds must be positive")
    if settings.storage.chunk_size < 1024:
        raise ConfigurationError("chunk_size must be at least 1024 bytes")

    sla = settings.sla
    try:
        ZoneInfo(sla.tz)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ConfigurationError(f"Unknown sla.tz: {sla.tz}") from e
    if not 1 <= sla.cutoff_day <= 28:
        raise ConfigurationError("sla.cutoff_day must be between 1 and 28")
    if not 0 <= sla.grace_hours <= sla.escal1_hours <= sla.escal2_hours:
        raise ConfigurationError(
            "SLA thresholds must satisfy 0 <= grace_hours <= escal1_hours <= escal2_hours"
        )

    valid_formats = {"ZIP", "TAR"}
    if settings.evidence.binder_format not in valid_formats:
        raise ConfigurationError(
            f"Invalid binder_format: {settings.evidence.binder_format}. "
            f"Must be one of: {', '.join(sorted(valid_formats))}"
        )

    valid_sinks = {"log", "webhook", "none"}
    if settings.events.sink not in valid_sinks:
        raise ConfigurationError(
            f"Invalid event sink: {settings.events.sink}. "
            f"Must be one of: {', '.join(sorted(valid_sinks))}"
        )
    if settings.events.sink == "webhook" and not settings.events.webhook_url:
        raise ConfigurationError("events.webhook_url is required for the webhook sink")
    if settings.events.webhook_url and not settings.events.webhook_url.startswith(
        ("http://", "https://")
    ):
        raise ConfigurationError(
            f"Invalid events.webhook_url: {settings.events.webhook_url}. "
            "Must start with http:// or https://"
        )

    if settings.scheduler.interval_seconds < 60:
        raise ConfigurationError("scheduler.interval_seconds must be at least 60")
    if settings.scheduler.max_workers < 1:
        raise ConfigurationError("scheduler.max_workers must be at least 1")


def _settings_to_dict(settings: Settings) -> dict[str, Any]:
    """Convert Settings instance to dictionary for YAML serialization."""
    return {
        "govflow": {
            "data_dir": settings.data_dir,
            "log_level": settings.log_level,
        },
        "storage": {
            "io_timeout_seconds": settings.storage.io_timeout_seconds,
            "chunk_size": settings.storage.chunk_size,
        },
        "sla": {
            "enabled": settings.sla.enabled,
            "policy_code": settings.sla.policy_code,
            "tz": settings.sla.tz,
            "cutoff_day": settings.sla.cutoff_day,
            "grace_hours": settings.sla.grace_hours,
            "escal1_hours": settings.sla.escal1_hours,
            "escal2_hours": settings.sla.escal2_hours,
        },
        "evidence": {
            "binder_format": settings.evidence.binder_format,
        },
        "attestation": {
            "signing_key_path": settings.attestation.signing_key_path,
        },
        "events": {
            "sink": settings.events.sink,
            "webhook_url": settings.events.webhook_url,
            "webhook_timeout_seconds": settings.events.webhook_timeout_seconds,
        },
        "scheduler": {
            "interval_seconds": settings.scheduler.interval_seconds,
            "max_workers": settings.scheduler.max_workers,
        },
    }
