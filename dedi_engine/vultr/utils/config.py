"""
Configuration management for the Vultr orchestration system.
"""

import json
import os
import re
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from .exceptions import ConfigurationError

UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)

DEFAULT_API_URL = "https://api.vultr.com/v2"
DEFAULT_METADATA_URL = "http://169.254.169.254/v1/instanceid"

NUMERIC_KEYS = [
    "SELF_DESTRUCT_INITIAL_MINUTES",
    "SELF_DESTRUCT_COIN_MINUTES",
    "PANEL_REFRESH_SECONDS",
    "DESTROYED_RETENTION_MINUTES",
]


def is_uuid(value: str | None) -> bool:
    """Return True if value looks like a provider UUID."""
    return bool(value) and bool(UUID_PATTERN.match(str(value)))


def load_config(config_file: Path | None = None) -> dict[str, Any]:
    """Load configuration from file or environment variables."""
    config: dict[str, Any] = {}

    env_file = Path(".env")
    if env_file.exists():
        load_dotenv(env_file)

    if config_file and config_file.exists():
        try:
            with open(config_file) as f:
                config.update(json.load(f))
        except Exception as e:
            raise ConfigurationError(f"Failed to load config file {config_file}: {e}")

    env_config = {
        "VULTR_API_KEY": os.getenv("VULTR_API_KEY"),
        "VULTR_API_URL": os.getenv("VULTR_API_URL"),
        "VULTR_FIREWALL_GROUP_ID": os.getenv("VULTR_FIREWALL_GROUP_ID"),
        "VULTR_REGION": os.getenv("VULTR_REGION"),
        "VULTR_PLAN": os.getenv("VULTR_PLAN"),
        "VULTR_SNAPSHOT_ID": os.getenv("VULTR_SNAPSHOT_ID"),
        "SELF_DESTRUCT_INITIAL_MINUTES": os.getenv("SELF_DESTRUCT_INITIAL_MINUTES"),
        "SELF_DESTRUCT_COIN_MINUTES": os.getenv("SELF_DESTRUCT_COIN_MINUTES"),
        "EXCLUDE_INSTANCE_ID": os.getenv("EXCLUDE_INSTANCE_ID"),
        "EXCLUDE_SNAPSHOT_ID": os.getenv("EXCLUDE_SNAPSHOT_ID"),
        "METADATA_URL": os.getenv("METADATA_URL"),
        "PANEL_DATA_FILE": os.getenv("PANEL_DATA_FILE"),
        "PANEL_OUTPUT_FILE": os.getenv("PANEL_OUTPUT_FILE"),
        "PANEL_REFRESH_SECONDS": os.getenv("PANEL_REFRESH_SECONDS"),
        "DESTROYED_RETENTION_MINUTES": os.getenv("DESTROYED_RETENTION_MINUTES"),
        "TIMER_RECOVERED_INSTANCES": os.getenv("TIMER_RECOVERED_INSTANCES"),
        "ADMIN_USER_IDS": os.getenv("ADMIN_USER_IDS"),
        "LOG_LEVEL": os.getenv("LOG_LEVEL"),
        "LOG_FILE": os.getenv("LOG_FILE"),
    }

    # Filter out None values
    env_config = {k: v for k, v in env_config.items() if v is not None}
    config.update(env_config)

    return config


def validate_config(config: dict[str, Any]) -> list[str]:
    """Validate configuration and return list of errors."""
    errors = []

    required_keys = ["VULTR_API_KEY", "VULTR_FIREWALL_GROUP_ID"]
    for key in required_keys:
        if key not in config or not config[key]:
            errors.append(f"Missing required configuration: {key}")

    firewall_group_id = config.get("VULTR_FIREWALL_GROUP_ID")
    if firewall_group_id and not is_uuid(firewall_group_id):
        errors.append(
            f"Invalid VULTR_FIREWALL_GROUP_ID format: {firewall_group_id!r} "
            "(expected UUID)"
        )

    for key in NUMERIC_KEYS:
        if key in config:
            try:
                int(config[key])
            except (ValueError, TypeError):
                errors.append(f"Invalid numeric value for {key}: {config[key]}")

    return errors


@dataclass
class Timings:
    """Every wait, interval and ceiling used by the pollers, in seconds."""

    security_attach_attempts: int = 10
    security_settle: float = 3.0
    security_verify_backoff: float = 5.0
    security_error_backoff: float = 10.0
    ddos_settle: float = 2.0

    status_initial_delay: float = 10.0
    status_poll_interval: float = 45.0
    status_ceiling: float = 30 * 60.0

    destroy_initial_delay: float = 2.0
    destroy_poll_interval: float = 10.0
    destroy_ceiling: float = 15 * 60.0

    power_poll_interval: float = 15.0
    power_ceiling: float = 15 * 60.0

    snapshot_initial_delay: float = 15.0
    snapshot_poll_interval: float = 30.0
    snapshot_ceiling: float = 30 * 60.0

    timer_sweep_interval: float = 30.0
    timer_initial_delay: float = 5.0
    first_warning_minutes: int = 10
    final_warning_minutes: int = 5

    render_coalesce_delay: float = 1.0


@dataclass
class OrchestratorSettings:
    """Typed view of the configuration handed to every component."""

    api_key: str = ""
    api_url: str = DEFAULT_API_URL
    firewall_group_id: str | None = None
    default_region: str = "dfw"
    plan: str = "vc2-1c-1gb"
    default_snapshot_id: str | None = None
    self_destruct_initial: timedelta = timedelta(minutes=180)
    self_destruct_extension: timedelta = timedelta(minutes=180)
    exclude_instance_id: str | None = None
    exclude_snapshot_id: str | None = None
    metadata_url: str | None = DEFAULT_METADATA_URL
    panel_data_file: Path = Path("panel_data.json")
    panel_output_file: Path = Path("panel.txt")
    panel_refresh_seconds: float = 30.0
    destroyed_retention: timedelta = timedelta(minutes=60)
    timer_recovered_instances: bool = True
    admin_user_ids: list[str] = field(default_factory=list)
    timings: Timings = field(default_factory=Timings)


def _as_bool(value: Any) -> bool:
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def _as_list(value: Any) -> list[str]:
    if isinstance(value, (list, tuple)):
        return [str(v).strip() for v in value if str(v).strip()]
    return [part.strip() for part in str(value or "").split(",") if part.strip()]


def settings_from_config(config: dict[str, Any]) -> OrchestratorSettings:
    """Build typed settings from a loaded configuration dict."""
    try:
        return OrchestratorSettings(
            api_key=config.get("VULTR_API_KEY", ""),
            api_url=config.get("VULTR_API_URL", DEFAULT_API_URL),
            firewall_group_id=config.get("VULTR_FIREWALL_GROUP_ID"),
            default_region=config.get("VULTR_REGION", "dfw"),
            plan=config.get("VULTR_PLAN", "vc2-1c-1gb"),
            default_snapshot_id=config.get("VULTR_SNAPSHOT_ID"),
            self_destruct_initial=timedelta(
                minutes=int(config.get("SELF_DESTRUCT_INITIAL_MINUTES", 180))
            ),
            self_destruct_extension=timedelta(
                minutes=int(config.get("SELF_DESTRUCT_COIN_MINUTES", 180))
            ),
            exclude_instance_id=config.get("EXCLUDE_INSTANCE_ID"),
            exclude_snapshot_id=config.get("EXCLUDE_SNAPSHOT_ID"),
            metadata_url=config.get("METADATA_URL", DEFAULT_METADATA_URL),
            panel_data_file=Path(config.get("PANEL_DATA_FILE", "panel_data.json")),
            panel_output_file=Path(config.get("PANEL_OUTPUT_FILE", "panel.txt")),
            panel_refresh_seconds=float(config.get("PANEL_REFRESH_SECONDS", 30)),
            destroyed_retention=timedelta(
                minutes=int(config.get("DESTROYED_RETENTION_MINUTES", 60))
            ),
            timer_recovered_instances=_as_bool(
                config.get("TIMER_RECOVERED_INSTANCES", "true")
            ),
            admin_user_ids=_as_list(config.get("ADMIN_USER_IDS", "")),
        )
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid configuration value: {e}")
