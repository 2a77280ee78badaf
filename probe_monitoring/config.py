"""Configuration management for the probe monitor."""

import os
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from domain_probes.common_probe import CheckType, normalize_domain_name
from probe_monitoring.storage.models import DEFAULT_INTERVAL_MINUTES, validate_interval_minutes


DEFAULT_CONFIG_PATH = "config/probe-monitor.yaml"


class StorageConfig(BaseModel):
    """Where probe runs, incidents and the outbox live."""
    db_path: str = Field(default="data/probe-monitor.db", description="SQLite database path")


class SchedulerConfig(BaseModel):
    """Probe scheduling settings."""
    reconcile_interval_seconds: int = Field(default=60, ge=1, description="Seconds between configuration re-reads")
    tick_seconds: float = Field(default=1.0, gt=0, description="Seconds between due-job checks")
    max_concurrency: int = Field(default=10, ge=1, description="Maximum probes in flight")
    watchdog_grace_seconds: float = Field(
        default=5.0, ge=0, description="Extra time a runner gets past its own timeout before it is abandoned"
    )


class ProbeConfig(BaseModel):
    """Per-probe network settings."""
    dns_timeout_seconds: float = Field(default=5.0, gt=0)
    dns_resolvers: Optional[List[str]] = Field(default=None, description="Nameservers; system resolver when unset")
    tls_timeout_seconds: float = Field(default=10.0, gt=0)
    tls_port: int = Field(default=443, ge=1, le=65535)
    http_timeout_seconds: float = Field(default=10.0, gt=0)
    user_agent: str = Field(default="DomainProbeMonitor/1.0")


class NotificationChannelConfig(BaseModel):
    """One outbox destination written for every opened incident."""
    channel: str = Field(description="Channel name, e.g. SLACK or EMAIL")
    destination: str = Field(description="Webhook URL, address, ...")

    @field_validator("channel")
    @classmethod
    def _upper_channel(cls, value: str) -> str:
        cleaned = str(value or "").strip().upper()
        if not cleaned:
            raise ValueError("channel is required")
        return cleaned


class NotificationConfig(BaseModel):
    """Outbox settings."""
    channels: List[NotificationChannelConfig] = Field(default_factory=list)
    poll_interval_seconds: int = Field(default=10, ge=1)
    batch_size: int = Field(default=10, ge=1)
    max_retries: int = Field(default=3, ge=1)


class DomainEntryConfig(BaseModel):
    """A domain seeded into the store at startup."""
    domain: str
    enabled: bool = True
    interval_minutes: int = DEFAULT_INTERVAL_MINUTES
    group: Optional[str] = None
    checks: Dict[CheckType, bool] = Field(default_factory=dict)

    @field_validator("domain")
    @classmethod
    def _normalize(cls, value: str) -> str:
        normalized = normalize_domain_name(value)
        if not normalized:
            raise ValueError(f"Invalid domain name: {value!r}")
        return normalized

    @field_validator("interval_minutes")
    @classmethod
    def _interval_range(cls, value: int) -> int:
        return validate_interval_minutes(value)

    @field_validator("checks", mode="before")
    @classmethod
    def _upper_check_keys(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return {str(k).strip().upper(): v for k, v in value.items()}
        return value


class MonitorConfig(BaseModel):
    """Main configuration for the probe monitor."""

    log_level: str = Field(default="INFO", description="Logging level")
    storage: StorageConfig = Field(default_factory=StorageConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    probes: ProbeConfig = Field(default_factory=ProbeConfig)
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)
    domains: List[DomainEntryConfig] = Field(default_factory=list)

    @field_validator("domains", mode="before")
    @classmethod
    def _expand_bare_names(cls, value: Any) -> Any:
        if not isinstance(value, list):
            return value
        return [{"domain": entry} if isinstance(entry, str) else entry for entry in value]

    @model_validator(mode="after")
    def _unique_domains(self) -> "MonitorConfig":
        seen: set[str] = set()
        for entry in self.domains:
            if entry.domain in seen:
                raise ValueError(f"Duplicate domain entry: {entry.domain}")
            seen.add(entry.domain)
        return self


def load_config(config_path: Optional[str] = None) -> MonitorConfig:
    """Load configuration from file, then apply environment overrides."""
    if config_path is None:
        config_path = os.getenv("PROBE_MONITOR_CONFIG", DEFAULT_CONFIG_PATH)

    config_data: Dict[str, Any] = {}

    if config_path and os.path.exists(config_path):
        with open(config_path, "r", encoding="utf-8") as f:
            config_data = yaml.safe_load(f) or {}
        if not isinstance(config_data, dict):
            raise ValueError("Config YAML must be a mapping")

    env_overrides = {
        ("log_level",): os.getenv("LOG_LEVEL"),
        ("storage", "db_path"): os.getenv("PROBE_MONITOR_DB_PATH"),
        ("scheduler", "max_concurrency"): os.getenv("PROBE_MAX_CONCURRENCY"),
        ("scheduler", "reconcile_interval_seconds"): os.getenv("PROBE_RECONCILE_INTERVAL_SECONDS"),
    }

    # Pydantic coerces the string values; only set what is present.
    for path, value in env_overrides.items():
        if value is None or not str(value).strip():
            continue
        target = config_data
        for key in path[:-1]:
            section = target.get(key)
            if not isinstance(section, dict):
                section = {}
                target[key] = section
            target = section
        target[path[-1]] = str(value).strip()

    return MonitorConfig(**config_data)
