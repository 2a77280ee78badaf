"""Records persisted by the probe store."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from domain_probes.common_probe import CheckType


MIN_INTERVAL_MINUTES = 1
MAX_INTERVAL_MINUTES = 15
DEFAULT_INTERVAL_MINUTES = 5


class Severity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class IncidentStatus(str, Enum):
    OPEN = "OPEN"
    # Part of the stored vocabulary; nothing in the engine moves an incident here.
    ACKNOWLEDGED = "ACKNOWLEDGED"
    RESOLVED = "RESOLVED"


class NotificationStatus(str, Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"


def new_id() -> str:
    return str(uuid.uuid4())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def validate_interval_minutes(value: Any) -> int:
    try:
        minutes = int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"interval_minutes must be an integer, got {value!r}") from exc
    if not (MIN_INTERVAL_MINUTES <= minutes <= MAX_INTERVAL_MINUTES):
        raise ValueError(
            f"interval_minutes must be between {MIN_INTERVAL_MINUTES} and {MAX_INTERVAL_MINUTES}, got {minutes}"
        )
    return minutes


@dataclass(frozen=True)
class DomainGroup:
    id: str
    name: str


@dataclass(frozen=True)
class Domain:
    id: str
    name: str
    enabled: bool = True
    interval_minutes: int = DEFAULT_INTERVAL_MINUTES
    group_id: str | None = None


@dataclass(frozen=True)
class Check:
    id: str
    domain_id: str
    # Raw stored value; `kind` is None for types this engine does not know.
    check_type: str
    enabled: bool = True

    @property
    def kind(self) -> CheckType | None:
        return CheckType.parse(self.check_type)


@dataclass(frozen=True)
class ProbeRun:
    domain_id: str
    check_id: str
    check_type: str
    success: bool
    started_at: datetime
    completed_at: datetime
    total_ms: int
    error_code: str | None = None
    error_message: str | None = None
    dns_ms: int | None = None
    tls_ms: int | None = None
    ttfb_ms: int | None = None
    status_code: int | None = None
    snapshot: Any = None
    id: str = field(default_factory=new_id)


@dataclass(frozen=True)
class Incident:
    domain_id: str
    check_type: str
    severity: Severity
    status: IncidentStatus
    reason: str | None
    started_at: datetime
    resolved_at: datetime | None = None
    id: str = field(default_factory=new_id)


@dataclass(frozen=True)
class Notification:
    domain_id: str
    incident_id: str | None
    channel: str
    destination: str
    payload: dict[str, Any]
    status: NotificationStatus = NotificationStatus.PENDING
    retry_count: int = 0
    created_at: datetime = field(default_factory=utc_now)
    processed_at: datetime | None = None
    id: str = field(default_factory=new_id)
