from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union


class CheckType(str, Enum):
    DNS = "DNS"
    TLS = "TLS"
    HTTP = "HTTP"

    @classmethod
    def parse(cls, value: Any) -> "CheckType | None":
        s = str(getattr(value, "value", value) or "").strip().upper()
        try:
            return cls(s)
        except ValueError:
            return None


# Error codes shared by the runners and the incident severity rules.
TIMEOUT = "TIMEOUT"
CONNECTION_FAILED = "CONNECTION_FAILED"
INVALID_CERTIFICATE = "INVALID_CERTIFICATE"
NO_CERTIFICATE = "NO_CERTIFICATE"
NXDOMAIN = "NXDOMAIN"
HTTP_ERROR = "HTTP_ERROR"
UNKNOWN = "UNKNOWN"


@dataclass(frozen=True)
class DnsRecord:
    type: str
    value: str
    ttl: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "value": self.value, "ttl": self.ttl}


@dataclass(frozen=True)
class DnsDetails:
    ip_addresses: list[str] = field(default_factory=list)
    records: list[DnsRecord] = field(default_factory=list)

    def snapshot(self) -> list[dict[str, Any]]:
        return [r.to_dict() for r in self.records]


@dataclass(frozen=True)
class TlsDetails:
    is_valid: bool = False
    issuer: str | None = None
    subject: str | None = None
    not_before: str | None = None
    not_after: str | None = None
    days_until_expiry: int | None = None
    subject_alternative_names: list[str] = field(default_factory=list)

    def snapshot(self) -> dict[str, Any]:
        return {
            "issuer": self.issuer,
            "subject": self.subject,
            "notBefore": self.not_before,
            "notAfter": self.not_after,
            "daysUntilExpiry": self.days_until_expiry,
            "subjectAlternativeNames": list(self.subject_alternative_names),
            "isValid": self.is_valid,
        }


@dataclass(frozen=True)
class HttpDetails:
    url: str
    status_code: int | None = None
    ttfb_ms: int | None = None
    headers: dict[str, str] = field(default_factory=dict)

    def snapshot(self) -> dict[str, Any]:
        return {"url": self.url, "statusCode": self.status_code, "headers": dict(self.headers)}


ProbeDetails = Union[DnsDetails, TlsDetails, HttpDetails]


@dataclass(frozen=True)
class ProbeResult:
    """
    Outcome of one probe. `check_type` tags which details variant is carried;
    success/error/duration are common to every probe type.
    """

    check_type: CheckType
    success: bool
    duration_ms: float
    details: ProbeDetails
    error_code: str | None = None
    error_message: str | None = None

    @property
    def status_code(self) -> int | None:
        if isinstance(self.details, HttpDetails):
            return self.details.status_code
        return None

    def snapshot(self) -> Any:
        return self.details.snapshot()


def normalize_domain_name(value: str) -> str:
    """
    Reduce user input to a bare host name:
    "HTTPS://WWW.Example.com:443/path" -> "example.com".

    Order matters: scheme, then "www.", then path, then port. The result is a
    fixed point, so names already stored normalize to themselves.
    """
    s = str(value or "").strip().lower()
    if s.startswith("http://"):
        s = s[len("http://"):]
    if s.startswith("https://"):
        s = s[len("https://"):]
    while s.startswith("www."):
        s = s[len("www."):]
    slash = s.find("/")
    if slash >= 0:
        s = s[:slash]
    colon = s.find(":")
    if colon >= 0:
        s = s[:colon]
    return s.strip()


def http_target_url(target: str) -> str:
    s = str(target or "").strip()
    if s.lower().startswith(("http://", "https://")):
        return s
    return f"https://{normalize_domain_name(s)}"


def elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000.0, 3)


def describe_exception(exc: BaseException) -> str:
    msg = str(exc or "").strip()
    if msg:
        return f"{type(exc).__name__}: {msg}"[:500]
    return type(exc).__name__
