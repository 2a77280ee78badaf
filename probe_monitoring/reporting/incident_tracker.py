"""Incident state tracking driven by probe outcomes."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

import structlog

from domain_probes.common_probe import (
    CONNECTION_FAILED,
    INVALID_CERTIFICATE,
    TIMEOUT,
    CheckType,
    ProbeResult,
)
from ..config import NotificationChannelConfig
from ..storage.db import IncidentAlreadyOpenError, ProbeStore
from ..storage.models import Incident, IncidentStatus, Notification, Severity, utc_now


logger = structlog.get_logger(__name__)

DEFAULT_REASON = "Probe failed"


def determine_severity(check_type: CheckType, result: ProbeResult) -> Severity:
    """Map a failed probe to an incident severity."""
    if check_type == CheckType.TLS and result.error_code == INVALID_CERTIFICATE:
        return Severity.HIGH
    if check_type == CheckType.HTTP and (result.status_code or 0) >= 500:
        return Severity.HIGH
    if result.error_code in (TIMEOUT, CONNECTION_FAILED):
        return Severity.MEDIUM
    return Severity.LOW


def incident_reason(result: ProbeResult) -> str:
    return result.error_message or result.error_code or DEFAULT_REASON


@dataclass(frozen=True)
class IncidentEvaluation:
    """What one probe outcome changed."""
    opened: Optional[Incident] = None
    resolved: List[Incident] = field(default_factory=list)
    notifications: List[Notification] = field(default_factory=list)


class IncidentTracker:
    """
    Two-state machine per (domain, check type): no open incident, or exactly
    one OPEN incident.

    - success: every OPEN incident for the key is RESOLVED
    - failure with nothing open: a new OPEN incident plus one outbox row per channel
    - failure while open: no change
    """

    def __init__(
        self,
        store: ProbeStore,
        *,
        channels: Sequence[NotificationChannelConfig] = (),
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.channels = list(channels)
        self.clock = clock

    def evaluate(
        self,
        *,
        domain_id: str,
        domain_name: str,
        check_type: CheckType,
        result: ProbeResult,
    ) -> IncidentEvaluation:
        if result.success:
            return self._resolve_open(domain_id=domain_id, domain_name=domain_name, check_type=check_type)

        existing = self.store.find_open_incident(domain_id, check_type)
        if existing is not None:
            logger.debug(
                "Incident already open",
                domain=domain_name,
                check_type=check_type.value,
                incident_id=existing.id,
            )
            return IncidentEvaluation()

        incident = Incident(
            domain_id=domain_id,
            check_type=check_type.value,
            severity=determine_severity(check_type, result),
            status=IncidentStatus.OPEN,
            reason=incident_reason(result),
            started_at=self.clock(),
        )
        try:
            self.store.save_incident(incident)
        except IncidentAlreadyOpenError:
            # Another process sharing the database opened it first.
            logger.debug("Incident already open", domain=domain_name, check_type=check_type.value)
            return IncidentEvaluation()
        logger.warning(
            "Created incident",
            domain=domain_name,
            check_type=check_type.value,
            severity=incident.severity.value,
            reason=incident.reason,
            incident_id=incident.id,
        )
        notifications = self._enqueue_notifications(incident, domain_name=domain_name, result=result)
        return IncidentEvaluation(opened=incident, notifications=notifications)

    def _resolve_open(self, *, domain_id: str, domain_name: str, check_type: CheckType) -> IncidentEvaluation:
        open_incidents = self.store.find_open_incidents(domain_id, check_type)
        if not open_incidents:
            return IncidentEvaluation()

        now = self.clock()
        resolved: List[Incident] = []
        for incident in open_incidents:
            updated = replace(
                incident,
                status=IncidentStatus.RESOLVED,
                resolved_at=max(now, incident.started_at),
            )
            self.store.save_incident(updated)
            resolved.append(updated)

        logger.info(
            "Resolved incidents",
            domain=domain_name,
            check_type=check_type.value,
            count=len(resolved),
        )
        return IncidentEvaluation(resolved=resolved)

    def _enqueue_notifications(
        self,
        incident: Incident,
        *,
        domain_name: str,
        result: ProbeResult,
    ) -> List[Notification]:
        if not self.channels:
            return []

        payload = build_incident_payload(incident, domain_name=domain_name, result=result)
        queued: List[Notification] = []
        for channel in self.channels:
            # Outbox writes must never undo the incident itself.
            try:
                queued.append(
                    self.store.enqueue_notification(
                        incident.domain_id,
                        incident.id,
                        channel.channel,
                        channel.destination,
                        payload,
                    )
                )
            except Exception as e:
                logger.error(
                    "Failed to enqueue notification",
                    incident_id=incident.id,
                    channel=channel.channel,
                    error=str(e),
                )
        return queued


def build_incident_payload(incident: Incident, *, domain_name: str, result: ProbeResult) -> Dict[str, Any]:
    return {
        "message": f"{domain_name} {incident.check_type} check failed",
        "domainName": domain_name,
        "checkType": incident.check_type,
        "error": incident.reason,
        "errorCode": result.error_code,
        "severity": incident.severity.value,
        "incidentId": incident.id,
        "startedAt": incident.started_at.isoformat(),
    }
