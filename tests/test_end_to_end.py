from __future__ import annotations

import functools

import dns.resolver
import pytest

from domain_probes.common_probe import NXDOMAIN, CheckType, DnsRecord, HttpDetails, ProbeResult, TlsDetails
from domain_probes.probe_dns import run_dns_probe
from probe_monitoring.reporting.incident_tracker import IncidentTracker
from probe_monitoring.scheduler.probe_executor import ProbeExecutor
from probe_monitoring.scheduler.probe_scheduler import ProbeScheduler
from probe_monitoring.storage.db import ProbeStore
from probe_monitoring.storage.models import IncidentStatus, Severity


async def _tls_ok(target: str) -> ProbeResult:
    return ProbeResult(CheckType.TLS, True, 2.0, TlsDetails(is_valid=True, days_until_expiry=90))


async def _http_ok(target: str) -> ProbeResult:
    return ProbeResult(CheckType.HTTP, True, 3.0, HttpDetails(url=f"https://{target}", status_code=200))


@pytest.mark.asyncio
async def test_dns_outage_opens_one_incident_and_recovery_resolves_it(
    store: ProbeStore, clock, monkeypatch: pytest.MonkeyPatch
) -> None:
    a_queries = {"n": 0}

    def fake_dns_query_sync(*, domain: str, record_type: str, resolvers, timeout_seconds: float):
        if record_type != "A":
            return []
        a_queries["n"] += 1
        if a_queries["n"] <= 3:
            raise dns.resolver.NXDOMAIN()
        return [DnsRecord(type="A", value="203.0.113.7", ttl=300)]

    monkeypatch.setattr("domain_probes.probe_dns._dns_query_sync", fake_dns_query_sync)

    domain = store.create_domain("outage.example", interval_minutes=5)

    executor = ProbeExecutor(
        store,
        {
            CheckType.DNS: functools.partial(run_dns_probe, timeout_seconds=1.0),
            CheckType.TLS: _tls_ok,
            CheckType.HTTP: _http_ok,
        },
        IncidentTracker(store),
    )
    scheduler = ProbeScheduler(store, executor, clock=clock)
    await scheduler.reconcile()

    statuses = []
    for _ in range(4):
        assert len(await scheduler.tick()) == 3
        await scheduler.wait_idle()
        statuses.append([i.status for i in store.list_incidents(domain.id, check_type=CheckType.DNS)])
        clock.advance(300)

    assert statuses[:3] == [[IncidentStatus.OPEN]] * 3
    assert statuses[3] == [IncidentStatus.RESOLVED]

    dns_runs = store.list_probe_runs(domain.id, check_type=CheckType.DNS)
    assert len(dns_runs) == 4
    assert [r.success for r in dns_runs] == [False, False, False, True]
    assert all(r.error_code == NXDOMAIN for r in dns_runs[:3])

    for check_type in (CheckType.TLS, CheckType.HTTP):
        runs = store.list_probe_runs(domain.id, check_type=check_type)
        assert len(runs) == 4
        assert all(r.success for r in runs)
        assert store.list_incidents(domain.id, check_type=check_type) == []

    incidents = store.list_incidents(domain.id, check_type=CheckType.DNS)
    assert len(incidents) == 1
    assert incidents[0].severity == Severity.LOW
    assert incidents[0].resolved_at is not None
    assert incidents[0].resolved_at >= incidents[0].started_at
    assert len(store.list_incidents(domain.id)) == 1
