from __future__ import annotations

import asyncio

import pytest

from domain_probes.common_probe import NXDOMAIN, CheckType, DnsDetails, DnsRecord, HttpDetails, ProbeResult
from probe_monitoring.config import ProbeConfig
from probe_monitoring.reporting.incident_tracker import IncidentTracker
from probe_monitoring.scheduler.probe_executor import ProbeExecutor, ProbeJob, runner_deadlines
from probe_monitoring.storage.db import ProbeStore
from probe_monitoring.storage.models import IncidentStatus, Severity


def _job(store: ProbeStore, check_type: CheckType) -> ProbeJob:
    domain = store.get_domain_by_name("example.com") or store.create_domain("example.com")
    check = next(c for c in store.list_checks(domain.id) if c.check_type == check_type.value)
    return ProbeJob(domain_id=domain.id, domain_name=domain.name, check_id=check.id, check_type=check.check_type)


def _executor(store: ProbeStore, runners, **kwargs) -> ProbeExecutor:
    return ProbeExecutor(store, runners, IncidentTracker(store), **kwargs)


@pytest.mark.asyncio
async def test_failed_dns_probe_is_recorded_and_opens_incident(store: ProbeStore) -> None:
    targets: list[str] = []

    async def dns_runner(target: str) -> ProbeResult:
        targets.append(target)
        return ProbeResult(
            check_type=CheckType.DNS,
            success=False,
            duration_ms=4.0,
            details=DnsDetails(),
            error_code=NXDOMAIN,
            error_message="No DNS records found",
        )

    job = _job(store, CheckType.DNS)
    run = await _executor(store, {CheckType.DNS: dns_runner}).execute(job)

    assert targets == ["example.com"]
    assert run is not None
    runs = store.list_probe_runs(job.domain_id)
    assert len(runs) == 1
    assert runs[0].check_id == job.check_id
    assert runs[0].success is False
    assert runs[0].error_code == NXDOMAIN
    assert runs[0].dns_ms == runs[0].total_ms
    assert runs[0].tls_ms is None and runs[0].ttfb_ms is None
    assert runs[0].completed_at >= runs[0].started_at

    incidents = store.list_incidents(job.domain_id)
    assert len(incidents) == 1
    assert incidents[0].status == IncidentStatus.OPEN
    assert incidents[0].severity == Severity.LOW


@pytest.mark.asyncio
async def test_http_probe_run_carries_status_and_ttfb(store: ProbeStore) -> None:
    async def http_runner(target: str) -> ProbeResult:
        return ProbeResult(
            check_type=CheckType.HTTP,
            success=True,
            duration_ms=25.0,
            details=HttpDetails(url="https://example.com", status_code=200, ttfb_ms=12, headers={"server": "nginx"}),
        )

    job = _job(store, CheckType.HTTP)
    await _executor(store, {CheckType.HTTP: http_runner}).execute(job)

    run = store.list_probe_runs(job.domain_id, check_type=CheckType.HTTP)[0]
    assert run.success is True
    assert run.status_code == 200
    assert run.ttfb_ms == 12
    assert run.snapshot == {"url": "https://example.com", "statusCode": 200, "headers": {"server": "nginx"}}
    assert store.list_incidents(job.domain_id) == []


@pytest.mark.asyncio
async def test_dns_snapshot_is_persisted_as_record_list(store: ProbeStore) -> None:
    async def dns_runner(target: str) -> ProbeResult:
        records = [DnsRecord(type="A", value="10.0.0.1", ttl=60)]
        return ProbeResult(
            check_type=CheckType.DNS,
            success=True,
            duration_ms=1.0,
            details=DnsDetails(ip_addresses=["10.0.0.1"], records=records),
        )

    job = _job(store, CheckType.DNS)
    await _executor(store, {CheckType.DNS: dns_runner}).execute(job)

    assert store.list_probe_runs(job.domain_id)[0].snapshot == [{"type": "A", "value": "10.0.0.1", "ttl": 60}]


@pytest.mark.asyncio
async def test_unknown_check_type_is_skipped(store: ProbeStore) -> None:
    domain = store.create_domain("example.com")
    job = ProbeJob(domain_id=domain.id, domain_name=domain.name, check_id="x", check_type="PING")

    async def never(target: str) -> ProbeResult:
        raise AssertionError("no runner should be called")

    run = await _executor(store, {CheckType.DNS: never}).execute(job)

    assert run is None
    assert store.list_probe_runs(domain.id) == []


@pytest.mark.asyncio
async def test_runner_exception_persists_nothing(store: ProbeStore) -> None:
    async def broken(target: str) -> ProbeResult:
        raise RuntimeError("runner bug")

    job = _job(store, CheckType.TLS)
    run = await _executor(store, {CheckType.TLS: broken}).execute(job)

    assert run is None
    assert store.list_probe_runs(job.domain_id) == []
    assert store.list_incidents(job.domain_id) == []


@pytest.mark.asyncio
async def test_runner_past_watchdog_deadline_is_abandoned(store: ProbeStore) -> None:
    async def hung(target: str) -> ProbeResult:
        await asyncio.sleep(10)
        raise AssertionError("unreachable")

    job = _job(store, CheckType.DNS)
    executor = _executor(store, {CheckType.DNS: hung}, deadlines={CheckType.DNS: 0.05})

    assert await executor.execute(job) is None
    assert store.list_probe_runs(job.domain_id) == []


@pytest.mark.asyncio
async def test_cancelled_probe_persists_nothing(store: ProbeStore) -> None:
    started = asyncio.Event()

    async def slow(target: str) -> ProbeResult:
        started.set()
        await asyncio.sleep(10)
        raise AssertionError("unreachable")

    job = _job(store, CheckType.DNS)
    task = asyncio.create_task(_executor(store, {CheckType.DNS: slow}).execute(job))
    await started.wait()
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert store.list_probe_runs(job.domain_id) == []


def test_runner_deadlines_add_grace() -> None:
    deadlines = runner_deadlines(ProbeConfig(dns_timeout_seconds=5, tls_timeout_seconds=10), grace_seconds=5)
    assert deadlines[CheckType.DNS] == 10
    assert deadlines[CheckType.TLS] == 15
    assert deadlines[CheckType.HTTP] == 15
