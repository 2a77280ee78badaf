"""Runs one probe job: runner -> ProbeRun -> incident evaluation."""

from __future__ import annotations

import asyncio
import functools
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Dict, Mapping, Optional

import httpx
import structlog

from domain_probes.common_probe import CheckType, DnsDetails, HttpDetails, ProbeResult, TlsDetails
from domain_probes.probe_dns import run_dns_probe
from domain_probes.probe_http import run_http_probe
from domain_probes.probe_tls import run_tls_probe
from ..config import ProbeConfig
from ..reporting.incident_tracker import IncidentTracker
from ..storage.db import ProbeStore
from ..storage.models import ProbeRun, utc_now


logger = structlog.get_logger(__name__)

Runner = Callable[[str], Awaitable[ProbeResult]]


@dataclass(frozen=True)
class ProbeJob:
    domain_id: str
    domain_name: str
    check_id: str
    check_type: str


def build_runners(config: ProbeConfig, http_client: httpx.AsyncClient) -> Dict[CheckType, Runner]:
    return {
        CheckType.DNS: functools.partial(
            run_dns_probe,
            timeout_seconds=config.dns_timeout_seconds,
            resolvers=config.dns_resolvers,
        ),
        CheckType.TLS: functools.partial(
            run_tls_probe,
            port=config.tls_port,
            timeout_seconds=config.tls_timeout_seconds,
        ),
        CheckType.HTTP: functools.partial(
            run_http_probe,
            client=http_client,
            timeout_seconds=config.http_timeout_seconds,
            user_agent=config.user_agent,
        ),
    }


def runner_deadlines(config: ProbeConfig, *, grace_seconds: float) -> Dict[CheckType, float]:
    grace = max(0.0, float(grace_seconds))
    return {
        CheckType.DNS: config.dns_timeout_seconds + grace,
        CheckType.TLS: config.tls_timeout_seconds + grace,
        CheckType.HTTP: config.http_timeout_seconds + grace,
    }


def build_probe_run(
    job: ProbeJob,
    check_type: CheckType,
    result: ProbeResult,
    *,
    started_at: datetime,
    completed_at: datetime,
    duration_ms: int,
) -> ProbeRun:
    dns_ms = tls_ms = ttfb_ms = status_code = None
    details = result.details
    if isinstance(details, DnsDetails):
        dns_ms = duration_ms
    elif isinstance(details, TlsDetails):
        tls_ms = duration_ms
    elif isinstance(details, HttpDetails):
        ttfb_ms = details.ttfb_ms
        status_code = details.status_code

    return ProbeRun(
        domain_id=job.domain_id,
        check_id=job.check_id,
        check_type=check_type.value,
        success=bool(result.success),
        error_code=result.error_code,
        error_message=result.error_message,
        dns_ms=dns_ms,
        tls_ms=tls_ms,
        ttfb_ms=ttfb_ms,
        total_ms=duration_ms,
        status_code=status_code,
        snapshot=result.snapshot(),
        started_at=started_at,
        completed_at=completed_at,
    )


class ProbeExecutor:
    """
    Executes probe jobs against an explicit store, runner set and incident tracker.

    Runners own their timeouts. `deadlines` is only a watchdog for runners that
    break that contract: a run past its deadline is abandoned and nothing is
    persisted for it.
    """

    def __init__(
        self,
        store: ProbeStore,
        runners: Mapping[CheckType, Runner],
        incident_tracker: IncidentTracker,
        *,
        deadlines: Optional[Mapping[CheckType, float]] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.runners = dict(runners)
        self.incident_tracker = incident_tracker
        self.deadlines = dict(deadlines or {})
        self.clock = clock

    async def execute(self, job: ProbeJob) -> Optional[ProbeRun]:
        check_type = CheckType.parse(job.check_type)
        runner = self.runners.get(check_type) if check_type is not None else None
        if check_type is None or runner is None:
            logger.warning("Unknown check type", check_type=job.check_type, domain=job.domain_name)
            return None

        log = logger.bind(domain=job.domain_name, check_type=check_type.value)
        log.info("Executing probe")

        started_at = self.clock()
        started = time.perf_counter()
        deadline = self.deadlines.get(check_type)
        try:
            if deadline:
                result = await asyncio.wait_for(runner(job.domain_name), timeout=deadline)
            else:
                result = await runner(job.domain_name)
        except asyncio.CancelledError:
            log.info("Probe abandoned")
            raise
        except asyncio.TimeoutError:
            log.error("Probe runner exceeded its deadline; abandoned", deadline_seconds=deadline)
            return None
        except Exception as e:
            log.error("Probe runner raised", error=f"{type(e).__name__}: {e}")
            return None

        duration_ms = int(round((time.perf_counter() - started) * 1000.0))
        run = build_probe_run(
            job,
            check_type,
            result,
            started_at=started_at,
            completed_at=self.clock(),
            duration_ms=duration_ms,
        )

        # The run and its incident evaluation are one unit; a shutdown arriving
        # here does not split them.
        await asyncio.shield(asyncio.to_thread(self._record, job, check_type, run, result))
        return run

    def _record(self, job: ProbeJob, check_type: CheckType, run: ProbeRun, result: ProbeResult) -> None:
        self.store.save_probe_run(run)
        logger.info(
            "Probe completed",
            domain=job.domain_name,
            check_type=check_type.value,
            success=run.success,
            error_code=run.error_code,
            duration_ms=run.total_ms,
        )
        self.incident_tracker.evaluate(
            domain_id=job.domain_id,
            domain_name=job.domain_name,
            check_type=check_type,
            result=result,
        )
