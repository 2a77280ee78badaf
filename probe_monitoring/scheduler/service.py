"""Wires the store, runners, probe scheduler and outbox into one service lifecycle."""

import asyncio
from typing import List, Mapping, Optional

import httpx
import structlog

from domain_probes.common_probe import CheckType
from ..config import MonitorConfig
from ..notifications.outbox import Deliver, OutboxPassSummary, OutboxProcessor, log_delivery
from ..reporting.incident_tracker import IncidentTracker
from ..storage.db import ProbeStore
from ..storage.models import Domain
from .job_scheduler import JobScheduler
from .probe_executor import ProbeExecutor, Runner, build_runners, runner_deadlines
from .probe_scheduler import ProbeScheduler


logger = structlog.get_logger(__name__)

RECONCILE_JOB_ID = "probe_reconcile"
DISPATCH_JOB_ID = "probe_dispatch"
OUTBOX_JOB_ID = "notification_outbox"


class MonitorService:
    """Owns every long-lived component of the probe monitor."""

    def __init__(
        self,
        config: MonitorConfig,
        *,
        store: Optional[ProbeStore] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        runners: Optional[Mapping[CheckType, Runner]] = None,
        deliver: Deliver = log_delivery,
        job_scheduler: Optional[JobScheduler] = None,
    ):
        self.config = config
        self.store = store or ProbeStore(config.storage.db_path)

        self._owns_http_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient()

        self.incident_tracker = IncidentTracker(self.store, channels=config.notifications.channels)
        self.executor = ProbeExecutor(
            self.store,
            runners or build_runners(config.probes, self.http_client),
            self.incident_tracker,
            deadlines=runner_deadlines(config.probes, grace_seconds=config.scheduler.watchdog_grace_seconds),
        )
        self.probe_scheduler = ProbeScheduler(
            self.store,
            self.executor,
            max_concurrency=config.scheduler.max_concurrency,
        )
        self.outbox = OutboxProcessor(
            self.store,
            deliver=deliver,
            batch_size=config.notifications.batch_size,
            max_retries=config.notifications.max_retries,
        )
        self.jobs = job_scheduler or JobScheduler()
        self.running = False

    def seed_domains(self) -> List[Domain]:
        """Create or update the configured domains. Entries that fail are logged and skipped."""
        seeded: List[Domain] = []
        for entry in self.config.domains:
            try:
                group_id = self.store.ensure_group(entry.group).id if entry.group else None
                domain = self.store.upsert_domain(
                    entry.domain,
                    enabled=entry.enabled,
                    interval_minutes=entry.interval_minutes,
                    group_id=group_id,
                    checks=entry.checks,
                )
            except Exception as e:
                logger.error("Failed to seed domain", domain=entry.domain, error=str(e))
                continue
            seeded.append(domain)

        if self.config.domains:
            logger.info("Seeded domains from config", configured=len(self.config.domains), seeded=len(seeded))
        return seeded

    async def prepare(self) -> None:
        await asyncio.to_thread(self.store.ensure_schema)
        await asyncio.to_thread(self.seed_domains)

    async def start(self) -> None:
        """Prepare the store and start the reconcile, dispatch and outbox loops."""
        if self.running:
            logger.warning("Monitor service already running")
            return

        await self.prepare()

        scheduler_config = self.config.scheduler
        self.jobs.add_interval_job(
            RECONCILE_JOB_ID,
            self.probe_scheduler.reconcile_and_dispatch,
            seconds=scheduler_config.reconcile_interval_seconds,
            description="Reconcile probe jobs with the configuration store",
            run_immediately=True,
        )
        self.jobs.add_interval_job(
            DISPATCH_JOB_ID,
            self.probe_scheduler.dispatch_due,
            seconds=scheduler_config.tick_seconds,
            description="Dispatch due probe jobs",
        )
        self.jobs.add_interval_job(
            OUTBOX_JOB_ID,
            self.outbox.run_pass,
            seconds=self.config.notifications.poll_interval_seconds,
            description="Process pending notifications",
        )
        await self.jobs.start()
        self.running = True
        logger.info(
            "Monitor service started",
            db_path=self.config.storage.db_path,
            max_concurrency=scheduler_config.max_concurrency,
        )

    async def stop(self) -> None:
        """Stop the loops, abandon in-flight probes, release the HTTP client."""
        if self.running:
            await self.jobs.stop()
            self.running = False
        await self.probe_scheduler.shutdown()
        if self._owns_http_client:
            await self.http_client.aclose()
        logger.info("Monitor service stopped")

    async def run_once(self) -> OutboxPassSummary:
        """Probe every enabled (domain, check) pair once, then drain the outbox once."""
        try:
            await self.prepare()
            await self.probe_scheduler.reconcile()
            dispatched = await self.probe_scheduler.tick()
            logger.info("Dispatched probes", count=len(dispatched))
            await self.probe_scheduler.wait_idle()
            return await self.outbox.process_pending()
        finally:
            await self.probe_scheduler.shutdown()
            if self._owns_http_client:
                await self.http_client.aclose()
