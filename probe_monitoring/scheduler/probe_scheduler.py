"""Per-(domain, check) probe scheduling with a bounded worker pool."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

import structlog

from ..storage.db import ProbeStore
from ..storage.models import validate_interval_minutes
from .probe_executor import ProbeExecutor, ProbeJob


logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class JobKey:
    domain_id: str
    check_type: str

    def __str__(self) -> str:
        return f"probe-{self.domain_id}-{self.check_type}"


@dataclass
class ScheduledProbe:
    job: ProbeJob
    interval_seconds: float
    next_fire_at: float
    last_fire_at: Optional[float] = None
    fire_count: int = 0


@dataclass(frozen=True)
class ReconcileSummary:
    added: List[JobKey] = field(default_factory=list)
    removed: List[JobKey] = field(default_factory=list)
    updated: List[JobKey] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.added or self.removed or self.updated)


def next_slot(fire_at: float, interval_seconds: float, now: float) -> float:
    """First slot on the fire_at + k*interval grid that is strictly after `now`."""
    nxt = fire_at + interval_seconds
    if nxt > now:
        return nxt
    # Missed slots collapse into the firing happening now.
    missed = int((now - fire_at) // interval_seconds)
    return fire_at + (missed + 1) * interval_seconds


class ProbeScheduler:
    """
    Keeps one entry per (domain, enabled check) with its next fire time.

    `reconcile()` syncs the entries with the store: new keys fire immediately,
    vanished keys are cancelled, changed intervals are re-anchored on the last
    firing. `tick()` dispatches due keys onto the worker pool. A key whose
    previous run is still in flight skips that firing, so one key never runs
    twice at the same time.
    """

    def __init__(
        self,
        store: ProbeStore,
        executor: ProbeExecutor,
        *,
        max_concurrency: int = 10,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.executor = executor
        self.max_concurrency = max(1, int(max_concurrency))
        self.clock = clock
        self._semaphore = asyncio.Semaphore(self.max_concurrency)
        self._jobs: Dict[JobKey, ScheduledProbe] = {}
        self._in_flight: Dict[JobKey, asyncio.Task] = {}
        self._closed = False

    @property
    def jobs(self) -> Dict[JobKey, ScheduledProbe]:
        return dict(self._jobs)

    @property
    def in_flight(self) -> List[JobKey]:
        return list(self._in_flight)

    async def reconcile(self) -> Optional[ReconcileSummary]:
        """Sync scheduled entries with the store. Returns None when the store could not be read."""
        if self._closed:
            return None
        try:
            pairs = await asyncio.to_thread(self.store.list_enabled_domains_with_enabled_checks)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Reconciliation failed; retrying next cycle", error=f"{type(e).__name__}: {e}")
            return None
        if self._closed:
            return None

        desired: Dict[JobKey, Tuple[ProbeJob, float]] = {}
        for domain, checks in pairs:
            try:
                minutes = validate_interval_minutes(domain.interval_minutes)
            except ValueError as e:
                logger.warning("Skipping domain with invalid interval", domain=domain.name, error=str(e))
                continue
            for check in checks:
                key = JobKey(domain_id=domain.id, check_type=check.check_type)
                job = ProbeJob(
                    domain_id=domain.id,
                    domain_name=domain.name,
                    check_id=check.id,
                    check_type=check.check_type,
                )
                desired[key] = (job, minutes * 60.0)

        now = self.clock()
        removed = [key for key in self._jobs if key not in desired]
        for key in removed:
            del self._jobs[key]
            logger.info("Cancelled probe job", job_key=str(key), still_running=key in self._in_flight)

        added: List[JobKey] = []
        updated: List[JobKey] = []
        for key, (job, interval_seconds) in desired.items():
            entry = self._jobs.get(key)
            if entry is None:
                self._jobs[key] = ScheduledProbe(job=job, interval_seconds=interval_seconds, next_fire_at=now)
                added.append(key)
                logger.info(
                    "Scheduled probe job",
                    domain=job.domain_name,
                    check_type=job.check_type,
                    interval_minutes=interval_seconds / 60.0,
                )
                continue
            if entry.job == job and entry.interval_seconds == interval_seconds:
                continue
            entry.job = job
            if entry.interval_seconds != interval_seconds:
                entry.interval_seconds = interval_seconds
                if entry.last_fire_at is not None:
                    entry.next_fire_at = entry.last_fire_at + interval_seconds
            updated.append(key)
            logger.info(
                "Updated probe job",
                domain=job.domain_name,
                check_type=job.check_type,
                interval_minutes=interval_seconds / 60.0,
            )

        summary = ReconcileSummary(added=added, removed=removed, updated=updated)
        if summary.changed:
            logger.info(
                "Reconciled probe jobs",
                added=len(added),
                removed=len(removed),
                updated=len(updated),
                scheduled=len(self._jobs),
            )
        return summary

    async def tick(self) -> List[JobKey]:
        """Dispatch every due key that is not already running."""
        if self._closed:
            return []
        now = self.clock()
        dispatched: List[JobKey] = []
        due = sorted(
            ((key, entry) for key, entry in self._jobs.items() if entry.next_fire_at <= now),
            key=lambda item: item[1].next_fire_at,
        )
        for key, entry in due:
            fire_at = entry.next_fire_at
            entry.next_fire_at = next_slot(fire_at, entry.interval_seconds, now)
            if key in self._in_flight:
                logger.warning(
                    "Previous probe still running; skipping this firing",
                    domain=entry.job.domain_name,
                    check_type=entry.job.check_type,
                )
                continue
            entry.last_fire_at = fire_at
            entry.fire_count += 1
            self._in_flight[key] = asyncio.create_task(self._run(key, entry.job), name=str(key))
            dispatched.append(key)
        return dispatched

    async def _run(self, key: JobKey, job: ProbeJob) -> None:
        try:
            async with self._semaphore:
                await self.executor.execute(job)
        except asyncio.CancelledError:
            logger.info("Probe job cancelled", job_key=str(key))
            raise
        except Exception as e:
            logger.error(
                "Error executing probe job",
                domain=job.domain_name,
                check_type=job.check_type,
                error=f"{type(e).__name__}: {e}",
            )
        finally:
            self._in_flight.pop(key, None)

    async def reconcile_and_dispatch(self) -> None:
        """Scheduler entry point: reconcile, then fire whatever became due. Never raises."""
        try:
            await self.reconcile()
            await self.tick()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Reconciliation cycle failed", error=f"{type(e).__name__}: {e}")

    async def dispatch_due(self) -> None:
        """Scheduler entry point for the dispatch tick. Never raises."""
        try:
            await self.tick()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Dispatch tick failed", error=f"{type(e).__name__}: {e}")

    async def wait_idle(self) -> None:
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight.values()), return_exceptions=True)

    async def shutdown(self) -> None:
        """Stop dispatching and abandon in-flight probes."""
        self._closed = True
        tasks = list(self._in_flight.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Probe scheduler stopped", abandoned=len(tasks), scheduled=len(self._jobs))
        self._jobs.clear()
