from __future__ import annotations

import asyncio

import pytest

from probe_monitoring.scheduler.probe_executor import ProbeJob
from probe_monitoring.scheduler.probe_scheduler import JobKey, ProbeScheduler, next_slot
from probe_monitoring.storage.db import ProbeStore


class RecordingExecutor:
    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []
        self.gate: asyncio.Event | None = None
        self.fail_for: set[str] = set()
        self.active = 0
        self.peak = 0

    async def execute(self, job: ProbeJob):
        self.calls.append((job.domain_name, job.check_type))
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            if self.gate is not None:
                await self.gate.wait()
            else:
                await asyncio.sleep(0.01)
            if job.domain_name in self.fail_for:
                raise RuntimeError("executor blew up")
        finally:
            self.active -= 1


class BrokenStore:
    def list_enabled_domains_with_enabled_checks(self):
        raise OSError("database is locked")


def test_next_slot_coalesces_missed_firings() -> None:
    assert next_slot(0, 300, 100) == 300
    assert next_slot(0, 300, 300) == 600
    assert next_slot(0, 300, 700) == 900


@pytest.mark.asyncio
async def test_new_jobs_fire_immediately_then_every_interval(store: ProbeStore, clock) -> None:
    store.create_domain("example.com", interval_minutes=5)
    executor = RecordingExecutor()
    scheduler = ProbeScheduler(store, executor, clock=clock)

    summary = await scheduler.reconcile()
    assert summary is not None and len(summary.added) == 3

    assert len(await scheduler.tick()) == 3
    await scheduler.wait_idle()
    assert sorted(c[1] for c in executor.calls) == ["DNS", "HTTP", "TLS"]

    clock.advance(299)
    assert await scheduler.tick() == []

    clock.advance(1)
    assert len(await scheduler.tick()) == 3
    await scheduler.wait_idle()
    assert len(executor.calls) == 6


@pytest.mark.asyncio
async def test_only_enabled_domains_and_checks_are_scheduled(store: ProbeStore, clock) -> None:
    a = store.create_domain("a.example")
    b = store.create_domain("b.example")
    store.set_check_enabled(a.id, "TLS", False)
    store.set_domain_enabled(b.id, False)
    scheduler = ProbeScheduler(store, RecordingExecutor(), clock=clock)

    await scheduler.reconcile()

    assert set(scheduler.jobs) == {JobKey(a.id, "DNS"), JobKey(a.id, "HTTP")}


@pytest.mark.asyncio
async def test_reconcile_is_idempotent(store: ProbeStore, clock) -> None:
    store.create_domain("example.com")
    scheduler = ProbeScheduler(store, RecordingExecutor(), clock=clock)

    await scheduler.reconcile()
    second = await scheduler.reconcile()

    assert second is not None and not second.changed
    assert len(scheduler.jobs) == 3


@pytest.mark.asyncio
async def test_disabled_domain_jobs_are_cancelled(store: ProbeStore, clock) -> None:
    domain = store.create_domain("example.com")
    executor = RecordingExecutor()
    scheduler = ProbeScheduler(store, executor, clock=clock)
    await scheduler.reconcile()
    await scheduler.tick()
    await scheduler.wait_idle()

    store.set_domain_enabled(domain.id, False)
    summary = await scheduler.reconcile()

    assert summary is not None and len(summary.removed) == 3
    assert scheduler.jobs == {}
    clock.advance(600)
    assert await scheduler.tick() == []
    assert len(executor.calls) == 3


@pytest.mark.asyncio
async def test_deleted_domain_jobs_are_cancelled(store: ProbeStore, clock) -> None:
    keep = store.create_domain("keep.example")
    gone = store.create_domain("gone.example")
    scheduler = ProbeScheduler(store, RecordingExecutor(), clock=clock)
    await scheduler.reconcile()

    store.delete_domain(gone.id)
    await scheduler.reconcile()

    assert {k.domain_id for k in scheduler.jobs} == {keep.id}


@pytest.mark.asyncio
async def test_interval_change_reanchors_on_last_firing(store: ProbeStore, clock) -> None:
    domain = store.create_domain("example.com", interval_minutes=5)
    executor = RecordingExecutor()
    scheduler = ProbeScheduler(store, executor, clock=clock)
    await scheduler.reconcile()
    await scheduler.tick()
    await scheduler.wait_idle()

    store.set_domain_interval(domain.id, 10)
    clock.advance(60)
    summary = await scheduler.reconcile()
    assert summary is not None and len(summary.updated) == 3

    clock.advance(240)  # t=300: old interval would fire here
    assert await scheduler.tick() == []
    clock.advance(300)  # t=600
    assert len(await scheduler.tick()) == 3
    await scheduler.wait_idle()


@pytest.mark.asyncio
async def test_same_key_never_runs_concurrently(store: ProbeStore, clock) -> None:
    store.create_domain("example.com", interval_minutes=1)
    executor = RecordingExecutor()
    executor.gate = asyncio.Event()
    scheduler = ProbeScheduler(store, executor, clock=clock)
    await scheduler.reconcile()

    assert len(await scheduler.tick()) == 3
    await asyncio.sleep(0)
    clock.advance(60)
    # Every key is still in flight: the firing is skipped, not queued.
    assert await scheduler.tick() == []
    assert len(scheduler.in_flight) == 3

    executor.gate.set()
    await scheduler.wait_idle()
    assert len(executor.calls) == 3

    clock.advance(60)
    assert len(await scheduler.tick()) == 3
    await scheduler.wait_idle()
    assert len(executor.calls) == 6


@pytest.mark.asyncio
async def test_concurrency_is_bounded(store: ProbeStore, clock) -> None:
    for name in ("a.example", "b.example", "c.example"):
        store.create_domain(name)
    executor = RecordingExecutor()
    scheduler = ProbeScheduler(store, executor, max_concurrency=2, clock=clock)

    await scheduler.reconcile()
    assert len(await scheduler.tick()) == 9
    await scheduler.wait_idle()

    assert len(executor.calls) == 9
    assert executor.peak <= 2


@pytest.mark.asyncio
async def test_failing_job_does_not_affect_siblings(store: ProbeStore, clock) -> None:
    store.create_domain("bad.example")
    store.create_domain("good.example")
    executor = RecordingExecutor()
    executor.fail_for = {"bad.example"}
    scheduler = ProbeScheduler(store, executor, clock=clock)

    await scheduler.reconcile()
    await scheduler.tick()
    await scheduler.wait_idle()
    clock.advance(300)
    assert len(await scheduler.tick()) == 6
    await scheduler.wait_idle()

    assert sum(1 for c in executor.calls if c[0] == "good.example") == 6
    assert sum(1 for c in executor.calls if c[0] == "bad.example") == 6


@pytest.mark.asyncio
async def test_reconcile_failure_keeps_existing_jobs(store: ProbeStore, clock) -> None:
    store.create_domain("example.com")
    scheduler = ProbeScheduler(store, RecordingExecutor(), clock=clock)
    await scheduler.reconcile()

    scheduler.store = BrokenStore()
    assert await scheduler.reconcile() is None
    await scheduler.reconcile_and_dispatch()

    assert len(scheduler.jobs) == 3
    await scheduler.wait_idle()


@pytest.mark.asyncio
async def test_shutdown_abandons_in_flight_probes(store: ProbeStore, clock) -> None:
    store.create_domain("example.com")
    executor = RecordingExecutor()
    executor.gate = asyncio.Event()
    scheduler = ProbeScheduler(store, executor, clock=clock)
    await scheduler.reconcile()
    await scheduler.tick()
    await asyncio.sleep(0)

    await scheduler.shutdown()

    assert scheduler.in_flight == []
    assert scheduler.jobs == {}
    assert await scheduler.tick() == []
