"""Scheduler module for orchestrating probe jobs."""

from .job_scheduler import JobScheduler
from .probe_executor import ProbeExecutor, ProbeJob
from .probe_scheduler import JobKey, ProbeScheduler
from .service import MonitorService

__all__ = ["JobKey", "JobScheduler", "MonitorService", "ProbeExecutor", "ProbeJob", "ProbeScheduler"]
