from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal

import structlog

from probe_monitoring.config import MonitorConfig, load_config
from probe_monitoring.scheduler.service import MonitorService


logger = structlog.get_logger("probe-monitor")


def configure_logging(level_name: str) -> int:
    level = getattr(logging, str(level_name or "INFO").upper(), logging.INFO)
    if not isinstance(level, int):
        level = logging.INFO

    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    # Request URLs can carry webhook tokens.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)

    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="ISO"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
    return level


async def run_service(config: MonitorConfig, *, once: bool) -> int:
    service = MonitorService(config)
    if once:
        summary = await service.run_once()
        logger.info("Single cycle finished", sent=summary.sent, retried=summary.retried, failed=summary.failed)
        return 0

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Not available on every platform; Ctrl+C still cancels asyncio.run.
            pass

    await service.start()
    try:
        await stop_event.wait()
        logger.info("Shutdown requested")
    finally:
        await service.stop()
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Domain probe monitor")
    parser.add_argument(
        "--config",
        default=None,
        help="Path to YAML config (default: $PROBE_MONITOR_CONFIG or config/probe-monitor.yaml)",
    )
    parser.add_argument("--once", action="store_true", help="Probe every enabled check once and exit")
    parser.add_argument(
        "--log-level",
        default=None,
        help="Logging level (INFO, WARNING, ...); overrides the config file",
    )
    args = parser.parse_args()

    try:
        config = load_config(args.config)
    except Exception as e:
        configure_logging(args.log_level or os.getenv("LOG_LEVEL", "INFO"))
        logger.error("Invalid configuration", error=str(e))
        return 2

    configure_logging(args.log_level or config.log_level)
    return asyncio.run(run_service(config, once=bool(args.once)))


if __name__ == "__main__":
    raise SystemExit(main())
