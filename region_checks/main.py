from __future__ import annotations

import argparse
import asyncio
import json
import os

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from region_checks.config import ProbeConfig, load_config
from region_checks.fanout import trigger_checks
from region_checks.h2_probe import run_probe
from region_checks.logging_setup import configure_logging
from region_checks.persistence import TelemetryStore


logger = structlog.get_logger(__name__)


def build_scheduler(config: ProbeConfig, store: TelemetryStore) -> AsyncIOScheduler:
    """Cron job for the fan-out. Runs may overlap since losing batches keep running detached."""
    scheduler = AsyncIOScheduler(timezone=config.timezone)
    scheduler.add_job(
        trigger_checks,
        trigger=CronTrigger.from_crontab(config.schedule_cron, timezone=config.timezone),
        args=(config, store),
        id="trigger_checks",
        name="Fan out regional checks",
        coalesce=True,
        max_instances=3,
        misfire_grace_time=30,
    )
    return scheduler


async def run_scheduler(config: ProbeConfig) -> int:
    store = TelemetryStore(config)
    await store.connect()
    scheduler = build_scheduler(config, store)
    scheduler.start()
    logger.info("Job scheduler started", cron=config.schedule_cron, regions=list(config.regions))
    try:
        await asyncio.Event().wait()
    finally:
        scheduler.shutdown(wait=False)
        await store.close()
        logger.info("Job scheduler stopped")
    return 0


async def run_once(config: ProbeConfig, command: str) -> int:
    store = TelemetryStore(config)
    try:
        if command == "trigger":
            pending = await trigger_checks(config, store)
            return 1 if pending else 0
        if command == "probe":
            result = await run_probe(config)
            print(json.dumps(result.to_dict(), indent=2, sort_keys=True))
            await store.log_to_database(result.start_time, result.connection, result.requests)
            return 0
        if command == "purge":
            await store.purge_old_data()
            return 0
        if command == "init-db":
            await store.ensure_schema()
            return 0
    finally:
        await store.close()
    raise ValueError(f"Unknown command: {command}")


def main() -> int:
    parser = argparse.ArgumentParser(description="Regional HTTP/2 latency checks")
    parser.add_argument(
        "command",
        choices=["serve", "scheduler", "trigger", "probe", "purge", "init-db"],
        help="serve: probe endpoint; scheduler: cron fan-out; others run once and exit",
    )
    parser.add_argument("--config", default=os.getenv("REGION_CHECKS_CONFIG"), help="Path to YAML config")
    parser.add_argument("--log-level", default=None, help="Logging level (INFO, WARNING, ...)")
    args = parser.parse_args()

    config = load_config(args.config)
    configure_logging(args.log_level or config.log_level, config.log_format)

    if args.command == "serve":
        from region_checks.server import serve

        serve(config)
        return 0
    if args.command == "scheduler":
        return asyncio.run(run_scheduler(config))
    return asyncio.run(run_once(config, args.command))


if __name__ == "__main__":
    raise SystemExit(main())
