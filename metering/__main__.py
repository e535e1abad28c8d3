import argparse
import asyncio
import json
import logging
import signal
from typing import Optional

from db.config import engine, SessionLocal
from models.mysql_models import Base
from providers.digitalocean import get_compute_client, close_compute_client
from .archive import get_run_archive
from .config import metering_config
from .job import HourlyMeteringJob
from .scheduler import MeteringScheduler


logging.basicConfig(
    level=getattr(logging, metering_config.log_level),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


class GracefulShutdown:
    def __init__(self):
        self.shutdown_event = asyncio.Event()
        self._scheduler: Optional[MeteringScheduler] = None

    def set_scheduler(self, scheduler: MeteringScheduler):
        self._scheduler = scheduler

    async def shutdown(self, sig=None):
        if sig:
            logger.info(f"Received signal {sig.name}")

        logger.info("Initiating graceful shutdown...")

        if self._scheduler:
            await self._scheduler.stop()

        await close_compute_client()
        self.shutdown_event.set()


def build_job() -> HourlyMeteringJob:
    Base.metadata.create_all(bind=engine)
    archive = get_run_archive() if metering_config.archive_enabled else None
    return HourlyMeteringJob(
        SessionLocal,
        get_compute_client(),
        config=metering_config,
        archive=archive
    )


async def run_scheduler():
    shutdown_handler = GracefulShutdown()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda s=sig: asyncio.create_task(shutdown_handler.shutdown(s))
        )

    scheduler = MeteringScheduler(build_job(), metering_config.interval_seconds)
    shutdown_handler.set_scheduler(scheduler)

    try:
        await scheduler.start()
    finally:
        if not shutdown_handler.shutdown_event.is_set():
            await shutdown_handler.shutdown()


async def run_once() -> dict:
    job = build_job()
    try:
        report = await job.run_tick()
    finally:
        await close_compute_client()
    return report.to_dict()


def main():
    parser = argparse.ArgumentParser(
        description="Hourly usage metering and reclamation worker"
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    subparsers.add_parser("start", help="Run the metering scheduler")
    subparsers.add_parser("tick", help="Run a single metering tick now")

    args = parser.parse_args()

    if args.command == "start":
        logger.info("Starting metering scheduler...")
        logger.info(f"Interval: {metering_config.interval_seconds}s, provider timeout: {metering_config.provider_timeout}s")
        asyncio.run(run_scheduler())

    elif args.command == "tick":
        report = asyncio.run(run_once())
        print(json.dumps(report, default=str, indent=2))
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
