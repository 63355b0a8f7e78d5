from __future__ import annotations

import argparse
import asyncio
import logging

from busqueda.core.config import get_settings
from busqueda.core.telemetry import setup_telemetry, shutdown_telemetry
from busqueda.services.ingestion import build_ingestion_service
from busqueda.workers.reconciliation import ReconciliationScheduler

logger = logging.getLogger(__name__)


async def run_worker(*, once: bool = False) -> None:
    settings = get_settings()
    telemetry_runtime = setup_telemetry(settings)
    ingestion = build_ingestion_service(settings)
    scheduler = ReconciliationScheduler.from_settings(settings, ingestion)

    try:
        await ingestion.repository.ensure_schema()
        if once:
            await scheduler.run_once()
            return

        await scheduler.start()
        # Runs until cancelled.
        await asyncio.Event().wait()
    finally:
        await scheduler.stop()
        await ingestion.repository.close()
        shutdown_telemetry(telemetry_runtime)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Run reconciliation sweeps against the upstream sources.")
    parser.add_argument("--once", action="store_true", help="run a single sweep and exit")
    args = parser.parse_args(argv)
    try:
        asyncio.run(run_worker(once=args.once))
    except KeyboardInterrupt:
        logger.info("reconciliation worker interrupted")


if __name__ == "__main__":
    main()
