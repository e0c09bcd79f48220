from __future__ import annotations

import argparse
import asyncio
import logging
import random
import time

import httpx
from opentelemetry import trace

from linkingest.core.config import get_settings
from linkingest.core.telemetry import (
    configure_ingestion_logging,
    setup_ingestion_telemetry,
    shutdown_ingestion_telemetry,
)
from linkingest.jobs.scheduler import run_ingestion_batch
from linkingest.services.repository import get_repository

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


async def run_worker(*, once: bool = False, limit: int | None = None) -> None:
    settings = get_settings()
    configure_ingestion_logging(settings)
    telemetry_runtime = setup_ingestion_telemetry(settings)
    repository = get_repository()
    client = httpx.AsyncClient(timeout=settings.fetch_timeout_seconds, follow_redirects=False)

    backoff = settings.poll_interval_seconds
    last_reap_at = 0.0

    try:
        while True:
            try:
                with tracer.start_as_current_span("ingestion.poll_cycle"):
                    now = time.monotonic()
                    reap_stuck = now - last_reap_at >= settings.stuck_job_reaper_interval_seconds
                    summary = await run_ingestion_batch(
                        repository,
                        limit=limit,
                        client=client,
                        settings=settings,
                        reap_stuck=reap_stuck,
                    )
                    if reap_stuck:
                        last_reap_at = now

                if once:
                    return
                backoff = settings.poll_interval_seconds
                if summary.processed == 0 and summary.skipped == 0:
                    await asyncio.sleep(settings.poll_interval_seconds)
            except Exception as exc:
                if once:
                    raise
                jitter = random.uniform(0.0, 0.5)
                sleep_for = min(backoff * (2.0 + jitter), settings.max_backoff_seconds)
                logger.exception("worker iteration failed: %s; retry in %.1fs", exc, sleep_for)
                await asyncio.sleep(sleep_for)
                backoff = sleep_for
    finally:
        await client.aclose()
        await repository.close()
        shutdown_ingestion_telemetry(telemetry_runtime)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Run the link-in-bio ingestion worker.")
    parser.add_argument("--once", action="store_true", help="process a single batch and exit")
    parser.add_argument("--limit", type=int, default=None, help="maximum jobs per batch")
    args = parser.parse_args(argv)
    asyncio.run(run_worker(once=args.once, limit=args.limit))


if __name__ == "__main__":
    main()
