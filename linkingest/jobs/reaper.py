from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from linkingest.core.config import Settings
from linkingest.schemas.ingestion import IngestionJob
from linkingest.services.repository import IngestionRepository

logger = logging.getLogger(__name__)


def job_is_stuck(job: IngestionJob, *, stuck_after: timedelta, now: datetime | None = None) -> bool:
    now = now or datetime.now(timezone.utc)
    return job.status == "running" and job.updated_at <= now - stuck_after


async def reap_stuck_jobs(repository: IngestionRepository, settings: Settings) -> int:
    requeued = await repository.requeue_stuck_jobs(
        stuck_after=timedelta(minutes=max(1, settings.stuck_job_after_minutes)),
        limit=settings.stuck_job_reaper_batch_size,
    )
    if requeued:
        logger.info("requeued stuck ingestion jobs: %s", requeued)
    return requeued
