from __future__ import annotations

import logging

from linkingest.core.platforms import detect_platform
from linkingest.core.urls import is_unsafe_url, normalize_url
from linkingest.schemas.ingestion import MAX_INGESTION_DEPTH, EnqueueResult, IngestionJobPayload
from linkingest.services.repository import IngestionRepository
from linkingest.strategies.registry import match_strategy

logger = logging.getLogger(__name__)


async def enqueue_ingestion_job(
    repository: IngestionRepository,
    *,
    profile_id: str,
    source_url: str,
    depth: int = 0,
) -> EnqueueResult:
    """Schedule an import of ``source_url`` for a profile.

    ``job_id`` is ``None`` when no strategy supports the URL or the depth
    is outside the allowed range. Repeated calls for the same profile and
    canonical URL return the job already pending, running or recently
    completed.
    """
    if is_unsafe_url(source_url):
        logger.info("refusing unsafe source url for profile=%s", profile_id)
        return EnqueueResult(job_id=None, detected_platform="unknown")

    normalized = normalize_url(source_url)
    detected = detect_platform(normalized)
    strategy = match_strategy(normalized)
    if strategy is None:
        logger.debug("no ingestion strategy for %s (platform=%s)", normalized, detected.platform.id)
        return EnqueueResult(job_id=None, detected_platform=detected.platform.id)

    if depth < 0 or depth > min(MAX_INGESTION_DEPTH, strategy.max_depth):
        logger.info(
            "skipping %s import at depth=%s for profile=%s (max=%s)",
            strategy.platform_id,
            depth,
            profile_id,
            strategy.max_depth,
        )
        return EnqueueResult(job_id=None, detected_platform=strategy.platform_id)

    dedup_key = strategy.parse(normalized)
    payload = IngestionJobPayload(
        profile_id=profile_id,
        source_url=dedup_key,
        dedup_key=dedup_key,
        depth=depth,
    )
    job_id, created = await repository.enqueue_job(
        job_type=strategy.job_type,
        payload=payload,
        priority=depth,
    )
    if created:
        logger.info("enqueued %s job=%s profile=%s depth=%s", strategy.job_type, job_id, profile_id, depth)
    else:
        logger.debug("reusing %s job=%s profile=%s", strategy.job_type, job_id, profile_id)
    return EnqueueResult(job_id=job_id, detected_platform=strategy.platform_id, created=created)
