from __future__ import annotations

import logging
from collections.abc import Iterable

from linkingest.core.config import Settings, get_settings
from linkingest.schemas.ingestion import MAX_INGESTION_DEPTH, ExtractedLink
from linkingest.services.ingestion import enqueue_ingestion_job
from linkingest.services.repository import IngestionRepository
from linkingest.strategies.registry import match_strategy

logger = logging.getLogger(__name__)


async def enqueue_followup_jobs(
    repository: IngestionRepository,
    *,
    profile_id: str,
    parent_depth: int,
    links: Iterable[ExtractedLink],
    settings: Settings | None = None,
) -> list[str]:
    """Schedule imports for extracted links that point at other supported link-in-bio pages."""
    settings = settings or get_settings()
    child_depth = parent_depth + 1
    depth_cap = min(MAX_INGESTION_DEPTH, settings.followup_max_depth)
    if child_depth > depth_cap:
        return []

    job_ids: list[str] = []
    seen: set[str] = set()
    for link in links:
        strategy = match_strategy(link.url)
        if strategy is None:
            continue
        if child_depth > strategy.max_depth:
            logger.debug("not following %s link at depth=%s", strategy.platform_id, child_depth)
            continue
        dedup_key = strategy.canonicalize(link.url)
        if dedup_key is None or dedup_key in seen:
            continue
        seen.add(dedup_key)

        result = await enqueue_ingestion_job(
            repository,
            profile_id=profile_id,
            source_url=dedup_key,
            depth=child_depth,
        )
        if result.job_id is not None and result.job_id not in job_ids:
            job_ids.append(result.job_id)
    return job_ids
