from __future__ import annotations

import logging

import httpx

from linkingest.core.errors import InvalidUrlError
from linkingest.schemas.ingestion import ExtractionResult, IngestionJob
from linkingest.services.fetcher import FetchOptions
from linkingest.strategies.registry import get_strategy

logger = logging.getLogger(__name__)


async def execute_ingestion_job(
    job: IngestionJob,
    *,
    client: httpx.AsyncClient | None = None,
    fetch_options: FetchOptions | None = None,
) -> ExtractionResult:
    strategy = get_strategy(job.job_type)
    if strategy is None:
        raise InvalidUrlError(f"no strategy handles job type {job.job_type!r}")

    fetched = await strategy.fetch(job.payload.source_url, client=client, options=fetch_options)
    logger.debug(
        "fetched %s for job=%s status=%s bytes=%s",
        fetched.final_url,
        job.id,
        fetched.status_code,
        len(fetched.html),
    )
    return strategy.extract(fetched.html)
