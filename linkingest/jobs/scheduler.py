from __future__ import annotations

import logging
from typing import Any, Literal

import httpx
from opentelemetry import trace

from linkingest.core.config import Settings, get_settings
from linkingest.core.errors import MergeConflictError, ParseError, describe_error, failure_disposition
from linkingest.core.telemetry import annotate_span, job_span_attributes
from linkingest.jobs.executor import execute_ingestion_job
from linkingest.jobs.reaper import reap_stuck_jobs
from linkingest.schemas.ingestion import BatchSummary, ExtractionResult, IngestionJob
from linkingest.services.fetcher import FetchOptions
from linkingest.services.followups import enqueue_followup_jobs
from linkingest.services.merge import MergePlan
from linkingest.services.repository import IngestionRepository, RepositoryNotFoundError

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

JobOutcome = Literal["succeeded", "failed", "retried", "skipped"]


async def run_ingestion_batch(
    repository: IngestionRepository,
    *,
    limit: int | None = None,
    client: httpx.AsyncClient | None = None,
    settings: Settings | None = None,
    reap_stuck: bool = True,
) -> BatchSummary:
    settings = settings or get_settings()
    summary = BatchSummary()
    if reap_stuck:
        summary.requeued_stuck = await reap_stuck_jobs(repository, settings)

    jobs = await repository.list_due_jobs(limit or settings.batch_size)
    if not jobs:
        return summary

    fetch_options = FetchOptions.from_settings(settings)
    owns_client = client is None
    http_client = client or httpx.AsyncClient(timeout=settings.fetch_timeout_seconds, follow_redirects=False)
    try:
        for job in jobs:
            with tracer.start_as_current_span("ingestion.process_job") as job_span:
                annotate_span(job_span, job_span_attributes(job))
                outcome = await process_job(
                    repository,
                    job,
                    client=http_client,
                    fetch_options=fetch_options,
                    settings=settings,
                )
                annotate_span(job_span, {"ingestion.job.outcome": outcome})
            _tally(summary, outcome)
    finally:
        if owns_client:
            await http_client.aclose()

    logger.info(
        "ingestion batch processed=%s succeeded=%s failed=%s retried=%s skipped=%s",
        summary.processed,
        summary.succeeded,
        summary.failed,
        summary.retried,
        summary.skipped,
    )
    return summary


async def process_job(
    repository: IngestionRepository,
    job: IngestionJob,
    *,
    client: httpx.AsyncClient | None = None,
    fetch_options: FetchOptions | None = None,
    settings: Settings | None = None,
) -> JobOutcome:
    """Claim and run one job; every failure is recorded on the job row."""
    settings = settings or get_settings()
    claimed = await repository.claim_job(job.id)
    if claimed is None:
        logger.debug("job=%s already claimed or not due", job.id)
        return "skipped"

    profile_id = claimed.payload.profile_id
    await repository.set_profile_ingestion_status(profile_id, "processing")

    parse_error: str | None = None
    try:
        try:
            extraction = await execute_ingestion_job(claimed, client=client, fetch_options=fetch_options)
        except ParseError as exc:
            # Nothing usable on the page; finish the job without links.
            logger.warning("job=%s parsed nothing from %s: %s", claimed.id, claimed.payload.source_url, exc)
            parse_error = describe_error(exc)
            extraction = ExtractionResult()

        plan = await _merge_with_retries(repository, profile_id, extraction, retries=settings.merge_conflict_retries)
        followup_job_ids = await enqueue_followup_jobs(
            repository,
            profile_id=profile_id,
            parent_depth=claimed.payload.depth,
            links=extraction.links,
            settings=settings,
        )
    except Exception as exc:
        return await _record_failure(repository, claimed, exc)

    result: dict[str, Any] = {
        "links_found": len(extraction.links),
        **plan.summary(),
        "followup_job_ids": followup_job_ids,
    }
    if parse_error is not None:
        result["parse_error"] = parse_error
    await repository.complete_job(claimed.id, result)
    await repository.set_profile_ingestion_status(profile_id, "idle")
    logger.info(
        "job=%s completed links=%s inserted=%s updated=%s followups=%s",
        claimed.id,
        result["links_found"],
        result["inserted"],
        result["updated"],
        len(followup_job_ids),
    )
    return "succeeded"


async def _merge_with_retries(
    repository: IngestionRepository,
    profile_id: str,
    extraction: ExtractionResult,
    *,
    retries: int,
) -> MergePlan:
    attempt = 0
    while True:
        try:
            return await repository.merge_extraction(profile_id, extraction)
        except MergeConflictError:
            if attempt >= max(0, retries):
                raise
            attempt += 1
            logger.info("merge conflict for profile=%s; retry %s/%s", profile_id, attempt, retries)


async def _record_failure(repository: IngestionRepository, job: IngestionJob, exc: Exception) -> JobOutcome:
    error = describe_error(exc)
    if isinstance(exc, RepositoryNotFoundError):
        retryable = False
    else:
        retryable = failure_disposition(exc) in {"retryable", "conflict"}

    failed = await repository.fail_job(job.id, error, retryable=retryable)
    if failed.status == "pending":
        logger.warning("job=%s failed attempt=%s; retry at %s: %s", job.id, failed.attempts, failed.run_at, error)
        await repository.set_profile_ingestion_status(job.payload.profile_id, "idle", error)
        return "retried"

    logger.error("job=%s failed permanently after attempt=%s: %s", job.id, failed.attempts, error)
    await repository.set_profile_ingestion_status(job.payload.profile_id, "failed", error)
    return "failed"


def _tally(summary: BatchSummary, outcome: JobOutcome) -> None:
    if outcome == "skipped":
        summary.skipped += 1
        return
    summary.processed += 1
    if outcome == "succeeded":
        summary.succeeded += 1
    else:
        summary.failed += 1
        if outcome == "retried":
            summary.retried += 1
