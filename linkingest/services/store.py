from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from linkingest.core.backoff import next_run_at
from linkingest.jobs.reaper import job_is_stuck
from linkingest.schemas.ingestion import (
    ExtractionResult,
    IngestionJob,
    IngestionJobPayload,
    IngestionStatus,
    ProfileSnapshot,
    SocialLink,
)
from linkingest.services.merge import MergePlan, plan_merge
from linkingest.services.repository import (
    STUCK_JOB_ERROR,
    RepositoryConflictError,
    RepositoryNotFoundError,
)

ACTIVE_JOB_STATUSES = frozenset({"pending", "running"})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryStore:
    """Process-local job and profile store with the same contract as the Postgres repository."""

    def __init__(
        self,
        *,
        job_max_attempts: int = 3,
        job_retry_base_seconds: int = 5,
        job_retry_max_seconds: int = 300,
        recently_completed_window_hours: int = 24,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.job_max_attempts = max(1, job_max_attempts)
        self.job_retry_base_seconds = max(0, job_retry_base_seconds)
        self.job_retry_max_seconds = max(0, job_retry_max_seconds)
        self.recently_completed_window = timedelta(hours=max(0, recently_completed_window_hours))
        self.clock = clock
        self.jobs: dict[str, IngestionJob] = {}
        self.profiles: dict[str, ProfileSnapshot] = {}
        self.links: dict[str, list[SocialLink]] = {}
        self._lock = asyncio.Lock()

    def add_profile(self, profile_id: str | None = None, **fields: Any) -> ProfileSnapshot:
        profile = ProfileSnapshot(id=profile_id or str(uuid4()), **fields)
        self.profiles[profile.id] = profile
        self.links.setdefault(profile.id, [])
        return profile

    def add_link(self, profile_id: str, url: str, **fields: Any) -> SocialLink:
        if profile_id not in self.profiles:
            raise RepositoryNotFoundError("profile not found")
        existing = self.links.setdefault(profile_id, [])
        fields.setdefault("platform", "website")
        fields.setdefault("platform_type", "custom")
        fields.setdefault("sort_order", len(existing))
        link = SocialLink(id=str(uuid4()), profile_id=profile_id, url=url, **fields)
        existing.append(link)
        return link

    def links_for(self, profile_id: str) -> list[SocialLink]:
        return sorted(self.links.get(profile_id, []), key=lambda link: link.sort_order)

    async def enqueue_job(
        self,
        *,
        job_type: str,
        payload: IngestionJobPayload,
        priority: int = 0,
    ) -> tuple[str, bool]:
        async with self._lock:
            existing_id = self._find_reusable_job_id(job_type=job_type, payload=payload)
            if existing_id is not None:
                return existing_id, False

            now = self.clock()
            job = IngestionJob(
                id=str(uuid4()),
                job_type=job_type,
                payload=payload,
                status="pending",
                attempts=0,
                max_attempts=self.job_max_attempts,
                run_at=now,
                priority=priority,
                created_at=now,
                updated_at=now,
            )
            self.jobs[job.id] = job
            return job.id, True

    async def get_job(self, job_id: str) -> IngestionJob:
        job = self.jobs.get(job_id)
        if job is None:
            raise RepositoryNotFoundError("job not found")
        return job.model_copy(deep=True)

    async def list_due_jobs(self, limit: int) -> list[IngestionJob]:
        now = self.clock()
        due = [job for job in self.jobs.values() if job.status == "pending" and job.run_at <= now]
        due.sort(key=lambda job: (job.priority, job.run_at))
        return [job.model_copy(deep=True) for job in due[: max(1, limit)]]

    async def claim_job(self, job_id: str) -> IngestionJob | None:
        async with self._lock:
            job = self.jobs.get(job_id)
            if job is None:
                raise RepositoryNotFoundError("job not found")
            now = self.clock()
            if job.status != "pending" or job.run_at > now:
                return None
            return self._save_job(job.model_copy(update={"status": "running", "updated_at": now}))

    async def complete_job(self, job_id: str, result_json: dict[str, Any]) -> IngestionJob:
        async with self._lock:
            job = self._running_job(job_id)
            return self._save_job(
                job.model_copy(
                    update={
                        "status": "completed",
                        "result_json": result_json,
                        "error": None,
                        "updated_at": self.clock(),
                    }
                )
            )

    async def fail_job(self, job_id: str, error: str, *, retryable: bool) -> IngestionJob:
        async with self._lock:
            job = self._running_job(job_id)
            now = self.clock()
            attempts = job.attempts + 1
            update: dict[str, Any] = {"attempts": attempts, "error": error, "updated_at": now, "status": "failed"}
            if retryable and attempts < job.max_attempts:
                update["status"] = "pending"
                update["run_at"] = next_run_at(
                    attempts,
                    base_seconds=self.job_retry_base_seconds,
                    max_seconds=self.job_retry_max_seconds,
                    now=now,
                )
            return self._save_job(job.model_copy(update=update))

    async def requeue_stuck_jobs(self, *, stuck_after: timedelta, limit: int) -> int:
        async with self._lock:
            now = self.clock()
            stuck = sorted(
                (job for job in self.jobs.values() if job_is_stuck(job, stuck_after=stuck_after, now=now)),
                key=lambda job: job.updated_at,
            )[: max(1, limit)]
            for job in stuck:
                self._save_job(
                    job.model_copy(
                        update={"status": "pending", "run_at": now, "error": STUCK_JOB_ERROR, "updated_at": now}
                    )
                )
            return len(stuck)

    async def reset_job_for_retry(self, job_id: str) -> IngestionJob:
        async with self._lock:
            job = self.jobs.get(job_id)
            if job is None:
                raise RepositoryNotFoundError("job not found")
            if job.status != "failed":
                raise RepositoryConflictError("only failed jobs can be reset")
            now = self.clock()
            return self._save_job(
                job.model_copy(
                    update={"status": "pending", "attempts": 0, "error": None, "run_at": now, "updated_at": now}
                )
            )

    async def merge_extraction(self, profile_id: str, extraction: ExtractionResult) -> MergePlan:
        async with self._lock:
            profile = self.profiles.get(profile_id)
            if profile is None:
                raise RepositoryNotFoundError("profile not found")
            links = self.links.setdefault(profile_id, [])
            plan = plan_merge(profile, list(links), extraction)

            by_id = {link.id: index for index, link in enumerate(links)}
            for update in plan.updates:
                index = by_id.get(update.link_id)
                if index is None or links[index].source_type != "ingested":
                    continue
                links[index] = links[index].model_copy(
                    update={
                        "url": update.url,
                        "confidence": update.confidence,
                        "evidence": update.evidence,
                    }
                )

            for insert in plan.inserts:
                links.append(
                    SocialLink(
                        id=str(uuid4()),
                        profile_id=profile_id,
                        platform=insert.platform,
                        platform_type=insert.platform_type,
                        url=insert.url,
                        display_text=insert.display_text,
                        sort_order=insert.sort_order,
                        state=insert.state,
                        confidence=insert.confidence,
                        source_platform=insert.source_platform,
                        source_type=insert.source_type,
                        evidence=insert.evidence,
                    )
                )

            profile_changes: dict[str, Any] = {}
            if plan.profile_update.display_name is not None and not profile.display_name_locked:
                profile_changes["display_name"] = plan.profile_update.display_name
            if plan.profile_update.avatar_url is not None and not profile.avatar_locked:
                profile_changes["avatar_url"] = plan.profile_update.avatar_url
            if profile_changes:
                self.profiles[profile_id] = profile.model_copy(update=profile_changes)
            return plan

    async def set_profile_ingestion_status(
        self,
        profile_id: str,
        status: IngestionStatus,
        error: str | None = None,
    ) -> None:
        profile = self.profiles.get(profile_id)
        if profile is None:
            return
        update: dict[str, Any] = {"ingestion_status": status}
        if status != "processing":
            update["last_ingestion_error"] = error
        self.profiles[profile_id] = profile.model_copy(update=update)

    async def close(self) -> None:
        return None

    def _find_reusable_job_id(self, *, job_type: str, payload: IngestionJobPayload) -> str | None:
        cutoff = self.clock() - self.recently_completed_window
        active: list[IngestionJob] = []
        recent: list[IngestionJob] = []
        for job in self.jobs.values():
            if (
                job.job_type != job_type
                or job.payload.profile_id != payload.profile_id
                or job.payload.dedup_key != payload.dedup_key
            ):
                continue
            if job.status in ACTIVE_JOB_STATUSES:
                active.append(job)
            elif job.status == "completed" and job.updated_at >= cutoff:
                recent.append(job)
        for candidates in (active, recent):
            if candidates:
                return max(candidates, key=lambda job: job.created_at).id
        return None

    def _running_job(self, job_id: str) -> IngestionJob:
        job = self.jobs.get(job_id)
        if job is None:
            raise RepositoryNotFoundError("job not found")
        if job.status != "running":
            raise RepositoryConflictError("job is not running")
        return job

    def _save_job(self, job: IngestionJob) -> IngestionJob:
        self.jobs[job.id] = job
        return job.model_copy(deep=True)
