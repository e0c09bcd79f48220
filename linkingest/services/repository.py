from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from functools import lru_cache
from typing import Any, Protocol

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from linkingest.core.backoff import next_run_at
from linkingest.core.config import get_settings
from linkingest.core.errors import MergeConflictError
from linkingest.schemas.ingestion import (
    ExtractionResult,
    IngestionJob,
    IngestionJobPayload,
    IngestionStatus,
    LinkEvidence,
    ProfileSnapshot,
    SocialLink,
)
from linkingest.services.merge import MergePlan, plan_merge

logger = logging.getLogger(__name__)

STUCK_JOB_ERROR = "Processing timeout; requeued"


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates state transition rules."""


class IngestionRepository(Protocol):
    """Job store plus profile/link store used by the ingestion pipeline."""

    async def enqueue_job(
        self,
        *,
        job_type: str,
        payload: IngestionJobPayload,
        priority: int = 0,
    ) -> tuple[str, bool]: ...

    async def get_job(self, job_id: str) -> IngestionJob: ...

    async def list_due_jobs(self, limit: int) -> list[IngestionJob]: ...

    async def claim_job(self, job_id: str) -> IngestionJob | None: ...

    async def complete_job(self, job_id: str, result_json: dict[str, Any]) -> IngestionJob: ...

    async def fail_job(self, job_id: str, error: str, *, retryable: bool) -> IngestionJob: ...

    async def requeue_stuck_jobs(self, *, stuck_after: timedelta, limit: int) -> int: ...

    async def reset_job_for_retry(self, job_id: str) -> IngestionJob: ...

    async def merge_extraction(self, profile_id: str, extraction: ExtractionResult) -> MergePlan: ...

    async def set_profile_ingestion_status(
        self,
        profile_id: str,
        status: IngestionStatus,
        error: str | None = None,
    ) -> None: ...


_JOB_COLUMNS = """
  id::text as id,
  job_type,
  profile_id::text as profile_id,
  dedup_key,
  payload,
  status,
  attempts,
  max_attempts,
  run_at,
  priority,
  error,
  result_json,
  created_at,
  updated_at
"""


class PostgresRepository:
    """asyncpg-backed stores.

    Expects ``ingestion_jobs`` with a unique partial index on
    ``(profile_id, dedup_key) where status in ('pending', 'running')``,
    ``creator_profiles`` and ``social_links``.
    """

    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
        job_max_attempts: int,
        job_retry_base_seconds: int,
        job_retry_max_seconds: int,
        recently_completed_window_hours: int,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.job_max_attempts = max(1, job_max_attempts)
        self.job_retry_base_seconds = max(0, job_retry_base_seconds)
        self.job_retry_max_seconds = max(0, job_retry_max_seconds)
        self.recently_completed_window_hours = max(0, recently_completed_window_hours)
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def enqueue_job(
        self,
        *,
        job_type: str,
        payload: IngestionJobPayload,
        priority: int = 0,
    ) -> tuple[str, bool]:
        pool = await self._get_pool()

        async with pool.acquire() as conn:
            async with conn.transaction():
                existing_id = await self._find_reusable_job_id(conn=conn, job_type=job_type, payload=payload)
                if existing_id is not None:
                    return existing_id, False

                row = await conn.fetchrow(
                    """
                    insert into ingestion_jobs (
                      job_type,
                      profile_id,
                      dedup_key,
                      payload,
                      status,
                      attempts,
                      max_attempts,
                      run_at,
                      priority
                    )
                    values ($1, $2::uuid, $3, $4::jsonb, 'pending', 0, $5, now(), $6)
                    on conflict (profile_id, dedup_key) where status in ('pending', 'running') do nothing
                    returning id::text as id
                    """,
                    job_type,
                    payload.profile_id,
                    payload.dedup_key,
                    json.dumps(payload.model_dump()),
                    self.job_max_attempts,
                    priority,
                )
                if row is not None:
                    return row["id"], True

                # Lost an insert race; the winner is committed and visible now.
                existing_id = await self._find_reusable_job_id(conn=conn, job_type=job_type, payload=payload)
                if existing_id is None:
                    raise RepositoryConflictError("active job exists but could not be read back")
                return existing_id, False

    async def get_job(self, job_id: str) -> IngestionJob:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(f"select {_JOB_COLUMNS} from ingestion_jobs where id = $1::uuid", job_id)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("job not found") from exc
        if row is None:
            raise RepositoryNotFoundError("job not found")
        return self._job_row_to_model(row)

    async def list_due_jobs(self, limit: int) -> list[IngestionJob]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_JOB_COLUMNS}
            from ingestion_jobs
            where status = 'pending' and run_at <= now()
            order by priority asc, run_at asc
            limit $1
            """,
            max(1, min(limit, 1000)),
        )
        return [self._job_row_to_model(row) for row in rows]

    async def claim_job(self, job_id: str) -> IngestionJob | None:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                update ingestion_jobs
                set status = 'running', updated_at = now()
                where id = $1::uuid and status = 'pending' and run_at <= now()
                returning {_JOB_COLUMNS}
                """,
                job_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("job not found") from exc
        if row is None:
            return None
        return self._job_row_to_model(row)

    async def complete_job(self, job_id: str, result_json: dict[str, Any]) -> IngestionJob:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            update ingestion_jobs
            set status = 'completed', result_json = $2::jsonb, error = null, updated_at = now()
            where id = $1::uuid and status = 'running'
            returning {_JOB_COLUMNS}
            """,
            job_id,
            json.dumps(result_json),
        )
        if row is None:
            raise RepositoryConflictError("job is not running")
        return self._job_row_to_model(row)

    async def fail_job(self, job_id: str, error: str, *, retryable: bool) -> IngestionJob:
        pool = await self._get_pool()

        async with pool.acquire() as conn:
            async with conn.transaction():
                current = await conn.fetchrow(
                    """
                    select status, attempts, max_attempts
                    from ingestion_jobs
                    where id = $1::uuid
                    for update
                    """,
                    job_id,
                )
                if current is None:
                    raise RepositoryNotFoundError("job not found")
                if current["status"] != "running":
                    raise RepositoryConflictError("job is not running")

                attempts = int(current["attempts"]) + 1
                retry_at: datetime | None = None
                status = "failed"
                if retryable and attempts < int(current["max_attempts"]):
                    retry_at = self._next_retry_at(attempts=attempts)
                    status = "pending"

                row = await conn.fetchrow(
                    f"""
                    update ingestion_jobs
                    set
                      status = $2,
                      attempts = $3,
                      error = $4,
                      run_at = coalesce($5::timestamptz, run_at),
                      updated_at = now()
                    where id = $1::uuid
                    returning {_JOB_COLUMNS}
                    """,
                    job_id,
                    status,
                    attempts,
                    error,
                    retry_at,
                )
                return self._job_row_to_model(row)

    async def requeue_stuck_jobs(self, *, stuck_after: timedelta, limit: int) -> int:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            with stuck as (
              select id
              from ingestion_jobs
              where status = 'running'
                and updated_at <= now() - ($1::int * interval '1 second')
              order by updated_at asc
              limit $2
              for update skip locked
            )
            update ingestion_jobs j
            set status = 'pending', run_at = now(), error = $3, updated_at = now()
            from stuck s
            where j.id = s.id
            returning j.id::text as id
            """,
            int(stuck_after.total_seconds()),
            max(1, min(limit, 1000)),
            STUCK_JOB_ERROR,
        )
        return len(rows)

    async def reset_job_for_retry(self, job_id: str) -> IngestionJob:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                update ingestion_jobs
                set status = 'pending', attempts = 0, error = null, run_at = now(), updated_at = now()
                where id = $1::uuid and status = 'failed'
                returning {_JOB_COLUMNS}
                """,
                job_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("job not found") from exc
        if row is None:
            await self.get_job(job_id)
            raise RepositoryConflictError("only failed jobs can be reset")
        return self._job_row_to_model(row)

    async def merge_extraction(self, profile_id: str, extraction: ExtractionResult) -> MergePlan:
        pool = await self._get_pool()

        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    profile_row = await conn.fetchrow(
                        """
                        select
                          id::text as id,
                          username_normalized,
                          display_name,
                          avatar_url,
                          display_name_locked,
                          avatar_locked_by_user,
                          ingestion_status,
                          last_ingestion_error
                        from creator_profiles
                        where id = $1::uuid
                        for update
                        """,
                        profile_id,
                    )
                    if profile_row is None:
                        raise RepositoryNotFoundError("profile not found")

                    link_rows = await conn.fetch(
                        """
                        select
                          id::text as id,
                          creator_profile_id::text as profile_id,
                          platform,
                          platform_type,
                          url,
                          display_text,
                          sort_order,
                          state,
                          confidence,
                          source_platform,
                          source_type,
                          evidence
                        from social_links
                        where creator_profile_id = $1::uuid
                        order by sort_order asc, created_at asc
                        for update
                        """,
                        profile_id,
                    )

                    plan = plan_merge(
                        self._profile_row_to_model(profile_row),
                        [self._link_row_to_model(row) for row in link_rows],
                        extraction,
                    )
                    await self._apply_merge_plan(conn=conn, profile_id=profile_id, plan=plan)
                    return plan
        except (pg_exc.SerializationError, pg_exc.DeadlockDetectedError) as exc:
            raise MergeConflictError(str(exc)) from exc

    async def set_profile_ingestion_status(
        self,
        profile_id: str,
        status: IngestionStatus,
        error: str | None = None,
    ) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            update creator_profiles
            set
              ingestion_status = $2,
              last_ingestion_error = case when $2 = 'processing' then last_ingestion_error else $3 end,
              updated_at = now()
            where id = $1::uuid
            """,
            profile_id,
            status,
            error,
        )

    async def _apply_merge_plan(self, *, conn: asyncpg.Connection, profile_id: str, plan: MergePlan) -> None:
        for update in plan.updates:
            await conn.execute(
                """
                update social_links
                set url = $2, confidence = $3, evidence = $4::jsonb, updated_at = now()
                where id = $1::uuid and source_type = 'ingested'
                """,
                update.link_id,
                update.url,
                update.confidence,
                json.dumps(update.evidence.model_dump()),
            )

        for insert in plan.inserts:
            await conn.execute(
                """
                insert into social_links (
                  creator_profile_id,
                  platform,
                  platform_type,
                  url,
                  display_text,
                  sort_order,
                  is_active,
                  state,
                  confidence,
                  source_platform,
                  source_type,
                  evidence
                )
                values ($1::uuid, $2, $3, $4, $5, $6, false, $7, $8, $9, $10, $11::jsonb)
                """,
                profile_id,
                insert.platform,
                insert.platform_type,
                insert.url,
                insert.display_text,
                insert.sort_order,
                insert.state,
                insert.confidence,
                insert.source_platform,
                insert.source_type,
                json.dumps(insert.evidence.model_dump()),
            )

        if not plan.profile_update.is_empty():
            await conn.execute(
                """
                update creator_profiles
                set
                  display_name = case
                    when $2::text is not null and not coalesce(display_name_locked, false) then $2
                    else display_name
                  end,
                  avatar_url = case
                    when $3::text is not null and not coalesce(avatar_locked_by_user, false) then $3
                    else avatar_url
                  end,
                  updated_at = now()
                where id = $1::uuid
                """,
                profile_id,
                plan.profile_update.display_name,
                plan.profile_update.avatar_url,
            )

    async def _find_reusable_job_id(
        self,
        *,
        conn: asyncpg.Connection,
        job_type: str,
        payload: IngestionJobPayload,
    ) -> str | None:
        return await conn.fetchval(
            """
            select id::text
            from ingestion_jobs
            where job_type = $1
              and profile_id = $2::uuid
              and dedup_key = $3
              and (
                status in ('pending', 'running')
                or (status = 'completed' and updated_at >= now() - ($4::int * interval '1 hour'))
              )
            order by case when status in ('pending', 'running') then 0 else 1 end, created_at desc
            limit 1
            """,
            job_type,
            payload.profile_id,
            payload.dedup_key,
            self.recently_completed_window_hours,
        )

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("LI_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    def _next_retry_at(self, *, attempts: int) -> datetime:
        return next_run_at(
            attempts,
            base_seconds=self.job_retry_base_seconds,
            max_seconds=self.job_retry_max_seconds,
        )

    @staticmethod
    def _job_row_to_model(row: asyncpg.Record) -> IngestionJob:
        payload = PostgresRepository._coerce_json_dict(row["payload"])
        payload.setdefault("profile_id", row["profile_id"])
        payload.setdefault("dedup_key", row["dedup_key"])
        result_json = row["result_json"]
        return IngestionJob(
            id=row["id"],
            job_type=row["job_type"],
            payload=IngestionJobPayload.model_validate(payload),
            status=row["status"],
            attempts=int(row["attempts"]),
            max_attempts=int(row["max_attempts"]),
            run_at=row["run_at"],
            priority=int(row["priority"]),
            error=row["error"],
            result_json=PostgresRepository._coerce_json_dict(result_json) if result_json is not None else None,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _profile_row_to_model(row: asyncpg.Record) -> ProfileSnapshot:
        return ProfileSnapshot(
            id=row["id"],
            username_normalized=row["username_normalized"],
            display_name=row["display_name"],
            avatar_url=row["avatar_url"],
            display_name_locked=bool(row["display_name_locked"]),
            avatar_locked=bool(row["avatar_locked_by_user"]),
            ingestion_status=row["ingestion_status"] or "idle",
            last_ingestion_error=row["last_ingestion_error"],
        )

    @staticmethod
    def _link_row_to_model(row: asyncpg.Record) -> SocialLink:
        evidence = PostgresRepository._coerce_json_dict(row["evidence"])
        confidence = row["confidence"]
        return SocialLink(
            id=row["id"],
            profile_id=row["profile_id"],
            platform=row["platform"],
            platform_type=row["platform_type"] or "custom",
            url=row["url"],
            display_text=row["display_text"],
            sort_order=int(row["sort_order"] or 0),
            state=row["state"] or "active",
            confidence=float(confidence) if confidence is not None else None,
            source_platform=row["source_platform"],
            source_type=row["source_type"] or "manual",
            evidence=LinkEvidence(
                sources=PostgresRepository._coerce_text_list(evidence.get("sources")),
                signals=PostgresRepository._coerce_text_list(evidence.get("signals")),
            ),
        )

    @staticmethod
    def _coerce_json_dict(value: Any) -> dict[str, Any]:
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                return {}
        return dict(value) if isinstance(value, dict) else {}

    @staticmethod
    def _coerce_text_list(value: Any) -> list[str]:
        if not isinstance(value, list):
            return []
        items: list[str] = []
        for item in value:
            if not isinstance(item, str):
                continue
            stripped = item.strip()
            if stripped:
                items.append(stripped)
        return items


@lru_cache
def get_repository() -> PostgresRepository:
    settings = get_settings()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.db_min_pool_size,
        max_pool_size=settings.db_max_pool_size,
        job_max_attempts=settings.job_max_attempts,
        job_retry_base_seconds=settings.job_retry_base_seconds,
        job_retry_max_seconds=settings.job_retry_max_seconds,
        recently_completed_window_hours=settings.recently_completed_window_hours,
    )
