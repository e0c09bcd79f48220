from __future__ import annotations

import asyncio
import json
import os
from collections.abc import Awaitable, Callable
from datetime import timedelta

import asyncpg  # type: ignore[import-untyped]
import pytest

from linkingest.schemas.ingestion import ExtractedLink, ExtractionResult, LinkEvidence
from linkingest.services.ingestion import enqueue_ingestion_job
from linkingest.services.repository import PostgresRepository, RepositoryConflictError

SCHEMA_SQL = """
create table if not exists creator_profiles (
  id uuid primary key default gen_random_uuid(),
  username_normalized text,
  display_name text,
  avatar_url text,
  display_name_locked boolean not null default false,
  avatar_locked_by_user boolean not null default false,
  ingestion_status text not null default 'idle',
  last_ingestion_error text,
  created_at timestamptz not null default now(),
  updated_at timestamptz not null default now()
);

create table if not exists social_links (
  id uuid primary key default gen_random_uuid(),
  creator_profile_id uuid not null references creator_profiles (id) on delete cascade,
  platform text not null,
  platform_type text,
  url text not null,
  display_text text,
  sort_order integer not null default 0,
  is_active boolean not null default true,
  state text not null default 'active',
  confidence double precision,
  source_platform text,
  source_type text not null default 'manual',
  evidence jsonb not null default '{}'::jsonb,
  created_at timestamptz not null default now(),
  updated_at timestamptz not null default now()
);

create table if not exists ingestion_jobs (
  id uuid primary key default gen_random_uuid(),
  job_type text not null,
  profile_id uuid not null,
  dedup_key text not null,
  payload jsonb not null,
  status text not null default 'pending',
  attempts integer not null default 0,
  max_attempts integer not null default 3,
  run_at timestamptz not null default now(),
  priority integer not null default 0,
  error text,
  result_json jsonb,
  created_at timestamptz not null default now(),
  updated_at timestamptz not null default now()
);

create unique index if not exists ingestion_jobs_active_dedup_idx
  on ingestion_jobs (profile_id, dedup_key)
  where status in ('pending', 'running');
"""


@pytest.fixture(scope="session")
def database_url() -> str:
    url = os.getenv("LI_DATABASE_URL")
    if not url:
        pytest.skip("integration tests require LI_DATABASE_URL")
    return url


def _run(database_url: str, scenario: Callable[[PostgresRepository, asyncpg.Connection], Awaitable[None]]) -> None:
    async def run() -> None:
        conn = await asyncpg.connect(database_url)
        repository = PostgresRepository(
            database_url=database_url,
            min_pool_size=1,
            max_pool_size=4,
            job_max_attempts=3,
            job_retry_base_seconds=5,
            job_retry_max_seconds=300,
            recently_completed_window_hours=24,
        )
        try:
            await conn.execute(SCHEMA_SQL)
            await conn.execute("truncate table ingestion_jobs, social_links, creator_profiles cascade")
            await scenario(repository, conn)
        finally:
            await repository.close()
            await conn.close()

    asyncio.run(run())


async def _create_profile(conn: asyncpg.Connection, username: str = "artistname") -> str:
    return await conn.fetchval(
        "insert into creator_profiles (username_normalized) values ($1) returning id::text",
        username,
    )


def test_enqueue_claim_and_backoff(database_url: str) -> None:
    async def scenario(repository: PostgresRepository, conn: asyncpg.Connection) -> None:
        profile_id = await _create_profile(conn)

        first = await enqueue_ingestion_job(
            repository, profile_id=profile_id, source_url="https://linktr.ee/artistname"
        )
        second = await enqueue_ingestion_job(repository, profile_id=profile_id, source_url="linktr.ee/ArtistName/")
        assert first.created is True
        assert second.created is False
        assert first.job_id == second.job_id
        assert first.job_id is not None

        claims = await asyncio.gather(repository.claim_job(first.job_id), repository.claim_job(first.job_id))
        assert len([claim for claim in claims if claim is not None]) == 1

        failed = await repository.fail_job(first.job_id, "FETCH_FAILED: 503", retryable=True)
        assert failed.status == "pending"
        assert failed.attempts == 1
        assert failed.run_at > failed.updated_at + timedelta(seconds=9)

        with pytest.raises(RepositoryConflictError):
            await repository.complete_job(first.job_id, {"links_found": 0})

    _run(database_url, scenario)


def test_stuck_jobs_are_requeued_and_failed_jobs_reset(database_url: str) -> None:
    async def scenario(repository: PostgresRepository, conn: asyncpg.Connection) -> None:
        profile_id = await _create_profile(conn)
        enqueued = await enqueue_ingestion_job(
            repository, profile_id=profile_id, source_url="https://beacons.ai/artist"
        )
        assert enqueued.job_id is not None
        await repository.claim_job(enqueued.job_id)

        assert await repository.requeue_stuck_jobs(stuck_after=timedelta(minutes=20), limit=10) == 0
        await conn.execute(
            "update ingestion_jobs set updated_at = now() - interval '30 minutes' where id = $1::uuid",
            enqueued.job_id,
        )
        assert await repository.requeue_stuck_jobs(stuck_after=timedelta(minutes=20), limit=10) == 1

        job = await repository.get_job(enqueued.job_id)
        assert job.status == "pending"
        assert job.error == "Processing timeout; requeued"

        await repository.claim_job(enqueued.job_id)
        failed = await repository.fail_job(enqueued.job_id, "NOT_FOUND: gone", retryable=False)
        assert failed.status == "failed"

        reset = await repository.reset_job_for_retry(enqueued.job_id)
        assert reset.status == "pending"
        assert reset.attempts == 0

    _run(database_url, scenario)


def test_merge_extraction_protects_manual_links(database_url: str) -> None:
    async def scenario(repository: PostgresRepository, conn: asyncpg.Connection) -> None:
        profile_id = await _create_profile(conn)
        await conn.execute(
            """
            insert into social_links (creator_profile_id, platform, platform_type, url, sort_order, source_type)
            values ($1::uuid, 'instagram', 'social', 'https://instagram.com/ArtistName', 0, 'manual')
            """,
            profile_id,
        )
        extraction = ExtractionResult(
            links=[
                ExtractedLink(
                    url="https://www.instagram.com/artistname",
                    platform_id="instagram",
                    source_platform="linktree",
                    evidence=LinkEvidence(sources=["linktree"], signals=["linktree_profile_link"]),
                ),
                ExtractedLink(
                    url="https://open.spotify.com/artist/abc123",
                    platform_id="spotify",
                    source_platform="linktree",
                    evidence=LinkEvidence(sources=["linktree"], signals=["linktree_profile_link"]),
                ),
            ],
            display_name="Artist Name",
        )

        plan = await repository.merge_extraction(profile_id, extraction)
        assert plan.summary() == {"inserted": 1, "updated": 0, "protected_matches": 1, "profile_updated": True}

        rows = await conn.fetch(
            "select url, source_type, state, evidence from social_links where creator_profile_id = $1::uuid "
            "order by sort_order",
            profile_id,
        )
        assert [(row["url"], row["source_type"], row["state"]) for row in rows] == [
            ("https://instagram.com/ArtistName", "manual", "active"),
            ("https://open.spotify.com/artist/abc123", "ingested", "suggested"),
        ]
        assert json.loads(rows[1]["evidence"]) == {"sources": ["linktree"], "signals": ["linktree_profile_link"]}

        again = await repository.merge_extraction(profile_id, extraction)
        assert again.summary()["inserted"] == 0
        assert again.summary()["updated"] == 1

        await repository.set_profile_ingestion_status(profile_id, "failed", "NOT_FOUND: gone")
        profile = await conn.fetchrow(
            "select display_name, ingestion_status, last_ingestion_error from creator_profiles where id = $1::uuid",
            profile_id,
        )
        assert profile["display_name"] == "Artist Name"
        assert profile["ingestion_status"] == "failed"
        assert profile["last_ingestion_error"] == "NOT_FOUND: gone"

    _run(database_url, scenario)
