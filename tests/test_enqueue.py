from __future__ import annotations

import asyncio

from linkingest.schemas.ingestion import EnqueueResult
from linkingest.services.ingestion import enqueue_ingestion_job
from linkingest.services.store import InMemoryStore


def _enqueue(store: InMemoryStore, profile_id: str, source_url: str, depth: int = 0) -> EnqueueResult:
    return asyncio.run(enqueue_ingestion_job(store, profile_id=profile_id, source_url=source_url, depth=depth))


def test_enqueue_is_idempotent_per_profile_and_canonical_url(store: InMemoryStore) -> None:
    profile = store.add_profile()

    first = _enqueue(store, profile.id, "https://linktr.ee/artistname")
    second = _enqueue(store, profile.id, "linktr.ee/ArtistName/?utm_source=ig")

    assert first.created is True
    assert first.detected_platform == "linktree"
    assert second.created is False
    assert second.job_id == first.job_id
    assert len(store.jobs) == 1

    job = store.jobs[first.job_id]
    assert job.job_type == "import_linktree"
    assert job.payload.dedup_key == "https://linktr.ee/artistname"
    assert job.payload.source_url == "https://linktr.ee/artistname"
    assert job.status == "pending"


def test_enqueue_separates_profiles(store: InMemoryStore) -> None:
    first = _enqueue(store, store.add_profile().id, "https://beacons.ai/artistname")
    second = _enqueue(store, store.add_profile().id, "https://beacons.ai/artistname")

    assert first.job_id != second.job_id
    assert second.created is True


def test_enqueue_reuses_recently_completed_jobs(store: InMemoryStore, clock) -> None:
    profile = store.add_profile()

    async def complete_first() -> str:
        result = await enqueue_ingestion_job(store, profile_id=profile.id, source_url="https://laylo.com/artist")
        assert result.job_id is not None
        await store.claim_job(result.job_id)
        await store.complete_job(result.job_id, {"links_found": 0})
        return result.job_id

    job_id = asyncio.run(complete_first())

    clock.advance(hours=23)
    assert _enqueue(store, profile.id, "https://laylo.com/artist").job_id == job_id

    clock.advance(hours=2)
    fresh = _enqueue(store, profile.id, "https://laylo.com/artist")
    assert fresh.created is True
    assert fresh.job_id != job_id


def test_enqueue_ignores_unsupported_urls(store: InMemoryStore) -> None:
    profile = store.add_profile()

    instagram = _enqueue(store, profile.id, "https://www.instagram.com/artistname")
    assert instagram.job_id is None
    assert instagram.detected_platform == "instagram"

    unsafe = _enqueue(store, profile.id, "javascript:alert(1)")
    assert unsafe.job_id is None

    assert store.jobs == {}


def test_enqueue_enforces_depth_limits(store: InMemoryStore) -> None:
    profile = store.add_profile()

    youtube = _enqueue(store, profile.id, "https://www.youtube.com/@artistname", depth=2)
    assert youtube.job_id is None
    assert youtube.detected_platform == "youtube"

    too_deep = _enqueue(store, profile.id, "https://linktr.ee/artistname", depth=4)
    assert too_deep.job_id is None

    allowed = _enqueue(store, profile.id, "https://www.youtube.com/@artistname", depth=1)
    assert allowed.job_id is not None
    assert store.jobs[allowed.job_id].priority == 1
