from __future__ import annotations

import asyncio

import httpx
import pytest

import linkingest.main as worker_main
from linkingest.core.errors import InvalidUrlError
from linkingest.jobs.executor import execute_ingestion_job
from linkingest.schemas.ingestion import IngestionJobPayload


def test_main_parses_once_and_limit(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[dict[str, object]] = []

    async def fake_run_worker(*, once: bool = False, limit: int | None = None) -> None:
        calls.append({"once": once, "limit": limit})

    monkeypatch.setattr(worker_main, "run_worker", fake_run_worker)

    worker_main.main(["--once", "--limit", "7"])
    worker_main.main([])

    assert calls == [{"once": True, "limit": 7}, {"once": False, "limit": None}]


def test_execute_ingestion_job_rejects_unknown_job_types(store) -> None:
    async def run() -> None:
        job_id, _ = await store.enqueue_job(
            job_type="import_unknown",
            payload=IngestionJobPayload(
                profile_id="profile-1",
                source_url="https://example.com/artist",
                dedup_key="https://example.com/artist",
            ),
        )
        job = await store.get_job(job_id)
        async with httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200))) as client:
            await execute_ingestion_job(job, client=client)

    with pytest.raises(InvalidUrlError):
        asyncio.run(run())
