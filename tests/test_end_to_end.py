from __future__ import annotations

import asyncio
import json

import httpx

from linkingest.core.config import Settings
from linkingest.jobs.scheduler import run_ingestion_batch
from linkingest.schemas.ingestion import BatchSummary, EnqueueResult
from linkingest.services.ingestion import enqueue_ingestion_job
from linkingest.services.store import InMemoryStore

LINKTREE_NEXT_DATA = {
    "props": {
        "pageProps": {
            "account": {
                "username": "artistname",
                "pageTitle": "Artist Name",
                "links": [
                    {"url": "https://open.spotify.com/artist/abc123"},
                    {"url": "https://beacons.ai/artistname"},
                ],
                "socialLinks": [{"url": "https://instagram.com/artistname"}],
            }
        }
    }
}

PAGES = {
    "https://linktr.ee/artistname": f"""
        <html><head>
          <meta property="og:image" content="https://ugc.production.linktr.ee/artistname.jpg">
          <script id="__NEXT_DATA__" type="application/json">{json.dumps(LINKTREE_NEXT_DATA)}</script>
        </head><body></body></html>
    """,
    "https://beacons.ai/artistname": """
        <html><head><meta property="og:title" content="Artist Name | Beacons"></head>
        <body>
          <a href="https://open.spotify.com/artist/abc123?si=beacons">Spotify</a>
          <a href="https://linktr.ee/artistname">Linktree</a>
          <a href="https://www.tiktok.com/@artistname">TikTok</a>
        </body></html>
    """,
}


def _handler(request: httpx.Request) -> httpx.Response:
    page = PAGES.get(str(request.url))
    if page is None:
        return httpx.Response(status_code=404, request=request)
    return httpx.Response(status_code=200, headers={"content-type": "text/html"}, text=page, request=request)


def test_linktree_import_follows_beacons_and_dedups_resubmission(
    store: InMemoryStore,
    settings: Settings,
) -> None:
    profile = store.add_profile(username_normalized="artistname")
    store.add_link(
        profile.id,
        "https://instagram.com/ArtistName",
        platform="instagram",
        platform_type="social",
        source_type="manual",
    )

    async def run() -> tuple[EnqueueResult, BatchSummary, BatchSummary, EnqueueResult]:
        submitted = await enqueue_ingestion_job(store, profile_id=profile.id, source_url="https://linktr.ee/artistname")
        transport = httpx.MockTransport(_handler)
        async with httpx.AsyncClient(transport=transport, follow_redirects=False) as client:
            first = await run_ingestion_batch(store, client=client, settings=settings)
            second = await run_ingestion_batch(store, client=client, settings=settings)
        resubmitted = await enqueue_ingestion_job(
            store,
            profile_id=profile.id,
            source_url="https://www.linktr.ee/ArtistName",
        )
        return submitted, first, second, resubmitted

    submitted, first, second, resubmitted = asyncio.run(run())

    assert submitted.created is True
    assert first == BatchSummary(processed=1, succeeded=1)
    assert second == BatchSummary(processed=1, succeeded=1)

    jobs = sorted(store.jobs.values(), key=lambda job: job.payload.depth)
    assert [(job.job_type, job.payload.depth, job.status) for job in jobs] == [
        ("import_linktree", 0, "completed"),
        ("import_beacons", 1, "completed"),
    ]
    linktree_job, beacons_job = jobs
    assert linktree_job.result_json is not None
    assert linktree_job.result_json["followup_job_ids"] == [beacons_job.id]
    # the beacons page links back to the already-completed linktree import
    assert beacons_job.result_json is not None
    assert beacons_job.result_json["followup_job_ids"] == [linktree_job.id]

    assert resubmitted.created is False
    assert resubmitted.job_id == submitted.job_id

    links = {link.url: link for link in store.links_for(profile.id)}
    assert set(links) == {
        "https://instagram.com/ArtistName",
        "https://open.spotify.com/artist/abc123",
        "https://beacons.ai/artistname",
        "https://linktr.ee/artistname",
        "https://www.tiktok.com/@artistname",
    }
    manual = links["https://instagram.com/ArtistName"]
    assert manual.source_type == "manual"
    assert manual.evidence.sources == []

    spotify = links["https://open.spotify.com/artist/abc123"]
    assert spotify.source_type == "ingested"
    assert spotify.state == "suggested"
    assert spotify.evidence.sources == ["beacons", "linktree"]
    assert spotify.evidence.signals == ["beacons_profile_link", "linktree_profile_link"]
    assert spotify.confidence == 0.65

    updated = store.profiles[profile.id]
    assert updated.display_name == "Artist Name"
    assert updated.avatar_url == "https://ugc.production.linktr.ee/artistname.jpg"
    assert updated.ingestion_status == "idle"
