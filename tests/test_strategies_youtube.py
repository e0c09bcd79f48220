from __future__ import annotations

import asyncio
import json
from typing import Any

import httpx
import pytest

from linkingest.core.errors import InvalidHandleError, InvalidHostError, InvalidUrlError, ParseError
from linkingest.services.fetcher import FetchOptions, FetchResult
from linkingest.strategies.youtube import extract_youtube, fetch_youtube_document, normalize_youtube_url

CHANNEL_ID = "UCAbCdEfGhIjKlMnOpQrStUv"


def _initial_data(*, official_artist: bool = True) -> dict[str, Any]:
    badges = [{"metadataBadgeRenderer": {"style": "BADGE_STYLE_TYPE_VERIFIED_ARTIST"}}] if official_artist else []
    return {
        "metadata": {
            "channelMetadataRenderer": {
                "title": "YT Artist",
                "avatar": {
                    "thumbnails": [
                        {"url": "https://yt3.googleusercontent.com/avatar=s88", "width": 88},
                        {"url": "https://yt3.googleusercontent.com/avatar=s900", "width": 900},
                        {"url": "https://yt3.googleusercontent.com/avatar=s176", "width": 176},
                    ]
                },
            }
        },
        "header": {"c4TabbedHeaderRenderer": {"badges": badges}},
        "onResponseReceivedEndpoints": [
            {
                "appendContinuationItemsAction": {
                    "continuationItems": [
                        {
                            "aboutChannelRenderer": {
                                "metadata": {
                                    "aboutChannelViewModel": {
                                        "links": [
                                            {
                                                "channelExternalLinkViewModel": {
                                                    "title": {"content": "Instagram"},
                                                    "link": {
                                                        "content": "instagram.com/ytartist",
                                                        "commandRuns": [
                                                            {
                                                                "onTap": {
                                                                    "innertubeCommand": {
                                                                        "urlEndpoint": {
                                                                            "url": (
                                                                                "https://www.youtube.com/redirect"
                                                                                "?event=channel_description"
                                                                                "&q=https%3A%2F%2Fwww.instagram.com"
                                                                                "%2Fytartist"
                                                                            )
                                                                        }
                                                                    }
                                                                }
                                                            }
                                                        ],
                                                    },
                                                }
                                            },
                                            {
                                                "channelExternalLinkViewModel": {
                                                    "title": {"content": "Spotify"},
                                                    "link": {"content": "open.spotify.com/artist/yt123"},
                                                }
                                            },
                                            {
                                                "channelExternalLinkViewModel": {
                                                    "title": {"content": "Other channel"},
                                                    "link": {"content": "youtube.com/@ytartistvods"},
                                                }
                                            },
                                        ]
                                    }
                                }
                            }
                        }
                    ]
                }
            }
        ],
    }


def _page(initial_data: dict[str, Any]) -> str:
    return f"""
    <html>
      <head><meta property="og:title" content="YT Artist - YouTube"></head>
      <body>
        <script>var ytInitialData = {json.dumps(initial_data)};</script>
        <a href="https://www.facebook.com/not-from-structured-data">ignored</a>
      </body>
    </html>
    """


def test_extract_youtube_reads_about_links() -> None:
    result = extract_youtube(_page(_initial_data()))

    assert [link.url for link in result.links] == [
        "https://www.instagram.com/ytartist",
        "https://open.spotify.com/artist/yt123",
    ]
    assert result.links[0].source_platform == "youtube_about"
    assert result.links[0].evidence.signals == ["youtube_about_link", "youtube_official_artist"]
    assert result.display_name == "YT Artist"
    assert result.avatar_url == "https://yt3.googleusercontent.com/avatar=s900"


def test_extract_youtube_without_artist_badge() -> None:
    result = extract_youtube(_page(_initial_data(official_artist=False)))
    assert result.links[0].evidence.signals == ["youtube_about_link"]


def test_extract_youtube_reads_legacy_primary_links() -> None:
    initial_data = {
        "header": {
            "c4TabbedHeaderRenderer": {
                "title": "Legacy Artist",
                "headerLinks": {
                    "channelHeaderLinksRenderer": {
                        "primaryLinks": [
                            {
                                "navigationEndpoint": {
                                    "urlEndpoint": {
                                        "url": (
                                            "https://www.youtube.com/redirect"
                                            "?q=https%3A%2F%2Fsoundcloud.com%2Flegacy"
                                        )
                                    }
                                }
                            }
                        ]
                    }
                },
            }
        }
    }
    result = extract_youtube(_page(initial_data))
    assert [link.url for link in result.links] == ["https://soundcloud.com/legacy"]
    assert result.display_name == "YT Artist"


def test_extract_youtube_requires_initial_data() -> None:
    with pytest.raises(ParseError):
        extract_youtube("<html><body><script>var other = {};</script></body></html>")


def test_normalize_youtube_url_variants() -> None:
    assert normalize_youtube_url("youtube.com/@YTArtist/videos") == "https://www.youtube.com/@ytartist"
    assert normalize_youtube_url(f"https://m.youtube.com/channel/{CHANNEL_ID}") == (
        f"https://www.youtube.com/channel/{CHANNEL_ID}"
    )
    assert normalize_youtube_url("https://www.youtube.com/c/SomeArtist") == "https://www.youtube.com/c/someartist"
    with pytest.raises(InvalidHostError):
        normalize_youtube_url("https://vimeo.com/artist")
    with pytest.raises(InvalidHandleError):
        normalize_youtube_url("https://www.youtube.com/watch?v=dQw4w9WgXcQ")
    with pytest.raises(InvalidUrlError):
        normalize_youtube_url("http://www.youtube.com/@ytartist")


def test_fetch_youtube_document_requests_about_tab() -> None:
    requested: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requested.append(str(request.url))
        return httpx.Response(
            status_code=200,
            headers={"content-type": "text/html; charset=utf-8"},
            text=_page(_initial_data()),
            request=request,
        )

    async def run() -> FetchResult:
        transport = httpx.MockTransport(handler)
        async with httpx.AsyncClient(transport=transport, follow_redirects=False) as client:
            return await fetch_youtube_document(
                "https://www.youtube.com/@YTArtist",
                client=client,
                options=FetchOptions(max_retries=0, retry_delay_seconds=0.0),
            )

    asyncio.run(run())
    assert requested == ["https://www.youtube.com/@ytartist/about"]
