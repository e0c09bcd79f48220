from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterator
from typing import Any
from urllib.parse import parse_qs, unquote, urlsplit

import httpx
from bs4 import BeautifulSoup

from linkingest.core.errors import InvalidHandleError, InvalidHostError, InvalidUrlError, ParseError
from linkingest.schemas.ingestion import ExtractionResult
from linkingest.services.fetcher import FetchOptions, FetchResult, fetch_document
from linkingest.strategies.base import (
    Strategy,
    as_text,
    build_result,
    clean_display_name,
    extract_links,
    meta_content,
    parse_document,
    resolve_avatar,
)

logger = logging.getLogger(__name__)

YOUTUBE_HOSTS = frozenset({"youtube.com", "www.youtube.com", "m.youtube.com"})
YOUTUBE_SELF_HOSTS = frozenset(
    {
        "youtube.com",
        "youtu.be",
        "ytimg.com",
        "ggpht.com",
        "googleusercontent.com",
        "googlevideo.com",
    }
)
YOUTUBE_SOURCE = "youtube_about"
YOUTUBE_SIGNAL = "youtube_about_link"
YOUTUBE_OFFICIAL_ARTIST_SIGNAL = "youtube_official_artist"
YOUTUBE_NAME_SUFFIXES = (re.compile(r"\s*-\s*YouTube\s*$", re.IGNORECASE),)
OFFICIAL_ARTIST_MARKERS = ("BADGE_STYLE_TYPE_VERIFIED_ARTIST", "OFFICIAL_ARTIST_BADGE")

_HANDLE_RE = re.compile(r"[a-z0-9._-]{3,30}")
_CHANNEL_ID_RE = re.compile(r"UC[A-Za-z0-9_-]{22}")
_LEGACY_NAME_RE = re.compile(r"[A-Za-z0-9_.-]{1,100}")
_CHANNEL_TABS = frozenset({"about", "featured", "videos", "shorts", "streams", "playlists", "community"})
_INITIAL_DATA_RE = re.compile(r"ytInitialData[\"']?\]?\s*=\s*")


def normalize_youtube_url(url: str) -> str:
    """Canonical channel URL for ``/@handle``, ``/channel/UC...``, ``/c/name`` or ``/user/name``."""
    candidate = url.strip()
    if not candidate:
        raise InvalidUrlError("empty profile url")
    if "://" not in candidate:
        candidate = f"https://{candidate}"
    try:
        parsed = urlsplit(candidate)
        host = (parsed.hostname or "").lower()
    except ValueError as exc:
        raise InvalidUrlError(f"unparseable profile url {url!r}") from exc

    if parsed.scheme.lower() != "https":
        raise InvalidUrlError(f"profile urls must use https: {url!r}")
    if host not in YOUTUBE_HOSTS:
        raise InvalidHostError(f"host {host!r} is not a YouTube channel host")

    segments = [unquote(segment) for segment in parsed.path.split("/") if segment]
    if segments and segments[-1].lower() in _CHANNEL_TABS:
        segments = segments[:-1]

    if len(segments) == 1 and segments[0].startswith("@"):
        handle = segments[0][1:].lower()
        if _HANDLE_RE.fullmatch(handle):
            return f"https://www.youtube.com/@{handle}"
    elif len(segments) == 2 and segments[0] == "channel":
        if _CHANNEL_ID_RE.fullmatch(segments[1]):
            return f"https://www.youtube.com/channel/{segments[1]}"
    elif len(segments) == 2 and segments[0] in {"c", "user"}:
        if _LEGACY_NAME_RE.fullmatch(segments[1]):
            return f"https://www.youtube.com/{segments[0]}/{segments[1].lower()}"
    raise InvalidHandleError(f"no YouTube channel reference in {url!r}")


async def fetch_youtube_document(
    url: str,
    *,
    client: httpx.AsyncClient | None = None,
    options: FetchOptions | None = None,
) -> FetchResult:
    about_url = f"{normalize_youtube_url(url)}/about"
    fetch_options = (options or FetchOptions()).restricted_to(YOUTUBE_HOSTS | {"consent.youtube.com"})
    return await fetch_document(about_url, options=fetch_options, client=client)


def extract_youtube(html: str) -> ExtractionResult:
    soup = parse_document(html)
    initial_data = _initial_data(soup)
    if initial_data is None:
        raise ParseError("ytInitialData not found on channel page")

    extra_signals = [YOUTUBE_OFFICIAL_ARTIST_SIGNAL] if _has_official_artist_badge(initial_data) else []
    links = extract_links(
        list(_external_link_urls(initial_data)),
        source_platform=YOUTUBE_SOURCE,
        source_signal=YOUTUBE_SIGNAL,
        self_hosts=YOUTUBE_SELF_HOSTS,
        extra_signals=extra_signals,
    )

    metadata = _channel_metadata(initial_data)
    display_name = clean_display_name(
        as_text(metadata.get("title")) or meta_content(soup, "og:title"),
        YOUTUBE_NAME_SUFFIXES,
    )
    avatar_url = resolve_avatar(
        [
            _largest_thumbnail(metadata.get("avatar")),
            meta_content(soup, "og:image"),
            meta_content(soup, "twitter:image"),
        ]
    )
    return build_result(links, display_name, avatar_url)


def _initial_data(soup: BeautifulSoup) -> dict[str, Any] | None:
    decoder = json.JSONDecoder()
    for script in soup.find_all("script"):
        text = script.string or script.get_text()
        if not text or "ytInitialData" not in text:
            continue
        match = _INITIAL_DATA_RE.search(text)
        if match is None:
            continue
        try:
            decoded, _ = decoder.raw_decode(text, match.end())
        except json.JSONDecodeError:
            logger.debug("ytInitialData present but not decodable")
            continue
        if isinstance(decoded, dict):
            return decoded
    return None


def _walk(node: Any) -> Iterator[tuple[str, Any]]:
    if isinstance(node, dict):
        for key, value in node.items():
            yield key, value
            yield from _walk(value)
    elif isinstance(node, list):
        for item in node:
            yield from _walk(item)


def _external_link_urls(initial_data: dict[str, Any]) -> Iterator[str]:
    for key, value in _walk(initial_data):
        if key == "channelExternalLinkViewModel" and isinstance(value, dict):
            url = _view_model_url(value.get("link"))
            if url:
                yield url
        elif key == "primaryLinks" and isinstance(value, list):
            # pre-2024 about pages
            for primary in value:
                url = _endpoint_url(primary.get("navigationEndpoint")) if isinstance(primary, dict) else None
                if url:
                    yield url


def _view_model_url(link: Any) -> str | None:
    if not isinstance(link, dict):
        return None
    for run in link.get("commandRuns") or []:
        on_tap = run.get("onTap") if isinstance(run, dict) else None
        if isinstance(on_tap, dict):
            url = _endpoint_url(on_tap.get("innertubeCommand"))
            if url:
                return url
    href = as_text(link.get("href"))
    if href:
        return _unwrap_redirect(href)
    content = as_text(link.get("content"))
    if content and " " not in content:
        return content if content.startswith(("http://", "https://")) else f"https://{content}"
    return None


def _endpoint_url(endpoint: Any) -> str | None:
    if not isinstance(endpoint, dict):
        return None
    url_endpoint = endpoint.get("urlEndpoint")
    if not isinstance(url_endpoint, dict):
        return None
    url = as_text(url_endpoint.get("url"))
    return _unwrap_redirect(url) if url else None


def _unwrap_redirect(url: str) -> str:
    """Resolve ``youtube.com/redirect?q=...`` wrappers to their destination."""
    try:
        parsed = urlsplit(url)
    except ValueError:
        return url
    host = (parsed.hostname or "").lower()
    if host.endswith("youtube.com") and parsed.path == "/redirect":
        target = parse_qs(parsed.query).get("q")
        if target:
            return target[0]
    return url


def _channel_metadata(initial_data: dict[str, Any]) -> dict[str, Any]:
    metadata = initial_data.get("metadata")
    if isinstance(metadata, dict):
        renderer = metadata.get("channelMetadataRenderer")
        if isinstance(renderer, dict):
            return renderer
    return {}


def _largest_thumbnail(avatar: Any) -> str | None:
    if not isinstance(avatar, dict):
        return None
    thumbnails = [item for item in avatar.get("thumbnails") or [] if isinstance(item, dict) and item.get("url")]
    if not thumbnails:
        return None
    largest = max(thumbnails, key=lambda item: int(item.get("width") or 0))
    return as_text(largest.get("url"))


def _has_official_artist_badge(initial_data: dict[str, Any]) -> bool:
    for key, value in _walk(initial_data):
        if key in {"style", "iconType"} and value in OFFICIAL_ARTIST_MARKERS:
            return True
    return False


YOUTUBE_STRATEGY = Strategy(
    platform_id="youtube",
    job_type="import_youtube",
    hosts=YOUTUBE_HOSTS,
    max_depth=1,
    parse=normalize_youtube_url,
    fetch=fetch_youtube_document,
    extract=extract_youtube,
)
