from __future__ import annotations

import re
from typing import Any

import httpx

from linkingest.core.errors import ParseError
from linkingest.schemas.ingestion import ExtractionResult
from linkingest.services.fetcher import FetchOptions, FetchResult
from linkingest.strategies.base import (
    Strategy,
    as_text,
    build_result,
    clean_display_name,
    collect_hrefs,
    extract_links,
    fetch_profile_document,
    image_src,
    iter_structured_urls,
    meta_content,
    next_data_page_props,
    page_title,
    parse_document,
    parse_profile_url,
    resolve_avatar,
)

LAYLO_HOSTS = frozenset({"laylo.com", "www.laylo.com"})
LAYLO_SELF_HOSTS = frozenset({"laylo.com"})
LAYLO_HANDLE_RE = re.compile(r"[a-z0-9_.]{1,30}")
LAYLO_RESERVED_HANDLES = frozenset(
    {
        "about",
        "api",
        "app",
        "auth",
        "blog",
        "dashboard",
        "drops",
        "explore",
        "help",
        "login",
        "pricing",
        "privacy",
        "search",
        "settings",
        "signup",
        "terms",
    }
)
LAYLO_SOURCE = "laylo"
LAYLO_SIGNAL = "laylo_profile_link"
LAYLO_NAME_SUFFIXES = (
    re.compile(r"\s*[|\-–]\s*Laylo\s*$", re.IGNORECASE),
    re.compile(r"\s+on\s+Laylo\s*$", re.IGNORECASE),
)
_PROFILE_KEYS = ("profile", "user", "creator", "artist")


def normalize_laylo_url(url: str) -> str:
    handle = parse_profile_url(
        url,
        hosts=LAYLO_HOSTS,
        handle_pattern=LAYLO_HANDLE_RE,
        reserved=LAYLO_RESERVED_HANDLES,
    )
    return f"https://laylo.com/{handle}"


async def fetch_laylo_document(
    url: str,
    *,
    client: httpx.AsyncClient | None = None,
    options: FetchOptions | None = None,
) -> FetchResult:
    return await fetch_profile_document(
        url,
        parse=normalize_laylo_url,
        hosts=LAYLO_HOSTS,
        client=client,
        options=options,
    )


def extract_laylo(html: str) -> ExtractionResult:
    soup = parse_document(html)
    profile = _profile_payload(next_data_page_props(soup))

    links = extract_links(
        [*iter_structured_urls(profile), *collect_hrefs(soup)],
        source_platform=LAYLO_SOURCE,
        source_signal=LAYLO_SIGNAL,
        self_hosts=LAYLO_SELF_HOSTS,
    )
    display_name = clean_display_name(
        as_text(profile.get("displayName"))
        or as_text(profile.get("name"))
        or meta_content(soup, "og:title", "twitter:title")
        or page_title(soup),
        LAYLO_NAME_SUFFIXES,
    )
    avatar_url = resolve_avatar(
        [
            meta_content(soup, "og:image"),
            meta_content(soup, "twitter:image"),
            as_text(profile.get("imageUrl")) or as_text(profile.get("profileImage")),
            image_src(soup, "img[class*='avatar']", "img[alt*='profile' i]"),
        ]
    )

    if not links and not display_name and not avatar_url:
        raise ParseError("laylo page has no links or profile metadata")
    return build_result(links, display_name, avatar_url)


def _profile_payload(page_props: dict[str, Any]) -> dict[str, Any]:
    for key in _PROFILE_KEYS:
        candidate = page_props.get(key)
        if isinstance(candidate, dict):
            return candidate
    return {}


LAYLO_STRATEGY = Strategy(
    platform_id="laylo",
    job_type="import_laylo",
    hosts=LAYLO_HOSTS,
    max_depth=3,
    parse=normalize_laylo_url,
    fetch=fetch_laylo_document,
    extract=extract_laylo,
)
