from __future__ import annotations

import re

import httpx

from linkingest.core.errors import ParseError
from linkingest.schemas.ingestion import ExtractionResult
from linkingest.services.fetcher import FetchOptions, FetchResult
from linkingest.strategies.base import (
    DEFAULT_PLACEHOLDER_PATTERNS,
    Strategy,
    as_text,
    build_result,
    clean_display_name,
    collect_hrefs,
    element_text,
    extract_links,
    fetch_profile_document,
    image_src,
    json_ld_image,
    json_ld_objects,
    json_ld_of_type,
    json_ld_same_as,
    meta_content,
    page_title,
    parse_document,
    parse_profile_url,
    resolve_avatar,
)

BEACONS_HOSTS = frozenset({"beacons.ai", "www.beacons.ai", "beacons.page", "www.beacons.page"})
# Subdomains (cdn., assets., app., dashboard. ...) are matched as suffixes of these.
BEACONS_SELF_HOSTS = frozenset({"beacons.ai", "beacons.page"})
BEACONS_HANDLE_RE = re.compile(r"[a-z0-9][a-z0-9_.]{0,28}[a-z0-9]|[a-z0-9]{1,2}")
BEACONS_RESERVED_HANDLES = frozenset(
    {
        "about",
        "admin",
        "api",
        "app",
        "blog",
        "contact",
        "creators",
        "dashboard",
        "explore",
        "faq",
        "features",
        "help",
        "login",
        "pricing",
        "privacy",
        "register",
        "search",
        "settings",
        "signup",
        "support",
        "terms",
    }
)
BEACONS_SOURCE = "beacons"
BEACONS_SIGNAL = "beacons_profile_link"
BEACONS_NAME_SUFFIXES = (
    re.compile(r"\s*[|\-–]\s*Beacons(?:\.ai)?\s*$", re.IGNORECASE),
    re.compile(r"\s+on\s+Beacons(?:\.ai)?\s*$", re.IGNORECASE),
    re.compile(r"[’']s\s+Beacons(?:\.ai)?\s*$", re.IGNORECASE),
    re.compile(r"\s+Beacons(?:\.ai)?\s*$", re.IGNORECASE),
    re.compile(r"^@"),
)
BEACONS_PLACEHOLDER_PATTERNS = (
    *DEFAULT_PLACEHOLDER_PATTERNS,
    re.compile(r"beacons[-_]?logo", re.IGNORECASE),
)
PROFILE_JSON_LD_TYPES = frozenset({"Person", "ProfilePage", "WebPage"})


def normalize_beacons_url(url: str) -> str:
    handle = parse_profile_url(
        url,
        hosts=BEACONS_HOSTS,
        handle_pattern=BEACONS_HANDLE_RE,
        reserved=BEACONS_RESERVED_HANDLES,
    )
    return f"https://beacons.ai/{handle}"


async def fetch_beacons_document(
    url: str,
    *,
    client: httpx.AsyncClient | None = None,
    options: FetchOptions | None = None,
) -> FetchResult:
    return await fetch_profile_document(
        url,
        parse=normalize_beacons_url,
        hosts=BEACONS_HOSTS,
        client=client,
        options=options,
    )


def extract_beacons(html: str) -> ExtractionResult:
    soup = parse_document(html)
    profile_objects = json_ld_of_type(json_ld_objects(soup), PROFILE_JSON_LD_TYPES)

    links = extract_links(
        [*json_ld_same_as(profile_objects), *collect_hrefs(soup)],
        source_platform=BEACONS_SOURCE,
        source_signal=BEACONS_SIGNAL,
        self_hosts=BEACONS_SELF_HOSTS,
    )

    display_name = None
    for raw_name in (
        meta_content(soup, "og:title", "twitter:title"),
        next((as_text(item.get("name")) for item in profile_objects if as_text(item.get("name"))), None),
        element_text(soup, "h1", "[class*='profile-name']", "[class*='ProfileName']"),
        page_title(soup),
    ):
        display_name = clean_display_name(raw_name, BEACONS_NAME_SUFFIXES)
        if display_name:
            break

    avatar_url = resolve_avatar(
        [
            meta_content(soup, "og:image"),
            meta_content(soup, "twitter:image"),
            json_ld_image(profile_objects),
            image_src(soup, "img[class*='avatar']", "img[class*='profile']", "img[alt*='avatar' i]"),
        ],
        placeholder_patterns=BEACONS_PLACEHOLDER_PATTERNS,
    )

    if not links and not display_name and not avatar_url:
        raise ParseError("beacons page has no links or profile metadata")
    return build_result(links, display_name, avatar_url)


BEACONS_STRATEGY = Strategy(
    platform_id="beacons",
    job_type="import_beacons",
    hosts=BEACONS_HOSTS,
    max_depth=3,
    parse=normalize_beacons_url,
    fetch=fetch_beacons_document,
    extract=extract_beacons,
)
