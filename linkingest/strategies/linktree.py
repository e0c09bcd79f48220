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
    json_ld_image,
    json_ld_objects,
    meta_content,
    next_data_page_props,
    page_title,
    parse_document,
    parse_profile_url,
    resolve_avatar,
)

LINKTREE_HOSTS = frozenset({"linktr.ee", "www.linktr.ee", "linktree.com", "www.linktree.com"})
LINKTREE_SELF_HOSTS = frozenset({"linktr.ee", "linktree.com"})
LINKTREE_HANDLE_RE = re.compile(r"[a-z0-9_]{1,30}")
LINKTREE_SOURCE = "linktree"
LINKTREE_SIGNAL = "linktree_profile_link"
LINKTREE_NAME_SUFFIXES = (
    re.compile(r"\s*[|\-–]\s*Linktree\s*$", re.IGNORECASE),
    re.compile(r"^@"),
)


def normalize_linktree_url(url: str) -> str:
    handle = parse_profile_url(url, hosts=LINKTREE_HOSTS, handle_pattern=LINKTREE_HANDLE_RE)
    return f"https://linktr.ee/{handle}"


async def fetch_linktree_document(
    url: str,
    *,
    client: httpx.AsyncClient | None = None,
    options: FetchOptions | None = None,
) -> FetchResult:
    return await fetch_profile_document(
        url,
        parse=normalize_linktree_url,
        hosts=LINKTREE_HOSTS,
        client=client,
        options=options,
    )


def extract_linktree(html: str) -> ExtractionResult:
    soup = parse_document(html)
    account = _account_payload(next_data_page_props(soup))

    candidates = [*_account_link_urls(account), *collect_hrefs(soup)]
    links = extract_links(
        candidates,
        source_platform=LINKTREE_SOURCE,
        source_signal=LINKTREE_SIGNAL,
        self_hosts=LINKTREE_SELF_HOSTS,
    )

    display_name = clean_display_name(
        as_text(account.get("pageTitle"))
        or meta_content(soup, "og:title", "twitter:title")
        or page_title(soup)
        or as_text(account.get("username")),
        LINKTREE_NAME_SUFFIXES,
    )
    avatar_url = resolve_avatar(
        [
            meta_content(soup, "og:image"),
            meta_content(soup, "twitter:image"),
            as_text(account.get("profilePictureUrl")) or json_ld_image(json_ld_objects(soup)),
            image_src(soup, 'img[data-testid="ProfileImage"]', "img[alt*='profile' i]"),
        ]
    )

    if not links and not display_name and not avatar_url:
        raise ParseError("linktree page has no links or profile metadata")
    return build_result(links, display_name, avatar_url)


def _account_payload(page_props: dict[str, Any]) -> dict[str, Any]:
    account = page_props.get("account")
    if not isinstance(account, dict):
        account = {}
    # Older page payloads keep the link list beside the account block.
    if "links" not in account and isinstance(page_props.get("links"), list):
        account = {**account, "links": page_props["links"]}
    return account


def _account_link_urls(account: dict[str, Any]) -> list[str]:
    urls: list[str] = []
    for key in ("links", "socialLinks"):
        entries = account.get(key)
        if not isinstance(entries, list):
            continue
        for entry in entries:
            url = as_text(entry.get("url")) if isinstance(entry, dict) else None
            if url:
                urls.append(url)
    return urls


LINKTREE_STRATEGY = Strategy(
    platform_id="linktree",
    job_type="import_linktree",
    hosts=LINKTREE_HOSTS,
    max_depth=3,
    parse=normalize_linktree_url,
    fetch=fetch_linktree_document,
    extract=extract_linktree,
)
