from __future__ import annotations

import json
import logging
import re
from collections.abc import Awaitable, Callable, Collection, Iterable, Iterator, Sequence
from dataclasses import dataclass
from typing import Any
from urllib.parse import unquote, urlsplit

import httpx
from bs4 import BeautifulSoup

from linkingest.core.errors import IngestionError, InvalidHandleError, InvalidHostError, InvalidUrlError
from linkingest.core.platforms import canonical_identity, detect_platform
from linkingest.core.urls import is_shortener_host, is_unsafe_url, normalize_url, strip_tracking_params
from linkingest.schemas.ingestion import ExtractedLink, ExtractionResult, LinkEvidence
from linkingest.services.fetcher import FetchOptions, FetchResult, fetch_document

logger = logging.getLogger(__name__)

MAX_DISPLAY_NAME_LENGTH = 100
HREF_ATTRIBUTES = ("href", "data-href", "data-url")
NON_CONTENT_TAGS = frozenset({"base", "link", "meta", "script", "style"})
STRUCTURED_URL_KEYS = frozenset({"url", "href", "link"})
DEFAULT_PLACEHOLDER_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"default[-_]?avatar", re.IGNORECASE),
    re.compile(r"placeholder", re.IGNORECASE),
    re.compile(r"blank[-_]?profile", re.IGNORECASE),
    re.compile(r"og[-_]?default", re.IGNORECASE),
    re.compile(r"share[-_]?default", re.IGNORECASE),
)

_HTTP_HREF_RE = re.compile(r"^(?:https?:)?//", re.IGNORECASE)
_ASSET_PATH_RE = re.compile(r"\.(?:css|gif|ico|jpe?g|js|png|svg|webp|woff2?)$", re.IGNORECASE)

FetchFunc = Callable[..., Awaitable[FetchResult]]


@dataclass(frozen=True, slots=True)
class Strategy:
    """Capabilities one link-in-bio platform plugs into the ingestion pipeline."""

    platform_id: str
    job_type: str
    hosts: frozenset[str]
    max_depth: int
    parse: Callable[[str], str]
    fetch: FetchFunc
    extract: Callable[[str], ExtractionResult]

    def canonicalize(self, url: str) -> str | None:
        try:
            return self.parse(url)
        except IngestionError:
            return None

    def validate(self, url: str) -> bool:
        return self.canonicalize(url) is not None


def parse_profile_url(
    url: str,
    *,
    hosts: Collection[str],
    handle_pattern: re.Pattern[str],
    reserved: Collection[str] = (),
) -> str:
    """Extract the lowercased profile handle from an https profile URL on ``hosts``."""
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
    if host not in hosts:
        raise InvalidHostError(f"host {host!r} is not a supported profile host")

    segments = [segment for segment in parsed.path.split("/") if segment]
    if not segments:
        raise InvalidHandleError(f"no profile handle in {url!r}")
    handle = unquote(segments[0]).strip().lstrip("@").lower()
    if handle in reserved or not handle_pattern.fullmatch(handle):
        raise InvalidHandleError(f"invalid profile handle {handle!r}")
    return handle


async def fetch_profile_document(
    url: str,
    *,
    parse: Callable[[str], str],
    hosts: Collection[str],
    client: httpx.AsyncClient | None = None,
    options: FetchOptions | None = None,
) -> FetchResult:
    canonical_url = parse(url)
    fetch_options = (options or FetchOptions()).restricted_to(hosts)
    return await fetch_document(canonical_url, options=fetch_options, client=client)


def parse_document(html: str) -> BeautifulSoup:
    return BeautifulSoup(html, "html.parser")


def collect_hrefs(soup: BeautifulSoup) -> list[str]:
    hrefs: list[str] = []
    for tag in soup.find_all(True):
        if tag.name in NON_CONTENT_TAGS:
            continue
        for attribute in HREF_ATTRIBUTES:
            value = tag.get(attribute)
            if isinstance(value, str) and value.strip():
                hrefs.append(value.strip())
    return hrefs


def is_extractable_href(href: str) -> bool:
    if not href or href.startswith("#") or is_unsafe_url(href):
        return False
    return bool(_HTTP_HREF_RE.match(href))


def extract_links(
    candidates: Iterable[str],
    *,
    source_platform: str,
    source_signal: str,
    self_hosts: Collection[str],
    extra_signals: Sequence[str] = (),
) -> list[ExtractedLink]:
    """Turn raw hrefs into validated, classified links, deduped by canonical identity.

    Unsafe schemes, relative links, self-links back to ``self_hosts`` (and their
    subdomains) and URL shorteners are dropped. The first occurrence of an
    identity wins.
    """
    links: list[ExtractedLink] = []
    seen: set[str] = set()
    signals = sorted({source_signal, *extra_signals})

    for raw_href in candidates:
        if not is_extractable_href(raw_href):
            continue
        href = f"https:{raw_href}" if raw_href.startswith("//") else raw_href
        normalized = normalize_url(strip_tracking_params(href))
        try:
            parts = urlsplit(normalized)
            host = (parts.hostname or "").lower()
        except ValueError:
            continue
        if not host or is_self_host(host, self_hosts) or is_shortener_host(host):
            continue
        if _ASSET_PATH_RE.search(parts.path):
            continue

        detected = detect_platform(normalized)
        if not detected.is_valid:
            continue
        identity = canonical_identity(detected)
        if identity in seen:
            continue
        seen.add(identity)

        links.append(
            ExtractedLink(
                url=detected.normalized_url,
                platform_id=detected.platform.id,
                title=detected.suggested_title,
                source_platform=source_platform,
                evidence=LinkEvidence(sources=[source_platform], signals=list(signals)),
            )
        )
    return links


def is_self_host(host: str, self_hosts: Collection[str]) -> bool:
    host = host.lower()
    return any(host == own or host.endswith(f".{own}") for own in self_hosts)


def meta_content(soup: BeautifulSoup, *keys: str) -> str | None:
    for key in keys:
        tag = soup.find("meta", attrs={"property": key}) or soup.find("meta", attrs={"name": key})
        if tag is None:
            continue
        content = tag.get("content")
        if isinstance(content, str) and content.strip():
            return content.strip()
    return None


def page_title(soup: BeautifulSoup) -> str | None:
    if soup.title is None or soup.title.string is None:
        return None
    return soup.title.string.strip() or None


def script_json(soup: BeautifulSoup, element_id: str) -> dict[str, Any] | None:
    script = soup.find("script", id=element_id)
    if script is None:
        return None
    raw = script.string or script.get_text()
    if not raw or not raw.strip():
        return None
    try:
        decoded = json.loads(raw)
    except json.JSONDecodeError:
        logger.debug("could not decode script#%s payload", element_id)
        return None
    return decoded if isinstance(decoded, dict) else None


def json_ld_objects(soup: BeautifulSoup) -> list[dict[str, Any]]:
    objects: list[dict[str, Any]] = []
    for script in soup.find_all("script", type="application/ld+json"):
        raw = script.string or script.get_text()
        if not raw or not raw.strip():
            continue
        try:
            decoded = json.loads(raw)
        except json.JSONDecodeError:
            logger.debug("skipping malformed JSON-LD block")
            continue
        objects.extend(_flatten_json_ld(decoded))
    return objects


def _flatten_json_ld(node: Any) -> Iterator[dict[str, Any]]:
    if isinstance(node, list):
        for item in node:
            yield from _flatten_json_ld(item)
    elif isinstance(node, dict):
        yield node
        graph = node.get("@graph")
        if graph is not None:
            yield from _flatten_json_ld(graph)
        main_entity = node.get("mainEntity")
        if isinstance(main_entity, dict):
            yield from _flatten_json_ld(main_entity)


def json_ld_of_type(objects: Iterable[dict[str, Any]], types: Collection[str]) -> list[dict[str, Any]]:
    matched: list[dict[str, Any]] = []
    for item in objects:
        declared = item.get("@type")
        declared_types = declared if isinstance(declared, list) else [declared]
        if any(isinstance(value, str) and value in types for value in declared_types):
            matched.append(item)
    return matched


def json_ld_image(objects: Iterable[dict[str, Any]]) -> str | None:
    for item in objects:
        image = item.get("image") or item.get("logo")
        if isinstance(image, list):
            image = image[0] if image else None
        if isinstance(image, dict):
            image = image.get("url") or image.get("contentUrl")
        if isinstance(image, str) and image.strip():
            return image.strip()
    return None


def json_ld_same_as(objects: Iterable[dict[str, Any]]) -> list[str]:
    urls: list[str] = []
    for item in objects:
        same_as = item.get("sameAs")
        if isinstance(same_as, str):
            same_as = [same_as]
        if isinstance(same_as, list):
            urls.extend(value for value in same_as if isinstance(value, str))
    return urls


def iter_structured_urls(node: Any) -> Iterator[str]:
    """Yield every ``url``/``href``/``link`` string value found in a decoded JSON tree."""
    if isinstance(node, dict):
        for key, value in node.items():
            if key in STRUCTURED_URL_KEYS and isinstance(value, str) and _HTTP_HREF_RE.match(value):
                yield value
            else:
                yield from iter_structured_urls(value)
    elif isinstance(node, list):
        for item in node:
            yield from iter_structured_urls(item)


def clean_display_name(raw: str | None, suffix_patterns: Sequence[re.Pattern[str]] = ()) -> str | None:
    if not raw:
        return None
    name = " ".join(raw.split())
    for pattern in suffix_patterns:
        name = pattern.sub("", name).strip()
    if not name or len(name) > MAX_DISPLAY_NAME_LENGTH:
        return None
    return name


def is_placeholder_image(url: str, patterns: Sequence[re.Pattern[str]] = DEFAULT_PLACEHOLDER_PATTERNS) -> bool:
    return any(pattern.search(url) for pattern in patterns)


def resolve_avatar(
    candidates: Iterable[str | None],
    *,
    placeholder_patterns: Sequence[re.Pattern[str]] = DEFAULT_PLACEHOLDER_PATTERNS,
) -> str | None:
    """First usable https image from ``candidates`` in priority order."""
    for candidate in candidates:
        if not candidate:
            continue
        url = candidate.strip()
        if url.startswith("//"):
            url = f"https:{url}"
        if not url.lower().startswith("https://") or is_unsafe_url(url):
            continue
        if is_placeholder_image(url, placeholder_patterns):
            logger.debug("rejecting placeholder avatar %s", url)
            continue
        return url
    return None


def image_src(soup: BeautifulSoup, *selectors: str) -> str | None:
    for selector in selectors:
        tag = soup.select_one(selector)
        if tag is None:
            continue
        src = tag.get("src") or tag.get("data-src")
        if isinstance(src, str) and src.strip():
            return src.strip()
    return None


def element_text(soup: BeautifulSoup, *selectors: str) -> str | None:
    for selector in selectors:
        tag = soup.select_one(selector)
        if tag is None:
            continue
        text = tag.get_text(" ", strip=True)
        if text:
            return text
    return None


def build_result(links: list[ExtractedLink], display_name: str | None, avatar_url: str | None) -> ExtractionResult:
    return ExtractionResult(
        links=links,
        display_name=(display_name or "").strip() or None,
        avatar_url=(avatar_url or "").strip() or None,
    )


def next_data_page_props(soup: BeautifulSoup) -> dict[str, Any]:
    next_data = script_json(soup, "__NEXT_DATA__")
    if not next_data:
        return {}
    props = next_data.get("props")
    page_props = props.get("pageProps") if isinstance(props, dict) else None
    return page_props if isinstance(page_props, dict) else {}


def as_text(value: Any) -> str | None:
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return None
