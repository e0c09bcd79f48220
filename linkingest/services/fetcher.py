from __future__ import annotations

import asyncio
import codecs
import logging
from collections.abc import Collection
from dataclasses import dataclass
from urllib.parse import urljoin, urlsplit

import httpx

from linkingest.core.config import Settings
from linkingest.core.errors import (
    RETRYABLE_FETCH_ERRORS,
    EmptyResponseError,
    FetchFailedError,
    FetchTimeoutError,
    IngestionError,
    InvalidHostError,
    InvalidUrlError,
    NotFoundError,
    RateLimitedError,
)

logger = logging.getLogger(__name__)

REDIRECT_STATUS_CODES = {301, 302, 303, 307, 308}
HTML_CONTENT_TYPES = ("text/html", "application/xhtml+xml")
DEFAULT_USER_AGENT = "linkingest/1.0 (+https://github.com/linkingest)"


@dataclass(slots=True)
class FetchOptions:
    timeout_seconds: float = 10.0
    max_retries: int = 2
    retry_delay_seconds: float = 1.0
    max_bytes: int = 2 * 1024 * 1024
    max_redirects: int = 3
    user_agent: str = DEFAULT_USER_AGENT
    allowed_hosts: frozenset[str] | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> FetchOptions:
        return cls(
            timeout_seconds=settings.fetch_timeout_seconds,
            max_retries=max(0, settings.fetch_max_retries),
            retry_delay_seconds=max(0.0, settings.fetch_retry_delay_seconds),
            max_bytes=max(1, settings.fetch_max_bytes),
            max_redirects=max(0, settings.fetch_max_redirects),
            user_agent=settings.fetch_user_agent,
        )

    def restricted_to(self, hosts: Collection[str]) -> FetchOptions:
        return FetchOptions(
            timeout_seconds=self.timeout_seconds,
            max_retries=self.max_retries,
            retry_delay_seconds=self.retry_delay_seconds,
            max_bytes=self.max_bytes,
            max_redirects=self.max_redirects,
            user_agent=self.user_agent,
            allowed_hosts=frozenset(host.lower() for host in hosts),
        )


@dataclass(slots=True)
class FetchResult:
    html: str
    status_code: int
    final_url: str
    content_type: str | None


async def fetch_document(
    url: str,
    *,
    options: FetchOptions | None = None,
    client: httpx.AsyncClient | None = None,
) -> FetchResult:
    """Fetch an HTML document with per-attempt deadline, bounded retries and a body cap.

    Redirects are followed by hand so every hop can be checked against
    ``options.allowed_hosts``. Only timeouts, transport errors, 5xx responses
    and empty bodies are retried.
    """
    options = options or FetchOptions()
    validate_fetch_target(url, options.allowed_hosts)

    if client is not None:
        return await _fetch_with_retries(client=client, url=url, options=options)
    async with httpx.AsyncClient(timeout=options.timeout_seconds, follow_redirects=False) as temp_client:
        return await _fetch_with_retries(client=temp_client, url=url, options=options)


def validate_fetch_target(url: str, allowed_hosts: Collection[str] | None) -> str:
    try:
        parsed = urlsplit(url)
        host = (parsed.hostname or "").lower()
    except ValueError as exc:
        raise InvalidUrlError(f"unparseable url {url!r}") from exc

    if parsed.scheme.lower() not in {"http", "https"} or not host:
        raise InvalidUrlError(f"unsupported url {url!r}")
    if allowed_hosts is not None and host not in allowed_hosts:
        raise InvalidHostError(f"host {host!r} is not allowed")
    return host


async def _fetch_with_retries(*, client: httpx.AsyncClient, url: str, options: FetchOptions) -> FetchResult:
    attempts = options.max_retries + 1
    last_error: IngestionError | None = None

    for attempt in range(1, attempts + 1):
        try:
            return await asyncio.wait_for(
                _fetch_once(client=client, url=url, options=options),
                timeout=options.timeout_seconds,
            )
        except asyncio.TimeoutError:
            last_error = FetchTimeoutError(f"timed out after {options.timeout_seconds:.1f}s fetching {url}")
        except RETRYABLE_FETCH_ERRORS as exc:
            last_error = exc

        if attempt < attempts:
            logger.warning(
                "fetch attempt %s/%s failed for %s: %s; retrying in %.1fs",
                attempt,
                attempts,
                url,
                last_error,
                options.retry_delay_seconds,
            )
            await asyncio.sleep(options.retry_delay_seconds)

    assert last_error is not None
    raise last_error


async def _fetch_once(*, client: httpx.AsyncClient, url: str, options: FetchOptions) -> FetchResult:
    current_url = url
    headers = {
        "User-Agent": options.user_agent,
        "Accept": "text/html,application/xhtml+xml;q=0.9,*/*;q=0.8",
    }

    for _ in range(options.max_redirects + 1):
        request = client.build_request("GET", current_url, headers=headers)
        try:
            response = await client.send(request, stream=True)
        except httpx.TimeoutException as exc:
            raise FetchTimeoutError(f"timed out fetching {current_url}") from exc
        except httpx.HTTPError as exc:
            raise FetchFailedError(f"network error fetching {current_url}: {exc}") from exc

        try:
            location = response.headers.get("location")
            if response.status_code in REDIRECT_STATUS_CODES and location:
                next_url = urljoin(str(response.url), location)
                validate_fetch_target(next_url, options.allowed_hosts)
                logger.debug("following redirect %s -> %s", current_url, next_url)
                current_url = next_url
                continue

            _raise_for_status(response)
            try:
                body = await _read_capped(response, options.max_bytes)
            except httpx.TimeoutException as exc:
                raise FetchTimeoutError(f"timed out reading {current_url}") from exc
            except httpx.HTTPError as exc:
                raise FetchFailedError(f"network error reading {current_url}: {exc}") from exc
        finally:
            await response.aclose()

        html = _decode(body, response.charset_encoding)
        if not html.strip():
            raise EmptyResponseError(f"empty body from {current_url}", status_code=response.status_code)

        content_type = response.headers.get("content-type")
        if content_type and not content_type.lower().startswith(HTML_CONTENT_TYPES):
            logger.warning("unexpected content type %r from %s", content_type, current_url)

        return FetchResult(
            html=html,
            status_code=response.status_code,
            final_url=str(response.url),
            content_type=content_type,
        )

    raise FetchFailedError(f"more than {options.max_redirects} redirects fetching {url}")


def _raise_for_status(response: httpx.Response) -> None:
    status_code = response.status_code
    if status_code in {404, 410}:
        raise NotFoundError(f"{response.url} returned {status_code}", status_code=status_code)
    if status_code == 429:
        raise RateLimitedError(f"{response.url} rate limited the request", status_code=status_code)
    if status_code >= 400 or status_code in REDIRECT_STATUS_CODES:
        raise FetchFailedError(f"{response.url} returned {status_code}", status_code=status_code)


async def _read_capped(response: httpx.Response, max_bytes: int) -> bytes:
    declared = response.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > max_bytes:
        raise FetchFailedError(f"{response.url} declares {declared} bytes, limit is {max_bytes}")

    body = bytearray()
    async for chunk in response.aiter_bytes():
        body.extend(chunk)
        if len(body) > max_bytes:
            raise FetchFailedError(f"{response.url} exceeded the {max_bytes} byte limit")
    return bytes(body)


def _decode(body: bytes, charset: str | None) -> str:
    encoding = "utf-8"
    if charset:
        try:
            encoding = codecs.lookup(charset).name
        except LookupError:
            logger.debug("unknown charset %r, falling back to utf-8", charset)
    return body.decode(encoding, errors="replace")
