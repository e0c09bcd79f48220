from __future__ import annotations

import re
from dataclasses import dataclass
from types import MappingProxyType
from typing import Literal
from urllib.parse import parse_qs, urlsplit

from linkingest.core.urls import normalize_url

PlatformCategory = Literal["dsp", "social", "creator", "payment", "messaging", "aggregator", "custom"]


@dataclass(frozen=True, slots=True)
class PlatformInfo:
    id: str
    name: str
    category: PlatformCategory


@dataclass(frozen=True, slots=True)
class DetectedLink:
    platform: PlatformInfo
    normalized_url: str
    original_url: str
    suggested_title: str
    is_valid: bool
    error: str | None = None


_PLATFORM_ROWS: tuple[tuple[str, str, PlatformCategory], ...] = (
    ("spotify", "Spotify", "dsp"),
    ("apple_music", "Apple Music", "dsp"),
    ("youtube_music", "YouTube Music", "dsp"),
    ("soundcloud", "SoundCloud", "dsp"),
    ("bandcamp", "Bandcamp", "dsp"),
    ("amazon_music", "Amazon Music", "dsp"),
    ("tidal", "Tidal", "dsp"),
    ("deezer", "Deezer", "dsp"),
    ("youtube", "YouTube", "social"),
    ("instagram", "Instagram", "social"),
    ("tiktok", "TikTok", "social"),
    ("twitter", "X (Twitter)", "social"),
    ("facebook", "Facebook", "social"),
    ("threads", "Threads", "social"),
    ("twitch", "Twitch", "social"),
    ("linkedin", "LinkedIn", "social"),
    ("reddit", "Reddit", "social"),
    ("pinterest", "Pinterest", "social"),
    ("snapchat", "Snapchat", "social"),
    ("rumble", "Rumble", "social"),
    ("quora", "Quora", "social"),
    ("discord", "Discord", "messaging"),
    ("telegram", "Telegram", "messaging"),
    ("whatsapp", "WhatsApp", "messaging"),
    ("line", "LINE", "messaging"),
    ("viber", "Viber", "messaging"),
    ("patreon", "Patreon", "creator"),
    ("onlyfans", "OnlyFans", "creator"),
    ("substack", "Substack", "creator"),
    ("medium", "Medium", "creator"),
    ("github", "GitHub", "creator"),
    ("behance", "Behance", "creator"),
    ("dribbble", "Dribbble", "creator"),
    ("cameo", "Cameo", "creator"),
    ("venmo", "Venmo", "payment"),
    ("paypal", "PayPal", "payment"),
    ("cashapp", "Cash App", "payment"),
    ("ko_fi", "Ko-fi", "payment"),
    ("buymeacoffee", "Buy Me a Coffee", "payment"),
    ("linktree", "Linktree", "aggregator"),
    ("beacons", "Beacons", "aggregator"),
    ("linkfire", "Linkfire", "aggregator"),
    ("toneden", "ToneDen", "aggregator"),
    ("featurefm", "Feature.fm", "aggregator"),
    ("laylo", "Laylo", "aggregator"),
    ("website", "Website", "custom"),
)

PLATFORMS = MappingProxyType({row[0]: PlatformInfo(id=row[0], name=row[1], category=row[2]) for row in _PLATFORM_ROWS})
WEBSITE = PLATFORMS["website"]

# Most specific hosts first; anything unmatched falls through to ``website``.
_DOMAIN_ROWS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("spotify", ("spotify.com",)),
    ("apple_music", ("music.apple.com",)),
    ("youtube_music", ("music.youtube.com",)),
    ("soundcloud", ("soundcloud.com",)),
    ("bandcamp", ("bandcamp.com",)),
    ("amazon_music", ("music.amazon.com",)),
    ("tidal", ("tidal.com",)),
    ("deezer", ("deezer.com",)),
    ("youtube", ("youtube.com", "youtu.be")),
    ("instagram", ("instagram.com",)),
    ("tiktok", ("tiktok.com",)),
    ("twitter", ("x.com", "twitter.com")),
    ("facebook", ("facebook.com", "fb.com")),
    ("threads", ("threads.net",)),
    ("twitch", ("twitch.tv",)),
    ("linkedin", ("linkedin.com",)),
    ("reddit", ("reddit.com",)),
    ("pinterest", ("pinterest.com",)),
    ("snapchat", ("snapchat.com",)),
    ("rumble", ("rumble.com",)),
    ("quora", ("quora.com",)),
    ("discord", ("discord.gg", "discord.com")),
    ("telegram", ("t.me", "telegram.me")),
    ("whatsapp", ("wa.me", "whatsapp.com")),
    ("line", ("line.me",)),
    ("viber", ("viber.com",)),
    ("patreon", ("patreon.com",)),
    ("onlyfans", ("onlyfans.com",)),
    ("substack", ("substack.com",)),
    ("medium", ("medium.com",)),
    ("github", ("github.com",)),
    ("behance", ("behance.net",)),
    ("dribbble", ("dribbble.com",)),
    ("cameo", ("cameo.com",)),
    ("venmo", ("venmo.com",)),
    ("paypal", ("paypal.me", "paypal.com")),
    ("cashapp", ("cash.app",)),
    ("ko_fi", ("ko-fi.com",)),
    ("buymeacoffee", ("buymeacoffee.com",)),
    ("linktree", ("linktr.ee", "linktree.com")),
    ("beacons", ("beacons.ai", "beacons.page")),
    ("linkfire", ("lnk.to", "linkfire.com")),
    ("toneden", ("toneden.io",)),
    ("featurefm", ("ffm.to", "feature.fm")),
    ("laylo", ("laylo.com",)),
)

DOMAIN_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = tuple(
    (re.compile(r"(?:^|\.)(?:" + "|".join(re.escape(domain) for domain in domains) + r")$"), platform_id)
    for platform_id, domains in _DOMAIN_ROWS
)

HANDLE_PLATFORMS = frozenset(
    {
        "instagram",
        "tiktok",
        "twitter",
        "threads",
        "twitch",
        "soundcloud",
        "patreon",
        "onlyfans",
        "cameo",
        "ko_fi",
        "buymeacoffee",
        "linktree",
        "beacons",
        "laylo",
    }
)
YOUTUBE_RESERVED_PATHS = frozenset(
    {
        "watch",
        "results",
        "shorts",
        "live",
        "playlist",
        "feed",
        "gaming",
        "music",
        "premium",
        "embed",
        "c",
        "channel",
        "user",
    }
)

_SPOTIFY_PATH_RE = re.compile(r"^/(?:intl-[a-z]{2}/)?(artist|album|track|playlist)/([A-Za-z0-9]+)$")
_INSTAGRAM_PATH_RE = re.compile(r"^/[A-Za-z0-9._]+$")
_TWITTER_PATH_RE = re.compile(r"^/[A-Za-z0-9_]+$")
_TIKTOK_PATH_RE = re.compile(r"^/@[A-Za-z0-9._]+$")
_YOUTUBE_NAMED_RE = re.compile(r"^/(c|channel|user)/[A-Za-z0-9_-]+")
_YOUTUBE_HANDLE_RE = re.compile(r"^/@[A-Za-z0-9._-]+")
_YOUTUBE_SHORTS_RE = re.compile(r"^/shorts/[A-Za-z0-9_-]+")
_YOUTU_BE_RE = re.compile(r"^/[A-Za-z0-9_-]{6,}")


def match_platform(host: str) -> PlatformInfo:
    host = host.lower()
    for pattern, platform_id in DOMAIN_PATTERNS:
        if pattern.search(host):
            return PLATFORMS[platform_id]
    return WEBSITE


def detect_platform(url: str) -> DetectedLink:
    normalized = normalize_url(url)
    try:
        parts = urlsplit(normalized)
        host = (parts.hostname or "").lower()
    except ValueError:
        parts = None
        host = ""

    if parts is None or parts.scheme != "https" or not host:
        return DetectedLink(
            platform=WEBSITE,
            normalized_url=normalized,
            original_url=url,
            suggested_title=WEBSITE.name,
            is_valid=False,
            error="Invalid URL format",
        )

    platform = match_platform(host)
    error = _validation_error(platform, host, parts.path, parts.query)
    return DetectedLink(
        platform=platform,
        normalized_url=normalized,
        original_url=url,
        suggested_title=_suggested_title(platform, parts.path),
        is_valid=error is None,
        error=error,
    )


def canonical_identity(detected: DetectedLink) -> str:
    """Stable key for "same destination" across scheme, case, www, tracking and ``@`` variants."""
    parts = urlsplit(detected.normalized_url)
    host = (parts.hostname or "").lower().removeprefix("www.")
    segments = [segment for segment in parts.path.split("/") if segment]
    platform_id = detected.platform.id

    if platform_id in HANDLE_PLATFORMS and len(segments) == 1:
        return f"{platform_id}:{segments[0].lstrip('@').lower()}"

    if platform_id == "youtube":
        identity = _youtube_identity(host, segments, parts.query)
        if identity is not None:
            return identity

    if platform_id == "spotify":
        match = _SPOTIFY_PATH_RE.match(parts.path)
        if match is not None:
            return f"spotify:{match.group(1)}:{match.group(2)}"

    return f"{platform_id}:{host}{parts.path.rstrip('/').lower()}"


def _youtube_identity(host: str, segments: list[str], query: str) -> str | None:
    if host == "youtu.be" and segments:
        return f"youtube:video:{segments[0]}"
    if not segments:
        return None
    first = segments[0]
    if first.startswith("@") and len(first) > 1:
        return f"youtube:handle:{first[1:].lower()}"
    if first == "channel" and len(segments) > 1:
        # channel ids are case-sensitive
        return f"youtube:channel:{segments[1]}"
    if first in {"c", "user"} and len(segments) > 1:
        return f"youtube:{first}:{segments[1].lower()}"
    if first == "shorts" and len(segments) > 1:
        return f"youtube:video:{segments[1]}"
    if first == "watch":
        video_ids = parse_qs(query).get("v")
        if video_ids:
            return f"youtube:video:{video_ids[0]}"
        return None
    if len(segments) == 1 and first.lower() not in YOUTUBE_RESERVED_PATHS:
        return f"youtube:c:{first.lower()}"
    return None


def _validation_error(platform: PlatformInfo, host: str, path: str, query: str) -> str | None:
    platform_id = platform.id
    if platform_id == "spotify":
        if host == "open.spotify.com" and _SPOTIFY_PATH_RE.match(path):
            return None
        return "Spotify links must point to an artist, album, track or playlist"
    if platform_id == "instagram":
        return None if _INSTAGRAM_PATH_RE.match(path) else "Instagram links must point to a profile"
    if platform_id == "twitter":
        return None if _TWITTER_PATH_RE.match(path) else "X links must point to a profile"
    if platform_id == "tiktok":
        return None if _TIKTOK_PATH_RE.match(path) else "TikTok links must look like tiktok.com/@handle"
    if platform_id == "youtube":
        return None if _is_valid_youtube(host, path, query) else "YouTube links must point to a channel or video"
    if platform.category == "aggregator":
        return None if path.strip("/") else f"{platform.name} links must include a profile handle"
    if platform_id == "website" and "." not in host:
        return "Website links need a full domain name"
    return None


def _is_valid_youtube(host: str, path: str, query: str) -> bool:
    host = host.removeprefix("www.").removeprefix("m.")
    if host == "youtu.be":
        return bool(_YOUTU_BE_RE.match(path))
    if host != "youtube.com":
        return False
    if _YOUTUBE_NAMED_RE.match(path) or _YOUTUBE_HANDLE_RE.match(path) or _YOUTUBE_SHORTS_RE.match(path):
        return True
    if path == "/watch" and parse_qs(query).get("v"):
        return True
    segments = [segment for segment in path.split("/") if segment]
    return len(segments) == 1 and segments[0].lower() not in YOUTUBE_RESERVED_PATHS


def _suggested_title(platform: PlatformInfo, path: str) -> str:
    segments = [segment for segment in path.split("/") if segment]
    if platform.id == "spotify":
        match = _SPOTIFY_PATH_RE.match(path)
        if match is not None:
            return f"{platform.name} {match.group(1).capitalize()}"
        return platform.name
    if platform.id in {"instagram", "twitter", "tiktok"} and segments:
        return f"{platform.name} (@{segments[0].lstrip('@')})"
    if platform.id == "youtube" and segments:
        if segments[0] in {"c", "channel", "user"} or segments[0].startswith("@"):
            return f"{platform.name} Channel"
    return platform.name
