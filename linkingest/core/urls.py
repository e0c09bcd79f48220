from __future__ import annotations

import re
from types import MappingProxyType
from urllib.parse import unquote_plus, urlsplit, urlunsplit

TRACKING_KEYS = frozenset(
    {
        "_ga",
        "_hsenc",
        "_hsmi",
        "fbclid",
        "gclid",
        "igshid",
        "mc_cid",
        "mc_eid",
        "msclkid",
        "nd",
        "ref",
        "si",
        "source",
        "yclid",
    }
)
TRACKING_PREFIXES = ("utm_",)
UNSAFE_SCHEMES = frozenset({"javascript", "data", "vbscript", "file", "mailto", "tel"})
URL_SHORTENER_HOSTS = frozenset(
    {
        "bit.ly",
        "buff.ly",
        "click.linksynergy.com",
        "fb.me",
        "goo.gl",
        "lnkd.in",
        "ow.ly",
        "redirect.viglink.com",
        "t.co",
        "tinyurl.com",
    }
)
DOMAIN_MISSPELLINGS = MappingProxyType(
    {
        "insatagram.com": "instagram.com",
        "instagran.com": "instagram.com",
        "instagarm.com": "instagram.com",
        "instragram.com": "instagram.com",
        "insragram.com": "instagram.com",
        "intagram.com": "instagram.com",
        "instagam.com": "instagram.com",
        "instgram.com": "instagram.com",
        "insagram.com": "instagram.com",
        "instagrm.com": "instagram.com",
        "instagramm.com": "instagram.com",
        "tiktoc.com": "tiktok.com",
        "ticktok.com": "tiktok.com",
        "tictok.com": "tiktok.com",
        "tiktik.com": "tiktok.com",
        "titkok.com": "tiktok.com",
        "yotube.com": "youtube.com",
        "youtub.com": "youtube.com",
        "youutube.com": "youtube.com",
        "yuotube.com": "youtube.com",
        "youtue.com": "youtube.com",
        "youube.com": "youtube.com",
        "yutube.com": "youtube.com",
        "youtubee.com": "youtube.com",
        "twiter.com": "twitter.com",
        "twtter.com": "twitter.com",
        "twiiter.com": "twitter.com",
        "twittter.com": "twitter.com",
        "twitterr.com": "twitter.com",
        "spotfy.com": "spotify.com",
        "spotiify.com": "spotify.com",
        "spotifiy.com": "spotify.com",
        "spotifi.com": "spotify.com",
        "soptify.com": "spotify.com",
        "spoitfy.com": "spotify.com",
        "facebok.com": "facebook.com",
        "facbook.com": "facebook.com",
        "faceboo.com": "facebook.com",
        "faceebook.com": "facebook.com",
        "faceboook.com": "facebook.com",
        "linkdin.com": "linkedin.com",
        "linkedn.com": "linkedin.com",
        "linkein.com": "linkedin.com",
        "linkeind.com": "linkedin.com",
        "soundclod.com": "soundcloud.com",
        "soundcoud.com": "soundcloud.com",
        "souncloud.com": "soundcloud.com",
        "twich.tv": "twitch.tv",
        "twicth.tv": "twitch.tv",
        "vemno.com": "venmo.com",
        "vnemo.com": "venmo.com",
    }
)
# Labels that show up glued to their TLD ("youtubecom") often enough to repair.
MISSING_DOT_LABELS = MappingProxyType(
    {
        "bandcamp": "com",
        "facebook": "com",
        "instagram": "com",
        "linkedin": "com",
        "medium": "com",
        "patreon": "com",
        "paypal": "com",
        "pinterest": "com",
        "reddit": "com",
        "snapchat": "com",
        "soundcloud": "com",
        "spotify": "com",
        "tiktok": "com",
        "twitch": "tv",
        "twitter": "com",
        "venmo": "com",
        "youtube": "com",
    }
)
TWITTER_HOSTS = frozenset({"twitter.com", "www.twitter.com", "mobile.twitter.com"})
TIKTOK_RESERVED_PATHS = frozenset({"for", "following", "live", "upload", "search", "discover", "trending"})

_BARE_HANDLE_RE = re.compile(r"^@[A-Za-z0-9._]+$")
_ENCODED_CONTROL_RE = re.compile(r"%(?:0a|0d|09|00)", re.IGNORECASE)
_SCHEME_RE = re.compile(r"^([A-Za-z][A-Za-z0-9+.-]*):")
_SPACED_DOT_RE = re.compile(r"\s*\.\s*")
_COMMA_TLD_RE = re.compile(r"\s*,\s*(?=(?:com|net|tv|be|gg|me)(?:$|\.))")
_HOST_RE = re.compile(r"^[a-z0-9](?:[a-z0-9-]*[a-z0-9])?(?:\.[a-z0-9](?:[a-z0-9-]*[a-z0-9])?)*$")
_TIKTOK_HANDLE_RE = re.compile(r"^[A-Za-z0-9._]+$")
_DUPLICATE_SLASHES_RE = re.compile(r"/{2,}")


def is_unsafe_url(raw_url: str) -> bool:
    """True for script/data/local schemes and encoded or literal control characters."""
    candidate = raw_url.strip()
    if any(ord(char) < 0x20 or ord(char) == 0x7F for char in candidate):
        return True
    if _ENCODED_CONTROL_RE.search(candidate):
        return True
    match = _SCHEME_RE.match(candidate)
    if match is None:
        return False
    # "instagram.com:443/x" parses as a scheme too; only reject known-bad schemes.
    return match.group(1).lower() in UNSAFE_SCHEMES


def is_tracking_param(key: str) -> bool:
    lowered = key.lower()
    return lowered in TRACKING_KEYS or lowered.startswith(TRACKING_PREFIXES)


def strip_tracking_params(raw_url: str) -> str:
    try:
        parsed = urlsplit(raw_url)
    except ValueError:
        return raw_url
    if not parsed.query:
        return raw_url
    return urlunsplit(parsed._replace(query=_filter_query(parsed.query)))


def is_shortener_host(host: str) -> bool:
    host = host.lower()
    return any(host == shortener or host.endswith(f".{shortener}") for shortener in URL_SHORTENER_HOSTS)


def normalize_url(raw_url: str) -> str:
    """Return the canonical https form of ``raw_url``.

    Repairs common typos in the host (misspelled platform domains, missing or
    comma-separated dots before the TLD), canonicalizes twitter.com to x.com,
    prefixes bare TikTok handles with ``@`` and strips tracking parameters,
    fragments and trailing slashes. Unsafe or unparseable input is returned
    unchanged. The function is idempotent.
    """
    candidate = raw_url.strip()
    if not candidate or is_unsafe_url(candidate):
        return raw_url
    if _BARE_HANDLE_RE.match(candidate):
        return f"https://x.com/{candidate[1:]}"

    if candidate.startswith("//"):
        candidate = f"https:{candidate}"
    elif "://" not in candidate:
        candidate = f"https://{candidate}"

    try:
        parsed = urlsplit(candidate)
        port = parsed.port
    except ValueError:
        return raw_url

    if parsed.scheme.lower() not in {"http", "https"}:
        return raw_url

    host = repair_host(parsed.hostname or "")
    if not _HOST_RE.match(host):
        return raw_url
    if host in TWITTER_HOSTS:
        host = "x.com"

    netloc = host if port in (None, 80, 443) else f"{host}:{port}"
    path = _DUPLICATE_SLASHES_RE.sub("/", parsed.path).rstrip("/")
    if host == "tiktok.com" or host.endswith(".tiktok.com"):
        path = _prefix_tiktok_handle(path)

    return urlunsplit(("https", netloc, path, _filter_query(parsed.query), ""))


def repair_host(host: str) -> str:
    host = _SPACED_DOT_RE.sub(".", host.strip().lower()).rstrip(".")
    host = _COMMA_TLD_RE.sub(".", host)
    if host.endswith(".ocm"):
        host = f"{host[:-4]}.com"

    labels = host.split(".")
    glued = labels[-1]
    for label, tld in MISSING_DOT_LABELS.items():
        if glued == f"{label}{tld}":
            labels[-1:] = [label, tld]
            host = ".".join(labels)
            break

    for misspelled, correct in DOMAIN_MISSPELLINGS.items():
        if host == misspelled or host.endswith(f".{misspelled}"):
            host = host[: -len(misspelled)] + correct
            break
    return host


def _prefix_tiktok_handle(path: str) -> str:
    segments = path.split("/")
    # segments[0] is the empty string before the leading slash
    if len(segments) < 2:
        return path
    first = segments[1]
    if (
        first
        and not first.startswith("@")
        and first.lower() not in TIKTOK_RESERVED_PATHS
        and _TIKTOK_HANDLE_RE.match(first)
    ):
        segments[1] = f"@{first}"
    return "/".join(segments)


def _filter_query(query: str) -> str:
    # Kept segments are joined verbatim; only the key is decoded, for the tracking check.
    kept = [
        segment
        for segment in query.split("&")
        if segment and not is_tracking_param(unquote_plus(segment.partition("=")[0]))
    ]
    kept.sort(key=lambda segment: segment.partition("=")[0])
    return "&".join(kept)
