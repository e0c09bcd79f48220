from linkingest.core.urls import (
    is_shortener_host,
    is_unsafe_url,
    normalize_url,
    repair_host,
    strip_tracking_params,
)


def test_normalize_url_forces_https_and_strips_tracking() -> None:
    normalized = normalize_url("http://www.instagram.com/artistname/?utm_source=ig&b=2&a=1#bio")
    assert normalized == "https://www.instagram.com/artistname?a=1&b=2"


def test_normalize_url_is_idempotent() -> None:
    samples = [
        "http://www.instagram.com/artistname/?utm_source=ig&b=2&a=1#bio",
        "twitter.com/Artist",
        "@artist",
        "tiktok.com/artist",
        "youtubecom/@artist",
        "https://example.com:443//a//b/",
        "open.spotify,com/artist/abc123?si=xyz",
        "https://example.com/search?q=two words",
    ]
    for sample in samples:
        once = normalize_url(sample)
        assert normalize_url(once) == once


def test_normalize_url_canonicalizes_twitter_and_bare_handles() -> None:
    assert normalize_url("twitter.com/Artist") == "https://x.com/Artist"
    assert normalize_url("https://mobile.twitter.com/Artist") == "https://x.com/Artist"
    assert normalize_url("@artist") == "https://x.com/artist"


def test_normalize_url_prefixes_tiktok_handles() -> None:
    assert normalize_url("tiktok.com/artist") == "https://tiktok.com/@artist"
    assert normalize_url("https://www.tiktok.com/@artist") == "https://www.tiktok.com/@artist"
    assert normalize_url("https://www.tiktok.com/discover") == "https://www.tiktok.com/discover"


def test_normalize_url_repairs_common_host_typos() -> None:
    assert normalize_url("youtubecom/@artist") == "https://youtube.com/@artist"
    assert normalize_url("instagarm.com/artist") == "https://instagram.com/artist"
    assert normalize_url("open.spotify,com/artist/abc123") == "https://open.spotify.com/artist/abc123"
    assert normalize_url("tiktok.ocm/artist") == "https://tiktok.com/@artist"


def test_repair_host_leaves_valid_hosts_alone() -> None:
    assert repair_host("www.example.com") == "www.example.com"
    assert repair_host("WWW.Instagram.com.") == "www.instagram.com"


def test_normalize_url_drops_default_ports_and_duplicate_slashes() -> None:
    assert normalize_url("https://example.com:443//a//b/") == "https://example.com/a/b"
    assert normalize_url("https://example.com:8443/a") == "https://example.com:8443/a"


def test_normalize_url_returns_unsafe_input_unchanged() -> None:
    assert normalize_url("javascript:alert(1)") == "javascript:alert(1)"
    assert normalize_url("") == ""


def test_is_unsafe_url_rejects_schemes_and_control_characters() -> None:
    assert is_unsafe_url("javascript:alert(1)")
    assert is_unsafe_url("data:text/html;base64,AAAA")
    assert is_unsafe_url("https://example.com/%0aSet-Cookie")
    assert is_unsafe_url("https://example.com/\x00")
    assert not is_unsafe_url("https://example.com/profile")
    assert not is_unsafe_url("instagram.com/artist")


def test_strip_tracking_params_keeps_meaningful_query() -> None:
    assert strip_tracking_params("https://example.com/x?fbclid=1&q=2") == "https://example.com/x?q=2"
    assert strip_tracking_params("https://example.com/x") == "https://example.com/x"


def test_is_shortener_host_matches_subdomains() -> None:
    assert is_shortener_host("bit.ly")
    assert is_shortener_host("www.bit.ly")
    assert not is_shortener_host("notbit.ly")


def test_query_filtering_keeps_other_parameters_byte_for_byte() -> None:
    assert normalize_url("https://a.com/a?b=%E9") == "https://a.com/a?b=%E9"
    assert normalize_url("https://a.com/a?a=1;b=2&utm_source=x") == "https://a.com/a?a=1;b=2"
    assert normalize_url("https://a.com/a?%=1") == "https://a.com/a?%=1"
    assert normalize_url("https://a.com/a?q=a+b&utm%5Fmedium=bio&fbclid=1") == "https://a.com/a?q=a+b"
    assert strip_tracking_params("https://example.com/x?z=%2F&&gclid=1&a=") == "https://example.com/x?a=&z=%2F"
