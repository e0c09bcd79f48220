from linkingest.core.platforms import canonical_identity, detect_platform, match_platform


def test_canonical_identity_collapses_instagram_variants() -> None:
    variants = [
        "instagram.com/User",
        "https://www.instagram.com/user/?utm_source=ig",
        "instagram.com/user",
    ]
    identities = {canonical_identity(detect_platform(variant)) for variant in variants}
    assert identities == {"instagram:user"}


def test_detect_platform_validates_spotify_paths() -> None:
    artist = detect_platform("https://open.spotify.com/artist/abc123")
    assert artist.is_valid
    assert artist.platform.id == "spotify"
    assert artist.suggested_title == "Spotify Artist"
    assert canonical_identity(artist) == "spotify:artist:abc123"

    bare = detect_platform("https://open.spotify.com/")
    assert not bare.is_valid
    assert bare.platform.id == "spotify"
    assert bare.error is not None


def test_detect_platform_suggests_social_titles() -> None:
    assert detect_platform("https://instagram.com/artist").suggested_title == "Instagram (@artist)"
    assert detect_platform("https://www.youtube.com/@artist").suggested_title == "YouTube Channel"
    assert detect_platform("https://example.com").suggested_title == "Website"


def test_youtube_identities() -> None:
    short = canonical_identity(detect_platform("https://youtu.be/dQw4w9WgXcQ"))
    watch = canonical_identity(detect_platform("https://www.youtube.com/watch?v=dQw4w9WgXcQ"))
    assert short == watch == "youtube:video:dQw4w9WgXcQ"

    channel = detect_platform("https://www.youtube.com/channel/UCAbCdEfGhIjKlMnOpQrStUv")
    assert canonical_identity(channel) == "youtube:channel:UCAbCdEfGhIjKlMnOpQrStUv"
    assert canonical_identity(detect_platform("https://youtube.com/@Artist")) == "youtube:handle:artist"
    assert canonical_identity(detect_platform("https://www.youtube.com/Artist")) == "youtube:c:artist"

    assert not detect_platform("https://www.youtube.com/results").is_valid


def test_match_platform_prefers_specific_hosts() -> None:
    assert match_platform("music.youtube.com").id == "youtube_music"
    assert match_platform("www.youtube.com").id == "youtube"
    assert match_platform("open.spotify.com").id == "spotify"
    assert match_platform("notspotify.com").id == "website"
    assert match_platform("linktr.ee").id == "linktree"


def test_detect_platform_rejects_incomplete_links() -> None:
    assert not detect_platform("https://linktr.ee").is_valid
    assert not detect_platform("https://localhost/profile").is_valid
    assert not detect_platform("javascript:alert(1)").is_valid
    assert detect_platform("https://beacons.ai/artist").is_valid


def test_canonical_identity_falls_back_to_host_and_path() -> None:
    detected = detect_platform("https://www.Example.com/Music/")
    assert canonical_identity(detected) == "website:example.com/music"
