from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from urllib.parse import urlsplit

from linkingest.core.platforms import DetectedLink, canonical_identity, detect_platform
from linkingest.schemas.ingestion import (
    ExtractedLink,
    ExtractionResult,
    LinkEvidence,
    ProfileSnapshot,
    SocialLink,
)
from linkingest.strategies.base import MAX_DISPLAY_NAME_LENGTH, is_placeholder_image

logger = logging.getLogger(__name__)

PROTECTED_SOURCE_TYPES = frozenset({"manual", "admin"})
INGESTED_BASE_CONFIDENCE = 0.5
EXTRA_SOURCE_BONUS = 0.1
EXTRA_SIGNAL_BONUS = 0.05
HANDLE_MATCH_BONUS = 0.1
MAX_INGESTED_CONFIDENCE = 0.95
DEFAULT_SOURCES = ("ingestion",)
DEFAULT_SIGNALS = ("ingestion_profile_link",)


@dataclass(slots=True)
class LinkInsert:
    platform: str
    platform_type: str
    url: str
    display_text: str | None
    sort_order: int
    confidence: float
    source_platform: str
    evidence: LinkEvidence
    identity: str
    state: str = "suggested"
    source_type: str = "ingested"


@dataclass(slots=True)
class LinkUpdate:
    link_id: str
    url: str
    confidence: float
    evidence: LinkEvidence
    identity: str


@dataclass(slots=True)
class ProfileUpdate:
    display_name: str | None = None
    avatar_url: str | None = None

    def is_empty(self) -> bool:
        return self.display_name is None and self.avatar_url is None


@dataclass(slots=True)
class MergePlan:
    inserts: list[LinkInsert] = field(default_factory=list)
    updates: list[LinkUpdate] = field(default_factory=list)
    profile_update: ProfileUpdate = field(default_factory=ProfileUpdate)
    protected_matches: int = 0

    def summary(self) -> dict[str, int | bool]:
        return {
            "inserted": len(self.inserts),
            "updated": len(self.updates),
            "protected_matches": self.protected_matches,
            "profile_updated": not self.profile_update.is_empty(),
        }


def merge_evidence(*evidence: LinkEvidence | None) -> LinkEvidence:
    """Set union of sources and signals; order of arguments never matters."""
    sources: set[str] = set()
    signals: set[str] = set()
    for item in evidence:
        if item is None:
            continue
        sources.update(source for source in item.sources if source)
        signals.update(signal for signal in item.signals if signal)
    return LinkEvidence(sources=sorted(sources), signals=sorted(signals))


def compute_link_confidence(
    evidence: LinkEvidence,
    *,
    url: str,
    username_normalized: str | None,
) -> float:
    score = INGESTED_BASE_CONFIDENCE
    score += EXTRA_SOURCE_BONUS * max(0, len(set(evidence.sources)) - 1)
    score += EXTRA_SIGNAL_BONUS * max(0, len(set(evidence.signals)) - 1)
    if username_normalized and _url_handle(url) == username_normalized.strip().lower():
        score += HANDLE_MATCH_BONUS
    return round(min(score, MAX_INGESTED_CONFIDENCE), 2)


def identity_for_url(url: str) -> tuple[DetectedLink, str] | None:
    detected = detect_platform(url)
    if not detected.is_valid:
        return None
    return detected, canonical_identity(detected)


def plan_merge(
    profile: ProfileSnapshot,
    existing_links: Sequence[SocialLink],
    extraction: ExtractionResult,
) -> MergePlan:
    """Decide how an extraction lands on a profile's links without touching user-owned rows.

    Matching is by canonical identity. Manual and admin rows are never
    modified; ingested rows get their url, confidence and evidence union
    refreshed with their state kept; unmatched extracted links become new
    ``suggested`` rows appended after the current sort order. Nothing is
    ever deleted. Existing rows whose url no longer validates are ignored.
    """
    plan = MergePlan()
    existing_by_identity: dict[str, SocialLink] = {}
    for row in existing_links:
        resolved = identity_for_url(row.url)
        if resolved is None:
            logger.debug("skipping existing link %s with unrecognised url", row.id)
            continue
        existing_by_identity.setdefault(resolved[1], row)

    next_sort_order = max((row.sort_order for row in existing_links), default=-1) + 1
    inserts_by_identity: dict[str, LinkInsert] = {}
    updates_by_identity: dict[str, LinkUpdate] = {}

    for link in extraction.links:
        resolved = identity_for_url(link.url)
        if resolved is None:
            continue
        detected, identity = resolved
        incoming = _incoming_evidence(link)

        existing = existing_by_identity.get(identity)
        if existing is not None and existing.source_type in PROTECTED_SOURCE_TYPES:
            plan.protected_matches += 1
            continue

        if existing is not None:
            pending = updates_by_identity.get(identity)
            evidence = merge_evidence(existing.evidence, pending.evidence if pending else None, incoming)
            computed = compute_link_confidence(
                evidence,
                url=detected.normalized_url,
                username_normalized=profile.username_normalized,
            )
            confidence = max(existing.confidence or 0.0, computed)
            updates_by_identity[identity] = LinkUpdate(
                link_id=existing.id,
                url=detected.normalized_url,
                confidence=confidence,
                evidence=evidence,
                identity=identity,
            )
            continue

        pending_insert = inserts_by_identity.get(identity)
        if pending_insert is not None:
            pending_insert.evidence = merge_evidence(pending_insert.evidence, incoming)
            pending_insert.confidence = compute_link_confidence(
                pending_insert.evidence,
                url=pending_insert.url,
                username_normalized=profile.username_normalized,
            )
            continue

        inserts_by_identity[identity] = LinkInsert(
            platform=detected.platform.id,
            platform_type=detected.platform.category,
            url=detected.normalized_url,
            display_text=link.title or detected.suggested_title,
            sort_order=next_sort_order,
            confidence=compute_link_confidence(
                incoming,
                url=detected.normalized_url,
                username_normalized=profile.username_normalized,
            ),
            source_platform=link.source_platform,
            evidence=incoming,
            identity=identity,
        )
        next_sort_order += 1

    plan.inserts = list(inserts_by_identity.values())
    plan.updates = list(updates_by_identity.values())
    plan.profile_update = _plan_profile_update(profile, extraction)
    return plan


def is_confident_display_name(value: str | None) -> bool:
    if value is None:
        return False
    stripped = value.strip()
    return 0 < len(stripped) <= MAX_DISPLAY_NAME_LENGTH


def is_confident_avatar(value: str | None) -> bool:
    if not value:
        return False
    try:
        parsed = urlsplit(value.strip())
    except ValueError:
        return False
    return parsed.scheme == "https" and bool(parsed.hostname) and not is_placeholder_image(value)


def _plan_profile_update(profile: ProfileSnapshot, extraction: ExtractionResult) -> ProfileUpdate:
    update = ProfileUpdate()
    display_name = extraction.display_name.strip() if extraction.display_name else None
    if (
        not profile.display_name_locked
        and is_confident_display_name(display_name)
        and display_name != profile.display_name
    ):
        update.display_name = display_name

    avatar_url = extraction.avatar_url.strip() if extraction.avatar_url else None
    if not profile.avatar_locked and is_confident_avatar(avatar_url) and avatar_url != profile.avatar_url:
        update.avatar_url = avatar_url
    return update


def _incoming_evidence(link: ExtractedLink) -> LinkEvidence:
    evidence = merge_evidence(link.evidence)
    return LinkEvidence(
        sources=evidence.sources or list(DEFAULT_SOURCES),
        signals=evidence.signals or list(DEFAULT_SIGNALS),
    )


def _url_handle(url: str) -> str | None:
    try:
        path = urlsplit(url).path
    except ValueError:
        return None
    segments = [segment for segment in path.split("/") if segment]
    if not segments:
        return None
    return segments[-1].lstrip("@").lower()
