from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

MAX_INGESTION_DEPTH = 3

JobStatus = Literal["pending", "running", "completed", "failed"]
LinkState = Literal["active", "suggested", "rejected"]
SourceType = Literal["manual", "admin", "ingested"]
IngestionStatus = Literal["idle", "processing", "failed"]


class LinkEvidence(BaseModel):
    sources: list[str] = Field(default_factory=list)
    signals: list[str] = Field(default_factory=list)


class ExtractedLink(BaseModel):
    url: str
    platform_id: str
    title: str | None = None
    source_platform: str
    evidence: LinkEvidence = Field(default_factory=LinkEvidence)


class ExtractionResult(BaseModel):
    links: list[ExtractedLink] = Field(default_factory=list)
    display_name: str | None = None
    avatar_url: str | None = None


class IngestionJobPayload(BaseModel):
    profile_id: str
    source_url: str
    dedup_key: str
    depth: int = Field(default=0, ge=0, le=MAX_INGESTION_DEPTH)


class IngestionJob(BaseModel):
    id: str
    job_type: str
    payload: IngestionJobPayload
    status: JobStatus
    attempts: int = 0
    max_attempts: int = 3
    run_at: datetime
    priority: int = 0
    error: str | None = None
    result_json: dict[str, Any] | None = None
    created_at: datetime
    updated_at: datetime


class SocialLink(BaseModel):
    id: str
    profile_id: str
    platform: str
    platform_type: str
    url: str
    display_text: str | None = None
    sort_order: int = 0
    state: LinkState = "active"
    confidence: float | None = None
    source_platform: str | None = None
    source_type: SourceType = "manual"
    evidence: LinkEvidence = Field(default_factory=LinkEvidence)


class ProfileSnapshot(BaseModel):
    id: str
    username_normalized: str | None = None
    display_name: str | None = None
    avatar_url: str | None = None
    display_name_locked: bool = False
    avatar_locked: bool = False
    ingestion_status: IngestionStatus = "idle"
    last_ingestion_error: str | None = None


class EnqueueResult(BaseModel):
    job_id: str | None = None
    detected_platform: str
    created: bool = False


class BatchSummary(BaseModel):
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    skipped: int = 0
    requeued_stuck: int = 0
