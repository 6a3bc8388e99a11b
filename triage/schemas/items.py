from datetime import datetime, timezone
from typing import Literal

from pydantic import AliasChoices, BaseModel, Field, field_validator

from triage.core.urls import normalize_url

ItemType = Literal["event", "news", "resource"]
ItemStatus = Literal["auto-approved", "review-quick", "review-deep", "rejected", "duplicate", "invalid", "error"]


class CandidateItem(BaseModel):
    type: ItemType = "event"
    title: str = Field(min_length=1, max_length=500)
    description: str = Field(min_length=1, max_length=10000)
    occurrence_date: str | None = Field(
        default=None,
        validation_alias=AliasChoices("occurrence_date", "event_date", "occurrenceDate"),
    )
    location: str | None = None
    source_url: str = Field(
        min_length=1,
        validation_alias=AliasChoices("source_url", "sourceURL", "sourceUrl"),
    )
    organizer_name: str | None = Field(
        default=None,
        validation_alias=AliasChoices("organizer_name", "organizerName"),
    )
    tags: list[str] = Field(default_factory=list)
    price: str | None = None
    image_url: str | None = None
    submitted_by: str = "automation"
    submitted_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator("title", "description", "source_url")
    @classmethod
    def _strip_required(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("must not be blank")
        return stripped

    @field_validator("source_url")
    @classmethod
    def _require_http_url(cls, value: str) -> str:
        if not value.lower().startswith(("http://", "https://")):
            raise ValueError("source_url must be an http(s) URL")
        return normalize_url(value)

    @field_validator("tags", mode="before")
    @classmethod
    def _coerce_tags(cls, value: object) -> object:
        if value is None:
            return []
        if isinstance(value, str):
            return [chunk.strip() for chunk in value.split(",") if chunk.strip()]
        return value


class IngestStats(BaseModel):
    total: int = 0
    auto_approved: int = 0
    review_quick: int = 0
    review_deep: int = 0
    failed: int = 0
    skipped: int = 0
    processing_time_ms: int = 0


class IngestItemResult(BaseModel):
    title: str | None = None
    status: ItemStatus
    success: bool
    submission_id: str | None = None
    entry_id: str | None = None
    error: str | None = None


class IngestResponse(BaseModel):
    success: bool
    stats: IngestStats
    results: list[IngestItemResult] = Field(default_factory=list)
