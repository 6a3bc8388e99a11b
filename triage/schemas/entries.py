from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

VerificationStatus = Literal["unverified", "community-flagged", "curator-verified"]
TrustLevel = Literal["high", "medium", "low", "very_low"]
ReviewDecision = Literal["approve", "reject"]


class TrustInterpretationOut(BaseModel):
    level: TrustLevel
    description: str


class KnowledgeEntryOut(BaseModel):
    id: str
    submission_id: str | None = None
    type: str
    title: str
    description: str
    occurrence_date: str | None = None
    location: str | None = None
    source_url: str
    organizer_name: str | None = None
    tags: list[str] = Field(default_factory=list)
    price: str | None = None
    trust_score: float
    source_score: float
    recency_score: float
    verification_score: float
    community_score: float | None = None
    verification_status: VerificationStatus
    last_verified_at: datetime
    last_calculated_at: datetime | None = None
    archived_at: datetime | None = None
    created_at: datetime
    interpretation: TrustInterpretationOut | None = None


class TrustSnapshotOut(BaseModel):
    entry_id: str
    source_score: float
    recency_score: float
    verification_score: float
    community_score: float | None = None
    trust_score: float
    calculated_at: datetime


class VerificationPatchRequest(BaseModel):
    status: VerificationStatus
    reason: str | None = None


class ArchiveRequest(BaseModel):
    reason: str | None = None


class RecalculationSweepOut(BaseModel):
    recalculated: int
    failed: int


class SubmissionOut(BaseModel):
    id: str
    fingerprint: str
    disposition: str
    item: dict[str, Any] = Field(default_factory=dict)
    moderation: dict[str, Any] = Field(default_factory=dict)
    entry_id: str | None = None
    decided_by: str | None = None
    created_at: datetime
    updated_at: datetime


class SubmissionDecisionRequest(BaseModel):
    decision: ReviewDecision
    reason: str | None = None
    source_score: float | None = Field(default=None, ge=0.0, le=1.0)
