from pydantic import BaseModel, Field

from triage.schemas.entries import TrustInterpretationOut


class RatingRequest(BaseModel):
    rating: int = Field(ge=1, le=5, strict=True)
    feedback_text: str | None = Field(default=None, max_length=1000)


class RatingAccepted(BaseModel):
    entry_id: str
    rating_id: str
    trust_score: float
    interpretation: TrustInterpretationOut


class RatingStatsOut(BaseModel):
    total_ratings: int
    average_rating: float | None = None
    rated_entries: int
    high_trust_entries: int
    low_trust_entries: int


class RatingRemoved(BaseModel):
    entry_id: str
    rating_id: str
    trust_score: float
