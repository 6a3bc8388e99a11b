from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

Relevance = Literal["low", "medium", "high"]
Quality = Literal["low", "medium", "high"]
Recommendation = Literal["auto-approve", "review", "reject"]

MODERATION_ERROR_FLAG = "moderation-error"
FALLBACK_REASONING = "AI moderation failed - requires manual review"


class Disposition(str, Enum):
    AUTO_APPROVED = "auto-approved"
    REVIEW_QUICK = "review-quick"
    REVIEW_DEEP = "review-deep"
    REJECTED = "rejected"


class ModerationResult(BaseModel):
    """Structured judgment of one candidate item. Every field is required."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    confidence: float = Field(ge=0.0, le=1.0, strict=True)
    relevance: Relevance
    quality: Quality
    liberation_score: float = Field(ge=0.0, le=1.0, strict=True)
    reasoning: str = Field(strict=True)
    recommendation: Recommendation
    flags: tuple[str, ...]

    @property
    def is_fallback(self) -> bool:
        return MODERATION_ERROR_FLAG in self.flags


CONSERVATIVE_FALLBACK = ModerationResult(
    confidence=0.0,
    relevance="low",
    quality="low",
    liberation_score=0.0,
    reasoning=FALLBACK_REASONING,
    recommendation="review",
    flags=(MODERATION_ERROR_FLAG,),
)
