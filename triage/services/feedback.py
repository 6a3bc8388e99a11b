from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Literal

from triage.core.auth import Principal
from triage.services.audit import RATING_REMOVED
from triage.services.repository import AuditRecord, RatingRecord
from triage.services.trust import TrustScoreEngine

logger = logging.getLogger(__name__)

RatingEventKind = Literal["created", "updated", "deleted"]


@dataclass(frozen=True, slots=True)
class RatingEvent:
    kind: RatingEventKind
    entry_id: str
    rating_id: str


@dataclass(frozen=True, slots=True)
class RatingOutcome:
    record: RatingRecord
    trust_score: float


class FeedbackRecalculationTrigger:
    """Turns rating changes into trust score recalculations.

    Each event causes exactly one recalculation. The engine reads the current
    rating aggregate, so a redelivered event converges on the same score.
    """

    def __init__(self, repository: Any, engine: TrustScoreEngine) -> None:
        self.repository = repository
        self.engine = engine

    async def submit_rating(
        self,
        *,
        entry_id: str,
        rater_hash: str,
        rating: int,
        feedback_text: str | None = None,
        created_at: datetime | None = None,
    ) -> RatingOutcome:
        record = await self.repository.insert_rating(
            entry_id=entry_id,
            rater_hash=rater_hash,
            rating=rating,
            feedback_text=feedback_text,
            created_at=created_at or datetime.now(timezone.utc),
        )
        score = await self.handle(RatingEvent(kind="created", entry_id=record.entry_id, rating_id=record.id))
        return RatingOutcome(record=record, trust_score=score)

    async def revise_rating(
        self,
        *,
        rating_id: str,
        rater_hash: str,
        rating: int,
        feedback_text: str | None = None,
    ) -> RatingOutcome:
        record = await self.repository.update_rating(
            rating_id=rating_id,
            rater_hash=rater_hash,
            rating=rating,
            feedback_text=feedback_text,
        )
        score = await self.handle(RatingEvent(kind="updated", entry_id=record.entry_id, rating_id=record.id))
        return RatingOutcome(record=record, trust_score=score)

    async def remove_rating(self, *, rating_id: str, actor: Principal, reason: str | None = None) -> RatingOutcome:
        audit = AuditRecord(
            operation_type=RATING_REMOVED,
            actor_type=actor.actor_type,
            actor_id=actor.actor_id,
            details={"rating_id": rating_id, "reason": reason},
        )
        record = await self.repository.delete_rating(rating_id=rating_id, audit=audit)
        score = await self.handle(
            RatingEvent(kind="deleted", entry_id=record.entry_id, rating_id=record.id),
            actor=actor,
        )
        return RatingOutcome(record=record, trust_score=score)

    async def handle(self, event: RatingEvent, *, actor: Principal | None = None) -> float:
        logger.info(
            "rating event kind=%s entry_id=%s rating_id=%s",
            event.kind,
            event.entry_id,
            event.rating_id,
        )
        return await self.engine.recalculate(
            event.entry_id,
            trigger=f"rating_{event.kind}",
            actor_type=actor.actor_type if actor else "system",
            actor_id=actor.actor_id if actor else None,
        )
