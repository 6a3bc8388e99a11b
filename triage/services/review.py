from __future__ import annotations

import logging
from typing import Any

from triage.core.auth import Principal
from triage.services.audit import SUBMISSION_DECIDED, TRUST_INITIALIZED
from triage.services.repository import AuditRecord, NewEntry, RepositoryConflictError
from triage.services.trust import TrustScoreEngine

logger = logging.getLogger(__name__)

APPROVED = "approved"
REJECTED = "rejected"


class ReviewService:
    """Curator decisions on submissions parked in review-quick or review-deep."""

    def __init__(self, repository: Any, engine: TrustScoreEngine) -> None:
        self.repository = repository
        self.engine = engine

    async def list_pending(self, *, disposition: str | None = None, limit: int = 50, offset: int = 0) -> list[dict[str, Any]]:
        return await self.repository.list_submissions(disposition=disposition, limit=limit, offset=offset)

    async def decide(
        self,
        submission_id: str,
        *,
        decision: str,
        actor: Principal,
        reason: str | None = None,
        source_score: float | None = None,
    ) -> dict[str, Any]:
        if decision not in {"approve", "reject"}:
            raise RepositoryConflictError(f"unsupported decision: {decision}")

        submission = await self.repository.get_submission(submission_id)
        decided = AuditRecord(
            operation_type=SUBMISSION_DECIDED,
            actor_type=actor.actor_type,
            actor_id=actor.actor_id,
            details={
                "decision": decision,
                "reason": reason,
                "previous_disposition": submission["disposition"],
            },
        )

        if decision == "reject":
            row = await self.repository.decide_submission(
                submission_id=submission_id,
                disposition=REJECTED,
                decided_by=actor.subject,
                entry=None,
                audits=[decided],
            )
            logger.info("submission rejected id=%s actor=%s", submission_id, actor.subject)
            return row

        item = submission["item"]
        now = self.engine.now()
        if source_score is None:
            source_score = self.engine.reputation.score_for(item.get("source_url"))
        scores = self.engine.initial_scores(source_score=source_score, last_verified_at=now)
        row = await self.repository.decide_submission(
            submission_id=submission_id,
            disposition=APPROVED,
            decided_by=actor.subject,
            entry=NewEntry(item=item, source_score=source_score, scores=scores, last_verified_at=now),
            audits=[
                decided,
                AuditRecord(
                    operation_type=TRUST_INITIALIZED,
                    actor_type=actor.actor_type,
                    actor_id=actor.actor_id,
                    details={"trigger": "curator_approval", "post_score": scores.trust_score, "sub_scores": scores.as_dict()},
                ),
            ],
        )
        logger.info(
            "submission approved id=%s entry_id=%s trust_score=%.4f actor=%s",
            submission_id,
            row.get("entry_id"),
            scores.trust_score,
            actor.subject,
        )
        return row
