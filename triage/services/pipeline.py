from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any

from opentelemetry import trace
from pydantic import ValidationError

from triage.schemas.items import CandidateItem, IngestItemResult, IngestStats
from triage.schemas.moderation import Disposition, ModerationResult
from triage.services.audit import INGEST_REJECTED, ITEM_TRIAGED, TRUST_INITIALIZED, AuditLog
from triage.services.dedupe import Deduplicator
from triage.services.reasoning import ReasoningAdapter
from triage.services.repository import AuditRecord, NewEntry, RepositoryError
from triage.services.triage import classify
from triage.services.trust import TrustScoreEngine

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

_STAT_FIELDS = {
    Disposition.AUTO_APPROVED.value: "auto_approved",
    Disposition.REVIEW_QUICK.value: "review_quick",
    Disposition.REVIEW_DEEP.value: "review_deep",
}


class ItemValidationError(ValueError):
    """A single candidate item failed validation. The rest of the batch still runs."""

    def __init__(self, message: str, *, title: str | None = None) -> None:
        super().__init__(message)
        self.title = title


@dataclass(slots=True)
class BatchReport:
    stats: IngestStats
    results: list[IngestItemResult] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.stats.failed < self.stats.total or self.stats.total == 0


def validate_item(raw: Any, *, submitted_by: str) -> CandidateItem:
    if not isinstance(raw, dict):
        raise ItemValidationError("item must be a JSON object")

    title = raw.get("title") if isinstance(raw.get("title"), str) else None
    payload = dict(raw)
    if not payload.get("submitted_by"):
        payload["submitted_by"] = submitted_by
    try:
        return CandidateItem.model_validate(payload)
    except ValidationError as exc:
        fields = sorted({".".join(str(part) for part in error["loc"]) for error in exc.errors()})
        raise ItemValidationError(
            f"invalid fields: {', '.join(fields)}",
            title=title,
        ) from exc


class IngestionPipeline:
    def __init__(
        self,
        *,
        deduplicator: Deduplicator,
        adapter: ReasoningAdapter,
        repository: Any,
        engine: TrustScoreEngine,
        audit_log: AuditLog,
        concurrency: int = 5,
    ) -> None:
        self.deduplicator = deduplicator
        self.adapter = adapter
        self.repository = repository
        self.engine = engine
        self.audit_log = audit_log
        self.concurrency = max(1, concurrency)

    async def process_batch(self, raw_items: list[Any], *, submitted_by: str = "automation") -> BatchReport:
        started_at = time.perf_counter()
        stats = IngestStats(total=len(raw_items))
        results: list[IngestItemResult] = []

        with tracer.start_as_current_span("triage.process_batch") as span:
            span.set_attribute("batch.size", len(raw_items))

            valid: list[CandidateItem] = []
            for raw in raw_items:
                try:
                    valid.append(validate_item(raw, submitted_by=submitted_by))
                except ItemValidationError as exc:
                    stats.failed += 1
                    results.append(IngestItemResult(title=exc.title, status="invalid", success=False, error=str(exc)))
                    await self._record_rejection(exc, submitted_by=submitted_by)

            deduped = self.deduplicator.dedupe(valid)
            stats.skipped = deduped.skipped
            results.extend(
                IngestItemResult(title=item.title, status="duplicate", success=True) for item in deduped.duplicates
            )
            results.extend(
                IngestItemResult(title=item.title, status="invalid", success=False, error="title has no usable text")
                for item in deduped.malformed
            )

            semaphore = asyncio.Semaphore(self.concurrency)
            outcomes = await asyncio.gather(
                *(self._process_item(key, item, semaphore) for key, item in deduped.kept)
            )
            for outcome in outcomes:
                results.append(outcome)
                if not outcome.success:
                    stats.failed += 1
                    continue
                stat_field = _STAT_FIELDS.get(outcome.status)
                if stat_field is not None:
                    setattr(stats, stat_field, getattr(stats, stat_field) + 1)

            stats.processing_time_ms = int((time.perf_counter() - started_at) * 1000)
            span.set_attribute("batch.failed", stats.failed)
            span.set_attribute("batch.skipped", stats.skipped)

        logger.info(
            "batch processed total=%s auto_approved=%s review_quick=%s review_deep=%s failed=%s skipped=%s duration_ms=%s",
            stats.total,
            stats.auto_approved,
            stats.review_quick,
            stats.review_deep,
            stats.failed,
            stats.skipped,
            stats.processing_time_ms,
        )
        return BatchReport(stats=stats, results=results)

    async def _process_item(
        self,
        key: str,
        item: CandidateItem,
        semaphore: asyncio.Semaphore,
    ) -> IngestItemResult:
        async with semaphore:
            with tracer.start_as_current_span("triage.evaluate_item") as span:
                span.set_attribute("item.type", item.type)
                moderation = await self.adapter.evaluate(item)
                disposition = classify(moderation)
                span.set_attribute("item.disposition", disposition.value)

        try:
            submission = await self._persist(key, item, moderation, disposition)
        except RepositoryError as exc:
            logger.error("failed to persist item title=%r disposition=%s error=%s", item.title, disposition.value, exc)
            self.deduplicator.release(key)
            return IngestItemResult(title=item.title, status="error", success=False, error=str(exc))

        return IngestItemResult(
            title=item.title,
            status=disposition.value,
            success=True,
            submission_id=submission["id"],
            entry_id=submission.get("entry_id"),
        )

    async def _persist(
        self,
        key: str,
        item: CandidateItem,
        moderation: ModerationResult,
        disposition: Disposition,
    ) -> dict[str, Any]:
        item_data = item.model_dump(mode="json")
        audits = [
            AuditRecord(
                operation_type=ITEM_TRIAGED,
                actor_type="machine",
                actor_id=item.submitted_by,
                details={
                    "title": item.title,
                    "fingerprint": key,
                    "disposition": disposition.value,
                    "confidence": moderation.confidence,
                    "recommendation": moderation.recommendation,
                    "flags": list(moderation.flags),
                    "fallback": moderation.is_fallback,
                },
            )
        ]

        entry: NewEntry | None = None
        if disposition is Disposition.AUTO_APPROVED:
            now = self.engine.now()
            source_score = self.engine.reputation.score_for(item.source_url)
            scores = self.engine.initial_scores(source_score=source_score, last_verified_at=now)
            entry = NewEntry(item=item_data, source_score=source_score, scores=scores, last_verified_at=now)
            audits.append(
                AuditRecord(
                    operation_type=TRUST_INITIALIZED,
                    actor_type="system",
                    details={"trigger": "auto_approval", "post_score": scores.trust_score, "sub_scores": scores.as_dict()},
                )
            )

        return await self.repository.record_submission(
            fingerprint=key,
            item=item_data,
            moderation=moderation.model_dump(mode="json"),
            disposition=disposition.value,
            entry=entry,
            audits=audits,
        )

    async def _record_rejection(self, exc: ItemValidationError, *, submitted_by: str) -> None:
        try:
            await self.audit_log.record(
                AuditRecord(
                    operation_type=INGEST_REJECTED,
                    actor_type="machine",
                    actor_id=submitted_by,
                    details={"title": exc.title, "error": str(exc)},
                )
            )
        except RepositoryError as audit_exc:
            # The item is already reported as failed; the batch carries on.
            logger.error("could not audit rejected item title=%r error=%s", exc.title, audit_exc)
