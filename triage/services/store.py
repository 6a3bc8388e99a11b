from __future__ import annotations

import copy
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from triage.services.repository import (
    PENDING_DISPOSITIONS,
    VERIFICATION_STATUSES,
    AuditRecord,
    AuditWriteError,
    DuplicateRatingError,
    EntryState,
    NewEntry,
    RatingAggregate,
    RatingRecord,
    RepositoryConflictError,
    RepositoryNotFoundError,
    TrustScores,
)


class InMemoryRepository:
    """Process-local repository with the same contract as PostgresRepository.

    Each method runs without awaiting, so on a single event loop every call is atomic.
    Audit records are appended before primary state changes; when ``audit_available`` is
    False the call raises AuditWriteError and nothing is committed.
    """

    def __init__(self) -> None:
        self.submissions: dict[str, dict[str, Any]] = {}
        self.entries: dict[str, dict[str, Any]] = {}
        self.snapshots: list[dict[str, Any]] = []
        self.ratings: dict[str, RatingRecord] = {}
        self.audit_entries: list[dict[str, Any]] = []
        self.audit_available = True

    async def close(self) -> None:
        return None

    async def record_submission(
        self,
        *,
        fingerprint: str,
        item: dict[str, Any],
        moderation: dict[str, Any],
        disposition: str,
        entry: NewEntry | None,
        audits: list[AuditRecord],
    ) -> dict[str, Any]:
        self._require_audit()
        now = _now()
        submission_id = str(uuid4())
        entry_id = str(uuid4()) if entry is not None else None
        for audit in audits:
            if audit.entry_id is None:
                audit.entry_id = entry_id
            audit.details.setdefault("submission_id", submission_id)
        self._append_audits(audits)

        if entry is not None and entry_id is not None:
            entry.submission_id = submission_id
            self._insert_entry(entry_id=entry_id, entry=entry)
        submission = {
            "id": submission_id,
            "fingerprint": fingerprint,
            "disposition": disposition,
            "item": copy.deepcopy(item),
            "moderation": copy.deepcopy(moderation),
            "entry_id": entry_id,
            "decided_by": None,
            "created_at": now,
            "updated_at": now,
        }
        self.submissions[submission_id] = submission
        return dict(submission)

    async def get_submission(self, submission_id: str) -> dict[str, Any]:
        submission = self.submissions.get(submission_id)
        if submission is None:
            raise RepositoryNotFoundError("submission not found")
        return dict(submission)

    async def list_submissions(self, *, disposition: str | None, limit: int, offset: int) -> list[dict[str, Any]]:
        wanted = {disposition} if disposition else PENDING_DISPOSITIONS
        rows = [row for row in self.submissions.values() if row["disposition"] in wanted]
        rows.sort(key=lambda row: row["created_at"])
        return [dict(row) for row in rows[offset : offset + limit]]

    async def decide_submission(
        self,
        *,
        submission_id: str,
        disposition: str,
        decided_by: str,
        entry: NewEntry | None,
        audits: list[AuditRecord],
    ) -> dict[str, Any]:
        submission = self.submissions.get(submission_id)
        if submission is None:
            raise RepositoryNotFoundError("submission not found")
        if submission["disposition"] not in PENDING_DISPOSITIONS:
            raise RepositoryConflictError(f"submission already decided: {submission['disposition']}")

        self._require_audit()
        entry_id = str(uuid4()) if entry is not None else None
        for audit in audits:
            if audit.entry_id is None:
                audit.entry_id = entry_id
            audit.details.setdefault("submission_id", submission_id)
        self._append_audits(audits)

        if entry is not None and entry_id is not None:
            entry.submission_id = submission_id
            self._insert_entry(entry_id=entry_id, entry=entry)
        submission.update(
            disposition=disposition,
            entry_id=entry_id,
            decided_by=decided_by,
            updated_at=_now(),
        )
        return dict(submission)

    async def get_entry(self, entry_id: str) -> dict[str, Any]:
        entry = self.entries.get(entry_id)
        if entry is None:
            raise RepositoryNotFoundError("entry not found")
        return copy.deepcopy(entry)

    async def get_entry_state(self, entry_id: str) -> EntryState:
        entry = await self.get_entry(entry_id)
        return EntryState(
            id=entry["id"],
            source_score=entry["source_score"],
            recency_score=entry["recency_score"],
            verification_score=entry["verification_score"],
            community_score=entry["community_score"],
            trust_score=entry["trust_score"],
            verification_status=entry["verification_status"],
            last_verified_at=entry["last_verified_at"],
            last_calculated_at=entry["last_calculated_at"],
            archived_at=entry["archived_at"],
            version=entry["version"],
        )

    async def rating_aggregate(self, entry_id: str) -> RatingAggregate:
        values = [record.rating for record in self.ratings.values() if record.entry_id == entry_id]
        if not values:
            return RatingAggregate(count=0, mean=None)
        return RatingAggregate(count=len(values), mean=sum(values) / len(values))

    async def save_trust_scores(
        self,
        *,
        entry_id: str,
        scores: TrustScores,
        calculated_at: datetime,
        expected_version: int,
        audit: AuditRecord,
    ) -> EntryState:
        entry = self.entries.get(entry_id)
        if entry is None:
            raise RepositoryNotFoundError("entry not found")
        if entry["version"] != expected_version:
            raise RepositoryConflictError("entry changed during recalculation")

        self._append_audits([audit])
        entry.update(scores.as_dict())
        entry["last_calculated_at"] = calculated_at
        entry["version"] += 1
        self._insert_snapshot(entry_id=entry_id, scores=scores, calculated_at=calculated_at)
        return await self.get_entry_state(entry_id)

    async def set_verification_status(
        self,
        *,
        entry_id: str,
        status: str,
        verified_at: datetime | None,
        audit: AuditRecord,
    ) -> dict[str, Any]:
        if status not in VERIFICATION_STATUSES:
            raise RepositoryConflictError(f"unsupported verification status: {status}")
        entry = self.entries.get(entry_id)
        if entry is None:
            raise RepositoryNotFoundError("entry not found")

        self._append_audits([audit])
        entry["verification_status"] = status
        if verified_at is not None:
            entry["last_verified_at"] = verified_at
        entry["version"] += 1
        return copy.deepcopy(entry)

    async def archive_entry(self, *, entry_id: str, audit: AuditRecord) -> dict[str, Any]:
        entry = self.entries.get(entry_id)
        if entry is None:
            raise RepositoryNotFoundError("entry not found")
        if entry["archived_at"] is not None:
            raise RepositoryConflictError("entry already archived")

        self._append_audits([audit])
        entry["archived_at"] = _now()
        return copy.deepcopy(entry)

    async def list_stale_entry_ids(self, *, calculated_before: datetime, limit: int) -> list[str]:
        rows = [
            entry
            for entry in self.entries.values()
            if entry["archived_at"] is None
            and (entry["last_calculated_at"] is None or entry["last_calculated_at"] < calculated_before)
        ]
        rows.sort(key=lambda entry: entry["last_calculated_at"] or datetime.min.replace(tzinfo=timezone.utc))
        return [entry["id"] for entry in rows[:limit]]

    async def list_snapshots(self, *, entry_id: str, limit: int) -> list[dict[str, Any]]:
        rows = [dict(row) for row in self.snapshots if row["entry_id"] == entry_id]
        rows.reverse()
        return rows[:limit]

    async def insert_rating(
        self,
        *,
        entry_id: str,
        rater_hash: str,
        rating: int,
        feedback_text: str | None,
        created_at: datetime,
    ) -> RatingRecord:
        entry = self.entries.get(entry_id)
        if entry is None or entry["archived_at"] is not None:
            raise RepositoryNotFoundError("entry not found")

        rated_on = _utc_day(created_at)
        for existing in self.ratings.values():
            if (
                existing.entry_id == entry_id
                and existing.rater_hash == rater_hash
                and _utc_day(existing.created_at) == rated_on
            ):
                raise DuplicateRatingError("entry already rated by this rater today")

        record = RatingRecord(
            id=str(uuid4()),
            entry_id=entry_id,
            rater_hash=rater_hash,
            rating=rating,
            feedback_text=feedback_text,
            created_at=created_at,
        )
        self.ratings[record.id] = record
        return record

    async def update_rating(
        self,
        *,
        rating_id: str,
        rater_hash: str,
        rating: int,
        feedback_text: str | None,
    ) -> RatingRecord:
        record = self.ratings.get(rating_id)
        if record is None or record.rater_hash != rater_hash:
            raise RepositoryNotFoundError("rating not found")
        record.rating = rating
        record.feedback_text = feedback_text
        return record

    async def delete_rating(self, *, rating_id: str, audit: AuditRecord) -> RatingRecord:
        record = self.ratings.get(rating_id)
        if record is None:
            raise RepositoryNotFoundError("rating not found")
        audit.entry_id = record.entry_id
        self._append_audits([audit])
        del self.ratings[rating_id]
        return record

    async def rating_stats(self) -> dict[str, Any]:
        values = [record.rating for record in self.ratings.values()]
        active = [entry for entry in self.entries.values() if entry["archived_at"] is None]
        return {
            "total_ratings": len(values),
            "average_rating": (sum(values) / len(values)) if values else None,
            "rated_entries": len({record.entry_id for record in self.ratings.values()}),
            "high_trust_entries": sum(1 for entry in active if entry["trust_score"] >= 0.8),
            "low_trust_entries": sum(1 for entry in active if entry["trust_score"] < 0.4),
        }

    async def append_audit(self, audit: AuditRecord) -> int:
        return self._append_audits([audit])[0]

    async def list_audit(
        self,
        *,
        entry_id: str | None,
        since: datetime | None,
        until: datetime | None,
        limit: int,
        offset: int,
    ) -> list[dict[str, Any]]:
        rows = [
            row
            for row in self.audit_entries
            if (entry_id is None or row["entry_id"] == entry_id)
            and (since is None or row["timestamp"] >= since)
            and (until is None or row["timestamp"] < until)
        ]
        rows = sorted(rows, key=lambda row: (row["timestamp"], row["id"]), reverse=True)
        return [copy.deepcopy(row) for row in rows[offset : offset + limit]]

    def _insert_entry(self, *, entry_id: str, entry: NewEntry) -> None:
        item = entry.item
        self.entries[entry_id] = {
            "id": entry_id,
            "submission_id": entry.submission_id,
            "type": item.get("type") or "event",
            "title": item["title"],
            "description": item["description"],
            "occurrence_date": item.get("occurrence_date"),
            "location": item.get("location"),
            "source_url": item["source_url"],
            "organizer_name": item.get("organizer_name"),
            "tags": list(item.get("tags") or []),
            "price": item.get("price"),
            **entry.scores.as_dict(),
            "verification_status": entry.verification_status,
            "last_verified_at": entry.last_verified_at,
            "last_calculated_at": entry.last_verified_at,
            "archived_at": None,
            "version": 1,
            "created_at": _now(),
        }
        self._insert_snapshot(entry_id=entry_id, scores=entry.scores, calculated_at=entry.last_verified_at)

    def _insert_snapshot(self, *, entry_id: str, scores: TrustScores, calculated_at: datetime) -> None:
        self.snapshots.append({"entry_id": entry_id, **scores.as_dict(), "calculated_at": calculated_at})

    def _require_audit(self) -> None:
        if not self.audit_available:
            raise AuditWriteError("audit log unavailable")

    def _append_audits(self, audits: list[AuditRecord]) -> list[int]:
        self._require_audit()
        ids: list[int] = []
        for audit in audits:
            audit_id = len(self.audit_entries) + 1
            self.audit_entries.append(
                {
                    "id": audit_id,
                    "operation_type": audit.operation_type,
                    "entry_id": audit.entry_id,
                    "actor_type": audit.actor_type,
                    "actor_id": audit.actor_id,
                    "details": copy.deepcopy(audit.details),
                    "timestamp": _now(),
                }
            )
            ids.append(audit_id)
        return ids


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _utc_day(value: datetime):
    if value.tzinfo is None:
        return value.date()
    return value.astimezone(timezone.utc).date()
