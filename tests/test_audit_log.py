from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from triage.services.audit import ENTRY_ARCHIVED, ITEM_TRIAGED, AuditLog
from triage.services.repository import AuditRecord, AuditWriteError, NewEntry, RepositoryUnavailableError
from triage.services.store import InMemoryRepository
from triage.services.trust import TrustScoreEngine

NOW = datetime(2026, 2, 14, 18, 0, tzinfo=timezone.utc)


async def _entry(repository: InMemoryRepository, engine: TrustScoreEngine) -> str:
    item = {"title": "Ballroom Night", "description": "Vogue and community", "source_url": "https://example.org/b"}
    scores = engine.initial_scores(source_score=0.5, last_verified_at=NOW)
    submission = await repository.record_submission(
        fingerprint="ballroom night||",
        item=item,
        moderation={},
        disposition="auto-approved",
        entry=NewEntry(item=item, source_score=0.5, scores=scores, last_verified_at=NOW),
        audits=[],
    )
    return submission["entry_id"]


class _UnavailableRepository:
    async def append_audit(self, audit: AuditRecord) -> int:
        raise RepositoryUnavailableError("database unavailable")


def test_record_appends_entry() -> None:
    repository = InMemoryRepository()
    audit_log = AuditLog(repository)

    asyncio.run(audit_log.record(AuditRecord(operation_type=ITEM_TRIAGED, actor_type="machine", actor_id="scraper")))

    assert len(repository.audit_entries) == 1
    assert repository.audit_entries[0]["actor_id"] == "scraper"


def test_record_raises_audit_write_error_when_store_is_down() -> None:
    audit_log = AuditLog(_UnavailableRepository())
    with pytest.raises(AuditWriteError):
        asyncio.run(audit_log.record(AuditRecord(operation_type=ITEM_TRIAGED, actor_type="machine")))


def test_failed_audit_aborts_trust_score_write() -> None:
    async def scenario() -> tuple[dict, dict, int]:
        repository = InMemoryRepository()
        engine = TrustScoreEngine(repository, clock=lambda: NOW + timedelta(days=30))
        entry_id = await _entry(repository, engine)
        before = dict(repository.entries[entry_id])
        snapshots = len(repository.snapshots)

        repository.audit_available = False
        with pytest.raises(AuditWriteError):
            await engine.recalculate(entry_id)
        assert len(repository.snapshots) == snapshots
        return before, dict(repository.entries[entry_id]), len(repository.audit_entries)

    before, after, audit_count = asyncio.run(scenario())

    assert after == before
    assert audit_count == 0


def test_failed_audit_aborts_submission_write() -> None:
    async def scenario() -> InMemoryRepository:
        repository = InMemoryRepository()
        repository.audit_available = False
        with pytest.raises(AuditWriteError):
            await repository.record_submission(
                fingerprint="x||",
                item={"title": "x"},
                moderation={},
                disposition="review-deep",
                entry=None,
                audits=[AuditRecord(operation_type=ITEM_TRIAGED, actor_type="machine")],
            )
        return repository

    repository = asyncio.run(scenario())
    assert repository.submissions == {}


def test_failed_audit_aborts_archive() -> None:
    async def scenario() -> dict:
        repository = InMemoryRepository()
        engine = TrustScoreEngine(repository, clock=lambda: NOW)
        entry_id = await _entry(repository, engine)
        repository.audit_available = False
        with pytest.raises(AuditWriteError):
            await repository.archive_entry(
                entry_id=entry_id,
                audit=AuditRecord(operation_type=ENTRY_ARCHIVED, actor_type="human", entry_id=entry_id),
            )
        return repository.entries[entry_id]

    assert asyncio.run(scenario())["archived_at"] is None


def test_query_filters_by_entry_and_time_newest_first() -> None:
    async def scenario() -> tuple[list[dict], list[dict], list[dict]]:
        repository = InMemoryRepository()
        audit_log = AuditLog(repository)
        for index in range(3):
            await audit_log.record(
                AuditRecord(operation_type=ITEM_TRIAGED, actor_type="machine", entry_id="entry-a", details={"n": index})
            )
        await audit_log.record(AuditRecord(operation_type=ITEM_TRIAGED, actor_type="machine", entry_id="entry-b"))

        only_a = await audit_log.query(entry_id="entry-a")
        paged = await audit_log.query(entry_id="entry-a", limit=1, offset=1)
        future = await audit_log.query(since=datetime.now(timezone.utc) + timedelta(minutes=5))
        return only_a, paged, future

    only_a, paged, future = asyncio.run(scenario())

    assert [row["details"]["n"] for row in only_a] == [2, 1, 0]
    assert [row["details"]["n"] for row in paged] == [1]
    assert future == []
