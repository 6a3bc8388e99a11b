from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from functools import lru_cache, wraps
from typing import Any

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from triage.core.config import get_settings

logger = logging.getLogger(__name__)


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates state transition rules."""


class DuplicateRatingError(RepositoryConflictError):
    """Raised when a rater already rated the same entry on the same calendar day."""


class AuditWriteError(RepositoryError):
    """Raised when the audit trail cannot be written; the triggering write is rolled back."""


def _translate_driver_errors(missing: str | None = None):
    """Map asyncpg failures onto repository errors.

    A malformed id (bad uuid text) reads as a missing row when ``missing`` is given,
    otherwise as a conflict. Any other driver or connection failure is unavailability.
    """

    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            try:
                return await func(*args, **kwargs)
            except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
                if missing is not None:
                    raise RepositoryNotFoundError(missing) from exc
                raise RepositoryConflictError(str(exc)) from exc
            except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
                logger.error("database call failed operation=%s error=%s", func.__name__, exc)
                raise RepositoryUnavailableError("database unavailable") from exc

        return wrapper

    return decorator


PENDING_DISPOSITIONS = {"review-quick", "review-deep"}
VERIFICATION_STATUSES = {"unverified", "community-flagged", "curator-verified"}


@dataclass(slots=True)
class AuditRecord:
    operation_type: str
    actor_type: str
    entry_id: str | None = None
    actor_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TrustScores:
    source_score: float
    recency_score: float
    verification_score: float
    community_score: float | None
    trust_score: float

    def as_dict(self) -> dict[str, float | None]:
        return {
            "source_score": self.source_score,
            "recency_score": self.recency_score,
            "verification_score": self.verification_score,
            "community_score": self.community_score,
            "trust_score": self.trust_score,
        }


@dataclass(slots=True)
class EntryState:
    id: str
    source_score: float
    recency_score: float
    verification_score: float
    community_score: float | None
    trust_score: float
    verification_status: str
    last_verified_at: datetime
    last_calculated_at: datetime | None
    archived_at: datetime | None
    version: int

    def scores(self) -> TrustScores:
        return TrustScores(
            source_score=self.source_score,
            recency_score=self.recency_score,
            verification_score=self.verification_score,
            community_score=self.community_score,
            trust_score=self.trust_score,
        )


@dataclass(slots=True)
class NewEntry:
    item: dict[str, Any]
    source_score: float
    scores: TrustScores
    last_verified_at: datetime
    verification_status: str = "unverified"
    submission_id: str | None = None


@dataclass(slots=True)
class RatingAggregate:
    count: int
    mean: float | None


@dataclass(slots=True)
class RatingRecord:
    id: str
    entry_id: str
    rater_hash: str
    rating: int
    feedback_text: str | None
    created_at: datetime


ENTRY_COLUMNS = """
  id::text as id,
  submission_id::text as submission_id,
  type,
  title,
  description,
  occurrence_date,
  location,
  source_url,
  organizer_name,
  tags,
  price,
  trust_score,
  source_score,
  recency_score,
  verification_score,
  community_score,
  verification_status,
  last_verified_at,
  last_calculated_at,
  archived_at,
  version,
  created_at
"""

SUBMISSION_COLUMNS = """
  id::text as id,
  fingerprint,
  disposition,
  item,
  moderation,
  entry_id::text as entry_id,
  decided_by,
  created_at,
  updated_at
"""


class PostgresRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    @_translate_driver_errors()
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
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"""
                    insert into submissions (fingerprint, disposition, item, moderation)
                    values ($1, $2, $3::jsonb, $4::jsonb)
                    returning {SUBMISSION_COLUMNS}
                    """,
                    fingerprint,
                    disposition,
                    json.dumps(item, default=str),
                    json.dumps(moderation),
                )
                submission = self._submission_row_to_dict(row)
                entry_id: str | None = None
                if entry is not None:
                    entry.submission_id = submission["id"]
                    entry_id = await self._insert_entry(conn=conn, entry=entry)
                    await conn.execute(
                        "update submissions set entry_id = $2::uuid where id = $1::uuid",
                        submission["id"],
                        entry_id,
                    )
                    submission["entry_id"] = entry_id
                for audit in audits:
                    if audit.entry_id is None and entry_id is not None:
                        audit.entry_id = entry_id
                    audit.details.setdefault("submission_id", submission["id"])
                    await self._insert_audit(conn=conn, audit=audit)
                return submission

    @_translate_driver_errors("submission not found")
    async def get_submission(self, submission_id: str) -> dict[str, Any]:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"select {SUBMISSION_COLUMNS} from submissions where id = $1::uuid",
            submission_id,
        )
        if not row:
            raise RepositoryNotFoundError("submission not found")
        return self._submission_row_to_dict(row)

    @_translate_driver_errors()
    async def list_submissions(self, *, disposition: str | None, limit: int, offset: int) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {SUBMISSION_COLUMNS}
            from submissions
            where ($1::text is null and disposition = any($4::text[])) or disposition = $1
            order by created_at asc
            limit $2 offset $3
            """,
            disposition,
            limit,
            offset,
            sorted(PENDING_DISPOSITIONS),
        )
        return [self._submission_row_to_dict(row) for row in rows]

    @_translate_driver_errors("submission not found")
    async def decide_submission(
        self,
        *,
        submission_id: str,
        disposition: str,
        decided_by: str,
        entry: NewEntry | None,
        audits: list[AuditRecord],
    ) -> dict[str, Any]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    "select disposition from submissions where id = $1::uuid for update",
                    submission_id,
                )
                if not row:
                    raise RepositoryNotFoundError("submission not found")
                if row["disposition"] not in PENDING_DISPOSITIONS:
                    raise RepositoryConflictError(f"submission already decided: {row['disposition']}")

                entry_id: str | None = None
                if entry is not None:
                    entry.submission_id = submission_id
                    entry_id = await self._insert_entry(conn=conn, entry=entry)

                updated = await conn.fetchrow(
                    f"""
                    update submissions
                    set disposition = $2, entry_id = $3::uuid, decided_by = $4, updated_at = now()
                    where id = $1::uuid
                    returning {SUBMISSION_COLUMNS}
                    """,
                    submission_id,
                    disposition,
                    entry_id,
                    decided_by,
                )
                for audit in audits:
                    if audit.entry_id is None and entry_id is not None:
                        audit.entry_id = entry_id
                    audit.details.setdefault("submission_id", submission_id)
                    await self._insert_audit(conn=conn, audit=audit)
                return self._submission_row_to_dict(updated)

    @_translate_driver_errors("entry not found")
    async def get_entry(self, entry_id: str) -> dict[str, Any]:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"select {ENTRY_COLUMNS} from knowledge_entries where id = $1::uuid",
            entry_id,
        )
        if not row:
            raise RepositoryNotFoundError("entry not found")
        return self._entry_row_to_dict(row)

    async def get_entry_state(self, entry_id: str) -> EntryState:
        return self._entry_state(await self.get_entry(entry_id))

    @_translate_driver_errors("entry not found")
    async def rating_aggregate(self, entry_id: str) -> RatingAggregate:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            select count(*)::int as rating_count, avg(rating)::float8 as rating_mean
            from community_ratings
            where entry_id = $1::uuid
            """,
            entry_id,
        )
        return RatingAggregate(count=int(row["rating_count"]), mean=row["rating_mean"])

    @_translate_driver_errors("entry not found")
    async def save_trust_scores(
        self,
        *,
        entry_id: str,
        scores: TrustScores,
        calculated_at: datetime,
        expected_version: int,
        audit: AuditRecord,
    ) -> EntryState:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                current = await conn.fetchrow(
                    "select version from knowledge_entries where id = $1::uuid for update",
                    entry_id,
                )
                if not current:
                    raise RepositoryNotFoundError("entry not found")
                if current["version"] != expected_version:
                    raise RepositoryConflictError("entry changed during recalculation")

                row = await conn.fetchrow(
                    f"""
                    update knowledge_entries
                    set
                      source_score = $2,
                      recency_score = $3,
                      verification_score = $4,
                      community_score = $5,
                      trust_score = $6,
                      last_calculated_at = $7,
                      version = version + 1,
                      updated_at = now()
                    where id = $1::uuid
                    returning {ENTRY_COLUMNS}
                    """,
                    entry_id,
                    scores.source_score,
                    scores.recency_score,
                    scores.verification_score,
                    scores.community_score,
                    scores.trust_score,
                    calculated_at,
                )
                await self._insert_snapshot(conn=conn, entry_id=entry_id, scores=scores, calculated_at=calculated_at)
                await self._insert_audit(conn=conn, audit=audit)
                return self._entry_state(self._entry_row_to_dict(row))

    @_translate_driver_errors("entry not found")
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
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"""
                    update knowledge_entries
                    set
                      verification_status = $2,
                      last_verified_at = coalesce($3, last_verified_at),
                      version = version + 1,
                      updated_at = now()
                    where id = $1::uuid
                    returning {ENTRY_COLUMNS}
                    """,
                    entry_id,
                    status,
                    verified_at,
                )
                if not row:
                    raise RepositoryNotFoundError("entry not found")
                await self._insert_audit(conn=conn, audit=audit)
                return self._entry_row_to_dict(row)

    @_translate_driver_errors("entry not found")
    async def archive_entry(self, *, entry_id: str, audit: AuditRecord) -> dict[str, Any]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                existing = await conn.fetchrow(
                    "select archived_at from knowledge_entries where id = $1::uuid for update",
                    entry_id,
                )
                if not existing:
                    raise RepositoryNotFoundError("entry not found")
                if existing["archived_at"] is not None:
                    raise RepositoryConflictError("entry already archived")
                row = await conn.fetchrow(
                    f"""
                    update knowledge_entries
                    set archived_at = now(), updated_at = now()
                    where id = $1::uuid
                    returning {ENTRY_COLUMNS}
                    """,
                    entry_id,
                )
                await self._insert_audit(conn=conn, audit=audit)
                return self._entry_row_to_dict(row)

    @_translate_driver_errors()
    async def list_stale_entry_ids(self, *, calculated_before: datetime, limit: int) -> list[str]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select id::text as id
            from knowledge_entries
            where archived_at is null
              and (last_calculated_at is null or last_calculated_at < $1)
            order by last_calculated_at asc nulls first
            limit $2
            """,
            calculated_before,
            limit,
        )
        return [row["id"] for row in rows]

    @_translate_driver_errors("entry not found")
    async def list_snapshots(self, *, entry_id: str, limit: int) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select
              entry_id::text as entry_id,
              source_score,
              recency_score,
              verification_score,
              community_score,
              trust_score,
              calculated_at
            from trust_score_snapshots
            where entry_id = $1::uuid
            order by calculated_at desc, id desc
            limit $2
            """,
            entry_id,
            limit,
        )
        return [dict(row) for row in rows]

    @_translate_driver_errors("entry not found")
    async def insert_rating(
        self,
        *,
        entry_id: str,
        rater_hash: str,
        rating: int,
        feedback_text: str | None,
        created_at: datetime,
    ) -> RatingRecord:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                entry = await conn.fetchrow(
                    "select archived_at from knowledge_entries where id = $1::uuid",
                    entry_id,
                )
                if not entry or entry["archived_at"] is not None:
                    raise RepositoryNotFoundError("entry not found")
                try:
                    row = await conn.fetchrow(
                        """
                        insert into community_ratings (entry_id, rater_hash, rating, feedback_text, created_at)
                        values ($1::uuid, $2, $3, $4, $5)
                        returning id::text as id, entry_id::text as entry_id, rater_hash, rating, feedback_text, created_at
                        """,
                        entry_id,
                        rater_hash,
                        rating,
                        feedback_text,
                        created_at,
                    )
                except pg_exc.UniqueViolationError as exc:
                    raise DuplicateRatingError("entry already rated by this rater today") from exc
                return self._rating_row_to_record(row)

    @_translate_driver_errors("rating not found")
    async def update_rating(
        self,
        *,
        rating_id: str,
        rater_hash: str,
        rating: int,
        feedback_text: str | None,
    ) -> RatingRecord:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            update community_ratings
            set rating = $3, feedback_text = $4
            where id = $1::uuid and rater_hash = $2
            returning id::text as id, entry_id::text as entry_id, rater_hash, rating, feedback_text, created_at
            """,
            rating_id,
            rater_hash,
            rating,
            feedback_text,
        )
        if not row:
            raise RepositoryNotFoundError("rating not found")
        return self._rating_row_to_record(row)

    @_translate_driver_errors("rating not found")
    async def delete_rating(self, *, rating_id: str, audit: AuditRecord) -> RatingRecord:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    """
                    delete from community_ratings
                    where id = $1::uuid
                    returning id::text as id, entry_id::text as entry_id, rater_hash, rating, feedback_text, created_at
                    """,
                    rating_id,
                )
                if not row:
                    raise RepositoryNotFoundError("rating not found")
                record = self._rating_row_to_record(row)
                audit.entry_id = record.entry_id
                await self._insert_audit(conn=conn, audit=audit)
                return record

    @_translate_driver_errors()
    async def rating_stats(self) -> dict[str, Any]:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            select
              (select count(*)::int from community_ratings) as total_ratings,
              (select avg(rating)::float8 from community_ratings) as average_rating,
              (select count(distinct entry_id)::int from community_ratings) as rated_entries,
              (select count(*)::int from knowledge_entries where archived_at is null and trust_score >= 0.8)
                as high_trust_entries,
              (select count(*)::int from knowledge_entries where archived_at is null and trust_score < 0.4)
                as low_trust_entries
            """
        )
        return dict(row)

    @_translate_driver_errors()
    async def append_audit(self, audit: AuditRecord) -> int:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            return await self._insert_audit(conn=conn, audit=audit)

    @_translate_driver_errors("entry not found")
    async def list_audit(
        self,
        *,
        entry_id: str | None,
        since: datetime | None,
        until: datetime | None,
        limit: int,
        offset: int,
    ) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select
              id,
              operation_type,
              entry_id::text as entry_id,
              actor_type,
              actor_id,
              details,
              created_at as timestamp
            from audit_entries
            where ($1::uuid is null or entry_id = $1::uuid)
              and ($2::timestamptz is null or created_at >= $2)
              and ($3::timestamptz is null or created_at < $3)
            order by created_at desc, id desc
            limit $4 offset $5
            """,
            entry_id,
            since,
            until,
            limit,
            offset,
        )
        return [self._audit_row_to_dict(row) for row in rows]

    async def _insert_entry(self, *, conn: asyncpg.Connection, entry: NewEntry) -> str:
        item = entry.item
        scores = entry.scores
        row = await conn.fetchrow(
            """
            insert into knowledge_entries (
              submission_id,
              type,
              title,
              description,
              occurrence_date,
              location,
              source_url,
              organizer_name,
              tags,
              price,
              trust_score,
              source_score,
              recency_score,
              verification_score,
              community_score,
              verification_status,
              last_verified_at,
              last_calculated_at
            )
            values ($1::uuid, $2, $3, $4, $5, $6, $7, $8, $9::text[], $10, $11, $12, $13, $14, $15, $16, $17, $17)
            returning id::text as id
            """,
            entry.submission_id,
            item.get("type") or "event",
            item["title"],
            item["description"],
            item.get("occurrence_date"),
            item.get("location"),
            item["source_url"],
            item.get("organizer_name"),
            list(item.get("tags") or []),
            item.get("price"),
            scores.trust_score,
            scores.source_score,
            scores.recency_score,
            scores.verification_score,
            scores.community_score,
            entry.verification_status,
            entry.last_verified_at,
        )
        entry_id = row["id"]
        await self._insert_snapshot(conn=conn, entry_id=entry_id, scores=scores, calculated_at=entry.last_verified_at)
        return entry_id

    async def _insert_snapshot(
        self,
        *,
        conn: asyncpg.Connection,
        entry_id: str,
        scores: TrustScores,
        calculated_at: datetime,
    ) -> None:
        await conn.execute(
            """
            insert into trust_score_snapshots (
              entry_id, source_score, recency_score, verification_score, community_score, trust_score, calculated_at
            )
            values ($1::uuid, $2, $3, $4, $5, $6, $7)
            """,
            entry_id,
            scores.source_score,
            scores.recency_score,
            scores.verification_score,
            scores.community_score,
            scores.trust_score,
            calculated_at,
        )

    async def _insert_audit(self, *, conn: asyncpg.Connection, audit: AuditRecord) -> int:
        try:
            return await conn.fetchval(
                """
                insert into audit_entries (operation_type, entry_id, actor_type, actor_id, details)
                values ($1, $2::uuid, $3, $4, $5::jsonb)
                returning id
                """,
                audit.operation_type,
                audit.entry_id,
                audit.actor_type,
                audit.actor_id,
                json.dumps(audit.details, default=str),
            )
        except (asyncpg.PostgresError, OSError) as exc:
            logger.error("audit write failed operation=%s entry_id=%s", audit.operation_type, audit.entry_id)
            raise AuditWriteError("audit log unavailable") from exc

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("TRIAGE_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    @staticmethod
    def _entry_state(row: dict[str, Any]) -> EntryState:
        return EntryState(
            id=row["id"],
            source_score=float(row["source_score"]),
            recency_score=float(row["recency_score"]),
            verification_score=float(row["verification_score"]),
            community_score=None if row["community_score"] is None else float(row["community_score"]),
            trust_score=float(row["trust_score"]),
            verification_status=row["verification_status"],
            last_verified_at=row["last_verified_at"],
            last_calculated_at=row["last_calculated_at"],
            archived_at=row["archived_at"],
            version=int(row["version"]),
        )

    @staticmethod
    def _entry_row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        data = dict(row)
        data["tags"] = list(data.get("tags") or [])
        return data

    @classmethod
    def _submission_row_to_dict(cls, row: asyncpg.Record) -> dict[str, Any]:
        data = dict(row)
        data["item"] = cls._coerce_json_dict(data.get("item"))
        data["moderation"] = cls._coerce_json_dict(data.get("moderation"))
        return data

    @classmethod
    def _audit_row_to_dict(cls, row: asyncpg.Record) -> dict[str, Any]:
        data = dict(row)
        data["details"] = cls._coerce_json_dict(data.get("details"))
        return data

    @staticmethod
    def _rating_row_to_record(row: asyncpg.Record) -> RatingRecord:
        return RatingRecord(
            id=row["id"],
            entry_id=row["entry_id"],
            rater_hash=row["rater_hash"],
            rating=int(row["rating"]),
            feedback_text=row["feedback_text"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _coerce_json_dict(value: Any) -> dict[str, Any]:
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                return {}
        return value if isinstance(value, dict) else {}


@lru_cache
def get_repository():
    settings = get_settings()
    if not settings.database_url:
        from triage.services.store import InMemoryRepository

        logger.warning("TRIAGE_DATABASE_URL not set; using in-memory repository")
        return InMemoryRepository()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )
