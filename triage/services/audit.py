from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from triage.services.repository import AuditRecord, AuditWriteError, RepositoryUnavailableError

logger = logging.getLogger(__name__)

# Operation types written to the audit trail.
ITEM_TRIAGED = "item_triaged"
SUBMISSION_DECIDED = "submission_decided"
TRUST_INITIALIZED = "trust_initialized"
TRUST_RECALCULATED = "trust_recalculated"
VERIFICATION_CHANGED = "verification_changed"
ENTRY_ARCHIVED = "entry_archived"
RATING_REMOVED = "rating_removed"
INGEST_REJECTED = "ingest_rejected"


class AuditLog:
    """Append-only audit trail. Retention is indefinite; there is no delete path."""

    def __init__(self, repository: Any) -> None:
        self.repository = repository

    async def record(self, entry: AuditRecord) -> None:
        try:
            audit_id = await self.repository.append_audit(entry)
        except RepositoryUnavailableError as exc:
            raise AuditWriteError("audit log unavailable") from exc
        logger.info(
            "audit recorded id=%s operation=%s entry_id=%s actor_type=%s",
            audit_id,
            entry.operation_type,
            entry.entry_id,
            entry.actor_type,
        )

    async def query(
        self,
        *,
        entry_id: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        return await self.repository.list_audit(
            entry_id=entry_id,
            since=since,
            until=until,
            limit=limit,
            offset=offset,
        )
