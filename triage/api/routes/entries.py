from datetime import timedelta
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, status

from triage.api.deps import get_trust_engine
from triage.core.security import get_human_principal
from triage.schemas.entries import (
    ArchiveRequest,
    KnowledgeEntryOut,
    RecalculationSweepOut,
    TrustInterpretationOut,
    TrustSnapshotOut,
    VerificationPatchRequest,
)
from triage.services.audit import ENTRY_ARCHIVED, VERIFICATION_CHANGED
from triage.services.repository import (
    AuditRecord,
    AuditWriteError,
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    get_repository,
)
from triage.services.trust import interpret

router = APIRouter()


def _entry_out(row: dict[str, Any]) -> KnowledgeEntryOut:
    interpretation = interpret(float(row["trust_score"]))
    return KnowledgeEntryOut(
        **row,
        interpretation=TrustInterpretationOut(level=interpretation.level, description=interpretation.description),
    )


@router.post("/recalculate-stale", response_model=RecalculationSweepOut)
async def recalculate_stale(
    older_than_hours: int = Query(default=24, ge=1, le=24 * 365),
    limit: int = Query(default=100, ge=1, le=1000),
    principal=Depends(get_human_principal),
    engine=Depends(get_trust_engine),
) -> RecalculationSweepOut:
    try:
        principal.require_scopes({"admin:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        recalculated, failed = await engine.recalculate_stale(older_than=timedelta(hours=older_than_hours), limit=limit)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return RecalculationSweepOut(recalculated=recalculated, failed=failed)


@router.get("/{entry_id}", response_model=KnowledgeEntryOut)
async def get_entry(entry_id: str, repository=Depends(get_repository)) -> KnowledgeEntryOut:
    try:
        row = await repository.get_entry(entry_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return _entry_out(row)


@router.get("/{entry_id}/history", response_model=list[TrustSnapshotOut])
async def get_entry_history(
    entry_id: str,
    limit: int = Query(default=50, ge=1, le=500),
    repository=Depends(get_repository),
) -> list[TrustSnapshotOut]:
    try:
        await repository.get_entry(entry_id)
        rows = await repository.list_snapshots(entry_id=entry_id, limit=limit)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return [TrustSnapshotOut(**row) for row in rows]


@router.patch("/{entry_id}/verification", response_model=KnowledgeEntryOut)
async def patch_verification(
    entry_id: str,
    payload: VerificationPatchRequest,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
    engine=Depends(get_trust_engine),
) -> KnowledgeEntryOut:
    try:
        principal.require_scopes({"moderation:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    if not principal.actor_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid human principal")

    verified_at = engine.now() if payload.status == "curator-verified" else None
    try:
        previous = await repository.get_entry(entry_id)
        await repository.set_verification_status(
            entry_id=entry_id,
            status=payload.status,
            verified_at=verified_at,
            audit=AuditRecord(
                operation_type=VERIFICATION_CHANGED,
                actor_type=principal.actor_type,
                actor_id=principal.actor_id,
                entry_id=entry_id,
                details={
                    "from": previous["verification_status"],
                    "to": payload.status,
                    "reason": payload.reason,
                },
            ),
        )
        await engine.recalculate(
            entry_id,
            trigger="verification_changed",
            actor_type=principal.actor_type,
            actor_id=principal.actor_id,
        )
        row = await repository.get_entry(entry_id)
    except (RepositoryUnavailableError, AuditWriteError) as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    return _entry_out(row)


@router.post("/{entry_id}/archive", response_model=KnowledgeEntryOut)
async def archive_entry(
    entry_id: str,
    payload: ArchiveRequest,
    principal=Depends(get_human_principal),
    repository=Depends(get_repository),
) -> KnowledgeEntryOut:
    try:
        principal.require_scopes({"moderation:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    if not principal.actor_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid human principal")

    try:
        row = await repository.archive_entry(
            entry_id=entry_id,
            audit=AuditRecord(
                operation_type=ENTRY_ARCHIVED,
                actor_type=principal.actor_type,
                actor_id=principal.actor_id,
                entry_id=entry_id,
                details={"reason": payload.reason},
            ),
        )
    except (RepositoryUnavailableError, AuditWriteError) as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    return _entry_out(row)
