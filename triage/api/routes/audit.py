from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, status

from triage.api.deps import get_audit_log
from triage.core.security import get_human_principal
from triage.schemas.audit import AuditEntryOut
from triage.services.repository import RepositoryNotFoundError, RepositoryUnavailableError

router = APIRouter()


@router.get("", response_model=list[AuditEntryOut])
async def list_audit_entries(
    principal=Depends(get_human_principal),
    audit_log=Depends(get_audit_log),
    entry_id: str | None = Query(default=None),
    since: datetime | None = Query(default=None),
    until: datetime | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
) -> list[AuditEntryOut]:
    try:
        principal.require_scopes({"moderation:read"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    if since is not None and until is not None and since >= until:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="since must be earlier than until")

    try:
        rows = await audit_log.query(entry_id=entry_id, since=since, until=until, limit=limit, offset=offset)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return [AuditEntryOut(**row) for row in rows]
