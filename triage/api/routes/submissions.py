from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Query, status

from triage.api.deps import get_review_service
from triage.core.security import get_human_principal
from triage.schemas.entries import SubmissionDecisionRequest, SubmissionOut
from triage.services.repository import (
    AuditWriteError,
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
)

router = APIRouter()

QueueFilter = Literal["review-quick", "review-deep", "auto-approved", "approved", "rejected"]


@router.get("", response_model=list[SubmissionOut])
async def list_submissions(
    principal=Depends(get_human_principal),
    review=Depends(get_review_service),
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    disposition: QueueFilter | None = Query(default=None),
) -> list[SubmissionOut]:
    try:
        principal.require_scopes({"moderation:read"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        rows = await review.list_pending(disposition=disposition, limit=limit, offset=offset)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return [SubmissionOut(**row) for row in rows]


@router.post("/{submission_id}/decision", response_model=SubmissionOut)
async def decide_submission(
    submission_id: str,
    payload: SubmissionDecisionRequest,
    principal=Depends(get_human_principal),
    review=Depends(get_review_service),
) -> SubmissionOut:
    try:
        principal.require_scopes({"moderation:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    if not principal.actor_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid human principal")

    try:
        row = await review.decide(
            submission_id,
            decision=payload.decision,
            actor=principal,
            reason=payload.reason,
            source_score=payload.source_score,
        )
    except (RepositoryUnavailableError, AuditWriteError) as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    return SubmissionOut(**row)
