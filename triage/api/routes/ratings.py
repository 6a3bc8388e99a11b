from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from triage.api.deps import get_feedback_trigger
from triage.core.config import Settings, get_settings
from triage.core.security import get_human_principal, hash_rater
from triage.schemas.entries import TrustInterpretationOut
from triage.schemas.ratings import RatingAccepted, RatingRemoved, RatingRequest, RatingStatsOut
from triage.services.repository import (
    AuditWriteError,
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    get_repository,
)
from triage.services.trust import interpret

router = APIRouter()


def _rater_hash(request: Request, settings: Settings) -> str:
    client_host = request.client.host if request.client else None
    return hash_rater(client_host, request.headers.get("user-agent"), salt=settings.rater_hash_salt)


@router.post("/entries/{entry_id}/ratings", response_model=RatingAccepted)
async def rate_entry(
    entry_id: str,
    payload: RatingRequest,
    request: Request,
    settings: Settings = Depends(get_settings),
    trigger=Depends(get_feedback_trigger),
) -> RatingAccepted:
    try:
        outcome = await trigger.submit_rating(
            entry_id=entry_id,
            rater_hash=_rater_hash(request, settings),
            rating=payload.rating,
            feedback_text=payload.feedback_text,
        )
    except (RepositoryUnavailableError, AuditWriteError) as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    interpretation = interpret(outcome.trust_score)
    return RatingAccepted(
        entry_id=outcome.record.entry_id,
        rating_id=outcome.record.id,
        trust_score=outcome.trust_score,
        interpretation=TrustInterpretationOut(level=interpretation.level, description=interpretation.description),
    )


@router.patch("/ratings/{rating_id}", response_model=RatingAccepted)
async def revise_rating(
    rating_id: str,
    payload: RatingRequest,
    request: Request,
    settings: Settings = Depends(get_settings),
    trigger=Depends(get_feedback_trigger),
) -> RatingAccepted:
    try:
        outcome = await trigger.revise_rating(
            rating_id=rating_id,
            rater_hash=_rater_hash(request, settings),
            rating=payload.rating,
            feedback_text=payload.feedback_text,
        )
    except (RepositoryUnavailableError, AuditWriteError) as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    interpretation = interpret(outcome.trust_score)
    return RatingAccepted(
        entry_id=outcome.record.entry_id,
        rating_id=outcome.record.id,
        trust_score=outcome.trust_score,
        interpretation=TrustInterpretationOut(level=interpretation.level, description=interpretation.description),
    )


@router.delete("/ratings/{rating_id}", response_model=RatingRemoved)
async def remove_rating(
    rating_id: str,
    reason: str | None = Query(default=None, max_length=500),
    principal=Depends(get_human_principal),
    trigger=Depends(get_feedback_trigger),
) -> RatingRemoved:
    try:
        principal.require_scopes({"moderation:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        outcome = await trigger.remove_rating(rating_id=rating_id, actor=principal, reason=reason)
    except (RepositoryUnavailableError, AuditWriteError) as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    return RatingRemoved(entry_id=outcome.record.entry_id, rating_id=outcome.record.id, trust_score=outcome.trust_score)


@router.get("/ratings/stats", response_model=RatingStatsOut)
async def rating_stats(repository=Depends(get_repository)) -> RatingStatsOut:
    try:
        row = await repository.rating_stats()
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return RatingStatsOut(**row)
