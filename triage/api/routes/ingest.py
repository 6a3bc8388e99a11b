from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status

from triage.api.deps import get_pipeline
from triage.core.security import get_machine_principal
from triage.schemas.items import IngestResponse

router = APIRouter()


@router.post("/events/webhook", response_model=IngestResponse)
@router.post("/ingest", response_model=IngestResponse)
async def ingest_batch(
    request: Request,
    principal=Depends(get_machine_principal),
    pipeline=Depends(get_pipeline),
) -> IngestResponse:
    try:
        body = await request.json()
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="request body must be JSON") from exc

    raw_items = _extract_items(body)
    if raw_items is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="expected an item object, a list of items, or {\"events\": [...]}",
        )
    if not raw_items:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="no items provided")

    report = await pipeline.process_batch(raw_items, submitted_by=principal.subject)
    return IngestResponse(success=report.success, stats=report.stats, results=report.results)


def _extract_items(body: Any) -> list[Any] | None:
    if isinstance(body, list):
        return body
    if not isinstance(body, dict):
        return None
    for key in ("events", "items"):
        if key in body:
            batch = body[key]
            return batch if isinstance(batch, list) else None
    return [body] if body else []
