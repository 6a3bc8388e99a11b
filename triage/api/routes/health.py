from fastapi import APIRouter, Depends

from triage.core.config import Settings, get_settings
from triage.services.repository import PostgresRepository, get_repository

router = APIRouter()


@router.get("/healthz")
async def healthz(
    settings: Settings = Depends(get_settings),
    repository=Depends(get_repository),
) -> dict[str, str | bool]:
    return {
        "status": "ok",
        "storage": "postgres" if isinstance(repository, PostgresRepository) else "memory",
        "reasoning_configured": bool(settings.reasoning_api_key),
        "webhook_configured": bool(settings.webhook_secret),
    }
