from fastapi import APIRouter

from triage.api.routes import audit, entries, health, ingest, ratings, submissions

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(ingest.router, tags=["ingest"])
api_router.include_router(ratings.router, tags=["ratings"])
api_router.include_router(entries.router, prefix="/entries", tags=["entries"])
api_router.include_router(submissions.router, prefix="/submissions", tags=["moderation"])
api_router.include_router(audit.router, prefix="/audit", tags=["moderation"])
