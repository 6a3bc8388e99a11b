from datetime import timedelta
from functools import lru_cache

from fastapi import Depends

from triage.core.config import Settings, get_settings
from triage.services.audit import AuditLog
from triage.services.dedupe import Deduplicator, RecentFingerprintCache
from triage.services.feedback import FeedbackRecalculationTrigger
from triage.services.pipeline import IngestionPipeline
from triage.services.reasoning import ReasoningAdapter
from triage.services.repository import get_repository
from triage.services.review import ReviewService
from triage.services.trust import TrustScoreEngine


@lru_cache
def get_deduplicator() -> Deduplicator:
    settings = get_settings()
    cache = RecentFingerprintCache(
        max_size=settings.dedup_window_size,
        window=timedelta(hours=settings.dedup_window_hours),
    )
    return Deduplicator(cache)


@lru_cache
def get_reasoning_adapter() -> ReasoningAdapter:
    return ReasoningAdapter.from_settings(get_settings())


@lru_cache
def _engine_for(repository) -> TrustScoreEngine:
    # One engine per repository so every request shares the same per-entry locks.
    return TrustScoreEngine.from_settings(repository, get_settings())


def get_trust_engine(repository=Depends(get_repository)) -> TrustScoreEngine:
    return _engine_for(repository)


def get_audit_log(repository=Depends(get_repository)) -> AuditLog:
    return AuditLog(repository)


def get_pipeline(
    repository=Depends(get_repository),
    engine: TrustScoreEngine = Depends(get_trust_engine),
    deduplicator: Deduplicator = Depends(get_deduplicator),
    adapter: ReasoningAdapter = Depends(get_reasoning_adapter),
    audit_log: AuditLog = Depends(get_audit_log),
    settings: Settings = Depends(get_settings),
) -> IngestionPipeline:
    return IngestionPipeline(
        deduplicator=deduplicator,
        adapter=adapter,
        repository=repository,
        engine=engine,
        audit_log=audit_log,
        concurrency=settings.ingest_concurrency,
    )


def get_feedback_trigger(
    repository=Depends(get_repository),
    engine: TrustScoreEngine = Depends(get_trust_engine),
) -> FeedbackRecalculationTrigger:
    return FeedbackRecalculationTrigger(repository, engine)


def get_review_service(
    repository=Depends(get_repository),
    engine: TrustScoreEngine = Depends(get_trust_engine),
) -> ReviewService:
    return ReviewService(repository, engine)


def clear_runtime_caches() -> None:
    get_deduplicator.cache_clear()
    get_reasoning_adapter.cache_clear()
    _engine_for.cache_clear()
