from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Callable

from opentelemetry import trace

from triage.core.config import Settings
from triage.core.urls import source_host
from triage.services.audit import TRUST_RECALCULATED
from triage.services.repository import (
    AuditRecord,
    EntryState,
    RatingAggregate,
    RepositoryConflictError,
    RepositoryError,
    TrustScores,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

VERIFICATION_SCORES: dict[str, float] = {
    "unverified": 0.3,
    "community-flagged": 0.1,
    "curator-verified": 1.0,
}
DEFAULT_SOURCE_REPUTATION: dict[str, float] = {
    "nhs.uk": 1.0,
    "gov.uk": 1.0,
    "tht.org.uk": 0.8,
    "stonewall.org.uk": 0.8,
    "menrus.co.uk": 0.8,
    "ukblackpride.org.uk": 0.8,
    "lgbt.foundation": 0.8,
    "ac.uk": 0.7,
    "edu": 0.7,
}
DEFAULT_SOURCE_SCORE = 0.3
SCORE_PRECISION = 4
SUB_SCORE_NAMES = ("source_score", "recency_score", "verification_score", "community_score")


def clamp(value: float) -> float:
    return min(1.0, max(0.0, value))


@dataclass(frozen=True, slots=True)
class TrustWeights:
    source: float = 0.3
    recency: float = 0.2
    verification: float = 0.3
    community: float = 0.2

    def __post_init__(self) -> None:
        values = (self.source, self.recency, self.verification, self.community)
        if any(value < 0 for value in values):
            raise ValueError("trust weights must be non-negative")
        if self.source + self.recency + self.verification <= 0:
            raise ValueError("source, recency and verification weights cannot all be zero")

    def as_dict(self) -> dict[str, float]:
        return {
            "source": self.source,
            "recency": self.recency,
            "verification": self.verification,
            "community": self.community,
        }


@dataclass(frozen=True, slots=True)
class RecencyPolicy:
    """Exponential decay by whole days since last verification, never below ``floor``."""

    half_life_days: float = 90.0
    floor: float = 0.1

    def __post_init__(self) -> None:
        if self.half_life_days <= 0:
            raise ValueError("half_life_days must be positive")
        if not 0 < self.floor <= 1:
            raise ValueError("recency floor must be in (0, 1]")

    def score(self, last_verified_at: datetime, now: datetime) -> float:
        age_days = max(0, (now - last_verified_at).days)
        return clamp(max(self.floor, 0.5 ** (age_days / self.half_life_days)))


class SourceReputation:
    def __init__(self, table: dict[str, float] | None = None, default: float = DEFAULT_SOURCE_SCORE) -> None:
        merged = dict(DEFAULT_SOURCE_REPUTATION)
        merged.update(table or {})
        self.table = {suffix.strip().lower().lstrip("."): clamp(float(score)) for suffix, score in merged.items()}
        self.default = clamp(default)

    @classmethod
    def from_json(cls, raw: str | None) -> SourceReputation:
        if not raw:
            return cls()
        try:
            decoded = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ValueError("source reputation overrides must be a JSON object") from exc
        if not isinstance(decoded, dict) or not all(isinstance(value, (int, float)) for value in decoded.values()):
            raise ValueError("source reputation overrides must map domain suffixes to numbers")
        return cls(table=decoded)

    def score_for(self, url: str | None) -> float:
        host = source_host(url)
        if host is None:
            return self.default
        best_suffix: str | None = None
        for suffix in self.table:
            if host == suffix or host.endswith("." + suffix):
                if best_suffix is None or len(suffix) > len(best_suffix):
                    best_suffix = suffix
        return self.table[best_suffix] if best_suffix is not None else self.default


def verification_score(status: str) -> float:
    return VERIFICATION_SCORES.get(status, VERIFICATION_SCORES["unverified"])


def community_score(aggregate: RatingAggregate) -> float | None:
    """Mean 1-5 rating mapped onto [0, 1]; None until at least one rating exists."""
    if aggregate.count <= 0 or aggregate.mean is None:
        return None
    return clamp((aggregate.mean - 1.0) / 4.0)


def weighted_composite(
    *,
    source: float,
    recency: float,
    verification: float,
    community: float | None,
    weights: TrustWeights,
) -> float:
    parts = [
        (weights.source, clamp(source)),
        (weights.recency, clamp(recency)),
        (weights.verification, clamp(verification)),
    ]
    if community is not None:
        parts.append((weights.community, clamp(community)))
    total_weight = sum(weight for weight, _ in parts)
    if total_weight <= 0:
        return 0.0
    return clamp(sum(weight * score for weight, score in parts) / total_weight)


@dataclass(frozen=True, slots=True)
class TrustInterpretation:
    level: str
    description: str


def interpret(score: float) -> TrustInterpretation:
    if score >= 0.8:
        return TrustInterpretation("high", "Highly trusted: verified sources with recent confirmation")
    if score >= 0.6:
        return TrustInterpretation("medium", "Good trust: reliable sources with reasonably recent updates")
    if score >= 0.4:
        return TrustInterpretation("low", "Limited trust: older information or unverified sources")
    return TrustInterpretation("very_low", "Low trust: outdated, flagged or unverified information")


class EntryLockMap:
    """One asyncio.Lock per entry id, dropped once nobody holds or awaits it."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._holders: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, entry_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(entry_id, asyncio.Lock())
        self._holders[entry_id] = self._holders.get(entry_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[entry_id] -= 1
            if self._holders[entry_id] == 0:
                del self._holders[entry_id]
                self._locks.pop(entry_id, None)


class TrustScoreEngine:
    def __init__(
        self,
        repository: Any,
        *,
        weights: TrustWeights | None = None,
        recency: RecencyPolicy | None = None,
        reputation: SourceReputation | None = None,
        clock: Callable[[], datetime] | None = None,
        max_attempts: int = 3,
    ) -> None:
        self.repository = repository
        self.weights = weights or TrustWeights()
        self.recency = recency or RecencyPolicy()
        self.reputation = reputation or SourceReputation()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.max_attempts = max(1, max_attempts)
        self._locks = EntryLockMap()

    @classmethod
    def from_settings(cls, repository: Any, settings: Settings) -> TrustScoreEngine:
        return cls(
            repository,
            weights=TrustWeights(
                source=settings.trust_weight_source,
                recency=settings.trust_weight_recency,
                verification=settings.trust_weight_verification,
                community=settings.trust_weight_community,
            ),
            recency=RecencyPolicy(
                half_life_days=settings.recency_half_life_days,
                floor=settings.recency_floor,
            ),
            reputation=SourceReputation.from_json(settings.source_reputation_json),
        )

    def now(self) -> datetime:
        return self._clock()

    def initial_scores(
        self,
        *,
        source_score: float,
        last_verified_at: datetime,
        verification_status: str = "unverified",
    ) -> TrustScores:
        return self._scores(
            source=source_score,
            recency=self.recency.score(last_verified_at, last_verified_at),
            verification=verification_score(verification_status),
            community=None,
        )

    def compute(self, state: EntryState, aggregate: RatingAggregate, now: datetime) -> TrustScores:
        return self._scores(
            source=state.source_score,
            recency=self.recency.score(state.last_verified_at, now),
            verification=verification_score(state.verification_status),
            community=community_score(aggregate),
        )

    async def recalculate(
        self,
        entry_id: str,
        *,
        trigger: str = "manual",
        actor_type: str = "system",
        actor_id: str | None = None,
    ) -> float:
        """Recompute and persist an entry's trust score from current state, with one audit record."""
        async with self._locks.hold(entry_id):
            with tracer.start_as_current_span("trust.recalculate") as span:
                span.set_attribute("entry.id", entry_id)
                span.set_attribute("trust.trigger", trigger)
                attempt = 0
                while True:
                    attempt += 1
                    state = await self.repository.get_entry_state(entry_id)
                    aggregate = await self.repository.rating_aggregate(entry_id)
                    now = self._clock()
                    scores = self.compute(state, aggregate, now)
                    audit = AuditRecord(
                        operation_type=TRUST_RECALCULATED,
                        actor_type=actor_type,
                        actor_id=actor_id,
                        entry_id=entry_id,
                        details={
                            "trigger": trigger,
                            "pre_score": state.trust_score,
                            "post_score": scores.trust_score,
                            "changed": changed_sub_scores(state.scores(), scores),
                            "sub_scores": scores.as_dict(),
                            "rating_count": aggregate.count,
                            "weights": self.weights.as_dict(),
                        },
                    )
                    try:
                        updated = await self.repository.save_trust_scores(
                            entry_id=entry_id,
                            scores=scores,
                            calculated_at=now,
                            expected_version=state.version,
                            audit=audit,
                        )
                    except RepositoryConflictError:
                        if attempt >= self.max_attempts:
                            raise
                        logger.info("trust recalculation raced entry_id=%s attempt=%s; retrying", entry_id, attempt)
                        continue

                    span.set_attribute("trust.score", updated.trust_score)
                    logger.info(
                        "trust recalculated entry_id=%s trigger=%s pre=%.4f post=%.4f changed=%s",
                        entry_id,
                        trigger,
                        state.trust_score,
                        updated.trust_score,
                        ",".join(audit.details["changed"]) or "none",
                    )
                    return updated.trust_score

    async def recalculate_stale(self, *, older_than: timedelta, limit: int = 100) -> tuple[int, int]:
        """Recalculate entries not scored since ``older_than`` ago so recency decay shows up."""
        cutoff = self._clock() - older_than
        entry_ids = await self.repository.list_stale_entry_ids(calculated_before=cutoff, limit=limit)
        recalculated = 0
        failed = 0
        for entry_id in entry_ids:
            try:
                await self.recalculate(entry_id, trigger="recency_sweep")
            except RepositoryError as exc:
                failed += 1
                logger.warning("stale recalculation failed entry_id=%s error=%s", entry_id, exc)
            else:
                recalculated += 1
        logger.info("stale sweep finished recalculated=%s failed=%s", recalculated, failed)
        return recalculated, failed

    def _scores(
        self,
        *,
        source: float,
        recency: float,
        verification: float,
        community: float | None,
    ) -> TrustScores:
        source = round(clamp(source), SCORE_PRECISION)
        recency = round(clamp(recency), SCORE_PRECISION)
        verification = round(clamp(verification), SCORE_PRECISION)
        if community is not None:
            community = round(clamp(community), SCORE_PRECISION)
        composite = weighted_composite(
            source=source,
            recency=recency,
            verification=verification,
            community=community,
            weights=self.weights,
        )
        return TrustScores(
            source_score=source,
            recency_score=recency,
            verification_score=verification,
            community_score=community,
            trust_score=round(composite, SCORE_PRECISION),
        )


def changed_sub_scores(before: TrustScores, after: TrustScores) -> list[str]:
    changed: list[str] = []
    for name in SUB_SCORE_NAMES:
        old = getattr(before, name)
        new = getattr(after, name)
        if old is None or new is None:
            if old is not new:
                changed.append(name)
        elif abs(old - new) > 1e-9:
            changed.append(name)
    return changed
