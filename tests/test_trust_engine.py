from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from triage.services.audit import TRUST_RECALCULATED
from triage.services.repository import NewEntry, RatingAggregate, RepositoryConflictError, TrustScores
from triage.services.store import InMemoryRepository
from triage.services.trust import (
    EntryLockMap,
    RecencyPolicy,
    SourceReputation,
    TrustScoreEngine,
    TrustWeights,
    community_score,
    interpret,
    weighted_composite,
)

START = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


class _Clock:
    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


async def _seed_entry(
    repository: InMemoryRepository,
    engine: TrustScoreEngine,
    *,
    source_score: float = 0.8,
    verified_at: datetime = START,
) -> str:
    item = {"title": "Seed", "description": "Seed entry", "source_url": "https://example.org/seed"}
    scores = engine.initial_scores(source_score=source_score, last_verified_at=verified_at)
    submission = await repository.record_submission(
        fingerprint="seed",
        item=item,
        moderation={},
        disposition="auto-approved",
        entry=NewEntry(item=item, source_score=source_score, scores=scores, last_verified_at=verified_at),
        audits=[],
    )
    return submission["entry_id"]


def test_composite_renormalizes_without_community_ratings() -> None:
    weights = TrustWeights()
    score = weighted_composite(source=0.8, recency=0.6, verification=1.0, community=None, weights=weights)

    expected = (0.3 * 0.8 + 0.2 * 0.6 + 0.3 * 1.0) / (0.3 + 0.2 + 0.3)
    assert score == pytest.approx(expected)
    assert score == pytest.approx(0.825)


def test_composite_uses_all_weights_with_ratings() -> None:
    score = weighted_composite(source=0.8, recency=0.6, verification=1.0, community=0.5, weights=TrustWeights())
    assert score == pytest.approx(0.3 * 0.8 + 0.2 * 0.6 + 0.3 * 1.0 + 0.2 * 0.5)


def test_composite_clamps_out_of_range_inputs() -> None:
    score = weighted_composite(source=3.0, recency=-1.0, verification=2.0, community=9.0, weights=TrustWeights())
    assert 0.0 <= score <= 1.0


def test_trust_weights_reject_negative_values() -> None:
    with pytest.raises(ValueError):
        TrustWeights(source=-0.1)


def test_community_score_maps_mean_rating_onto_unit_interval() -> None:
    assert community_score(RatingAggregate(count=0, mean=None)) is None
    assert community_score(RatingAggregate(count=3, mean=1.0)) == 0.0
    assert community_score(RatingAggregate(count=3, mean=3.0)) == 0.5
    assert community_score(RatingAggregate(count=3, mean=5.0)) == 1.0


def test_recency_decays_by_whole_days_and_never_drops_below_floor() -> None:
    policy = RecencyPolicy(half_life_days=90, floor=0.1)

    assert policy.score(START, START + timedelta(hours=23)) == 1.0
    assert policy.score(START, START + timedelta(days=90)) == pytest.approx(0.5)
    assert policy.score(START, START + timedelta(days=3650)) == 0.1

    previous = 1.0
    for days in range(0, 800, 7):
        current = policy.score(START, START + timedelta(days=days))
        assert current <= previous
        assert current >= 0.1
        previous = current


def test_source_reputation_matches_longest_suffix() -> None:
    reputation = SourceReputation.from_json('{"events.example.org": 0.9, "example.org": 0.5}')

    assert reputation.score_for("https://www.nhs.uk/conditions/hiv") == 1.0
    assert reputation.score_for("https://www.ucl.ac.uk/news") == 0.7
    assert reputation.score_for("https://events.example.org/a") == 0.9
    assert reputation.score_for("https://blog.example.org/a") == 0.5
    assert reputation.score_for("https://unknown.test/a") == 0.3
    assert reputation.score_for("not a url") == 0.3


def test_source_reputation_rejects_invalid_overrides() -> None:
    with pytest.raises(ValueError):
        SourceReputation.from_json("[1, 2]")
    with pytest.raises(ValueError):
        SourceReputation.from_json("{not json")


@pytest.mark.parametrize(
    ("score", "level"),
    [(0.95, "high"), (0.8, "high"), (0.65, "medium"), (0.4, "low"), (0.39, "very_low"), (0.0, "very_low")],
)
def test_interpret_levels(score: float, level: str) -> None:
    assert interpret(score).level == level


def test_initial_scores_exclude_community_weight() -> None:
    engine = TrustScoreEngine(InMemoryRepository(), clock=_Clock())
    scores = engine.initial_scores(source_score=0.8, last_verified_at=START)

    assert scores.community_score is None
    assert scores.recency_score == 1.0
    assert scores.verification_score == 0.3
    assert scores.trust_score == pytest.approx(round((0.3 * 0.8 + 0.2 * 1.0 + 0.3 * 0.3) / 0.8, 4))


def test_recalculate_twice_without_rating_change_is_idempotent() -> None:
    async def scenario() -> tuple[float, float, InMemoryRepository, str]:
        repository = InMemoryRepository()
        clock = _Clock()
        engine = TrustScoreEngine(repository, clock=clock)
        entry_id = await _seed_entry(repository, engine)
        clock.now = START + timedelta(days=45, hours=3)
        first = await engine.recalculate(entry_id, trigger="manual")
        clock.now = START + timedelta(days=45, hours=9)
        second = await engine.recalculate(entry_id, trigger="manual")
        return first, second, repository, entry_id

    first, second, repository, entry_id = asyncio.run(scenario())

    assert first == second
    audits = [row for row in repository.audit_entries if row["operation_type"] == TRUST_RECALCULATED]
    assert len(audits) == 2
    assert audits[0]["details"]["changed"] == ["recency_score"]
    assert audits[1]["details"]["changed"] == []
    assert audits[1]["details"]["pre_score"] == audits[1]["details"]["post_score"] == second


def test_recalculate_writes_one_audit_and_one_history_row_per_call() -> None:
    async def scenario() -> InMemoryRepository:
        repository = InMemoryRepository()
        engine = TrustScoreEngine(repository, clock=_Clock())
        entry_id = await _seed_entry(repository, engine)
        for _ in range(3):
            await engine.recalculate(entry_id, trigger="manual")
        return repository

    repository = asyncio.run(scenario())

    assert len([row for row in repository.audit_entries if row["operation_type"] == TRUST_RECALCULATED]) == 3
    # One row from creation plus one per recalculation.
    assert len(repository.snapshots) == 4


def test_recalculate_folds_in_ratings() -> None:
    async def scenario() -> tuple[float, dict]:
        repository = InMemoryRepository()
        engine = TrustScoreEngine(repository, clock=_Clock())
        entry_id = await _seed_entry(repository, engine)
        await repository.insert_rating(
            entry_id=entry_id, rater_hash="r1", rating=5, feedback_text=None, created_at=START
        )
        score = await engine.recalculate(entry_id, trigger="rating_created")
        return score, await repository.get_entry(entry_id)

    score, entry = asyncio.run(scenario())

    assert entry["community_score"] == 1.0
    assert score == pytest.approx(round(0.3 * 0.8 + 0.2 * 1.0 + 0.3 * 0.3 + 0.2 * 1.0, 4))
    assert entry["trust_score"] == score


class _RacingRepository(InMemoryRepository):
    def __init__(self, conflicts: int) -> None:
        super().__init__()
        self.conflicts = conflicts

    async def save_trust_scores(self, **kwargs):  # type: ignore[override]
        if self.conflicts:
            self.conflicts -= 1
            raise RepositoryConflictError("entry changed during recalculation")
        return await super().save_trust_scores(**kwargs)


def test_recalculate_retries_version_conflicts() -> None:
    async def scenario() -> float:
        repository = _RacingRepository(conflicts=2)
        engine = TrustScoreEngine(repository, clock=_Clock(), max_attempts=3)
        entry_id = await _seed_entry(repository, engine)
        return await engine.recalculate(entry_id)

    assert 0.0 <= asyncio.run(scenario()) <= 1.0


def test_recalculate_gives_up_after_max_attempts() -> None:
    async def scenario() -> None:
        repository = _RacingRepository(conflicts=5)
        engine = TrustScoreEngine(repository, clock=_Clock(), max_attempts=2)
        entry_id = await _seed_entry(repository, engine)
        await engine.recalculate(entry_id)

    with pytest.raises(RepositoryConflictError):
        asyncio.run(scenario())


def test_concurrent_recalculations_for_one_entry_run_one_at_a_time() -> None:
    async def scenario() -> tuple[int, int]:
        repository = InMemoryRepository()
        engine = TrustScoreEngine(repository, clock=_Clock())
        entry_id = await _seed_entry(repository, engine)

        active = 0
        peak = 0
        original = repository.rating_aggregate

        async def slow_aggregate(entry: str) -> RatingAggregate:
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return await original(entry)

        repository.rating_aggregate = slow_aggregate  # type: ignore[method-assign]
        await asyncio.gather(*(engine.recalculate(entry_id) for _ in range(5)))
        state = await repository.get_entry_state(entry_id)
        return peak, state.version

    peak, version = asyncio.run(scenario())

    assert peak == 1
    assert version == 6


def test_entry_lock_map_drops_idle_locks() -> None:
    async def scenario() -> int:
        locks = EntryLockMap()
        async with locks.hold("a"):
            async with locks.hold("b"):
                assert len(locks) == 2
        return len(locks)

    assert asyncio.run(scenario()) == 0


def test_recalculate_stale_only_touches_old_entries() -> None:
    async def scenario() -> tuple[int, int, list[str]]:
        repository = InMemoryRepository()
        clock = _Clock()
        engine = TrustScoreEngine(repository, clock=clock)
        old_id = await _seed_entry(repository, engine, verified_at=START - timedelta(days=10))
        fresh_id = await _seed_entry(repository, engine, verified_at=START)
        recalculated, failed = await engine.recalculate_stale(older_than=timedelta(days=1))
        triggers = [
            row["entry_id"] for row in repository.audit_entries if row["details"].get("trigger") == "recency_sweep"
        ]
        assert fresh_id not in triggers
        return recalculated, failed, triggers

    recalculated, failed, triggers = asyncio.run(scenario())

    assert (recalculated, failed) == (1, 0)
    assert len(triggers) == 1


def test_scores_round_to_four_decimals() -> None:
    engine = TrustScoreEngine(InMemoryRepository(), clock=_Clock())
    scores: TrustScores = engine.initial_scores(source_score=1 / 3, last_verified_at=START)
    assert scores.source_score == 0.3333
    assert len(str(scores.trust_score).split(".")[1]) <= 4
