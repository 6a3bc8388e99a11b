from __future__ import annotations

import asyncio
import os
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
from fastapi.testclient import TestClient

import triage.core.security as security
from triage.api.deps import get_trust_engine
from triage.core.config import get_settings
from triage.main import app
from triage.services.audit import ITEM_TRIAGED
from triage.services.repository import AuditRecord, NewEntry, get_repository
from triage.services.store import InMemoryRepository
from triage.services.trust import TrustScoreEngine

AUTH = {"Authorization": "Bearer token"}


def _pending_submission(repository: InMemoryRepository, title: str, disposition: str = "review-quick") -> str:
    item = {
        "type": "event",
        "title": title,
        "description": "Needs a human look",
        "source_url": "https://menrus.co.uk/events/9",
        "tags": [],
    }
    submission = asyncio.run(
        repository.record_submission(
            fingerprint=f"{title.lower()}||",
            item=item,
            moderation={"confidence": 0.8, "recommendation": "review", "flags": []},
            disposition=disposition,
            entry=None,
            audits=[AuditRecord(operation_type=ITEM_TRIAGED, actor_type="machine", actor_id="scraper")],
        )
    )
    return submission["id"]


def _entry(repository: InMemoryRepository, engine: TrustScoreEngine, *, calculated_days_ago: int = 0) -> str:
    verified_at = datetime.now(timezone.utc) - timedelta(days=calculated_days_ago)
    item = {"title": "Archive Me", "description": "Old listing", "source_url": "https://example.org/old"}
    scores = engine.initial_scores(source_score=0.3, last_verified_at=verified_at)
    submission = asyncio.run(
        repository.record_submission(
            fingerprint="archive me||",
            item=item,
            moderation={},
            disposition="auto-approved",
            entry=NewEntry(item=item, source_score=0.3, scores=scores, last_verified_at=verified_at),
            audits=[],
        )
    )
    return submission["entry_id"]


@pytest.fixture
def curator_client() -> Any:
    os.environ["TRIAGE_SUPABASE_URL"] = "https://example.supabase.co"
    os.environ["TRIAGE_SUPABASE_ANON_KEY"] = "anon-key"
    get_settings.cache_clear()

    repository = InMemoryRepository()
    engine = TrustScoreEngine(repository)
    app.dependency_overrides[get_repository] = lambda: repository
    app.dependency_overrides[get_trust_engine] = lambda: engine

    with TestClient(app) as client:
        yield client, repository, engine

    app.dependency_overrides.clear()
    os.environ.pop("TRIAGE_SUPABASE_URL", None)
    os.environ.pop("TRIAGE_SUPABASE_ANON_KEY", None)
    get_settings.cache_clear()


def _mock_supabase_user(monkeypatch: pytest.MonkeyPatch, user: dict[str, Any]) -> None:
    async def _fake_fetch(**_: Any) -> dict[str, Any]:
        return user

    monkeypatch.setattr(security, "_fetch_supabase_user", _fake_fetch)


def _as_role(monkeypatch: pytest.MonkeyPatch, role: str) -> None:
    _mock_supabase_user(monkeypatch, {"id": f"{role}-1", "app_metadata": {"role": role}})


def test_submissions_require_bearer_token(curator_client: Any) -> None:
    client, _, _ = curator_client
    assert client.get("/submissions").status_code == 401


def test_submissions_deny_user_role(curator_client: Any, monkeypatch: pytest.MonkeyPatch) -> None:
    client, _, _ = curator_client
    _as_role(monkeypatch, "user")
    assert client.get("/submissions", headers=AUTH).status_code == 403


def test_role_in_user_metadata_is_not_trusted(curator_client: Any, monkeypatch: pytest.MonkeyPatch) -> None:
    client, _, _ = curator_client
    _mock_supabase_user(monkeypatch, {"id": "sneaky", "user_metadata": {"role": "admin"}, "app_metadata": {}})
    assert client.get("/submissions", headers=AUTH).status_code == 403


def test_submissions_list_pending_for_curator(curator_client: Any, monkeypatch: pytest.MonkeyPatch) -> None:
    client, repository, _ = curator_client
    _pending_submission(repository, "Quick One")
    _pending_submission(repository, "Deep One", disposition="review-deep")
    _as_role(monkeypatch, "curator")

    response = client.get("/submissions", headers=AUTH)
    assert response.status_code == 200
    assert {row["item"]["title"] for row in response.json()} == {"Quick One", "Deep One"}

    response = client.get("/submissions", params={"disposition": "review-deep"}, headers=AUTH)
    assert [row["item"]["title"] for row in response.json()] == ["Deep One"]


def test_approve_creates_entry_and_blocks_second_decision(
    curator_client: Any,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    client, repository, _ = curator_client
    submission_id = _pending_submission(repository, "Approve Me")
    _as_role(monkeypatch, "curator")

    response = client.post(
        f"/submissions/{submission_id}/decision",
        json={"decision": "approve", "reason": "known organizer"},
        headers=AUTH,
    )

    assert response.status_code == 200
    body = response.json()
    assert body["disposition"] == "approved"
    assert body["decided_by"] == "curator-1"
    entry = repository.entries[body["entry_id"]]
    assert entry["source_score"] == 0.8
    operations = [row["operation_type"] for row in repository.audit_entries]
    assert "submission_decided" in operations
    assert "trust_initialized" in operations

    again = client.post(f"/submissions/{submission_id}/decision", json={"decision": "reject"}, headers=AUTH)
    assert again.status_code == 409


def test_reject_marks_submission_without_entry(curator_client: Any, monkeypatch: pytest.MonkeyPatch) -> None:
    client, repository, _ = curator_client
    submission_id = _pending_submission(repository, "Reject Me", disposition="review-deep")
    _as_role(monkeypatch, "curator")

    response = client.post(f"/submissions/{submission_id}/decision", json={"decision": "reject"}, headers=AUTH)

    assert response.status_code == 200
    assert response.json()["disposition"] == "rejected"
    assert response.json()["entry_id"] is None
    assert repository.entries == {}


def test_unknown_submission_decision_is_404(curator_client: Any, monkeypatch: pytest.MonkeyPatch) -> None:
    client, _, _ = curator_client
    _as_role(monkeypatch, "curator")
    response = client.post("/submissions/missing/decision", json={"decision": "approve"}, headers=AUTH)
    assert response.status_code == 404


def test_curator_verification_raises_trust(curator_client: Any, monkeypatch: pytest.MonkeyPatch) -> None:
    client, repository, engine = curator_client
    entry_id = _entry(repository, engine, calculated_days_ago=200)
    before = repository.entries[entry_id]["trust_score"]
    _as_role(monkeypatch, "curator")

    response = client.patch(
        f"/entries/{entry_id}/verification",
        json={"status": "curator-verified", "reason": "called the venue"},
        headers=AUTH,
    )

    assert response.status_code == 200
    body = response.json()
    assert body["verification_status"] == "curator-verified"
    assert body["verification_score"] == 1.0
    assert body["recency_score"] == 1.0
    assert body["trust_score"] > before
    operations = [row["operation_type"] for row in repository.audit_entries]
    assert operations[-2:] == ["verification_changed", "trust_recalculated"]


def test_archive_blocks_new_ratings(curator_client: Any, monkeypatch: pytest.MonkeyPatch) -> None:
    client, repository, engine = curator_client
    entry_id = _entry(repository, engine)
    _as_role(monkeypatch, "curator")

    response = client.post(f"/entries/{entry_id}/archive", json={"reason": "event ended"}, headers=AUTH)
    assert response.status_code == 200
    assert response.json()["archived_at"] is not None

    assert client.post(f"/entries/{entry_id}/archive", json={}, headers=AUTH).status_code == 409
    assert client.post(f"/entries/{entry_id}/ratings", json={"rating": 4}).status_code == 404
    assert client.get(f"/entries/{entry_id}").status_code == 200


def test_curator_can_remove_rating(curator_client: Any, monkeypatch: pytest.MonkeyPatch) -> None:
    client, repository, engine = curator_client
    entry_id = _entry(repository, engine)
    rating_id = client.post(f"/entries/{entry_id}/ratings", json={"rating": 1}).json()["rating_id"]

    _as_role(monkeypatch, "user")
    assert client.delete(f"/ratings/{rating_id}", headers=AUTH).status_code == 403

    _as_role(monkeypatch, "curator")
    response = client.delete(f"/ratings/{rating_id}", params={"reason": "abuse"}, headers=AUTH)

    assert response.status_code == 200
    assert response.json()["entry_id"] == entry_id
    assert repository.ratings == {}
    assert repository.entries[entry_id]["community_score"] is None
    assert client.delete(f"/ratings/{rating_id}", headers=AUTH).status_code == 404


def test_audit_query_by_entry(curator_client: Any, monkeypatch: pytest.MonkeyPatch) -> None:
    client, repository, engine = curator_client
    entry_id = _entry(repository, engine)
    client.post(f"/entries/{entry_id}/ratings", json={"rating": 5})

    _as_role(monkeypatch, "user")
    assert client.get("/audit", headers=AUTH).status_code == 403

    _as_role(monkeypatch, "curator")
    response = client.get("/audit", params={"entry_id": entry_id}, headers=AUTH)

    assert response.status_code == 200
    rows = response.json()
    assert [row["operation_type"] for row in rows] == ["trust_recalculated"]
    assert rows[0]["details"]["trigger"] == "rating_created"


def test_audit_query_rejects_inverted_range(curator_client: Any, monkeypatch: pytest.MonkeyPatch) -> None:
    client, _, _ = curator_client
    _as_role(monkeypatch, "curator")
    response = client.get(
        "/audit",
        params={"since": "2026-05-02T00:00:00Z", "until": "2026-05-01T00:00:00Z"},
        headers=AUTH,
    )
    assert response.status_code == 400


def test_stale_sweep_requires_admin(curator_client: Any, monkeypatch: pytest.MonkeyPatch) -> None:
    client, repository, engine = curator_client
    _entry(repository, engine, calculated_days_ago=3)

    _as_role(monkeypatch, "curator")
    assert client.post("/entries/recalculate-stale", headers=AUTH).status_code == 403

    _as_role(monkeypatch, "admin")
    response = client.post("/entries/recalculate-stale", params={"older_than_hours": 24}, headers=AUTH)

    assert response.status_code == 200
    assert response.json() == {"recalculated": 1, "failed": 0}
