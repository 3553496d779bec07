"""
HTTP API tests (FastAPI TestClient).
"""

import pytest
from fastapi.testclient import TestClient

from squashie.api import app
from squashie.engine import ConflictEngine
from squashie.errors import PersistenceConflict, PersistenceFailure
from squashie.mediator import MediationService
from squashie.repository import ConflictRepository

EMAIL2 = "sam@example.com"
U1 = {"X-User-Id": "u1", "X-User-Email": "alex@example.com"}
U2 = {"X-User-Id": "u2", "X-User-Email": EMAIL2}
VOTER = {"X-User-Id": "v1"}


@pytest.fixture
def client(sqlalchemy_db):
    with TestClient(app) as client:
        yield client


def _create(client):
    response = client.post("/api/v1/conflicts", headers=U1, json={
        "title": "Dishes",
        "other_user_email": EMAIL2,
        "description": "you NEVER do the dishes",
        "mood": "annoyed",
    })
    assert response.status_code == 201, response.text
    return response.json()["conflict"]["id"]


def _to_final_ruling(client, cid):
    client.post(f"/api/v1/conflicts/{cid}/response", headers=U2, json={"text": "I do them on weekends"})
    client.post(f"/api/v1/conflicts/{cid}/satisfaction", headers=U1, json={"satisfied": False})
    client.post(f"/api/v1/conflicts/{cid}/satisfaction", headers=U1, json={"satisfied": False})
    client.post(f"/api/v1/conflicts/{cid}/core-issue", headers=U1, json={"text": "I need help"})
    client.post(f"/api/v1/conflicts/{cid}/core-issue", headers=U2, json={"text": "I need rest"})
    client.post(f"/api/v1/conflicts/{cid}/satisfaction", headers=U2, json={"satisfied": False})
    response = client.post(f"/api/v1/conflicts/{cid}/final-ruling", headers=U2)
    assert response.status_code == 200, response.text
    return response.json()


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["llm_mode"] == "none"


def test_identity_required(client):
    response = client.get("/api/v1/conflicts")
    assert response.status_code == 401


def test_create_and_view_with_redaction(client):
    cid = _create(client)

    mine = client.get(f"/api/v1/conflicts/{cid}", headers=U1).json()
    assert mine["phase"] == "awaiting_response"
    assert mine["party"] == "user1"
    assert mine["conflict"]["user1_raw_message"] == "you NEVER do the dishes"

    theirs = client.get(f"/api/v1/conflicts/{cid}", headers=U2).json()
    assert theirs["phase"] == "input"
    assert theirs["allowed_actions"] == ["respond"]
    assert theirs["conflict"]["user1_raw_message"] is None
    assert theirs["conflict"]["user1_translated_message"]

    listed = client.get("/api/v1/conflicts", headers=U2).json()
    assert listed["total"] == 1


def test_respond_and_vote(client):
    cid = _create(client)

    wrong = client.post(f"/api/v1/conflicts/{cid}/response", headers=U1, json={"text": "me again"})
    assert wrong.status_code == 403
    assert wrong.json()["rule"] == "wrong_actor"

    response = client.post(f"/api/v1/conflicts/{cid}/response", headers=U2, json={"text": "I do them on weekends"})
    assert response.status_code == 200
    body = response.json()
    assert body["phase"] == "reactions"
    assert body["conflict"]["status"] == "active"
    assert body["conflict"]["ai_summary"]
    assert body["conflict"]["user2_raw_message"] == "I do them on weekends"

    assert client.post(f"/api/v1/conflicts/{cid}/satisfaction", headers=U1, json={"satisfied": True}).status_code == 200
    again = client.post(f"/api/v1/conflicts/{cid}/satisfaction", headers=U1, json={"satisfied": True})
    assert again.status_code == 409
    assert again.json() == {
        "error": "validation_error",
        "rule": "double_vote",
        "detail": "Already voted on this round",
        "retryable": False,
    }

    resolved = client.post(f"/api/v1/conflicts/{cid}/satisfaction", headers=U2, json={"satisfied": True}).json()
    assert resolved["conflict"]["status"] == "resolved"

    frozen = client.post(f"/api/v1/conflicts/{cid}/satisfaction", headers=U2, json={"satisfied": False})
    assert frozen.status_code == 409
    assert frozen.json()["error"] == "invariant_violation"


def test_errors(client):
    missing = client.get("/api/v1/conflicts/nope", headers=U1)
    assert missing.status_code == 404
    assert missing.json()["error"] == "not_found"

    cid = _create(client)
    stranger = client.get(f"/api/v1/conflicts/{cid}", headers={"X-User-Id": "u9"})
    assert stranger.status_code == 403
    assert stranger.json()["rule"] == "not_participant"

    invalid = client.post("/api/v1/conflicts", headers=U1, json={"title": "x"})
    assert invalid.status_code == 422


def test_error_body_matches_documented_model(client):
    missing = client.get("/api/v1/conflicts/nope", headers=U1)
    assert set(missing.json()) == {"error", "rule", "detail", "retryable"}

    schema = client.get("/openapi.json").json()
    responses = schema["paths"]["/api/v1/conflicts/{conflict_id}/satisfaction"]["post"]["responses"]
    for code in ("403", "404", "409", "503"):
        ref = responses[code]["content"]["application/json"]["schema"]["$ref"]
        assert ref.endswith("/ErrorResponse")


def test_notifications_drain(client):
    _create(client)
    first = client.get("/api/v1/notifications", headers=U1).json()["notifications"]
    assert {n["kind"] for n in first} == {"squashcred_awarded", "achievement_unlocked"}
    assert client.get("/api/v1/notifications", headers=U1).json()["notifications"] == []


def test_final_ruling_and_public_feed(client):
    cid = _create(client)
    ruled = _to_final_ruling(client, cid)
    assert ruled["phase"] == "final_ruling"
    assert ruled["conflict"]["status"] == "final_judgment"
    assert ruled["allowed_actions"] == []

    rulings = client.get("/api/v1/rulings").json()
    assert [r["conflict_id"] for r in rulings] == [cid]

    summary = client.get(f"/api/v1/rulings/{cid}/votes", headers=VOTER).json()
    assert summary["can_vote"] is True
    assert summary["user_vote"] is None

    voted = client.post(f"/api/v1/rulings/{cid}/votes", headers=VOTER, json={"vote_type": "get_therapy"}).json()
    assert voted["user_vote"] == "get_therapy"
    counts = {c["vote_type"]: c["vote_count"] for c in voted["counts"]}
    assert counts["get_therapy"] == 1

    own = client.post(f"/api/v1/rulings/{cid}/votes", headers=U1, json={"vote_type": "ai_right"})
    assert own.status_code == 403

    stats = client.get("/api/v1/stats").json()
    assert stats == {"total_conflicts": 1, "resolved_conflicts": 0, "resolution_rate": 0}


class _BrokenRepository(ConflictRepository):
    def __init__(self, error):
        super().__init__()
        self.error = error

    def update(self, *args, **kwargs):
        raise self.error


@pytest.mark.parametrize("error, status_code", [
    (PersistenceFailure("Storage unavailable: OperationalError"), 503),
    (PersistenceConflict("changed", rule="version_mismatch"), 409),
])
def test_persistence_errors_are_retryable(client, error, status_code):
    cid = _create(client)
    app.state.engine = ConflictEngine(repository=_BrokenRepository(error), mediator=MediationService())

    response = client.post(f"/api/v1/conflicts/{cid}/response", headers=U2, json={"text": "hi"})
    assert response.status_code == status_code
    assert response.json()["retryable"] is True


class _CountingRepository(ConflictRepository):
    """Counts reads; the other party votes right after each write commits."""

    def __init__(self):
        super().__init__()
        self.gets = 0

    def get(self, conflict_id):
        self.gets += 1
        return super().get(conflict_id)

    def update(self, conflict_id, fields, expected_version, expected_statuses=None):
        record = super().update(conflict_id, fields, expected_version, expected_statuses)
        ConflictRepository().update(conflict_id, {"user2_satisfaction": True}, record.version)
        return record


def test_action_returns_the_written_record(client):
    cid = _create(client)
    client.post(f"/api/v1/conflicts/{cid}/response", headers=U2, json={"text": "I do them on weekends"})
    repository = _CountingRepository()
    app.state.engine = ConflictEngine(repository=repository, mediator=MediationService())

    response = client.post(f"/api/v1/conflicts/{cid}/satisfaction", headers=U1, json={"satisfied": True})
    assert response.status_code == 200, response.text
    assert repository.gets == 1

    body = response.json()
    assert body["conflict"]["user1_satisfaction"] is True
    assert body["conflict"]["user2_satisfaction"] is None
    stored = ConflictRepository().get(cid)
    assert stored.user2_satisfaction is True
    assert body["conflict"]["version"] == stored.version - 1
