"""
Public ruling feed tests.
"""

from datetime import datetime, timedelta

import pytest

from squashie.errors import ConflictNotFound, ValidationError
from squashie.feed import PublicFeed
from squashie.models import ConflictStatus
from squashie.repository import ConflictRepository
from squashie.schemas import VoteType


def _ruled(repo, issued_at, title="Dishes"):
    return repo.create({
        "title": title,
        "user1_id": "u1",
        "user2_id": "u2",
        "user2_email": "sam@example.com",
        "user1_raw_message": "private text",
        "status": ConflictStatus.FINAL_JUDGMENT,
        "final_ai_ruling": "Draw. Both apologize.",
        "ai_final_summary": "Draw.",
        "final_ruling_issued_at": issued_at,
    })


@pytest.fixture
def repo(sqlalchemy_db):
    return ConflictRepository()


@pytest.fixture
def feed(notifier):
    return PublicFeed(notifier=notifier)


def test_lists_rulings_newest_first(repo, feed):
    older = _ruled(repo, datetime(2026, 1, 1), title="Old")
    newer = _ruled(repo, datetime(2026, 2, 1), title="New")
    repo.create({
        "title": "Still talking",
        "user1_id": "u1",
        "user2_email": "sam@example.com",
        "user1_raw_message": "x",
        "status": ConflictStatus.ACTIVE,
    })
    feed.cast_vote(older.id, VoteType.BOTH_WRONG, "v1")

    rulings = feed.list_public_rulings()
    assert [r["conflict_id"] for r in rulings] == [newer.id, older.id]
    assert [r["total_votes"] for r in rulings] == [0, 1]
    assert "user1_raw_message" not in rulings[0]


def test_vote_upsert(repo, feed, bus):
    record = _ruled(repo, datetime(2026, 1, 1))

    assert feed.cast_vote(record.id, VoteType.AI_RIGHT, "v1") is VoteType.AI_RIGHT
    feed.cast_vote(record.id, "get_therapy", "v1")
    feed.cast_vote(record.id, VoteType.GET_THERAPY, "v2")

    counts = feed.vote_counts(record.id)
    assert counts[VoteType.GET_THERAPY] == 2
    assert counts[VoteType.AI_RIGHT] == 0
    assert set(counts) == set(VoteType)
    assert feed.user_vote(record.id, "v1") is VoteType.GET_THERAPY
    assert feed.user_vote(record.id, "v3") is None

    # Points only for the first vote
    awards = [n for n in bus.drain("v1") if n.kind == "squashcred_awarded"]
    assert len(awards) == 1


def test_participants_cannot_vote(repo, feed):
    record = _ruled(repo, datetime(2026, 1, 1))
    with pytest.raises(ValidationError) as exc:
        feed.cast_vote(record.id, VoteType.USER1_WRONG, "u2")
    assert exc.value.rule == "own_conflict"
    assert feed.vote_eligibility(record.id, "u1") == (False, "own_conflict")
    assert feed.vote_eligibility(record.id, "v1") == (True, None)
    assert feed.vote_eligibility(record.id, None) == (False, "anonymous")


def test_only_ruled_conflicts_accept_votes(repo, feed):
    record = repo.create({
        "title": "t",
        "user1_id": "u1",
        "user2_email": "sam@example.com",
        "user1_raw_message": "x",
        "status": ConflictStatus.RESOLVED,
    })
    with pytest.raises(ValidationError) as exc:
        feed.cast_vote(record.id, VoteType.BOTH_WRONG, "v1")
    assert exc.value.rule == "not_public"

    with pytest.raises(ConflictNotFound):
        feed.cast_vote("missing", VoteType.BOTH_WRONG, "v1")


def test_global_stats(repo, feed):
    _ruled(repo, datetime.utcnow() - timedelta(days=1))
    assert feed.global_stats() == {"total_conflicts": 1, "resolved_conflicts": 0, "resolution_rate": 0}
