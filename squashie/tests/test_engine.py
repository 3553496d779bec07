"""
Conflict engine tests: full lifecycle against SQLite, races, failure paths.
"""

import pytest

from squashie.db.models import EventKind, SquashCredEvent, UserAchievement, ConflictEvent
from squashie.db.session import get_db_session
from squashie.engine import ConflictEngine
from squashie.errors import (
    ConflictNotFound,
    InvariantViolation,
    PersistenceConflict,
    PersistenceFailure,
    ValidationError,
)
from squashie.lifecycle import Action, Phase, Round
from squashie.mediator import MediationService
from squashie.models import ConflictStatus
from squashie.repository import ConflictRepository

EMAIL1 = "alex@example.com"
EMAIL2 = "sam@example.com"


async def start_conflict(engine: ConflictEngine):
    return await engine.create_conflict(
        title="Dishes",
        initiator_id="u1",
        other_email=EMAIL2,
        description="you never listen",
        mood="rage",
        initiator_email=EMAIL1,
    )


async def answered_conflict(engine: ConflictEngine):
    record = await start_conflict(engine)
    return await engine.respond(record.id, "I do listen, I was just tired", "u2", EMAIL2)


async def rehashed_conflict(engine: ConflictEngine):
    record = await answered_conflict(engine)
    await engine.vote_satisfaction(record.id, True, "u1")
    return await engine.vote_satisfaction(record.id, False, "u2")


async def reflected_conflict(engine: ConflictEngine):
    record = await rehashed_conflict(engine)
    await engine.vote_satisfaction(record.id, False, "u2")
    await engine.submit_core_issue(record.id, "I need to feel respected", "u1")
    return await engine.submit_core_issue(record.id, "I need some quiet after work", "u2")


def credits_for(user_id):
    with get_db_session() as db:
        return sorted(
            action for (action,) in
            db.query(SquashCredEvent.action).filter(SquashCredEvent.user_id == user_id).all()
        )


def achievements_for(user_id):
    with get_db_session() as db:
        return {code for (code,) in db.query(UserAchievement.code).filter(UserAchievement.user_id == user_id).all()}


# =============================================================================
# Lifecycle scenarios
# =============================================================================

class TestLifecycleScenarios:
    @pytest.mark.asyncio
    async def test_new_conflict_awaits_response(self, engine):
        record = await start_conflict(engine)

        assert record.status == ConflictStatus.PENDING
        assert record.version == 1
        assert record.user1_translated_message.startswith("I'm really upset")
        assert engine.get_view(record.id, "u1").phase is Phase.AWAITING_RESPONSE
        view = engine.get_view(record.id, "u2", EMAIL2)
        assert view.phase is Phase.INPUT
        assert view.allowed_actions == [Action.RESPOND]

    @pytest.mark.asyncio
    async def test_response_generates_round_one(self, engine):
        record = await answered_conflict(engine)

        assert record.status == ConflictStatus.ACTIVE
        assert record.user2_id == "u2"
        assert record.user1_translated_message and record.user2_translated_message
        assert record.ai_summary and record.ai_suggestion
        assert record.version == 2
        for user in ("u1", "u2"):
            view = engine.get_view(record.id, user)
            assert view.phase is Phase.REACTIONS
            assert view.round is Round.INITIAL

    @pytest.mark.asyncio
    async def test_both_satisfied_resolves(self, engine):
        record = await answered_conflict(engine)
        record = await engine.vote_satisfaction(record.id, True, "u1")
        assert record.status == ConflictStatus.ACTIVE
        assert record.user1_satisfaction is True

        record = await engine.vote_satisfaction(record.id, True, "u2")
        assert record.status == ConflictStatus.RESOLVED
        assert record.resolved_at is not None

        with pytest.raises(InvariantViolation):
            await engine.vote_satisfaction(record.id, False, "u2")
        assert engine.get_view(record.id, "u1").allowed_actions == []

    @pytest.mark.asyncio
    async def test_dissatisfaction_triggers_rehash_once(self, engine):
        record = await rehashed_conflict(engine)

        assert record.rehash_attempted_at is not None
        assert record.ai_rehash_summary and record.ai_rehash_suggestion
        assert record.user1_satisfaction is None
        assert record.user2_satisfaction is None
        assert record.status == ConflictStatus.ACTIVE
        for user in ("u1", "u2"):
            view = engine.get_view(record.id, user)
            assert view.phase is Phase.REACTIONS
            assert view.round is Round.REHASH

        attempted = record.rehash_attempted_at
        record = await engine.vote_satisfaction(record.id, False, "u1")
        assert record.rehash_attempted_at == attempted
        assert record.user1_satisfaction is False

    @pytest.mark.asyncio
    async def test_core_issue_round(self, engine):
        record = await rehashed_conflict(engine)
        record = await engine.vote_satisfaction(record.id, False, "u2")
        assert engine.get_view(record.id, "u1").phase is Phase.CORE_ISSUE_INPUT
        assert engine.get_view(record.id, "u2").phase is Phase.CORE_ISSUE_INPUT

        record = await engine.submit_core_issue(record.id, "I need to feel respected", "u1")
        assert record.user1_core_issue == "I need to feel respected"
        assert record.ai_core_reflection is None
        assert engine.get_view(record.id, "u2").phase is Phase.CORE_ISSUE_INPUT

        with pytest.raises(ValidationError) as exc:
            await engine.submit_core_issue(record.id, "again", "u1")
        assert exc.value.rule == "already_submitted"

        record = await engine.submit_core_issue(record.id, "I need some quiet after work", "u2")
        assert record.ai_core_reflection and record.ai_core_suggestion
        assert record.core_issues_attempted_at is not None
        assert record.user1_satisfaction is None
        assert record.user2_satisfaction is None
        assert engine.get_view(record.id, "u1").phase is Phase.CORE_REFLECTION

    @pytest.mark.asyncio
    async def test_final_ruling_freezes_conflict(self, engine):
        record = await reflected_conflict(engine)

        with pytest.raises(ValidationError) as exc:
            await engine.issue_final_ruling(record.id, "u1")
        assert exc.value.rule == "final_ruling_unavailable"

        record = await engine.vote_satisfaction(record.id, False, "u1")
        assert Action.ISSUE_FINAL_RULING in engine.get_view(record.id, "u2").allowed_actions

        record = await engine.issue_final_ruling(record.id, "u2")
        assert record.status == ConflictStatus.FINAL_JUDGMENT
        assert record.final_ai_ruling.startswith("After three rounds")
        assert record.ai_final_summary
        assert record.final_ruling_issued_at is not None
        assert record.final_ruling_requested_by == "u2"

        frozen = record
        attempts = [
            engine.vote_satisfaction(record.id, False, "u2"),
            engine.submit_core_issue(record.id, "more", "u1"),
            engine.issue_final_ruling(record.id, "u1"),
            engine.respond(record.id, "late", "u2"),
        ]
        for attempt in attempts:
            with pytest.raises(InvariantViolation):
                await attempt
        assert engine.repository.get(record.id) == frozen
        assert engine.get_view(record.id, "u1").phase is Phase.FINAL_RULING


# =============================================================================
# Input validation
# =============================================================================

class TestCreateValidation:
    @pytest.mark.asyncio
    async def test_rejects_bad_email(self, engine):
        with pytest.raises(ValidationError) as exc:
            await engine.create_conflict("t", "u1", "not-an-email", "text")
        assert exc.value.rule == "invalid_email"

    @pytest.mark.asyncio
    async def test_rejects_self_invite(self, engine):
        with pytest.raises(ValidationError) as exc:
            await engine.create_conflict("t", "u1", EMAIL1.upper(), "text", initiator_email=EMAIL1)
        assert exc.value.rule == "self_invite"

    @pytest.mark.asyncio
    async def test_rejects_empty_message(self, engine):
        with pytest.raises(ValidationError) as exc:
            await engine.create_conflict("t", "u1", EMAIL2, "   ")
        assert exc.value.rule == "empty_message"

    @pytest.mark.asyncio
    async def test_unknown_conflict(self, engine):
        with pytest.raises(ConflictNotFound):
            await engine.vote_satisfaction("missing", True, "u1")

    @pytest.mark.asyncio
    async def test_stranger_cannot_view(self, engine):
        record = await start_conflict(engine)
        with pytest.raises(ValidationError) as exc:
            engine.get_view(record.id, "u9", "nobody@example.com")
        assert exc.value.rule == "not_participant"

    @pytest.mark.asyncio
    async def test_list_for_user(self, engine):
        record = await start_conflict(engine)
        assert [v.record.id for v in engine.list_for_user("u1")] == [record.id]
        assert [v.record.id for v in engine.list_for_user("u2", EMAIL2)] == [record.id]
        assert engine.list_for_user("u9", "nobody@example.com") == []


# =============================================================================
# Rewards side channel
# =============================================================================

class TestRewards:
    @pytest.mark.asyncio
    async def test_create_awards_start_and_first(self, engine, bus):
        await start_conflict(engine)

        assert credits_for("u1") == ["FIRST_CONFLICT", "START_CONFLICT"]
        assert "first_conflict" in achievements_for("u1")
        kinds = [n.kind for n in bus.drain("u1")]
        assert "squashcred_awarded" in kinds
        assert "achievement_unlocked" in kinds

    @pytest.mark.asyncio
    async def test_escalation_only_for_requester(self, engine):
        record = await reflected_conflict(engine)
        await engine.vote_satisfaction(record.id, False, "u1")
        await engine.issue_final_ruling(record.id, "u1")

        assert "ESCALATION" in credits_for("u1")
        assert "ESCALATION" not in credits_for("u2")
        assert "ai_judged" in achievements_for("u2")

    @pytest.mark.asyncio
    async def test_quick_resolution_bonus(self, engine):
        record = await answered_conflict(engine)
        await engine.vote_satisfaction(record.id, True, "u1")
        await engine.vote_satisfaction(record.id, True, "u2")

        for user in ("u1", "u2"):
            assert "RESOLVE_CONFLICT" in credits_for(user)
            assert "QUICK_RESOLUTION" in credits_for(user)
        assert "solved_stage_1" in achievements_for("u2")

    @pytest.mark.asyncio
    async def test_audit_trail(self, engine):
        record = await rehashed_conflict(engine)
        with get_db_session() as db:
            kinds = [
                e.kind for e in
                db.query(ConflictEvent).filter(ConflictEvent.conflict_id == record.id).all()
            ]
        assert EventKind.CONFLICT_CREATED in kinds
        assert EventKind.CONFLICT_RESPONDED in kinds
        assert kinds.count(EventKind.SATISFACTION_VOTED) == 2
        assert EventKind.REHASH_TRIGGERED in kinds

    @pytest.mark.asyncio
    async def test_broken_notifier_never_fails_action(self, sqlalchemy_db):
        class BrokenNotifier:
            def notify(self, user_id, kind, context):
                raise RuntimeError("rewards down")

        engine = ConflictEngine(mediator=MediationService(), notifier=BrokenNotifier())
        record = await start_conflict(engine)
        record = await engine.respond(record.id, "fine", "u2", EMAIL2)
        assert record.status == ConflictStatus.ACTIVE


# =============================================================================
# Concurrency
# =============================================================================

class InterleavingRepository(ConflictRepository):
    """Runs a queued hook (the "other party's" write) right before the next update."""

    def __init__(self):
        super().__init__()
        self.hooks = []
        self.update_calls = 0

    def update(self, conflict_id, fields, expected_version, expected_statuses=None):
        self.update_calls += 1
        if self.hooks:
            hook = self.hooks.pop(0)
            hook(conflict_id)
        return super().update(conflict_id, fields, expected_version, expected_statuses)

    def write_now(self, conflict_id, fields):
        current = self.get(conflict_id)
        return ConflictRepository.update(self, conflict_id, fields, current.version)


@pytest.fixture
def racing_repo(sqlalchemy_db):
    return InterleavingRepository()


@pytest.fixture
def racing_engine(racing_repo, notifier):
    return ConflictEngine(repository=racing_repo, mediator=MediationService(), notifier=notifier)


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_retry_applies_vote_on_fresh_state(self, racing_engine, racing_repo):
        record = await answered_conflict(racing_engine)
        racing_repo.hooks.append(lambda cid: racing_repo.write_now(cid, {"user2_satisfaction": True}))

        record = await racing_engine.vote_satisfaction(record.id, True, "u1")

        # First write lost the race, the retry saw user2's vote and resolved
        assert record.status == ConflictStatus.RESOLVED
        assert record.user1_satisfaction is True and record.user2_satisfaction is True

    @pytest.mark.asyncio
    async def test_simultaneous_dissatisfaction_generates_rehash_once(self, racing_engine, racing_repo):
        record = await answered_conflict(racing_engine)
        racing_repo.hooks.append(lambda cid: racing_repo.write_now(cid, {
            "ai_rehash_summary": "other party's rehash",
            "ai_rehash_suggestion": "other party's suggestion",
            "rehash_attempted_at": record.created_at,
            "user1_satisfaction": None,
            "user2_satisfaction": None,
        }))

        with pytest.raises(ValidationError) as exc:
            await racing_engine.vote_satisfaction(record.id, False, "u1")
        assert exc.value.rule == "round_advanced"

        stored = racing_repo.get(record.id)
        assert stored.ai_rehash_summary == "other party's rehash"
        assert stored.user1_satisfaction is None

    @pytest.mark.asyncio
    async def test_double_submit_of_final_ruling_is_rejected(self, racing_engine, racing_repo):
        record = await reflected_conflict(racing_engine)
        record = await racing_engine.vote_satisfaction(record.id, False, "u1")
        ruled = await racing_engine.issue_final_ruling(record.id, "u1")

        with pytest.raises(InvariantViolation):
            await racing_engine.issue_final_ruling(record.id, "u2")
        assert racing_repo.get(record.id) == ruled

    @pytest.mark.asyncio
    async def test_second_lost_race_surfaces_persistence_conflict(self, racing_engine, racing_repo):
        record = await answered_conflict(racing_engine)
        touch = lambda cid: racing_repo.write_now(cid, {"title": "renamed"})
        racing_repo.hooks.extend([touch, touch])
        calls_before = racing_repo.update_calls

        with pytest.raises(PersistenceConflict) as exc:
            await racing_engine.vote_satisfaction(record.id, True, "u1")
        assert exc.value.retryable is True
        assert racing_repo.update_calls - calls_before == 2
        assert racing_repo.get(record.id).user1_satisfaction is None


class TestPersistenceFailure:
    @pytest.mark.asyncio
    async def test_storage_failure_applies_nothing(self, engine):
        record = await answered_conflict(engine)

        class FailingRepository(ConflictRepository):
            def update(self, *args, **kwargs):
                raise PersistenceFailure("Storage unavailable: OperationalError")

        failing = ConflictEngine(repository=FailingRepository(), mediator=MediationService())
        with pytest.raises(PersistenceFailure) as exc:
            await failing.vote_satisfaction(record.id, False, "u1")
        assert exc.value.retryable is True

        stored = engine.repository.get(record.id)
        assert stored == record
