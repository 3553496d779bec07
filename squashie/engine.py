"""
Conflict Lifecycle Engine
=========================

Applies lifecycle actions to a conflict:

    read fresh record -> validate -> plan full field update (incl. AI text)
    -> one conditional write on the version read -> notify rewards

If the write loses a race, the record is re-read, re-validated and the action
retried once; a second loss surfaces PersistenceConflict to the caller.
A satisfaction vote whose round moved on in the meantime is rejected instead
of being applied to content the voter never saw.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from .db.models import EventKind
from .errors import PersistenceConflict, ValidationError
from .lifecycle import (
    Action,
    CORE_ISSUE_FIELDS,
    Party,
    Phase,
    Round,
    SATISFACTION_FIELDS,
    VoteOutcome,
    allowed_actions,
    core_issue_of,
    current_round,
    derive_phase,
    has_round_one,
    party_for,
    require_participant,
    satisfaction_reset,
    validate_core_issue,
    validate_final_ruling,
    validate_respond,
    validate_vote,
    vote_outcome,
)
from .mediator import MediationService
from .models import ConflictRecord, ConflictStatus
from .repository import ConflictRepository
from .schemas import MoodLevel

logger = logging.getLogger(__name__)

# Retries after the first attempt loses an optimistic-concurrency race
MAX_WRITE_RETRIES = 1


@dataclass
class LifecycleView:
    """A conflict as one party sees it right now"""
    record: ConflictRecord
    party: Optional[Party]
    phase: Phase
    round: Round
    allowed_actions: List[Action] = field(default_factory=list)


@dataclass
class Plan:
    """Field update for one action plus the reward events it fires"""
    fields: Dict[str, Any]
    events: List[Tuple[str, EventKind, Dict[str, Any]]] = field(default_factory=list)


Planner = Callable[[ConflictRecord, ConflictRecord], Awaitable[Plan]]


def _require_text(text: Optional[str]) -> str:
    text = (text or "").strip()
    if not text:
        raise ValidationError("Message cannot be empty", rule="empty_message")
    return text


def _participants(record: ConflictRecord) -> List[str]:
    return [uid for uid in (record.user1_id, record.user2_id) if uid]


class ConflictEngine:
    """
    Usage:
        engine = ConflictEngine(notifier=RewardNotifier(bus))
        record = await engine.create_conflict("Dishes", "u1", "sam@example.com", "you never...", "rage")
        record = await engine.respond(record.id, "I do, sometimes", "u2", "sam@example.com")
        record = await engine.vote_satisfaction(record.id, True, "u1")
    """

    def __init__(
        self,
        repository: Optional[ConflictRepository] = None,
        mediator: Optional[MediationService] = None,
        notifier=None
    ):
        self.repository = repository or ConflictRepository()
        self.mediator = mediator or MediationService()
        self.notifier = notifier

    # =========================================================================
    # Reads
    # =========================================================================

    def get_view(
        self,
        conflict_id: str,
        user_id: Optional[str],
        user_email: Optional[str] = None
    ) -> LifecycleView:
        record = self.repository.get(conflict_id)
        party = require_participant(record, user_id, user_email)
        return self.view_of(record, user_id, user_email, party)

    @staticmethod
    def view_of(
        record: ConflictRecord,
        user_id: Optional[str],
        user_email: Optional[str] = None,
        party: Optional[Party] = None
    ) -> LifecycleView:
        return LifecycleView(
            record=record,
            party=party,
            phase=derive_phase(record, user_id, user_email),
            round=current_round(record),
            allowed_actions=allowed_actions(record, user_id, user_email),
        )

    def list_for_user(self, user_id: str, user_email: Optional[str] = None) -> List[LifecycleView]:
        return [
            self.view_of(record, user_id, user_email, party_for(record, user_id, user_email))
            for record in self.repository.list_for_user(user_id, user_email)
        ]

    # =========================================================================
    # Actions
    # =========================================================================

    async def create_conflict(
        self,
        title: str,
        initiator_id: str,
        other_email: str,
        description: str,
        mood: str = MoodLevel.MEH.value,
        initiator_email: Optional[str] = None
    ) -> ConflictRecord:
        description = _require_text(description)
        other_email = (other_email or "").strip()
        if "@" not in other_email:
            raise ValidationError("Invite needs a valid email address", rule="invalid_email")
        if initiator_email and initiator_email.strip().lower() == other_email.lower():
            raise ValidationError("You cannot start a conflict with yourself", rule="self_invite")

        translated = await self.mediator.translate(description, mood)
        record = self.repository.create({
            "title": (title or "").strip() or "Untitled conflict",
            "user1_id": initiator_id,
            "user2_email": other_email,
            "user1_mood": mood,
            "user1_raw_message": description,
            "user1_translated_message": translated,
            "status": ConflictStatus.PENDING,
        })
        logger.info(f"Conflict {record.id} created by {initiator_id}")
        self._notify(initiator_id, EventKind.CONFLICT_CREATED, {"conflict_id": record.id})
        return record

    async def respond(
        self,
        conflict_id: str,
        text: str,
        user_id: str,
        user_email: Optional[str] = None
    ) -> ConflictRecord:
        """The invited party answers; round 1 is generated in the same write."""
        text = _require_text(text)

        async def plan(record: ConflictRecord, original: ConflictRecord) -> Plan:
            validate_respond(record, user_id, user_email)
            translated = await self.mediator.translate(text, MoodLevel.RESPONSIVE.value)
            fields: Dict[str, Any] = {
                "user2_id": user_id,
                "user2_raw_message": text,
                "user2_translated_message": translated,
                "status": ConflictStatus.ACTIVE,
            }
            events = [(user_id, EventKind.CONFLICT_RESPONDED, {"conflict_id": record.id})]

            if record.user1_translated_message and translated and not has_round_one(record):
                result = await self.mediator.mediate(record.user1_translated_message, translated)
                fields["ai_summary"] = result["summary"]
                fields["ai_suggestion"] = result["suggestion"]
                fields.update(satisfaction_reset())
            return Plan(fields, events)

        updated, plan_used = await self._apply(conflict_id, plan)
        logger.info(f"Conflict {conflict_id} answered by {user_id}, status={updated.status.value}")
        self._fire(plan_used)
        return updated

    async def submit_core_issue(
        self,
        conflict_id: str,
        text: str,
        user_id: str,
        user_email: Optional[str] = None
    ) -> ConflictRecord:
        """Record one party's core issue; the second one triggers the reflection round."""
        text = _require_text(text)

        async def plan(record: ConflictRecord, original: ConflictRecord) -> Plan:
            party = validate_core_issue(record, user_id, user_email)
            fields: Dict[str, Any] = {CORE_ISSUE_FIELDS[party]: text}
            events = [(user_id, EventKind.CORE_ISSUE_SUBMITTED, {"conflict_id": record.id})]

            other_issue = core_issue_of(record, party.other)
            if other_issue and record.core_issues_attempted_at is None:
                issue1, issue2 = (text, other_issue) if party is Party.USER1 else (other_issue, text)
                result = await self.mediator.reflect_on_core_issues(
                    issue1,
                    issue2,
                    record.user1_translated_message,
                    record.user2_translated_message,
                    record.ai_summary,
                    record.ai_suggestion,
                    record.ai_rehash_summary,
                    record.ai_rehash_suggestion,
                )
                fields["ai_core_reflection"] = result["reflection"]
                fields["ai_core_suggestion"] = result["suggestion"]
                fields["core_issues_attempted_at"] = datetime.utcnow()
                fields.update(satisfaction_reset())
                events.extend(
                    (uid, EventKind.CORE_REFLECTION_GENERATED, {"conflict_id": record.id})
                    for uid in _participants(record)
                )
            return Plan(fields, events)

        updated, plan_used = await self._apply(conflict_id, plan)
        self._fire(plan_used)
        return updated

    async def vote_satisfaction(
        self,
        conflict_id: str,
        satisfied: bool,
        user_id: str,
        user_email: Optional[str] = None
    ) -> ConflictRecord:
        async def plan(record: ConflictRecord, original: ConflictRecord) -> Plan:
            if record is not original and current_round(record) != current_round(original):
                raise ValidationError(
                    "A new mediation round started before your vote landed; review it and vote again",
                    rule="round_advanced",
                )
            party = validate_vote(record, user_id, user_email)
            round_voted = current_round(record)
            outcome = vote_outcome(record, party, satisfied)

            fields: Dict[str, Any] = {SATISFACTION_FIELDS[party]: satisfied}
            events = [(user_id, EventKind.SATISFACTION_VOTED, {
                "conflict_id": record.id,
                "satisfied": satisfied,
                "round": round_voted.value,
            })]

            if outcome is VoteOutcome.RESOLVED:
                now = datetime.utcnow()
                fields["status"] = ConflictStatus.RESOLVED
                fields["resolved_at"] = now
                minutes = None
                if record.created_at:
                    minutes = int((now - record.created_at).total_seconds() // 60)
                events.extend(
                    (uid, EventKind.CONFLICT_RESOLVED, {
                        "conflict_id": record.id,
                        "round": round_voted.value,
                        "resolution_minutes": minutes,
                    })
                    for uid in _participants(record)
                )

            elif outcome is VoteOutcome.REHASH:
                result = await self.mediator.rehash(
                    record.user1_translated_message or "",
                    record.user2_translated_message or "",
                    record.ai_summary or "",
                    record.ai_suggestion or "",
                )
                fields["ai_rehash_summary"] = result["summary"]
                fields["ai_rehash_suggestion"] = result["suggestion"]
                fields["rehash_attempted_at"] = datetime.utcnow()
                fields["status"] = ConflictStatus.ACTIVE
                fields.update(satisfaction_reset())
                events.append((user_id, EventKind.REHASH_TRIGGERED, {"conflict_id": record.id}))

            elif outcome is VoteOutcome.UNRESOLVED:
                fields["status"] = ConflictStatus.ACTIVE

            logger.info(
                f"Conflict {record.id}: {party.value} voted satisfied={satisfied} "
                f"on {round_voted.value} -> {outcome.value}"
            )
            return Plan(fields, events)

        updated, plan_used = await self._apply(conflict_id, plan)
        self._fire(plan_used)
        return updated

    async def issue_final_ruling(
        self,
        conflict_id: str,
        user_id: Optional[str] = None,
        user_email: Optional[str] = None
    ) -> ConflictRecord:
        """Last resort after the core-issue round; freezes the conflict."""

        async def plan(record: ConflictRecord, original: ConflictRecord) -> Plan:
            validate_final_ruling(record, user_id, user_email)
            text1 = record.user1_translated_message or record.user1_raw_message
            text2 = record.user2_translated_message or ""
            ruling = await self.mediator.final_ruling(text1, text2)
            summary = await self.mediator.summarize_ruling(ruling)
            fields = {
                "final_ai_ruling": ruling,
                "ai_final_summary": summary,
                "final_ruling_issued_at": datetime.utcnow(),
                "final_ruling_requested_by": user_id,
                "status": ConflictStatus.FINAL_JUDGMENT,
            }
            events = [
                (uid, EventKind.FINAL_RULING_ISSUED, {"conflict_id": record.id, "requested_by": user_id})
                for uid in _participants(record)
            ]
            return Plan(fields, events)

        updated, plan_used = await self._apply(conflict_id, plan)
        logger.info(f"Final ruling issued on conflict {conflict_id}")
        self._fire(plan_used)
        return updated

    # =========================================================================
    # Internals
    # =========================================================================

    async def _apply(self, conflict_id: str, planner: Planner) -> Tuple[ConflictRecord, Plan]:
        original = self.repository.get(conflict_id)
        record = original
        attempt = 0
        while True:
            plan = await planner(record, original)
            try:
                updated = self.repository.update(conflict_id, plan.fields, expected_version=record.version)
                return updated, plan
            except PersistenceConflict:
                if attempt >= MAX_WRITE_RETRIES:
                    logger.warning(f"Conflict {conflict_id} still contended after {attempt + 1} attempts")
                    raise
                attempt += 1
                logger.info(f"Conflict {conflict_id} changed concurrently, re-reading (retry {attempt})")
                record = self.repository.get(conflict_id)

    def _fire(self, plan: Plan) -> None:
        for user_id, kind, context in plan.events:
            self._notify(user_id, kind, context)

    def _notify(self, user_id: str, kind: EventKind, context: Dict[str, Any]) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier.notify(user_id, kind, context)
        except Exception as e:
            logger.warning(f"Notifier failed for {user_id} ({kind.value}): {e}")
