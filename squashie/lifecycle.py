"""
Conflict Lifecycle Rules
========================

Pure functions over a ConflictRecord:
- which party a user is
- which mediation round is current
- which phase a party is in (derived once, used by every surface)
- which actions are legal right now, and what a vote leads to

Phase derivation is priority ordered, first match wins:
1. final ruling present             -> FINAL_RULING
2. pending with no response yet     -> AWAITING_RESPONSE (initiator) / INPUT (invitee)
3. core-issue round open and the party has not written theirs -> CORE_ISSUE_INPUT
4. core reflection present          -> CORE_REFLECTION
5. active/resolved with round 1 artifacts -> REACTIONS
6. otherwise                        -> MEDIATION (round 1 not generated yet)

Nothing here touches storage or the network.
"""

import enum
from typing import Dict, List, Optional

from .errors import InvariantViolation, ValidationError
from .models import ConflictRecord, ConflictStatus, TERMINAL_STATUSES


class Phase(str, enum.Enum):
    """Interaction state presented to one party for one conflict"""
    PENDING = "pending"  # observer view of an unanswered conflict
    INPUT = "input"
    AWAITING_RESPONSE = "awaiting_response"
    MEDIATION = "mediation"
    REACTIONS = "reactions"
    CORE_ISSUE_INPUT = "core_issue_input"
    CORE_REFLECTION = "core_reflection"
    FINAL_RULING = "final_ruling"


class Round(str, enum.Enum):
    """Latest mediation round whose artifacts exist"""
    NONE = "none"
    INITIAL = "initial"
    REHASH = "rehash"
    CORE = "core"
    FINAL = "final"


class Party(str, enum.Enum):
    USER1 = "user1"
    USER2 = "user2"

    @property
    def other(self) -> "Party":
        return Party.USER2 if self is Party.USER1 else Party.USER1


class Action(str, enum.Enum):
    RESPOND = "respond"
    SUBMIT_CORE_ISSUE = "submit_core_issue"
    VOTE_SATISFACTION = "vote_satisfaction"
    ISSUE_FINAL_RULING = "issue_final_ruling"


class VoteOutcome(str, enum.Enum):
    """What a satisfaction vote does to the conflict"""
    RECORDED = "recorded"        # waiting on the other party
    RESOLVED = "resolved"        # both satisfied
    REHASH = "rehash"            # first dissatisfaction, run the rehash round
    UNRESOLVED = "unresolved"    # rehash already used, stay active


SATISFACTION_FIELDS: Dict[Party, str] = {
    Party.USER1: "user1_satisfaction",
    Party.USER2: "user2_satisfaction",
}

CORE_ISSUE_FIELDS: Dict[Party, str] = {
    Party.USER1: "user1_core_issue",
    Party.USER2: "user2_core_issue",
}

RAW_MESSAGE_FIELDS: Dict[Party, str] = {
    Party.USER1: "user1_raw_message",
    Party.USER2: "user2_raw_message",
}


# =============================================================================
# Derived values
# =============================================================================

def _same_email(a: Optional[str], b: Optional[str]) -> bool:
    if not a or not b:
        return False
    return a.strip().lower() == b.strip().lower()


def party_for(
    record: ConflictRecord,
    user_id: Optional[str],
    user_email: Optional[str] = None
) -> Optional[Party]:
    """
    Resolve which side of the conflict a user is on.

    The invitee is matched by account id once they have responded; before
    that, by the invited email address.
    """
    if user_id and user_id == record.user1_id:
        return Party.USER1
    if record.user2_id:
        return Party.USER2 if user_id and user_id == record.user2_id else None
    if _same_email(user_email, record.user2_email):
        return Party.USER2
    return None


def satisfaction_of(record: ConflictRecord, party: Party) -> Optional[bool]:
    return getattr(record, SATISFACTION_FIELDS[party])


def core_issue_of(record: ConflictRecord, party: Party) -> Optional[str]:
    return getattr(record, CORE_ISSUE_FIELDS[party])


def has_round_one(record: ConflictRecord) -> bool:
    return bool(record.ai_summary and record.ai_suggestion)


def has_rehash(record: ConflictRecord) -> bool:
    return record.rehash_attempted_at is not None


def has_core_reflection(record: ConflictRecord) -> bool:
    return bool(record.ai_core_reflection and record.ai_core_suggestion)


def is_ruled(record: ConflictRecord) -> bool:
    return bool(record.final_ai_ruling)


def any_unsatisfied(record: ConflictRecord) -> bool:
    return record.user1_satisfaction is False or record.user2_satisfaction is False


def current_round(record: ConflictRecord) -> Round:
    if is_ruled(record):
        return Round.FINAL
    if record.core_issues_attempted_at is not None and has_core_reflection(record):
        return Round.CORE
    if has_rehash(record):
        return Round.REHASH
    if has_round_one(record):
        return Round.INITIAL
    return Round.NONE


def core_issue_round_open(record: ConflictRecord) -> bool:
    """Rehash was tried, someone is still unhappy, and no reflection was generated yet."""
    return (
        has_rehash(record)
        and any_unsatisfied(record)
        and record.core_issues_attempted_at is None
    )


def can_issue_final_ruling(record: ConflictRecord) -> bool:
    return (
        record.core_issues_attempted_at is not None
        and has_core_reflection(record)
        and any_unsatisfied(record)
        and not is_ruled(record)
    )


def derive_phase(
    record: ConflictRecord,
    user_id: Optional[str] = None,
    user_email: Optional[str] = None
) -> Phase:
    """Derive the phase shown to the acting user. Same record + user, same phase."""
    party = party_for(record, user_id, user_email)

    if is_ruled(record):
        return Phase.FINAL_RULING

    if record.status == ConflictStatus.PENDING and not record.user2_raw_message:
        if party is Party.USER1:
            return Phase.AWAITING_RESPONSE
        if party is None and user_id is None and user_email is None:
            return Phase.PENDING
        return Phase.INPUT

    if (
        party is not None
        and core_issue_round_open(record)
        and not core_issue_of(record, party)
    ):
        return Phase.CORE_ISSUE_INPUT

    if has_core_reflection(record):
        return Phase.CORE_REFLECTION

    if record.status in (ConflictStatus.ACTIVE, ConflictStatus.RESOLVED) and has_round_one(record):
        return Phase.REACTIONS

    return Phase.MEDIATION


# =============================================================================
# Validation
# =============================================================================

def ensure_mutable(record: ConflictRecord) -> None:
    """Reject any mutation of a ruled, resolved or abandoned conflict."""
    if is_ruled(record) or record.status == ConflictStatus.FINAL_JUDGMENT:
        raise InvariantViolation(
            "Conflict has a final ruling and can no longer change",
            rule="terminal_final_judgment",
        )
    if record.status in TERMINAL_STATUSES:
        raise InvariantViolation(
            f"Conflict is {record.status.value} and can no longer change",
            rule="terminal_status",
        )


def require_participant(
    record: ConflictRecord,
    user_id: Optional[str],
    user_email: Optional[str] = None
) -> Party:
    party = party_for(record, user_id, user_email)
    if party is None:
        raise ValidationError("User is not a party to this conflict", rule="not_participant")
    return party


def validate_respond(
    record: ConflictRecord,
    user_id: str,
    user_email: Optional[str] = None
) -> Party:
    ensure_mutable(record)
    if party_for(record, user_id, user_email) is not Party.USER2:
        raise ValidationError("Only the invited party can respond", rule="wrong_actor")
    phase = derive_phase(record, user_id, user_email)
    if phase is not Phase.INPUT:
        raise ValidationError(
            f"Conflict already has a response (phase: {phase.value})",
            rule="phase_mismatch",
        )
    return Party.USER2


def validate_core_issue(
    record: ConflictRecord,
    user_id: str,
    user_email: Optional[str] = None
) -> Party:
    ensure_mutable(record)
    party = require_participant(record, user_id, user_email)
    phase = derive_phase(record, user_id, user_email)
    if phase is not Phase.CORE_ISSUE_INPUT:
        if core_issue_round_open(record) and core_issue_of(record, party):
            raise ValidationError("Core issue already submitted", rule="already_submitted")
        raise ValidationError(
            f"Core issues are not open (phase: {phase.value})",
            rule="phase_mismatch",
        )
    return party


def validate_vote(
    record: ConflictRecord,
    user_id: str,
    user_email: Optional[str] = None
) -> Party:
    ensure_mutable(record)
    party = require_participant(record, user_id, user_email)
    phase = derive_phase(record, user_id, user_email)
    if phase not in (Phase.REACTIONS, Phase.CORE_REFLECTION):
        raise ValidationError(
            f"Nothing to vote on (phase: {phase.value})",
            rule="phase_mismatch",
        )
    if satisfaction_of(record, party) is not None:
        raise ValidationError("Already voted on this round", rule="double_vote")
    return party


def validate_final_ruling(
    record: ConflictRecord,
    user_id: Optional[str] = None,
    user_email: Optional[str] = None
) -> Optional[Party]:
    """Either participant may ask; with no user the check is on the record alone."""
    ensure_mutable(record)
    party = None
    if user_id is not None or user_email is not None:
        party = require_participant(record, user_id, user_email)
    if not can_issue_final_ruling(record):
        raise ValidationError(
            "Final ruling needs a core-issue reflection and an unsatisfied vote",
            rule="final_ruling_unavailable",
        )
    return party


_VALIDATORS = (
    (Action.RESPOND, validate_respond),
    (Action.SUBMIT_CORE_ISSUE, validate_core_issue),
    (Action.VOTE_SATISFACTION, validate_vote),
    (Action.ISSUE_FINAL_RULING, validate_final_ruling),
)


def allowed_actions(
    record: ConflictRecord,
    user_id: Optional[str],
    user_email: Optional[str] = None
) -> List[Action]:
    if user_id is None and user_email is None:
        return []
    allowed = []
    for action, validator in _VALIDATORS:
        try:
            validator(record, user_id, user_email)
        except (ValidationError, InvariantViolation):
            continue
        allowed.append(action)
    return allowed


# =============================================================================
# Effects
# =============================================================================

def vote_outcome(record: ConflictRecord, party: Party, satisfied: bool) -> VoteOutcome:
    """Decide what a (validated) vote does, given the other party's current vote."""
    other = satisfaction_of(record, party.other)
    if satisfied and other is True:
        return VoteOutcome.RESOLVED
    if not satisfied or other is False:
        if not has_rehash(record) and has_round_one(record):
            return VoteOutcome.REHASH
        return VoteOutcome.UNRESOLVED
    return VoteOutcome.RECORDED


def satisfaction_reset() -> Dict[str, Optional[bool]]:
    """Fields written together with every new round's artifacts."""
    return {field: None for field in SATISFACTION_FIELDS.values()}
