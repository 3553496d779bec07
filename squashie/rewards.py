"""
Rewards Notifier
================

Side channel fired after every successful lifecycle action:
- SquashCred ledger entries (point table from data/rewards.yaml)
- Achievement unlocks (catalog from data/rewards.yaml, rules below)
- Conflict audit trail
- Toasts on the notification bus

The catalog is loaded once. Achievement rules are pure predicates over a
StatsSnapshot, so they can be tested without a database.

`notify` never raises: a failing reward must not fail the action that
triggered it.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from functools import lru_cache
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

import yaml
from sqlalchemy.exc import IntegrityError

from .config import get_settings
from .db.models import Conflict, ConflictEvent, ConflictVote, EventKind, SquashCredEvent, UserAchievement
from .db.session import get_db_session
from .events import Notification, NotificationBus
from .lifecycle import RAW_MESSAGE_FIELDS, core_issue_of, has_rehash, party_for
from .models import ConflictRecord, ConflictStatus

logger = logging.getLogger(__name__)

DEFAULT_CATALOG_PATH = Path(__file__).parent / "data" / "rewards.yaml"

LONG_MESSAGE_CHARS = 900


# =============================================================================
# Stats snapshot + rules
# =============================================================================

@dataclass(frozen=True)
class StatsSnapshot:
    """What the achievement rules can see about one user"""
    conflicts_started: int = 0
    resolved_conflicts: int = 0
    resolved_in_stage_1: int = 0
    rehash_count: int = 0
    core_issues_written: int = 0
    ai_judgments: int = 0
    quick_resolutions: int = 0
    longest_message_chars: int = 0
    has_i_feel_message: bool = False
    public_votes_cast: int = 0


RULES: Dict[str, Callable[[StatsSnapshot], bool]] = {
    "conflicts_started_1": lambda s: s.conflicts_started >= 1,
    "conflicts_started_5": lambda s: s.conflicts_started >= 5,
    "resolved_in_stage_1": lambda s: s.resolved_in_stage_1 >= 1,
    "any_rehash": lambda s: s.rehash_count >= 1,
    "any_core_issue": lambda s: s.core_issues_written >= 1,
    "any_ai_judgment": lambda s: s.ai_judgments >= 1,
    "said_i_feel": lambda s: s.has_i_feel_message,
    "long_message": lambda s: s.longest_message_chars > LONG_MESSAGE_CHARS,
    "resolved_10": lambda s: s.resolved_conflicts >= 10,
    "quick_resolution": lambda s: s.quick_resolutions >= 1,
    "any_public_vote": lambda s: s.public_votes_cast >= 1,
}


def build_snapshot(
    user_id: str,
    records: Iterable[ConflictRecord],
    public_votes_cast: int = 0,
    quick_window: timedelta = timedelta(minutes=60)
) -> StatsSnapshot:
    """Aggregate a user's conflicts into the stats the rules read."""
    started = resolved = stage_1 = rehashes = core_issues = judged = quick = 0
    longest = 0
    i_feel = False

    for record in records:
        party = party_for(record, user_id)
        if party is None:
            continue

        if record.user1_id == user_id:
            started += 1
        if record.status == ConflictStatus.RESOLVED:
            resolved += 1
            if not has_rehash(record):
                stage_1 += 1
            if record.created_at and record.resolved_at and record.resolved_at - record.created_at <= quick_window:
                quick += 1
        if has_rehash(record):
            rehashes += 1
        if core_issue_of(record, party):
            core_issues += 1
        if record.final_ai_ruling:
            judged += 1

        raw = getattr(record, RAW_MESSAGE_FIELDS[party]) or ""
        longest = max(longest, len(raw))
        if "i feel" in raw.lower():
            i_feel = True

    return StatsSnapshot(
        conflicts_started=started,
        resolved_conflicts=resolved,
        resolved_in_stage_1=stage_1,
        rehash_count=rehashes,
        core_issues_written=core_issues,
        ai_judgments=judged,
        quick_resolutions=quick,
        longest_message_chars=longest,
        has_i_feel_message=i_feel,
        public_votes_cast=public_votes_cast,
    )


# =============================================================================
# Catalog
# =============================================================================

@dataclass(frozen=True)
class SquashCredAction:
    key: str
    points: int
    reason: str


@dataclass(frozen=True)
class Achievement:
    code: str
    name: str
    emoji: str
    description: str
    rule: str

    def is_met(self, snapshot: StatsSnapshot) -> bool:
        return RULES[self.rule](snapshot)


@dataclass(frozen=True)
class RewardsCatalog:
    actions: Dict[str, SquashCredAction]
    achievements: List[Achievement]

    def action(self, key: str) -> SquashCredAction:
        return self.actions[key]

    def earned(self, snapshot: StatsSnapshot) -> List[Achievement]:
        return [a for a in self.achievements if a.is_met(snapshot)]


def parse_catalog(data: Dict[str, Any]) -> RewardsCatalog:
    actions = {
        key: SquashCredAction(key=key, points=int(entry["points"]), reason=str(entry["reason"]))
        for key, entry in (data.get("squashcred_actions") or {}).items()
    }

    achievements = []
    seen = set()
    for item in data.get("achievements") or []:
        achievement = Achievement(
            code=item["code"],
            name=item["name"],
            emoji=item.get("emoji", ""),
            description=item.get("description", ""),
            rule=item["rule"],
        )
        if achievement.rule not in RULES:
            raise ValueError(f"Achievement {achievement.code} uses unknown rule '{achievement.rule}'")
        if achievement.code in seen:
            raise ValueError(f"Duplicate achievement code '{achievement.code}'")
        seen.add(achievement.code)
        achievements.append(achievement)

    return RewardsCatalog(actions=actions, achievements=achievements)


@lru_cache()
def load_catalog(path: Optional[str] = None) -> RewardsCatalog:
    """Load and validate the rewards catalog (cached per path)."""
    catalog_path = Path(path or get_settings().rewards_catalog_path or DEFAULT_CATALOG_PATH)
    with open(catalog_path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    catalog = parse_catalog(data)
    logger.info(
        f"Loaded rewards catalog: {len(catalog.actions)} actions, "
        f"{len(catalog.achievements)} achievements from {catalog_path}"
    )
    return catalog


# =============================================================================
# Notifier
# =============================================================================

class RewardNotifier:
    """
    Fire-and-forget rewards for lifecycle events.

    Usage:
        notifier = RewardNotifier(bus)
        notifier.notify(user_id, EventKind.CONFLICT_RESOLVED, {"conflict_id": cid})
    """

    def __init__(
        self,
        bus: Optional[NotificationBus] = None,
        session_factory=get_db_session,
        catalog: Optional[RewardsCatalog] = None
    ):
        self.bus = bus
        self._session_factory = session_factory
        self.catalog = catalog or load_catalog()
        self.settings = get_settings()

    def notify(self, user_id: str, kind: EventKind, context: Optional[Dict[str, Any]] = None) -> None:
        context = context or {}
        try:
            awarded, unlocked = self._record(user_id, kind, context)
        except Exception as e:
            logger.warning(f"Reward notification failed for user {user_id} ({kind.value}): {e}", exc_info=True)
            return

        self._publish(user_id, kind, context, awarded, unlocked)

    def _actions_for(self, db, user_id: str, kind: EventKind, context: Dict[str, Any]) -> List[str]:
        if kind == EventKind.CONFLICT_CREATED:
            keys = ["START_CONFLICT"]
            started = db.query(Conflict).filter(Conflict.user1_id == user_id).count()
            if started == 1:
                keys.append("FIRST_CONFLICT")
            return keys
        if kind == EventKind.CONFLICT_RESPONDED:
            return ["RESPOND_TO_CONFLICT"]
        if kind == EventKind.CORE_ISSUE_SUBMITTED:
            return ["CORE_ISSUE_REFLECTION"]
        if kind == EventKind.REHASH_TRIGGERED:
            return ["REHASH_CONFLICT"]
        if kind == EventKind.CONFLICT_RESOLVED:
            keys = ["RESOLVE_CONFLICT"]
            minutes = context.get("resolution_minutes")
            if minutes is not None and minutes <= self.settings.quick_resolution_minutes:
                keys.append("QUICK_RESOLUTION")
            return keys
        if kind == EventKind.FINAL_RULING_ISSUED:
            return ["ESCALATION"] if context.get("requested_by") == user_id else []
        if kind == EventKind.CONFLICT_ABANDONED:
            return ["CONFLICT_EXPIRED"]
        if kind == EventKind.PUBLIC_VOTE_CAST:
            return ["VOTE_ON_PUBLIC_CONFLICT"]
        return []

    def _record(self, user_id: str, kind: EventKind, context: Dict[str, Any]):
        conflict_id = context.get("conflict_id")
        awarded: List[SquashCredAction] = []
        unlocked: List[Achievement] = []

        # Audit trail and ledger commit on their own
        with self._session_factory() as db:
            db.add(ConflictEvent(
                conflict_id=conflict_id,
                user_id=user_id,
                kind=kind,
                context_json={k: v for k, v in context.items() if isinstance(v, (str, int, float, bool))},
            ))

            for key in self._actions_for(db, user_id, kind, context):
                action = self.catalog.action(key)
                db.add(SquashCredEvent(
                    user_id=user_id,
                    action=action.key,
                    amount=action.points,
                    reason=action.reason,
                    conflict_id=conflict_id,
                ))
                awarded.append(action)

        with self._session_factory() as db:
            rows = (
                db.query(Conflict)
                .filter((Conflict.user1_id == user_id) | (Conflict.user2_id == user_id))
                .all()
            )
            votes = db.query(ConflictVote).filter(ConflictVote.voter_id == user_id).count()
            snapshot = build_snapshot(
                user_id,
                [ConflictRecord.from_row(r) for r in rows],
                public_votes_cast=votes,
                quick_window=timedelta(minutes=self.settings.quick_resolution_minutes),
            )
            existing = self._unlocked_codes(db, user_id)

        for achievement in self.catalog.earned(snapshot):
            if achievement.code in existing:
                continue
            try:
                with self._session_factory() as db:
                    db.add(UserAchievement(user_id=user_id, code=achievement.code))
            except IntegrityError:
                logger.info(f"Achievement {achievement.code} for {user_id} was unlocked concurrently")
                continue
            unlocked.append(achievement)

        if awarded:
            logger.info(f"SquashCred for {user_id}: {', '.join(f'{a.key}({a.points:+d})' for a in awarded)}")
        if unlocked:
            logger.info(f"Achievements unlocked for {user_id}: {[a.code for a in unlocked]}")
        return awarded, unlocked

    @staticmethod
    def _unlocked_codes(db, user_id: str) -> set:
        return {
            code for (code,) in
            db.query(UserAchievement.code).filter(UserAchievement.user_id == user_id).all()
        }

    def _publish(self, user_id, kind, context, awarded, unlocked) -> None:
        if self.bus is None:
            return
        conflict_id = context.get("conflict_id")
        for action in awarded:
            self.bus.publish(Notification(
                kind="squashcred_awarded",
                user_id=user_id,
                payload={
                    "action": action.key,
                    "points": action.points,
                    "reason": action.reason,
                    "event": kind.value,
                    "conflict_id": conflict_id,
                },
            ))
        for achievement in unlocked:
            self.bus.publish(Notification(
                kind="achievement_unlocked",
                user_id=user_id,
                payload={
                    "code": achievement.code,
                    "name": achievement.name,
                    "emoji": achievement.emoji,
                    "description": achievement.description,
                },
            ))
