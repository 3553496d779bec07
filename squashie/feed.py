"""
Public AI-ruling feed.

Conflicts that ended in a final ruling are shown publicly (title + ruling,
never the parties' messages) and the crowd can vote on them, one vote per
person per conflict. Parties cannot vote on their own conflict.
"""

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .db.models import Conflict, ConflictVote, EventKind
from .db.session import get_db_session
from .errors import ConflictNotFound, PersistenceConflict, PersistenceFailure, ValidationError
from .models import ConflictStatus
from .repository import ConflictRepository
from .schemas import VoteType

logger = logging.getLogger(__name__)


class PublicFeed:
    def __init__(self, session_factory=get_db_session, notifier=None, repository: Optional[ConflictRepository] = None):
        self._session_factory = session_factory
        self.notifier = notifier
        self.repository = repository or ConflictRepository(session_factory)

    @contextmanager
    def _session(self):
        try:
            with self._session_factory() as db:
                yield db
        except IntegrityError as e:
            logger.info(f"Concurrent vote insert: {e.__class__.__name__}")
            raise PersistenceConflict("Vote was cast concurrently, try again", rule="duplicate_vote") from e
        except SQLAlchemyError as e:
            logger.error(f"Feed storage failure: {e}", exc_info=True)
            raise PersistenceFailure(f"Storage unavailable: {e.__class__.__name__}") from e

    def list_public_rulings(self, limit: int = 50) -> List[Dict]:
        """Ruled conflicts, newest ruling first, with their crowd vote totals."""
        with self._session() as db:
            totals = (
                db.query(ConflictVote.conflict_id, func.count(ConflictVote.id).label("total"))
                .group_by(ConflictVote.conflict_id)
                .subquery()
            )
            rows = (
                db.query(Conflict, func.coalesce(totals.c.total, 0))
                .outerjoin(totals, totals.c.conflict_id == Conflict.id)
                .filter(
                    Conflict.status == ConflictStatus.FINAL_JUDGMENT,
                    Conflict.final_ai_ruling.isnot(None),
                )
                .order_by(Conflict.final_ruling_issued_at.desc())
                .limit(limit)
                .all()
            )
            return [
                {
                    "conflict_id": c.id,
                    "title": c.title,
                    "ai_final_summary": c.ai_final_summary,
                    "final_ai_ruling": c.final_ai_ruling,
                    "final_ruling_issued_at": c.final_ruling_issued_at,
                    "total_votes": int(total or 0),
                }
                for c, total in rows
            ]

    def vote_counts(self, conflict_id: str) -> Dict[VoteType, int]:
        """Count per vote type; types nobody picked are reported as 0."""
        counts = {vote_type: 0 for vote_type in VoteType}
        with self._session() as db:
            rows = (
                db.query(ConflictVote.vote_type, func.count(ConflictVote.id))
                .filter(ConflictVote.conflict_id == conflict_id)
                .group_by(ConflictVote.vote_type)
                .all()
            )
        for vote_type, count in rows:
            counts[VoteType(vote_type)] = count
        return counts

    def user_vote(self, conflict_id: str, user_id: Optional[str]) -> Optional[VoteType]:
        if not user_id:
            return None
        with self._session() as db:
            vote = (
                db.query(ConflictVote)
                .filter(ConflictVote.conflict_id == conflict_id, ConflictVote.voter_id == user_id)
                .first()
            )
            return VoteType(vote.vote_type) if vote else None

    def vote_eligibility(self, conflict_id: str, user_id: Optional[str]) -> Tuple[bool, Optional[str]]:
        """(can_vote, reason) for showing the vote buttons."""
        record = self.repository.get(conflict_id)
        if record.status != ConflictStatus.FINAL_JUDGMENT:
            return False, "not_public"
        if not user_id:
            return False, "anonymous"
        if user_id in (record.user1_id, record.user2_id):
            return False, "own_conflict"
        return True, None

    def cast_vote(self, conflict_id: str, vote_type: VoteType, user_id: str) -> VoteType:
        """
        Record or change a crowd vote.

        Raises:
            ConflictNotFound: no such conflict
            ValidationError: conflict is not public, or the voter is a party to it
        """
        vote_type = VoteType(vote_type)
        is_new = False
        with self._session() as db:
            conflict = db.get(Conflict, conflict_id)
            if conflict is None:
                raise ConflictNotFound(conflict_id)
            if conflict.status != ConflictStatus.FINAL_JUDGMENT:
                raise ValidationError("Only conflicts with a final ruling accept votes", rule="not_public")
            if user_id in (conflict.user1_id, conflict.user2_id):
                raise ValidationError("You cannot vote on your own conflict", rule="own_conflict")

            vote = (
                db.query(ConflictVote)
                .filter(ConflictVote.conflict_id == conflict_id, ConflictVote.voter_id == user_id)
                .first()
            )
            if vote:
                vote.vote_type = vote_type
                vote.updated_at = datetime.utcnow()
            else:
                db.add(ConflictVote(conflict_id=conflict_id, voter_id=user_id, vote_type=vote_type))
                is_new = True
            db.flush()

        logger.info(f"Crowd vote on {conflict_id} by {user_id}: {vote_type.value} ({'new' if is_new else 'changed'})")
        if is_new and self.notifier is not None:
            self.notifier.notify(user_id, EventKind.PUBLIC_VOTE_CAST, {"conflict_id": conflict_id})
        return vote_type

    def global_stats(self) -> Dict[str, int]:
        return self.repository.global_stats()
