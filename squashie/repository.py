"""
Conflict Repository
===================

Persistence for conflict records with optimistic concurrency.

Every write is one conditional UPDATE guarded by the version the caller read;
it bumps the version and returns the updated record, so callers never need a
read-after-write.
"""

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import func, or_, update
from sqlalchemy.exc import SQLAlchemyError

from .db.models import Conflict
from .db.session import get_db_session
from .errors import ConflictNotFound, PersistenceConflict, PersistenceFailure
from .models import ConflictRecord, ConflictStatus

logger = logging.getLogger(__name__)

# Fields the engine may never write directly
_PROTECTED_FIELDS = {"id", "version", "created_at", "updated_at"}
_WRITABLE_FIELDS = set(ConflictRecord.field_names()) - _PROTECTED_FIELDS


class ConflictRepository:
    """
    Read/write conflict records.

    Usage:
        repo = ConflictRepository()
        record = repo.get(conflict_id)
        record = repo.update(conflict_id, {"status": ConflictStatus.ACTIVE}, record.version)
    """

    def __init__(self, session_factory=get_db_session):
        self._session_factory = session_factory

    @contextmanager
    def _session(self):
        try:
            with self._session_factory() as db:
                yield db
        except SQLAlchemyError as e:
            logger.error(f"Conflict storage failure: {e}", exc_info=True)
            raise PersistenceFailure(f"Storage unavailable: {e.__class__.__name__}") from e

    @staticmethod
    def _check_fields(fields: Dict[str, Any]) -> None:
        unknown = set(fields) - _WRITABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot write conflict fields: {sorted(unknown)}")

    def create(self, fields: Dict[str, Any]) -> ConflictRecord:
        self._check_fields(fields)
        now = datetime.utcnow()
        with self._session() as db:
            row = Conflict(created_at=now, updated_at=now, version=1, **fields)
            db.add(row)
            db.flush()
            return ConflictRecord.from_row(row)

    def get(self, conflict_id: str) -> ConflictRecord:
        with self._session() as db:
            row = db.get(Conflict, conflict_id)
            if row is None:
                raise ConflictNotFound(conflict_id)
            return ConflictRecord.from_row(row)

    def update(
        self,
        conflict_id: str,
        fields: Dict[str, Any],
        expected_version: int,
        expected_statuses: Optional[Iterable[ConflictStatus]] = None
    ) -> ConflictRecord:
        """
        Apply fields atomically if the stored version still matches.

        Raises:
            PersistenceConflict: record changed since it was read
            ConflictNotFound: no such record
            PersistenceFailure: storage error, nothing applied
        """
        self._check_fields(fields)
        values = dict(fields)
        values["version"] = Conflict.version + 1
        values["updated_at"] = datetime.utcnow()

        with self._session() as db:
            stmt = (
                update(Conflict)
                .where(Conflict.id == conflict_id, Conflict.version == expected_version)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if expected_statuses is not None:
                stmt = stmt.where(Conflict.status.in_(list(expected_statuses)))

            result = db.execute(stmt)
            if result.rowcount == 0:
                exists = db.query(Conflict.id).filter(Conflict.id == conflict_id).first()
                if exists is None:
                    raise ConflictNotFound(conflict_id)
                logger.info(f"Concurrent update detected on conflict {conflict_id} (expected v{expected_version})")
                raise PersistenceConflict(
                    f"Conflict {conflict_id} changed while the action was applied",
                    rule="version_mismatch",
                )

            row = db.get(Conflict, conflict_id, populate_existing=True)
            return ConflictRecord.from_row(row)

    def list_for_user(self, user_id: str, user_email: Optional[str] = None) -> List[ConflictRecord]:
        """Conflicts the user started, joined, or was invited to (newest first)."""
        conditions = [Conflict.user1_id == user_id, Conflict.user2_id == user_id]
        if user_email:
            conditions.append(func.lower(Conflict.user2_email) == user_email.strip().lower())

        with self._session() as db:
            rows = (
                db.query(Conflict)
                .filter(or_(*conditions))
                .order_by(Conflict.created_at.desc())
                .all()
            )
            return [ConflictRecord.from_row(r) for r in rows]

    def list_stale(self, statuses: Iterable[ConflictStatus], older_than: datetime) -> List[ConflictRecord]:
        """Unruled conflicts in the given statuses not touched since `older_than`."""
        with self._session() as db:
            rows = (
                db.query(Conflict)
                .filter(
                    Conflict.status.in_(list(statuses)),
                    Conflict.updated_at < older_than,
                    Conflict.final_ai_ruling.is_(None),
                )
                .order_by(Conflict.updated_at.asc())
                .all()
            )
            return [ConflictRecord.from_row(r) for r in rows]

    def global_stats(self) -> Dict[str, int]:
        with self._session() as db:
            total = db.query(func.count(Conflict.id)).scalar() or 0
            resolved = (
                db.query(func.count(Conflict.id))
                .filter(Conflict.status == ConflictStatus.RESOLVED)
                .scalar()
                or 0
            )
        rate = round(resolved / total * 100) if total > 0 else 0
        return {
            "total_conflicts": total,
            "resolved_conflicts": resolved,
            "resolution_rate": rate,
        }
