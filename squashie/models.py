"""
Conflict Record
===============

Immutable snapshot of a conflict row. The lifecycle engine only ever works on
these snapshots; the SQLAlchemy row stays inside the repository session.
"""

import enum
from dataclasses import dataclass, fields
from datetime import datetime
from typing import Optional, Dict, Any


class ConflictStatus(str, enum.Enum):
    """Conflict lifecycle status"""
    PENDING = "pending"
    ACTIVE = "active"
    RESOLVED = "resolved"
    ABANDONED = "abandoned"
    FINAL_JUDGMENT = "final_judgment"


TERMINAL_STATUSES = frozenset({
    ConflictStatus.RESOLVED,
    ConflictStatus.ABANDONED,
    ConflictStatus.FINAL_JUDGMENT,
})


@dataclass(frozen=True)
class ConflictRecord:
    """One conflict as read from storage"""
    id: str
    user1_id: str
    user2_email: str
    user1_raw_message: str
    status: ConflictStatus = ConflictStatus.PENDING
    title: str = ""
    user1_mood: Optional[str] = None
    user2_id: Optional[str] = None

    # Party messages
    user1_translated_message: Optional[str] = None
    user2_raw_message: Optional[str] = None
    user2_translated_message: Optional[str] = None

    # Round 1
    ai_summary: Optional[str] = None
    ai_suggestion: Optional[str] = None

    # Round 2 (rehash)
    ai_rehash_summary: Optional[str] = None
    ai_rehash_suggestion: Optional[str] = None
    rehash_attempted_at: Optional[datetime] = None

    # Round 3 (core issues)
    user1_core_issue: Optional[str] = None
    user2_core_issue: Optional[str] = None
    ai_core_reflection: Optional[str] = None
    ai_core_suggestion: Optional[str] = None
    core_issues_attempted_at: Optional[datetime] = None

    # Terminal ruling
    final_ai_ruling: Optional[str] = None
    ai_final_summary: Optional[str] = None
    final_ruling_issued_at: Optional[datetime] = None
    final_ruling_requested_by: Optional[str] = None

    # Votes for the current round (None = not voted yet)
    user1_satisfaction: Optional[bool] = None
    user2_satisfaction: Optional[bool] = None

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    abandoned_at: Optional[datetime] = None

    # Optimistic concurrency token, bumped on every write
    version: int = 1

    @classmethod
    def field_names(cls):
        return [f.name for f in fields(cls)]

    @classmethod
    def from_row(cls, row: Any) -> "ConflictRecord":
        """Build a snapshot from an ORM row (or any object with matching attributes)"""
        values = {name: getattr(row, name) for name in cls.field_names()}
        if values["status"] is not None and not isinstance(values["status"], ConflictStatus):
            values["status"] = ConflictStatus(values["status"])
        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        data = {name: getattr(self, name) for name in self.field_names()}
        data["status"] = self.status.value
        return data
