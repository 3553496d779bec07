"""
SQLAlchemy Models for Database
==============================

Schema for the conflict-mediation service:
- Conflicts (all lifecycle fields + optimistic concurrency version)
- Conflict events (audit trail of lifecycle actions)
- SquashCred ledger and unlocked achievements
- Crowd votes on public AI rulings

Supports both PostgreSQL and SQLite via SQLAlchemy.
"""

import enum
import uuid
from datetime import datetime
from sqlalchemy import (
    Column, String, Text, Integer, Boolean, DateTime, Enum, ForeignKey,
    UniqueConstraint, Index, JSON
)
from sqlalchemy.orm import relationship, declarative_base

from ..models import ConflictStatus
from ..schemas import VoteType

Base = declarative_base()


def generate_uuid():
    return str(uuid.uuid4())


# =============================================================================
# ENUMS
# =============================================================================

class EventKind(str, enum.Enum):
    """Lifecycle events fired into the rewards notifier"""
    CONFLICT_CREATED = "conflict_created"
    CONFLICT_RESPONDED = "conflict_responded"
    SATISFACTION_VOTED = "satisfaction_voted"
    REHASH_TRIGGERED = "rehash_triggered"
    CORE_ISSUE_SUBMITTED = "core_issue_submitted"
    CORE_REFLECTION_GENERATED = "core_reflection_generated"
    CONFLICT_RESOLVED = "conflict_resolved"
    FINAL_RULING_ISSUED = "final_ruling_issued"
    CONFLICT_ABANDONED = "conflict_abandoned"
    PUBLIC_VOTE_CAST = "public_vote_cast"


# =============================================================================
# CONFLICT MODELS
# =============================================================================

class Conflict(Base):
    """A conflict between an initiator and an invited party"""
    __tablename__ = "conflicts"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    title = Column(String(255), nullable=False, default="")
    status = Column(Enum(ConflictStatus), default=ConflictStatus.PENDING, nullable=False)

    # Parties
    user1_id = Column(String(64), nullable=False)
    user2_email = Column(String(255), nullable=False)
    user2_id = Column(String(64), nullable=True)
    user1_mood = Column(String(32), nullable=True)

    # Messages (raw text is private to its author)
    user1_raw_message = Column(Text, nullable=False)
    user1_translated_message = Column(Text, nullable=True)
    user2_raw_message = Column(Text, nullable=True)
    user2_translated_message = Column(Text, nullable=True)

    # Round 1
    ai_summary = Column(Text, nullable=True)
    ai_suggestion = Column(Text, nullable=True)

    # Round 2 (rehash)
    ai_rehash_summary = Column(Text, nullable=True)
    ai_rehash_suggestion = Column(Text, nullable=True)
    rehash_attempted_at = Column(DateTime, nullable=True)

    # Round 3 (core issues)
    user1_core_issue = Column(Text, nullable=True)
    user2_core_issue = Column(Text, nullable=True)
    ai_core_reflection = Column(Text, nullable=True)
    ai_core_suggestion = Column(Text, nullable=True)
    core_issues_attempted_at = Column(DateTime, nullable=True)

    # Final ruling
    final_ai_ruling = Column(Text, nullable=True)
    ai_final_summary = Column(Text, nullable=True)
    final_ruling_issued_at = Column(DateTime, nullable=True)
    final_ruling_requested_by = Column(String(64), nullable=True)

    # Votes for the current round
    user1_satisfaction = Column(Boolean, nullable=True)
    user2_satisfaction = Column(Boolean, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow)
    resolved_at = Column(DateTime, nullable=True)
    abandoned_at = Column(DateTime, nullable=True)

    version = Column(Integer, nullable=False, default=1)

    __table_args__ = (
        Index("ix_conflict_user1", "user1_id"),
        Index("ix_conflict_user2", "user2_id"),
        Index("ix_conflict_status_updated", "status", "updated_at"),
    )

    events = relationship("ConflictEvent", back_populates="conflict", cascade="all, delete-orphan")
    votes = relationship("ConflictVote", back_populates="conflict", cascade="all, delete-orphan")


class ConflictEvent(Base):
    """Audit trail entry for a lifecycle action"""
    __tablename__ = "conflict_events"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    conflict_id = Column(String(36), ForeignKey("conflicts.id", ondelete="CASCADE"), nullable=True)
    user_id = Column(String(64), nullable=False)
    kind = Column(Enum(EventKind), nullable=False)
    context_json = Column(JSON, default=dict)
    occurred_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_event_conflict", "conflict_id", "occurred_at"),
    )

    conflict = relationship("Conflict", back_populates="events")


# =============================================================================
# REWARDS MODELS
# =============================================================================

class SquashCredEvent(Base):
    """One SquashCred award or deduction"""
    __tablename__ = "squashcred_events"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(64), nullable=False)
    action = Column(String(64), nullable=False)
    amount = Column(Integer, nullable=False)
    reason = Column(String(255), nullable=False)
    conflict_id = Column(String(36), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_squashcred_user", "user_id", "created_at"),
    )


class UserAchievement(Base):
    """Achievement unlocked by a user"""
    __tablename__ = "user_achievements"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(64), nullable=False)
    code = Column(String(64), nullable=False)
    unlocked_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "code", name="uq_user_achievement"),
    )


# =============================================================================
# PUBLIC FEED MODELS
# =============================================================================

class ConflictVote(Base):
    """Crowd vote on a public AI ruling (one per voter per conflict)"""
    __tablename__ = "conflict_votes"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    conflict_id = Column(String(36), ForeignKey("conflicts.id", ondelete="CASCADE"), nullable=False)
    voter_id = Column(String(64), nullable=False)
    vote_type = Column(Enum(VoteType), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("conflict_id", "voter_id", name="uq_conflict_voter"),
    )

    conflict = relationship("Conflict", back_populates="votes")
