"""
Database Package - SQLAlchemy
=============================

Persistence layer for conflicts, rewards and the public ruling feed.
"""

from .models import (
    Base,
    Conflict, ConflictEvent, SquashCredEvent, UserAchievement, ConflictVote,
    EventKind,
)
from .session import get_db_session, init_db, get_engine, reset_engine

__all__ = [
    # Base
    "Base",
    # Models
    "Conflict", "ConflictEvent", "SquashCredEvent", "UserAchievement", "ConflictVote",
    # Enums
    "EventKind",
    # Session
    "get_db_session", "init_db", "get_engine", "reset_engine",
]
