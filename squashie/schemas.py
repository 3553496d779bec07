"""
Pydantic Schemas for Squashie Conflict Service
==============================================

Request/response models for the HTTP API.
Raw messages are private: a party never receives the other party's raw text.
"""

from typing import List, Optional, Dict, Any
from pydantic import BaseModel, Field
from enum import Enum
from datetime import datetime


# =============================================================================
# ENUMS
# =============================================================================

class LLMMode(str, Enum):
    """Which chat-completion backend mediation uses"""
    NONE = "none"
    OPENROUTER = "openrouter"
    OPENAI = "openai"


class MoodLevel(str, Enum):
    """Mood hint the initiator picks; the invitee is always 'responsive'"""
    RAGE = "rage"
    ANNOYED = "annoyed"
    MEH = "meh"
    CHILL = "chill"
    ZEN = "zen"
    RESPONSIVE = "responsive"


class VoteType(str, Enum):
    """Crowd votes on a public AI ruling"""
    BOTH_WRONG = "both_wrong"
    USER1_WRONG = "user1_wrong"
    USER2_WRONG = "user2_wrong"
    GET_THERAPY = "get_therapy"
    AI_RIGHT = "ai_right"
    RESET_CONFLICT = "reset_conflict"


# =============================================================================
# REQUESTS
# =============================================================================

class CreateConflictRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    other_user_email: str = Field(..., min_length=3, max_length=255)
    description: str = Field(..., min_length=1, max_length=5000)
    mood: MoodLevel = MoodLevel.MEH


class RespondRequest(BaseModel):
    text: str = Field(..., min_length=1, max_length=5000)


class CoreIssueRequest(BaseModel):
    text: str = Field(..., min_length=1, max_length=2000)


class SatisfactionRequest(BaseModel):
    satisfied: bool


class CastVoteRequest(BaseModel):
    vote_type: VoteType


# =============================================================================
# RESPONSES
# =============================================================================

class HealthResponse(BaseModel):
    status: str
    version: str
    llm_mode: LLMMode
    timestamp: datetime


class ErrorResponse(BaseModel):
    error: str
    rule: Optional[str] = None
    detail: str
    retryable: bool = False


class ConflictOutput(BaseModel):
    """Conflict as seen by one party (other party's raw message removed)"""
    id: str
    title: str
    status: str
    user1_id: str
    user2_email: str
    user2_id: Optional[str] = None
    user1_mood: Optional[str] = None

    user1_raw_message: Optional[str] = None
    user2_raw_message: Optional[str] = None
    user1_translated_message: Optional[str] = None
    user2_translated_message: Optional[str] = None

    ai_summary: Optional[str] = None
    ai_suggestion: Optional[str] = None
    ai_rehash_summary: Optional[str] = None
    ai_rehash_suggestion: Optional[str] = None
    rehash_attempted_at: Optional[datetime] = None

    user1_core_issue: Optional[str] = None
    user2_core_issue: Optional[str] = None
    ai_core_reflection: Optional[str] = None
    ai_core_suggestion: Optional[str] = None
    core_issues_attempted_at: Optional[datetime] = None

    final_ai_ruling: Optional[str] = None
    ai_final_summary: Optional[str] = None
    final_ruling_issued_at: Optional[datetime] = None

    user1_satisfaction: Optional[bool] = None
    user2_satisfaction: Optional[bool] = None

    created_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    abandoned_at: Optional[datetime] = None
    version: int


class ConflictView(BaseModel):
    """Conflict plus the phase and legal actions for the requesting party"""
    conflict: ConflictOutput
    phase: str
    round: str
    party: Optional[str] = None
    allowed_actions: List[str] = Field(default_factory=list)


class ConflictListResponse(BaseModel):
    conflicts: List[ConflictView]
    total: int


class PublicRulingOutput(BaseModel):
    conflict_id: str
    title: str
    ai_final_summary: Optional[str] = None
    final_ai_ruling: str
    final_ruling_issued_at: Optional[datetime] = None
    total_votes: int = 0


class VoteCountOutput(BaseModel):
    vote_type: VoteType
    vote_count: int


class VoteSummaryResponse(BaseModel):
    conflict_id: str
    counts: List[VoteCountOutput]
    user_vote: Optional[VoteType] = None
    can_vote: bool = False
    reason: Optional[str] = None


class GlobalStatsResponse(BaseModel):
    total_conflicts: int
    resolved_conflicts: int
    resolution_rate: int


class NotificationOutput(BaseModel):
    kind: str
    user_id: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class NotificationListResponse(BaseModel):
    notifications: List[NotificationOutput]
