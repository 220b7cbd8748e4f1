from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    SUSPENDED = "suspended"


class PresenceStatus(str, Enum):
    OFFLINE = "offline"
    ONLINE = "online"
    BUSY = "busy"


class SessionStatus(str, Enum):
    PENDING_ACCEPTANCE = "pending_acceptance"
    ACTIVE = "active"
    DECLINED = "declined"
    ENDED = "ended"


NON_TERMINAL_STATUSES = frozenset({SessionStatus.PENDING_ACCEPTANCE, SessionStatus.ACTIVE})


class EndedBy(str, Enum):
    USER = "user"
    PROFESSIONAL = "professional"
    SYSTEM = "system"
    ADMIN = "admin"


class TriggerType(str, Enum):
    TIMEOUT = "timeout"
    USER_REQUEST = "user_request"
    AI_DETECTION = "ai_detection"
    MANUAL = "manual"


class EscalationStrategy(str, Enum):
    SEQUENTIAL = "sequential"
    ROUND_ROBIN = "round_robin"
    BROADCAST = "broadcast"


class TimeoutReference(str, Enum):
    JOINED = "joined"
    LAST_REPLY = "last_reply"


class EscalationResult(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    PROFESSIONAL = "professional"
    SYSTEM = "system"


class ProfessionalProfile(BaseModel):
    id: str = Field(default_factory=new_id)
    user_id: Optional[str] = None
    full_name: str = ""
    role_id: str
    approval_status: ApprovalStatus = ApprovalStatus.PENDING
    is_active: bool = True
    online_availability: bool = True
    max_concurrent_sessions: int = Field(default=3, ge=1)
    rating_average: float = Field(default=0.0, ge=0.0, le=5.0)
    review_count: int = Field(default=0, ge=0)
    location: Optional[str] = None
    quiet_hours_start: Optional[str] = None
    quiet_hours_end: Optional[str] = None
    quiet_hours_timezone: str = "UTC"


class ProfessionalStatus(BaseModel):
    professional_id: str
    status: PresenceStatus = PresenceStatus.OFFLINE
    current_session_count: int = Field(default=0, ge=0)
    last_seen_at: datetime = Field(default_factory=utcnow)
    # Set by an admin to stop quiet-hours enforcement from touching this status.
    status_override: bool = False


class RoleMatchingHints(BaseModel):
    keywords: List[str] = Field(default_factory=list)
    categories: List[str] = Field(default_factory=list)


class ProfessionalRole(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str = "Professional"
    category: str = "general"
    eligible_for_live_chat: bool = True
    matching_hints: RoleMatchingHints = Field(default_factory=RoleMatchingHints)
    is_active: bool = True


class FallbackRules(BaseModel):
    local_to_online: bool = False
    min_rating: Optional[float] = Field(default=None, ge=0.0, le=5.0)


class EscalationRule(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str = ""
    role_id: Optional[str] = None
    trigger_type: TriggerType
    timeout_seconds: Optional[int] = Field(default=None, ge=0)
    max_escalation_attempts: int = Field(default=3, ge=0)
    escalation_strategy: EscalationStrategy = EscalationStrategy.SEQUENTIAL
    fallback_rules: FallbackRules = Field(default_factory=FallbackRules)
    require_user_confirmation: bool = True
    priority: int = 0
    is_active: bool = True
    timeout_reference: TimeoutReference = TimeoutReference.JOINED


class ProfessionalSession(BaseModel):
    id: str = Field(default_factory=new_id)
    conversation_id: str
    user_id: str
    professional_id: str
    role_id: str
    status: SessionStatus = SessionStatus.PENDING_ACCEPTANCE
    ai_summary: Optional[str] = None
    user_consent_given: bool = False
    consent_given_at: Optional[datetime] = None
    professional_joined_at: Optional[datetime] = None
    professional_ended_at: Optional[datetime] = None
    escalation_level: int = Field(default=0, ge=0)
    escalation_reason: Optional[str] = None
    ai_observer_mode: bool = False
    ended_by: Optional[EndedBy] = None
    ended_reason: Optional[str] = None
    user_location: Optional[str] = None
    previous_session_id: Optional[str] = None
    assigned_at: datetime = Field(default_factory=utcnow)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status not in NON_TERMINAL_STATUSES


class EscalationEvent(BaseModel):
    id: str = Field(default_factory=new_id)
    session_id: str
    rule_id: Optional[str] = None
    from_professional_id: Optional[str] = None
    to_professional_id: str
    escalation_level: int = Field(ge=0)
    reason: str = ""
    user_notified: bool = False
    user_confirmed: Optional[bool] = None
    result: EscalationResult = EscalationResult.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class ConversationMessage(BaseModel):
    id: str = Field(default_factory=new_id)
    conversation_id: str
    role: MessageRole
    sender_id: Optional[str] = None
    content: str
    created_at: datetime = Field(default_factory=utcnow)


class MatchingCriteria(BaseModel):
    role_id: Optional[str] = None
    location: Optional[str] = None
    min_rating: Optional[float] = None
    requires_online_only: bool = False
    exclude_professional_id: Optional[str] = None
    exclude_professional_ids: List[str] = Field(default_factory=list)
    escalation_level: int = 0

    def excluded_ids(self) -> set[str]:
        excluded = set(self.exclude_professional_ids)
        if self.exclude_professional_id:
            excluded.add(self.exclude_professional_id)
        return excluded


class ProfessionalMatch(BaseModel):
    profile: ProfessionalProfile
    role: ProfessionalRole
    status: ProfessionalStatus
    match_score: float
    match_reasons: List[str] = Field(default_factory=list)


class AvailabilityCheck(BaseModel):
    can_accept: bool
    reason: Optional[str] = None


class EscalationDecision(BaseModel):
    should_escalate: bool = False
    rule: Optional[EscalationRule] = None
    reason: Optional[str] = None


class EscalationOutcome(BaseModel):
    success: bool
    session_id: str
    error: Optional[str] = None
    event_id: Optional[str] = None
    to_professional_id: Optional[str] = None
    awaiting_confirmation: bool = False
    used_fallback: bool = False


class RematchOutcome(BaseModel):
    previous_session_id: str
    new_session: Optional[ProfessionalSession] = None
    notified_no_professional: bool = False
    reason: str = ""


class NonAgreementResult(BaseModel):
    should_escalate: bool = False
    suggestion: Optional[str] = None
    matched_patterns: List[str] = Field(default_factory=list)


class SweepReport(BaseModel):
    sweep: str
    sessions_checked: int = 0
    sessions_escalated: int = 0
    sessions_ended: int = 0
    sessions_reassigned: int = 0
    sessions_notified: int = 0
    professionals_updated: int = 0
    errors: List[Dict[str, Any]] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=utcnow)


class AgentDecisionLog(BaseModel):
    timestamp: datetime = Field(default_factory=utcnow)
    session_id: str
    agent: str
    action: str
    reasoning: str
    details: Dict[str, Any] = Field(default_factory=dict)
    outcome: str = "ok"
