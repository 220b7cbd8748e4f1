from .errors import (
    ActiveSessionConflictError,
    HandoffError,
    InvalidStateError,
    NoCandidatesError,
    NotFoundError,
    PersistenceError,
    UnauthorizedError,
)
from .schemas import (
    ConversationMessage,
    EndedBy,
    EscalationDecision,
    EscalationEvent,
    EscalationOutcome,
    EscalationRule,
    MatchingCriteria,
    ProfessionalMatch,
    ProfessionalProfile,
    ProfessionalRole,
    ProfessionalSession,
    ProfessionalStatus,
    SessionStatus,
    TriggerType,
)

__all__ = [
    "ActiveSessionConflictError",
    "ConversationMessage",
    "EndedBy",
    "EscalationDecision",
    "EscalationEvent",
    "EscalationOutcome",
    "EscalationRule",
    "HandoffError",
    "InvalidStateError",
    "MatchingCriteria",
    "NoCandidatesError",
    "NotFoundError",
    "PersistenceError",
    "ProfessionalMatch",
    "ProfessionalProfile",
    "ProfessionalRole",
    "ProfessionalSession",
    "ProfessionalStatus",
    "SessionStatus",
    "TriggerType",
    "UnauthorizedError",
]
