from __future__ import annotations

from typing import Any, Dict


class HandoffError(Exception):
    code = "handoff_error"

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "detail": self.message, **self.context}


class NotFoundError(HandoffError):
    code = "not_found"


class UnauthorizedError(HandoffError):
    code = "unauthorized"


class InvalidStateError(HandoffError):
    code = "invalid_state"


class ActiveSessionConflictError(InvalidStateError):
    """Raised when a conversation already has a pending or active session."""

    code = "active_session_exists"


class NoCandidatesError(HandoffError):
    code = "no_candidates"


class PersistenceError(HandoffError):
    code = "persistence_failure"
