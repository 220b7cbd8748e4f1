from __future__ import annotations

from datetime import datetime
from typing import Any, Collection, Dict, List, Optional

from memory.json_store import REMOVED, JsonFileStore
from models.errors import ActiveSessionConflictError, InvalidStateError, NotFoundError
from models.schemas import (
    NON_TERMINAL_STATUSES,
    EscalationEvent,
    EscalationResult,
    EscalationRule,
    ProfessionalSession,
    SessionStatus,
    utcnow,
)
from settings import SETTINGS


class HandoffSessionStore(JsonFileStore):
    """Sessions, escalation rules, the escalation-event log and round-robin cursors.

    Status changes go through compare-and-set helpers so two callers racing on
    the same session cannot both win. Inserting a second pending/active session
    for a conversation is rejected here, not by callers.
    """

    def __init__(self, path: str | None = None) -> None:
        super().__init__(SETTINGS.session_store_path if path is None else path)
        self._sessions: Dict[str, ProfessionalSession] = {}
        self._events: Dict[str, EscalationEvent] = {}
        self._rules: Dict[str, EscalationRule] = {}
        self._assignments: Dict[str, Dict[str, str]] = {}
        self._load()

    def _load(self) -> None:
        payload = self._read_payload()
        for raw in payload.get("sessions", []):
            try:
                session = ProfessionalSession.model_validate(raw)
            except ValueError:
                continue
            self._sessions[session.id] = session
        for raw in payload.get("events", []):
            try:
                event = EscalationEvent.model_validate(raw)
            except ValueError:
                continue
            self._events[event.id] = event
        for raw in payload.get("rules", []):
            try:
                rule = EscalationRule.model_validate(raw)
            except ValueError:
                continue
            self._rules[rule.id] = rule
        for rule_id, history in dict(payload.get("assignments", {})).items():
            if isinstance(history, dict):
                self._assignments[str(rule_id)] = {str(k): str(v) for k, v in history.items()}

    def _persist(self) -> None:
        self._write_payload(
            {
                "sessions": [s.model_dump(mode="json") for s in self._sessions.values()],
                "events": [e.model_dump(mode="json") for e in self._events.values()],
                "rules": [r.model_dump(mode="json") for r in self._rules.values()],
                "assignments": self._assignments,
            }
        )

    def _require_session(self, session_id: str) -> ProfessionalSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise NotFoundError("session not found", session_id=session_id)
        return session

    # sessions

    async def insert_session(self, session: ProfessionalSession) -> ProfessionalSession:
        with self._lock:
            if session.status in NON_TERMINAL_STATUSES:
                for existing in self._sessions.values():
                    if existing.conversation_id == session.conversation_id and existing.status in NON_TERMINAL_STATUSES:
                        raise ActiveSessionConflictError(
                            "conversation already has an open professional session",
                            conversation_id=session.conversation_id,
                            session_id=existing.id,
                        )
            self._commit((self._sessions, session.id, session.model_copy()))
            return session.model_copy()

    async def get_session(self, session_id: str) -> Optional[ProfessionalSession]:
        with self._lock:
            session = self._sessions.get(session_id)
            return session.model_copy() if session else None

    async def list_sessions(
        self,
        statuses: Collection[SessionStatus] | None = None,
        conversation_id: str | None = None,
        professional_id: str | None = None,
    ) -> List[ProfessionalSession]:
        with self._lock:
            rows = [
                s.model_copy()
                for s in self._sessions.values()
                if (statuses is None or s.status in statuses)
                and (conversation_id is None or s.conversation_id == conversation_id)
                and (professional_id is None or s.professional_id == professional_id)
            ]
        return sorted(rows, key=lambda s: s.created_at)

    async def find_open_session(self, conversation_id: str) -> Optional[ProfessionalSession]:
        rows = await self.list_sessions(statuses=NON_TERMINAL_STATUSES, conversation_id=conversation_id)
        return rows[-1] if rows else None

    async def transition_session(
        self,
        session_id: str,
        expected_status: SessionStatus,
        updates: Dict[str, Any],
        expected_professional_id: str | None = None,
    ) -> Optional[ProfessionalSession]:
        """Apply ``updates`` only if the session is still in ``expected_status``
        (and, when given, still assigned to ``expected_professional_id``).

        Returns the updated session, or None when another caller got there first.
        """
        with self._lock:
            session = self._require_session(session_id)
            if session.status != expected_status:
                return None
            if expected_professional_id is not None and session.professional_id != expected_professional_id:
                return None
            updated = session.model_copy(update={"updated_at": utcnow(), **updates})
            self._commit((self._sessions, session_id, updated))
            return updated.model_copy()

    async def update_session(self, session_id: str, updates: Dict[str, Any]) -> ProfessionalSession:
        with self._lock:
            session = self._require_session(session_id)
            updated = session.model_copy(update={"updated_at": utcnow(), **updates})
            self._commit((self._sessions, session_id, updated))
            return updated.model_copy()

    # escalation events

    async def insert_event(self, event: EscalationEvent) -> EscalationEvent:
        with self._lock:
            self._require_session(event.session_id)
            self._commit((self._events, event.id, event.model_copy()))
            return event.model_copy()

    async def get_event(self, event_id: str) -> Optional[EscalationEvent]:
        with self._lock:
            event = self._events.get(event_id)
            return event.model_copy() if event else None

    async def list_events(self, session_id: str | None = None) -> List[EscalationEvent]:
        with self._lock:
            rows = [e.model_copy() for e in self._events.values() if session_id is None or e.session_id == session_id]
        return sorted(rows, key=lambda e: e.created_at)

    async def transition_event(
        self,
        event_id: str,
        expected_result: EscalationResult,
        updates: Dict[str, Any],
    ) -> Optional[EscalationEvent]:
        with self._lock:
            event = self._events.get(event_id)
            if event is None:
                raise NotFoundError("escalation event not found", event_id=event_id)
            if event.result != expected_result:
                return None
            updated = event.model_copy(update={"updated_at": utcnow(), **updates})
            self._commit((self._events, event_id, updated))
            return updated.model_copy()

    async def apply_escalation(
        self,
        event_id: str,
        at: datetime,
        session_updates: Dict[str, Any] | None = None,
    ) -> tuple[ProfessionalSession, ProfessionalSession]:
        """Accept a pending event and move its session to the event's professional.

        Both rows change in one locked step. Returns (before, after) snapshots of
        the session. Raises InvalidStateError if the event was already resolved,
        the session is terminal, or the session moved past the event's level.
        An active session gets a fresh joined time; a pending one stays unjoined.
        """
        with self._lock:
            event = self._events.get(event_id)
            if event is None:
                raise NotFoundError("escalation event not found", event_id=event_id)
            session = self._require_session(event.session_id)
            if event.result != EscalationResult.PENDING:
                raise InvalidStateError("escalation event already resolved", event_id=event_id, result=event.result.value)
            if session.status not in NON_TERMINAL_STATUSES:
                raise InvalidStateError("session is no longer open", session_id=session.id, status=session.status.value)
            if session.escalation_level + 1 != event.escalation_level:
                raise InvalidStateError(
                    "escalation event is stale",
                    event_id=event_id,
                    session_level=session.escalation_level,
                    event_level=event.escalation_level,
                )
            after = session.model_copy(
                update={
                    **(session_updates or {}),
                    "professional_id": event.to_professional_id,
                    "assigned_at": at,
                    "professional_joined_at": at if session.status == SessionStatus.ACTIVE else None,
                    "escalation_level": event.escalation_level,
                    "updated_at": at,
                }
            )
            accepted = event.model_copy(
                update={"result": EscalationResult.ACCEPTED, "user_confirmed": True, "user_notified": True, "updated_at": at}
            )
            self._commit((self._events, event_id, accepted), (self._sessions, session.id, after))
            return session.model_copy(), after.model_copy()

    # rules

    async def upsert_rule(self, rule: EscalationRule) -> EscalationRule:
        with self._lock:
            self._commit((self._rules, rule.id, rule.model_copy()))
            return rule.model_copy()

    async def get_rule(self, rule_id: str) -> Optional[EscalationRule]:
        with self._lock:
            rule = self._rules.get(rule_id)
            return rule.model_copy() if rule else None

    async def list_rules(self, role_id: str | None = None, active_only: bool = True) -> List[EscalationRule]:
        """Rules that apply to ``role_id`` (global rules always apply), by ascending priority."""
        with self._lock:
            rows = [
                r.model_copy()
                for r in self._rules.values()
                if (not active_only or r.is_active) and (r.role_id is None or role_id is None or r.role_id == role_id)
            ]
        return sorted(rows, key=lambda r: r.priority)

    async def delete_rule(self, rule_id: str) -> bool:
        with self._lock:
            if rule_id not in self._rules:
                return False
            self._commit((self._rules, rule_id, REMOVED))
            return True

    # round-robin cursors

    async def record_assignment(self, rule_id: str, professional_id: str, at: datetime) -> None:
        with self._lock:
            history = {**self._assignments.get(rule_id, {}), professional_id: at.isoformat()}
            self._commit((self._assignments, rule_id, history))

    async def assignment_history(self, rule_id: str) -> Dict[str, str]:
        with self._lock:
            return dict(self._assignments.get(rule_id, {}))
