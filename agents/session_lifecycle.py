from __future__ import annotations

import logging
from typing import List, Optional

from agents.base import BaseAgent, Clock
from agents.escalation_policy import EscalationPolicyEngine
from agents.llm_runtime import LLMRuntime
from agents.match_scorer import MatchScorer
from compliance.audit_logger import AuditLogger
from memory.conversation_log import ConversationLog
from memory.professional_directory import ProfessionalDirectory
from memory.session_store import HandoffSessionStore
from models.errors import (
    ActiveSessionConflictError,
    InvalidStateError,
    NoCandidatesError,
    NotFoundError,
    PersistenceError,
    UnauthorizedError,
)
from models.schemas import (
    EndedBy,
    ProfessionalSession,
    RematchOutcome,
    SessionStatus,
)
from tools.notification_tools import NotificationTools

logger = logging.getLogger(__name__)

NO_PROFESSIONAL_MESSAGE = (
    "No professional is available right now. We'll keep helping you here, and you can ask again at any time."
)


class SessionLifecycleManager(BaseAgent):
    """Creates professional sessions and drives them through accept, decline and end."""

    def __init__(
        self,
        store: HandoffSessionStore,
        directory: ProfessionalDirectory,
        scorer: MatchScorer,
        policy: EscalationPolicyEngine,
        notifications: NotificationTools,
        conversations: ConversationLog,
        llm: LLMRuntime | None = None,
        audit_logger: AuditLogger | None = None,
        clock: Clock | None = None,
    ) -> None:
        super().__init__(name="session_lifecycle", audit_logger=audit_logger, clock=clock)
        self.store = store
        self.directory = directory
        self.scorer = scorer
        self.policy = policy
        self.notifications = notifications
        self.conversations = conversations
        self.llm = llm or LLMRuntime()

    async def create_session(
        self,
        conversation_id: str,
        user_id: str,
        professional_id: str,
        role_id: str,
        consent: bool,
        summary: str | None = None,
        user_location: str | None = None,
        escalation_level: int = 0,
        previous_session_id: str | None = None,
    ) -> ProfessionalSession:
        if await self.directory.get_profile(professional_id) is None:
            raise NotFoundError("professional not found", professional_id=professional_id)
        now = self.now()
        session = await self.store.insert_session(
            ProfessionalSession(
                conversation_id=conversation_id,
                user_id=user_id,
                professional_id=professional_id,
                role_id=role_id,
                status=SessionStatus.PENDING_ACCEPTANCE,
                ai_summary=summary,
                user_consent_given=consent,
                consent_given_at=now if consent else None,
                escalation_level=escalation_level,
                user_location=user_location,
                previous_session_id=previous_session_id,
                assigned_at=now,
                created_at=now,
                updated_at=now,
            )
        )
        logger.info(
            "session_created",
            extra={"session_id": session.id, "conversation_id": conversation_id, "professional_id": professional_id},
        )
        return session

    async def request_help(
        self,
        conversation_id: str,
        user_id: str,
        role_id: str,
        consent: bool,
        summary: str | None = None,
        user_location: str | None = None,
    ) -> Optional[ProfessionalSession]:
        """Match the best online professional for ``role_id`` and open a pending session.

        Returns None, after telling the user, when nobody is available.
        """
        existing = await self.store.find_open_session(conversation_id)
        if existing is not None:
            raise ActiveSessionConflictError(
                "conversation already has an open professional session",
                conversation_id=conversation_id,
                session_id=existing.id,
            )
        try:
            match = await self.scorer.best_match_for_role(role_id, location=user_location)
        except NoCandidatesError:
            await self.notifications.notify_user(user_id, conversation_id, "no_professional_available", NO_PROFESSIONAL_MESSAGE)
            logger.info("request_help_no_candidates", extra={"conversation_id": conversation_id, "role_id": role_id})
            return None
        if summary is None:
            summary = await self.llm.summarize_conversation(await self.conversations.recent(conversation_id))
        session = await self.create_session(
            conversation_id,
            user_id,
            match.profile.id,
            role_id,
            consent,
            summary=summary or None,
            user_location=user_location,
        )
        await self.notifications.notify_user(
            user_id,
            conversation_id,
            "professional_requested",
            f"We've asked {match.profile.full_name or 'a professional'} ({match.role.name}) to join this conversation.",
            {"session_id": session.id},
        )
        self.build_decision_log(
            session.id,
            "request_help",
            "; ".join(match.match_reasons) or "best available match",
            {"professional_id": match.profile.id, "match_score": match.match_score},
        )
        return session

    async def _require_assigned(self, session_id: str, professional_id: str) -> ProfessionalSession:
        session = await self.store.get_session(session_id)
        if session is None:
            raise NotFoundError("session not found", session_id=session_id)
        if session.professional_id != professional_id:
            raise UnauthorizedError("professional is not assigned to this session", session_id=session_id)
        if session.status != SessionStatus.PENDING_ACCEPTANCE:
            raise InvalidStateError("session already processed", session_id=session_id, status=session.status.value)
        return session

    async def accept_session(self, session_id: str, professional_id: str) -> ProfessionalSession:
        await self._require_assigned(session_id, professional_id)
        now = self.now()
        updated = await self.store.transition_session(
            session_id,
            SessionStatus.PENDING_ACCEPTANCE,
            {"status": SessionStatus.ACTIVE, "professional_joined_at": now, "ai_observer_mode": True, "updated_at": now},
            expected_professional_id=professional_id,
        )
        if updated is None:
            raise InvalidStateError("session already processed", session_id=session_id)
        try:
            await self.directory.increment_session_count(professional_id)
        except PersistenceError:
            # Undo the join so the session and the counter stay in step.
            await self.store.transition_session(
                session_id,
                SessionStatus.ACTIVE,
                {"status": SessionStatus.PENDING_ACCEPTANCE, "professional_joined_at": None, "ai_observer_mode": False},
                expected_professional_id=professional_id,
            )
            raise

        profile = await self.directory.get_profile(professional_id)
        role = await self.directory.get_role(updated.role_id)
        name = profile.full_name if profile and profile.full_name else "Your professional"
        role_name = role.name if role else "professional"
        await self.notifications.notify_user(
            updated.user_id,
            updated.conversation_id,
            "professional_joined",
            f"{name} ({role_name}) has joined the conversation.",
            {"session_id": session_id, "professional_id": professional_id},
        )
        logger.info("session_accepted", extra={"session_id": session_id, "professional_id": professional_id})
        return updated

    async def decline_session(self, session_id: str, professional_id: str) -> RematchOutcome:
        await self._require_assigned(session_id, professional_id)
        declined = await self.store.transition_session(
            session_id,
            SessionStatus.PENDING_ACCEPTANCE,
            {"status": SessionStatus.DECLINED, "updated_at": self.now()},
            expected_professional_id=professional_id,
        )
        if declined is None:
            raise InvalidStateError("session already processed", session_id=session_id)
        logger.info("session_declined", extra={"session_id": session_id, "professional_id": professional_id})
        return await self.rematch(declined, reason="Professional declined")

    async def end_session(
        self,
        session_id: str,
        ended_by: EndedBy,
        reason: str | None = None,
        actor_id: str | None = None,
    ) -> ProfessionalSession:
        session = await self.store.get_session(session_id)
        if session is None:
            raise NotFoundError("session not found", session_id=session_id)
        if actor_id is not None:
            if ended_by == EndedBy.USER and actor_id != session.user_id:
                raise UnauthorizedError("only the session's user can end it as user", session_id=session_id)
            if ended_by == EndedBy.PROFESSIONAL and actor_id != session.professional_id:
                raise UnauthorizedError("only the assigned professional can end it", session_id=session_id)
        if session.status != SessionStatus.ACTIVE:
            raise InvalidStateError("only active sessions can be ended", session_id=session_id, status=session.status.value)

        now = self.now()
        ended = await self.store.transition_session(
            session_id,
            SessionStatus.ACTIVE,
            {
                "status": SessionStatus.ENDED,
                "professional_ended_at": now,
                "ended_by": ended_by,
                "ended_reason": reason,
                "updated_at": now,
            },
            expected_professional_id=session.professional_id,
        )
        if ended is None:
            raise InvalidStateError("session already ended", session_id=session_id)
        try:
            await self.directory.decrement_session_count(ended.professional_id)
        except PersistenceError:
            await self.store.transition_session(
                session_id,
                SessionStatus.ENDED,
                {"status": SessionStatus.ACTIVE, "professional_ended_at": None, "ended_by": None, "ended_reason": None},
                expected_professional_id=ended.professional_id,
            )
            raise
        logger.info("session_ended", extra={"session_id": session_id, "ended_by": ended_by.value, "reason": reason})
        return ended

    async def rematch(self, session: ProfessionalSession, reason: str) -> RematchOutcome:
        """Open a follow-up pending session with a professional not yet tried for this request."""
        cap = await self.policy.max_escalation_attempts(session.role_id)
        next_level = session.escalation_level + 1
        if next_level > cap:
            return await self._no_professional(session, reason, "max_escalation_attempts_reached")

        excluded = await self.policy.escalation_chain(session)
        try:
            match = await self.scorer.best_match_for_role(
                session.role_id, location=session.user_location, exclude_professional_ids=sorted(excluded)
            )
        except NoCandidatesError:
            return await self._no_professional(session, reason, "no_candidates")

        new_session = await self.create_session(
            session.conversation_id,
            session.user_id,
            match.profile.id,
            session.role_id,
            session.user_consent_given,
            summary=session.ai_summary,
            user_location=session.user_location,
            escalation_level=next_level,
            previous_session_id=session.id,
        )
        await self.notifications.notify_user(
            session.user_id,
            session.conversation_id,
            "professional_rematched",
            "We're requesting a new professional for you.",
            {"session_id": new_session.id, "previous_session_id": session.id},
        )
        self.build_decision_log(
            session.id,
            "rematch",
            reason,
            {"new_session_id": new_session.id, "professional_id": match.profile.id, "escalation_level": next_level},
        )
        return RematchOutcome(previous_session_id=session.id, new_session=new_session, reason=reason)

    async def _no_professional(self, session: ProfessionalSession, reason: str, outcome: str) -> RematchOutcome:
        await self.notifications.notify_user(
            session.user_id,
            session.conversation_id,
            "no_professional_available",
            NO_PROFESSIONAL_MESSAGE,
            {"previous_session_id": session.id},
        )
        self.build_decision_log(session.id, "rematch", reason, {"escalation_level": session.escalation_level}, outcome=outcome)
        return RematchOutcome(previous_session_id=session.id, notified_no_professional=True, reason=reason)

    async def get_session(self, session_id: str) -> Optional[ProfessionalSession]:
        return await self.store.get_session(session_id)

    async def get_active_session(self, conversation_id: str) -> Optional[ProfessionalSession]:
        return await self.store.find_open_session(conversation_id)

    async def get_pending_session_requests(self, professional_id: str) -> List[ProfessionalSession]:
        rows = await self.store.list_sessions(
            statuses=[SessionStatus.PENDING_ACCEPTANCE], professional_id=professional_id
        )
        return list(reversed(rows))
