from __future__ import annotations

from typing import List, Optional

from agents.base import BaseAgent, Clock
from agents.escalation_policy import EscalationPolicyEngine
from agents.llm_runtime import LLMRuntime
from agents.match_scorer import MatchScorer
from agents.non_agreement_agent import NonAgreementAgent
from agents.session_lifecycle import SessionLifecycleManager
from compliance.audit_logger import AuditLogger
from memory.conversation_log import ConversationLog
from memory.professional_directory import ProfessionalDirectory
from memory.session_store import HandoffSessionStore
from models.schemas import (
    AvailabilityCheck,
    ConversationMessage,
    EndedBy,
    EscalationDecision,
    EscalationOutcome,
    EscalationRule,
    MatchingCriteria,
    MessageRole,
    NonAgreementResult,
    PresenceStatus,
    ProfessionalMatch,
    ProfessionalProfile,
    ProfessionalRole,
    ProfessionalSession,
    ProfessionalStatus,
    RematchOutcome,
    SweepReport,
    TriggerType,
)
from tasks.session_monitor import InactivityMonitor, QuietHoursMonitor, TimeoutMonitor
from tools.notification_tools import NotificationTools


class HandoffOrchestrator(BaseAgent):
    """Single entry point for the hosting application: wires stores, agents and monitors."""

    def __init__(
        self,
        directory: ProfessionalDirectory | None = None,
        store: HandoffSessionStore | None = None,
        conversations: ConversationLog | None = None,
        notifications: NotificationTools | None = None,
        llm: LLMRuntime | None = None,
        audit_logger: AuditLogger | None = None,
        clock: Clock | None = None,
    ) -> None:
        super().__init__(name="handoff_orchestrator", audit_logger=audit_logger, clock=clock)
        self.directory = directory or ProfessionalDirectory()
        self.store = store or HandoffSessionStore()
        self.conversations = conversations or ConversationLog()
        self.notifications = notifications or NotificationTools()
        self.llm = llm or LLMRuntime()

        self.scorer = MatchScorer(self.directory, clock=self.clock)
        self.policy = EscalationPolicyEngine(
            self.store,
            self.directory,
            self.scorer,
            self.conversations,
            self.notifications,
            audit_logger=self.audit_logger,
            clock=self.clock,
        )
        self.lifecycle = SessionLifecycleManager(
            self.store,
            self.directory,
            self.scorer,
            self.policy,
            self.notifications,
            self.conversations,
            llm=self.llm,
            audit_logger=self.audit_logger,
            clock=self.clock,
        )
        self.non_agreement = NonAgreementAgent(self.store, llm=self.llm, audit_logger=self.audit_logger)
        self.timeout_monitor = TimeoutMonitor(self.store, self.policy, self.notifications, clock=self.clock)
        self.inactivity_monitor = InactivityMonitor(
            self.store, self.lifecycle, self.conversations, self.notifications, clock=self.clock
        )
        self.quiet_hours_monitor = QuietHoursMonitor(self.directory, clock=self.clock)

    # sessions

    async def create_session(
        self,
        conversation_id: str,
        user_id: str,
        professional_id: str,
        role_id: str,
        consent: bool,
        summary: str | None = None,
        user_location: str | None = None,
    ) -> ProfessionalSession:
        return await self.lifecycle.create_session(
            conversation_id, user_id, professional_id, role_id, consent, summary=summary, user_location=user_location
        )

    async def request_help(
        self,
        conversation_id: str,
        user_id: str,
        role_id: str,
        consent: bool,
        summary: str | None = None,
        user_location: str | None = None,
    ) -> Optional[ProfessionalSession]:
        return await self.lifecycle.request_help(
            conversation_id, user_id, role_id, consent, summary=summary, user_location=user_location
        )

    async def accept_session(self, session_id: str, professional_id: str) -> ProfessionalSession:
        return await self.lifecycle.accept_session(session_id, professional_id)

    async def decline_session(self, session_id: str, professional_id: str) -> RematchOutcome:
        return await self.lifecycle.decline_session(session_id, professional_id)

    async def end_session(
        self,
        session_id: str,
        ended_by: EndedBy,
        reason: str | None = None,
        actor_id: str | None = None,
    ) -> ProfessionalSession:
        return await self.lifecycle.end_session(session_id, ended_by, reason=reason, actor_id=actor_id)

    async def get_session(self, session_id: str) -> Optional[ProfessionalSession]:
        return await self.lifecycle.get_session(session_id)

    async def get_active_session(self, conversation_id: str) -> Optional[ProfessionalSession]:
        return await self.lifecycle.get_active_session(conversation_id)

    async def get_pending_session_requests(self, professional_id: str) -> List[ProfessionalSession]:
        return await self.lifecycle.get_pending_session_requests(professional_id)

    # matching

    async def find_matches(self, criteria: MatchingCriteria, limit: int | None = None) -> List[ProfessionalMatch]:
        return await self.scorer.find_matches(criteria, limit=limit)

    async def best_match(self, role_id: str, location: str | None = None) -> ProfessionalMatch:
        return await self.scorer.best_match_for_role(role_id, location=location)

    async def can_accept_session(self, professional_id: str) -> AvailabilityCheck:
        return await self.scorer.can_accept_session(professional_id)

    # escalation

    async def evaluate_escalation(self, session_id: str) -> EscalationDecision:
        return await self.policy.evaluate(session_id)

    async def escalate_session(
        self,
        session_id: str,
        reason: str,
        require_confirmation: bool | None = None,
        trigger: TriggerType | None = None,
    ) -> EscalationOutcome:
        return await self.policy.escalate(session_id, reason, require_confirmation=require_confirmation, trigger=trigger)

    async def accept_escalation(self, session_id: str, new_professional_id: str, event_id: str) -> EscalationOutcome:
        return await self.policy.accept_escalation(session_id, new_professional_id, event_id)

    async def decline_escalation(self, event_id: str, reason: str | None = None) -> EscalationOutcome:
        return await self.policy.decline_escalation(event_id, reason=reason)

    async def run_timeout_sweep(self) -> SweepReport:
        return await self.timeout_monitor.run_once()

    async def run_inactivity_sweep(self) -> SweepReport:
        return await self.inactivity_monitor.run_once()

    async def run_quiet_hours_sweep(self) -> SweepReport:
        return await self.quiet_hours_monitor.run_once()

    # conversation

    async def record_message(
        self,
        conversation_id: str,
        role: MessageRole,
        content: str,
        sender_id: str | None = None,
    ) -> ConversationMessage:
        return await self.conversations.append(
            ConversationMessage(
                conversation_id=conversation_id,
                role=role,
                sender_id=sender_id,
                content=content,
                created_at=self.now(),
            )
        )

    async def check_non_agreement(self, conversation_id: str) -> NonAgreementResult:
        history = await self.conversations.recent(conversation_id, limit=10)
        return await self.non_agreement.monitor_session(conversation_id, history)

    # directory and rules administration

    async def upsert_rule(self, rule: EscalationRule) -> EscalationRule:
        return await self.store.upsert_rule(rule)

    async def list_rules(self, role_id: str | None = None, active_only: bool = False) -> List[EscalationRule]:
        return await self.store.list_rules(role_id=role_id, active_only=active_only)

    async def delete_rule(self, rule_id: str) -> bool:
        return await self.store.delete_rule(rule_id)

    async def upsert_role(self, role: ProfessionalRole) -> ProfessionalRole:
        return await self.directory.upsert_role(role)

    async def upsert_professional(self, profile: ProfessionalProfile) -> ProfessionalProfile:
        return await self.directory.upsert_profile(profile)

    async def heartbeat(
        self, professional_id: str, status: PresenceStatus, override: bool | None = None
    ) -> ProfessionalStatus:
        return await self.directory.heartbeat(professional_id, status, seen_at=self.now(), override=override)
