from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence

from agents.base import BaseAgent, Clock
from agents.match_scorer import MatchScorer
from compliance.audit_logger import AuditLogger
from memory.conversation_log import ConversationLog
from memory.professional_directory import ProfessionalDirectory
from memory.session_store import HandoffSessionStore
from models.errors import InvalidStateError, NotFoundError, UnauthorizedError
from models.schemas import (
    EscalationDecision,
    EscalationEvent,
    EscalationOutcome,
    EscalationResult,
    EscalationRule,
    EscalationStrategy,
    MatchingCriteria,
    MessageRole,
    ProfessionalMatch,
    ProfessionalSession,
    SessionStatus,
    TimeoutReference,
    TriggerType,
)
from settings import SETTINGS
from tools.notification_tools import NotificationTools

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RuleContext:
    session: ProfessionalSession
    now: datetime
    last_professional_reply_at: Optional[datetime] = None


TriggerEvaluator = Callable[[EscalationRule, RuleContext], Optional[str]]


def timeout_anchor(rule: EscalationRule, ctx: RuleContext) -> Optional[datetime]:
    """Start of the timeout clock for ``rule``.

    ``joined``: when the professional joined, or when the current professional
    was assigned while the request still awaits acceptance.
    ``last_reply``: the professional's latest message, never earlier than the
    joined anchor.
    """
    session = ctx.session
    anchor = session.professional_joined_at
    if anchor is None and session.status == SessionStatus.PENDING_ACCEPTANCE:
        anchor = session.assigned_at
    if anchor is None:
        return None
    if rule.timeout_reference == TimeoutReference.LAST_REPLY and ctx.last_professional_reply_at:
        return max(anchor, ctx.last_professional_reply_at)
    return anchor


def _evaluate_timeout(rule: EscalationRule, ctx: RuleContext) -> Optional[str]:
    if not rule.timeout_seconds:
        return None
    anchor = timeout_anchor(rule, ctx)
    if anchor is None:
        return None
    if (ctx.now - anchor).total_seconds() >= rule.timeout_seconds:
        return f"Session timeout after {rule.timeout_seconds} seconds"
    return None


def _explicit_only(rule: EscalationRule, ctx: RuleContext) -> Optional[str]:
    # user_request, ai_detection and manual rules fire through escalate(trigger=...), never from a scan.
    return None


TRIGGER_EVALUATORS: Dict[TriggerType, TriggerEvaluator] = {
    TriggerType.TIMEOUT: _evaluate_timeout,
    TriggerType.USER_REQUEST: _explicit_only,
    TriggerType.AI_DETECTION: _explicit_only,
    TriggerType.MANUAL: _explicit_only,
}


def evaluate_rules(rules: Sequence[EscalationRule], ctx: RuleContext) -> EscalationDecision:
    """First rule (ascending priority) that fires wins; exhausted rules are skipped."""
    for rule in sorted(rules, key=lambda r: r.priority):
        if not rule.is_active:
            continue
        if ctx.session.escalation_level >= rule.max_escalation_attempts:
            continue
        reason = TRIGGER_EVALUATORS.get(rule.trigger_type, _explicit_only)(rule, ctx)
        if reason:
            return EscalationDecision(should_escalate=True, rule=rule, reason=reason)
    return EscalationDecision(should_escalate=False)


class EscalationPolicyEngine(BaseAgent):
    def __init__(
        self,
        store: HandoffSessionStore,
        directory: ProfessionalDirectory,
        scorer: MatchScorer,
        conversations: ConversationLog,
        notifications: NotificationTools,
        audit_logger: AuditLogger | None = None,
        clock: Clock | None = None,
    ) -> None:
        super().__init__(name="escalation_policy", audit_logger=audit_logger, clock=clock)
        self.store = store
        self.directory = directory
        self.scorer = scorer
        self.conversations = conversations
        self.notifications = notifications

    async def evaluate(self, session_id: str) -> EscalationDecision:
        session = await self.store.get_session(session_id)
        if session is None or session.is_terminal:
            return EscalationDecision(should_escalate=False)
        return await self._evaluate_session(session)

    async def _evaluate_session(self, session: ProfessionalSession) -> EscalationDecision:
        rules = await self.store.list_rules(role_id=session.role_id)
        if not rules:
            return EscalationDecision(should_escalate=False)
        last_reply = await self.conversations.last_message_at(
            session.conversation_id, role=MessageRole.PROFESSIONAL, sender_id=session.professional_id
        )
        ctx = RuleContext(session=session, now=self.now(), last_professional_reply_at=last_reply)
        return evaluate_rules(rules, ctx)

    async def explicit_rule(self, session: ProfessionalSession, trigger: TriggerType) -> Optional[EscalationRule]:
        for rule in await self.store.list_rules(role_id=session.role_id):
            if rule.trigger_type == trigger and session.escalation_level < rule.max_escalation_attempts:
                return rule
        return None

    async def max_escalation_attempts(self, role_id: str) -> int:
        rules = await self.store.list_rules(role_id=role_id)
        if rules:
            return rules[0].max_escalation_attempts
        return SETTINGS.default_max_escalation_attempts

    async def escalation_chain(self, session: ProfessionalSession) -> set[str]:
        """Every professional already tried for this request, across re-matched sessions."""
        chain: set[str] = set()
        seen: set[str] = set()
        current: Optional[ProfessionalSession] = session
        while current is not None and current.id not in seen:
            seen.add(current.id)
            chain.add(current.professional_id)
            for event in await self.store.list_events(session_id=current.id):
                if event.from_professional_id:
                    chain.add(event.from_professional_id)
                chain.add(event.to_professional_id)
            current = await self.store.get_session(current.previous_session_id) if current.previous_session_id else None
        return chain

    async def escalate(
        self,
        session_id: str,
        reason: str,
        require_confirmation: bool | None = None,
        trigger: TriggerType | None = None,
        notify_on_failure: bool = True,
    ) -> EscalationOutcome:
        session = await self.store.get_session(session_id)
        if session is None:
            raise NotFoundError("session not found", session_id=session_id)
        if session.is_terminal:
            raise InvalidStateError("session is closed", session_id=session_id, status=session.status.value)

        if trigger is None or trigger == TriggerType.TIMEOUT:
            decision = await self._evaluate_session(session)
            rule = decision.rule if decision.should_escalate else None
        else:
            rule = await self.explicit_rule(session, trigger)
        if rule is None:
            return EscalationOutcome(success=False, session_id=session_id, error="escalation_not_allowed")

        excluded = await self.escalation_chain(session)
        next_level = session.escalation_level + 1
        candidates = await self.scorer.find_matches(
            MatchingCriteria(
                role_id=session.role_id,
                location=session.user_location,
                min_rating=rule.fallback_rules.min_rating,
                exclude_professional_id=session.professional_id,
                exclude_professional_ids=sorted(excluded),
                escalation_level=next_level,
            )
        )
        used_fallback = False
        if not candidates and rule.fallback_rules.local_to_online:
            used_fallback = True
            candidates = await self.scorer.find_matches(
                MatchingCriteria(
                    role_id=session.role_id,
                    requires_online_only=True,
                    exclude_professional_id=session.professional_id,
                    exclude_professional_ids=sorted(excluded),
                    escalation_level=next_level,
                )
            )
        if not candidates:
            logger.info("escalation_no_candidates", extra={"session_id": session_id, "rule_id": rule.id})
            self.build_decision_log(session_id, "escalate", reason, {"rule_id": rule.id, "used_fallback": used_fallback}, outcome="no_candidates")
            if notify_on_failure:
                await self.notifications.notify_user(
                    session.user_id,
                    session.conversation_id,
                    "no_professional_available",
                    "We couldn't find another professional right now. Your current request stays open.",
                    {"session_id": session_id},
                )
            return EscalationOutcome(success=False, session_id=session_id, error="no_candidates", used_fallback=used_fallback)

        selected = await self._select(candidates, rule)
        event = await self.store.insert_event(
            EscalationEvent(
                session_id=session_id,
                rule_id=rule.id,
                from_professional_id=session.professional_id,
                to_professional_id=selected.profile.id,
                escalation_level=next_level,
                reason=reason,
                user_notified=False,
                created_at=self.now(),
                updated_at=self.now(),
            )
        )
        confirm = rule.require_user_confirmation if require_confirmation is None else require_confirmation
        self.build_decision_log(
            session_id,
            "escalate",
            reason,
            {
                "rule_id": rule.id,
                "event_id": event.id,
                "to_professional_id": selected.profile.id,
                "strategy": rule.escalation_strategy.value,
                "awaiting_confirmation": confirm,
                "used_fallback": used_fallback,
            },
        )
        if confirm:
            await self.notifications.notify_user(
                session.user_id,
                session.conversation_id,
                "escalation_confirmation_requested",
                f"{selected.profile.full_name or 'Another professional'} ({selected.role.name}) is available. "
                "Would you like to be connected with them instead?",
                {"session_id": session_id, "event_id": event.id},
            )
            return EscalationOutcome(
                success=True,
                session_id=session_id,
                event_id=event.id,
                to_professional_id=selected.profile.id,
                awaiting_confirmation=True,
                used_fallback=used_fallback,
            )

        outcome = await self.accept_escalation(session_id, selected.profile.id, event.id)
        return outcome.model_copy(update={"used_fallback": used_fallback})

    async def _select(self, candidates: List[ProfessionalMatch], rule: EscalationRule) -> ProfessionalMatch:
        if rule.escalation_strategy == EscalationStrategy.ROUND_ROBIN:
            history = await self.store.assignment_history(rule.id)
            # Least recently assigned by this rule; never-assigned first, rank breaks ties.
            ranked = list(enumerate(candidates))
            _, chosen = min(ranked, key=lambda item: (history.get(item[1].profile.id, ""), item[0]))
            return chosen
        # sequential, and broadcast until fan-out delivery exists, take the top-ranked candidate.
        return candidates[0]

    async def accept_escalation(self, session_id: str, new_professional_id: str, event_id: str) -> EscalationOutcome:
        event = await self.store.get_event(event_id)
        if event is None:
            raise NotFoundError("escalation event not found", event_id=event_id)
        if event.session_id != session_id:
            raise UnauthorizedError("event belongs to another session", event_id=event_id, session_id=session_id)
        if event.to_professional_id != new_professional_id:
            raise UnauthorizedError("event names a different professional", event_id=event_id)

        now = self.now()
        before, after = await self.store.apply_escalation(
            event_id, now, {"escalation_reason": event.reason or "Session escalated"}
        )

        if before.status == SessionStatus.ACTIVE:
            # The load follows the session to its new professional.
            await self.directory.decrement_session_count(before.professional_id)
            await self.directory.increment_session_count(after.professional_id)
        if event.rule_id:
            await self.store.record_assignment(event.rule_id, after.professional_id, now)

        profile = await self.directory.get_profile(after.professional_id)
        name = profile.full_name if profile and profile.full_name else "A new professional"
        if after.status == SessionStatus.ACTIVE:
            message = f"{name} is taking over this conversation."
        else:
            message = f"We're requesting {name} to help you instead."
        await self.notifications.notify_user(
            after.user_id, after.conversation_id, "escalation_transferred", message, {"session_id": session_id, "event_id": event_id}
        )
        self.build_decision_log(
            session_id,
            "accept_escalation",
            event.reason,
            {
                "event_id": event_id,
                "from_professional_id": before.professional_id,
                "to_professional_id": after.professional_id,
                "escalation_level": after.escalation_level,
            },
        )
        logger.info(
            "session_escalated",
            extra={"session_id": session_id, "event_id": event_id, "escalation_level": after.escalation_level},
        )
        return EscalationOutcome(success=True, session_id=session_id, event_id=event_id, to_professional_id=after.professional_id)

    async def decline_escalation(self, event_id: str, reason: str | None = None) -> EscalationOutcome:
        event = await self.store.transition_event(
            event_id,
            EscalationResult.PENDING,
            {
                "result": EscalationResult.DECLINED,
                "user_confirmed": False,
                "reason": reason or "User declined escalation",
                "updated_at": self.now(),
            },
        )
        if event is None:
            raise InvalidStateError("escalation event already resolved", event_id=event_id)
        self.build_decision_log(event.session_id, "decline_escalation", event.reason, {"event_id": event_id})
        return EscalationOutcome(success=True, session_id=event.session_id, event_id=event_id)

    async def notify_user_of_escalation(self, event_id: str) -> EscalationOutcome:
        event = await self.store.get_event(event_id)
        if event is None:
            raise NotFoundError("escalation event not found", event_id=event_id)
        updated = await self.store.transition_event(event_id, event.result, {"user_notified": True, "updated_at": self.now()})
        if updated is None:
            raise InvalidStateError("escalation event changed concurrently", event_id=event_id)
        return EscalationOutcome(success=True, session_id=event.session_id, event_id=event_id)
