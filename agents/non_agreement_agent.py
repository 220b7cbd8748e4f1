from __future__ import annotations

import logging
import re
from typing import List, Sequence

from agents.base import BaseAgent
from agents.llm_runtime import DEFAULT_ALTERNATIVE_SUGGESTION, LLMRuntime
from compliance.audit_logger import AuditLogger
from memory.session_store import HandoffSessionStore
from models.schemas import ConversationMessage, MessageRole, NonAgreementResult, SessionStatus

logger = logging.getLogger(__name__)

WINDOW = 10
MIN_TURNS = 3

DISSATISFACTION_PATTERNS = [
    re.compile(r"not (helping|working|good|satisfied|happy|clear)", re.IGNORECASE),
    re.compile(r"doesn't (understand|help|work|make sense)", re.IGNORECASE),
    re.compile(r"can't (help|understand|figure out)", re.IGNORECASE),
    re.compile(r"wrong|incorrect|inaccurate", re.IGNORECASE),
    re.compile(r"disappointed|frustrated|confused|stuck", re.IGNORECASE),
    re.compile(r"try (a|another) (different|other) (professional|person|therapist|counselor|mentor)", re.IGNORECASE),
    re.compile(r"want (a|another) (different|other) (professional|person|therapist|counselor|mentor)", re.IGNORECASE),
    re.compile(r"this (isn't|is not) (working|helping)", re.IGNORECASE),
]


class NonAgreementAgent(BaseAgent):
    """Spots users who are unhappy with their professional. Suggests, never acts."""

    def __init__(
        self,
        store: HandoffSessionStore,
        llm: LLMRuntime | None = None,
        audit_logger: AuditLogger | None = None,
    ) -> None:
        super().__init__(name="non_agreement_agent", audit_logger=audit_logger)
        self.store = store
        self.llm = llm or LLMRuntime()

    def matched_patterns(self, history: Sequence[ConversationMessage]) -> List[str]:
        recent = list(history)[-WINDOW:]
        if len(recent) < MIN_TURNS:
            return []
        text = " ".join(m.content for m in recent if m.role == MessageRole.USER).lower()
        return [p.pattern for p in DISSATISFACTION_PATTERNS if p.search(text)]

    async def detect(self, history: Sequence[ConversationMessage]) -> NonAgreementResult:
        matched = self.matched_patterns(history)
        if not matched:
            return NonAgreementResult(should_escalate=False)
        user_text = " ".join(m.content for m in list(history)[-WINDOW:] if m.role == MessageRole.USER)
        suggestion = ""
        if self.llm.available():
            suggestion = await self.llm.suggest_alternative(user_text.lower())
        return NonAgreementResult(
            should_escalate=True,
            suggestion=suggestion or DEFAULT_ALTERNATIVE_SUGGESTION,
            matched_patterns=matched,
        )

    async def monitor_session(self, conversation_id: str, history: Sequence[ConversationMessage]) -> NonAgreementResult:
        session = await self.store.find_open_session(conversation_id)
        if session is None or session.status != SessionStatus.ACTIVE or not session.ai_observer_mode:
            return NonAgreementResult(should_escalate=False)
        result = await self.detect(history)
        if result.should_escalate:
            logger.info(
                "non_agreement_detected",
                extra={"session_id": session.id, "conversation_id": conversation_id, "patterns": result.matched_patterns},
            )
            self.build_decision_log(
                session.id, "non_agreement_detected", "dissatisfaction phrases in recent user turns", {"patterns": result.matched_patterns}
            )
        return result
