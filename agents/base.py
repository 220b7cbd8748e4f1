from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Dict

from compliance.audit_logger import AuditLogger
from models.schemas import AgentDecisionLog, utcnow

Clock = Callable[[], datetime]


class BaseAgent:
    """Shared plumbing for the hand-off components: a name, a clock and the audit trail."""

    def __init__(self, name: str, audit_logger: AuditLogger | None = None, clock: Clock | None = None) -> None:
        self.name = name
        self.audit_logger = audit_logger or AuditLogger()
        self.clock: Clock = clock or utcnow

    def now(self) -> datetime:
        return self.clock()

    def build_decision_log(
        self,
        session_id: str,
        action: str,
        reasoning: str,
        details: Dict[str, Any] | None = None,
        outcome: str = "ok",
    ) -> AgentDecisionLog:
        record = AgentDecisionLog(
            timestamp=self.now(),
            session_id=session_id,
            agent=self.name,
            action=action,
            reasoning=reasoning,
            details=dict(details or {}),
            outcome=outcome,
        )
        self.audit_logger.log_decision(record)
        return record
