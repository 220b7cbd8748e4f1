from __future__ import annotations

import os

# Keep the module-level app in api.main off the real ./data files and remote LLMs.
for _name in ("DIRECTORY_STORE_PATH", "SESSION_STORE_PATH", "CONVERSATION_STORE_PATH", "AUDIT_LOG_PATH"):
    os.environ[_name] = ""
os.environ["DEFAULT_LLM_PROVIDER"] = "heuristic"

from datetime import datetime, timedelta, timezone

import pytest

from agents.llm_runtime import LLMRuntime
from agents.orchestrator import HandoffOrchestrator
from compliance.audit_logger import AuditLogger
from memory.conversation_log import ConversationLog
from memory.professional_directory import ProfessionalDirectory
from memory.session_store import HandoffSessionStore
from models.schemas import ApprovalStatus, PresenceStatus, ProfessionalProfile, ProfessionalRole
from tools.notification_tools import NotificationTools


class FrozenClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2026, 3, 2, 15, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def orchestrator(tmp_path, clock) -> HandoffOrchestrator:
    return HandoffOrchestrator(
        directory=ProfessionalDirectory(str(tmp_path / "directory.json")),
        store=HandoffSessionStore(str(tmp_path / "sessions.json")),
        conversations=ConversationLog(str(tmp_path / "conversations.json")),
        notifications=NotificationTools(),
        llm=LLMRuntime(provider="heuristic"),
        audit_logger=AuditLogger(str(tmp_path / "audit.log.jsonl")),
        clock=clock,
    )


@pytest.fixture
def seed(orchestrator):
    """Async helper: register an approved professional (and its role) with a presence status."""

    async def _seed(
        professional_id: str,
        role_id: str = "therapist",
        status: PresenceStatus = PresenceStatus.ONLINE,
        session_count: int = 0,
        **fields,
    ) -> ProfessionalProfile:
        if await orchestrator.directory.get_role(role_id) is None:
            await orchestrator.upsert_role(ProfessionalRole(id=role_id, name=role_id.title()))
        fields.setdefault("full_name", f"Pro {professional_id}")
        fields.setdefault("approval_status", ApprovalStatus.APPROVED)
        profile = await orchestrator.upsert_professional(ProfessionalProfile(id=professional_id, role_id=role_id, **fields))
        await orchestrator.heartbeat(professional_id, status)
        for _ in range(session_count):
            await orchestrator.directory.increment_session_count(professional_id)
        return profile

    return _seed
