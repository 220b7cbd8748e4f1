from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from api.middleware.auth import require_role
from models.schemas import TriggerType


router = APIRouter(prefix="/escalations", tags=["escalations"])


class EscalateRequest(BaseModel):
    reason: str
    require_confirmation: Optional[bool] = None
    trigger: Optional[TriggerType] = None


class AcceptEscalationRequest(BaseModel):
    session_id: str
    new_professional_id: str


class DeclineEscalationRequest(BaseModel):
    reason: Optional[str] = None


def _orchestrator(request: Request):
    return request.app.state.orchestrator


@router.get("/sessions/{session_id}/evaluation")
async def evaluate_escalation(session_id: str, request: Request, _role: str = Depends(require_role("ADMIN", "SYSTEM"))):
    decision = await _orchestrator(request).evaluate_escalation(session_id)
    return decision.model_dump(mode="json")


@router.post("/sessions/{session_id}")
async def escalate_session(session_id: str, payload: EscalateRequest, request: Request, _role: str = Depends(require_role())):
    outcome = await _orchestrator(request).escalate_session(
        session_id, payload.reason, require_confirmation=payload.require_confirmation, trigger=payload.trigger
    )
    return outcome.model_dump(mode="json")


@router.post("/{event_id}/accept")
async def accept_escalation(event_id: str, payload: AcceptEscalationRequest, request: Request, _role: str = Depends(require_role("USER", "ADMIN", "SYSTEM"))):
    outcome = await _orchestrator(request).accept_escalation(payload.session_id, payload.new_professional_id, event_id)
    return outcome.model_dump(mode="json")


@router.post("/{event_id}/decline")
async def decline_escalation(
    event_id: str,
    request: Request,
    payload: DeclineEscalationRequest | None = None,
    _role: str = Depends(require_role("USER", "ADMIN", "SYSTEM")),
):
    outcome = await _orchestrator(request).decline_escalation(event_id, reason=payload.reason if payload else None)
    return outcome.model_dump(mode="json")
