from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from api.middleware.auth import get_actor_id, require_role
from models.errors import UnauthorizedError
from models.schemas import EndedBy


router = APIRouter(prefix="/sessions", tags=["sessions"])


class CreateSessionRequest(BaseModel):
    conversation_id: str
    user_id: str
    professional_id: str
    role_id: str
    consent: bool = False
    summary: Optional[str] = None
    user_location: Optional[str] = None


class HelpRequest(BaseModel):
    conversation_id: str
    user_id: str
    role_id: str
    consent: bool = False
    summary: Optional[str] = None
    user_location: Optional[str] = None


class ProfessionalActionRequest(BaseModel):
    professional_id: Optional[str] = None


class EndSessionRequest(BaseModel):
    ended_by: EndedBy
    reason: Optional[str] = None


def _orchestrator(request: Request):
    return request.app.state.orchestrator


def _professional_id(payload: ProfessionalActionRequest | None, request: Request) -> str:
    professional_id = (payload.professional_id if payload else None) or get_actor_id(request)
    if not professional_id:
        raise HTTPException(status_code=400, detail="professional_id_required")
    return professional_id


@router.post("")
async def create_session(payload: CreateSessionRequest, request: Request, _role: str = Depends(require_role("USER", "ADMIN", "SYSTEM"))):
    session = await _orchestrator(request).create_session(
        payload.conversation_id,
        payload.user_id,
        payload.professional_id,
        payload.role_id,
        payload.consent,
        summary=payload.summary,
        user_location=payload.user_location,
    )
    return session.model_dump(mode="json")


@router.post("/request")
async def request_help(payload: HelpRequest, request: Request, _role: str = Depends(require_role("USER", "ADMIN", "SYSTEM"))):
    session = await _orchestrator(request).request_help(
        payload.conversation_id,
        payload.user_id,
        payload.role_id,
        payload.consent,
        summary=payload.summary,
        user_location=payload.user_location,
    )
    return {
        "ok": session is not None,
        "professional_available": session is not None,
        "session": session.model_dump(mode="json") if session else None,
    }


@router.get("/by-conversation/{conversation_id}")
async def get_active_session(conversation_id: str, request: Request):
    session = await _orchestrator(request).get_active_session(conversation_id)
    return {"session": session.model_dump(mode="json") if session else None}


@router.get("/pending/{professional_id}")
async def get_pending_session_requests(
    professional_id: str, request: Request, _role: str = Depends(require_role("PROFESSIONAL", "ADMIN"))
):
    sessions = await _orchestrator(request).get_pending_session_requests(professional_id)
    return {"sessions": [s.model_dump(mode="json") for s in sessions]}


@router.get("/{session_id}")
async def get_session(session_id: str, request: Request):
    session = await _orchestrator(request).get_session(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="session_not_found")
    return session.model_dump(mode="json")


@router.post("/{session_id}/accept")
async def accept_session(
    session_id: str,
    request: Request,
    payload: ProfessionalActionRequest | None = None,
    _role: str = Depends(require_role("PROFESSIONAL", "ADMIN")),
):
    session = await _orchestrator(request).accept_session(session_id, _professional_id(payload, request))
    return {"ok": True, "session": session.model_dump(mode="json")}


@router.post("/{session_id}/decline")
async def decline_session(
    session_id: str,
    request: Request,
    payload: ProfessionalActionRequest | None = None,
    _role: str = Depends(require_role("PROFESSIONAL", "ADMIN")),
):
    outcome = await _orchestrator(request).decline_session(session_id, _professional_id(payload, request))
    return {"ok": True, **outcome.model_dump(mode="json")}


@router.post("/{session_id}/end")
async def end_session(session_id: str, payload: EndSessionRequest, request: Request, role: str = Depends(require_role())):
    # Callers may only end a session as themselves.
    if role != payload.ended_by.value.upper():
        raise UnauthorizedError(
            f"{role} cannot end a session as {payload.ended_by.value}", session_id=session_id, role=role
        )
    actor_id = get_actor_id(request)
    if payload.ended_by in (EndedBy.USER, EndedBy.PROFESSIONAL) and actor_id is None:
        raise UnauthorizedError("X-Actor-Id is required to end a session", session_id=session_id)
    session = await _orchestrator(request).end_session(session_id, payload.ended_by, reason=payload.reason, actor_id=actor_id)
    return {"ok": True, "session": session.model_dump(mode="json")}
