from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from api.middleware.auth import get_actor_id
from models.schemas import MessageRole


router = APIRouter(prefix="/conversations", tags=["conversations"])


class MessageRequest(BaseModel):
    role: MessageRole
    content: str = Field(min_length=1)
    sender_id: Optional[str] = None


@router.post("/{conversation_id}/messages")
async def record_message(conversation_id: str, payload: MessageRequest, request: Request):
    orchestrator = request.app.state.orchestrator
    message = await orchestrator.record_message(
        conversation_id, payload.role, payload.content, sender_id=payload.sender_id or get_actor_id(request)
    )
    return message.model_dump(mode="json")


@router.get("/{conversation_id}/non-agreement")
async def check_non_agreement(conversation_id: str, request: Request):
    result = await request.app.state.orchestrator.check_non_agreement(conversation_id)
    return result.model_dump(mode="json")
