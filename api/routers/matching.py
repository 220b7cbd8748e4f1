from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from api.middleware.auth import require_role
from models.schemas import MatchingCriteria


router = APIRouter(prefix="/matching", tags=["matching"])


class MatchRequest(BaseModel):
    role_id: Optional[str] = None
    location: Optional[str] = None
    min_rating: Optional[float] = Field(default=None, ge=0.0, le=5.0)
    requires_online_only: bool = False
    exclude_professional_ids: List[str] = Field(default_factory=list)
    escalation_level: int = 0
    limit: int = Field(default=5, ge=1, le=50)


@router.post("/professionals")
async def find_matches(payload: MatchRequest, request: Request, _role: str = Depends(require_role())):
    orchestrator = request.app.state.orchestrator
    matches = await orchestrator.find_matches(
        MatchingCriteria(**payload.model_dump(exclude={"limit"})),
        limit=payload.limit,
    )
    return {
        "matches": [
            {
                "professional_id": m.profile.id,
                "full_name": m.profile.full_name,
                "role": m.role.name,
                "status": m.status.status.value,
                "match_score": round(m.match_score, 2),
                "match_reasons": m.match_reasons,
            }
            for m in matches
        ]
    }


@router.get("/professionals/{professional_id}/availability")
async def can_accept_session(professional_id: str, request: Request):
    check = await request.app.state.orchestrator.can_accept_session(professional_id)
    return check.model_dump(mode="json")


@router.get("/roles/{role_id}/best-match")
async def best_match(role_id: str, request: Request, location: Optional[str] = None):
    match = await request.app.state.orchestrator.best_match(role_id, location=location)
    return {
        "professional_id": match.profile.id,
        "full_name": match.profile.full_name,
        "match_score": round(match.match_score, 2),
        "match_reasons": match.match_reasons,
    }
