from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from api.middleware.auth import get_actor_id, require_role
from models.schemas import EscalationRule, PresenceStatus, ProfessionalProfile, ProfessionalRole


router = APIRouter(prefix="/admin", tags=["admin"])


class PresenceRequest(BaseModel):
    status: PresenceStatus
    override: Optional[bool] = None


def _orchestrator(request: Request):
    return request.app.state.orchestrator


@router.get("/rules")
async def list_rules(
    request: Request,
    role_id: Optional[str] = None,
    active_only: bool = False,
    _role: str = Depends(require_role("ADMIN")),
):
    rules = await _orchestrator(request).list_rules(role_id=role_id, active_only=active_only)
    return {"rules": [r.model_dump(mode="json") for r in rules]}


@router.put("/rules")
async def upsert_rule(payload: EscalationRule, request: Request, _role: str = Depends(require_role("ADMIN"))):
    rule = await _orchestrator(request).upsert_rule(payload)
    return rule.model_dump(mode="json")


@router.delete("/rules/{rule_id}")
async def delete_rule(rule_id: str, request: Request, _role: str = Depends(require_role("ADMIN"))):
    removed = await _orchestrator(request).delete_rule(rule_id)
    if not removed:
        raise HTTPException(status_code=404, detail="rule_not_found")
    return {"ok": True}


@router.put("/roles")
async def upsert_role(payload: ProfessionalRole, request: Request, _role: str = Depends(require_role("ADMIN"))):
    role = await _orchestrator(request).upsert_role(payload)
    return role.model_dump(mode="json")


@router.put("/professionals")
async def upsert_professional(payload: ProfessionalProfile, request: Request, _role: str = Depends(require_role("ADMIN"))):
    profile = await _orchestrator(request).upsert_professional(payload)
    return profile.model_dump(mode="json")


@router.post("/professionals/{professional_id}/presence")
async def heartbeat(
    professional_id: str,
    payload: PresenceRequest,
    request: Request,
    role: str = Depends(require_role("PROFESSIONAL", "ADMIN", "SYSTEM")),
):
    if role == "PROFESSIONAL" and get_actor_id(request) != professional_id:
        raise HTTPException(status_code=403, detail="forbidden")
    if payload.override is not None and role != "ADMIN":
        raise HTTPException(status_code=403, detail="override_requires_admin")
    status = await _orchestrator(request).heartbeat(professional_id, payload.status, override=payload.override)
    return status.model_dump(mode="json")


@router.post("/sweeps/timeouts")
async def run_timeout_sweep(request: Request, _role: str = Depends(require_role("ADMIN", "SYSTEM"))):
    report = await _orchestrator(request).run_timeout_sweep()
    return report.model_dump(mode="json")


@router.post("/sweeps/inactivity")
async def run_inactivity_sweep(request: Request, _role: str = Depends(require_role("ADMIN", "SYSTEM"))):
    report = await _orchestrator(request).run_inactivity_sweep()
    return report.model_dump(mode="json")


@router.post("/sweeps/quiet-hours")
async def run_quiet_hours_sweep(request: Request, _role: str = Depends(require_role("ADMIN", "SYSTEM"))):
    report = await _orchestrator(request).run_quiet_hours_sweep()
    return report.model_dump(mode="json")
