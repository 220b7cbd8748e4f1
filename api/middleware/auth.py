from __future__ import annotations

from fastapi import HTTPException, Request

ROLES = {"USER", "PROFESSIONAL", "ADMIN", "SYSTEM"}


def get_role_from_request(request: Request) -> str:
    # Dev auth shim; a deployment puts real token validation in front of this.
    return request.headers.get("X-Role", "USER").upper()


def get_actor_id(request: Request) -> str | None:
    actor = request.headers.get("X-Actor-Id", "").strip()
    return actor or None


def require_role(*allowed_roles: str):
    allowed = {r.upper() for r in allowed_roles}

    async def _dependency(request: Request) -> str:
        role = get_role_from_request(request)
        if role not in ROLES or (allowed and role not in allowed):
            raise HTTPException(status_code=403, detail="forbidden")
        return role

    return _dependency


async def require_actor(request: Request) -> str:
    actor = get_actor_id(request)
    if actor is None:
        raise HTTPException(status_code=401, detail="missing_actor")
    return actor
