from __future__ import annotations

from datetime import datetime
from typing import Dict, Iterable, List, Optional

from memory.json_store import JsonFileStore
from models.errors import NotFoundError
from models.schemas import PresenceStatus, ProfessionalProfile, ProfessionalRole, ProfessionalStatus, utcnow
from settings import SETTINGS


class ProfessionalDirectory(JsonFileStore):
    """Professional profiles, roles and live presence.

    Profiles and roles belong to the approval workflow; this service only
    writes ``current_session_count`` through the atomic counter methods.
    Presence heartbeats arrive through ``heartbeat``; quiet-hours enforcement
    may move an online status to busy.
    """

    def __init__(self, path: str | None = None) -> None:
        super().__init__(SETTINGS.directory_store_path if path is None else path)
        self._profiles: Dict[str, ProfessionalProfile] = {}
        self._roles: Dict[str, ProfessionalRole] = {}
        self._statuses: Dict[str, ProfessionalStatus] = {}
        self._load()

    def _load(self) -> None:
        payload = self._read_payload()
        for raw in payload.get("profiles", []):
            try:
                profile = ProfessionalProfile.model_validate(raw)
            except ValueError:
                continue
            self._profiles[profile.id] = profile
        for raw in payload.get("roles", []):
            try:
                role = ProfessionalRole.model_validate(raw)
            except ValueError:
                continue
            self._roles[role.id] = role
        for raw in payload.get("statuses", []):
            try:
                status = ProfessionalStatus.model_validate(raw)
            except ValueError:
                continue
            self._statuses[status.professional_id] = status

    def _persist(self) -> None:
        self._write_payload(
            {
                "profiles": [p.model_dump(mode="json") for p in self._profiles.values()],
                "roles": [r.model_dump(mode="json") for r in self._roles.values()],
                "statuses": [s.model_dump(mode="json") for s in self._statuses.values()],
            }
        )

    async def upsert_role(self, role: ProfessionalRole) -> ProfessionalRole:
        with self._lock:
            self._commit((self._roles, role.id, role.model_copy()))
            return role.model_copy()

    async def get_role(self, role_id: str) -> Optional[ProfessionalRole]:
        with self._lock:
            role = self._roles.get(role_id)
            return role.model_copy() if role else None

    async def list_roles(self) -> List[ProfessionalRole]:
        with self._lock:
            return [r.model_copy() for r in self._roles.values()]

    async def upsert_profile(self, profile: ProfessionalProfile) -> ProfessionalProfile:
        with self._lock:
            status = self._statuses.get(profile.id) or ProfessionalStatus(professional_id=profile.id)
            self._commit((self._profiles, profile.id, profile.model_copy()), (self._statuses, profile.id, status))
            return profile.model_copy()

    async def get_profile(self, professional_id: str) -> Optional[ProfessionalProfile]:
        with self._lock:
            profile = self._profiles.get(professional_id)
            return profile.model_copy() if profile else None

    async def list_profiles(self, role_id: str | None = None) -> List[ProfessionalProfile]:
        with self._lock:
            return [p.model_copy() for p in self._profiles.values() if role_id is None or p.role_id == role_id]

    async def get_status(self, professional_id: str) -> Optional[ProfessionalStatus]:
        with self._lock:
            status = self._statuses.get(professional_id)
            return status.model_copy() if status else None

    async def get_statuses(self, professional_ids: Iterable[str]) -> Dict[str, ProfessionalStatus]:
        with self._lock:
            return {pid: self._statuses[pid].model_copy() for pid in professional_ids if pid in self._statuses}

    async def heartbeat(
        self,
        professional_id: str,
        status: PresenceStatus,
        seen_at: datetime | None = None,
        override: bool | None = None,
    ) -> ProfessionalStatus:
        with self._lock:
            if professional_id not in self._profiles:
                raise NotFoundError("professional not found", professional_id=professional_id)
            current = self._statuses.get(professional_id) or ProfessionalStatus(professional_id=professional_id)
            changes = {"status": status, "last_seen_at": seen_at or utcnow()}
            if override is not None:
                changes["status_override"] = override
            updated = current.model_copy(update=changes)
            self._commit((self._statuses, professional_id, updated))
            return updated.model_copy()

    async def mark_busy_if_online(self, professional_id: str) -> Optional[ProfessionalStatus]:
        """Flip an online, non-overridden status to busy. None when nothing changed."""
        with self._lock:
            current = self._statuses.get(professional_id)
            if current is None or current.status_override or current.status != PresenceStatus.ONLINE:
                return None
            updated = current.model_copy(update={"status": PresenceStatus.BUSY})
            self._commit((self._statuses, professional_id, updated))
            return updated.model_copy()

    async def increment_session_count(self, professional_id: str) -> ProfessionalStatus:
        return self._adjust_session_count(professional_id, 1)

    async def decrement_session_count(self, professional_id: str) -> ProfessionalStatus:
        return self._adjust_session_count(professional_id, -1)

    def _adjust_session_count(self, professional_id: str, delta: int) -> ProfessionalStatus:
        # Single locked update: never a read in one call and a write in another.
        with self._lock:
            if professional_id not in self._profiles:
                raise NotFoundError("professional not found", professional_id=professional_id)
            current = self._statuses.get(professional_id) or ProfessionalStatus(professional_id=professional_id)
            count = max(0, current.current_session_count + delta)
            updated = current.model_copy(update={"current_session_count": count})
            self._commit((self._statuses, professional_id, updated))
            return updated.model_copy()
