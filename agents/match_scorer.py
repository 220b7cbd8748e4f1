from __future__ import annotations

import logging
from datetime import datetime
from typing import List
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from agents.base import Clock
from memory.professional_directory import ProfessionalDirectory
from models.errors import NoCandidatesError
from models.schemas import (
    ApprovalStatus,
    AvailabilityCheck,
    MatchingCriteria,
    PresenceStatus,
    ProfessionalMatch,
    ProfessionalProfile,
    ProfessionalStatus,
    utcnow,
)
from settings import SETTINGS

logger = logging.getLogger(__name__)

ONLINE_POINTS = 50.0
BUSY_POINTS = 20.0
RATING_WEIGHT = 6.0
ONLINE_AVAILABILITY_POINTS = 10.0
CAPACITY_WEIGHT = 5.0
LOCATION_POINTS = 15.0
REVIEW_COUNT_CAP = 50
REVIEW_DIVISOR = 5.0
HIGHLY_RATED = 4.5
EXPERIENCED_REVIEWS = 20


def _minutes(value: str) -> int:
    hour, minute = value.strip().split(":")[:2]
    return int(hour) * 60 + int(minute)


def is_in_quiet_hours(start: str | None, end: str | None, timezone_name: str = "UTC", now: datetime | None = None) -> bool:
    """True when ``now`` falls inside the HH:MM window, which may span midnight."""
    if not start or not end:
        return False
    try:
        local = (now or utcnow()).astimezone(ZoneInfo(timezone_name or "UTC"))
        start_minutes = _minutes(start)
        end_minutes = _minutes(end)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        logger.warning("quiet_hours_unparseable", extra={"start": start, "end": end, "tz": timezone_name, "error": repr(exc)})
        return False
    current = local.hour * 60 + local.minute
    if end_minutes < start_minutes:
        return current >= start_minutes or current < end_minutes
    return start_minutes <= current < end_minutes


def score_professional(profile: ProfessionalProfile, status: ProfessionalStatus, criteria: MatchingCriteria) -> float:
    score = 0.0
    if status.status == PresenceStatus.ONLINE:
        score += ONLINE_POINTS
    elif status.status == PresenceStatus.BUSY:
        score += BUSY_POINTS
    score += profile.rating_average * RATING_WEIGHT
    if profile.online_availability:
        score += ONLINE_AVAILABILITY_POINTS
    score += (profile.max_concurrent_sessions - status.current_session_count) * CAPACITY_WEIGHT
    if _location_matches(profile, criteria):
        score += LOCATION_POINTS
    score += min(profile.review_count, REVIEW_COUNT_CAP) / REVIEW_DIVISOR
    return score


def match_reasons(profile: ProfessionalProfile, status: ProfessionalStatus, criteria: MatchingCriteria) -> List[str]:
    reasons: List[str] = []
    if status.status == PresenceStatus.ONLINE:
        reasons.append("Currently online")
    if profile.rating_average >= HIGHLY_RATED:
        reasons.append("Highly rated")
    if status.current_session_count < profile.max_concurrent_sessions:
        reasons.append("Available now")
    if profile.review_count > EXPERIENCED_REVIEWS:
        reasons.append("Experienced professional")
    if _location_matches(profile, criteria):
        reasons.append("Local availability")
    return reasons


def _location_matches(profile: ProfessionalProfile, criteria: MatchingCriteria) -> bool:
    if not criteria.location or not profile.location:
        return False
    return criteria.location.lower() in profile.location.lower()


class MatchScorer:
    """Ranks eligible professionals for a role by a fixed additive score."""

    def __init__(self, directory: ProfessionalDirectory, clock: Clock | None = None) -> None:
        self.directory = directory
        self.clock: Clock = clock or utcnow

    async def find_matches(self, criteria: MatchingCriteria, limit: int | None = None) -> List[ProfessionalMatch]:
        limit = SETTINGS.match_limit if limit is None else limit
        profiles = await self.directory.list_profiles(role_id=criteria.role_id)
        statuses = await self.directory.get_statuses(p.id for p in profiles)
        excluded = criteria.excluded_ids()
        now = self.clock()

        matches: List[ProfessionalMatch] = []
        for profile in profiles:
            status = statuses.get(profile.id) or ProfessionalStatus(professional_id=profile.id, last_seen_at=now)
            if not self._eligible(profile, status, criteria, excluded, now):
                continue
            role = await self.directory.get_role(profile.role_id)
            if role is None:
                logger.warning("professional_without_role", extra={"professional_id": profile.id, "role_id": profile.role_id})
                continue
            matches.append(
                ProfessionalMatch(
                    profile=profile,
                    role=role,
                    status=status,
                    match_score=score_professional(profile, status, criteria),
                    match_reasons=match_reasons(profile, status, criteria),
                )
            )
        # sorted() is stable: equal scores keep directory order.
        matches = sorted(matches, key=lambda m: m.match_score, reverse=True)
        return matches[:limit]

    def _eligible(
        self,
        profile: ProfessionalProfile,
        status: ProfessionalStatus,
        criteria: MatchingCriteria,
        excluded: set[str],
        now: datetime,
    ) -> bool:
        if profile.approval_status != ApprovalStatus.APPROVED or not profile.is_active:
            return False
        if profile.id in excluded:
            return False
        if criteria.role_id and profile.role_id != criteria.role_id:
            return False
        if criteria.min_rating and profile.rating_average < criteria.min_rating:
            return False
        if criteria.requires_online_only:
            if status.status != PresenceStatus.ONLINE or not profile.online_availability:
                return False
            if is_in_quiet_hours(profile.quiet_hours_start, profile.quiet_hours_end, profile.quiet_hours_timezone, now):
                return False
        if status.status in {PresenceStatus.ONLINE, PresenceStatus.BUSY}:
            if status.current_session_count >= profile.max_concurrent_sessions:
                return False
        return True

    async def best_match_for_role(
        self,
        role_id: str,
        location: str | None = None,
        exclude_professional_ids: List[str] | None = None,
    ) -> ProfessionalMatch:
        """Top online match for the role. Raises NoCandidatesError when nobody qualifies."""
        matches = await self.find_matches(
            MatchingCriteria(
                role_id=role_id,
                location=location,
                requires_online_only=True,
                exclude_professional_ids=list(exclude_professional_ids or []),
            ),
            limit=1,
        )
        if not matches:
            raise NoCandidatesError("no eligible professional", role_id=role_id)
        return matches[0]

    async def can_accept_session(self, professional_id: str) -> AvailabilityCheck:
        profile = await self.directory.get_profile(professional_id)
        if profile is None or not profile.is_active:
            return AvailabilityCheck(can_accept=False, reason="Professional not found or inactive")
        status = await self.directory.get_status(professional_id)
        if status is None:
            return AvailabilityCheck(can_accept=False, reason="Professional status not found")
        if status.status == PresenceStatus.OFFLINE:
            return AvailabilityCheck(can_accept=False, reason="Professional is offline")
        if is_in_quiet_hours(profile.quiet_hours_start, profile.quiet_hours_end, profile.quiet_hours_timezone, self.clock()):
            return AvailabilityCheck(can_accept=False, reason="Professional is in quiet hours")
        if status.current_session_count >= profile.max_concurrent_sessions:
            return AvailabilityCheck(can_accept=False, reason="Maximum concurrent sessions reached")
        if not profile.online_availability:
            return AvailabilityCheck(can_accept=False, reason="Professional has disabled online availability")
        return AvailabilityCheck(can_accept=True)
