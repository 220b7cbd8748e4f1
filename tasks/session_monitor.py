from __future__ import annotations

import asyncio
import logging
from datetime import timedelta

from celery import Celery

from agents.base import Clock
from agents.escalation_policy import EscalationPolicyEngine
from agents.match_scorer import is_in_quiet_hours
from agents.session_lifecycle import SessionLifecycleManager
from memory.conversation_log import ConversationLog
from memory.professional_directory import ProfessionalDirectory
from memory.session_store import HandoffSessionStore
from models.errors import InvalidStateError
from models.schemas import EndedBy, ProfessionalSession, SessionStatus, SweepReport, utcnow
from settings import SETTINGS
from tools.notification_tools import NotificationTools

logger = logging.getLogger(__name__)

TIMEOUT_NOTICE_REASON = "Timeout: Professional did not respond within the acceptance window"
INACTIVITY_REASON = "inactivity"


celery_app = Celery("professional_handoff")
if SETTINGS.redis_url:
    celery_app.conf.broker_url = SETTINGS.redis_url
    celery_app.conf.result_backend = SETTINGS.redis_url
celery_app.conf.beat_schedule = {
    "monitor-session-timeouts-every-60s": {
        "task": "tasks.session_monitor.check_session_timeouts",
        "schedule": SETTINGS.timeout_sweep_interval_seconds,
    },
    "monitor-session-inactivity-every-60s": {
        "task": "tasks.session_monitor.check_session_inactivity",
        "schedule": SETTINGS.inactivity_sweep_interval_seconds,
    },
    "enforce-quiet-hours-every-300s": {
        "task": "tasks.session_monitor.enforce_quiet_hours",
        "schedule": SETTINGS.quiet_hours_sweep_interval_seconds,
    },
}


class TimeoutMonitor:
    """Escalates pending requests nobody has picked up within the grace window."""

    def __init__(
        self,
        store: HandoffSessionStore,
        policy: EscalationPolicyEngine,
        notifications: NotificationTools,
        clock: Clock | None = None,
        grace_seconds: int | None = None,
        batch_size: int | None = None,
    ) -> None:
        self.store = store
        self.policy = policy
        self.notifications = notifications
        self.clock: Clock = clock or utcnow
        self.grace_seconds = SETTINGS.pending_grace_seconds if grace_seconds is None else grace_seconds
        self.batch_size = SETTINGS.timeout_sweep_batch_size if batch_size is None else batch_size

    async def run_once(self) -> SweepReport:
        report = SweepReport(sweep="timeout", started_at=self.clock())
        cutoff = report.started_at - timedelta(seconds=self.grace_seconds)
        pending = await self.store.list_sessions(statuses=[SessionStatus.PENDING_ACCEPTANCE])
        stale = [s for s in pending if s.assigned_at <= cutoff][: self.batch_size]

        for session in stale:
            report.sessions_checked += 1
            try:
                current = await self.store.get_session(session.id)
                if current is None or current.status != SessionStatus.PENDING_ACCEPTANCE:
                    continue
                decision = await self.policy.evaluate(session.id)
                if not decision.should_escalate:
                    continue
                outcome = await self.policy.escalate(
                    session.id, decision.reason or "Session timeout", require_confirmation=False, notify_on_failure=False
                )
                if outcome.success:
                    report.sessions_escalated += 1
                elif outcome.error == "no_candidates" and current.escalation_reason != TIMEOUT_NOTICE_REASON:
                    await self.store.update_session(
                        session.id, {"escalation_reason": TIMEOUT_NOTICE_REASON, "updated_at": report.started_at}
                    )
                    await self.notifications.notify_user(
                        current.user_id,
                        current.conversation_id,
                        "professional_response_delayed",
                        "Your professional hasn't responded yet and no one else is free right now. We'll keep trying.",
                        {"session_id": session.id},
                    )
                    report.sessions_notified += 1
            except InvalidStateError:
                # Accepted, declined or escalated by someone else mid-sweep.
                continue
            except Exception as exc:
                logger.exception("timeout_sweep_session_failed", extra={"session_id": session.id})
                report.errors.append({"session_id": session.id, "error": repr(exc)})

        logger.info(
            "timeout_sweep_completed",
            extra={
                "checked": report.sessions_checked,
                "escalated": report.sessions_escalated,
                "notified": report.sessions_notified,
                "errors": len(report.errors),
            },
        )
        return report


class InactivityMonitor:
    """Ends active sessions that have gone quiet and looks for a replacement professional."""

    def __init__(
        self,
        store: HandoffSessionStore,
        lifecycle: SessionLifecycleManager,
        conversations: ConversationLog,
        notifications: NotificationTools,
        clock: Clock | None = None,
        threshold_seconds: int | None = None,
    ) -> None:
        self.store = store
        self.lifecycle = lifecycle
        self.conversations = conversations
        self.notifications = notifications
        self.clock: Clock = clock or utcnow
        self.threshold_seconds = SETTINGS.inactivity_threshold_seconds if threshold_seconds is None else threshold_seconds

    async def run_once(self) -> SweepReport:
        report = SweepReport(sweep="inactivity", started_at=self.clock())
        active = await self.store.list_sessions(statuses=[SessionStatus.ACTIVE])

        for session in active:
            if session.professional_joined_at is None:
                continue
            report.sessions_checked += 1
            try:
                await self._sweep_session(session, report)
            except InvalidStateError:
                # Ended or transferred by someone else mid-sweep.
                continue
            except Exception as exc:
                logger.exception("inactivity_sweep_session_failed", extra={"session_id": session.id})
                report.errors.append({"session_id": session.id, "error": repr(exc)})

        logger.info(
            "inactivity_sweep_completed",
            extra={
                "checked": report.sessions_checked,
                "ended": report.sessions_ended,
                "reassigned": report.sessions_reassigned,
                "errors": len(report.errors),
            },
        )
        return report

    async def _sweep_session(self, session: ProfessionalSession, report: SweepReport) -> None:
        last_message = await self.conversations.last_message_at(session.conversation_id)
        last_activity = session.professional_joined_at
        if last_message is not None and last_message > last_activity:
            last_activity = last_message
        if (report.started_at - last_activity).total_seconds() < self.threshold_seconds:
            return

        ended = await self.lifecycle.end_session(session.id, EndedBy.SYSTEM, reason=INACTIVITY_REASON)
        report.sessions_ended += 1

        try:
            outcome = await self.lifecycle.rematch(ended, reason="Professional inactive")
        except Exception as exc:
            logger.exception("inactivity_reassign_failed", extra={"session_id": session.id})
            report.errors.append({"session_id": session.id, "error": repr(exc)})
            await self.notifications.notify_user(
                ended.user_id,
                ended.conversation_id,
                "request_help_again",
                "Your professional session ended due to inactivity. You can request help again at any time.",
                {"session_id": session.id},
            )
            return
        if outcome.new_session is not None:
            report.sessions_reassigned += 1


class QuietHoursMonitor:
    """Marks online professionals busy while they are inside their quiet hours.

    Busy is not reverted when the window closes; professionals set themselves
    back online. Statuses an admin has overridden are left alone.
    """

    def __init__(self, directory: ProfessionalDirectory, clock: Clock | None = None) -> None:
        self.directory = directory
        self.clock: Clock = clock or utcnow

    async def run_once(self) -> SweepReport:
        report = SweepReport(sweep="quiet_hours", started_at=self.clock())
        for profile in await self.directory.list_profiles():
            if not profile.is_active or not profile.quiet_hours_start or not profile.quiet_hours_end:
                continue
            try:
                if not is_in_quiet_hours(
                    profile.quiet_hours_start, profile.quiet_hours_end, profile.quiet_hours_timezone, report.started_at
                ):
                    continue
                if await self.directory.mark_busy_if_online(profile.id) is not None:
                    report.professionals_updated += 1
            except Exception as exc:
                logger.exception("quiet_hours_sweep_failed", extra={"professional_id": profile.id})
                report.errors.append({"professional_id": profile.id, "error": repr(exc)})

        logger.info(
            "quiet_hours_sweep_completed",
            extra={"updated": report.professionals_updated, "errors": len(report.errors)},
        )
        return report


def _orchestrator():
    # Imported lazily: the orchestrator builds these monitors itself.
    from agents.orchestrator import HandoffOrchestrator

    return HandoffOrchestrator()


@celery_app.task(name="tasks.session_monitor.check_session_timeouts")
def check_session_timeouts() -> dict:
    report = asyncio.run(_orchestrator().run_timeout_sweep())
    return report.model_dump(mode="json")


@celery_app.task(name="tasks.session_monitor.check_session_inactivity")
def check_session_inactivity() -> dict:
    report = asyncio.run(_orchestrator().run_inactivity_sweep())
    return report.model_dump(mode="json")


@celery_app.task(name="tasks.session_monitor.enforce_quiet_hours")
def enforce_quiet_hours() -> dict:
    report = asyncio.run(_orchestrator().run_quiet_hours_sweep())
    return report.model_dump(mode="json")
