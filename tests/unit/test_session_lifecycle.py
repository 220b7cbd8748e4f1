from __future__ import annotations

import asyncio

import pytest

from models.errors import ActiveSessionConflictError, InvalidStateError, NotFoundError, PersistenceError, UnauthorizedError
from models.schemas import EndedBy, EscalationRule, MessageRole, PresenceStatus, SessionStatus, TriggerType


def test_create_session_records_consent_and_pending_state(orchestrator, seed, clock):
    async def _run():
        await seed("p1")
        session = await orchestrator.create_session("conv-1", "user-1", "p1", "therapist", consent=True, summary="needs help")
        assert session.status == SessionStatus.PENDING_ACCEPTANCE
        assert session.consent_given_at == clock()
        assert session.assigned_at == clock()
        assert session.escalation_level == 0
        assert session.professional_joined_at is None

        with pytest.raises(NotFoundError):
            await orchestrator.create_session("conv-2", "user-1", "ghost", "therapist", consent=False)

    asyncio.run(_run())


def test_second_open_session_for_conversation_is_rejected(orchestrator, seed):
    async def _run():
        await seed("p1")
        await seed("p2")
        await orchestrator.create_session("conv-1", "user-1", "p1", "therapist", consent=True)
        with pytest.raises(ActiveSessionConflictError):
            await orchestrator.create_session("conv-1", "user-1", "p2", "therapist", consent=True)
        with pytest.raises(ActiveSessionConflictError):
            await orchestrator.request_help("conv-1", "user-1", "therapist", consent=True)

    asyncio.run(_run())


def test_accept_activates_once_and_increments_load(orchestrator, seed):
    async def _run():
        await seed("p1", full_name="Dr. Rivera")
        session = await orchestrator.create_session("conv-1", "user-1", "p1", "therapist", consent=True)

        with pytest.raises(UnauthorizedError):
            await orchestrator.accept_session(session.id, "someone-else")

        active = await orchestrator.accept_session(session.id, "p1")
        assert active.status == SessionStatus.ACTIVE
        assert active.ai_observer_mode is True
        assert active.professional_joined_at is not None
        assert (await orchestrator.directory.get_status("p1")).current_session_count == 1

        with pytest.raises(InvalidStateError):
            await orchestrator.accept_session(session.id, "p1")
        assert (await orchestrator.directory.get_status("p1")).current_session_count == 1

        intro = orchestrator.notifications.sent_of_kind("professional_joined")
        assert len(intro) == 1
        assert "Dr. Rivera" in intro[0]["message"] and "Therapist" in intro[0]["message"]

    asyncio.run(_run())


def test_end_session_guards_and_decrements(orchestrator, seed):
    async def _run():
        await seed("p1")
        session = await orchestrator.create_session("conv-1", "user-1", "p1", "therapist", consent=True)

        with pytest.raises(InvalidStateError):
            await orchestrator.end_session(session.id, EndedBy.USER)
        await orchestrator.accept_session(session.id, "p1")

        with pytest.raises(UnauthorizedError):
            await orchestrator.end_session(session.id, EndedBy.USER, actor_id="intruder")
        with pytest.raises(UnauthorizedError):
            await orchestrator.end_session(session.id, EndedBy.PROFESSIONAL, actor_id="user-1")

        ended = await orchestrator.end_session(session.id, EndedBy.USER, reason="resolved", actor_id="user-1")
        assert ended.status == SessionStatus.ENDED
        assert ended.ended_by == EndedBy.USER
        assert ended.ended_reason == "resolved"
        assert ended.professional_ended_at is not None
        assert (await orchestrator.directory.get_status("p1")).current_session_count == 0

        with pytest.raises(InvalidStateError):
            await orchestrator.end_session(session.id, EndedBy.ADMIN)
        assert (await orchestrator.directory.get_status("p1")).current_session_count == 0

        with pytest.raises(NotFoundError):
            await orchestrator.end_session("missing", EndedBy.ADMIN)

    asyncio.run(_run())


def test_decline_rematches_to_a_different_professional(orchestrator, seed):
    async def _run():
        await seed("p1", rating_average=5.0)
        await seed("p2", rating_average=4.0)
        session = await orchestrator.create_session("conv-1", "user-1", "p1", "therapist", consent=True, user_location="Toronto")

        outcome = await orchestrator.decline_session(session.id, "p1")
        assert outcome.new_session is not None
        assert outcome.notified_no_professional is False
        assert outcome.new_session.professional_id == "p2"
        assert outcome.new_session.escalation_level == 1
        assert outcome.new_session.previous_session_id == session.id
        assert outcome.new_session.user_location == "Toronto"
        assert (await orchestrator.get_session(session.id)).status == SessionStatus.DECLINED
        assert len(orchestrator.notifications.sent_of_kind("professional_rematched")) == 1
        assert orchestrator.notifications.sent_of_kind("no_professional_available") == []
        assert await orchestrator.store.list_events() == []

    asyncio.run(_run())


def test_decline_without_alternatives_notifies_user_only(orchestrator, seed):
    async def _run():
        await seed("p1")
        await seed("p2", status=PresenceStatus.OFFLINE)
        session = await orchestrator.create_session("conv-1", "user-1", "p1", "therapist", consent=True)

        outcome = await orchestrator.decline_session(session.id, "p1")
        assert outcome.new_session is None
        assert outcome.notified_no_professional is True
        assert len(orchestrator.notifications.sent_of_kind("no_professional_available")) == 1
        assert orchestrator.notifications.sent_of_kind("professional_rematched") == []
        assert await orchestrator.get_active_session("conv-1") is None

        with pytest.raises(InvalidStateError):
            await orchestrator.decline_session(session.id, "p1")

    asyncio.run(_run())


def test_decline_chain_never_returns_to_earlier_professionals(orchestrator, seed):
    async def _run():
        for pid in ["p1", "p2", "p3"]:
            await seed(pid)
        first = await orchestrator.create_session("conv-1", "user-1", "p1", "therapist", consent=True)
        second = (await orchestrator.decline_session(first.id, "p1")).new_session
        assert second.professional_id == "p2"
        third = (await orchestrator.decline_session(second.id, "p2")).new_session
        assert third.professional_id == "p3"
        assert third.escalation_level == 2
        last = await orchestrator.decline_session(third.id, "p3")
        assert last.new_session is None and last.notified_no_professional

    asyncio.run(_run())


def test_decline_stops_at_the_governing_attempt_cap(orchestrator, seed):
    async def _run():
        for pid in ["p1", "p2", "p3"]:
            await seed(pid)
        await orchestrator.upsert_rule(
            EscalationRule(id="cap", role_id="therapist", trigger_type=TriggerType.TIMEOUT, timeout_seconds=300, max_escalation_attempts=1)
        )
        first = await orchestrator.create_session("conv-1", "user-1", "p1", "therapist", consent=True)
        second = (await orchestrator.decline_session(first.id, "p1")).new_session
        assert second.escalation_level == 1
        capped = await orchestrator.decline_session(second.id, second.professional_id)
        assert capped.new_session is None
        assert capped.notified_no_professional is True

    asyncio.run(_run())


def test_request_help_picks_best_online_match_and_summarizes(orchestrator, seed):
    async def _run():
        await seed("p1", rating_average=3.0)
        await seed("p2", rating_average=4.9, location="Montreal")
        await seed("p3", rating_average=5.0, status=PresenceStatus.OFFLINE)
        await orchestrator.record_message("conv-1", MessageRole.USER, "I keep having panic attacks at work")

        session = await orchestrator.request_help("conv-1", "user-1", "therapist", consent=True, user_location="montreal")
        assert session.professional_id == "p2"
        assert session.user_location == "montreal"
        assert "panic attacks" in session.ai_summary
        assert len(orchestrator.notifications.sent_of_kind("professional_requested")) == 1

    asyncio.run(_run())


def test_request_help_without_candidates_returns_none(orchestrator, seed):
    async def _run():
        await seed("p1", status=PresenceStatus.OFFLINE)
        session = await orchestrator.request_help("conv-1", "user-1", "therapist", consent=True)
        assert session is None
        assert len(orchestrator.notifications.sent_of_kind("no_professional_available")) == 1

    asyncio.run(_run())


def test_queries(orchestrator, seed, clock):
    async def _run():
        await seed("p1")
        older = await orchestrator.create_session("conv-1", "user-1", "p1", "therapist", consent=True)
        clock.advance(minutes=1)
        newer = await orchestrator.create_session("conv-2", "user-2", "p1", "therapist", consent=True)
        pending = await orchestrator.get_pending_session_requests("p1")
        assert [s.id for s in pending] == [newer.id, older.id]
        assert (await orchestrator.get_active_session("conv-2")).id == newer.id
        assert await orchestrator.get_active_session("conv-unknown") is None

    asyncio.run(_run())


def test_failed_accept_keeps_session_pending_and_load_unchanged(orchestrator, seed, tmp_path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("", encoding="utf-8")

    async def _run():
        await seed("p1")
        session = await orchestrator.create_session("conv-1", "user-1", "p1", "therapist", consent=True)

        good_path = orchestrator.store.path
        orchestrator.store.path = str(blocker / "sessions.json")
        with pytest.raises(PersistenceError):
            await orchestrator.accept_session(session.id, "p1")
        orchestrator.store.path = good_path
        assert (await orchestrator.get_session(session.id)).status == SessionStatus.PENDING_ACCEPTANCE
        assert (await orchestrator.directory.get_status("p1")).current_session_count == 0

        # The counter write fails after the join was stored: the join is undone.
        orchestrator.directory.path = str(blocker / "directory.json")
        with pytest.raises(PersistenceError):
            await orchestrator.accept_session(session.id, "p1")
        restored = await orchestrator.get_session(session.id)
        assert restored.status == SessionStatus.PENDING_ACCEPTANCE
        assert restored.professional_joined_at is None
        assert (await orchestrator.directory.get_status("p1")).current_session_count == 0
        assert orchestrator.notifications.sent_of_kind("professional_joined") == []

    asyncio.run(_run())


def test_updates_are_stamped_with_the_service_clock(orchestrator, seed, clock):
    async def _run():
        await seed("p1")
        session = await orchestrator.create_session("conv-1", "user-1", "p1", "therapist", consent=True)
        clock.advance(minutes=3)
        active = await orchestrator.accept_session(session.id, "p1")
        assert active.updated_at == clock()
        clock.advance(minutes=1)
        ended = await orchestrator.end_session(session.id, EndedBy.ADMIN)
        assert ended.updated_at == ended.professional_ended_at == clock()

    asyncio.run(_run())
