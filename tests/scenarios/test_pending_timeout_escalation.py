from __future__ import annotations

import asyncio

from models.schemas import EscalationResult, EscalationRule, PresenceStatus, SessionStatus, TriggerType


def _rule(**overrides) -> EscalationRule:
    fields = dict(
        id="pending-timeout",
        role_id="therapist",
        trigger_type=TriggerType.TIMEOUT,
        timeout_seconds=300,
        max_escalation_attempts=2,
        require_user_confirmation=False,
    )
    fields.update(overrides)
    return EscalationRule(**fields)


def test_six_minute_old_pending_session_is_handed_to_someone_else(orchestrator, seed, clock):
    async def _run():
        await seed("p1")
        await seed("p2")
        await orchestrator.upsert_rule(_rule())
        session = await orchestrator.create_session("conv-1", "user-1", "p1", "therapist", consent=True)

        clock.advance(minutes=4)
        early = await orchestrator.run_timeout_sweep()
        assert early.sessions_checked == 0
        assert (await orchestrator.get_session(session.id)).professional_id == "p1"

        clock.advance(minutes=2)
        report = await orchestrator.run_timeout_sweep()
        assert report.sessions_checked == 1
        assert report.sessions_escalated == 1
        assert report.errors == []

        moved = await orchestrator.get_session(session.id)
        assert moved.professional_id == "p2"
        assert moved.escalation_level == 1
        assert moved.status == SessionStatus.PENDING_ACCEPTANCE
        events = await orchestrator.store.list_events(session.id)
        assert len(events) == 1 and events[0].result == EscalationResult.ACCEPTED
        # Transferred in place: still exactly one pending row for the conversation.
        pending = await orchestrator.store.list_sessions(statuses=[SessionStatus.PENDING_ACCEPTANCE], conversation_id="conv-1")
        assert [s.id for s in pending] == [session.id]

        # Re-running immediately is a no-op: the new assignment restarted the clock.
        again = await orchestrator.run_timeout_sweep()
        assert again.sessions_escalated == 0

        # The new professional can pick it up normally.
        active = await orchestrator.accept_session(session.id, "p2")
        assert active.status == SessionStatus.ACTIVE

    asyncio.run(_run())


def test_sweep_stops_at_max_attempts(orchestrator, seed, clock):
    async def _run():
        for pid in ["p1", "p2", "p3", "p4"]:
            await seed(pid)
        await orchestrator.upsert_rule(_rule())
        session = await orchestrator.create_session("conv-1", "user-1", "p1", "therapist", consent=True)
        for _ in range(4):
            clock.advance(minutes=6)
            await orchestrator.run_timeout_sweep()
        final = await orchestrator.get_session(session.id)
        assert final.escalation_level == 2
        assert final.professional_id == "p3"

    asyncio.run(_run())


def test_no_alternative_notifies_user_once(orchestrator, seed, clock):
    async def _run():
        await seed("p1")
        await seed("p2", status=PresenceStatus.OFFLINE, rating_average=1.0)
        await orchestrator.upsert_rule(_rule(fallback_rules={"min_rating": 4.0}))
        session = await orchestrator.create_session("conv-1", "user-1", "p1", "therapist", consent=True)

        clock.advance(minutes=6)
        first = await orchestrator.run_timeout_sweep()
        clock.advance(minutes=1)
        second = await orchestrator.run_timeout_sweep()

        assert first.sessions_notified == 1 and second.sessions_notified == 0
        assert len(orchestrator.notifications.sent_of_kind("professional_response_delayed")) == 1
        assert orchestrator.notifications.sent_of_kind("no_professional_available") == []
        still = await orchestrator.get_session(session.id)
        assert still.status == SessionStatus.PENDING_ACCEPTANCE and still.professional_id == "p1"
        assert still.escalation_reason.startswith("Timeout")

    asyncio.run(_run())


def test_one_failing_session_does_not_halt_the_sweep(orchestrator, seed, clock, monkeypatch):
    async def _run():
        await seed("p1")
        await seed("p2")
        await seed("p3")
        await orchestrator.upsert_rule(_rule())
        broken = await orchestrator.create_session("conv-1", "user-1", "p1", "therapist", consent=True)
        healthy = await orchestrator.create_session("conv-2", "user-2", "p1", "therapist", consent=True)

        real_evaluate = orchestrator.policy.evaluate

        async def flaky_evaluate(session_id):
            if session_id == broken.id:
                raise RuntimeError("rule table unavailable")
            return await real_evaluate(session_id)

        monkeypatch.setattr(orchestrator.policy, "evaluate", flaky_evaluate)
        clock.advance(minutes=6)
        report = await orchestrator.run_timeout_sweep()
        assert report.sessions_checked == 2
        assert report.sessions_escalated == 1
        assert [e["session_id"] for e in report.errors] == [broken.id]
        assert (await orchestrator.get_session(healthy.id)).escalation_level == 1

    asyncio.run(_run())
