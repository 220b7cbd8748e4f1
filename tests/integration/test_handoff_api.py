from __future__ import annotations

from fastapi.testclient import TestClient

from api.main import create_app

ADMIN = {"X-Role": "ADMIN"}


def _professional(pid: str, **fields) -> dict:
    body = {"id": pid, "role_id": "therapist", "full_name": f"Pro {pid}", "approval_status": "approved"}
    body.update(fields)
    return body


def _client(orchestrator) -> TestClient:
    client = TestClient(create_app(orchestrator))
    assert client.put("/api/v1/admin/roles", json={"id": "therapist", "name": "Therapist"}, headers=ADMIN).status_code == 200
    for pid, rating in [("p1", 4.9), ("p2", 4.1)]:
        assert client.put("/api/v1/admin/professionals", json=_professional(pid, rating_average=rating), headers=ADMIN).status_code == 200
        presence = client.post(
            f"/api/v1/admin/professionals/{pid}/presence",
            json={"status": "online"},
            headers={"X-Role": "PROFESSIONAL", "X-Actor-Id": pid},
        )
        assert presence.status_code == 200, presence.text
    return client


def test_request_accept_and_end_over_http(orchestrator):
    client = _client(orchestrator)
    resp = client.post(
        "/api/v1/sessions/request",
        json={"conversation_id": "conv-1", "user_id": "user-1", "role_id": "therapist", "consent": True},
    )
    assert resp.status_code == 200, resp.text
    session = resp.json()["session"]
    assert session["professional_id"] == "p1"
    assert session["status"] == "pending_acceptance"

    pending = client.get("/api/v1/sessions/pending/p1", headers={"X-Role": "PROFESSIONAL", "X-Actor-Id": "p1"})
    assert [s["id"] for s in pending.json()["sessions"]] == [session["id"]]

    wrong = client.post(f"/api/v1/sessions/{session['id']}/accept", headers={"X-Role": "PROFESSIONAL", "X-Actor-Id": "p2"})
    assert wrong.status_code == 403
    assert wrong.json()["error"] == "unauthorized"

    accepted = client.post(f"/api/v1/sessions/{session['id']}/accept", headers={"X-Role": "PROFESSIONAL", "X-Actor-Id": "p1"})
    assert accepted.status_code == 200
    assert accepted.json()["session"]["status"] == "active"

    twice = client.post(f"/api/v1/sessions/{session['id']}/accept", headers={"X-Role": "PROFESSIONAL", "X-Actor-Id": "p1"})
    assert twice.status_code == 409
    assert twice.json()["error"] == "invalid_state"

    conflict = client.post(
        "/api/v1/sessions",
        json={"conversation_id": "conv-1", "user_id": "user-1", "professional_id": "p2", "role_id": "therapist", "consent": True},
    )
    assert conflict.status_code == 409
    assert conflict.json()["error"] == "active_session_exists"

    by_conversation = client.get("/api/v1/sessions/by-conversation/conv-1")
    assert by_conversation.json()["session"]["id"] == session["id"]

    ended = client.post(
        f"/api/v1/sessions/{session['id']}/end",
        json={"ended_by": "user", "reason": "all good"},
        headers={"X-Role": "USER", "X-Actor-Id": "user-1"},
    )
    assert ended.status_code == 200
    assert ended.json()["session"]["ended_by"] == "user"
    assert client.get("/api/v1/sessions/by-conversation/conv-1").json()["session"] is None


def test_decline_over_http_rematches(orchestrator):
    client = _client(orchestrator)
    created = client.post(
        "/api/v1/sessions",
        json={"conversation_id": "conv-1", "user_id": "user-1", "professional_id": "p1", "role_id": "therapist", "consent": True},
    ).json()
    resp = client.post(
        f"/api/v1/sessions/{created['id']}/decline",
        json={"professional_id": "p1"},
        headers={"X-Role": "PROFESSIONAL"},
    )
    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["new_session"]["professional_id"] == "p2"
    assert body["new_session"]["escalation_level"] == 1


def test_escalation_endpoints(orchestrator, clock):
    client = _client(orchestrator)
    rule = {
        "id": "timeout",
        "role_id": "therapist",
        "trigger_type": "timeout",
        "timeout_seconds": 300,
        "require_user_confirmation": True,
    }
    assert client.put("/api/v1/admin/rules", json=rule, headers=ADMIN).status_code == 200
    assert [r["id"] for r in client.get("/api/v1/admin/rules", headers=ADMIN).json()["rules"]] == ["timeout"]

    created = client.post(
        "/api/v1/sessions",
        json={"conversation_id": "conv-1", "user_id": "user-1", "professional_id": "p1", "role_id": "therapist", "consent": True},
    ).json()
    clock.advance(minutes=6)

    evaluation = client.get(f"/api/v1/escalations/sessions/{created['id']}/evaluation", headers={"X-Role": "SYSTEM"})
    assert evaluation.json()["should_escalate"] is True

    escalated = client.post(f"/api/v1/escalations/sessions/{created['id']}", json={"reason": "no response"}).json()
    assert escalated["awaiting_confirmation"] is True
    assert escalated["to_professional_id"] == "p2"

    accepted = client.post(
        f"/api/v1/escalations/{escalated['event_id']}/accept",
        json={"session_id": created["id"], "new_professional_id": "p2"},
    )
    assert accepted.status_code == 200
    session = client.get(f"/api/v1/sessions/{created['id']}").json()
    assert session["professional_id"] == "p2"
    assert session["escalation_level"] == 1

    again = client.post(
        f"/api/v1/escalations/{escalated['event_id']}/accept",
        json={"session_id": created["id"], "new_professional_id": "p2"},
    )
    assert again.status_code == 409


def test_admin_guards_sweeps_and_matching(orchestrator):
    client = _client(orchestrator)
    assert client.put("/api/v1/admin/rules", json={"trigger_type": "timeout"}).status_code == 403
    spoofed = client.post(
        "/api/v1/admin/professionals/p1/presence",
        json={"status": "offline"},
        headers={"X-Role": "PROFESSIONAL", "X-Actor-Id": "p2"},
    )
    assert spoofed.status_code == 403

    sweep = client.post("/api/v1/admin/sweeps/timeouts", headers={"X-Role": "SYSTEM"})
    assert sweep.status_code == 200
    assert sweep.json()["sweep"] == "timeout"
    assert client.post("/api/v1/admin/sweeps/inactivity", headers=ADMIN).json()["sweep"] == "inactivity"

    matches = client.post("/api/v1/matching/professionals", json={"role_id": "therapist", "requires_online_only": True})
    assert [m["professional_id"] for m in matches.json()["matches"]] == ["p1", "p2"]

    availability = client.get("/api/v1/matching/professionals/p1/availability")
    assert availability.json()["can_accept"] is True

    assert client.get("/api/v1/sessions/missing").status_code == 404


def test_conversation_messages_and_non_agreement(orchestrator):
    client = _client(orchestrator)
    created = client.post(
        "/api/v1/sessions",
        json={"conversation_id": "conv-1", "user_id": "user-1", "professional_id": "p1", "role_id": "therapist", "consent": True},
    ).json()
    client.post(f"/api/v1/sessions/{created['id']}/accept", headers={"X-Role": "PROFESSIONAL", "X-Actor-Id": "p1"})
    for text in ["hi", "I'm confused", "this isn't working for me"]:
        resp = client.post("/api/v1/conversations/conv-1/messages", json={"role": "user", "content": text})
        assert resp.status_code == 200
    result = client.get("/api/v1/conversations/conv-1/non-agreement").json()
    assert result["should_escalate"] is True
    assert result["suggestion"]


def test_health_endpoint(orchestrator):
    resp = TestClient(create_app(orchestrator)).get("/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["service"] == "professional-handoff"
    assert data["llm_runtime_available"] is False


def test_end_requires_caller_to_match_ended_by(orchestrator):
    client = _client(orchestrator)
    created = client.post(
        "/api/v1/sessions",
        json={"conversation_id": "conv-1", "user_id": "user-1", "professional_id": "p1", "role_id": "therapist", "consent": True},
    ).json()
    client.post(f"/api/v1/sessions/{created['id']}/accept", headers={"X-Role": "PROFESSIONAL", "X-Actor-Id": "p1"})
    url = f"/api/v1/sessions/{created['id']}/end"

    spoofed = client.post(url, json={"ended_by": "admin"}, headers={"X-Role": "USER", "X-Actor-Id": "someone-else"})
    assert spoofed.status_code == 403
    assert spoofed.json()["error"] == "unauthorized"
    anonymous = client.post(url, json={"ended_by": "user"}, headers={"X-Role": "USER"})
    assert anonymous.status_code == 403
    stranger = client.post(url, json={"ended_by": "user"}, headers={"X-Role": "USER", "X-Actor-Id": "someone-else"})
    assert stranger.status_code == 403
    assert client.get(f"/api/v1/sessions/{created['id']}").json()["status"] == "active"

    ended = client.post(url, json={"ended_by": "admin", "reason": "moderation"}, headers=ADMIN)
    assert ended.status_code == 200
    assert ended.json()["session"]["ended_by"] == "admin"


def test_best_match_and_presence_override(orchestrator):
    client = _client(orchestrator)
    best = client.get("/api/v1/matching/roles/therapist/best-match")
    assert best.status_code == 200
    assert best.json()["professional_id"] == "p1"

    missing = client.get("/api/v1/matching/roles/dietitian/best-match")
    assert missing.status_code == 422
    assert missing.json()["error"] == "no_candidates"

    self_override = client.post(
        "/api/v1/admin/professionals/p1/presence",
        json={"status": "online", "override": True},
        headers={"X-Role": "PROFESSIONAL", "X-Actor-Id": "p1"},
    )
    assert self_override.status_code == 403
    pinned = client.post("/api/v1/admin/professionals/p1/presence", json={"status": "online", "override": True}, headers=ADMIN)
    assert pinned.status_code == 200
    assert pinned.json()["status_override"] is True

    sweep = client.post("/api/v1/admin/sweeps/quiet-hours", headers={"X-Role": "SYSTEM"})
    assert sweep.status_code == 200
    assert sweep.json()["sweep"] == "quiet_hours"
