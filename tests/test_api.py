import pytest
from fastapi.testclient import TestClient

from api.main import DOCX_MEDIA_TYPE, app, get_gateway, sign_token, verify_token
from core.config import settings
from db.session import get_redis


@pytest.fixture
def client(gateway):
    async def no_redis():
        yield None

    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_redis] = no_redis
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def auth(user_id: str = "candidate-1") -> dict:
    return {"X-Auth-Token": sign_token(user_id)}


def open_session(client, assessment_id: str = "two", user_id: str = "candidate-1") -> dict:
    response = client.post(f"/api/assessments/{assessment_id}/session", headers=auth(user_id))
    assert response.status_code == 200
    return response.json()


def test_token_round_trip():
    assert verify_token(sign_token("candidate:with:colons")) == "candidate:with:colons"
    assert verify_token(sign_token("candidate-1", timestamp=0)) is None
    assert verify_token("candidate-1:123:forged") is None
    assert verify_token("garbage") is None


def test_requests_without_valid_token_are_rejected(client):
    assert client.get("/api/assessments/two/questions").status_code == 401
    response = client.get("/api/assessments/two/questions", headers={"X-Auth-Token": "candidate-1:1:bad"})
    assert response.status_code == 401


def test_question_bank(client):
    response = client.get("/api/assessments/two/questions", headers=auth())

    assert response.status_code == 200
    questions = response.json()
    assert [q["id"] for q in questions] == ["two-q1", "two-q2"]
    assert all("correct_answer" not in q for q in questions)
    assert client.get("/api/assessments/missing/questions", headers=auth()).status_code == 404


def test_open_session_resumes(client):
    first = open_session(client)
    second = open_session(client)

    assert first["session_id"] == second["session_id"]
    assert first["time_remaining"] == 600
    assert first["time_display"] == "10:00"
    assert first["accepts_input"] is True
    assert client.post("/api/assessments/missing/session", headers=auth()).status_code == 404


def test_answer_and_navigate(client):
    session_id = open_session(client)["session_id"]
    base = f"/api/sessions/{session_id}"

    response = client.put(f"{base}/answers/two-q1", json={"kind": "choice", "value": "A"}, headers=auth())
    assert response.json()["accepted"] is True
    assert response.json()["progress"]["answered_count"] == 1

    response = client.put(f"{base}/answers/unknown", json={"kind": "choice", "value": "A"}, headers=auth())
    assert response.json()["accepted"] is False

    assert client.post(f"{base}/review/two-q2", headers=auth()).json() == {"accepted": True, "marked": True}
    assert client.post(f"{base}/navigate", json={"direction": "next"}, headers=auth()).json() == {"current_question_index": 1}
    assert client.post(f"{base}/navigate", json={"index": 50}, headers=auth()).json() == {"current_question_index": 1}

    progress = client.get(f"{base}/progress", headers=auth()).json()
    assert progress["answered_count"] == 1
    assert progress["review_count"] == 1


def test_submit_flow_and_result(client):
    session_id = open_session(client)["session_id"]
    base = f"/api/sessions/{session_id}"
    client.put(f"{base}/answers/two-q1", json={"kind": "choice", "value": "A"}, headers=auth())

    assert client.get(f"{base}/result", headers=auth()).status_code == 409

    warned = client.post(f"{base}/submit", headers=auth()).json()
    assert warned["state"] == "warned"
    assert warned["unanswered"] == ["two-q2"]

    submitted = client.post(f"{base}/submit", headers=auth()).json()
    assert submitted["state"] == "submitting"
    assert submitted["result"]["score"] == 10
    assert submitted["result"]["percentage"] == 50
    assert submitted["result"]["passed"] is True

    view = client.get(base, headers=auth()).json()
    assert view["completed"] is True
    assert view["accepts_input"] is False

    result = client.get(f"{base}/result", headers=auth()).json()
    assert result["id"] == submitted["result"]["id"]

    report = client.get(f"{base}/result/report", headers=auth())
    assert report.status_code == 200
    assert report.headers["content-type"] == DOCX_MEDIA_TYPE
    assert report.content[:2] == b"PK"


def test_submit_cancel(client):
    session_id = open_session(client)["session_id"]
    base = f"/api/sessions/{session_id}"

    assert client.post(f"{base}/submit", headers=auth()).json()["state"] == "warned"
    assert client.post(f"{base}/submit/cancel", headers=auth()).json() == {"status": "success"}
    assert client.post(f"{base}/submit", headers=auth()).json()["state"] == "warned"


def test_integrity_events(client):
    session_id = open_session(client)["session_id"]
    base = f"/api/sessions/{session_id}"

    for _ in range(3):
        hidden = client.post(f"{base}/events/visibility", json={"state": "hidden"}, headers=auth()).json()
        client.post(f"{base}/events/visibility", json={"state": "visible"}, headers=auth())
    assert hidden == {"counted": True, "tab_switch_count": 3, "warning_pending": True}

    blocked = client.put(f"{base}/answers/two-q1", json={"kind": "choice", "value": "A"}, headers=auth()).json()
    assert blocked["accepted"] is False

    view = client.post(f"{base}/warning/ack", headers=auth()).json()
    assert view["warning_pending"] is False
    assert view["knockout"] is True
    assert any("tab switches" in notice for notice in view["notices"])

    verdict = client.post(f"{base}/events/clipboard", json={"action": "paste"}, headers=auth()).json()
    assert verdict["prevent_default"] is True
    assert verdict["counted"] is True

    presence = client.post(f"{base}/events/presence", json={"visible": False}, headers=auth()).json()
    assert presence == {"violation": None}


def test_pause_is_disabled_by_default(client):
    session_id = open_session(client)["session_id"]
    assert client.post(f"/api/sessions/{session_id}/pause", json={}, headers=auth()).status_code == 403
    assert client.post(f"/api/sessions/{session_id}/resume", headers=auth()).status_code == 403


def test_pause_when_enabled(client, monkeypatch):
    monkeypatch.setattr(settings, "ALLOW_CANDIDATE_PAUSE", True)
    session_id = open_session(client)["session_id"]

    paused = client.post(f"/api/sessions/{session_id}/pause", json={"reason": "break"}, headers=auth()).json()
    assert paused["is_paused"] is True
    resumed = client.post(f"/api/sessions/{session_id}/resume", headers=auth()).json()
    assert resumed["is_paused"] is False


def test_sessions_are_private(client):
    session_id = open_session(client)["session_id"]

    assert client.get(f"/api/sessions/{session_id}", headers=auth("intruder")).status_code == 404
    assert client.get("/api/sessions/does-not-exist", headers=auth()).status_code == 404


def test_reset_runtime_keeps_persisted_state(client, gateway):
    session_id = open_session(client)["session_id"]
    base = f"/api/sessions/{session_id}"
    client.put(f"{base}/answers/two-q2", json={"kind": "choice", "value": "B"}, headers=auth())

    assert client.delete(f"{base}/runtime", headers=auth()).status_code == 200
    assert gateway.sessions[session_id].answers["two-q2"].value == "B"

    view = client.get(base, headers=auth()).json()
    assert view["answers"]["two-q2"] == {"kind": "choice", "value": "B"}
