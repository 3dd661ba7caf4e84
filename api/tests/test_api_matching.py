from datetime import datetime, timedelta, timezone

import pytest

pytest.importorskip("fastapi")
import jwt
from fastapi.testclient import TestClient

import matchengine.main as m
from conftest import BASE_TIME, EVENT_ID, trait_vector
from matchengine.auth import security
from matchengine.sources import PaidTicket, PersonalityProfile

SECRET = "test-secret"


def _token(role: str, scope: str = "admin") -> dict[str, str]:
    payload = {
        "sub": f"{role}-1",
        "email": f"{role}@example.com",
        "role": role,
        "scope": scope,
        "exp": datetime.now(timezone.utc) + timedelta(minutes=10),
    }
    return {"Authorization": f"Bearer {jwt.encode(payload, SECRET, algorithm='HS256')}"}


def _seed(source, indexes):
    source.add_event(EVENT_ID)
    for i in indexes:
        user_id = f"user-{i:03d}"
        source.add_ticket(EVENT_ID, PaidTicket(user_id, f"txn-{i:03d}", BASE_TIME + timedelta(minutes=i)))
        source.add_profile(PersonalityProfile(user_id=user_id, trait_vector=trait_vector(i)))


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setattr(m.config, "MATCHING_BACKEND", "memory")
    monkeypatch.setattr(m.config, "CHAT_PROVISIONER_URL", "")
    monkeypatch.setattr(m.config, "ADMIN_TOKEN", "dev-token")
    monkeypatch.setattr(security, "JWT_SECRET", SECRET)
    with TestClient(m.app) as c:
        _seed(m.app.state.source, range(1, 11))
        yield c


def _url(path: str) -> str:
    return f"/events/{EVENT_ID}/matching{path}"


def test_health_needs_no_auth(client):
    assert client.get(_url("/health")).json() == {"status": "ok", "event_id": EVENT_ID}
    assert client.get("/_scaffold/matching/health").status_code == 404


def test_admin_auth_is_required(client):
    assert client.post(_url("/preview")).status_code == 401
    assert client.post(_url("/preview"), headers={"Authorization": "Bearer not-a-jwt"}).status_code == 401
    assert client.post(_url("/preview"), headers=_token("viewer", scope="user")).status_code == 401
    assert client.post(_url("/preview"), headers={"X-Admin-Token": "wrong"}).status_code == 401


def test_viewer_can_preview_but_not_trigger(client):
    preview = client.post(_url("/preview"), headers=_token("viewer"))
    assert preview.status_code == 200
    assert preview.json()["run"]["status"] == "PREVIEW"
    assert [g["size"] for g in preview.json()["groups"]] == [5, 5]

    assert client.post(_url("/trigger"), headers=_token("viewer")).status_code == 403


def test_trigger_then_repeat_is_idempotent(client):
    first = client.post(_url("/trigger"), headers=_token("operator"))
    assert first.status_code == 200
    body = first.json()
    assert body["created"] is True
    assert body["run"]["created_by"] == "operator-1"
    assert [g["group_number"] for g in body["groups"]] == [1, 2]

    second = client.post(_url("/trigger"), headers=_token("operator")).json()
    assert second["created"] is False
    assert second["run"]["id"] == body["run"]["id"]

    results = client.get(_url("/results"), headers=_token("viewer")).json()
    assert results["statistics"]["total_assigned"] == 10
    history = client.get(_url("/history"), headers=_token("viewer")).json()
    assert [a["action"] for a in history["audit"]] == ["trigger"]


def test_errors_render_code_message_and_details(client):
    response = client.get(_url("/results"), headers=_token("viewer"))
    assert response.status_code == 404
    assert response.json() == {
        "error": "no_committed_run",
        "message": f"Event {EVENT_ID} has no committed matching run",
        "details": {"event_id": EVENT_ID},
    }

    missing = client.post("/events/evt-missing/matching/trigger", headers=_token("operator"))
    assert missing.status_code == 404
    assert missing.json()["error"] == "event_not_found"


def test_override_endpoints(client):
    groups = client.post(_url("/trigger"), headers=_token("operator")).json()["groups"]
    a, b = groups[0], groups[1]
    _seed(m.app.state.source, [11, 12, 13, 14, 15])
    headers = _token("operator")

    assigned = client.post(
        _url("/assign"),
        json={"user_id": "user-011", "group_id": a["id"], "expected_version": a["version"]},
        headers=headers,
    )
    assert assigned.status_code == 200
    assert assigned.json()["group"]["size"] == 6

    full = client.post(_url("/assign"), json={"user_id": "user-012", "group_id": a["id"]}, headers=headers)
    assert full.status_code == 409
    assert full.json()["error"] == "group_capacity_exceeded"

    mover = b["members"][0]["user_id"]
    moved = client.post(
        _url("/move"),
        json={"user_id": mover, "from_group_id": b["id"], "to_group_id": a["id"]},
        headers=headers,
    )
    assert moved.status_code == 409

    removed = client.post(_url("/remove"), json={"user_id": "user-011", "group_id": a["id"]}, headers=headers)
    assert removed.status_code == 200
    assert removed.json()["group"]["size"] == 5

    created = client.post(
        _url("/groups"),
        json={"member_ids": ["user-012", "user-013", "user-014", "user-015"], "note": "friends"},
        headers=headers,
    )
    assert created.status_code == 200
    assert created.json()["group"]["group_number"] == 3
    assert created.json()["group"]["is_manual"] is True

    bulk = client.post(
        _url("/bulk-assign"),
        json={
            "assignments": [
                {"user_id": "user-011", "group_id": b["id"]},
                {"user_id": "user-999", "group_id": b["id"]},
            ]
        },
        headers=headers,
    )
    assert bulk.status_code == 200
    assert bulk.json()["success_count"] == 1
    assert bulk.json()["results"][1]["error"] == "participant_not_eligible"

    user_group = client.get(_url("/users/user-011"), headers=_token("viewer")).json()["group"]
    assert user_group["id"] == b["id"]
    unassigned = client.get(_url("/unassigned"), headers=_token("viewer")).json()
    assert unassigned["total"] == 0
    counts = client.get(_url("/eligibility"), headers=_token("viewer")).json()
    assert counts["already_grouped"] == 15


def test_invalidate_requires_admin_role(client):
    client.post(_url("/trigger"), headers=_token("operator"))
    assert client.post(_url("/invalidate"), headers=_token("operator")).status_code == 403

    response = client.post(_url("/invalidate"), headers=_token("admin"))
    assert response.status_code == 200
    assert response.json()["run"]["status"] == "SUPERSEDED"


def test_dev_admin_token_acts_as_admin(client):
    response = client.post(_url("/trigger"), headers={"X-Admin-Token": "dev-token"})
    assert response.status_code == 200
    assert response.json()["run"]["created_by"] == "dev-admin"


def test_auto_trigger_endpoint_requires_admin_and_matches_due_events(client):
    source = m.app.state.source
    starts_at = datetime.now(timezone.utc) + timedelta(hours=24, minutes=30)
    source.add_event("evt-tomorrow", starts_at=starts_at)
    for i in range(1, 11):
        user_id = f"user-{i:03d}"
        source.add_ticket("evt-tomorrow", PaidTicket(user_id, f"txn-t{i:03d}", BASE_TIME + timedelta(minutes=i)))

    assert client.post("/matching/auto-trigger", headers=_token("operator")).status_code == 403

    response = client.post("/matching/auto-trigger", headers=_token("admin"))
    assert response.status_code == 200
    body = response.json()
    assert body["processed"] == 1
    assert body["events"][0]["event_id"] == "evt-tomorrow"
    assert body["groups_formed"] == 2

    results = client.get("/events/evt-tomorrow/matching/results", headers=_token("viewer")).json()
    assert results["run"]["created_by"] == "system"

    again = client.post("/matching/auto-trigger", headers=_token("admin")).json()
    assert again["processed"] == 0
    assert again["skipped"] == 1
