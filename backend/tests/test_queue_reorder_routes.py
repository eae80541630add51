"""
Tests for the queue reorder HTTP endpoints

Tests:
- Preview -> apply round trip over HTTP
- Status mapping: 404 missing event / plan, 400 foreign plan, 409 stale, 422 rejected preview
- Cancel endpoint
- Health endpoint
"""

from sqlmodel import select

from app.models.queue_entry import QueueEntry


def _preview_url(event_id):
    return f"/api/events/{event_id}/queue/reorder/preview"


def _apply_url(event_id):
    return f"/api/events/{event_id}/queue/reorder/apply"


def _preview(client, event_id, **body):
    return client.post(_preview_url(event_id), json=body, headers={"X-User-Name": "dj_mike"})


def test_health(client):
    response = client.get("/api/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_preview_then_apply(client, session, make_queue):
    entries = make_queue(["alice", "alice", "bob", "carol"])
    event_id = entries[0].event_id

    response = _preview(client, event_id)
    assert response.status_code == 200
    preview = response.json()
    assert set(preview) >= {"plan_id", "based_on_version", "proposed_version", "expires_at", "summary", "items"}
    assert preview["is_stale"] is False
    assert preview["summary"]["no_adjacent_repeat"] is True
    assert [item["display_index"] for item in preview["items"]] == [0, 1, 2, 3]

    response = client.post(
        _apply_url(event_id),
        json={"plan_id": preview["plan_id"], "based_on_version": preview["based_on_version"]},
    )
    assert response.status_code == 200
    applied = response.json()
    assert applied["applied_version"] == preview["proposed_version"]
    assert applied["move_count"] == preview["summary"]["move_count"]

    rows = session.exec(
        select(QueueEntry).where(QueueEntry.event_id == event_id).order_by(QueueEntry.position)
    ).all()
    assert [r.id for r in rows] == [item["queue_id"] for item in preview["items"]]

    # The plan is consumed.
    response = client.post(
        _apply_url(event_id),
        json={"plan_id": preview["plan_id"], "based_on_version": preview["based_on_version"]},
    )
    assert response.status_code == 404
    assert response.json()["detail"]["code"] == "PLAN_NOT_FOUND_OR_EXPIRED"


def test_preview_with_outdated_version_is_flagged(client, make_queue):
    entries = make_queue(["alice", "alice", "bob", "carol"])

    response = _preview(client, entries[0].event_id, based_on_version="outdated")

    assert response.status_code == 200
    body = response.json()
    assert body["is_stale"] is True
    assert "BASED_ON_VERSION_STALE" in [w["code"] for w in body["warnings"]]


def test_apply_stale_returns_409(client, make_queue):
    entries = make_queue(["alice", "alice", "bob", "carol"])
    event_id = entries[0].event_id
    preview = _preview(client, event_id).json()

    response = client.post(
        _apply_url(event_id),
        json={"plan_id": preview["plan_id"], "based_on_version": "outdated"},
    )

    assert response.status_code == 409
    detail = response.json()["detail"]
    assert detail["code"] == "PLAN_STALE"
    assert detail["expected_version"] == preview["based_on_version"]


def test_apply_foreign_plan_returns_400(client, make_queue):
    first = make_queue(["alice", "alice", "bob", "carol"])
    second = make_queue(["zed", "yan"], event_name="Saturday")
    preview = _preview(client, first[0].event_id).json()

    response = client.post(
        _apply_url(second[0].event_id),
        json={"plan_id": preview["plan_id"], "based_on_version": preview["based_on_version"]},
    )

    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "PLAN_EVENT_MISMATCH"


def test_apply_unknown_plan_returns_404(client, make_queue):
    entries = make_queue(["alice", "bob"])

    response = client.post(
        _apply_url(entries[0].event_id),
        json={"plan_id": "does-not-exist", "based_on_version": "v"},
    )

    assert response.status_code == 404


def test_apply_idempotency_key_replays(client, make_queue):
    entries = make_queue(["alice", "alice", "bob", "carol"])
    event_id = entries[0].event_id
    preview = _preview(client, event_id).json()
    body = {
        "plan_id": preview["plan_id"],
        "based_on_version": preview["based_on_version"],
        "idempotency_key": "retry-1",
    }

    first = client.post(_apply_url(event_id), json=body)
    second = client.post(_apply_url(event_id), json=body)

    assert first.status_code == 200
    assert second.status_code == 200
    assert second.json() == first.json()


def test_preview_empty_queue_returns_422(client, make_event):
    event = make_event()

    response = _preview(client, event.id)

    assert response.status_code == 422
    assert response.json()["detail"]["code"] == "QUEUE_EMPTY"


def test_preview_no_change_returns_422(client, make_queue):
    entries = make_queue(["alice", "bob", "carol"])

    response = _preview(client, entries[0].event_id)

    assert response.status_code == 422
    assert response.json()["detail"]["code"] == "NO_CHANGES"


def test_preview_unknown_event_returns_404(client):
    response = _preview(client, 424242)

    assert response.status_code == 404


def test_cancel_plan(client, make_queue):
    entries = make_queue(["alice", "alice", "bob", "carol"])
    event_id = entries[0].event_id
    preview = _preview(client, event_id).json()
    url = f"/api/events/{event_id}/queue/reorder/plans/{preview['plan_id']}"

    response = client.delete(url)
    assert response.status_code == 200
    assert response.json() == {"plan_id": preview["plan_id"], "cancelled": True}

    response = client.delete(url)
    assert response.json()["cancelled"] is False

    response = client.post(
        _apply_url(event_id),
        json={"plan_id": preview["plan_id"], "based_on_version": preview["based_on_version"]},
    )
    assert response.status_code == 404


def test_cancel_foreign_plan_returns_400(client, make_queue):
    first = make_queue(["alice", "alice", "bob", "carol"])
    second = make_queue(["zed", "yan"], event_name="Saturday")
    preview = _preview(client, first[0].event_id).json()

    response = client.delete(f"/api/events/{second[0].event_id}/queue/reorder/plans/{preview['plan_id']}")

    assert response.status_code == 400
