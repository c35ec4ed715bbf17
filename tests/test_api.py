import uuid
from datetime import timedelta

from models import LaneSessionStatus, RentalTier, Resource, ResourceStatus
from services.time_service import utcnow
from conftest import SIGNATURE, event_types


def _start(client, lane_id, customer):
    response = client.post(f"/api/lanes/{lane_id}/start", json={"customer_id": str(customer.id)})
    assert response.status_code == 200, response.text
    return response.json()


def _lock(client, lane_id, tier="STANDARD"):
    response = client.post(
        f"/api/lanes/{lane_id}/propose-selection",
        json={"rental_type": tier, "proposed_by": "CUSTOMER"},
    )
    assert response.status_code == 200, response.text
    response = client.post(f"/api/lanes/{lane_id}/confirm-selection", json={"confirmed_by": "EMPLOYEE"})
    assert response.status_code == 200, response.text
    return response.json()


def test_full_checkin_flow(client, db, make_customer, make_resource, agreement, events):
    customer = make_customer(name="Dana")
    room = make_resource("101", tier=RentalTier.STANDARD)

    started = _start(client, "lane-1", customer)
    assert started["mode"] == "INITIAL"
    assert started["past_due_blocked"] is False

    locked = _lock(client, "lane-1")
    assert locked["selection_confirmed"] is True
    assert locked["selection_confirmed_by"] == "EMPLOYEE"

    response = client.post(
        "/api/lanes/lane-1/assign",
        json={"resource_type": "room", "resource_id": str(room.id)},
    )
    assert response.status_code == 200, response.text
    assert response.json()["needs_confirmation"] is False

    response = client.post("/api/lanes/lane-1/payment-intent")
    assert response.status_code == 200, response.text
    intent = response.json()
    assert intent["status"] == "DUE"
    assert intent["quote"]["messages"] == ["No refunds"]

    response = client.post(
        f"/api/payments/{intent['payment_intent_id']}/mark-paid",
        json={"payment_method": "CASH"},
    )
    assert response.status_code == 200
    assert response.json()["already_paid"] is False

    response = client.post(
        "/api/lanes/lane-1/sign-agreement",
        json={"signature_payload": SIGNATURE, "session_id": started["session_id"]},
    )
    assert response.status_code == 200, response.text
    signed = response.json()
    assert signed["resource_number"] == "101"
    assert signed["signature_method"] == "DIGITAL"

    db.expire_all()
    assert db.get(Resource, room.id).status == ResourceStatus.OCCUPIED

    state = client.get("/api/lanes/lane-1/session").json()
    assert state["status"] == LaneSessionStatus.COMPLETED.value
    assert state["agreement_signed"] is True
    assert state["assigned_resource_number"] == "101"

    updates = [m for m in events if m["type"] == "SESSION_UPDATED"]
    assert updates[-1]["payload"]["status"] == "COMPLETED"
    assert "ASSIGNMENT_CREATED" in event_types(events, "lane-1")


def test_mark_paid_twice_reports_already_paid(client, make_customer):
    _start(client, "lane-1", make_customer())
    _lock(client, "lane-1")
    intent_id = client.post("/api/lanes/lane-1/payment-intent").json()["payment_intent_id"]

    client.post(f"/api/payments/{intent_id}/mark-paid", json={})
    response = client.post(f"/api/payments/{intent_id}/mark-paid", json={})

    assert response.status_code == 200
    assert response.json()["already_paid"] is True
    assert response.json()["status"] == "PAID"


def test_mark_paid_unknown_intent_is_404(client):
    response = client.post(f"/api/payments/{uuid.uuid4()}/mark-paid", json={})
    assert response.status_code == 404
    assert response.json()["detail"]["kind"] == "NOT_FOUND"


def test_propose_after_lock_returns_409_with_code(client, make_customer):
    _start(client, "lane-1", make_customer())
    _lock(client, "lane-1")

    response = client.post(
        "/api/lanes/lane-1/propose-selection",
        json={"rental_type": "DOUBLE", "proposed_by": "CUSTOMER"},
    )

    assert response.status_code == 409
    assert response.json()["detail"] == {
        "kind": "CONFLICT",
        "message": "Selection is already locked",
        "code": "SELECTION_LOCKED",
    }


def test_reset_unknown_lane_is_404_and_repeat_reset_succeeds(client, make_customer):
    assert client.post("/api/lanes/lane-7/reset").status_code == 404

    _start(client, "lane-1", make_customer())
    first = client.post("/api/lanes/lane-1/reset")
    second = client.post("/api/lanes/lane-1/reset")

    assert first.status_code == 200
    assert first.json()["already_completed"] is False
    assert second.status_code == 200
    assert second.json() == {"success": True, "session_id": None, "already_completed": True}


def test_banned_customer_start_is_403(client, make_customer):
    customer = make_customer(banned_until=utcnow() + timedelta(days=1))
    response = client.post("/api/lanes/lane-1/start", json={"customer_id": str(customer.id)})

    assert response.status_code == 403
    assert response.json()["detail"]["code"] == "CUSTOMER_BANNED"


def test_assign_conflict_between_lanes(client, make_customer, make_resource, events):
    room = make_resource("101", tier=RentalTier.STANDARD)
    for lane_id, name in (("lane-1", "A"), ("lane-2", "B")):
        _start(client, lane_id, make_customer(name=name))
        _lock(client, lane_id)

    body = {"resource_type": "room", "resource_id": str(room.id)}
    assert client.post("/api/lanes/lane-1/assign", json=body).status_code == 200
    response = client.post("/api/lanes/lane-2/assign", json=body)

    assert response.status_code == 409
    assert response.json()["detail"]["code"] == "RESOURCE_ALREADY_ASSIGNED"
    assert "ASSIGNMENT_FAILED" in event_types(events, "lane-2")


def test_sign_before_payment_is_400(client, make_customer, agreement):
    _start(client, "lane-1", make_customer())
    _lock(client, "lane-1")

    response = client.post("/api/lanes/lane-1/sign-agreement", json={"signature_payload": SIGNATURE})
    assert response.status_code == 400
    assert response.json()["detail"]["kind"] == "VALIDATION"


def test_past_due_bypass_wrong_pin_is_401(client, make_customer, admin):
    _start(client, "lane-1", make_customer(past_due_balance=30))

    response = client.post(
        "/api/lanes/lane-1/past-due/bypass",
        json={"manager_id": str(admin.id), "manager_pin": "0000"},
    )
    assert response.status_code == 401

    response = client.post(
        "/api/lanes/lane-1/past-due/bypass",
        json={"manager_id": str(admin.id), "manager_pin": "1234"},
    )
    assert response.status_code == 200
    assert response.json()["past_due_bypassed"] is True


def test_waitlist_info_endpoint(client):
    response = client.get(
        "/api/lanes/lane-1/waitlist-info",
        params={"desired_tier": "SPECIAL", "current_tier": "STANDARD"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["position"] == 1
    assert body["estimated_ready_at"] is None
    assert body["upgrade_fee"] == 19


def test_session_endpoint_without_session_is_404(client):
    assert client.get("/api/lanes/lane-1/session").status_code == 404


def test_websocket_sends_snapshot_then_events(client, session_factory, make_customer, monkeypatch):
    monkeypatch.setattr("api.websocket.SessionLocal", session_factory)
    started = _start(client, "lane-1", make_customer(name="Kiosk"))

    with client.websocket_connect("/ws/lanes/lane-1") as ws:
        snapshot = ws.receive_json()
        assert snapshot["type"] == "SESSION_UPDATED"
        assert snapshot["payload"]["session_id"] == started["session_id"]

        client.post(
            "/api/lanes/lane-1/propose-selection",
            json={"rental_type": "LOCKER", "proposed_by": "CUSTOMER"},
        )
        proposed = ws.receive_json()
        assert proposed["type"] == "SELECTION_PROPOSED"
        assert ws.receive_json()["payload"]["proposed_rental_type"] == "LOCKER"
