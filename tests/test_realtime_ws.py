import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from conftest import COURIER, RESTAURANT, STUDENT, order_payload, token_for
from main import app
from services.order_service.service import sla_supervisor
from services.realtime_service.hub import hub

STUDENT_WS = f"/ws?token={token_for('student-1')}"
OTHER_STUDENT_WS = f"/ws?token={token_for('student-2')}"
RESTAURANT_WS = f"/ws?token={token_for('staff-1', 'restaurant', 1)}"
OTHER_RESTAURANT_WS = f"/ws?token={token_for('staff-2', 'restaurant', 2)}"
COURIER_WS = f"/ws?token={token_for('courier-1', 'courier', 1)}"


@pytest.fixture
def live(overrides):
    with TestClient(app) as client:
        yield client


def place(client, headers=STUDENT, **overrides):
    resp = client.post("/orders", json=order_payload(**overrides), headers=headers)
    assert resp.status_code == 201, resp.text
    return resp.json()


def subscribe(ws, order_id, role="student"):
    ws.send_json({"type": "subscribe", "role": role, "orderId": order_id})
    ack = ws.receive_json()
    assert ack == {"type": "subscribed", "orderId": order_id, "role": role}


def test_subscriber_receives_status_changes(live):
    order = place(live)
    with live.websocket_connect(STUDENT_WS) as ws:
        subscribe(ws, order["id"])
        live.put(f"/orders/{order['id']}/status", json={"status": "preparing"}, headers=RESTAURANT)
        event = ws.receive_json()

    assert event["type"] == "status_changed"
    assert event["orderId"] == order["id"]
    assert event["status"] == "preparing"
    assert "timestamp" in event


def test_events_stay_in_their_room(live):
    watched = place(live)
    other = place(live)
    with live.websocket_connect(STUDENT_WS) as ws:
        subscribe(ws, watched["id"])
        live.put(f"/orders/{other['id']}/status", json={"status": "preparing"}, headers=RESTAURANT)
        live.put(f"/orders/{watched['id']}/status", json={"status": "canceled"}, headers=RESTAURANT)
        event = ws.receive_json()

    # The first event this socket sees is for its own order
    assert event["orderId"] == watched["id"]
    assert event["status"] == "canceled"
    assert event["reason"] == "restaurant_rejected"


def test_auto_cancel_is_pushed_with_reason(live):
    order = place(live)
    with live.websocket_connect(RESTAURANT_WS) as ws:
        subscribe(ws, order["id"], role="restaurant")
        assert live.portal.call(sla_supervisor.fire, order["id"]) is True
        event = ws.receive_json()

    assert event["status"] == "canceled"
    assert event["reason"] == "sla_timeout"


def test_nudge_reaches_the_restaurant_console(live):
    order = place(live)
    with live.websocket_connect(RESTAURANT_WS) as ws:
        subscribe(ws, order["id"], role="restaurant")
        assert live.post(f"/orders/{order['id']}/nudge", headers=STUDENT).status_code == 200
        event = ws.receive_json()

    assert event["type"] == "nudge"
    assert event["orderId"] == order["id"]


def test_courier_location_reaches_everyone_else(live):
    order = place(live)
    with live.websocket_connect(STUDENT_WS) as student, live.websocket_connect(COURIER_WS) as courier:
        subscribe(student, order["id"])
        subscribe(courier, order["id"], role="courier")
        courier.send_json({"type": "location", "orderId": order["id"], "lat": 35.14, "lng": 33.91})
        event = student.receive_json()

    assert event["type"] == "location"
    assert (event["lat"], event["lng"]) == (35.14, 33.91)


def test_rest_location_is_pushed_too(live):
    order = place(live)
    with live.websocket_connect(STUDENT_WS) as ws:
        subscribe(ws, order["id"])
        resp = live.post(f"/orders/{order['id']}/location", json={"lat": 35.1, "lng": 33.9}, headers=COURIER)
        event = ws.receive_json()

    assert resp.json()["delivered"] == 1
    assert event["type"] == "location"


def test_only_couriers_share_location(live):
    order = place(live)
    with live.websocket_connect(STUDENT_WS) as ws:
        subscribe(ws, order["id"])
        ws.send_json({"type": "location", "orderId": order["id"], "lat": 1.0, "lng": 2.0})
        reply = ws.receive_json()

    assert reply["type"] == "error"


@pytest.mark.parametrize("path", ["/ws", "/ws?token=not-a-jwt"])
def test_socket_without_a_valid_token_is_refused(live, path):
    order = place(live)
    with pytest.raises(WebSocketDisconnect) as exc_info:
        with live.websocket_connect(path) as ws:
            ws.send_json({"type": "subscribe", "role": "courier", "orderId": order["id"]})
            ws.send_json({"type": "location", "orderId": order["id"], "lat": 1.0, "lng": 2.0})
            ws.receive_json()

    assert exc_info.value.code == 1008
    assert hub.room_size(order["id"]) == 0


def test_token_in_authorization_header_is_accepted(live):
    order = place(live)
    with live.websocket_connect("/ws", headers=STUDENT) as ws:
        subscribe(ws, order["id"])


def test_role_must_match_the_token(live):
    order = place(live)
    with live.websocket_connect(STUDENT_WS) as ws:
        ws.send_json({"type": "subscribe", "role": "courier", "orderId": order["id"]})
        reply = ws.receive_json()
        # Without the courier room a student cannot push a location either
        ws.send_json({"type": "location", "orderId": order["id"], "lat": 1.0, "lng": 2.0})
        location_reply = ws.receive_json()

    assert reply["type"] == "error"
    assert location_reply["type"] == "error"
    assert hub.room_size(order["id"]) == 0


@pytest.mark.parametrize(
    "path, role",
    [(OTHER_STUDENT_WS, "student"), (OTHER_RESTAURANT_WS, "restaurant")],
)
def test_foreign_orders_cannot_be_watched(live, path, role):
    order = place(live)
    with live.websocket_connect(path) as ws:
        ws.send_json({"type": "subscribe", "role": role, "orderId": order["id"]})
        reply = ws.receive_json()

    assert reply["type"] == "error"
    assert hub.room_size(order["id"]) == 0


def test_unknown_order_cannot_be_watched(live):
    with live.websocket_connect(STUDENT_WS) as ws:
        ws.send_json({"type": "subscribe", "role": "student", "orderId": 9999})
        assert ws.receive_json()["type"] == "error"


def test_bad_messages_get_an_error_and_keep_the_socket(live):
    order = place(live)
    with live.websocket_connect(STUDENT_WS) as ws:
        ws.send_text("not json")
        assert ws.receive_json()["type"] == "error"
        ws.send_json({"type": "subscribe", "role": "admin", "orderId": order["id"]})
        assert ws.receive_json()["type"] == "error"
        subscribe(ws, order["id"])


def test_unsubscribe_and_disconnect_leave_the_room(live):
    order = place(live)
    with live.websocket_connect(STUDENT_WS) as ws:
        subscribe(ws, order["id"])
        assert hub.room_size(order["id"]) == 1
        ws.send_json({"type": "unsubscribe", "orderId": order["id"]})
        assert ws.receive_json() == {"type": "unsubscribed", "orderId": order["id"]}
        assert hub.room_size(order["id"]) == 0
        subscribe(ws, order["id"])

    # Closing the socket runs the server-side cleanup before the session returns
    with live.websocket_connect(STUDENT_WS) as ws:
        ws.send_json({"type": "unsubscribe", "orderId": order["id"]})
        ws.receive_json()
    assert hub.room_count == 0
