from datetime import datetime, timezone

import server
from conftest import login
from planboard.events import ChangeEvent, EventKind, NOTIFICATIONS_CHANNEL, ORDERS_CHANNEL


def record(hub, channel):
    got = []
    hub.subscribe(channel, got.append)
    return got


class TestAuth:
    def test_health_is_public(self, http):
        resp = http.get("/api/health")
        assert resp.status_code == 200
        assert resp.get_json()["transport"] == "connected"

    def test_login_and_me(self, http, planner):
        me = http.get("/api/auth/me", headers=planner).get_json()
        assert me["username"] == "planner"
        assert "pin" not in me

    def test_wrong_pin(self, http):
        resp = http.post("/api/auth/login", json={"username": "planner", "pin": "9999"})
        assert resp.status_code == 401

    def test_requires_token(self, http):
        assert http.get("/api/orders").status_code == 401
        assert http.get("/api/orders", headers={"Authorization": "Bearer forged.token"}).status_code == 401

    def test_unknown_route(self, http, planner):
        assert http.get("/api/nope", headers=planner).status_code == 404


class TestOrders:
    def test_list(self, http, planner):
        orders = http.get("/api/orders", headers=planner).get_json()
        assert [o["order_number"] for o in orders] == ["SO-1001", "SO-1002", "SO-1003"]

    def test_patch_persists_and_broadcasts(self, http, hub, planner):
        got = record(hub, ORDERS_CHANNEL)
        resp = http.patch("/api/orders/1", json={"material": "Pine"}, headers=planner)
        assert resp.status_code == 200
        body = resp.get_json()
        assert body["order"]["material"] == "Pine"
        assert body["event"]["kind"] == "order:updated"
        assert body["event"]["data"] == {"material": "Pine", "updated_at": body["order"]["updated_at"]}

        assert len(got) == 1
        assert got[0].entity_id == "1"
        assert got[0].payload["material"] == "Pine"
        assert got[0].payload["updated_at"] == body["order"]["updated_at"]
        assert got[0].id == body["event"]["id"]
        assert http.get("/api/orders/1", headers=planner).get_json()["material"] == "Pine"

    def test_exactly_one_field(self, http, planner):
        resp = http.patch("/api/orders/1", json={"material": "Pine", "color": "Red"}, headers=planner)
        assert resp.status_code == 400
        assert http.patch("/api/orders/1", json={}, headers=planner).status_code == 400

    def test_invalid_field_and_value(self, http, planner):
        assert http.patch("/api/orders/1", json={"order_number": "X"}, headers=planner).status_code == 400
        assert http.patch("/api/orders/1", json={"delivery_date": "soon"}, headers=planner).status_code == 400

    def test_sales_field_permissions(self, http, sales):
        assert http.patch("/api/orders/2", json={"material": "Ash"}, headers=sales).status_code == 403
        resp = http.patch("/api/orders/2", json={"remarks": "call customer"}, headers=sales)
        assert resp.status_code == 200
        assert resp.get_json()["order"]["remarks"] == "call customer"

    def test_missing_order(self, http, planner):
        assert http.patch("/api/orders/99", json={"material": "Ash"}, headers=planner).status_code == 404
        assert http.get("/api/orders/abc", headers=planner).status_code == 404

    def test_create_order(self, http, hub, planner, sales):
        got = record(hub, ORDERS_CHANNEL)
        assert http.post("/api/orders", json={"order_number": "SO-2000"}, headers=sales).status_code == 403
        resp = http.post("/api/orders", json={"order_number": "SO-2000", "material": "Ash"}, headers=planner)
        assert resp.status_code == 201
        order = resp.get_json()["order"]
        assert got[0].payload["order_number"] == "SO-2000"
        assert got[0].entity_id == str(order["id"])
        dup = http.post("/api/orders", json={"order_number": "SO-2000"}, headers=planner)
        assert dup.status_code == 409


class TestNotifications:
    def test_field_change_notifies_planners(self, http, hub, planner, sales):
        got = record(hub, NOTIFICATIONS_CHANNEL)
        http.patch("/api/orders/2", json={"color": "Grey"}, headers=planner)

        notes = http.get("/api/notifications", headers=planner).get_json()
        # admin, planner and planner2
        assert sorted(n["user_id"] for n in notes) == [1, 2, 3]
        assert notes[0]["topic"] == "Order SO-1002 had color updated"
        assert notes[0]["message"] == "Order SO-1002 had color updated to Grey by Pat Planner"
        assert len(got) == 3
        assert all(e.kind is EventKind.NOTIFICATION_CREATED for e in got)

        assert http.get("/api/notifications", headers=sales).get_json() == []

    def test_repeat_change_within_window_is_not_announced_twice(self, http, hub, planner, planner2):
        got = record(hub, NOTIFICATIONS_CHANNEL)
        http.patch("/api/orders/2", json={"color": "Grey"}, headers=planner)
        http.patch("/api/orders/2", json={"color": "Grey"}, headers=planner2)
        assert len(http.get("/api/notifications", headers=planner).get_json()) == 3
        assert len(got) == 3

    def test_other_field_is_announced(self, http, planner):
        http.patch("/api/orders/2", json={"color": "Grey"}, headers=planner)
        http.patch("/api/orders/2", json={"material": "Ash"}, headers=planner)
        assert len(http.get("/api/notifications", headers=planner).get_json()) == 6

    def test_mark_read_and_delete(self, http, planner, sales):
        http.patch("/api/orders/1", json={"remarks": "x"}, headers=planner)
        mine = [n for n in http.get("/api/notifications", headers=planner).get_json() if n["user_id"] == 2][0]
        resp = http.put(f"/api/notifications/{mine['id']}/read", headers=planner)
        assert resp.get_json()["is_read"] == 1
        unread = http.get("/api/notifications?unread=1", headers=planner).get_json()
        assert mine["id"] not in [n["id"] for n in unread]
        assert http.delete(f"/api/notifications/{mine['id']}", headers=sales).status_code == 403
        assert http.delete(f"/api/notifications/{mine['id']}", headers=planner).status_code == 200
        assert http.delete(f"/api/notifications/{mine['id']}", headers=planner).status_code == 404


class TestPriorityList:
    def test_set_and_clear(self, http, hub, planner):
        got = record(hub, ORDERS_CHANNEL)
        resp = http.post("/api/priority-orders", json={"orderIds": [3, "1"]}, headers=planner)
        assert resp.status_code == 200
        assert resp.get_json()["order_ids"] == ["3", "1"]
        assert [o["order_number"] for o in resp.get_json()["orders"]] == ["SO-1003", "SO-1001"]

        resp = http.post("/api/priority-orders", json={"orderIds": []}, headers=planner)
        assert resp.get_json()["order_ids"] == []
        view = http.get("/api/priority-orders", headers=planner).get_json()
        assert view["order_ids"] == []
        assert view["orders"] == []
        assert [e.payload["order_ids"] for e in got] == [["3", "1"], []]

    def test_rejects_bad_body(self, http, planner):
        assert http.post("/api/priority-orders", json={"orderIds": "1,2"}, headers=planner).status_code == 400
        assert http.post("/api/priority-orders", json={}, headers=planner).status_code == 400


class TestPublishEndpoint:
    def wire(self, kind=EventKind.ORDER_UPDATED, entity_id="1"):
        return ChangeEvent.create(kind, entity_id, {"material": "Pine"}).to_wire()

    def test_publish(self, http, hub, planner):
        got = record(hub, ORDERS_CHANNEL)
        resp = http.post("/api/events/publish", json={"channel": "orders", "event": self.wire()}, headers=planner)
        assert resp.status_code == 202
        assert resp.get_json() == {"published": True}
        assert got[0].payload == {"material": "Pine"}

    def test_validation(self, http, planner):
        bad_channel = http.post("/api/events/publish", json={"channel": "chat", "event": self.wire()}, headers=planner)
        assert bad_channel.status_code == 400
        wrong_channel = http.post("/api/events/publish", json={"channel": "notifications", "event": self.wire()},
                                  headers=planner)
        assert wrong_channel.status_code == 400
        malformed = http.post("/api/events/publish", json={"channel": "orders", "event": {"kind": "order:updated"}},
                              headers=planner)
        assert malformed.status_code == 400


class TestEventStream:
    def test_requires_auth(self, http):
        assert http.get("/api/events/stream").status_code == 401

    def test_unknown_channel(self, http, planner):
        assert http.get("/api/events/stream?channels=chat", headers=planner).status_code == 400

    def test_streams_published_events(self, http, hub, planner):
        resp = http.get("/api/events/stream", headers=planner, buffered=False)
        assert resp.status_code == 200
        assert resp.mimetype == "text/event-stream"
        assert hub.subscriber_count(ORDERS_CHANNEL) == 1
        chunks = resp.iter_encoded()
        assert next(chunks).startswith(b"event: connected\n")

        event = ChangeEvent.create(EventKind.ORDER_UPDATED, "2", {"color": "Red"},
                                   emitted_at=datetime(2026, 1, 5, tzinfo=timezone.utc))
        hub.publish(ORDERS_CHANNEL, event)
        frame = next(chunks).decode()
        assert frame.startswith("event: orders\ndata: ")
        assert f'"id": "{event.id}"' in frame
        resp.close()

    def test_token_in_query_string(self, http, planner):
        token = planner["Authorization"].split(" ", 1)[1]
        resp = http.get(f"/api/events/stream?channels=notifications&_token={token}", buffered=False)
        assert resp.status_code == 200
        resp.close()

    def test_notification_frames_scoped_to_recipient(self, http, hub, planner, sales):
        resp = http.get("/api/events/stream?channels=notifications", headers=sales, buffered=False)
        chunks = resp.iter_encoded()
        assert next(chunks).startswith(b"event: connected\n")

        # addressed to admin and the planners only
        http.patch("/api/orders/2", json={"color": "Grey"}, headers=planner)
        assert next(chunks) == b": keep-alive\n\n"

        own = ChangeEvent.create(EventKind.NOTIFICATION_CREATED, 99, {
            "id": 99, "order_id": 2, "user_id": 4, "message": "for sales"})
        hub.publish(NOTIFICATIONS_CHANNEL, own)
        frame = next(chunks).decode()
        assert frame.startswith("event: notifications\ndata: ")
        assert "for sales" in frame
        resp.close()


class TestVisibility:
    def note(self, user_id):
        return ChangeEvent.create(EventKind.NOTIFICATION_CREATED, 1, {"id": 1, "user_id": user_id})

    def test_planners_see_every_notification(self):
        assert server.can_see({"id": 2, "role": "planner"}, NOTIFICATIONS_CHANNEL, self.note(4))
        assert server.can_see({"id": 1, "role": "admin"}, NOTIFICATIONS_CHANNEL, self.note(4))

    def test_other_roles_see_their_own(self):
        sales = {"id": 4, "role": "sales"}
        assert server.can_see(sales, NOTIFICATIONS_CHANNEL, self.note(4))
        assert not server.can_see(sales, NOTIFICATIONS_CHANNEL, self.note(2))
        order = ChangeEvent.create(EventKind.ORDER_UPDATED, 1, {"material": "Pine"})
        assert server.can_see(sales, ORDERS_CHANNEL, order)


class TestOrderLock:
    def test_toggle_lock_publishes_and_blocks_other_roles(self, http, hub, planner, sales):
        got = record(hub, ORDERS_CHANNEL)
        assert http.post("/api/orders/1/toggle-lock", headers=sales).status_code == 403

        resp = http.post("/api/orders/1/toggle-lock", headers=planner)
        assert resp.status_code == 200
        body = resp.get_json()
        assert body["order"]["is_locked"] == 1
        assert body["message"] == "Order locked successfully"
        assert got[0].payload == {"is_locked": 1, "updated_at": body["order"]["updated_at"]}

        assert http.patch("/api/orders/1", json={"remarks": "late"}, headers=sales).status_code == 409
        assert http.patch("/api/orders/1", json={"remarks": "late"}, headers=planner).status_code == 200

        resp = http.post("/api/orders/1/toggle-lock", headers=planner)
        assert resp.get_json()["order"]["is_locked"] == 0
        assert http.patch("/api/orders/1", json={"remarks": "on time"}, headers=sales).status_code == 200

    def test_toggle_lock_notifies_actor(self, http, planner):
        http.post("/api/orders/3/toggle-lock", headers=planner)
        notes = http.get("/api/notifications", headers=planner).get_json()
        assert [(n["user_id"], n["message"]) for n in notes] == [
            (2, "Order SO-1003 has been locked by Pat Planner")]

    def test_toggle_missing_order(self, http, planner):
        assert http.post("/api/orders/42/toggle-lock", headers=planner).status_code == 404

    def test_scan_lookup(self, http, sales):
        resp = http.get("/api/orders/scan/SO-1002", headers=sales)
        assert resp.status_code == 200
        assert resp.get_json()["material"] == "Pine"
        assert http.get("/api/orders/scan/SO-9999", headers=sales).status_code == 404


class TestNotificationWrites:
    def test_create_for_planners(self, http, hub, planner, sales):
        got = record(hub, NOTIFICATIONS_CHANNEL)
        resp = http.post("/api/notifications", json={"orderId": 1, "field": "color", "value": "Red"}, headers=sales)
        assert resp.status_code == 201
        created = resp.get_json()["notifications"]
        assert sorted(n["user_id"] for n in created) == [1, 2, 3]
        assert created[0]["message"] == "Order SO-1001 had color updated to Red by Robin Sales"
        assert len(got) == 3

        again = http.post("/api/notifications", json={"orderId": 1, "field": "color", "value": "Red"}, headers=sales)
        assert again.get_json()["notifications"] == []
        assert len(got) == 3

    def test_create_validation(self, http, planner):
        assert http.post("/api/notifications", json={"orderId": 1}, headers=planner).status_code == 400
        assert http.post("/api/notifications", json={"orderId": 77, "field": "color"}, headers=planner).status_code == 404

    def test_bulk_delete(self, http, planner, sales):
        http.patch("/api/orders/2", json={"color": "Grey"}, headers=planner)
        ids = [n["id"] for n in http.get("/api/notifications", headers=planner).get_json()]
        assert len(ids) == 3

        assert http.post("/api/notifications/bulk-delete", json={"ids": ids}, headers=sales).status_code == 403
        assert http.post("/api/notifications/bulk-delete", json={"ids": []}, headers=planner).status_code == 400

        resp = http.post("/api/notifications/bulk-delete", json={"ids": ids[:2] + [999]}, headers=planner)
        assert resp.get_json() == {"success": True, "deletedCount": 2}
        assert [n["id"] for n in http.get("/api/notifications", headers=planner).get_json()] == ids[2:]

    def test_bulk_delete_own_only(self, http, planner):
        floor = login(http, "floor", "4444")
        http.post("/api/orders/1/toggle-lock", headers=planner)
        planner_note = http.get("/api/notifications", headers=planner).get_json()[0]["id"]
        resp = http.post("/api/notifications/bulk-delete", json={"ids": [planner_note]}, headers=floor)
        assert resp.status_code == 403
