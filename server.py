#!/usr/bin/env python3
"""
server.py - Flask server for the planboard production planning board.

Orders, planner notifications and the shared priority list live in sqlite.
Every committed change is published on the in-process ChannelHub and streamed
to connected clients over server-sent events (GET /api/events/stream).

Run with `python server.py` or `gunicorn 'server:create_app()'`.
"""

import base64
import hashlib
import hmac
import json
import logging
import queue
import re
import sqlite3
from collections import namedtuple
from contextlib import closing
from datetime import datetime, timezone

from flask import Blueprint, Flask, Response, current_app, jsonify, request
from flask_cors import CORS

from planboard.config import Settings
from planboard.events import (
    ChangeEvent, EventKind, MalformedEventError, NOTIFICATIONS_CHANNEL, ORDERS_CHANNEL,
    PRIORITY_LIST_ID, channel_for,
)
from planboard.notifier import ChangeNotifier
from planboard.persistence import Repository, row_to_dict, rows_to_list, utc_timestamp
from planboard.transport import ChannelHub


logger = logging.getLogger("planboard.server")

Services = namedtuple("Services", "settings repo hub notifier")

api = Blueprint("api", __name__, url_prefix="/api")

CHANNELS = (ORDERS_CHANNEL, NOTIFICATIONS_CHANNEL)


# ---------------------------------------------------------------------------
# App setup
# ---------------------------------------------------------------------------

def create_app(settings=None, hub=None):
    settings = settings or Settings.from_env()
    app = Flask(__name__)
    CORS(app)

    repo = Repository(settings.db_path)
    repo.init_db()
    if settings.seed_demo_data and repo.seed():
        logger.info("Seeded demo data into %s", settings.db_path)

    hub = hub or ChannelHub()
    hub.open()
    notifier = ChangeNotifier.from_settings(hub, repo, settings)
    app.extensions["planboard"] = Services(settings, repo, hub, notifier)
    app.register_blueprint(api)
    return app


def services():
    return current_app.extensions["planboard"]


# ---------------------------------------------------------------------------
# Auth helpers
# ---------------------------------------------------------------------------

def _sign(payload, secret):
    return hmac.new(secret.encode(), payload.encode(), hashlib.sha256).hexdigest()


def make_token(user_id, role, secret):
    payload = base64.urlsafe_b64encode(json.dumps({
        "user_id": user_id, "role": role, "ts": datetime.now(timezone.utc).isoformat()
    }).encode()).decode()
    return f"{payload}.{_sign(payload, secret)}"


def decode_token(token, secret):
    payload, _, signature = token.partition(".")
    if not signature or not hmac.compare_digest(signature, _sign(payload, secret)):
        return None
    try:
        return json.loads(base64.urlsafe_b64decode(payload.encode()).decode())
    except ValueError:
        return None


def get_current_user(conn):
    auth = request.headers.get("Authorization", "")
    token = None
    if auth.startswith("Bearer "):
        token = auth[7:]
    if not token:
        token = request.args.get("_token")
    if not token:
        return None
    payload = decode_token(token, services().settings.secret)
    if not payload:
        return None
    row = conn.execute("SELECT * FROM users WHERE id=? AND is_active=1", [payload.get("user_id")]).fetchone()
    return public_user(row_to_dict(row))


def public_user(user):
    if user:
        user.pop("pin", None)
    return user


# ---------------------------------------------------------------------------
# Route matching helper
# ---------------------------------------------------------------------------

def match(pattern, path):
    regex = re.sub(r":([a-zA-Z_]+)", r"(?P<\1>[^/]+)", pattern)
    regex = "^" + regex + "$"
    m = re.match(regex, path)
    if m:
        return m.groupdict()
    return None


def query_params():
    params = {}
    for k, v in request.args.items():
        if k not in ("route", "_token"):
            params[k] = v
    return params


# ---------------------------------------------------------------------------
# Order fields and permissions
# ---------------------------------------------------------------------------

TEXT_FIELDS = ["project", "customer", "article_type", "material", "edge_band", "color",
               "remarks", "purchase_order_number"]
DATE_FIELDS = ["production_date", "delivery_date"]
NUMBER_FIELDS = {"height": float, "position": int, "total_boards": int}
BOOLEAN_FIELDS = ["is_locked", "planning_confirmed"]

EDITABLE_FIELDS = TEXT_FIELDS + DATE_FIELDS + list(NUMBER_FIELDS) + BOOLEAN_FIELDS

FULL_ACCESS_ROLES = ("admin", "planner")
SALES_FIELDS = ("project", "delivery_date", "remarks", "purchase_order_number")

# Field-change notifications go to these roles
NOTIFY_ROLES = ("admin", "planner")


def can_edit(role, field):
    if role in FULL_ACCESS_ROLES:
        return True
    return role == "sales" and field in SALES_FIELDS


def can_see(user, channel, event):
    """Notifications follow the GET /notifications scope: planners see all."""
    if channel != NOTIFICATIONS_CHANNEL or user["role"] in FULL_ACCESS_ROLES:
        return True
    return str(event.payload.get("user_id")) == str(user["id"])


def coerce_field(field, value):
    """Validate and normalise one order field value. Raises ValueError."""
    if value is None or value == "":
        return None
    if field in DATE_FIELDS:
        try:
            return datetime.fromisoformat(str(value).replace("Z", "+00:00")).date().isoformat()
        except ValueError:
            raise ValueError(f"Invalid date format for field {field}") from None
    if field in NUMBER_FIELDS:
        try:
            return NUMBER_FIELDS[field](value)
        except (TypeError, ValueError):
            raise ValueError(f"Invalid number format for field {field}") from None
    if field in BOOLEAN_FIELDS:
        if isinstance(value, str):
            return 0 if value.strip().lower() in ("0", "false", "no", "off") else 1
        return 1 if value else 0
    return str(value)


def display_value(value):
    if value is None:
        return "empty"
    if isinstance(value, bool):
        return "Yes" if value else "No"
    return str(value)


# ---------------------------------------------------------------------------
# Change publishing helpers
# ---------------------------------------------------------------------------

def notification_payload(conn, note):
    row = conn.execute(
        "SELECT n.*, o.order_number, u.full_name as actor_name FROM notifications n "
        "LEFT JOIN orders o ON o.id=n.order_id LEFT JOIN users u ON u.id=n.actor_id WHERE n.id=?",
        [note["id"]]).fetchone()
    return row_to_dict(row) or note


def actor_name(actor):
    return actor.get("full_name") or actor.get("username")


def create_notifications(conn, svc, order, actor, topic, message, recipients):
    """Store one notification per recipient and publish each of them.

    Nothing is created when the same topic was already announced for the
    order within the duplicate window (several planners saving the same cell).
    """
    if svc.notifier.has_recent_duplicate(order["id"], topic):
        logger.info("Skipping duplicate notification: %s", topic)
        return []
    created = []
    for recipient in recipients:
        created.append(svc.repo.write_entity("notifications", None, {
            "order_id": order["id"], "user_id": recipient["id"], "actor_id": actor["id"],
            "topic": topic, "message": message, "created_at": utc_timestamp(),
        }, conn))
    for note in created:
        svc.notifier.notify(EventKind.NOTIFICATION_CREATED, note["id"], notification_payload(conn, note))
    return created


def notify_field_change(conn, svc, order, actor, field, value):
    topic = f"Order {order['order_number']} had {field} updated"
    message = f"{topic} to {display_value(value)} by {actor_name(actor)}"
    recipients = [u for u in svc.repo.read_many("users", {"is_active": 1}, conn=conn)
                  if u["role"] in NOTIFY_ROLES]
    return create_notifications(conn, svc, order, actor, topic, message, recipients)


def publish_order_change(svc, order, fields):
    # updated_at rides along with every order change
    data = {f: order[f] for f in fields}
    data["updated_at"] = order["updated_at"]
    event = ChangeEvent.create(EventKind.ORDER_UPDATED, order["id"], data)
    svc.notifier.publish(event)
    return event


def priority_view(conn, repo):
    data = repo.read_priority(conn)
    orders = []
    for oid in data["order_ids"]:
        order = repo.read_entity("orders", oid, conn) if oid.isdigit() else None
        if order:
            orders.append(order)
    data["orders"] = orders
    return data


# ---------------------------------------------------------------------------
# Live event stream
# ---------------------------------------------------------------------------

def sse_frame(event, data):
    return f"event: {event}\ndata: {json.dumps(data, default=str)}\n\n"


@api.route("/events/stream")
def event_stream():
    svc = services()
    with closing(svc.repo.connect()) as conn:
        user = get_current_user(conn)
    if not user:
        return jsonify({"error": "Authentication required"}), 401
    channels = [c for c in request.args.get("channels", ",".join(CHANNELS)).split(",") if c]
    unknown = [c for c in channels if c not in CHANNELS]
    if unknown:
        return jsonify({"error": f"Unknown channel(s): {', '.join(unknown)}"}), 400

    pending = queue.Queue(maxsize=1000)

    def handler_for(channel):
        def handler(event):
            if not can_see(user, channel, event):
                return
            try:
                pending.put_nowait((channel, event))
            except queue.Full:
                logger.warning("Stream for user %s is backed up, dropping %s", user["id"], event.id)
        return handler

    subs = [svc.hub.subscribe(c, handler_for(c)) for c in channels]
    heartbeat = svc.settings.heartbeat_interval
    logger.info("User %s streaming %s", user["id"], ", ".join(channels))

    def generate():
        try:
            yield sse_frame("connected", {"channels": channels, "timestamp": datetime.now(timezone.utc).isoformat()})
            while True:
                try:
                    channel, event = pending.get(timeout=heartbeat)
                except queue.Empty:
                    yield ": keep-alive\n\n"
                    continue
                yield sse_frame(channel, event.to_wire())
        finally:
            for sub in subs:
                sub.unsubscribe()
            logger.info("User %s stream closed", user["id"])

    return Response(generate(), mimetype="text/event-stream",
                    headers={"Cache-Control": "no-cache, no-transform", "X-Accel-Buffering": "no"})


# ---------------------------------------------------------------------------
# API Routes
# ---------------------------------------------------------------------------

@api.route("/<path:route>", methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"])
def api_handler(route):
    if request.method == "OPTIONS":
        return "", 204

    path = "/" + route
    # Strip trailing slashes
    if len(path) > 1:
        path = path.rstrip("/")

    method = request.method
    params = query_params()
    body = request.get_json(silent=True)
    if body is None:
        body = {}

    svc = services()
    conn = svc.repo.connect()
    try:
        result = dispatch(method, path, params, body, conn, svc)
        return jsonify(result.get("body", {})), result.get("status", 200)
    except Exception as exc:
        logger.exception("Unhandled error on %s %s", method, path)
        return jsonify({"error": "Internal server error", "detail": str(exc)}), 500
    finally:
        conn.close()


def dispatch(method, path, params, body, conn, svc):
    """Route dispatcher - returns dict with 'status' and 'body' keys."""
    repo = svc.repo

    # ----- HEALTH CHECK -----
    if method == "GET" and path == "/health":
        return {"status": 200, "body": {
            "status": "ok",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "transport": svc.hub.state.value,
            "stream_subscribers": {c: svc.hub.subscriber_count(c) for c in CHANNELS},
        }}

    # ----- AUTH -----
    if method == "POST" and path == "/auth/login":
        if not isinstance(body, dict):
            return {"status": 400, "body": {"error": "username and pin required"}}
        username = str(body.get("username", "")).strip().lower()
        pin = str(body.get("pin", "")).strip()
        if not username or not pin:
            return {"status": 400, "body": {"error": "username and pin required"}}
        row = conn.execute("SELECT * FROM users WHERE username=? AND pin=? AND is_active=1", [username, pin]).fetchone()
        if not row:
            return {"status": 401, "body": {"error": "Invalid username or PIN"}}
        user = public_user(row_to_dict(row))
        token = make_token(user["id"], user["role"], svc.settings.secret)
        return {"status": 200, "body": {"token": token, "user": user}}

    # All routes below require auth
    current_user = get_current_user(conn)
    if not current_user:
        return {"status": 401, "body": {"error": "Authentication required"}}

    if method == "GET" and path == "/auth/me":
        return {"status": 200, "body": current_user}

    # ----- ORDERS -----
    if method == "GET" and path == "/orders":
        return {"status": 200, "body": repo.read_many("orders", order_by="id", conn=conn)}

    if method == "POST" and path == "/orders":
        if current_user["role"] not in FULL_ACCESS_ROLES:
            return {"status": 403, "body": {"error": "Only planners can create orders"}}
        if not isinstance(body, dict) or not body.get("order_number"):
            return {"status": 400, "body": {"error": "Field 'order_number' is required"}}
        values = {"order_number": str(body["order_number"])}
        try:
            for f in EDITABLE_FIELDS:
                if f in body:
                    values[f] = coerce_field(f, body[f])
        except ValueError as e:
            return {"status": 400, "body": {"error": str(e)}}
        try:
            order = repo.write_entity("orders", None, values, conn)
        except sqlite3.IntegrityError as e:
            return {"status": 409, "body": {"error": str(e)}}
        repo.log_audit(conn, current_user["id"], "create_order", "orders", order["id"], None, values)
        event = ChangeEvent.create(EventKind.ORDER_UPDATED, order["id"], order)
        svc.notifier.publish(event)
        return {"status": 201, "body": {"order": order, "event": event.to_wire()}}

    m = match("/orders/scan/:order_number", path)
    if m and method == "GET":
        rows = repo.read_many("orders", {"order_number": m["order_number"]}, limit=1, conn=conn)
        if not rows:
            return {"status": 404, "body": {"error": "Order not found"}}
        return {"status": 200, "body": rows[0]}

    m = match("/orders/:id/toggle-lock", path)
    if m and method == "POST":
        if current_user["role"] not in FULL_ACCESS_ROLES:
            return {"status": 403, "body": {"error": "Only planners can lock or unlock orders"}}
        old = repo.read_entity("orders", m["id"], conn) if m["id"].isdigit() else None
        if not old:
            return {"status": 404, "body": {"error": "Order not found"}}
        locked = 0 if old["is_locked"] else 1
        order = repo.write_entity("orders", old["id"], {"is_locked": locked}, conn)
        repo.log_audit(conn, current_user["id"], "toggle_lock", "orders", old["id"],
                       {"is_locked": old["is_locked"]}, {"is_locked": locked})
        event = publish_order_change(svc, order, ["is_locked"])
        state = "locked" if locked else "unlocked"
        create_notifications(
            conn, svc, order, current_user,
            f"Order {order['order_number']} was {state}",
            f"Order {order['order_number']} has been {state} by {actor_name(current_user)}",
            [current_user])
        return {"status": 200, "body": {
            "order": order, "event": event.to_wire(), "message": f"Order {state} successfully"}}

    m = match("/orders/:id", path)
    if m:
        if not m["id"].isdigit():
            return {"status": 404, "body": {"error": "Order not found"}}
        oid = int(m["id"])
        if method == "GET":
            order = repo.read_entity("orders", oid, conn)
            if not order:
                return {"status": 404, "body": {"error": "Order not found"}}
            return {"status": 200, "body": order}
        if method in ("PATCH", "PUT"):
            if not isinstance(body, dict) or len(body) != 1:
                return {"status": 400, "body": {"error": "Request must contain exactly one field to update"}}
            field, value = next(iter(body.items()))
            if field not in EDITABLE_FIELDS:
                return {"status": 400, "body": {"error": f"Invalid field name: {field}"}}
            if not can_edit(current_user["role"], field):
                return {"status": 403, "body": {"error": f"You don't have permission to edit the {field} field"}}
            try:
                value = coerce_field(field, value)
            except ValueError as e:
                return {"status": 400, "body": {"error": str(e)}}
            old = repo.read_entity("orders", oid, conn)
            if not old:
                return {"status": 404, "body": {"error": "Order not found"}}
            if old["is_locked"] and current_user["role"] not in FULL_ACCESS_ROLES:
                return {"status": 409, "body": {"error": "Order is locked and cannot be modified"}}
            order = repo.write_entity("orders", oid, {field: value}, conn)
            repo.log_audit(conn, current_user["id"], "update_order", "orders", oid, {field: old[field]}, {field: value})
            # Persisted first; publishing below can only degrade live updates
            event = publish_order_change(svc, order, [field])
            notify_field_change(conn, svc, order, current_user, field, order[field])
            return {"status": 200, "body": {"order": order, "event": event.to_wire()}}

    # ----- NOTIFICATIONS -----
    if method == "GET" and path == "/notifications":
        where, vals = [], []
        if current_user["role"] not in FULL_ACCESS_ROLES:
            where.append("n.user_id=?"); vals.append(current_user["id"])
        if params.get("unread") in ("1", "true"):
            where.append("n.is_read=0")
        sql = ("SELECT n.*, o.order_number, u.full_name as actor_name FROM notifications n "
               "LEFT JOIN orders o ON o.id=n.order_id LEFT JOIN users u ON u.id=n.actor_id")
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY n.created_at DESC, n.id DESC LIMIT ?"
        rows = conn.execute(sql, vals + [svc.settings.notification_limit]).fetchall()
        return {"status": 200, "body": rows_to_list(rows)}

    if method == "POST" and path == "/notifications":
        if not isinstance(body, dict) or not body.get("field"):
            return {"status": 400, "body": {"error": "orderId and field required"}}
        oid = body.get("orderId", body.get("order_id"))
        order = repo.read_entity("orders", oid, conn) if oid is not None else None
        if not order:
            return {"status": 404, "body": {"error": "Order not found"}}
        created = notify_field_change(conn, svc, order, current_user, str(body["field"]), body.get("value"))
        return {"status": 201, "body": {"success": True, "notifications": created}}

    if method == "POST" and path == "/notifications/bulk-delete":
        ids = body.get("ids") if isinstance(body, dict) else None
        if not isinstance(ids, list) or not ids:
            return {"status": 400, "body": {"error": "ids must be a non-empty array"}}
        notes = [repo.read_entity("notifications", i, conn) for i in ids if isinstance(i, (int, str))]
        notes = [n for n in notes if n]
        if current_user["role"] not in FULL_ACCESS_ROLES:
            notes = [n for n in notes if n["user_id"] == current_user["id"]]
            if not notes:
                return {"status": 403, "body": {"error": "You are not allowed to delete any of these notifications"}}
        deleted = sum(1 for n in notes if repo.delete_entity("notifications", n["id"], conn))
        return {"status": 200, "body": {"success": True, "deletedCount": deleted}}

    m = match("/notifications/:id/read", path)
    if m and method == "PUT":
        note = repo.read_entity("notifications", m["id"], conn)
        if not note:
            return {"status": 404, "body": {"error": "Notification not found"}}
        if note["user_id"] != current_user["id"] and current_user["role"] not in FULL_ACCESS_ROLES:
            return {"status": 403, "body": {"error": "Not your notification"}}
        return {"status": 200, "body": repo.write_entity("notifications", note["id"], {"is_read": 1}, conn)}

    m = match("/notifications/:id", path)
    if m and method == "DELETE":
        note = repo.read_entity("notifications", m["id"], conn)
        if not note:
            return {"status": 404, "body": {"error": "Notification not found"}}
        if note["user_id"] != current_user["id"] and current_user["role"] not in FULL_ACCESS_ROLES:
            return {"status": 403, "body": {"error": "Not your notification"}}
        repo.delete_entity("notifications", note["id"], conn)
        return {"status": 200, "body": {"success": True}}

    # ----- PRIORITY LIST -----
    if method == "GET" and path == "/priority-orders":
        return {"status": 200, "body": priority_view(conn, repo)}

    if method == "POST" and path == "/priority-orders":
        ids = body.get("orderIds", body.get("order_ids")) if isinstance(body, dict) else None
        if not isinstance(ids, list) or any(isinstance(i, (dict, list)) or i is None for i in ids):
            return {"status": 400, "body": {"error": "Invalid request format. Expected array of order IDs"}}
        ids = [str(i) for i in ids]
        repo.write_priority(ids, current_user["id"], conn)
        repo.log_audit(conn, current_user["id"], "update_priority", "priority_list", 1, None, ids)
        event = ChangeEvent.create(EventKind.PRIORITY_LIST_UPDATED, PRIORITY_LIST_ID, {
            "order_ids": ids,
            "updated_by": {"id": current_user["id"], "name": current_user["full_name"]},
        })
        svc.notifier.publish(event)
        view = priority_view(conn, repo)
        view["event"] = event.to_wire()
        return {"status": 200, "body": view}

    # ----- LIVE EVENTS -----
    if method == "POST" and path == "/events/publish":
        channel = body.get("channel") if isinstance(body, dict) else None
        if channel not in CHANNELS:
            return {"status": 400, "body": {"error": f"Unknown channel: {channel}"}}
        try:
            event = ChangeEvent.from_wire(body.get("event"))
        except MalformedEventError as e:
            return {"status": 400, "body": {"error": str(e)}}
        if channel_for(event.kind) != channel:
            return {"status": 400, "body": {"error": f"{event.kind.value} events belong on {channel_for(event.kind)}"}}
        return {"status": 202, "body": {"published": svc.notifier.publish(event)}}

    # 404
    return {"status": 404, "body": {"error": f"Route not found: {method} {path}"}}


# ---------------------------------------------------------------------------
# Init and run
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    settings = Settings.from_env()
    logging.basicConfig(level=settings.log_level.upper(),
                        format="%(asctime)s %(levelname)s [%(name)s] %(message)s")
    create_app(settings).run(host="0.0.0.0", port=settings.port, debug=False, threaded=True)
