"""
events.py - the ChangeEvent unit that flows from a mutation to every client.

Wire shape (JSON):
    {"id": str, "kind": str, "entityId": str, "data": object, "emittedAt": ISO8601}
"""

import json
import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


ORDERS_CHANNEL = "orders"
NOTIFICATIONS_CHANNEL = "notifications"

PRIORITY_LIST_ID = "priority-list"


class EventKind(Enum):
    ORDER_UPDATED = "order:updated"
    NOTIFICATION_CREATED = "notification:new"
    PRIORITY_LIST_UPDATED = "priority:updated"


_CHANNELS = {
    EventKind.ORDER_UPDATED: ORDERS_CHANNEL,
    EventKind.PRIORITY_LIST_UPDATED: ORDERS_CHANNEL,
    EventKind.NOTIFICATION_CREATED: NOTIFICATIONS_CHANNEL,
}

# A notification's content identity. Two rows created for one logical action
# differ in id and created_at but not in these.
NOTIFICATION_CONTENT_FIELDS = ("order_id", "message", "user_id")


class MalformedEventError(ValueError):
    pass


def channel_for(kind):
    return _CHANNELS[kind]


def utcnow():
    return datetime.now(timezone.utc)


def notification_content_key(data):
    return ":".join(str(data.get(f)) for f in NOTIFICATION_CONTENT_FIELDS)


@dataclass(frozen=True)
class ChangeEvent:
    kind: EventKind
    entity_id: str
    payload: dict
    emitted_at: datetime
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @classmethod
    def create(cls, kind, entity_id, payload, emitted_at=None):
        return cls(
            kind=kind,
            entity_id=str(entity_id),
            payload=dict(payload or {}),
            emitted_at=emitted_at or utcnow(),
        )

    @property
    def channel(self):
        return channel_for(self.kind)

    @property
    def dedup_key(self):
        return f"{self.entity_id}:{self.id}"

    def fingerprint(self, bucket_seconds=60, payload_chars=200):
        """entity id + truncated serialized payload + emitted_at bucket.

        Identical for the same logical change seen through the direct
        response, the broadcast or a re-delivery, since all of them carry the
        emitted_at stamped at publish time.
        """
        if self.kind is EventKind.NOTIFICATION_CREATED:
            content = {f: self.payload.get(f) for f in NOTIFICATION_CONTENT_FIELDS}
        else:
            content = self.payload
        serialized = json.dumps(content, sort_keys=True, default=str, separators=(",", ":"))
        bucket = math.floor(self.emitted_at.timestamp() / max(bucket_seconds, 1))
        return f"{self.entity_id}|{serialized[:payload_chars]}|{bucket}"

    def to_wire(self):
        return {
            "id": self.id,
            "kind": self.kind.value,
            "entityId": self.entity_id,
            "data": self.payload,
            "emittedAt": self.emitted_at.isoformat(),
        }

    @classmethod
    def from_wire(cls, wire):
        if not isinstance(wire, dict):
            raise MalformedEventError("event must be a JSON object")
        try:
            kind = EventKind(wire.get("kind"))
        except ValueError:
            raise MalformedEventError(f"unknown event kind: {wire.get('kind')!r}") from None
        entity_id = wire.get("entityId")
        if entity_id is None or entity_id == "":
            raise MalformedEventError("event is missing entityId")
        data = wire.get("data")
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise MalformedEventError("event data must be an object")
        emitted_at = _parse_timestamp(wire.get("emittedAt"))
        event_id = wire.get("id") or uuid.uuid4().hex
        return cls(kind=kind, entity_id=str(entity_id), payload=data,
                   emitted_at=emitted_at, id=str(event_id))


def _parse_timestamp(value):
    if not value:
        raise MalformedEventError("event is missing emittedAt")
    try:
        ts = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        raise MalformedEventError(f"invalid emittedAt: {value!r}") from None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts
