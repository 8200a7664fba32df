"""
reconciliation.py - the client-side copy of orders, notifications and the
priority list, and the merge rules for bringing it up to date.

Only apply_event() and apply_full_replace() mutate the collections. Each
call computes the new state first and commits it in one assignment, so a
malformed event never leaves a half-applied change behind.
"""

import logging

from .events import EventKind, notification_content_key


logger = logging.getLogger(__name__)

ORDERS = "orders"
NOTIFICATIONS = "notifications"
PRIORITY = "priority"
DATA_TYPES = (ORDERS, NOTIFICATIONS, PRIORITY)


class ReconciliationError(ValueError):
    pass


def _key(value):
    return None if value is None else str(value)


def _matches(item, filters):
    for field, wanted in filters.items():
        value = item.get(field)
        if isinstance(wanted, str):
            if value is None or wanted.lower() not in str(value).lower():
                return False
        elif value != wanted:
            return False
    return True


class ReconciliationStore:
    def __init__(self, notification_limit=50):
        self.notification_limit = notification_limit
        self.orders = []
        self.notifications = []
        # None until a priority list has been received; [] once it is cleared
        self.priority_ids = None
        self.priority_orders = []
        self.filters = {}
        self._listeners = []

    # -- UI collaborator --------------------------------------------------

    def add_listener(self, callback):
        self._listeners.append(callback)

        def remove():
            if callback in self._listeners:
                self._listeners.remove(callback)
        return remove

    def _changed(self, data_type):
        for cb in list(self._listeners):
            try:
                cb(data_type)
            except Exception:
                logger.exception("Store listener failed for %s", data_type)

    def set_filters(self, filters):
        self.filters = dict(filters or {})

    # -- reads --------------------------------------------------------------

    def get_order(self, order_id):
        key = _key(order_id)
        for order in self.orders:
            if _key(order.get("id")) == key:
                return order
        return None

    @property
    def priority_loaded(self):
        return self.priority_ids is not None

    def snapshot(self):
        return {
            ORDERS: list(self.orders),
            NOTIFICATIONS: list(self.notifications),
            PRIORITY: None if self.priority_ids is None else list(self.priority_orders),
        }

    # -- events -------------------------------------------------------------

    def apply_event(self, event):
        """Merge one change event. Returns True when state changed."""
        try:
            if event.kind is EventKind.ORDER_UPDATED:
                changed = self._apply_order_update(event)
                data_type = ORDERS
            elif event.kind is EventKind.NOTIFICATION_CREATED:
                changed = self._apply_notification(event)
                data_type = NOTIFICATIONS
            elif event.kind is EventKind.PRIORITY_LIST_UPDATED:
                changed = self._apply_priority(event.payload.get("order_ids"))
                data_type = PRIORITY
            else:
                raise ReconciliationError(f"unsupported event kind {event.kind!r}")
        except ReconciliationError as exc:
            logger.warning("Discarding event %s: %s", getattr(event, "id", "?"), exc)
            return False
        if changed:
            self._changed(data_type)
        return changed

    def _apply_order_update(self, event):
        if not event.entity_id:
            raise ReconciliationError("order update without entityId")
        if not isinstance(event.payload, dict):
            raise ReconciliationError("order update payload must be an object")
        key = _key(event.entity_id)
        orders = self.orders
        for index, existing in enumerate(orders):
            if _key(existing.get("id")) == key:
                merged = dict(existing)
                merged.update(event.payload)
                merged["id"] = existing.get("id")
                if merged == existing:
                    return False
                new_orders = list(orders)
                new_orders[index] = merged
                self._commit_orders(new_orders)
                return True

        # Unknown order: only a full snapshot that the current view would show
        snapshot = event.payload
        if _key(snapshot.get("id")) != key:
            logger.debug("Ignoring partial update for unknown order %s", key)
            return False
        if self.filters and not _matches(snapshot, self.filters):
            logger.debug("Ignoring new order %s hidden by active filters", key)
            return False
        self._commit_orders(orders + [dict(snapshot)])
        return True

    def _commit_orders(self, new_orders):
        self.orders = new_orders
        if self.priority_ids is not None:
            self.priority_orders = self._resolve(self.priority_ids)

    def _resolve(self, ids):
        by_id = {_key(o.get("id")): o for o in self.orders}
        return [by_id[i] for i in ids if i in by_id]

    def _apply_notification(self, event):
        data = event.payload
        if not isinstance(data, dict):
            raise ReconciliationError("notification payload must be an object")
        note_id = _key(data.get("id", event.entity_id))
        if note_id is None:
            raise ReconciliationError("notification without id")
        content = notification_content_key(data)
        for existing in self.notifications:
            if _key(existing.get("id")) == note_id or notification_content_key(existing) == content:
                logger.debug("Notification %s already present", note_id)
                return False
        note = dict(data)
        note.setdefault("id", event.entity_id)
        self.notifications = ([note] + self.notifications)[:self.notification_limit]
        return True

    def _apply_priority(self, order_ids):
        if not isinstance(order_ids, (list, tuple)):
            raise ReconciliationError("priority update needs an order_ids list")
        ids = [_key(i.get("id") if isinstance(i, dict) else i) for i in order_ids]
        if None in ids:
            raise ReconciliationError("priority list contains an entry without id")
        resolved = self._resolve(ids)
        if self.priority_ids == ids and [o.get("id") for o in self.priority_orders] == [o.get("id") for o in resolved]:
            self.priority_orders = resolved
            return False
        self.priority_ids = ids
        self.priority_orders = resolved
        return True

    # -- full replace (initial load, polling) --------------------------------

    def apply_full_replace(self, data_type, items):
        """Replace a whole collection with an authoritative result set."""
        if items is None or not isinstance(items, (list, tuple)):
            logger.warning("Discarding %s replace: expected a list, got %s", data_type, type(items).__name__)
            return False
        try:
            if data_type == ORDERS:
                if any(not isinstance(o, dict) or o.get("id") is None for o in items):
                    raise ReconciliationError("every order needs an id")
                self._commit_orders([dict(o) for o in items])
            elif data_type == NOTIFICATIONS:
                seen, notes = set(), []
                for n in items:
                    if not isinstance(n, dict) or n.get("id") is None:
                        raise ReconciliationError("every notification needs an id")
                    if _key(n["id"]) in seen:
                        continue
                    seen.add(_key(n["id"]))
                    notes.append(dict(n))
                self.notifications = notes[:self.notification_limit]
            elif data_type == PRIORITY:
                self._apply_priority(list(items))
            else:
                raise ReconciliationError(f"unknown data type {data_type!r}")
        except ReconciliationError as exc:
            logger.warning("Discarding %s replace: %s", data_type, exc)
            return False
        self._changed(data_type)
        return True
