"""
client.py - a live view of the planboard server.

LiveClient keeps a ReconciliationStore current from three sources that can
all carry the same change: the response to its own writes, the channel
broadcast and, while the transport is down, fallback polling. Every pushed
event passes the same pipeline:

    SuppressionFilter -> ThrottleGate (order edits only) -> ReconciliationStore
"""

import asyncio
import logging
import time

import httpx

from .config import Settings
from .events import (
    ChangeEvent, EventKind, MalformedEventError, NOTIFICATIONS_CHANNEL, ORDERS_CHANNEL,
)
from .polling import PollingFallbackEngine
from .reconciliation import DATA_TYPES, NOTIFICATIONS, ORDERS, PRIORITY, ReconciliationStore
from .suppression import SuppressionFilter
from .throttle import ThrottleGate, applies_to
from .transport import SSETransport


logger = logging.getLogger(__name__)

FETCH_PATHS = {
    ORDERS: "/api/orders",
    NOTIFICATIONS: "/api/notifications",
    PRIORITY: "/api/priority-orders",
}


class LiveClient:
    def __init__(self, base_url, token=None, transport=None, settings=None,
                 http_client=None, clock=time.monotonic):
        self.settings = settings or Settings()
        self.base_url = base_url.rstrip("/")
        self.token = token
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._owns_http = http_client is None
        self.http = http_client or httpx.AsyncClient(base_url=self.base_url, headers=headers, timeout=10.0)
        self._owns_transport = transport is None
        self.transport = transport or SSETransport.from_settings(self.base_url, token, self.settings)
        self.suppression = SuppressionFilter.from_settings(self.settings, clock)
        self.throttle = ThrottleGate(self.settings.throttle_interval, clock)
        self.store = ReconciliationStore(self.settings.notification_limit)
        self.polling = PollingFallbackEngine.from_settings(self.fetch, self.store, self.settings)
        self._subscriptions = []
        self._unwatch = None
        self._sweeper = None

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, *exc):
        await self.close()

    async def start(self, initial_load=True):
        if initial_load:
            await self.reload()
        for channel in (ORDERS_CHANNEL, NOTIFICATIONS_CHANNEL):
            self._subscriptions.append(self.transport.subscribe(channel, self.handle_event))
        connect = getattr(self.transport, "connect", None)
        if connect is not None:
            await connect()
        self._unwatch = self.polling.watch(self.transport, DATA_TYPES)
        self._sweeper = asyncio.get_running_loop().create_task(self._sweep_loop())

    async def reload(self):
        # Orders first: the priority list resolves against them
        for data_type in (ORDERS, PRIORITY, NOTIFICATIONS):
            self.store.apply_full_replace(data_type, await self.fetch(data_type))

    async def fetch(self, data_type):
        resp = await self.http.get(FETCH_PATHS[data_type])
        resp.raise_for_status()
        body = resp.json()
        if data_type == PRIORITY:
            return body.get("order_ids", [])
        return body

    def handle_event(self, event):
        if not self.suppression.should_process(event):
            return False
        if applies_to(event.kind) and not self.throttle.allow(event.entity_id):
            return False
        return self.store.apply_event(event)

    async def update_order(self, order_id, field, value):
        resp = await self.http.patch(f"/api/orders/{order_id}", json={field: value})
        resp.raise_for_status()
        body = resp.json()
        order = body.get("order", body)
        event = self._response_event(body)
        if event is None and order.get("id") is not None:
            event = ChangeEvent.create(EventKind.ORDER_UPDATED, order["id"], {field: order.get(field, value)})
        if event is not None:
            self.handle_event(event)
        return order

    async def set_priority(self, order_ids):
        resp = await self.http.post(FETCH_PATHS[PRIORITY], json={"orderIds": [str(i) for i in order_ids]})
        resp.raise_for_status()
        body = resp.json()
        event = self._response_event(body)
        if event is not None:
            self.handle_event(event)
        return body

    def _response_event(self, body):
        wire = body.get("event") if isinstance(body, dict) else None
        if not wire:
            return None
        try:
            return ChangeEvent.from_wire(wire)
        except MalformedEventError as exc:
            logger.warning("Ignoring malformed event in response: %s", exc)
            return None

    def status(self):
        return {
            "connection": self.transport.state.value,
            "polling": self.polling.is_polling,
            "syncing": self.polling.is_polling,
        }

    async def _sweep_loop(self):
        while True:
            await asyncio.sleep(self.settings.sweep_interval)
            removed = self.suppression.sweep() + self.throttle.sweep()
            if removed:
                logger.debug("Swept %d expired suppression entries", removed)

    async def close(self):
        if self._unwatch is not None:
            self._unwatch()
            self._unwatch = None
        self.polling.stop()
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        for sub in self._subscriptions:
            sub.unsubscribe()
        self._subscriptions = []
        self.suppression.clear()
        self.throttle.clear()
        if self._owns_transport:
            await self.transport.close()
        if self._owns_http:
            await self.http.aclose()
