"""
transport.py - publish/subscribe transport adapters.

Transport is what the rest of the core sees: named channels, handlers that
stay registered across reconnects, and a connection state that can be read
at any time and observed for changes.

ChannelHub is the in-process broker the server publishes to and streams from.
SSETransport is the client side of that stream (GET /api/events/stream).
"""

import asyncio
import json
import logging
import threading
from enum import Enum

import httpx

from .events import ChangeEvent, MalformedEventError


logger = logging.getLogger(__name__)

STREAM_PATH = "/api/events/stream"
PUBLISH_PATH = "/api/events/publish"


class ConnectionState(Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERRORED = "errored"


DOWN_STATES = frozenset({ConnectionState.DISCONNECTED, ConnectionState.ERRORED})


class TransportError(Exception):
    pass


class Subscription:
    def __init__(self, transport, channel, handler):
        self.transport = transport
        self.channel = channel
        self.handler = handler
        self.active = True

    def unsubscribe(self):
        if self.active:
            self.transport._remove(self)
            self.active = False

    def __repr__(self):
        return f"<Subscription {self.channel} active={self.active}>"


class Transport:
    def __init__(self, initial_state=ConnectionState.DISCONNECTED):
        self._state = initial_state
        self._state_listeners = []
        self._subscriptions = {}
        self._lock = threading.RLock()

    @property
    def state(self):
        return self._state

    @property
    def is_connected(self):
        return self._state is ConnectionState.CONNECTED

    def on_connection_state_change(self, callback):
        """Register callback(new_state, old_state); returns an unbind function."""
        with self._lock:
            self._state_listeners.append(callback)

        def unbind():
            with self._lock:
                if callback in self._state_listeners:
                    self._state_listeners.remove(callback)
        return unbind

    def subscribe(self, channel, handler):
        sub = Subscription(self, channel, handler)
        with self._lock:
            self._subscriptions.setdefault(channel, []).append(sub)
        return sub

    def subscriber_count(self, channel):
        with self._lock:
            return len(self._subscriptions.get(channel, []))

    def publish(self, channel, event):
        raise NotImplementedError

    def _remove(self, sub):
        with self._lock:
            subs = self._subscriptions.get(sub.channel, [])
            if sub in subs:
                subs.remove(sub)
            if not subs:
                self._subscriptions.pop(sub.channel, None)

    def _set_state(self, new_state):
        with self._lock:
            old_state = self._state
            if new_state is old_state:
                return
            self._state = new_state
            listeners = list(self._state_listeners)
        logger.info("Transport %s -> %s", old_state.value, new_state.value)
        for cb in listeners:
            try:
                cb(new_state, old_state)
            except Exception:
                logger.exception("Connection state listener failed")

    def _dispatch(self, channel, event):
        with self._lock:
            subs = list(self._subscriptions.get(channel, []))
        delivered = 0
        for sub in subs:
            try:
                sub.handler(event)
                delivered += 1
            except Exception:
                logger.exception("Handler on %s failed for event %s", channel, event.id)
        return delivered


class ChannelHub(Transport):
    """In-process broker. Thread-safe; handlers run on the publishing thread."""

    def __init__(self):
        super().__init__(ConnectionState.DISCONNECTED)

    def open(self):
        self._set_state(ConnectionState.CONNECTED)

    def close(self):
        self._set_state(ConnectionState.DISCONNECTED)

    def publish(self, channel, event):
        if self._state is not ConnectionState.CONNECTED:
            raise TransportError(f"hub is {self._state.value}, cannot publish to {channel}")
        delivered = self._dispatch(channel, event)
        logger.debug("Published %s on %s to %d subscriber(s)", event.kind.value, channel, delivered)
        return True


class SSETransport(Transport):
    def __init__(self, base_url, token=None, channels=("orders", "notifications"),
                 client=None, reconnect_delay=3.0, max_reconnect_delay=30.0):
        super().__init__(ConnectionState.DISCONNECTED)
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.channels = tuple(channels)
        self.reconnect_delay = reconnect_delay
        self.max_reconnect_delay = max_reconnect_delay
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url,
            headers=self._headers(),
            timeout=httpx.Timeout(10.0, read=None),
        )
        self._task = None
        self._closing = False

    @classmethod
    def from_settings(cls, base_url, token, settings, client=None):
        return cls(base_url, token, client=client,
                   reconnect_delay=settings.reconnect_delay,
                   max_reconnect_delay=settings.max_reconnect_delay)

    def _headers(self):
        headers = {"Accept": "text/event-stream"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def connect(self):
        if self._task is not None and not self._task.done():
            return
        self._closing = False
        self._set_state(ConnectionState.CONNECTING)
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def close(self):
        self._closing = True
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._owns_client:
            await self._client.aclose()
        self._set_state(ConnectionState.DISCONNECTED)

    async def publish(self, channel, event):
        try:
            resp = await self._client.post(PUBLISH_PATH, json={"channel": channel, "event": event.to_wire()})
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise TransportError(f"publish to {channel} failed: {exc}") from exc
        return True

    async def _run(self):
        delay = self.reconnect_delay
        while not self._closing:
            self._set_state(ConnectionState.CONNECTING)
            try:
                params = {"channels": ",".join(self.channels)}
                async with self._client.stream("GET", STREAM_PATH, params=params) as response:
                    response.raise_for_status()
                    self._set_state(ConnectionState.CONNECTED)
                    delay = self.reconnect_delay
                    await self._consume(response)
                if not self._closing:
                    logger.warning("Event stream ended, reconnecting in %.1fs", delay)
                    self._set_state(ConnectionState.DISCONNECTED)
            except httpx.HTTPError as exc:
                logger.warning("Event stream error: %s (retry in %.1fs)", exc, delay)
                self._set_state(ConnectionState.ERRORED)
            if self._closing:
                break
            await asyncio.sleep(delay)
            delay = min(delay * 2, self.max_reconnect_delay)

    async def _consume(self, response):
        name, data = None, []
        async for line in response.aiter_lines():
            if line == "":
                if data:
                    self._handle_frame(name or "message", "\n".join(data))
                name, data = None, []
            elif line.startswith(":"):
                continue
            elif line.startswith("event:"):
                name = line[len("event:"):].strip()
            elif line.startswith("data:"):
                data.append(line[len("data:"):].lstrip())

    def _handle_frame(self, name, raw):
        if name not in self.channels:
            return
        try:
            event = ChangeEvent.from_wire(json.loads(raw))
        except (ValueError, MalformedEventError) as exc:
            logger.warning("Discarding malformed frame on %s: %s", name, exc)
            return
        self._dispatch(name, event)
