import asyncio
import json

import httpx
import pytest

from planboard.events import ChangeEvent, EventKind, ORDERS_CHANNEL
from planboard.transport import ChannelHub, ConnectionState, SSETransport, TransportError


def order_event(data=None):
    return ChangeEvent.create(EventKind.ORDER_UPDATED, "O1", data or {"material": "Pine"})


class TestChannelHub:
    def test_publish_reaches_channel_subscribers_only(self, hub):
        orders, notes = [], []
        hub.subscribe("orders", orders.append)
        hub.subscribe("notifications", notes.append)
        event = order_event()
        assert hub.publish("orders", event) is True
        assert orders == [event]
        assert notes == []

    def test_unsubscribe(self, hub):
        got = []
        sub = hub.subscribe("orders", got.append)
        sub.unsubscribe()
        sub.unsubscribe()
        hub.publish("orders", order_event())
        assert got == []
        assert hub.subscriber_count("orders") == 0

    def test_failing_handler_does_not_block_others(self, hub):
        got = []

        def broken(event):
            raise RuntimeError("boom")
        hub.subscribe("orders", broken)
        hub.subscribe("orders", got.append)
        hub.publish("orders", order_event())
        assert len(got) == 1

    def test_publish_while_closed_raises(self):
        hub = ChannelHub()
        assert hub.state is ConnectionState.DISCONNECTED
        with pytest.raises(TransportError):
            hub.publish("orders", order_event())

    def test_state_changes_are_observable(self):
        hub = ChannelHub()
        changes = []
        unbind = hub.on_connection_state_change(lambda new, old: changes.append((old, new)))
        hub.open()
        hub.open()
        hub.close()
        unbind()
        hub.open()
        assert changes == [
            (ConnectionState.DISCONNECTED, ConnectionState.CONNECTED),
            (ConnectionState.CONNECTED, ConnectionState.DISCONNECTED),
        ]

    def test_subscriptions_survive_reconnect(self, hub):
        got = []
        hub.subscribe("orders", got.append)
        hub.close()
        hub.open()
        hub.publish("orders", order_event())
        assert len(got) == 1


def sse_body(*events):
    chunks = ['event: connected\ndata: {"channels": ["orders"]}\n\n', ": keep-alive\n\n"]
    for channel, payload in events:
        chunks.append(f"event: {channel}\ndata: {payload}\n\n")
    return "".join(chunks).encode()


async def wait_for(predicate, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


class TestSSETransport:
    @pytest.mark.asyncio
    async def test_stream_delivers_events_then_reports_disconnect(self):
        event = order_event()
        body = sse_body((ORDERS_CHANNEL, json.dumps(event.to_wire())),
                        (ORDERS_CHANNEL, "{not json"))

        def handler(request):
            assert request.url.path == "/api/events/stream"
            return httpx.Response(200, content=body, headers={"Content-Type": "text/event-stream"})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://test")
        transport = SSETransport("http://test", token="t", client=client, reconnect_delay=10)
        got, states = [], []
        transport.subscribe(ORDERS_CHANNEL, got.append)
        transport.on_connection_state_change(lambda new, old: states.append(new))
        await transport.connect()
        await wait_for(lambda: ConnectionState.DISCONNECTED in states)
        assert got == [event]
        assert states[:3] == [ConnectionState.CONNECTING, ConnectionState.CONNECTED,
                              ConnectionState.DISCONNECTED]
        await transport.close()
        await client.aclose()

    @pytest.mark.asyncio
    async def test_http_error_reports_errored(self):
        def handler(request):
            return httpx.Response(503)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://test")
        transport = SSETransport("http://test", client=client, reconnect_delay=10)
        await transport.connect()
        assert transport.state is ConnectionState.CONNECTING
        await wait_for(lambda: transport.state is ConnectionState.ERRORED)
        await transport.close()
        assert transport.state is ConnectionState.DISCONNECTED
        await client.aclose()

    @pytest.mark.asyncio
    async def test_publish_posts_wire_event(self):
        seen = []

        def handler(request):
            seen.append((request.method, request.url.path, json.loads(request.content),
                         request.headers.get("Authorization")))
            return httpx.Response(202, json={"published": True})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://test",
                                   headers={"Authorization": "Bearer t"})
        transport = SSETransport("http://test", token="t", client=client)
        event = order_event()
        assert await transport.publish(ORDERS_CHANNEL, event) is True
        method, path, body, auth = seen[0]
        assert (method, path, auth) == ("POST", "/api/events/publish", "Bearer t")
        assert body == {"channel": "orders", "event": event.to_wire()}
        await client.aclose()

    @pytest.mark.asyncio
    async def test_publish_failure_raises_transport_error(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(500)),
                                   base_url="http://test")
        transport = SSETransport("http://test", client=client)
        with pytest.raises(TransportError):
            await transport.publish(ORDERS_CHANNEL, order_event())
        await client.aclose()
