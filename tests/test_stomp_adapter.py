import asyncio
from typing import Callable

import aiohttp
import pytest

from conftest import FakeBroker, WSMessage

from pxlink.core.adapters.stomp_adapter import BusState, StompMessagingAdapter
from pxlink.core.domain.models import BrokerError, BusNotConnectedError, ServiceDescriptor
from pxlink.core.ports.outbound.messaging import BusMessage
from pxlink.core.ports.outbound.rest_client import basic_auth_header


def _adapter(broker: FakeBroker, **options) -> StompMessagingAdapter:
    options.setdefault("reconnect_delay", 0.01)
    options.setdefault("ws_factory", broker.connect)
    return StompMessagingAdapter(
        ws_url="wss://ise-pubsub:8910/pxgrid/ise/pubsub",
        authorization=basic_auth_header("test-client", "secret"),
        host_header="ise-pubsub",
        **options,
    )


async def _wait_for(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    async def poll() -> None:
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(poll(), timeout)


@pytest.mark.asyncio
async def test_connect_sends_connect_frame(broker: FakeBroker) -> None:
    bus = _adapter(broker)

    await bus.activate()
    await bus.wait_connected(1.0)

    connect = broker.frames("CONNECT")[0]
    assert connect.headers["accept-version"] == "1.2"
    assert connect.headers["host"] == "ise-pubsub"
    assert connect.headers["heart-beat"] == "4000,4000"
    assert bus.state == BusState.CONNECTED
    assert bus.is_connected()

    await bus.deactivate()


@pytest.mark.asyncio
async def test_publish_and_receive_json(broker: FakeBroker) -> None:
    bus = _adapter(broker)
    received: asyncio.Queue[BusMessage] = asyncio.Queue()

    async def handler(message: BusMessage) -> None:
        await received.put(message)

    await bus.activate()
    await bus.wait_connected(1.0)
    await bus.subscribe("/topic/test", handler)
    await bus.publish("/topic/test", {"hello": "world"})

    message = await asyncio.wait_for(received.get(), 1.0)
    assert message.destination == "/topic/test"
    assert message.body == {"hello": "world"}
    assert message.binary is True

    send = broker.frames("SEND")[0]
    assert send.headers["content-type"] == "application/json"

    await bus.deactivate()


@pytest.mark.asyncio
async def test_text_frames_are_decoded() -> None:
    broker = FakeBroker(binary=False)
    bus = _adapter(broker)
    received: asyncio.Queue[BusMessage] = asyncio.Queue()

    async def handler(message: BusMessage) -> None:
        await received.put(message)

    await bus.activate()
    await bus.wait_connected(1.0)
    await bus.subscribe("/topic/test", handler)
    broker.deliver("/topic/test", b'{"n": 1}')

    message = await asyncio.wait_for(received.get(), 1.0)
    assert message.body == {"n": 1}
    assert message.binary is False

    await bus.deactivate()


@pytest.mark.asyncio
async def test_subscription_before_connect_is_sent_on_connect(broker: FakeBroker) -> None:
    bus = _adapter(broker)

    async def handler(message: BusMessage) -> None:
        pass

    subscription_id = await bus.subscribe("/topic/early", handler)
    assert broker.frames("SUBSCRIBE") == []

    await bus.activate()
    await bus.wait_connected(1.0)

    subscribe = broker.frames("SUBSCRIBE")[0]
    assert subscribe.headers["id"] == subscription_id
    assert subscribe.headers["destination"] == "/topic/early"

    await bus.deactivate()


@pytest.mark.asyncio
async def test_subscriptions_replayed_after_reconnect(broker: FakeBroker) -> None:
    connects: list[str] = []

    async def on_connect(frame) -> None:
        connects.append(frame.headers["version"])

    bus = _adapter(broker, on_connect=on_connect)
    received: asyncio.Queue[BusMessage] = asyncio.Queue()

    async def handler(message: BusMessage) -> None:
        await received.put(message)

    await bus.activate()
    await bus.wait_connected(1.0)
    await bus.subscribe("/topic/a", handler)

    broker.current.drop()
    await _wait_for(lambda: len(broker.sockets) == 2 and bus.is_connected())

    assert broker.current.subscriptions == {"sub-0": "/topic/a"}
    assert connects == ["1.2", "1.2"]

    broker.deliver("/topic/a", b'{"after": "reconnect"}')
    message = await asyncio.wait_for(received.get(), 1.0)
    assert message.body == {"after": "reconnect"}
    assert received.empty()

    await bus.deactivate()


@pytest.mark.asyncio
async def test_unsubscribe_stops_delivery(broker: FakeBroker) -> None:
    bus = _adapter(broker)
    received: list[BusMessage] = []

    async def handler(message: BusMessage) -> None:
        received.append(message)

    await bus.activate()
    await bus.wait_connected(1.0)
    subscription_id = await bus.subscribe("/topic/a", handler)

    assert await bus.unsubscribe(subscription_id) is True
    assert await bus.unsubscribe(subscription_id) is False
    assert broker.frames("UNSUBSCRIBE")[0].headers["id"] == subscription_id

    await bus.publish("/topic/a", {"x": 1})
    await asyncio.sleep(0.05)
    assert received == []

    await bus.deactivate()


@pytest.mark.asyncio
async def test_handler_error_does_not_break_delivery(broker: FakeBroker) -> None:
    bus = _adapter(broker)
    received: asyncio.Queue[BusMessage] = asyncio.Queue()

    async def failing(message: BusMessage) -> None:
        raise RuntimeError("boom")

    async def handler(message: BusMessage) -> None:
        await received.put(message)

    await bus.activate()
    await bus.wait_connected(1.0)
    await bus.subscribe("/topic/a", failing)
    await bus.subscribe("/topic/a", handler)
    await bus.publish("/topic/a", {"x": 1})

    message = await asyncio.wait_for(received.get(), 1.0)
    assert message.body == {"x": 1}
    assert bus.is_connected()

    await bus.deactivate()


@pytest.mark.asyncio
async def test_publish_requires_connection(broker: FakeBroker) -> None:
    bus = _adapter(broker)

    with pytest.raises(BusNotConnectedError):
        await bus.publish("/topic/a", {})


@pytest.mark.asyncio
async def test_broker_error_is_terminal() -> None:
    broker = FakeBroker()
    broker.reject = "Bad CONNECT"
    errors = []

    async def on_stomp_error(frame) -> None:
        errors.append(frame.headers["message"])

    bus = _adapter(broker, on_stomp_error=on_stomp_error)
    await bus.activate()

    with pytest.raises(BrokerError) as exc_info:
        await bus.wait_connected(1.0)

    assert exc_info.value.message == "Bad CONNECT"
    assert exc_info.value.details == "access denied"
    assert errors == ["Bad CONNECT"]
    assert bus.state == BusState.DEACTIVATED
    assert len(broker.sockets) == 1

    with pytest.raises(BusNotConnectedError):
        await bus.activate()


@pytest.mark.asyncio
async def test_wait_connected_times_out() -> None:
    broker = FakeBroker()
    broker.silent = True
    bus = _adapter(broker, connect_timeout=5.0)
    await bus.activate()

    with pytest.raises(asyncio.TimeoutError):
        await bus.wait_connected(0.05)

    assert bus.state == BusState.CONNECTING
    await bus.deactivate()


@pytest.mark.asyncio
async def test_deactivate_sends_disconnect(broker: FakeBroker) -> None:
    closed = []

    async def on_websocket_close() -> None:
        closed.append(True)

    bus = _adapter(broker, on_websocket_close=on_websocket_close)
    await bus.activate()
    await bus.wait_connected(1.0)

    await bus.deactivate()

    assert broker.frames("DISCONNECT")
    assert broker.current.closed
    assert closed == [True]
    assert bus.state == BusState.DEACTIVATED
    with pytest.raises(BusNotConnectedError):
        await bus.wait_connected(0.1)


@pytest.mark.asyncio
async def test_outgoing_heartbeats() -> None:
    broker = FakeBroker(heartbeat="0,20")
    bus = _adapter(broker, heartbeat_outgoing=0.01)
    await bus.activate()
    await bus.wait_connected(1.0)

    await asyncio.sleep(0.1)

    assert b"\n" in broker.current.raw
    await bus.deactivate()


@pytest.mark.asyncio
async def test_silent_broker_triggers_reconnect() -> None:
    broker = FakeBroker(heartbeat="20,0")
    bus = _adapter(broker, heartbeat_incoming=0.02)
    await bus.activate()
    await bus.wait_connected(1.0)

    await _wait_for(lambda: len(broker.sockets) >= 2)

    assert broker.sockets[0].closed
    await bus.deactivate()


def test_heartbeat_negotiation(broker: FakeBroker) -> None:
    bus = _adapter(broker, heartbeat_outgoing=4.0, heartbeat_incoming=4.0)

    assert bus._negotiate_heartbeat("10000,2000") == (4000, 10000)
    assert bus._negotiate_heartbeat("0,0") == (0, 0)
    assert bus._negotiate_heartbeat("garbage") == (0, 0)


def test_from_descriptor_uses_pubsub_properties() -> None:
    descriptor = ServiceDescriptor(
        name="com.cisco.ise.pubsub",
        node_name="ise-pubsub",
        properties={"wsUrl": "wss://ise-pubsub:8910/pxgrid/ise/pubsub"},
        secret="node-secret",
    )

    bus = StompMessagingAdapter.from_descriptor(descriptor, "test-client")

    assert bus.ws_url == "wss://ise-pubsub:8910/pxgrid/ise/pubsub"
    assert bus._host_header == "ise-pubsub"
    assert bus._authorization == basic_auth_header("test-client", "node-secret")
    assert bus.state == BusState.UNCONNECTED


@pytest.mark.asyncio
async def test_failing_connect_hook_keeps_session(broker: FakeBroker) -> None:
    async def on_connect(frame) -> None:
        raise RuntimeError("hook failed")

    bus = _adapter(broker, on_connect=on_connect)
    received: asyncio.Queue[BusMessage] = asyncio.Queue()

    async def handler(message: BusMessage) -> None:
        await received.put(message)

    await bus.activate()
    await bus.wait_connected(1.0)
    await bus.subscribe("/topic/a", handler)
    await bus.publish("/topic/a", {"x": 1})

    message = await asyncio.wait_for(received.get(), 1.0)
    assert message.body == {"x": 1}
    assert bus.is_connected()
    assert len(broker.sockets) == 1
    assert not bus._runner.done()

    await bus.deactivate()


@pytest.mark.asyncio
async def test_failing_close_hook_still_reconnects(broker: FakeBroker) -> None:
    async def on_websocket_close() -> None:
        raise RuntimeError("hook failed")

    bus = _adapter(broker, on_websocket_close=on_websocket_close)
    await bus.activate()
    await bus.wait_connected(1.0)

    broker.current.drop()
    await _wait_for(lambda: len(broker.sockets) == 2 and bus.is_connected())

    await bus.deactivate()
    assert bus.state == BusState.DEACTIVATED


@pytest.mark.asyncio
async def test_unexpected_error_goes_through_reconnect(broker: FakeBroker) -> None:
    attempts = 0

    async def flaky_factory():
        nonlocal attempts
        attempts += 1
        if attempts == 1:
            raise RuntimeError("unexpected")
        return await broker.connect()

    bus = _adapter(broker, ws_factory=flaky_factory)

    await bus.activate()
    await bus.wait_connected(1.0)

    assert attempts == 2
    assert bus.is_connected()

    await bus.deactivate()


@pytest.mark.asyncio
async def test_invalid_header_bytes_reconnect(broker: FakeBroker) -> None:
    bus = _adapter(broker)
    await bus.activate()
    await bus.wait_connected(1.0)

    broker.current.inbox.put_nowait(
        WSMessage(aiohttp.WSMsgType.BINARY, b"MESSAGE\nsubscription:\xff\xfe\n\n\x00")
    )
    await _wait_for(lambda: len(broker.sockets) == 2 and bus.is_connected())

    assert broker.sockets[0].closed
    await bus.deactivate()


@pytest.mark.asyncio
async def test_subscribe_while_socket_is_gone_is_deferred(broker: FakeBroker) -> None:
    bus = _adapter(broker)
    await bus.activate()
    await bus.wait_connected(1.0)

    async def handler(message: BusMessage) -> None:
        pass

    bus._ws = None
    subscription_id = await bus.subscribe("/topic/a", handler)

    assert subscription_id in bus._subscriptions
    await bus.deactivate()


@pytest.mark.asyncio
async def test_unsubscribe_send_failure_is_not_raised(broker: FakeBroker) -> None:
    bus = _adapter(broker)

    async def handler(message: BusMessage) -> None:
        pass

    await bus.activate()
    await bus.wait_connected(1.0)
    subscription_id = await bus.subscribe("/topic/a", handler)

    broker.current.closed = True

    assert await bus.unsubscribe(subscription_id) is True
    assert subscription_id not in bus._subscriptions

    await bus.deactivate()
