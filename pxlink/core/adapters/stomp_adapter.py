"""STOMP over WebSocket messaging adapter implementation."""

import asyncio
import contextlib
import itertools
import json
import ssl
from collections import deque
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import aiohttp
import structlog

from pxlink.core.adapters.frames import HEARTBEAT, FrameError, FrameParser, StompFrame
from pxlink.core.domain.models import (
    BrokerError,
    BusNotConnectedError,
    ServiceDescriptor,
)
from pxlink.core.ports.outbound.messaging import BusMessage, IMessagingPort, MessageHandler
from pxlink.core.ports.outbound.rest_client import basic_auth_header

logger = structlog.get_logger(__name__)

STOMP_VERSION = "1.2"

WebSocketFactory = Callable[[], Awaitable[Any]]
FrameHook = Callable[[StompFrame], Awaitable[None]]
CloseHook = Callable[[], Awaitable[None]]

# Failures that mean the transport dropped; these go through the reconnect delay
_TRANSPORT_ERRORS = (
    aiohttp.ClientError,
    ConnectionError,
    OSError,
    asyncio.TimeoutError,
    FrameError,
)


class BusState(str, Enum):
    """Message bus connection state."""

    UNCONNECTED = "unconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    DEACTIVATED = "deactivated"


class StompMessagingAdapter(IMessagingPort):
    """
    STOMP 1.2 messaging adapter over a mutual-TLS WebSocket.

    The adapter owns one socket and multiplexes every subscription and
    publisher over it. Subscriptions are kept as desired state and are
    replayed after every (re)connect, so callers subscribe once and never
    need to resubscribe from a connect callback.

    Transport drops reconnect after ``reconnect_delay`` seconds. A STOMP
    ERROR frame from the broker is terminal: the adapter deactivates and
    the error is raised from wait_connected().
    """

    def __init__(
        self,
        ws_url: str,
        authorization: str,
        host_header: str,
        ssl_context: Optional[ssl.SSLContext] = None,
        reconnect_delay: float = 30.0,
        heartbeat_outgoing: float = 4.0,
        heartbeat_incoming: float = 4.0,
        connect_timeout: float = 30.0,
        ws_factory: Optional[WebSocketFactory] = None,
        on_connect: Optional[FrameHook] = None,
        on_websocket_close: Optional[CloseHook] = None,
        on_stomp_error: Optional[FrameHook] = None,
    ):
        """
        Initialize STOMP adapter.

        Args:
            ws_url: WebSocket URL of the pub/sub service (``wsUrl`` property)
            authorization: Authorization header sent on the WebSocket handshake
            host_header: Value of the STOMP ``host`` connect header
            ssl_context: Mutual-TLS context
            reconnect_delay: Seconds to wait before reconnecting after a drop
            heartbeat_outgoing: Seconds between outgoing heart-beats, 0 disables
            heartbeat_incoming: Expected seconds between incoming heart-beats, 0 disables
            connect_timeout: Seconds to wait for the CONNECTED frame
            ws_factory: Coroutine returning an open WebSocket, defaults to aiohttp
            on_connect: Called with the CONNECTED frame after every (re)connect
            on_websocket_close: Called when the socket closes
            on_stomp_error: Called with the ERROR frame sent by the broker
        """
        self._ws_url = ws_url
        self._authorization = authorization
        self._host_header = host_header
        self._ssl = ssl_context
        self._reconnect_delay = reconnect_delay
        self._heartbeat_outgoing_ms = int(heartbeat_outgoing * 1000)
        self._heartbeat_incoming_ms = int(heartbeat_incoming * 1000)
        self._connect_timeout = connect_timeout
        self._ws_factory = ws_factory or self._open_websocket

        self.on_connect = on_connect
        self.on_websocket_close = on_websocket_close
        self.on_stomp_error = on_stomp_error

        self._state = BusState.UNCONNECTED
        self._active = False
        self._ws: Any = None
        self._http: Optional[aiohttp.ClientSession] = None
        self._runner: Optional[asyncio.Task[None]] = None
        self._heartbeat_task: Optional[asyncio.Task[None]] = None
        self._connected = asyncio.Event()
        self._stopped = asyncio.Event()
        self._error: Optional[BrokerError] = None

        self._parser = FrameParser()
        self._pending: deque[tuple[StompFrame, bool]] = deque()
        self._read_timeout: Optional[float] = None

        # Desired subscriptions: subscription id -> (destination, handler)
        self._subscriptions: dict[str, tuple[str, MessageHandler]] = {}
        self._ids = itertools.count()

    @classmethod
    def from_descriptor(
        cls,
        descriptor: ServiceDescriptor,
        client_name: str,
        ssl_context: Optional[ssl.SSLContext] = None,
        **options: Any,
    ) -> "StompMessagingAdapter":
        """Build from a resolved pub/sub service descriptor."""
        return cls(
            ws_url=descriptor.property("wsUrl"),
            authorization=basic_auth_header(client_name, descriptor.secret or ""),
            host_header=descriptor.node_name,
            ssl_context=ssl_context,
            **options,
        )

    @property
    def state(self) -> BusState:
        return self._state

    @property
    def ws_url(self) -> str:
        return self._ws_url

    @property
    def last_error(self) -> Optional[BrokerError]:
        return self._error

    def is_connected(self) -> bool:
        return self._state == BusState.CONNECTED

    # === Lifecycle ===

    async def activate(self) -> None:
        """Start the background connection task."""
        if self._state == BusState.DEACTIVATED:
            raise BusNotConnectedError(self._state.value)
        if self._active:
            return

        self._active = True
        self._runner = asyncio.create_task(self._run())

    async def wait_connected(self, timeout: float | None = None) -> None:
        """Wait for the CONNECTED state."""
        waiters = {
            asyncio.ensure_future(self._connected.wait()),
            asyncio.ensure_future(self._stopped.wait()),
        }
        try:
            await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()

        if self._state == BusState.CONNECTED:
            return
        if self._error is not None:
            raise self._error
        if self._stopped.is_set():
            raise BusNotConnectedError(self._state.value)
        raise asyncio.TimeoutError(f"Not connected to {self._ws_url} after {timeout}s")

    async def deactivate(self) -> None:
        """Disconnect for good."""
        if self._state == BusState.DEACTIVATED:
            return

        self._active = False
        if self._state == BusState.CONNECTED and self._ws is not None:
            try:
                await self._send(StompFrame("DISCONNECT"))
            except _TRANSPORT_ERRORS as e:
                logger.debug("bus_disconnect_send_failed", error=str(e))

        await self._cancel(self._heartbeat_task)
        self._heartbeat_task = None
        if self._runner is not None and self._runner is not asyncio.current_task():
            await self._cancel(self._runner)
        self._runner = None

        await self._close_socket()
        if self._http is not None:
            await self._http.close()
            self._http = None

        self._set_state(BusState.DEACTIVATED)
        self._stopped.set()
        logger.info("bus_deactivated", url=self._ws_url)

    # === Pub/Sub ===

    async def subscribe(self, destination: str, handler: MessageHandler) -> str:
        """Subscribe a handler to a destination; survives reconnects."""
        subscription_id = f"sub-{next(self._ids)}"
        self._subscriptions[subscription_id] = (destination, handler)

        if self.is_connected():
            try:
                await self._send_subscribe(subscription_id, destination)
            except _TRANSPORT_ERRORS as e:
                # Replayed on the next connect
                logger.warning(
                    "bus_subscribe_deferred",
                    destination=destination,
                    error=str(e),
                )

        logger.info(
            "bus_subscribed",
            destination=destination,
            subscription_id=subscription_id,
        )
        return subscription_id

    async def unsubscribe(self, subscription_id: str) -> bool:
        if subscription_id not in self._subscriptions:
            return False

        self._subscriptions.pop(subscription_id)
        if self.is_connected():
            try:
                await self._send(StompFrame("UNSUBSCRIBE", {"id": subscription_id}))
            except _TRANSPORT_ERRORS as e:
                # Not replayed on the next connect
                logger.warning(
                    "bus_unsubscribe_deferred",
                    subscription_id=subscription_id,
                    error=str(e),
                )

        logger.info("bus_unsubscribed", subscription_id=subscription_id)
        return True

    async def publish(self, destination: str, payload: Any) -> None:
        """Publish a JSON payload as a binary SEND frame."""
        if not self.is_connected() or self._ws is None:
            raise BusNotConnectedError(self._state.value)

        body = json.dumps(payload, default=str).encode("utf-8")
        await self._send(
            StompFrame(
                "SEND",
                {"destination": destination, "content-type": "application/json"},
                body,
            )
        )

        logger.debug(
            "bus_message_published",
            destination=destination,
            size=len(body),
        )

    # === Connection loop ===

    async def _run(self) -> None:
        while self._active:
            self._set_state(BusState.CONNECTING)
            try:
                await self._connect_once()
                await self._read_loop()
            except BrokerError as e:
                self._error = e
                self._active = False
            except _TRANSPORT_ERRORS as e:
                logger.warning("bus_connection_lost", url=self._ws_url, error=str(e) or type(e).__name__)
            except Exception as e:
                logger.error(
                    "bus_session_error",
                    url=self._ws_url,
                    error=str(e) or type(e).__name__,
                    error_type=type(e).__name__,
                )
            finally:
                self._connected.clear()
                if self._state == BusState.CONNECTED:
                    self._set_state(BusState.DISCONNECTED)
                await self._cancel(self._heartbeat_task)
                self._heartbeat_task = None
                await self._close_socket()

            if not self._active:
                break

            self._set_state(BusState.DISCONNECTED)
            logger.info("bus_reconnecting", url=self._ws_url, delay=self._reconnect_delay)
            await asyncio.sleep(self._reconnect_delay)

        if self._error is not None:
            self._runner = None
            await self.deactivate()

    async def _connect_once(self) -> None:
        self._parser.reset()
        self._pending.clear()
        self._read_timeout = None

        logger.info("bus_connecting", url=self._ws_url)
        self._ws = await self._ws_factory()

        await self._send(
            StompFrame(
                "CONNECT",
                {
                    "accept-version": STOMP_VERSION,
                    "host": self._host_header,
                    "heart-beat": f"{self._heartbeat_outgoing_ms},{self._heartbeat_incoming_ms}",
                },
            )
        )

        frame, _ = await self._next_frame(self._connect_timeout)
        if frame.command == "ERROR":
            raise await self._broker_error(frame)
        if frame.command != "CONNECTED":
            raise FrameError(f"Expected CONNECTED frame, got {frame.command}")

        outgoing, incoming = self._negotiate_heartbeat(frame.headers.get("heart-beat", "0,0"))
        if incoming:
            self._read_timeout = incoming * 2 / 1000

        self._set_state(BusState.CONNECTED)
        for subscription_id, (destination, _) in list(self._subscriptions.items()):
            await self._send_subscribe(subscription_id, destination)

        if outgoing:
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(outgoing / 1000))

        logger.info(
            "bus_connected",
            url=self._ws_url,
            version=frame.headers.get("version", ""),
            subscriptions=len(self._subscriptions),
        )
        self._connected.set()

        await self._call_hook("on_connect", self.on_connect, frame)

    async def _read_loop(self) -> None:
        while True:
            frame, binary = await self._next_frame(self._read_timeout)
            if frame.command == "MESSAGE":
                await self._dispatch(frame, binary)
            elif frame.command == "ERROR":
                raise await self._broker_error(frame)
            else:
                logger.debug("bus_frame_ignored", command=frame.command)

    async def _next_frame(self, timeout: Optional[float]) -> tuple[StompFrame, bool]:
        while not self._pending:
            msg = await self._ws.receive(timeout=timeout)
            if msg.type == aiohttp.WSMsgType.BINARY:
                data, binary = msg.data, True
            elif msg.type == aiohttp.WSMsgType.TEXT:
                data, binary = msg.data.encode("utf-8"), False
            else:
                raise ConnectionError(f"WebSocket closed ({msg.type.name})")

            for frame in self._parser.feed(data):
                self._pending.append((frame, binary))

        return self._pending.popleft()

    async def _dispatch(self, frame: StompFrame, binary: bool) -> None:
        subscription_id = frame.headers.get("subscription", "")
        entry = self._subscriptions.get(subscription_id)
        destination = frame.headers.get("destination", "")

        if entry is None:
            logger.debug(
                "bus_message_unrouted",
                subscription_id=subscription_id,
                destination=destination,
            )
            return

        _, handler = entry
        try:
            message = BusMessage(
                destination=destination,
                body=json.loads(frame.text()),
                headers=dict(frame.headers),
                binary=binary,
            )
            await handler(message)
        except Exception as e:
            logger.error(
                "bus_handler_error",
                error=str(e),
                destination=destination,
                subscription_id=subscription_id,
            )

    async def _broker_error(self, frame: StompFrame) -> BrokerError:
        error = BrokerError(
            frame.headers.get("message", ""),
            frame.body.decode("utf-8", errors="replace"),
        )
        logger.error(
            "bus_broker_error",
            url=self._ws_url,
            message=error.message,
            details=error.details,
        )
        await self._call_hook("on_stomp_error", self.on_stomp_error, frame)
        return error

    def _negotiate_heartbeat(self, header: str) -> tuple[int, int]:
        try:
            sx, sy = (int(v) for v in header.split(","))
        except ValueError:
            sx, sy = 0, 0

        cx, cy = self._heartbeat_outgoing_ms, self._heartbeat_incoming_ms
        outgoing = 0 if cx == 0 or sy == 0 else max(cx, sy)
        incoming = 0 if cy == 0 or sx == 0 else max(cy, sx)
        return outgoing, incoming

    async def _heartbeat_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            if self._ws is None:
                return
            try:
                await self._ws.send_bytes(HEARTBEAT)
            except _TRANSPORT_ERRORS as e:
                logger.debug("bus_heartbeat_failed", error=str(e))
                return

    # === Helpers ===

    async def _open_websocket(self) -> Any:
        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession()
        return await self._http.ws_connect(
            self._ws_url,
            ssl=self._ssl,
            headers={"Authorization": self._authorization},
            protocols=("v12.stomp",),
        )

    async def _send(self, frame: StompFrame) -> None:
        if self._ws is None:
            raise ConnectionError("WebSocket is not open")
        await self._ws.send_bytes(frame.encode())

    async def _send_subscribe(self, subscription_id: str, destination: str) -> None:
        await self._send(
            StompFrame(
                "SUBSCRIBE",
                {"id": subscription_id, "destination": destination, "ack": "auto"},
            )
        )

    async def _close_socket(self) -> None:
        ws, self._ws = self._ws, None
        if ws is None:
            return

        with contextlib.suppress(*_TRANSPORT_ERRORS):
            await ws.close()

        logger.info("bus_websocket_closed", url=self._ws_url)
        await self._call_hook("on_websocket_close", self.on_websocket_close)

    async def _call_hook(
        self,
        name: str,
        hook: Optional[Callable[..., Awaitable[None]]],
        *args: Any,
    ) -> None:
        if hook is None:
            return
        try:
            await hook(*args)
        except Exception as e:
            logger.error("bus_hook_error", hook=name, url=self._ws_url, error=str(e))

    @staticmethod
    async def _cancel(task: Optional[asyncio.Task[Any]]) -> None:
        if task is None or task.done():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    def _set_state(self, state: BusState) -> None:
        if state != self._state:
            logger.debug("bus_state", previous=self._state.value, state=state.value)
            self._state = state
