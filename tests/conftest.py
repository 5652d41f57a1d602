import asyncio
import itertools
import json
from dataclasses import dataclass
from typing import Any

import aiohttp
import pytest

from pxlink.core.adapters.frames import FrameParser, StompFrame
from pxlink.core.domain.models import ClientIdentity
from pxlink.core.ports.outbound.rest_client import HttpResponse
from pxlink.core.services.control import ControlSession


class FakeControlSession(ControlSession):
    """ControlSession answering from an in-memory controller."""

    def __init__(self, hosts: list[str] | None = None, **kwargs: Any) -> None:
        super().__init__(
            ClientIdentity(name="test-client", secret="s3cret"),
            hosts=hosts or ["ctl-1"],
            **kwargs,
        )
        # path -> queued answers, the last one repeats
        self.routes: dict[str, list[Any]] = {}
        # host -> exception raised for every request to it
        self.down: dict[str, Exception] = {}
        self.services: dict[str, dict[str, Any]] = {}
        self.requests: list[tuple[str, str, dict[str, Any]]] = []
        self.delays: list[float] = []
        self.reregister_time_millis = 0
        self._ids = itertools.count(1)

    def route(self, path: str, *answers: Any) -> None:
        self.routes[path] = list(answers)

    def provide(self, name: str, node_name: str = "ise-node", **properties: Any) -> None:
        self.services[name] = {"name": name, "nodeName": node_name, "properties": properties}

    def paths(self) -> list[str]:
        return [path for _, path, _ in self.requests]

    async def _post_to_host(self, host: str, path: str, payload: dict[str, Any]) -> HttpResponse:
        self.requests.append((host, path, payload))
        if host in self.down:
            raise self.down[host]

        queue = self.routes.get(path)
        if queue:
            answer = queue.pop(0) if len(queue) > 1 else queue[0]
        else:
            answer = self._default(path, payload)

        if callable(answer):
            answer = answer(host, payload)
        if isinstance(answer, Exception):
            raise answer
        if isinstance(answer, HttpResponse):
            return answer
        return HttpResponse(status_code=200, headers={}, body=json.dumps(answer))

    def _default(self, path: str, payload: dict[str, Any]) -> Any:
        if path == "/AccountActivate":
            return {"accountState": "ENABLED", "version": "2.0"}
        if path == "/ServiceLookup":
            service = self.services.get(payload["name"])
            return {"services": [service] if service else []}
        if path == "/AccessSecret":
            return {"secret": f"secret-for-{payload['peerNodeName']}"}
        if path == "/ServiceRegister":
            self.provide(payload["name"], node_name=self.identity.name, **payload["properties"])
            return {"id": f"id-{next(self._ids)}", "reregisterTimeMillis": self.reregister_time_millis}
        if path == "/ServiceUnregister":
            return {}
        if path == "/ServiceReregister":
            return {}
        return HttpResponse(status_code=404, headers={}, body='{"message": "unknown path"}')

    async def _delay(self, seconds: float) -> None:
        self.delays.append(seconds)


@dataclass
class WSMessage:
    type: aiohttp.WSMsgType
    data: Any = None


class FakeWebSocket:
    """Client end of a WebSocket connected to FakeBroker."""

    def __init__(self, broker: "FakeBroker") -> None:
        self.broker = broker
        self.inbox: asyncio.Queue[WSMessage] = asyncio.Queue()
        self.subscriptions: dict[str, str] = {}
        self.raw: list[bytes] = []
        self.closed = False
        self._parser = FrameParser()

    async def receive(self, timeout: float | None = None) -> WSMessage:
        return await asyncio.wait_for(self.inbox.get(), timeout)

    async def send_bytes(self, data: bytes) -> None:
        if self.closed:
            raise ConnectionResetError("socket is closed")
        self.raw.append(data)
        for frame in self._parser.feed(data):
            self.broker.received.append(frame)
            self.broker.handle(self, frame)

    async def close(self) -> None:
        self.drop()

    def push(self, frame: StompFrame) -> None:
        data = frame.encode()
        if self.broker.binary:
            self.inbox.put_nowait(WSMessage(aiohttp.WSMsgType.BINARY, data))
        else:
            self.inbox.put_nowait(WSMessage(aiohttp.WSMsgType.TEXT, data.decode("utf-8")))

    def drop(self) -> None:
        """Close from the broker side."""
        if not self.closed:
            self.closed = True
            self.inbox.put_nowait(WSMessage(aiohttp.WSMsgType.CLOSED))


class FakeBroker:
    """In-memory STOMP broker routing SEND frames to matching subscriptions."""

    def __init__(self, heartbeat: str = "0,0", binary: bool = True) -> None:
        self.heartbeat = heartbeat
        self.binary = binary
        self.reject: str | None = None
        self.silent = False
        self.sockets: list[FakeWebSocket] = []
        self.received: list[StompFrame] = []
        self._message_ids = itertools.count()

    async def connect(self) -> FakeWebSocket:
        ws = FakeWebSocket(self)
        self.sockets.append(ws)
        return ws

    def frames(self, command: str) -> list[StompFrame]:
        return [f for f in self.received if f.command == command]

    def handle(self, ws: FakeWebSocket, frame: StompFrame) -> None:
        if frame.command == "CONNECT":
            if self.reject is not None:
                ws.push(StompFrame("ERROR", {"message": self.reject}, b"access denied"))
            elif not self.silent:
                ws.push(StompFrame("CONNECTED", {"version": "1.2", "heart-beat": self.heartbeat}))
        elif frame.command == "SUBSCRIBE":
            ws.subscriptions[frame.headers["id"]] = frame.headers["destination"]
        elif frame.command == "UNSUBSCRIBE":
            ws.subscriptions.pop(frame.headers["id"], None)
        elif frame.command == "SEND":
            self.deliver(frame.headers["destination"], frame.body)

    def deliver(self, destination: str, body: bytes) -> None:
        for ws in self.sockets:
            if ws.closed:
                continue
            for subscription_id, subscribed in ws.subscriptions.items():
                if subscribed == destination:
                    ws.push(
                        StompFrame(
                            "MESSAGE",
                            {
                                "destination": destination,
                                "subscription": subscription_id,
                                "message-id": str(next(self._message_ids)),
                            },
                            body,
                        )
                    )

    @property
    def current(self) -> FakeWebSocket:
        return self.sockets[-1]


@pytest.fixture
def control() -> FakeControlSession:
    return FakeControlSession()


@pytest.fixture
def broker() -> FakeBroker:
    return FakeBroker()
