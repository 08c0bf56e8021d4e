from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path

import pytest
import pytest_asyncio
from starlette.websockets import WebSocketState

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from relay import RoomRelay


class FakeWebSocket:
    """Stand-in for a Starlette WebSocket that records what the relay sends."""

    def __init__(self, headers: dict[str, str] | None = None, fail_on_send: bool = False):
        self.headers = headers or {}
        self.client_state = WebSocketState.CONNECTING
        self.application_state = WebSocketState.CONNECTING
        self.fail_on_send = fail_on_send
        self.sent: list[dict] = []
        self.close_code: int | None = None
        self.on_send = None
        self.gate: asyncio.Event | None = None

    async def accept(self) -> None:
        self.client_state = WebSocketState.CONNECTED
        self.application_state = WebSocketState.CONNECTED

    async def send_text(self, text: str) -> None:
        if self.gate is not None:
            await self.gate.wait()
        if self.on_send is not None:
            self.on_send()
        if self.fail_on_send:
            raise RuntimeError("connection reset by peer")
        self.sent.append(json.loads(text))

    async def close(self, code: int = 1000) -> None:
        self.close_code = code
        self.application_state = WebSocketState.DISCONNECTED

    def of_type(self, event_type: str) -> list[dict]:
        return [message for message in self.sent if message.get("type") == event_type]


class FakeBackplane:
    instance_id = "test-instance"

    def __init__(self, fail: bool = False, listening: bool = True):
        self.fail = fail
        self.listening = listening
        self.published: list[tuple[str, dict]] = []
        self.deliver = None
        self.closed = False

    def start(self, deliver) -> None:
        self.deliver = deliver

    async def publish(self, video_id: str, message: dict) -> int:
        if self.fail:
            raise ConnectionError("redis unavailable")
        self.published.append((video_id, message))
        return 1

    async def ping(self) -> bool:
        return not self.fail

    def is_listening(self) -> bool:
        return self.listening

    async def close(self) -> None:
        self.closed = True


@pytest_asyncio.fixture()
async def relay():
    relay = RoomRelay()
    yield relay
    await relay.shutdown()


@pytest.fixture()
def join_frame():
    def _frame(video_id: str = "42", user_id: str = "7", username: str = "Alice") -> str:
        return json.dumps({"type": "join", "videoId": video_id, "userId": user_id, "username": username})

    return _frame


@pytest.fixture()
def joined(relay: RoomRelay, join_frame):
    """Connect a fresh fake socket and join it to ``video_id``."""

    async def _joined(video_id: str = "42", user_id: str = "7", **socket_kwargs):
        websocket = FakeWebSocket(**socket_kwargs)
        entry = await relay.connect(websocket)
        await relay.handle_frame(entry, join_frame(video_id, user_id, f"user-{user_id}"))
        await relay.flush()
        return entry, websocket

    return _joined
