from __future__ import annotations

import asyncio
import json

import pytest

from backplane import RedisBackplane


class FakePubSub:
    def __init__(self, messages: list[dict]):
        self.messages = list(messages)
        self.patterns: list[str] = []
        self.closed = False
        self.failures: list[Exception] = []
        self.subscribe_failures: list[Exception] = []

    async def psubscribe(self, pattern: str) -> None:
        if self.subscribe_failures:
            raise self.subscribe_failures.pop(0)
        self.patterns.append(pattern)

    async def get_message(self, ignore_subscribe_messages: bool = False, timeout: float = 0.0):
        if self.failures:
            raise self.failures.pop(0)
        if self.messages:
            return self.messages.pop(0)
        await asyncio.sleep(0.01)
        return None

    async def aclose(self) -> None:
        self.closed = True


class FakeRedis:
    def __init__(self, messages: list[dict] | None = None):
        self.published: list[tuple[str, str]] = []
        self.pubsub_instance = FakePubSub(messages or [])
        self.closed = False

    async def publish(self, channel: str, data: str) -> int:
        self.published.append((channel, data))
        return 2

    async def ping(self) -> bool:
        return True

    def pubsub(self) -> FakePubSub:
        return self.pubsub_instance

    async def aclose(self) -> None:
        self.closed = True


def _pmessage(instance_id: str, video_id: str = "42", message: dict | None = None) -> dict:
    envelope = {"instance_id": instance_id, "video_id": video_id, "message": message or {"type": "typing"}}
    return {
        "type": "pmessage",
        "pattern": "video:channel:*",
        "channel": f"video:channel:{video_id}",
        "data": json.dumps(envelope),
    }


class Recorder:
    def __init__(self):
        self.calls: list[tuple[str, dict]] = []

    async def __call__(self, video_id: str, message: dict) -> int:
        self.calls.append((video_id, message))
        return 1


@pytest.mark.asyncio
async def test_publish_wraps_message_in_envelope():
    client = FakeRedis()
    backplane = RedisBackplane(client, instance_id="a")

    subscribers = await backplane.publish("42", {"type": "typing", "videoId": "42"})

    assert subscribers == 2
    channel, data = client.published[0]
    assert channel == "video:channel:42"
    assert json.loads(data) == {
        "instance_id": "a",
        "video_id": "42",
        "message": {"type": "typing", "videoId": "42"},
    }


@pytest.mark.asyncio
async def test_foreign_envelopes_are_delivered():
    backplane = RedisBackplane(FakeRedis(), instance_id="a")
    deliver = Recorder()

    assert await backplane.handle_message(_pmessage("b", "42", {"type": "new_comment"}), deliver) is True
    assert deliver.calls == [("42", {"type": "new_comment"})]


@pytest.mark.asyncio
async def test_own_envelopes_are_skipped():
    backplane = RedisBackplane(FakeRedis(), instance_id="a")
    deliver = Recorder()

    assert await backplane.handle_message(_pmessage("a"), deliver) is False
    assert deliver.calls == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "message",
    [
        {"type": "psubscribe", "channel": "video:channel:*", "data": 1},
        {"type": "pmessage", "channel": "video:channel:42", "data": "not json"},
        {"type": "pmessage", "channel": "video:channel:42", "data": json.dumps({"video_id": "42"})},
    ],
)
async def test_unusable_messages_are_dropped(message):
    backplane = RedisBackplane(FakeRedis(), instance_id="a")
    deliver = Recorder()

    assert await backplane.handle_message(message, deliver) is False
    assert deliver.calls == []


@pytest.mark.asyncio
async def test_listener_delivers_until_closed():
    client = FakeRedis(messages=[_pmessage("a"), _pmessage("b", "7")])
    backplane = RedisBackplane(client, instance_id="a")
    deliver = Recorder()

    backplane.start(deliver)
    for _ in range(100):
        if deliver.calls:
            break
        await asyncio.sleep(0.01)
    assert backplane.is_listening() is True
    await backplane.close()

    assert backplane.is_listening() is False
    assert deliver.calls == [("7", {"type": "typing"})]
    assert client.pubsub_instance.patterns == ["video:channel:*"]
    assert client.pubsub_instance.closed is True
    assert client.closed is True


@pytest.mark.asyncio
async def test_listener_resubscribes_after_redis_error():
    client = FakeRedis()
    client.pubsub_instance.failures.append(ConnectionError("redis blip"))
    backplane = RedisBackplane(client, instance_id="a", retry_delay=0.01)
    deliver = Recorder()

    backplane.start(deliver)
    for _ in range(100):
        if len(client.pubsub_instance.patterns) == 2:
            break
        await asyncio.sleep(0.01)
    client.pubsub_instance.messages.append(_pmessage("b", "7"))
    for _ in range(100):
        if deliver.calls:
            break
        await asyncio.sleep(0.01)

    assert backplane.is_listening() is True
    assert deliver.calls == [("7", {"type": "typing"})]
    assert client.pubsub_instance.patterns == ["video:channel:*", "video:channel:*"]
    await backplane.close()


@pytest.mark.asyncio
async def test_resubscribe_delay_backs_off_and_resets(monkeypatch):
    client = FakeRedis()
    client.pubsub_instance.subscribe_failures.extend([ConnectionError("connection refused")] * 3)
    backplane = RedisBackplane(client, instance_id="a", retry_delay=0.001, retry_max_delay=0.003)
    delays = []
    real_sleep = asyncio.sleep

    async def recording_sleep(delay):
        delays.append(delay)
        await real_sleep(0)

    monkeypatch.setattr(asyncio, "sleep", recording_sleep)
    backplane.start(Recorder())
    for _ in range(1000):
        if client.pubsub_instance.patterns:
            break
        await real_sleep(0)
    monkeypatch.undo()

    assert [d for d in delays if d < 0.01] == [0.001, 0.002, 0.003]
    assert client.pubsub_instance.patterns == ["video:channel:*"]
    assert backplane._retry_in == 0.001
    await backplane.close()


def test_channel_name():
    backplane = RedisBackplane(FakeRedis(), instance_id="a")

    assert backplane.get_room_channel_name("42") == "video:channel:42"
