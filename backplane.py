import asyncio
import json
from typing import Awaitable, Callable, Optional

import redis.asyncio as redis

from constants import BACKPLANE_RETRY_DELAY, BACKPLANE_RETRY_MAX_DELAY
from logging_config import get_logger
from redis_keys import REDIS_VIDEO_CHANNEL, REDIS_VIDEO_CHANNEL_PATTERN

logger = get_logger(__name__)

Deliver = Callable[[str, dict], Awaitable[int]]


class RedisBackplane:
    """Cross-process fan-out for relay instances sharing one Redis.

    Every relay publishes its local broadcasts on the room channel and runs a
    single pattern-subscribed listener that hands envelopes from other
    instances to its own local fan-out.
    """

    def __init__(
        self,
        redis_client,
        instance_id: str,
        retry_delay: float = BACKPLANE_RETRY_DELAY,
        retry_max_delay: float = BACKPLANE_RETRY_MAX_DELAY,
    ):
        self.redis_client = redis_client
        self.instance_id = instance_id
        self.retry_delay = retry_delay
        self.retry_max_delay = retry_max_delay
        self._listener: Optional[asyncio.Task] = None
        self._retry_in = retry_delay

    @classmethod
    def from_url(cls, url: str, instance_id: str) -> "RedisBackplane":
        logger.info(f"Initializing Redis backplane for instance {instance_id}")
        return cls(redis.Redis.from_url(url, decode_responses=True), instance_id)

    def get_room_channel_name(self, video_id: str) -> str:
        return REDIS_VIDEO_CHANNEL.format(video_id=video_id)

    async def ping(self) -> bool:
        return bool(await self.redis_client.ping())

    async def publish(self, video_id: str, message: dict) -> int:
        envelope = {"instance_id": self.instance_id, "video_id": video_id, "message": message}
        channel = self.get_room_channel_name(video_id)
        subscribers = await self.redis_client.publish(channel, json.dumps(envelope))
        logger.debug(f"Published {message.get('type')} to {channel}, {subscribers} subscribers")
        return subscribers

    def start(self, deliver: Deliver) -> asyncio.Task:
        if self._listener is None or self._listener.done():
            self._listener = asyncio.create_task(self.listen(deliver))
        return self._listener

    def is_listening(self) -> bool:
        return self._listener is not None and not self._listener.done()

    async def listen(self, deliver: Deliver) -> None:
        """Consume room channels until cancelled, resubscribing after Redis errors."""
        self._retry_in = self.retry_delay
        while True:
            try:
                await self._consume(deliver)
            except asyncio.CancelledError:
                logger.info("Redis listener task cancelled")
                raise
            except Exception as e:
                delay = self._retry_in
                logger.error(f"Error in Redis listener, resubscribing in {delay:.1f}s: {e}", exc_info=True)
                await asyncio.sleep(delay)
                self._retry_in = min(delay * 2, self.retry_max_delay)

    async def _consume(self, deliver: Deliver) -> None:
        logger.info(f"Subscribing Redis pub/sub listener to {REDIS_VIDEO_CHANNEL_PATTERN}")
        pubsub = self.redis_client.pubsub()
        try:
            await pubsub.psubscribe(REDIS_VIDEO_CHANNEL_PATTERN)
            self._retry_in = self.retry_delay
            while True:
                message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                if message is None:
                    continue
                await self.handle_message(message, deliver)
        finally:
            try:
                await pubsub.aclose()
            except Exception as e:
                logger.error(f"Error closing pub/sub: {e}")

    async def handle_message(self, message: dict, deliver: Deliver) -> bool:
        """Deliver one pub/sub message locally; returns whether it was delivered."""
        if message.get("type") not in ("message", "pmessage"):
            return False
        try:
            envelope = json.loads(message["data"])
            origin = envelope["instance_id"]
            video_id = envelope["video_id"]
            payload = envelope["message"]
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            logger.error(f"Error parsing message from Redis channel {message.get('channel')}: {e}")
            return False

        if origin == self.instance_id:
            return False

        try:
            await deliver(str(video_id), payload)
        except Exception as e:
            logger.error(f"Error delivering backplane message for room {video_id}: {e}", exc_info=True)
            return False
        return True

    async def close(self) -> None:
        if self._listener is not None:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None
        await self.redis_client.aclose()
        logger.debug("Closed Redis backplane")
