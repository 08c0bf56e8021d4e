import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Iterator, List, Optional, Set
import uuid

from fastapi import WebSocket
from starlette.websockets import WebSocketState

from constants import PROXY_USER_ID_HEADER, PROXY_USERNAME_HEADER, RELAY_OUTBOX_SIZE
from logging_config import get_logger
from schemas.events import (
    InboundEvent,
    JoinedEvent,
    JoinEvent,
    MalformedEventError,
    NewCommentEvent,
    TypingEvent,
    parse_event,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class Identity:
    user_id: str
    username: Optional[str] = None


IdentityResolver = Callable[[WebSocket], Optional[Identity]]


def proxy_header_identity(websocket: WebSocket) -> Optional[Identity]:
    """Identity asserted by an authenticating reverse proxy on the upgrade request."""
    user_id = (websocket.headers.get(PROXY_USER_ID_HEADER) or "").strip()
    if not user_id:
        return None
    username = (websocket.headers.get(PROXY_USERNAME_HEADER) or "").strip() or None
    return Identity(user_id=user_id, username=username)


@dataclass
class ConnectionEntry:
    connection_id: str
    websocket: WebSocket
    rooms: Set[str] = field(default_factory=set)
    user_id: Optional[str] = None
    username: Optional[str] = None
    authenticated: bool = False
    connected_at: str = field(default_factory=lambda: datetime.now().isoformat())
    # Frames waiting for this connection's writer task
    outbox: Optional[asyncio.Queue] = None
    writer: Optional[asyncio.Task] = None

    def is_open(self) -> bool:
        return (
            self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )


class ConnectionRegistry:
    """Live connections keyed by connection id."""

    def __init__(self):
        self._entries: Dict[str, ConnectionEntry] = {}

    def add(self, entry: ConnectionEntry) -> None:
        self._entries[entry.connection_id] = entry

    def remove(self, connection_id: str) -> Optional[ConnectionEntry]:
        return self._entries.pop(connection_id, None)

    def get(self, connection_id: str) -> Optional[ConnectionEntry]:
        return self._entries.get(connection_id)

    def snapshot(self) -> List[ConnectionEntry]:
        # Callers iterate this copy while handlers add or remove entries
        return list(self._entries.values())

    def members(self, video_id: str) -> List[ConnectionEntry]:
        return [entry for entry in self.snapshot() if video_id in entry.rooms]

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, connection_id: object) -> bool:
        return connection_id in self._entries

    def __iter__(self) -> Iterator[ConnectionEntry]:
        return iter(self.snapshot())


class RoomRelay:
    """Relays comment and typing events between connections watching the same video.

    Each instance owns its registry; the application constructs one at
    startup and shuts it down on exit. When a backplane is attached, every
    local broadcast is also published for other relay processes, and events
    they publish arrive through :meth:`deliver_remote`.

    Outbound frames go through a bounded per-connection outbox drained by a
    writer task, so a slow recipient never holds up the sender or the rest
    of the room; when its outbox is full, further frames to it are dropped.
    """

    def __init__(
        self,
        identity_resolver: Optional[IdentityResolver] = None,
        backplane=None,
        outbox_size: int = RELAY_OUTBOX_SIZE,
    ):
        self.registry = ConnectionRegistry()
        self.identity_resolver = identity_resolver
        self.backplane = backplane
        self.outbox_size = outbox_size

    async def start(self) -> None:
        if self.backplane is not None:
            self.backplane.start(self.deliver_remote)
            logger.info(f"Relay started with backplane instance {self.backplane.instance_id}")
        else:
            logger.info("Relay started in single-process mode")

    async def shutdown(self) -> None:
        entries = self.registry.snapshot()
        logger.info(f"Relay shutting down, closing {len(entries)} connection(s)")
        writers = []
        for entry in entries:
            if entry.writer is not None:
                entry.writer.cancel()
                writers.append(entry.writer)
            if entry.is_open():
                try:
                    await entry.websocket.close(code=1001)
                except Exception as e:
                    logger.debug(f"Error closing connection {entry.connection_id} on shutdown: {e}")
        await asyncio.gather(*writers, return_exceptions=True)
        self.registry.clear()
        if self.backplane is not None:
            await self.backplane.close()

    async def connect(self, websocket: WebSocket) -> ConnectionEntry:
        identity = self.identity_resolver(websocket) if self.identity_resolver else None
        await websocket.accept()

        entry = ConnectionEntry(connection_id=uuid.uuid4().hex, websocket=websocket)
        if identity is not None:
            entry.user_id = identity.user_id
            entry.username = identity.username
            entry.authenticated = True
        entry.outbox = asyncio.Queue(maxsize=self.outbox_size)
        entry.writer = asyncio.create_task(self._write(entry))
        self.registry.add(entry)
        logger.info(
            f"Connection {entry.connection_id} accepted "
            f"(authenticated={entry.authenticated}, live connections: {len(self.registry)})"
        )
        return entry

    def disconnect(self, connection_id: str) -> None:
        entry = self.registry.remove(connection_id)
        if entry is None:
            return
        if entry.writer is not None:
            entry.writer.cancel()
        logger.info(
            f"Connection {connection_id} closed, left rooms {sorted(entry.rooms)} "
            f"(live connections: {len(self.registry)})"
        )

    async def handle_frame(self, entry: ConnectionEntry, raw) -> None:
        """Parse and dispatch one inbound frame; bad frames never close the connection."""
        try:
            event = parse_event(raw)
        except MalformedEventError as e:
            logger.warning(f"Dropping malformed frame from connection {entry.connection_id}: {e}")
            return

        if event is None:
            logger.debug(f"Ignoring frame with unhandled type from connection {entry.connection_id}")
            return

        await self.dispatch(entry, event)

    async def dispatch(self, entry: ConnectionEntry, event: InboundEvent) -> None:
        if isinstance(event, JoinEvent):
            await self.join(entry, event)
        elif isinstance(event, NewCommentEvent):
            await self.relay_comment(entry, event)
        elif isinstance(event, TypingEvent):
            await self.relay_typing(entry, event)
        else:
            raise TypeError(f"Unhandled event type: {type(event).__name__}")

    async def join(self, entry: ConnectionEntry, event: JoinEvent) -> None:
        if event.video_id is None:
            logger.debug(f"Join without a room from connection {entry.connection_id}")
            return

        entry.rooms.add(event.video_id)
        if not entry.authenticated:
            entry.user_id = event.user_id
            entry.username = event.username
        logger.info(f"Connection {entry.connection_id} (user {entry.user_id}) joined video room {event.video_id}")

        self._enqueue(entry, json.dumps(JoinedEvent(video_id=event.video_id).to_wire()))

    async def relay_comment(self, entry: ConnectionEntry, event: NewCommentEvent) -> int:
        if event.video_id is None or not event.comment:
            return 0
        if event.video_id not in entry.rooms:
            logger.debug(f"Connection {entry.connection_id} sent a comment to room {event.video_id} it has not joined")
            return 0
        return await self.broadcast(event.video_id, event.to_wire(), origin_id=entry.connection_id)

    async def relay_typing(self, entry: ConnectionEntry, event: TypingEvent) -> int:
        if event.video_id is None:
            return 0
        if event.video_id not in entry.rooms:
            logger.debug(f"Connection {entry.connection_id} sent typing to room {event.video_id} it has not joined")
            return 0
        if entry.authenticated:
            event = event.model_copy(update={"user_id": entry.user_id})
        return await self.broadcast(event.video_id, event.to_wire(), origin_id=entry.connection_id)

    async def broadcast(self, video_id: str, message: dict, origin_id: Optional[str] = None) -> int:
        """Queue ``message`` for every other open member of the room; returns how many took it."""
        queued = self._fan_out(video_id, message, origin_id)
        if self.backplane is not None:
            try:
                await self.backplane.publish(video_id, message)
            except Exception as e:
                logger.error(f"Failed to publish to backplane for room {video_id}: {e}", exc_info=True)
        return queued

    async def deliver_remote(self, video_id: str, message: dict) -> int:
        return self._fan_out(video_id, message, origin_id=None)

    async def flush(self) -> None:
        """Wait until every live connection's outbox has been written out."""
        outboxes = [entry.outbox for entry in self.registry.snapshot() if entry.outbox is not None]
        await asyncio.gather(*(outbox.join() for outbox in outboxes))

    def _fan_out(self, video_id: str, message: dict, origin_id: Optional[str]) -> int:
        recipients = [
            entry
            for entry in self.registry.members(video_id)
            if entry.connection_id != origin_id and entry.is_open()
        ]
        if not recipients:
            return 0

        text = json.dumps(message)
        queued = sum(1 for entry in recipients if self._enqueue(entry, text))
        logger.debug(f"Relayed {message.get('type')} to {queued}/{len(recipients)} connection(s) in room {video_id}")
        return queued

    def _enqueue(self, entry: ConnectionEntry, text: str) -> bool:
        if entry.outbox is None:
            return False
        try:
            entry.outbox.put_nowait(text)
        except asyncio.QueueFull:
            logger.warning(f"Outbox full for connection {entry.connection_id}, dropping frame")
            return False
        return True

    async def _write(self, entry: ConnectionEntry) -> None:
        while True:
            text = await entry.outbox.get()
            try:
                await entry.websocket.send_text(text)
            except Exception as e:
                logger.warning(f"Error sending to connection {entry.connection_id}: {e}")
            finally:
                entry.outbox.task_done()

    def room_members(self, video_id: str) -> List[ConnectionEntry]:
        return self.registry.members(video_id)

    def stats(self) -> dict:
        rooms: Set[str] = set()
        for entry in self.registry:
            rooms.update(entry.rooms)
        return {"connections": len(self.registry), "rooms": len(rooms)}
