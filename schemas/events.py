"""Wire protocol spoken over the feedback relay WebSocket.

Inbound frames are JSON objects with a ``type`` discriminator. The three
types the relay understands form a tagged union (``InboundEvent``); anything
else is ignored by :func:`parse_event` rather than rejected.
"""

import json
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator


class MalformedEventError(ValueError):
    """Raised when an inbound frame cannot be turned into an event."""


def normalize_video_id(value: Any) -> Optional[str]:
    """Return the canonical room key for ``value`` or ``None`` for no room.

    Room keys are positive integers rendered as decimal strings, so ``42``,
    ``"42"`` and ``" 042 "`` all address the same room.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return str(value) if value > 0 else None
    if isinstance(value, str):
        value = value.strip()
        if value.isascii() and value.isdigit():
            number = int(value)
            return str(number) if number > 0 else None
    return None


def _coerce_text(value: Any) -> Optional[str]:
    """Render a client-supplied identity field as text without rejecting it."""
    if value is None:
        return None
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


class _RoomEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    video_id: Optional[str] = Field(None, alias="videoId")

    @field_validator("video_id", mode="before")
    @classmethod
    def normalize_video(cls, value: Any) -> Optional[str]:
        return normalize_video_id(value)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


class JoinEvent(_RoomEvent):
    type: Literal["join"] = "join"
    user_id: Optional[str] = Field(None, alias="userId")
    username: Optional[str] = None

    coerce_identity = field_validator("user_id", "username", mode="before")(_coerce_text)


class NewCommentEvent(_RoomEvent):
    type: Literal["new_comment"] = "new_comment"
    # Comment-with-author payload, relayed untouched
    comment: Any = None


class TypingEvent(_RoomEvent):
    type: Literal["typing"] = "typing"
    user_id: Optional[str] = Field(None, alias="userId")
    is_typing: Any = Field(False, alias="isTyping")

    coerce_identity = field_validator("user_id", mode="before")(_coerce_text)


class JoinedEvent(_RoomEvent):
    type: Literal["joined"] = "joined"


InboundEvent = Annotated[
    Union[JoinEvent, NewCommentEvent, TypingEvent],
    Field(discriminator="type"),
]

INBOUND_TYPES = frozenset({"join", "new_comment", "typing"})

_inbound_adapter = TypeAdapter(InboundEvent)


def parse_event(raw: Union[str, bytes]) -> Optional[InboundEvent]:
    """Parse one inbound frame.

    Returns ``None`` for well-formed objects whose ``type`` is missing or not
    one the relay handles. Raises :class:`MalformedEventError` when the frame
    is not a JSON object. Payload fields are not type-checked; only the room
    identifier is interpreted.
    """
    try:
        data = json.loads(raw)
    except (ValueError, RecursionError) as e:
        # ValueError covers JSONDecodeError and UnicodeDecodeError
        raise MalformedEventError(f"frame is not valid JSON: {type(e).__name__}") from e

    if not isinstance(data, dict):
        raise MalformedEventError(f"frame is a JSON {type(data).__name__}, expected an object")

    event_type = data.get("type")
    if not isinstance(event_type, str) or event_type not in INBOUND_TYPES:
        return None

    try:
        return _inbound_adapter.validate_python(data)
    except ValidationError as e:
        raise MalformedEventError(f"invalid {event_type} event: {e.error_count()} error(s)") from e
