from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse
from schemas.events import normalize_video_id
from schemas.rooms import HealthResponse, OnlineUser, RoomPresenceResponse
from logging_config import get_logger

logger = get_logger(__name__)

rooms_router = APIRouter(tags=["rooms"])


@rooms_router.get("/rooms/{video_id}", response_model=RoomPresenceResponse)
async def get_room_presence(video_id: str, request: Request):
    """
    Who is connected to a video's live feedback session right now.

    Returns:
    - video_id: Normalized room identifier
    - online_count: Number of live connections that joined the room
    - online_users: One entry per connection with its claimed identity
    """
    room = normalize_video_id(video_id)
    if room is None:
        logger.warning(f"Room presence failed: invalid video id {video_id!r}")
        raise HTTPException(status_code=400, detail="Invalid video id")

    relay = request.app.state.relay
    members = relay.room_members(room)
    logger.debug(f"Room presence for {room}: {len(members)} connection(s)")

    return RoomPresenceResponse(
        video_id=room,
        online_count=len(members),
        online_users=[
            OnlineUser(
                connection_id=entry.connection_id,
                user_id=entry.user_id,
                username=entry.username,
                connected_at=entry.connected_at,
            )
            for entry in members
        ],
    )


@rooms_router.get("/health", response_model=HealthResponse)
async def health(request: Request):
    relay = request.app.state.relay
    components = {}

    if relay.backplane is None:
        components["backplane"] = {"ok": True, "mode": "single-process"}
    else:
        try:
            reachable = await relay.backplane.ping()
            listening = relay.backplane.is_listening()
            components["backplane"] = {"ok": reachable and listening, "mode": "redis", "listening": listening}
        except Exception as e:
            logger.warning(f"Backplane health check failed: {e}")
            components["backplane"] = {"ok": False, "mode": "redis", "error": str(e)}

    all_ok = all(c.get("ok", False) for c in components.values())
    body = HealthResponse(status="ok" if all_ok else "degraded", components=components, **relay.stats())
    return JSONResponse(body.model_dump(), status_code=200 if all_ok else 503)
