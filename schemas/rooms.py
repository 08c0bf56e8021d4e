from pydantic import BaseModel
from typing import Any, Optional


class OnlineUser(BaseModel):
    connection_id: str
    user_id: Optional[str] = None
    username: Optional[str] = None
    connected_at: str

class RoomPresenceResponse(BaseModel):
    video_id: str
    online_count: int
    online_users: list[OnlineUser]

class HealthResponse(BaseModel):
    status: str
    connections: int
    rooms: int
    components: dict[str, dict[str, Any]]
