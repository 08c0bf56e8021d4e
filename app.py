from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from starlette.websockets import WebSocketState

from backplane import RedisBackplane
from constants import (
    CORS_ALLOW_ORIGINS,
    LOG_FILE,
    LOG_LEVEL,
    REDIS_URL,
    RELAY_INSTANCE_ID,
    RELAY_WS_PATH,
    TRUST_PROXY_IDENTITY,
)
from logging_config import get_logger, setup_logging
from relay import IdentityResolver, RoomRelay, proxy_header_identity
from routers.rooms import rooms_router

setup_logging(log_level=LOG_LEVEL, log_file=LOG_FILE)
logger = get_logger(__name__)


def create_app(
    identity_resolver: Optional[IdentityResolver] = None,
    backplane: Optional[RedisBackplane] = None,
    ws_path: str = RELAY_WS_PATH,
) -> FastAPI:
    """Build the relay application; it owns exactly one :class:`RoomRelay`."""
    relay = RoomRelay(identity_resolver=identity_resolver, backplane=backplane)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await relay.start()
        try:
            yield
        finally:
            await relay.shutdown()

    app = FastAPI(lifespan=lifespan)
    app.state.relay = relay

    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ALLOW_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(rooms_router)

    async def relay_endpoint(websocket: WebSocket):
        """Live comment and typing relay for video feedback sessions."""
        entry = await relay.connect(websocket)
        connection_id = entry.connection_id
        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    logger.debug(f"Connection {connection_id} sent close code {message.get('code')}")
                    break
                raw = message.get("text")
                if raw is None:
                    raw = message.get("bytes") or b""
                await relay.handle_frame(entry, raw)
        except WebSocketDisconnect:
            logger.debug(f"WebSocket disconnected for connection {connection_id}")
        except Exception as e:
            logger.error(f"Error serving connection {connection_id}: {e}", exc_info=True)
        finally:
            relay.disconnect(connection_id)
            if websocket.client_state == WebSocketState.CONNECTED:
                try:
                    await websocket.close()
                except Exception as e:
                    logger.debug(f"Error closing WebSocket: {e}")

    app.add_api_websocket_route(ws_path, relay_endpoint)

    logger.info(f"FastAPI application initialized, relay listening on {ws_path}")
    return app


app = create_app(
    identity_resolver=proxy_header_identity if TRUST_PROXY_IDENTITY else None,
    backplane=RedisBackplane.from_url(REDIS_URL, RELAY_INSTANCE_ID) if REDIS_URL else None,
)
