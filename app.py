from fastapi import APIRouter, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from routers.rooms import rooms_router
from routers.images import images_router
from backend import redis_backend
from constants import FRONTEND_URL
from errors import InvalidRequest, StoreUnavailable
from gateway import Connection, Disconnect, parse_frame
from messages import format_timestamp
from redis_keys import REDIS_TEST_KEY
from registry import utcnow
from schemas.rooms import HealthResponse
from services import Services, build_services
from typing import Optional
from logging_config import get_logger, setup_logging
import json
import os
import uuid

# Setup logging
log_level = os.getenv("LOG_LEVEL", "INFO")
log_file = os.getenv("LOG_FILE", None)
setup_logging(log_level=log_level, log_file=log_file)
logger = get_logger(__name__)

relay_router = APIRouter(tags=["relay"])


@relay_router.get("/api/health", response_model=HealthResponse, response_model_exclude_none=True)
async def health(request: Request):
    services: Services = request.app.state.services
    redis_status = "disconnected"
    redis_error = None
    if services.store.is_ready:
        try:
            await services.store.ping()
            redis_status = "connected"
        except StoreUnavailable as e:
            redis_status = "error"
            redis_error = e.message

    return HealthResponse(
        status="ok",
        timestamp=format_timestamp(utcnow()),
        activeRooms=services.registry.active_room_count,
        totalParticipants=services.registry.total_participants,
        activeConnections=services.gateway.active_connection_count,
        redis=redis_status,
        redisError=redis_error,
    )


@relay_router.get("/api/redis/test")
async def redis_test(request: Request):
    services: Services = request.app.state.services
    if not services.store.is_ready:
        raise HTTPException(status_code=503, detail="Redis not connected")

    key = REDIS_TEST_KEY.format(stamp=uuid.uuid4().hex)
    try:
        await services.store.set_with_expiry(key, "Hello Redis!", 60)
        result = await services.store.get(key)
        await services.store.delete(key)
    except StoreUnavailable as e:
        logger.error(f"Redis self test failed: {e}")
        raise HTTPException(status_code=500, detail="Redis test failed")
    return {"success": True, "message": "Redis test successful", "result": result}


async def send_event(websocket: WebSocket, event: str, payload: dict):
    await websocket.send_text(json.dumps({"event": event, "data": payload}))


@relay_router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """Event stream for one client.

    Frames in both directions are JSON objects ``{"event": name, "data": {...}}``.
    """
    services: Services = websocket.app.state.services
    gateway = services.gateway
    await websocket.accept()
    connection = Connection(str(uuid.uuid4()), lambda event, payload: send_event(websocket, event, payload))
    logger.info(f"Client connected: {connection.connection_id}")

    try:
        while True:
            data = await websocket.receive_text()
            try:
                event = parse_frame(data)
            except InvalidRequest as e:
                await connection.emit("error", {"message": e.message})
                continue
            await gateway.handle(connection, event)
    except WebSocketDisconnect:
        logger.debug(f"WebSocket disconnected normally for connection {connection.connection_id}")
    except Exception as e:
        logger.error(f"WebSocket error for connection {connection.connection_id}: {e}", exc_info=True)
    finally:
        await gateway.handle(connection, Disconnect())


def create_app(services: Optional[Services] = None, run_janitor: bool = True) -> FastAPI:
    services = services or build_services(redis_backend)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await services.start(run_janitor=run_janitor)
        try:
            yield
        finally:
            await services.stop()

    app = FastAPI(title="GhostChat Relay", lifespan=lifespan)
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[FRONTEND_URL],
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["*"],
    )

    app.include_router(relay_router)
    app.include_router(rooms_router)
    app.include_router(images_router)
    logger.info("FastAPI application initialized")
    return app


app = create_app()
