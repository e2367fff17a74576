from fastapi import APIRouter, Depends, HTTPException
from errors import InvalidRequest, NotFound
from messages import format_timestamp
from registry import is_valid_room_token
from schemas.rooms import RoomMessagesResponse, RoomStatsResponse
from services import Services, get_services
from logging_config import get_logger

logger = get_logger(__name__)

rooms_router = APIRouter(prefix="/api/room", tags=["rooms"])


@rooms_router.get("/{room_token}/stats", response_model=RoomStatsResponse)
async def get_room_stats(room_token: str, services: Services = Depends(get_services)):
    if not is_valid_room_token(room_token):
        logger.warning(f"Room stats failed: invalid token {room_token}")
        raise HTTPException(status_code=400, detail="Invalid room token")

    try:
        stats = services.registry.stats(room_token)
    except NotFound:
        raise HTTPException(status_code=404, detail="Room not found")

    return RoomStatsResponse(
        roomToken=room_token,
        participantCount=stats.participant_count,
        messageCount=stats.message_count,
        createdAt=format_timestamp(stats.created_at),
    )


@rooms_router.get("/{room_token}/messages", response_model=RoomMessagesResponse)
async def get_room_messages(room_token: str, services: Services = Depends(get_services)):
    """
    Visible history of a room, oldest first.

    Burn-after-reading messages are never stored and never show up here. When
    Redis is down the list is empty and `note` says why.
    """
    try:
        result = await services.history.get_history(room_token)
    except InvalidRequest as e:
        logger.warning(f"History request failed for {room_token}: {e.message}")
        raise HTTPException(status_code=400, detail=e.message)

    return RoomMessagesResponse(
        messages=result.messages,
        count=result.count,
        timestamp=result.timestamp,
        note=result.note,
    )
