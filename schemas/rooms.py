from typing import Optional

from pydantic import BaseModel

from schemas.messages import Message


class RoomStatsResponse(BaseModel):
    roomToken: str
    participantCount: int
    messageCount: int
    createdAt: str


class RoomMessagesResponse(BaseModel):
    messages: list[Message]
    count: int
    timestamp: str
    note: Optional[str] = None


class HealthResponse(BaseModel):
    status: str
    timestamp: str
    activeRooms: int
    totalParticipants: int
    activeConnections: int
    redis: str
    redisError: Optional[str] = None
