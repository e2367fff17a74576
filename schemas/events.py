from typing import Any, Optional

from pydantic import BaseModel

from schemas.messages import ImagePayload


class ClientFrame(BaseModel):
    event: str
    data: dict[str, Any] = {}


class JoinRoomData(BaseModel):
    roomToken: str = ""
    agentId: str = ""


class LeaveRoomData(BaseModel):
    roomToken: Optional[str] = None


class SendMessageData(BaseModel):
    roomToken: str = ""
    message: str = ""
    sender: str = ""
    ttl: Optional[Any] = None


class SendImageData(BaseModel):
    roomToken: str = ""
    imageData: Optional[ImagePayload] = None
    sender: str = ""
    ttl: Optional[Any] = None
    caption: Optional[str] = ""
