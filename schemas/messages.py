from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter


class ImageMetadata(BaseModel):
    imageId: str
    originalName: str
    storedFilename: str
    url: str
    byteSize: int
    mimeType: str
    dimensions: Optional[dict[str, Any]] = None


class TextMessage(BaseModel):
    id: str
    type: Literal["text"] = "text"
    message: str
    sender: str
    timestamp: str
    ttl: int
    roomToken: str


class ImageMessage(BaseModel):
    id: str
    type: Literal["image"] = "image"
    imageData: ImageMetadata
    caption: str = ""
    sender: str
    timestamp: str
    ttl: int
    roomToken: str


Message = Annotated[Union[TextMessage, ImageMessage], Field(discriminator="type")]

message_adapter = TypeAdapter(Message)


class ImagePayload(BaseModel):
    """Image as sent inline over the socket: base64 data, optionally a data URL."""
    id: Optional[str] = None
    name: str = ""
    data: str = ""
    size: Optional[int] = None
    mimeType: Optional[str] = None
    dimensions: Optional[dict[str, Any]] = None
