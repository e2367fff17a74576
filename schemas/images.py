from pydantic import BaseModel


class UploadImageResponse(BaseModel):
    success: bool = True
    imageId: str
    filename: str
    imageUrl: str
    size: int
    mimeType: str


class DeleteImageResponse(BaseModel):
    success: bool
    imageId: str
