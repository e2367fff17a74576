import os
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Response, UploadFile
from constants import ALLOWED_IMAGE_TYPES, MAX_UPLOAD_BYTES
from errors import InvalidRequest, StoreUnavailable
from schemas.images import DeleteImageResponse, UploadImageResponse
from services import Services, get_services
from logging_config import get_logger

logger = get_logger(__name__)

images_router = APIRouter(prefix="/api", tags=["images"])


@images_router.post("/upload-image", response_model=UploadImageResponse)
async def upload_image(
    image: Optional[UploadFile] = File(None),
    messageId: Optional[str] = Form(None),
    ttl: Optional[str] = Form(None),
    services: Services = Depends(get_services),
):
    if image is None:
        raise HTTPException(status_code=400, detail="No image file provided")

    # one byte past the ceiling is enough to reject oversized uploads
    data = await image.read(MAX_UPLOAD_BYTES + 1)
    try:
        return await services.messages.store_upload(image.filename or "", image.content_type, data, messageId, ttl)
    except InvalidRequest as e:
        logger.warning(f"Upload rejected for {image.filename}: {e.message}")
        raise HTTPException(status_code=400, detail=e.message)


@images_router.get("/image/{filename}")
async def get_image(filename: str, services: Services = Depends(get_services)):
    try:
        data = await services.blobs.read(filename)
    except InvalidRequest:
        data = None
    if data is None:
        raise HTTPException(status_code=404, detail="Image not found or expired")

    ext = os.path.splitext(filename)[1].lower()
    return Response(
        content=data,
        media_type=ALLOWED_IMAGE_TYPES.get(ext, "image/jpeg"),
        headers={"Cache-Control": "public, max-age=3600"},
    )


@images_router.delete("/image/{image_id}", response_model=DeleteImageResponse)
async def delete_image(image_id: str, services: Services = Depends(get_services)):
    try:
        deleted = await services.history.delete_image_record(image_id)
    except StoreUnavailable:
        raise HTTPException(status_code=503, detail="Redis not available")
    return DeleteImageResponse(success=deleted, imageId=image_id)
