"""Pydantic schemas for message image uploads.

Images arrive inline as base64 (optionally as a ``data:`` URI) on the
``send_message`` event and are handed to an ImageStore, which returns a
stable URL and an object identifier that are stored on the message.
"""
import time
import uuid
from typing import Dict

from pydantic import BaseModel, Field


class UploadedImage(BaseModel):
    """Result of a successful upload.

    Attributes:
        url: Stable URL clients use to fetch the image.
        public_id: Store-specific object identifier (``<folder>/<uuid>``).
    """
    url: str = Field(..., description="Stable image URL")
    public_id: str = Field(..., description="Object identifier in the image store")


class ImageMetadata(BaseModel):
    """Metadata for an image kept by the local backend."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()), description="Image ID")
    public_id: str = Field(..., description="<folder>/<id>")
    stored_path: str = Field(..., description="Path of the file on disk")
    mime_type: str = Field(..., description="MIME type of the image")
    size_bytes: int = Field(..., description="Image size in bytes")
    uploaded_at: float = Field(default_factory=time.time, description="Upload timestamp")


# Accepted image MIME types and the file extension used when storing them
IMAGE_EXTENSIONS: Dict[str, str] = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
    "image/webp": ".webp",
}
