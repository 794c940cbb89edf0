"""FastAPI router serving images stored by the local backend."""
import logging

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import FileResponse

from .service import LocalImageStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/images", tags=["images"])


@router.get("/{image_id}")
async def download_image(request: Request, image_id: str):
    """Download an image by ID.

    The image URL is the capability: message payloads carry it to every
    participant, so the endpoint does not require a bearer token.

    Raises:
        HTTPException 404: If the image is unknown, missing on disk, or the
            active backend is not the local one.
    """
    store = request.app.state.image_store
    if not isinstance(store, LocalImageStore):
        raise HTTPException(status_code=404, detail="Image not found")

    metadata = store.get_image(image_id)
    file_path = store.get_image_path(image_id) if metadata else None
    if not metadata or not file_path:
        raise HTTPException(status_code=404, detail="Image not found")

    return FileResponse(path=file_path, media_type=metadata.mime_type)
