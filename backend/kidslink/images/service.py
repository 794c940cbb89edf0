"""Image storage backends for message attachments.

Two backends implement the ImageStore interface:
    - LocalImageStore: files on disk in {upload_dir}/{folder}/{uuid}.{ext},
      metadata tracked in DuckDB, served by GET /images/{image_id}
    - S3ImageStore: objects in an S3 bucket under {folder}/{uuid}.{ext}

Both run their blocking I/O in the thread pool so an upload is a suspension
point for the calling handler, never a blocking call on the event loop.
"""
import base64
import binascii
import logging
import re
import threading
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Optional, Tuple

import boto3
import duckdb
from botocore.exceptions import BotoCoreError, ClientError
from fastapi.concurrency import run_in_threadpool

from kidslink.config import AppConfig
from kidslink.errors import ImageUploadError

from .schemas import IMAGE_EXTENSIONS, ImageMetadata, UploadedImage

logger = logging.getLogger(__name__)

DATA_URI_RE = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+);base64,(?P<data>.*)$", re.DOTALL)

# (magic prefix, mime) pairs used when the payload has no data: header
_SIGNATURES = (
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"GIF87a", "image/gif"),
    (b"GIF89a", "image/gif"),
)


def _sniff_mime(content: bytes) -> Optional[str]:
    for prefix, mime in _SIGNATURES:
        if content.startswith(prefix):
            return mime
    if content[:4] == b"RIFF" and content[8:12] == b"WEBP":
        return "image/webp"
    return None


def decode_image_payload(payload: str, max_size_bytes: int) -> Tuple[bytes, str]:
    """Decode a base64 image (raw or ``data:`` URI) into bytes and MIME type.

    Raises:
        ImageUploadError: If the payload is not valid base64, is not an
            accepted image type, is empty or exceeds *max_size_bytes*.
    """
    mime_type = None
    data = payload.strip()
    match = DATA_URI_RE.match(data)
    if match:
        mime_type = match.group("mime").lower()
        data = match.group("data")

    try:
        content = base64.b64decode("".join(data.split()), validate=True)
    except (binascii.Error, ValueError) as e:
        raise ImageUploadError(f"Invalid base64 image data: {e}")

    if not content:
        raise ImageUploadError("Image payload is empty")
    if len(content) > max_size_bytes:
        raise ImageUploadError(
            f"Image size ({len(content)} bytes) exceeds limit ({max_size_bytes} bytes)"
        )

    if mime_type is None:
        mime_type = _sniff_mime(content)
        if mime_type is None:
            raise ImageUploadError("Unsupported image type: unrecognised image data")
    if mime_type not in IMAGE_EXTENSIONS:
        raise ImageUploadError(f"Unsupported image type: {mime_type}")

    return content, mime_type


class ImageStore(ABC):
    """Abstract base class for image upload backends."""

    def __init__(self, max_size_bytes: int, folder: str) -> None:
        self.max_size_bytes = max_size_bytes
        self.folder = folder.strip("/")

    async def upload_base64(self, payload: str, folder: Optional[str] = None) -> UploadedImage:
        """Decode and upload an inline image.

        Args:
            payload: Raw base64 or ``data:<mime>;base64,...`` string.
            folder: Optional folder override (defaults to the configured one).

        Returns:
            UploadedImage with the stable URL and object identifier.

        Raises:
            ImageUploadError: If decoding or the upload fails.
        """
        image_id = str(uuid.uuid4())
        public_id = f"{(folder or self.folder).strip('/')}/{image_id}"
        return await run_in_threadpool(self._decode_and_store, payload, image_id, public_id)

    def _decode_and_store(self, payload: str, image_id: str, public_id: str) -> UploadedImage:
        """Decode and persist one payload (runs in the thread pool)."""
        content, mime_type = decode_image_payload(payload, self.max_size_bytes)
        uploaded = self._store(image_id, public_id, content, mime_type)
        logger.info("Uploaded image %s (%d bytes, %s)", public_id, len(content), mime_type)
        return uploaded

    @abstractmethod
    def _store(self, image_id: str, public_id: str, content: bytes, mime_type: str) -> UploadedImage:
        """Persist the decoded bytes (runs in the thread pool)."""

    def close(self) -> None:
        """Release backend resources."""


class LocalImageStore(ImageStore):
    """Stores images on local disk and tracks metadata in DuckDB."""

    def __init__(
        self,
        upload_dir: str = "uploads",
        db_path: str = "image_metadata.duckdb",
        public_base_url: str = "http://localhost:8000",
        max_size_bytes: int = 10 * 1024 * 1024,
        folder: str = "kidslink/messages",
    ) -> None:
        super().__init__(max_size_bytes, folder)
        self._upload_dir = upload_dir
        self._db_path = db_path
        self._public_base_url = public_base_url.rstrip("/")
        self._lock = threading.Lock()
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        Path(self._upload_dir).mkdir(parents=True, exist_ok=True)
        self._initialize_db()

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            self._connection = duckdb.connect(self._db_path)
        return self._connection

    def _initialize_db(self) -> None:
        with self._lock:
            self._get_connection().execute("""
                CREATE TABLE IF NOT EXISTS image_metadata (
                    id VARCHAR PRIMARY KEY,
                    public_id VARCHAR NOT NULL,
                    stored_path VARCHAR NOT NULL,
                    mime_type VARCHAR NOT NULL,
                    size_bytes BIGINT NOT NULL,
                    uploaded_at TIMESTAMP NOT NULL
                )
            """)

    def _store(self, image_id: str, public_id: str, content: bytes, mime_type: str) -> UploadedImage:
        file_path = Path(self._upload_dir) / f"{public_id}{IMAGE_EXTENSIONS[mime_type]}"
        try:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            file_path.write_bytes(content)
        except OSError as e:
            raise ImageUploadError(f"Could not write image: {e}")

        metadata = ImageMetadata(
            id=image_id,
            public_id=public_id,
            stored_path=str(file_path),
            mime_type=mime_type,
            size_bytes=len(content),
        )
        with self._lock:
            self._get_connection().execute(
                """
                INSERT INTO image_metadata
                (id, public_id, stored_path, mime_type, size_bytes, uploaded_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                [
                    metadata.id,
                    metadata.public_id,
                    metadata.stored_path,
                    metadata.mime_type,
                    metadata.size_bytes,
                    datetime.fromtimestamp(metadata.uploaded_at),
                ],
            )

        return UploadedImage(url=f"{self._public_base_url}/images/{image_id}", public_id=public_id)

    def get_image(self, image_id: str) -> Optional[ImageMetadata]:
        """Get image metadata by ID."""
        with self._lock:
            row = self._get_connection().execute(
                """
                SELECT id, public_id, stored_path, mime_type, size_bytes, uploaded_at
                FROM image_metadata
                WHERE id = ?
                """,
                [image_id],
            ).fetchone()

        if not row:
            return None

        return ImageMetadata(
            id=row[0],
            public_id=row[1],
            stored_path=row[2],
            mime_type=row[3],
            size_bytes=row[4],
            uploaded_at=row[5].timestamp() if row[5] else 0,
        )

    def get_image_path(self, image_id: str) -> Optional[Path]:
        """Get the file path on disk for an image ID."""
        metadata = self.get_image(image_id)
        if not metadata:
            return None
        file_path = Path(metadata.stored_path)
        if not file_path.exists():
            return None
        return file_path

    def close(self) -> None:
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None


class S3ImageStore(ImageStore):
    """Stores images as objects in an S3 bucket."""

    def __init__(
        self,
        bucket: str,
        region: str = "us-east-1",
        public_url: Optional[str] = None,
        aws_access_key_id: Optional[str] = None,
        aws_secret_access_key: Optional[str] = None,
        max_size_bytes: int = 10 * 1024 * 1024,
        folder: str = "kidslink/messages",
    ) -> None:
        super().__init__(max_size_bytes, folder)
        self.bucket = bucket
        self.region = region
        self.public_url = (public_url or f"https://{bucket}.s3.{region}.amazonaws.com").rstrip("/")
        self._client = boto3.client(
            "s3",
            region_name=region,
            aws_access_key_id=aws_access_key_id,
            aws_secret_access_key=aws_secret_access_key,
        )

    def _store(self, image_id: str, public_id: str, content: bytes, mime_type: str) -> UploadedImage:
        key = f"{public_id}{IMAGE_EXTENSIONS[mime_type]}"
        try:
            self._client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=content,
                ContentType=mime_type,
            )
        except (BotoCoreError, ClientError) as e:
            raise ImageUploadError(f"S3 upload failed: {e}")
        return UploadedImage(url=f"{self.public_url}/{key}", public_id=public_id)


def create_image_store(config: AppConfig) -> ImageStore:
    """Build the image backend selected by ``images.backend``."""
    images = config.images
    if images.backend == "s3":
        if not images.s3_bucket:
            raise ValueError("images.s3_bucket is required for the s3 backend")
        logger.info("Image store: s3 bucket=%s region=%s", images.s3_bucket, images.s3_region)
        return S3ImageStore(
            bucket=images.s3_bucket,
            region=images.s3_region,
            public_url=images.s3_public_url,
            aws_access_key_id=config.secrets.aws.access_key_id,
            aws_secret_access_key=config.secrets.aws.secret_access_key,
            max_size_bytes=images.max_size_bytes,
            folder=images.folder,
        )

    logger.info("Image store: local upload_dir=%s", images.upload_dir)
    return LocalImageStore(
        upload_dir=images.upload_dir,
        db_path=images.metadata_db_path,
        public_base_url=images.public_base_url,
        max_size_bytes=images.max_size_bytes,
        folder=images.folder,
    )
