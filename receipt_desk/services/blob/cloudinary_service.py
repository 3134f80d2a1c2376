"""
Blob Storage using Cloudinary

DESIGN DECISION: We use Cloudinary because:
1. Reliable cloud infrastructure with signed, stable URLs
2. Simple API
3. Handles both images (photos of receipts, avatars) and raw files (PDFs)

Blob paths map to Cloudinary public ids under the configured root folder.
Images and PDFs are stored as "image" resources without their extension
(Cloudinary appends the format itself); everything else is stored "raw"
with the full filename.
"""

from typing import Optional

import cloudinary
import cloudinary.exceptions
import cloudinary.uploader
import structlog
from tenacity import retry, stop_after_attempt, wait_exponential

from receipt_desk.config import CloudinarySettings, get_settings
from receipt_desk.services.blob.interface import (
    BlobStore,
    BlobStoreError,
    BlobUploadError,
)


logger = structlog.get_logger()

IMAGE_EXTENSIONS = {"jpg", "jpeg", "png", "gif", "webp", "heic", "bmp", "tif", "tiff", "pdf"}


class CloudinaryBlobStore(BlobStore):
    """
    Cloudinary implementation of the blob store.

    Flow:
    1. Map the blob path to a public id and resource type
    2. Upload (overwriting any previous version of the path)
    3. Return the secure URL
    """

    def __init__(self, settings: Optional[CloudinarySettings] = None):
        self._settings = settings or get_settings().cloudinary
        self._configured = False

    def _configure(self):
        """Configure Cloudinary SDK."""
        if not self._configured:
            cloudinary.config(
                cloud_name=self._settings.cloud_name,
                api_key=self._settings.api_key,
                api_secret=self._settings.api_secret,
                secure=True,
            )
            self._configured = True

    def _locate(self, path: str) -> tuple[str, str]:
        """Blob path -> (public_id, resource_type)."""
        root = self._settings.root_folder.strip("/")
        stem, dot, ext = path.rpartition(".")
        if dot and "/" not in ext and ext.lower() in IMAGE_EXTENSIONS:
            return f"{root}/{stem}", "image"
        return f"{root}/{path}", "raw"

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    async def upload(self, path: str, data: bytes, content_type: str) -> str:
        """
        Upload bytes to Cloudinary.

        Raises:
            BlobUploadError: If upload fails or returns no URL
        """
        self._configure()
        public_id, resource_type = self._locate(path)

        try:
            result = cloudinary.uploader.upload(
                data,
                public_id=public_id,
                resource_type=resource_type,
                overwrite=True,
                invalidate=True,
            )
        except cloudinary.exceptions.Error as e:
            raise BlobUploadError(f"Cloudinary error: {e}")
        except Exception as e:
            raise BlobUploadError(f"Failed to upload {path}: {e}")

        url = result.get("secure_url", result.get("url", ""))
        if not url:
            raise BlobUploadError("No URL returned from Cloudinary")

        logger.info(
            "blob_uploaded",
            path=path,
            content_type=content_type,
            size_bytes=len(data),
        )
        return url

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    async def delete(self, path: str) -> None:
        self._configure()
        public_id, resource_type = self._locate(path)

        try:
            result = cloudinary.uploader.destroy(
                public_id,
                resource_type=resource_type,
                invalidate=True,
            )
        except cloudinary.exceptions.Error as e:
            raise BlobStoreError(f"Cloudinary error: {e}")

        # "not found" is fine: the file is gone either way
        if result.get("result") not in ("ok", "not found"):
            raise BlobStoreError(f"Failed to delete {path}: {result}")
