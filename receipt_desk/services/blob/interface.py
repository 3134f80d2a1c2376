"""
Abstract Blob Store

Receipt files and avatars live in a blob store, addressed by a path:

    receipts/{owner_user_id}/{receipt_id}/{filename}
    profile/{user_id}/avatar.{ext}

The store returns a download URL for every upload. The path is what we
persist (on the receipt) so a file can be deleted later.
"""

from abc import ABC, abstractmethod


class BlobStoreError(Exception):
    """Base exception for blob storage errors."""
    pass


class BlobUploadError(BlobStoreError):
    """Failed to upload a file."""
    pass


def safe_filename(filename: str) -> str:
    """Filename usable as the last path segment (no separators, never empty)."""
    cleaned = (filename or "").strip().replace("/", "_").replace("\\", "_")
    return cleaned or "file"


def receipt_blob_path(owner_user_id: str, receipt_id: str, filename: str) -> str:
    return f"receipts/{owner_user_id}/{receipt_id}/{safe_filename(filename)}"


def avatar_blob_path(user_id: str, extension: str) -> str:
    ext = (extension or "").lower().lstrip(".") or "jpg"
    return f"profile/{user_id}/avatar.{ext}"


class BlobStore(ABC):
    """Abstract interface for binary file storage."""

    @abstractmethod
    async def upload(self, path: str, data: bytes, content_type: str) -> str:
        """
        Store bytes under a path, replacing anything already there.

        Returns:
            Download URL of the stored file

        Raises:
            BlobUploadError: If the upload fails
        """
        pass

    @abstractmethod
    async def delete(self, path: str) -> None:
        """Remove a stored file. Deleting a missing path is not an error."""
        pass
