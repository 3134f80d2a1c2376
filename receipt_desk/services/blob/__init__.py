"""Blob storage services package."""

from receipt_desk.services.blob.interface import (
    BlobStore,
    BlobStoreError,
    BlobUploadError,
    avatar_blob_path,
    receipt_blob_path,
    safe_filename,
)
from receipt_desk.services.blob.memory import InMemoryBlobStore
from receipt_desk.services.blob.cloudinary_service import CloudinaryBlobStore

__all__ = [
    "BlobStore",
    "BlobStoreError",
    "BlobUploadError",
    "CloudinaryBlobStore",
    "InMemoryBlobStore",
    "avatar_blob_path",
    "receipt_blob_path",
    "safe_filename",
]
