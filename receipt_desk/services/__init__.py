"""Services package."""

from receipt_desk.services.blob import (
    BlobStore,
    BlobStoreError,
    BlobUploadError,
    CloudinaryBlobStore,
    InMemoryBlobStore,
)
from receipt_desk.services.storage import (
    AuditStorageInterface,
    ConnectionError,
    DocumentAuditStorage,
    DocumentStore,
    DuplicateError,
    GoogleSheetsClient,
    GoogleSheetsDocumentStore,
    InMemoryDocumentStore,
    NotFoundError,
    StorageError,
    TransactionConflictError,
)

__all__ = [
    # Blob services
    "BlobStore",
    "BlobStoreError",
    "BlobUploadError",
    "CloudinaryBlobStore",
    "InMemoryBlobStore",
    # Storage services
    "AuditStorageInterface",
    "ConnectionError",
    "DocumentAuditStorage",
    "DocumentStore",
    "DuplicateError",
    "GoogleSheetsClient",
    "GoogleSheetsDocumentStore",
    "InMemoryDocumentStore",
    "NotFoundError",
    "StorageError",
    "TransactionConflictError",
]
