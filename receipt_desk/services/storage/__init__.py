"""
Storage Services Package

Provides the abstract document store and its implementations.
Google Sheets is the production backend; the in-memory store backs
tests and unconfigured deployments.
"""

from receipt_desk.services.storage.interface import (
    AuditStorageInterface,
    ConnectionError,
    DocumentAuditStorage,
    DocumentStore,
    DuplicateError,
    NotFoundError,
    StorageError,
    Subscription,
    Transaction,
    TransactionConflictError,
)
from receipt_desk.services.storage.google_sheets import (
    GoogleSheetsClient,
    GoogleSheetsDocumentStore,
)
from receipt_desk.services.storage.memory import InMemoryDocumentStore

__all__ = [
    # Interfaces
    "AuditStorageInterface",
    "DocumentStore",
    "Subscription",
    "Transaction",
    # Exceptions
    "ConnectionError",
    "DuplicateError",
    "NotFoundError",
    "StorageError",
    "TransactionConflictError",
    # Implementations
    "DocumentAuditStorage",
    "InMemoryDocumentStore",
    # Google Sheets implementation
    "GoogleSheetsClient",
    "GoogleSheetsDocumentStore",
]
