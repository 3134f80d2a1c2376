"""
Shared fixtures.

Every test runs against the in-memory document and blob stores, seeded
with one user per role/status combination the access rules care about.
No external services are contacted.
"""

import pytest

from receipt_desk.audit import AuditLogger
from receipt_desk.config import AppSettings
from receipt_desk.orchestrator import AppComponents
from receipt_desk.services.blob import InMemoryBlobStore
from receipt_desk.services.storage import DocumentAuditStorage, InMemoryDocumentStore
from receipt_desk.services.storage import collections


OWNER = "owner-1"
STAFF = "staff-1"
MEMBER = "member-1"
OTHER = "member-2"
PENDING = "pending-1"

TRAVEL = "cat-travel"
OFFICE = "cat-office"
RETIRED = "cat-retired"

SEEDED_RECEIPT = "receipt-1"


def user_doc(email: str, name: str, role: str = "member", status: str = "approved") -> dict:
    return {
        "email": email,
        "email_lower": email.lower(),
        "role": role,
        "status": status,
        "display_name": name,
        "last_login_at": "2024-03-01T09:00:00+00:00",
    }


def receipt_doc(owner: str, amount_cents: int, receipt_date: str, category_id: str = TRAVEL,
                category_name: str = "Travel") -> dict:
    return {
        "owner_user_id": owner,
        "uploaded_by_user_id": owner,
        "category_id": category_id,
        "category_name": category_name,
        "amount_cents": amount_cents,
        "currency": "EUR",
        "receipt_date": receipt_date,
        "submitted_at": "2024-03-05T10:00:00+00:00",
        "edit_count": 0,
        "deleted_at": None,
        "file": {
            "name": "taxi.pdf",
            "type": "application/pdf",
            "size": 1200,
            "storage_path": f"receipts/{owner}/x/taxi.pdf",
            "download_url": "memory://taxi.pdf",
        },
    }


@pytest.fixture
def seed() -> dict:
    return {
        collections.USERS: {
            OWNER: user_doc("Owner@Example.com", "Olivia Owner", role="owner"),
            STAFF: user_doc("staff@example.com", "Sam Staff", role="staff"),
            MEMBER: user_doc("member@example.com", "Mia Member"),
            OTHER: user_doc("other@example.com", "Otto Other"),
            PENDING: user_doc("pending@example.com", "Pat Pending", status="pending"),
        },
        collections.CATEGORIES: {
            TRAVEL: {"name": "Travel", "is_active": True},
            OFFICE: {"name": "Office supplies", "is_active": True},
            RETIRED: {"name": "Retired", "is_active": False},
        },
        collections.RECEIPTS: {
            SEEDED_RECEIPT: receipt_doc(MEMBER, 1000, "2024-03-05"),
        },
    }


@pytest.fixture
def store(seed) -> InMemoryDocumentStore:
    return InMemoryDocumentStore(seed=seed)


@pytest.fixture
def settings() -> AppSettings:
    return AppSettings()


@pytest.fixture
def audit_logger(store) -> AuditLogger:
    return AuditLogger(DocumentAuditStorage(store))


@pytest.fixture
def blobs() -> InMemoryBlobStore:
    return InMemoryBlobStore()


@pytest.fixture
def app(store, blobs, audit_logger, settings) -> AppComponents:
    return AppComponents(store, blobs, audit_logger, settings)


async def audit_types(store) -> list[str]:
    """Event types persisted so far, in no particular order."""
    docs = await store.query(collections.AUDIT_EVENTS)
    return [data["event_type"] for data in docs.values()]
