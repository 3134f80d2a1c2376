"""
Core Data Models for Receipt Desk

These models define the schemas for all receipt data flowing through the system.
They are designed to:
1. Enforce type safety at runtime
2. Provide clear validation error messages
3. Be serializable for any document store
4. Support the revision trail

DESIGN DECISION: Stored documents are loosely typed (fields may be missing,
older records may carry nulls). Every model documents a default for each
field and is validated once, at the boundary, via `from_document`.
"""

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
)


# Fields a receipt edit may touch. Everything else is system-managed.
MUTABLE_FIELDS = (
    "category_id",
    "category_name",
    "amount_cents",
    "receipt_date",
    "currency",
)

_CALENDAR_DATE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")


def utc_now() -> datetime:
    """Timezone-aware current time; stands in for the store's server timestamp."""
    return datetime.now(timezone.utc)


def parse_calendar_date(value: Optional[str]) -> Optional[datetime]:
    """
    Parse a "YYYY-MM-DD" calendar date to local noon of that day.

    Calendar dates carry no time of day. Anchoring them at noon keeps
    comparisons clear of midnight timezone shifts.

    Returns None for empty or malformed input, including impossible
    dates such as 2024-02-30.
    """
    if not value or not isinstance(value, str):
        return None
    match = _CALENDAR_DATE.match(value.strip())
    if not match:
        return None
    year, month, day = (int(part) for part in match.groups())
    try:
        return datetime(year, month, day, 12, 0, 0)
    except ValueError:
        return None


def empty_if_none(v: Any) -> Any:
    return "" if v is None else v


# =============================================================================
# ENUMS
# =============================================================================

class RevisionAction(str, Enum):
    """Kind of change a revision records."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


# =============================================================================
# CATEGORY
# =============================================================================

class Category(BaseModel):
    """
    Expense category.

    Inactive categories are hidden from new submissions but stay valid
    on historical receipts. Categories are never deleted.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: str
    name: str = Field(default="", max_length=100)
    is_active: bool = True
    created_at: Optional[datetime] = None

    @field_validator("name", mode="before")
    @classmethod
    def blank_if_none(cls, v: Any) -> Any:
        return empty_if_none(v)

    @classmethod
    def from_document(cls, doc_id: str, data: dict) -> "Category":
        return cls.model_validate({**data, "id": doc_id})

    def to_document(self) -> dict:
        return self.model_dump(mode="json", exclude={"id"})


# =============================================================================
# RECEIPT
# =============================================================================

class ReceiptFile(BaseModel):
    """
    Metadata of the uploaded receipt file.

    `download_url` stays empty until the upload has completed; a receipt
    in that state is valid, just not downloadable yet.
    """

    name: str = ""
    type: str = "application/octet-stream"
    size: int = Field(default=0, ge=0)
    storage_path: str = ""
    download_url: str = ""

    @field_validator("name", "storage_path", "download_url", mode="before")
    @classmethod
    def blank_if_none(cls, v: Any) -> Any:
        return empty_if_none(v)

    @property
    def is_uploaded(self) -> bool:
        return bool(self.download_url)


class Receipt(BaseModel):
    """
    A submitted expense receipt.

    CRITICAL: amount_cents is an integer number of minor units.
    Money never passes through floating point.

    A receipt with `deleted_at` set is soft-deleted: it stays in storage
    and in its revision history but is hidden from default views.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    # Identity
    id: str
    owner_user_id: str
    uploaded_by_user_id: str = ""

    # Content
    category_id: str = ""
    category_name: str = Field(
        default="",
        description="Category name at the time of the last edit (snapshot)"
    )
    amount_cents: int = Field(
        default=0,
        ge=0,
        description="Amount in minor units"
    )
    currency: str = "EUR"
    receipt_date: str = Field(
        default="",
        description="Calendar date on the receipt, YYYY-MM-DD"
    )

    # Lifecycle
    submitted_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    updated_by_user_id: Optional[str] = None
    updated_by_name: str = ""
    updated_by_email: str = ""
    edit_count: int = Field(default=0, ge=0)

    deleted_at: Optional[datetime] = None
    deleted_by_user_id: Optional[str] = None
    deleted_by_name: str = ""
    deleted_by_email: str = ""

    file: ReceiptFile = Field(default_factory=ReceiptFile)

    @field_validator(
        "uploaded_by_user_id",
        "category_id",
        "category_name",
        "receipt_date",
        "updated_by_name",
        "updated_by_email",
        "deleted_by_name",
        "deleted_by_email",
        mode="before",
    )
    @classmethod
    def blank_if_none(cls, v: Any) -> Any:
        return empty_if_none(v)

    @field_validator("edit_count", mode="before")
    @classmethod
    def default_edit_count(cls, v: Any) -> Any:
        return 0 if v is None else v

    @field_validator("file", mode="before")
    @classmethod
    def default_file(cls, v: Any) -> Any:
        return {} if v is None else v

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def receipt_day(self) -> Optional[datetime]:
        """Receipt date at local noon, or None if the stored string is malformed."""
        return parse_calendar_date(self.receipt_date)

    def mutable_snapshot(self) -> dict[str, Any]:
        """The editable fields as they are right now (used for revisions)."""
        return {name: getattr(self, name) for name in MUTABLE_FIELDS}

    @classmethod
    def from_document(cls, doc_id: str, data: dict) -> "Receipt":
        return cls.model_validate({**data, "id": doc_id})

    def to_document(self) -> dict:
        return self.model_dump(mode="json", exclude={"id"})


class ReceiptSubmission(BaseModel):
    """Validated input for creating a receipt."""
    model_config = ConfigDict(str_strip_whitespace=True)

    owner_user_id: str = Field(..., min_length=1)
    category_id: str = Field(..., min_length=1)
    category_name: str = ""
    amount_cents: int = Field(..., ge=0)
    currency: str = "EUR"
    receipt_date: str
    file: ReceiptFile = Field(default_factory=ReceiptFile)

    @field_validator("receipt_date")
    @classmethod
    def validate_receipt_date(cls, v: str) -> str:
        if parse_calendar_date(v) is None:
            raise ValueError(f"Not a valid calendar date: {v!r}")
        return v


class ReceiptPatch(BaseModel):
    """
    A partial edit of a receipt.

    Only the mutable fields are accepted; anything else is rejected
    at construction time.
    """
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    category_id: Optional[str] = Field(default=None, min_length=1)
    category_name: Optional[str] = None
    amount_cents: Optional[int] = Field(default=None, ge=0)
    receipt_date: Optional[str] = None
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)

    @field_validator("receipt_date")
    @classmethod
    def validate_receipt_date(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and parse_calendar_date(v) is None:
            raise ValueError(f"Not a valid calendar date: {v!r}")
        return v

    def changes(self) -> dict[str, Any]:
        """The fields this patch actually sets."""
        return self.model_dump(exclude_unset=True, exclude_none=True)


# =============================================================================
# REVISION
# =============================================================================

class Revision(BaseModel):
    """
    Immutable audit record of one receipt mutation.

    CRITICAL: A revision exists if and only if its receipt mutation was
    committed - both are written in the same transaction.
    Revisions are never updated or deleted.

    `before`/`after` are snapshots of the mutable fields. They freeze the
    category name as it was at edit time; they are historical facts,
    not live joins.
    """
    model_config = ConfigDict(frozen=True)

    id: str
    receipt_id: str
    action: RevisionAction
    edited_at: datetime
    edited_by_user_id: str
    edited_by_name: str = ""
    edited_by_email: str = ""

    before: Optional[dict[str, Any]] = None
    after: Optional[dict[str, Any]] = None
    patch: Optional[dict[str, Any]] = None

    @field_validator("edited_by_name", "edited_by_email", mode="before")
    @classmethod
    def blank_if_none(cls, v: Any) -> Any:
        return empty_if_none(v)

    @classmethod
    def from_document(cls, doc_id: str, data: dict) -> "Revision":
        return cls.model_validate({**data, "id": doc_id})

    def to_document(self) -> dict:
        return self.model_dump(mode="json", exclude={"id"})


# =============================================================================
# VALIDATION MODELS
# =============================================================================

class ValidationIssue(BaseModel):
    """A single validation issue found in user input."""

    field: str = Field(
        ...,
        description="Field with the issue"
    )
    issue_type: str = Field(
        ...,
        description="Type of issue (e.g., 'missing', 'invalid_format', 'too_large')"
    )
    message: str = Field(
        ...,
        description="Human-readable description of the issue"
    )
