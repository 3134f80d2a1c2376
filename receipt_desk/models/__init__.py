"""
Data Models Package

This package contains all Pydantic models used in Receipt Desk.
All data flowing through the system must conform to these schemas.
"""

from receipt_desk.models.receipt import (
    MUTABLE_FIELDS,
    Category,
    Receipt,
    ReceiptFile,
    ReceiptPatch,
    ReceiptSubmission,
    Revision,
    RevisionAction,
    ValidationIssue,
    parse_calendar_date,
    utc_now,
)
from receipt_desk.models.user import (
    IdentityClaims,
    Role,
    User,
    UserStatus,
    WhitelistEntry,
    normalize_email,
)
from receipt_desk.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)

__all__ = [
    # Receipt models
    "MUTABLE_FIELDS",
    "Category",
    "Receipt",
    "ReceiptFile",
    "ReceiptPatch",
    "ReceiptSubmission",
    "Revision",
    "RevisionAction",
    "ValidationIssue",
    "parse_calendar_date",
    "utc_now",
    # User models
    "IdentityClaims",
    "Role",
    "User",
    "UserStatus",
    "WhitelistEntry",
    "normalize_email",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
]
