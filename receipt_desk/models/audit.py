"""
Audit Models for Receipt Desk

Every significant action in the system is logged for audit purposes.
This provides:
1. Traceability of access decisions (approvals, roles, whitelist)
2. Debugging information when things go wrong
3. Accountability for category and receipt changes

Receipt content changes are additionally captured as Revisions
(see models/receipt.py); audit events are the operational log around them.

DESIGN DECISION: Audit logs are append-only. We never delete or modify them.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from receipt_desk.models.receipt import utc_now


class AuditEventType(str, Enum):
    """Types of events we audit."""
    # Identity
    USER_SIGNED_IN = "user_signed_in"
    USER_CREATED = "user_created"
    USER_AUTO_APPROVED = "user_auto_approved"
    PROFILE_UPDATED = "profile_updated"

    # Administration
    USER_APPROVED = "user_approved"
    USER_DENIED = "user_denied"
    ROLE_CHANGED = "role_changed"
    WHITELIST_ENTRY_ADDED = "whitelist_entry_added"
    WHITELIST_ENTRY_REMOVED = "whitelist_entry_removed"
    CATEGORY_CREATED = "category_created"
    CATEGORY_RENAMED = "category_renamed"
    CATEGORY_ACTIVATION_CHANGED = "category_activation_changed"

    # Receipts
    RECEIPT_CREATED = "receipt_created"
    RECEIPT_UPDATED = "receipt_updated"
    RECEIPT_DELETED = "receipt_deleted"
    RECEIPT_EXPORTED = "receipt_exported"
    FILE_UPLOADED = "file_uploaded"

    # Failures
    ACCESS_DENIED = "access_denied"
    VALIDATION_FAILED = "validation_failed"
    TRANSACTION_FAILED = "transaction_failed"
    SYSTEM_ERROR = "system_error"
    EXTERNAL_SERVICE_ERROR = "external_service_error"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditEvent(BaseModel):
    """
    A single audit event.

    This is the core unit of our audit trail.
    Every significant action creates one of these.
    """

    # Identity
    event_id: UUID = Field(
        default_factory=uuid4,
        description="Unique event identifier"
    )
    timestamp: datetime = Field(
        default_factory=utc_now,
        description="When the event occurred (UTC)"
    )

    # Event classification
    event_type: AuditEventType = Field(
        ...,
        description="Type of event"
    )
    severity: AuditSeverity = Field(
        default=AuditSeverity.INFO,
        description="Event severity"
    )

    # Context - what entity is this about, and who did it?
    entity_type: Optional[str] = Field(
        default=None,
        description="Type of entity (e.g., 'receipt', 'user', 'category')"
    )
    entity_id: Optional[str] = Field(
        default=None,
        description="ID of the entity this event relates to"
    )
    actor_id: Optional[str] = Field(
        default=None,
        description="Principal who triggered the event"
    )

    description: str = Field(
        ...,
        max_length=500,
        description="Human-readable description of what happened"
    )
    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Additional event-specific data"
    )

    error_message: Optional[str] = None

    def to_log_dict(self) -> dict:
        """
        Convert to a dictionary suitable for structured logging.
        """
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "actor_id": self.actor_id,
            "description": self.description,
            "details": self.details,
            "error_message": self.error_message,
        }

    @classmethod
    def from_document(cls, doc_id: str, data: dict) -> "AuditEvent":
        return cls.model_validate({**data, "event_id": doc_id})

    def to_document(self) -> dict:
        return self.model_dump(mode="json", exclude={"event_id"})


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.user_approved(user_id, actor_id)
        event = AuditEventBuilder.receipt_mutated("update", receipt_id, actor_id, {...})
    """

    @staticmethod
    def user_signed_in(user_id: str, email: str, status: str, created: bool) -> AuditEvent:
        return AuditEvent(
            event_type=(
                AuditEventType.USER_CREATED if created else AuditEventType.USER_SIGNED_IN
            ),
            entity_type="user",
            entity_id=user_id,
            actor_id=user_id,
            description=f"{'New user' if created else 'User'} signed in: {email or user_id}",
            details={"status": status},
        )

    @staticmethod
    def user_auto_approved(user_id: str, email: str) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.USER_AUTO_APPROVED,
            entity_type="user",
            entity_id=user_id,
            actor_id=user_id,
            description=f"User approved by whitelist: {email}",
        )

    @staticmethod
    def profile_updated(user_id: str, fields: list[str]) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.PROFILE_UPDATED,
            entity_type="user",
            entity_id=user_id,
            actor_id=user_id,
            description="Profile updated",
            details={"fields": fields},
        )

    @staticmethod
    def user_status_changed(user_id: str, status: str, actor_id: str) -> AuditEvent:
        return AuditEvent(
            event_type=(
                AuditEventType.USER_APPROVED
                if status == "approved"
                else AuditEventType.USER_DENIED
            ),
            entity_type="user",
            entity_id=user_id,
            actor_id=actor_id,
            description=f"User {status}: {user_id}",
            details={"status": status},
        )

    @staticmethod
    def role_changed(user_id: str, old_role: str, new_role: str, actor_id: str) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.ROLE_CHANGED,
            entity_type="user",
            entity_id=user_id,
            actor_id=actor_id,
            description=f"Role changed: {old_role} -> {new_role}",
            details={"old_role": old_role, "new_role": new_role},
        )

    @staticmethod
    def whitelist_changed(email: str, added: bool, actor_id: str) -> AuditEvent:
        return AuditEvent(
            event_type=(
                AuditEventType.WHITELIST_ENTRY_ADDED
                if added
                else AuditEventType.WHITELIST_ENTRY_REMOVED
            ),
            entity_type="whitelist",
            entity_id=email,
            actor_id=actor_id,
            description=f"Whitelist entry {'added' if added else 'removed'}: {email}",
        )

    @staticmethod
    def category_changed(
        event_type: AuditEventType,
        category_id: str,
        name: str,
        actor_id: str,
        details: Optional[dict] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=event_type,
            entity_type="category",
            entity_id=category_id,
            actor_id=actor_id,
            description=f"Category {event_type.value.split('_', 1)[1]}: {name}",
            details=details or {},
        )

    @staticmethod
    def receipt_mutated(
        action: str,
        receipt_id: str,
        actor_id: str,
        details: Optional[dict] = None,
    ) -> AuditEvent:
        event_type = {
            "create": AuditEventType.RECEIPT_CREATED,
            "update": AuditEventType.RECEIPT_UPDATED,
            "delete": AuditEventType.RECEIPT_DELETED,
        }[action]
        return AuditEvent(
            event_type=event_type,
            entity_type="receipt",
            entity_id=receipt_id,
            actor_id=actor_id,
            description=f"Receipt {action}d: {receipt_id}",
            details=details or {},
        )

    @staticmethod
    def receipts_exported(actor_id: str, row_count: int, total_cents: int) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RECEIPT_EXPORTED,
            entity_type="export",
            actor_id=actor_id,
            description=f"Exported {row_count} receipts",
            details={"row_count": row_count, "total_cents": total_cents},
        )

    @staticmethod
    def file_uploaded(receipt_id: str, storage_path: str, size: int, actor_id: str) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.FILE_UPLOADED,
            entity_type="receipt",
            entity_id=receipt_id,
            actor_id=actor_id,
            description=f"File uploaded: {storage_path}",
            details={"storage_path": storage_path, "size_bytes": size},
        )

    @staticmethod
    def access_denied(
        action: str,
        actor_id: Optional[str],
        entity_type: Optional[str],
        entity_id: Optional[str],
        reason: str,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.ACCESS_DENIED,
            severity=AuditSeverity.WARNING,
            entity_type=entity_type,
            entity_id=entity_id,
            actor_id=actor_id,
            description=f"Access denied: {action}",
            error_message=reason,
            details={"action": action},
        )

    @staticmethod
    def validation_failed(actor_id: Optional[str], issues: list[dict]) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.VALIDATION_FAILED,
            severity=AuditSeverity.WARNING,
            actor_id=actor_id,
            description=f"Input rejected with {len(issues)} issues",
            details={"issues": issues},
        )

    @staticmethod
    def transaction_failed(
        operation: str,
        entity_id: Optional[str],
        error_message: str,
        actor_id: Optional[str] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRANSACTION_FAILED,
            severity=AuditSeverity.ERROR,
            entity_type="receipt",
            entity_id=entity_id,
            actor_id=actor_id,
            description=f"Transaction failed: {operation}",
            error_message=error_message,
        )

    @staticmethod
    def system_error(
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYSTEM_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"System error: {error_type}",
            error_message=error_message,
            details=details or {},
        )

    @staticmethod
    def external_service_error(service: str, error_message: str) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.EXTERNAL_SERVICE_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"External service error: {service}",
            error_message=error_message,
            details={"service": service},
        )
