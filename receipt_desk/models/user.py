"""
User and Access Models for Receipt Desk

Users are created on first sign-in and carry a role and an approval status.
Roles form an ordered hierarchy: member < staff < owner.

DESIGN DECISION: Older user documents spell the roles "user" and "admin".
They are read as "member" and "staff" so existing data keeps working.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from receipt_desk.models.receipt import empty_if_none


class Role(str, Enum):
    """
    User roles, ordered by privilege.

    Staff review and aggregate receipts. The owner additionally manages
    roles and the whitelist.
    """
    MEMBER = "member"
    STAFF = "staff"
    OWNER = "owner"

    @property
    def rank(self) -> int:
        return _ROLE_RANK[self]

    def at_least(self, other: "Role") -> bool:
        return self.rank >= other.rank

    @property
    def is_staff(self) -> bool:
        """Staff-level access (staff or owner)."""
        return self.at_least(Role.STAFF)


_ROLE_RANK = {Role.MEMBER: 0, Role.STAFF: 1, Role.OWNER: 2}

LEGACY_ROLES = {"user": Role.MEMBER, "admin": Role.STAFF}


class UserStatus(str, Enum):
    """Approval status. New users wait as PENDING until staff decide."""
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"


class IdentityClaims(BaseModel):
    """What the identity provider tells us after a successful sign-in."""
    model_config = ConfigDict(str_strip_whitespace=True)

    principal_id: str = Field(..., min_length=1)
    email: str = ""
    display_name: str = ""
    avatar_url: str = ""


class User(BaseModel):
    """
    A stored user profile.

    `display_name` and `avatar_url` are editable by the user; the
    provider_* fields mirror what the identity provider reported at the
    last sign-in.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: str
    email: str = ""
    email_lower: str = ""
    role: Role = Role.MEMBER
    status: UserStatus = UserStatus.PENDING

    display_name: str = ""
    avatar_url: str = ""
    provider_name: str = ""
    provider_avatar_url: str = ""

    created_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    profile_updated_at: Optional[datetime] = None

    approved_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    denied_at: Optional[datetime] = None
    denied_by: Optional[str] = None
    role_updated_at: Optional[datetime] = None
    role_updated_by: Optional[str] = None

    @field_validator(
        "email",
        "email_lower",
        "display_name",
        "avatar_url",
        "provider_name",
        "provider_avatar_url",
        mode="before",
    )
    @classmethod
    def blank_if_none(cls, v: Any) -> Any:
        return empty_if_none(v)

    @field_validator("role", mode="before")
    @classmethod
    def read_legacy_role(cls, v: Any) -> Any:
        if v is None or v == "":
            return Role.MEMBER
        if isinstance(v, str) and v in LEGACY_ROLES:
            return LEGACY_ROLES[v]
        return v

    @field_validator("status", mode="before")
    @classmethod
    def default_status(cls, v: Any) -> Any:
        return UserStatus.PENDING if v is None or v == "" else v

    @property
    def is_approved(self) -> bool:
        return self.status == UserStatus.APPROVED

    @property
    def label(self) -> str:
        """Name to show for this user."""
        return self.display_name or self.provider_name or self.email or self.id

    @classmethod
    def from_document(cls, doc_id: str, data: dict) -> "User":
        return cls.model_validate({**data, "id": doc_id})

    def to_document(self) -> dict:
        return self.model_dump(mode="json", exclude={"id"})


class WhitelistEntry(BaseModel):
    """
    A pre-approved email address.

    Keyed by the lowercased email. Presence auto-approves a matching
    pending user at sign-in.
    """

    email: str
    note: str = ""
    created_at: Optional[datetime] = None
    created_by: str = ""

    @field_validator("note", "created_by", mode="before")
    @classmethod
    def blank_if_none(cls, v: Any) -> Any:
        return empty_if_none(v)

    @classmethod
    def from_document(cls, doc_id: str, data: dict) -> "WhitelistEntry":
        return cls.model_validate({**data, "email": data.get("email") or doc_id})

    def to_document(self) -> dict:
        return self.model_dump(mode="json")


def normalize_email(email: Optional[str]) -> str:
    """Lowercased, trimmed email - the whitelist key."""
    return (email or "").strip().lower()
