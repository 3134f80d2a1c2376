"""Access policy package."""

from receipt_desk.access.policy import (
    ROLE_TRANSITIONS,
    STATUS_TRANSITIONS,
    AccessPolicy,
    Action,
    AuthorizationError,
    can_perform,
    default_policy,
    effective_role,
)

__all__ = [
    "ROLE_TRANSITIONS",
    "STATUS_TRANSITIONS",
    "AccessPolicy",
    "Action",
    "AuthorizationError",
    "can_perform",
    "default_policy",
    "effective_role",
]
