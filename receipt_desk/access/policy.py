"""
Access Policy

Answers one question: may this principal perform this action on this
resource? It never reads storage itself.

CRITICAL: Callers must pass freshly read principals and resources. Roles
and ownership can change between rendering a screen and acting on it, so
a decision made from a cached User is worthless.

DESIGN DECISION: Elevated privileges (staff, owner) only count while the
principal is APPROVED. A denied staff member keeps the role field but
loses its powers; their own receipts stay theirs.

Role changes and approval changes are driven by explicit transition
tables rather than scattered conditionals.
"""

from enum import Enum
from typing import Any, Optional, Union

from receipt_desk.models.receipt import Receipt, ReceiptSubmission
from receipt_desk.models.user import Role, User, UserStatus


class AuthorizationError(Exception):
    """Principal may not perform the requested action."""
    pass


class Action(str, Enum):
    """Everything the policy can be asked about."""
    # Receipts
    VIEW_RECEIPT = "view_receipt"
    VIEW_ALL_RECEIPTS = "view_all_receipts"
    CREATE_RECEIPT = "create_receipt"
    EDIT_RECEIPT = "edit_receipt"
    DELETE_RECEIPT = "delete_receipt"
    VIEW_REVISIONS = "view_revisions"
    VIEW_AUDIT_FEED = "view_audit_feed"

    # Users
    LIST_USERS = "list_users"
    APPROVE_USER = "approve_user"
    DENY_USER = "deny_user"
    PROMOTE_TO_STAFF = "promote_to_staff"
    DEMOTE_TO_MEMBER = "demote_to_member"

    # Configuration
    MANAGE_WHITELIST = "manage_whitelist"
    MANAGE_CATEGORIES = "manage_categories"


# action -> (required actor role, target role before, target role after)
ROLE_TRANSITIONS: dict[Action, tuple[Role, Role, Role]] = {
    Action.PROMOTE_TO_STAFF: (Role.OWNER, Role.MEMBER, Role.STAFF),
    Action.DEMOTE_TO_MEMBER: (Role.OWNER, Role.STAFF, Role.MEMBER),
}

# action -> (allowed target statuses before, target status after)
STATUS_TRANSITIONS: dict[Action, tuple[frozenset, UserStatus]] = {
    Action.APPROVE_USER: (
        frozenset({UserStatus.PENDING, UserStatus.DENIED}),
        UserStatus.APPROVED,
    ),
    Action.DENY_USER: (
        frozenset({UserStatus.PENDING, UserStatus.APPROVED}),
        UserStatus.DENIED,
    ),
}

# Actions that need nothing but an approved role at or above the given one
ROLE_GATED: dict[Action, Role] = {
    Action.VIEW_ALL_RECEIPTS: Role.STAFF,
    Action.VIEW_REVISIONS: Role.STAFF,
    Action.VIEW_AUDIT_FEED: Role.STAFF,
    Action.LIST_USERS: Role.STAFF,
    Action.MANAGE_CATEGORIES: Role.STAFF,
    Action.MANAGE_WHITELIST: Role.OWNER,
}

_RECEIPT_ACTIONS = {Action.VIEW_RECEIPT, Action.EDIT_RECEIPT, Action.DELETE_RECEIPT}

Resource = Union[Receipt, ReceiptSubmission, User, None]


def effective_role(principal: User) -> Role:
    """The role whose powers the principal can use right now."""
    if principal.status != UserStatus.APPROVED:
        return Role.MEMBER
    return principal.role


class AccessPolicy:
    """
    Pure access decisions.

    Args:
        last_owner_policy: "protect" refuses denying the last approved
            owner; "allow" permits it (and thereby a lockout).
    """

    def __init__(self, last_owner_policy: str = "protect"):
        if last_owner_policy not in ("protect", "allow"):
            raise ValueError(f"Unknown last owner policy: {last_owner_policy!r}")
        self.last_owner_policy = last_owner_policy

    def check(
        self,
        principal: Optional[User],
        action: Action,
        resource: Resource = None,
        approved_owner_ids: Optional[set[str]] = None,
    ) -> Optional[str]:
        """
        Decide an action.

        Args:
            principal: The acting user, freshly read (None if unknown)
            action: What they want to do
            resource: The receipt, submission or target user acted upon
            approved_owner_ids: Ids of all currently approved owners; only
                consulted when denying an owner

        Returns:
            None if allowed, otherwise a human-readable reason
        """
        if principal is None:
            return "Unknown user"

        role = effective_role(principal)

        if action in ROLE_GATED:
            if not role.at_least(ROLE_GATED[action]):
                return f"Requires {ROLE_GATED[action].value} access"
            return None

        if action in _RECEIPT_ACTIONS:
            return self._check_receipt(principal, role, resource)

        if action == Action.CREATE_RECEIPT:
            return self._check_create(principal, role, resource)

        if action in ROLE_TRANSITIONS:
            return self._check_role_change(principal, role, action, resource)

        if action in STATUS_TRANSITIONS:
            return self._check_status_change(
                principal, role, action, resource, approved_owner_ids
            )

        return f"Unknown action: {action}"

    def can_perform(
        self,
        principal: Optional[User],
        action: Action,
        resource: Resource = None,
        approved_owner_ids: Optional[set[str]] = None,
    ) -> bool:
        return self.check(principal, action, resource, approved_owner_ids) is None

    def require(
        self,
        principal: Optional[User],
        action: Action,
        resource: Resource = None,
        approved_owner_ids: Optional[set[str]] = None,
    ) -> None:
        """Raise AuthorizationError unless the action is allowed."""
        reason = self.check(principal, action, resource, approved_owner_ids)
        if reason is not None:
            raise AuthorizationError(f"Not allowed to {action.value.replace('_', ' ')}: {reason}")

    # -------------------------------------------------------------------------
    # Rules
    # -------------------------------------------------------------------------

    @staticmethod
    def _check_receipt(principal: User, role: Role, resource: Any) -> Optional[str]:
        if not isinstance(resource, Receipt):
            return "No receipt given"
        if resource.owner_user_id == principal.id:
            return None
        if role.is_staff:
            return None
        return "Only the owner of this receipt or staff may do this"

    @staticmethod
    def _check_create(principal: User, role: Role, resource: Any) -> Optional[str]:
        owner_id = getattr(resource, "owner_user_id", None)
        if not owner_id:
            return "No receipt owner given"
        if role.is_staff:
            return None
        if owner_id != principal.id:
            return "Only staff may submit receipts for someone else"
        if principal.status != UserStatus.APPROVED:
            return "Your account has not been approved yet"
        return None

    @staticmethod
    def _check_role_change(
        principal: User,
        role: Role,
        action: Action,
        resource: Any,
    ) -> Optional[str]:
        required, before, _ = ROLE_TRANSITIONS[action]
        if not role.at_least(required):
            return f"Requires {required.value} access"
        if not isinstance(resource, User):
            return "No target user given"
        if resource.id == principal.id:
            return "You cannot change your own role"
        if resource.role != before:
            return f"Target must currently be {before.value}, not {resource.role.value}"
        return None

    def _check_status_change(
        self,
        principal: User,
        role: Role,
        action: Action,
        resource: Any,
        approved_owner_ids: Optional[set[str]],
    ) -> Optional[str]:
        allowed_before, after = STATUS_TRANSITIONS[action]
        if not role.is_staff:
            return "Requires staff access"
        if not isinstance(resource, User):
            return "No target user given"
        if resource.status not in allowed_before:
            return f"User is already {resource.status.value}"
        if after != UserStatus.DENIED:
            return None

        if resource.id == principal.id:
            return "You cannot deny yourself"
        if resource.role.rank > role.rank:
            return f"Staff cannot deny an {resource.role.value}"
        if resource.role == Role.OWNER and self.last_owner_policy == "protect":
            others = (approved_owner_ids or set()) - {resource.id}
            if not others:
                return "Denying the last approved owner would lock everyone out"
        return None


default_policy = AccessPolicy()


def can_perform(
    principal: Optional[User],
    action: Action,
    resource: Resource = None,
    approved_owner_ids: Optional[set[str]] = None,
) -> bool:
    """Module-level shortcut using the default ("protect") policy."""
    return default_policy.can_perform(principal, action, resource, approved_owner_ids)
