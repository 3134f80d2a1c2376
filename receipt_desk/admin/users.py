"""
User Administration

Approval decisions and role changes. Every decision is taken by the
access policy against freshly read actor and target profiles.

These are direct writes (last write wins), not transactions: two staff
members approving the same user at once both succeed and agree.
"""

from typing import Optional

from receipt_desk.access.policy import AccessPolicy, Action, AuthorizationError, default_policy
from receipt_desk.audit import AuditLogger
from receipt_desk.models.audit import AuditEventBuilder
from receipt_desk.models.receipt import utc_now
from receipt_desk.models.user import Role, User, UserStatus
from receipt_desk.services.storage import DocumentStore, NotFoundError
from receipt_desk.services.storage import collections


class UserAdminService:
    """Approve, deny, promote and demote users; list them for staff."""

    def __init__(
        self,
        store: DocumentStore,
        policy: Optional[AccessPolicy] = None,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._store = store
        self._policy = policy or default_policy
        self._audit = audit_logger or AuditLogger()

    async def _read_user(self, user_id: str) -> Optional[User]:
        data = await self._store.get(collections.USERS, user_id)
        return User.from_document(user_id, data) if data is not None else None

    async def _target(self, user_id: str) -> User:
        target = await self._read_user(user_id)
        if target is None:
            raise NotFoundError(f"User not found: {user_id}")
        return target

    async def _approved_owner_ids(self) -> set[str]:
        docs = await self._store.query(
            collections.USERS,
            {"role": Role.OWNER.value, "status": UserStatus.APPROVED.value},
        )
        return set(docs)

    async def _require(
        self,
        actor_id: str,
        action: Action,
        target: Optional[User] = None,
        approved_owner_ids: Optional[set[str]] = None,
    ) -> User:
        actor = await self._read_user(actor_id)
        reason = self._policy.check(actor, action, target, approved_owner_ids)
        if reason is not None:
            await self._audit.log_access_denied(
                action=action.value,
                actor_id=actor_id,
                reason=reason,
                entity_type="user",
                entity_id=target.id if target else None,
            )
            raise AuthorizationError(reason)
        return actor

    async def _set_status(self, actor_id: str, user_id: str, action: Action) -> User:
        target = await self._target(user_id)
        owners = await self._approved_owner_ids() if action == Action.DENY_USER else None
        await self._require(actor_id, action, target, owners)

        status = UserStatus.APPROVED if action == Action.APPROVE_USER else UserStatus.DENIED
        prefix = "approved" if status == UserStatus.APPROVED else "denied"
        merged = await self._store.update(collections.USERS, user_id, {
            "status": status.value,
            f"{prefix}_at": utc_now().isoformat(),
            f"{prefix}_by": actor_id,
        })
        await self._audit.log(AuditEventBuilder.user_status_changed(user_id, status.value, actor_id))
        return User.from_document(user_id, merged)

    async def approve(self, actor_id: str, user_id: str) -> User:
        """
        Raises:
            NotFoundError: Unknown user
            AuthorizationError: Not staff, or user already approved
        """
        return await self._set_status(actor_id, user_id, Action.APPROVE_USER)

    async def deny(self, actor_id: str, user_id: str) -> User:
        """
        Raises:
            NotFoundError: Unknown user
            AuthorizationError: Not staff, self-denial, target outranks
                the actor, or the last owner is protected
        """
        return await self._set_status(actor_id, user_id, Action.DENY_USER)

    async def _change_role(self, actor_id: str, user_id: str, action: Action) -> User:
        target = await self._target(user_id)
        await self._require(actor_id, action, target)

        new_role = Role.STAFF if action == Action.PROMOTE_TO_STAFF else Role.MEMBER
        merged = await self._store.update(collections.USERS, user_id, {
            "role": new_role.value,
            "role_updated_at": utc_now().isoformat(),
            "role_updated_by": actor_id,
        })
        await self._audit.log(AuditEventBuilder.role_changed(
            user_id, target.role.value, new_role.value, actor_id
        ))
        return User.from_document(user_id, merged)

    async def promote_to_staff(self, actor_id: str, user_id: str) -> User:
        """Owner only; the target must currently be a member."""
        return await self._change_role(actor_id, user_id, Action.PROMOTE_TO_STAFF)

    async def demote_to_member(self, actor_id: str, user_id: str) -> User:
        """Owner only; the target must be staff (owners are never demoted)."""
        return await self._change_role(actor_id, user_id, Action.DEMOTE_TO_MEMBER)

    async def list_users(
        self,
        actor_id: str,
        status: Optional[UserStatus] = None,
    ) -> list[User]:
        """Users, most recent sign-in first. Staff only."""
        await self._require(actor_id, Action.LIST_USERS)
        where = {"status": status.value} if status else None
        docs = await self._store.query(collections.USERS, where)
        users = [User.from_document(user_id, data) for user_id, data in docs.items()]
        users.sort(
            key=lambda u: u.last_login_at.timestamp() if u.last_login_at else float("-inf"),
            reverse=True,
        )
        return users

    async def display_names(self) -> dict[str, str]:
        """user id -> label, for exports and listings."""
        docs = await self._store.query(collections.USERS)
        return {user_id: User.from_document(user_id, data).label for user_id, data in docs.items()}
