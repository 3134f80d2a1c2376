"""
Whitelist Gate

Pre-approved email addresses. A user signing in with a whitelisted email
is approved automatically instead of waiting for staff.

Entries are keyed by the lowercased email, so lookups are exact and
case-insensitive.
"""

from typing import Optional

from receipt_desk.access.policy import AccessPolicy, Action, AuthorizationError, default_policy
from receipt_desk.audit import AuditLogger
from receipt_desk.models.audit import AuditEventBuilder
from receipt_desk.models.receipt import utc_now
from receipt_desk.models.user import User, UserStatus, WhitelistEntry, normalize_email
from receipt_desk.services.storage import DocumentStore, NotFoundError
from receipt_desk.services.storage import collections
from receipt_desk.validation import ReceiptValidator


class WhitelistGate:
    """Decides auto-approval at sign-in; owner-only management of entries."""

    def __init__(
        self,
        store: DocumentStore,
        policy: Optional[AccessPolicy] = None,
        audit_logger: Optional[AuditLogger] = None,
        validator: Optional[ReceiptValidator] = None,
    ):
        self._store = store
        self._policy = policy or default_policy
        self._audit = audit_logger or AuditLogger()
        self._validator = validator or ReceiptValidator()

    async def is_whitelisted(self, email: Optional[str]) -> bool:
        key = normalize_email(email)
        if not key:
            return False
        return await self._store.get(collections.WHITELIST, key) is not None

    async def decide_status(
        self,
        email: Optional[str],
        current: Optional[UserStatus] = None,
    ) -> UserStatus:
        """
        Status a user should have after signing in.

        Approved and denied are final here; only pending (or a brand new
        user) can be lifted to approved by the whitelist.
        """
        if current in (UserStatus.APPROVED, UserStatus.DENIED):
            return current
        if await self.is_whitelisted(email):
            return UserStatus.APPROVED
        return UserStatus.PENDING

    async def _require_owner(self, actor_id: str, action_label: str) -> User:
        data = await self._store.get(collections.USERS, actor_id)
        actor = User.from_document(actor_id, data) if data is not None else None
        reason = self._policy.check(actor, Action.MANAGE_WHITELIST)
        if reason is not None:
            await self._audit.log_access_denied(
                action=action_label,
                actor_id=actor_id,
                reason=reason,
                entity_type="whitelist",
            )
            raise AuthorizationError(f"Not allowed to manage the whitelist: {reason}")
        return actor

    async def add_entry(self, actor_id: str, email: str, note: str = "") -> WhitelistEntry:
        """
        Add (or replace) an entry.

        Raises:
            ValidationError: If the email is not plausible
            AuthorizationError: If the actor is not an approved owner
        """
        await self._require_owner(actor_id, "whitelist_add")
        key = self._validator.validate_email(email)

        entry = WhitelistEntry(
            email=key,
            note=(note or "").strip(),
            created_at=utc_now(),
            created_by=actor_id,
        )
        await self._store.set(collections.WHITELIST, key, entry.to_document())
        await self._audit.log(AuditEventBuilder.whitelist_changed(key, True, actor_id))
        return entry

    async def remove_entry(self, actor_id: str, email: str) -> None:
        """
        Raises:
            NotFoundError: If there is no entry for the email
        """
        await self._require_owner(actor_id, "whitelist_remove")
        key = normalize_email(email)
        if await self._store.get(collections.WHITELIST, key) is None:
            raise NotFoundError(f"No whitelist entry for {key or email!r}")
        await self._store.delete(collections.WHITELIST, key)
        await self._audit.log(AuditEventBuilder.whitelist_changed(key, False, actor_id))

    async def list_entries(self, actor_id: str) -> list[WhitelistEntry]:
        """All entries, sorted by email."""
        await self._require_owner(actor_id, "whitelist_list")
        docs = await self._store.query(collections.WHITELIST)
        entries = [WhitelistEntry.from_document(key, data) for key, data in docs.items()]
        entries.sort(key=lambda e: e.email)
        return entries
