"""
Category Management

Categories are never deleted. Deactivating one hides it from new
submissions and edits while old receipts keep pointing at it.
"""

from typing import Optional

from receipt_desk.access.policy import AccessPolicy, Action, AuthorizationError, default_policy
from receipt_desk.audit import AuditLogger
from receipt_desk.models.audit import AuditEventBuilder, AuditEventType
from receipt_desk.models.receipt import Category, ValidationIssue, utc_now
from receipt_desk.models.user import User
from receipt_desk.services.storage import DocumentStore, NotFoundError
from receipt_desk.services.storage import collections
from receipt_desk.validation import ReceiptValidator, ValidationError


class CategoryService:
    """Staff-managed list of expense categories."""

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

    async def _require_staff(self, actor_id: str, category_id: Optional[str] = None) -> None:
        data = await self._store.get(collections.USERS, actor_id)
        actor = User.from_document(actor_id, data) if data is not None else None
        reason = self._policy.check(actor, Action.MANAGE_CATEGORIES)
        if reason is not None:
            await self._audit.log_access_denied(
                action=Action.MANAGE_CATEGORIES.value,
                actor_id=actor_id,
                reason=reason,
                entity_type="category",
                entity_id=category_id,
            )
            raise AuthorizationError(reason)

    async def get(self, category_id: str) -> Category:
        """
        Raises:
            NotFoundError: Unknown category
        """
        data = await self._store.get(collections.CATEGORIES, category_id)
        if data is None:
            raise NotFoundError(f"Category not found: {category_id}")
        return Category.from_document(category_id, data)

    async def get_active(self, category_id: str) -> Category:
        """
        A category that may be used on new or edited receipts.

        Raises:
            NotFoundError: Unknown category
            ValidationError: The category is inactive
        """
        category = await self.get(category_id)
        if not category.is_active:
            raise ValidationError([ValidationIssue(
                field="category_id",
                issue_type="inactive",
                message=f"Category '{category.name}' is no longer available",
            )])
        return category

    async def list_categories(self, active_only: bool = False) -> list[Category]:
        """Categories sorted by name."""
        docs = await self._store.query(
            collections.CATEGORIES,
            {"is_active": True} if active_only else None,
        )
        categories = [Category.from_document(doc_id, data) for doc_id, data in docs.items()]
        categories.sort(key=lambda c: c.name.casefold())
        return categories

    async def create(self, actor_id: str, name: str) -> Category:
        await self._require_staff(actor_id)
        clean_name = self._validator.validate_category_name(name)

        category = Category(
            id=self._store.new_id(),
            name=clean_name,
            is_active=True,
            created_at=utc_now(),
        )
        await self._store.set(collections.CATEGORIES, category.id, category.to_document())
        await self._audit.log(AuditEventBuilder.category_changed(
            AuditEventType.CATEGORY_CREATED, category.id, clean_name, actor_id
        ))
        return category

    async def rename(self, actor_id: str, category_id: str, name: str) -> Category:
        """
        Existing receipts keep the name they were filed under.

        Raises:
            NotFoundError: Unknown category
        """
        await self._require_staff(actor_id, category_id)
        clean_name = self._validator.validate_category_name(name)
        merged = await self._store.update(collections.CATEGORIES, category_id, {"name": clean_name})
        await self._audit.log(AuditEventBuilder.category_changed(
            AuditEventType.CATEGORY_RENAMED, category_id, clean_name, actor_id
        ))
        return Category.from_document(category_id, merged)

    async def set_active(self, actor_id: str, category_id: str, is_active: bool) -> Category:
        await self._require_staff(actor_id, category_id)
        merged = await self._store.update(
            collections.CATEGORIES, category_id, {"is_active": bool(is_active)}
        )
        category = Category.from_document(category_id, merged)
        await self._audit.log(AuditEventBuilder.category_changed(
            AuditEventType.CATEGORY_ACTIVATION_CHANGED,
            category_id,
            category.name,
            actor_id,
            {"is_active": category.is_active},
        ))
        return category
