"""
Revisioned Mutation Engine

Every change to a receipt goes through here. A change and the Revision
that records it are written in ONE optimistic transaction, so the audit
trail can never disagree with the receipt.

Flow of a mutation:
1. Validate input (no storage involved, never retried)
2. Pre-check: read editor and receipt, ask the access policy
3. Transaction: re-read both, ask the policy again, write receipt + revision
4. Log the outcome

CRITICAL: Step 3 repeats the authorization check on data read inside the
transaction. Ownership or roles may change between the pre-check and the
commit; the transaction aborts if they did.

DESIGN DECISION: "Not found" and "not allowed" are the same error type
(ReceiptAccessError). Callers only need to know that the mutation did not
happen and why, in words.
"""

from typing import Any, Optional, Union

import structlog
from pydantic import ValidationError as PydanticValidationError

from receipt_desk.access.policy import AccessPolicy, Action, default_policy
from receipt_desk.audit import AuditLogger
from receipt_desk.config import AppSettings, get_settings
from receipt_desk.models.audit import AuditEventBuilder
from receipt_desk.models.receipt import (
    Category,
    Receipt,
    ReceiptPatch,
    ReceiptSubmission,
    Revision,
    RevisionAction,
    ValidationIssue,
    utc_now,
)
from receipt_desk.models.user import User
from receipt_desk.services.storage import (
    DocumentStore,
    DuplicateError,
    NotFoundError,
    Transaction,
    TransactionConflictError,
)
from receipt_desk.services.storage import collections
from receipt_desk.validation import ValidationError, parse_amount_to_cents


logger = structlog.get_logger()


class ReceiptAccessError(Exception):
    """The receipt does not exist, or the editor may not touch it."""
    pass


class StaleReceiptError(ReceiptAccessError):
    """The receipt changed since the editor loaded it."""
    pass


def validation_error_from_pydantic(error: PydanticValidationError) -> ValidationError:
    """Re-express a pydantic error as our ValidationError."""
    return ValidationError([
        ValidationIssue(
            field=".".join(str(part) for part in item["loc"]) or "input",
            issue_type=item["type"],
            message=item["msg"],
        )
        for item in error.errors()
    ])


class RevisionEngine:
    """
    Create, update and soft-delete receipts with their revisions.

    Also serves the revision history to staff.
    """

    def __init__(
        self,
        store: DocumentStore,
        policy: Optional[AccessPolicy] = None,
        audit_logger: Optional[AuditLogger] = None,
        settings: Optional[AppSettings] = None,
    ):
        self._store = store
        self._policy = policy or default_policy
        self._audit = audit_logger or AuditLogger()
        self._settings = settings or get_settings().app

    # -------------------------------------------------------------------------
    # Reading helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def _user_from(user_id: str, data: Optional[dict]) -> Optional[User]:
        return User.from_document(user_id, data) if data is not None else None

    @staticmethod
    def _receipt_from(receipt_id: str, data: Optional[dict]) -> Receipt:
        if data is None:
            raise ReceiptAccessError(f"Receipt not found: {receipt_id}")
        return Receipt.from_document(receipt_id, data)

    def _authorize(
        self,
        editor: Optional[User],
        action: Action,
        resource: Union[Receipt, ReceiptSubmission],
    ) -> None:
        reason = self._policy.check(editor, action, resource)
        if reason is not None:
            raise ReceiptAccessError(reason)

    async def _load(self, editor_id: str, receipt_id: str) -> tuple[Optional[User], Receipt]:
        editor = self._user_from(editor_id, await self._store.get(collections.USERS, editor_id))
        receipt = self._receipt_from(
            receipt_id, await self._store.get(collections.RECEIPTS, receipt_id)
        )
        return editor, receipt

    async def _tx_load(
        self,
        tx: Transaction,
        editor_id: str,
        receipt_id: str,
    ) -> tuple[Optional[User], Receipt]:
        receipt = self._receipt_from(receipt_id, await tx.get(collections.RECEIPTS, receipt_id))
        editor = self._user_from(editor_id, await tx.get(collections.USERS, editor_id))
        return editor, receipt

    @staticmethod
    async def _tx_category(tx: Transaction, category_id: str) -> Category:
        data = await tx.get(collections.CATEGORIES, category_id)
        if data is None:
            raise NotFoundError(f"Category not found: {category_id}")
        return Category.from_document(category_id, data)

    def _revision(
        self,
        receipt_id: str,
        action: RevisionAction,
        editor: User,
        edited_at,
        before: Optional[dict[str, Any]],
        after: Optional[dict[str, Any]],
        patch: Optional[dict[str, Any]],
    ) -> Revision:
        return Revision(
            id=self._store.new_id(),
            receipt_id=receipt_id,
            action=action,
            edited_at=edited_at,
            edited_by_user_id=editor.id,
            edited_by_name=editor.label,
            edited_by_email=editor.email,
            before=before,
            after=after,
            patch=patch,
        )

    async def _run(self, fn, operation: str, receipt_id: str, actor_id: str):
        """Run a transaction; log rejections and exhausted retries."""
        try:
            return await self._store.run_transaction(fn)
        except ReceiptAccessError as e:
            await self._audit.log_access_denied(
                action=operation,
                actor_id=actor_id,
                reason=str(e),
                entity_type="receipt",
                entity_id=receipt_id,
            )
            raise
        except TransactionConflictError as e:
            await self._audit.log_transaction_failed(
                operation=operation,
                entity_id=receipt_id,
                error_message=str(e),
                actor_id=actor_id,
            )
            raise

    async def _deny(self, operation: str, actor_id: str, receipt_id: Optional[str], error: Exception):
        await self._audit.log_access_denied(
            action=operation,
            actor_id=actor_id,
            reason=str(error),
            entity_type="receipt",
            entity_id=receipt_id,
        )

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def allocate_id(self) -> str:
        """Reserve an id for a receipt that will be created later."""
        return self._store.new_id()

    async def get_receipt(self, actor_id: str, receipt_id: str) -> Receipt:
        """
        Load one receipt for someone allowed to see it.

        Raises:
            ReceiptAccessError: Missing, or not visible to the actor
        """
        try:
            actor, receipt = await self._load(actor_id, receipt_id)
            self._authorize(actor, Action.VIEW_RECEIPT, receipt)
        except ReceiptAccessError as e:
            await self._deny("view_receipt", actor_id, receipt_id, e)
            raise
        return receipt

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    async def create(
        self,
        actor_id: str,
        submission: ReceiptSubmission,
        receipt_id: Optional[str] = None,
    ) -> Receipt:
        """
        Insert a new receipt (and its create-revision, when enabled).

        Args:
            actor_id: Who submits. May differ from the owner only for staff.
            submission: Validated receipt content
            receipt_id: Pre-allocated id (needed to build the upload path)

        Raises:
            ReceiptAccessError: If the actor may not create this receipt
            DuplicateError: If `receipt_id` is already taken
        """
        receipt_id = receipt_id or self._store.new_id()

        try:
            actor = self._user_from(actor_id, await self._store.get(collections.USERS, actor_id))
            self._authorize(actor, Action.CREATE_RECEIPT, submission)
        except ReceiptAccessError as e:
            await self._deny("create_receipt", actor_id, receipt_id, e)
            raise

        record_revision = self._settings.record_create_revisions

        async def apply(tx: Transaction) -> Receipt:
            if await tx.get(collections.RECEIPTS, receipt_id) is not None:
                raise DuplicateError(f"Receipt already exists: {receipt_id}")
            actor = self._user_from(actor_id, await tx.get(collections.USERS, actor_id))
            self._authorize(actor, Action.CREATE_RECEIPT, submission)

            now = utc_now()
            receipt = Receipt(
                id=receipt_id,
                owner_user_id=submission.owner_user_id,
                uploaded_by_user_id=actor_id,
                category_id=submission.category_id,
                category_name=submission.category_name,
                amount_cents=submission.amount_cents,
                currency=submission.currency,
                receipt_date=submission.receipt_date,
                submitted_at=now,
                edit_count=0,
                deleted_at=None,
                file=submission.file,
            )
            tx.create(collections.RECEIPTS, receipt_id, receipt.to_document())

            if record_revision:
                revision = self._revision(
                    receipt_id,
                    RevisionAction.CREATE,
                    actor,
                    now,
                    before=None,
                    after=receipt.mutable_snapshot(),
                    patch=None,
                )
                tx.create(collections.REVISIONS, revision.id, revision.to_document())
            return receipt

        receipt = await self._run(apply, "create_receipt", receipt_id, actor_id)
        await self._audit.log(AuditEventBuilder.receipt_mutated(
            "create",
            receipt_id,
            actor_id,
            {"owner_user_id": receipt.owner_user_id, "amount_cents": receipt.amount_cents},
        ))
        return receipt

    @staticmethod
    def _coerce_patch(patch: Union[ReceiptPatch, dict[str, Any]]) -> ReceiptPatch:
        if isinstance(patch, dict):
            data = dict(patch)
            amount = data.get("amount_cents")
            if isinstance(amount, str):
                cents = parse_amount_to_cents(amount)
                if cents is None:
                    raise ValidationError([ValidationIssue(
                        field="amount_cents",
                        issue_type="invalid_format",
                        message=f"Not a valid non-negative amount: {amount!r}",
                    )])
                data["amount_cents"] = cents
            try:
                patch = ReceiptPatch.model_validate(data)
            except PydanticValidationError as e:
                raise validation_error_from_pydantic(e)

        if not patch.changes():
            raise ValidationError([ValidationIssue(
                field="patch",
                issue_type="missing",
                message="Nothing to change",
            )])
        return patch

    async def update(
        self,
        receipt_id: str,
        editor_id: str,
        patch: Union[ReceiptPatch, dict[str, Any]],
        expected_edit_count: Optional[int] = None,
    ) -> Receipt:
        """
        Apply a partial edit and record an "update" revision.

        Args:
            patch: Only mutable fields. A dict may carry `amount_cents` as
                a typed string ("12,34"), which is parsed first.
            expected_edit_count: The edit count the editor saw. If given
                and the receipt has moved on, the edit is refused.

        Raises:
            ValidationError: Bad patch (before any storage access), or a
                switch to a deactivated category
            NotFoundError: The patch names a category that does not exist
            ReceiptAccessError: Missing, deleted, or not the editor's to change
            StaleReceiptError: The receipt changed since it was loaded
            TransactionConflictError: Conflicts outlasted the retry budget
        """
        patch = self._coerce_patch(patch)
        changes = patch.changes()

        def check(editor: Optional[User], receipt: Receipt) -> None:
            self._authorize(editor, Action.EDIT_RECEIPT, receipt)
            if receipt.is_deleted:
                raise ReceiptAccessError(f"Receipt has been deleted: {receipt_id}")
            if expected_edit_count is not None and receipt.edit_count != expected_edit_count:
                raise StaleReceiptError(
                    "This receipt was changed by someone else in the meantime. "
                    "Reload it and try again."
                )

        try:
            check(*await self._load(editor_id, receipt_id))
        except ReceiptAccessError as e:
            await self._deny("update_receipt", editor_id, receipt_id, e)
            raise

        async def apply(tx: Transaction) -> Receipt:
            editor, receipt = await self._tx_load(tx, editor_id, receipt_id)
            check(editor, receipt)

            applied = dict(changes)
            category_id = applied.get("category_id")
            if category_id is not None and (
                category_id != receipt.category_id or "category_name" not in applied
            ):
                category = await self._tx_category(tx, category_id)
                # A receipt may keep a deactivated category, never switch to one
                if category_id != receipt.category_id and not category.is_active:
                    raise ValidationError([ValidationIssue(
                        field="category_id",
                        issue_type="inactive",
                        message=f"Category '{category.name}' is no longer available",
                    )])
                applied["category_name"] = category.name

            now = utc_now()
            before = receipt.mutable_snapshot()
            after = {**before, **applied}
            fields = {
                **applied,
                "updated_at": now.isoformat(),
                "updated_by_user_id": editor.id,
                "updated_by_name": editor.label,
                "updated_by_email": editor.email,
                "edit_count": receipt.edit_count + 1,
            }
            tx.update(collections.RECEIPTS, receipt_id, fields)

            revision = self._revision(
                receipt_id,
                RevisionAction.UPDATE,
                editor,
                now,
                before=before,
                after=after,
                patch=applied,
            )
            tx.create(collections.REVISIONS, revision.id, revision.to_document())
            return receipt.model_copy(update={
                **applied,
                "updated_at": now,
                "updated_by_user_id": editor.id,
                "updated_by_name": editor.label,
                "updated_by_email": editor.email,
                "edit_count": receipt.edit_count + 1,
            })

        updated = await self._run(apply, "update_receipt", receipt_id, editor_id)
        logger.info("receipt_updated", receipt_id=receipt_id, fields=sorted(changes))
        await self._audit.log(AuditEventBuilder.receipt_mutated(
            "update", receipt_id, editor_id, {"fields": sorted(changes)}
        ))
        return updated

    async def soft_delete(self, receipt_id: str, editor_id: str) -> Receipt:
        """
        Mark a receipt deleted and record a "delete" revision.

        Deleting an already deleted receipt does nothing and is not an
        error; no second revision is written.

        Raises:
            ReceiptAccessError: Missing, or not the editor's to delete
        """
        try:
            editor, receipt = await self._load(editor_id, receipt_id)
            self._authorize(editor, Action.DELETE_RECEIPT, receipt)
        except ReceiptAccessError as e:
            await self._deny("delete_receipt", editor_id, receipt_id, e)
            raise

        async def apply(tx: Transaction) -> tuple[Receipt, bool]:
            editor, receipt = await self._tx_load(tx, editor_id, receipt_id)
            self._authorize(editor, Action.DELETE_RECEIPT, receipt)
            if receipt.is_deleted:
                return receipt, False

            now = utc_now()
            marker = {
                "deleted_at": now.isoformat(),
                "deleted_by_user_id": editor.id,
                "deleted_by_name": editor.label,
                "deleted_by_email": editor.email,
            }
            tx.update(collections.RECEIPTS, receipt_id, marker)

            revision = self._revision(
                receipt_id,
                RevisionAction.DELETE,
                editor,
                now,
                before=receipt.mutable_snapshot(),
                after=None,
                patch=marker,
            )
            tx.create(collections.REVISIONS, revision.id, revision.to_document())
            return receipt.model_copy(update={**marker, "deleted_at": now}), True

        deleted, changed = await self._run(apply, "delete_receipt", receipt_id, editor_id)
        if changed:
            await self._audit.log(AuditEventBuilder.receipt_mutated("delete", receipt_id, editor_id))
        else:
            logger.info("receipt_already_deleted", receipt_id=receipt_id)
        return deleted

    # -------------------------------------------------------------------------
    # Revision history
    # -------------------------------------------------------------------------

    async def _require_staff(self, actor_id: str, action: Action) -> None:
        actor = self._user_from(actor_id, await self._store.get(collections.USERS, actor_id))
        reason = self._policy.check(actor, action)
        if reason is not None:
            await self._audit.log_access_denied(action=action.value, actor_id=actor_id, reason=reason)
            raise ReceiptAccessError(reason)

    async def _revisions(self, where: Optional[dict] = None) -> list[Revision]:
        docs = await self._store.query(collections.REVISIONS, where)
        revisions = [Revision.from_document(doc_id, data) for doc_id, data in docs.items()]
        # Stable, so same-instant revisions keep their write order
        revisions.sort(key=lambda r: r.edited_at)
        return revisions

    async def history(self, actor_id: str, receipt_id: str) -> list[Revision]:
        """All revisions of one receipt, oldest first. Staff only."""
        await self._require_staff(actor_id, Action.VIEW_REVISIONS)
        return await self._revisions({"receipt_id": receipt_id})

    async def recent_revisions(self, actor_id: str, limit: Optional[int] = None) -> list[Revision]:
        """The audit feed: newest revisions across all receipts. Staff only."""
        await self._require_staff(actor_id, Action.VIEW_AUDIT_FEED)
        limit = self._settings.audit_feed_limit if limit is None else limit
        return list(reversed(await self._revisions()))[:limit]

    @staticmethod
    def count_by_action(revisions: list[Revision]) -> dict[str, int]:
        counts = {action.value: 0 for action in RevisionAction}
        for revision in revisions:
            counts[revision.action.value] += 1
        return counts
