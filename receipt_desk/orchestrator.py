"""
Main Orchestrator for Receipt Desk

This module ties together all the components and defines the
end-to-end flows for:
1. Receipt submission (validate → upload file → create receipt + revision)
2. Receipt edits and deletions (validate → revisioned mutation)
3. Dashboard (live summary, delimited export)

DESIGN DECISION: The orchestrator enforces the boundaries:
- Nothing reaches storage before the input validates
- No receipt points at a file that failed to upload
- A receipt that failed to save leaves no orphaned file behind
- Every step is audited

This is the "glue" that ensures the system works correctly
even when individual components might behave unexpectedly.
"""

from typing import Optional

import structlog

from receipt_desk.access.policy import AccessPolicy, effective_role
from receipt_desk.admin import CategoryService, UserAdminService
from receipt_desk.audit import AuditLogger, configure_logging
from receipt_desk.config import AppSettings, get_settings
from receipt_desk.identity import IdentityResolver, WhitelistGate
from receipt_desk.models.audit import AuditEventBuilder
from receipt_desk.models.receipt import Receipt, ReceiptFile, ReceiptPatch, ReceiptSubmission
from receipt_desk.queries import (
    LiveReceiptView,
    ReceiptFilter,
    SummaryListener,
    receipts_from_snapshot,
    summarize,
)
from receipt_desk.export import build_export_rows, build_summary_row, to_delimited_text
from receipt_desk.revisions import RevisionEngine
from receipt_desk.services.blob import (
    BlobStore,
    BlobStoreError,
    CloudinaryBlobStore,
    InMemoryBlobStore,
    receipt_blob_path,
)
from receipt_desk.services.storage import (
    DocumentAuditStorage,
    DocumentStore,
    GoogleSheetsDocumentStore,
    InMemoryDocumentStore,
)
from receipt_desk.services.storage import collections
from receipt_desk.validation import ReceiptValidator, ValidationError


logger = structlog.get_logger()


class ReceiptFlow:
    """
    Orchestrates receipt submission, editing and deletion.

    Submission flow:
    1. Validate the form (amount, date, category, file)
    2. Resolve the category; it must be active
    3. Reserve the receipt id and upload the file under it
    4. Create the receipt (and its revision) in one transaction
    5. If step 4 fails, remove the uploaded file again

    The file is uploaded BEFORE the receipt exists, so a stored receipt
    always carries a working download URL.
    """

    def __init__(
        self,
        engine: RevisionEngine,
        categories: CategoryService,
        blob_store: BlobStore,
        validator: Optional[ReceiptValidator] = None,
        audit_logger: Optional[AuditLogger] = None,
        settings: Optional[AppSettings] = None,
    ):
        self._settings = settings or get_settings().app
        self._engine = engine
        self._categories = categories
        self._blobs = blob_store
        self._validator = validator or ReceiptValidator(self._settings.max_upload_size_bytes)
        self._audit = audit_logger or AuditLogger()

    async def _validated(self, actor_id: str, check, *args) -> int:
        try:
            return check(*args)
        except ValidationError as e:
            await self._audit.log_validation_failed(actor_id, e.to_dicts())
            raise

    async def submit(
        self,
        actor_id: str,
        amount: Optional[str],
        receipt_date: Optional[str],
        category_id: Optional[str],
        filename: Optional[str],
        data: Optional[bytes],
        content_type: Optional[str] = None,
        owner_user_id: Optional[str] = None,
    ) -> Receipt:
        """
        Submit a new receipt with its file.

        Args:
            actor_id: Who submits
            amount: Amount as typed ("12,34" or "12.34")
            receipt_date: Calendar date, YYYY-MM-DD
            category_id: An active category
            filename: Original file name
            data: File contents
            content_type: MIME type of the file
            owner_user_id: Staff may file on behalf of someone else

        Raises:
            ValidationError: Bad form input or inactive category
            NotFoundError: Unknown category
            BlobUploadError: The file could not be stored
            ReceiptAccessError: The actor may not create this receipt
        """
        amount_cents = await self._validated(
            actor_id,
            self._validator.validate_submission,
            amount,
            receipt_date,
            category_id,
            filename,
            len(data) if data is not None else None,
        )
        category = await self._categories.get_active(category_id.strip())
        owner_id = owner_user_id or actor_id
        content_type = content_type or "application/octet-stream"

        receipt_id = self._engine.allocate_id()
        storage_path = receipt_blob_path(owner_id, receipt_id, filename)

        try:
            download_url = await self._blobs.upload(storage_path, data, content_type)
        except BlobStoreError as e:
            await self._audit.log_external_service_error("blob_store", str(e))
            raise

        submission = ReceiptSubmission(
            owner_user_id=owner_id,
            category_id=category.id,
            category_name=category.name,
            amount_cents=amount_cents,
            currency=self._settings.default_currency,
            receipt_date=receipt_date.strip(),
            file=ReceiptFile(
                name=filename,
                type=content_type,
                size=len(data),
                storage_path=storage_path,
                download_url=download_url,
            ),
        )

        try:
            receipt = await self._engine.create(actor_id, submission, receipt_id)
        except Exception:
            await self._discard_upload(storage_path)
            raise

        await self._audit.log(AuditEventBuilder.file_uploaded(
            receipt_id, storage_path, len(data), actor_id
        ))
        return receipt

    async def _discard_upload(self, storage_path: str) -> None:
        try:
            await self._blobs.delete(storage_path)
        except BlobStoreError as e:
            # The original failure is what the caller needs to see
            logger.error("orphaned_upload", storage_path=storage_path, error=str(e))

    async def edit(
        self,
        actor_id: str,
        receipt_id: str,
        amount: Optional[str],
        receipt_date: Optional[str],
        category_id: Optional[str],
        expected_edit_count: Optional[int] = None,
    ) -> Receipt:
        """
        Save the edit form of a receipt.

        A receipt may keep a category that has since been deactivated;
        switching TO a category requires it to be active.

        Raises:
            ValidationError: Bad form input or inactive category
            ReceiptAccessError: Missing, deleted, or not the actor's to change
            StaleReceiptError: Someone else changed the receipt meanwhile
        """
        amount_cents = await self._validated(
            actor_id,
            self._validator.validate_edit,
            amount,
            receipt_date,
            category_id,
        )
        category_id = category_id.strip()
        current = await self._engine.get_receipt(actor_id, receipt_id)

        if category_id == current.category_id:
            category_name = current.category_name
        else:
            category_name = (await self._categories.get_active(category_id)).name

        patch = ReceiptPatch(
            category_id=category_id,
            category_name=category_name,
            amount_cents=amount_cents,
            receipt_date=receipt_date.strip(),
        )
        return await self._engine.update(receipt_id, actor_id, patch, expected_edit_count)

    async def delete(self, actor_id: str, receipt_id: str) -> Receipt:
        """Soft-delete; the file stays in blob storage for the record."""
        return await self._engine.soft_delete(receipt_id, actor_id)


class DashboardFlow:
    """
    Orchestrates the dashboard: live summaries and exports.

    Members see only their own receipts, whatever filter they ask for.
    Staff see everything and may filter by owner.
    """

    def __init__(
        self,
        store: DocumentStore,
        identity: IdentityResolver,
        users: UserAdminService,
        audit_logger: Optional[AuditLogger] = None,
        settings: Optional[AppSettings] = None,
    ):
        self._store = store
        self._identity = identity
        self._users = users
        self._audit = audit_logger or AuditLogger()
        self._settings = settings or get_settings().app

    @staticmethod
    def _scoped(viewer, criteria: Optional[ReceiptFilter]) -> ReceiptFilter:
        criteria = criteria or ReceiptFilter()
        if effective_role(viewer).is_staff:
            return criteria
        return criteria.model_copy(update={"owner_user_id": viewer.id})

    async def open_view(
        self,
        actor_id: str,
        criteria: Optional[ReceiptFilter],
        listener: SummaryListener,
    ) -> LiveReceiptView:
        """
        Start a live summary for the actor.

        The listener is called with the first summary before this
        returns, and again after every change. Close the view when done.

        Raises:
            UnknownPrincipalError: The actor has no profile
        """
        viewer = await self._identity.resolve(actor_id)
        view = LiveReceiptView(
            self._store,
            viewer,
            self._scoped(viewer, criteria),
            listener,
            category_limit=self._settings.category_chart_limit,
            label_width=self._settings.category_label_width,
        )
        return await view.start()

    async def export_csv(self, actor_id: str, criteria: Optional[ReceiptFilter] = None) -> str:
        """
        Export the receipts the actor sees as delimited text.

        The summary row (grand total) comes first after the header.

        Raises:
            UnknownPrincipalError: The actor has no profile
        """
        viewer = await self._identity.resolve(actor_id)
        scoped = self._scoped(viewer, criteria)

        if effective_role(viewer).is_staff:
            docs = await self._store.query(collections.RECEIPTS)
            names = await self._users.display_names()
        else:
            docs = await self._store.query(collections.RECEIPTS, {"owner_user_id": viewer.id})
            names = {viewer.id: viewer.label}

        summary = summarize(receipts_from_snapshot(docs), scoped, category_limit=None)
        rows = build_export_rows(summary.receipts, names)
        text = to_delimited_text(
            rows,
            build_summary_row(summary.receipts) if rows else None,
            delimiter=self._settings.export_delimiter,
        )

        await self._audit.log(AuditEventBuilder.receipts_exported(
            actor_id, summary.count, summary.total_cents
        ))
        return text


class AppComponents:
    """Everything a front end needs, wired to one store."""

    def __init__(
        self,
        store: DocumentStore,
        blob_store: BlobStore,
        audit_logger: AuditLogger,
        settings: AppSettings,
    ):
        self.store = store
        self.blob_store = blob_store
        self.audit_logger = audit_logger
        self.settings = settings

        self.policy = AccessPolicy(settings.last_owner_policy)
        self.validator = ReceiptValidator(settings.max_upload_size_bytes)
        self.whitelist = WhitelistGate(store, self.policy, audit_logger, self.validator)
        self.identity = IdentityResolver(
            store, self.whitelist, blob_store, audit_logger, self.validator
        )
        self.engine = RevisionEngine(store, self.policy, audit_logger, settings)
        self.categories = CategoryService(store, self.policy, audit_logger, self.validator)
        self.users = UserAdminService(store, self.policy, audit_logger)

        self.receipt_flow = ReceiptFlow(
            self.engine,
            self.categories,
            blob_store,
            self.validator,
            audit_logger,
            settings,
        )
        self.dashboard_flow = DashboardFlow(
            store,
            self.identity,
            self.users,
            audit_logger,
            settings,
        )


def create_app_components(
    use_storage: bool = True,
    settings: Optional[AppSettings] = None,
) -> AppComponents:
    """
    Factory function to create all application components.

    Args:
        use_storage: Whether to connect Google Sheets and Cloudinary.
                    Set to False for testing without external services.
        settings: Application settings; read from the environment if omitted

    Returns:
        AppComponents. Without configured services the components run on
        in-memory storage with local-only audit logging.
    """
    settings = settings or get_settings().app
    configure_logging(settings)
    store: DocumentStore = InMemoryDocumentStore(
        max_attempts=settings.transaction_max_attempts,
    )
    blob_store: BlobStore = InMemoryBlobStore()
    audit_logger = AuditLogger()  # Local-only logging

    if use_storage:
        try:
            store = GoogleSheetsDocumentStore(
                max_attempts=settings.transaction_max_attempts,
                retry_wait_seconds=settings.transaction_retry_wait_seconds,
            )
            audit_logger = AuditLogger(DocumentAuditStorage(store))
        except Exception as e:
            # Storage not configured - continue without it
            logger.warning("storage_not_configured", error=str(e))

        try:
            blob_store = CloudinaryBlobStore()
        except Exception as e:
            logger.warning("blob_storage_not_configured", error=str(e))

    return AppComponents(store, blob_store, audit_logger, settings)
