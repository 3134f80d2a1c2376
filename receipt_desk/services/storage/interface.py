"""
Abstract Storage Interface

DESIGN DECISION: We define an abstract document store instead of a
repository per entity. This allows us to:
1. Swap Google Sheets for a real document database later
2. Use in-memory storage for testing
3. Keep business logic decoupled from storage implementation

A document store holds collections of JSON-able dicts keyed by id. Every
document carries a version number; transactions record the versions they
read and commit only if none of them moved in the meantime (optimistic
concurrency). Conflicting transactions are retried a bounded number of
times.

CRITICAL: Version 0 means "does not exist". Versions are never reused,
not even after a delete, so a delete-then-recreate between a read and a
commit is still detected as a conflict.
"""

import copy
from abc import ABC, abstractmethod
from typing import AbstractSet, Any, Awaitable, Callable, Optional, TypeVar
from uuid import uuid4

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from receipt_desk.models.audit import AuditEvent
from receipt_desk.services.storage import collections


logger = structlog.get_logger()

T = TypeVar("T")

DocKey = tuple[str, str]
Snapshot = dict[str, dict[str, Any]]
Listener = Callable[[Snapshot], Any]


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class NotFoundError(StorageError):
    """Entity not found in storage."""
    pass


class DuplicateError(StorageError):
    """Attempted to insert a duplicate entity."""
    pass


class ConnectionError(StorageError):
    """Could not connect to storage backend."""
    pass


class TransactionConflictError(StorageError):
    """A document read by a transaction changed before it could commit."""
    pass


def matches(data: dict[str, Any], where: Optional[dict[str, Any]]) -> bool:
    """Equality filter on top-level fields. A missing field matches None."""
    if not where:
        return True
    return all(data.get(field) == value for field, value in where.items())


class Transaction:
    """
    Buffered read-then-write unit of work.

    Reads go to the store immediately and record the version seen.
    Writes are buffered and applied together on commit, after every
    recorded version has been re-checked.

    Reads must happen before writes, the same rule hosted document
    databases enforce.
    """

    def __init__(self, store: "DocumentStore"):
        self._store = store
        self._reads: dict[DocKey, int] = {}
        self._snapshots: dict[DocKey, Optional[dict]] = {}
        self._writes: dict[DocKey, Optional[dict]] = {}

    @property
    def reads(self) -> dict[DocKey, int]:
        return dict(self._reads)

    @property
    def writes(self) -> dict[DocKey, Optional[dict]]:
        return dict(self._writes)

    @property
    def collections(self) -> AbstractSet[str]:
        """Collections this transaction writes to."""
        return {collection for collection, _ in self._writes}

    async def get(self, collection: str, doc_id: str) -> Optional[dict[str, Any]]:
        """Read a document inside the transaction (None if absent)."""
        if self._writes:
            raise StorageError("Transaction reads must happen before writes")
        key = (collection, doc_id)
        data, version = await self._store.get_versioned(collection, doc_id)
        if key in self._reads and self._reads[key] != version:
            raise TransactionConflictError(
                f"{collection}/{doc_id} changed during the transaction"
            )
        self._reads[key] = version
        self._snapshots[key] = data
        return copy.deepcopy(data)

    def create(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        """
        Write a new document; the commit fails if it already exists.

        Read the id first if it may have existed and been deleted before;
        an unread id is expected never to have been written.
        """
        key = (collection, doc_id)
        if key in self._reads:
            if self._snapshots.get(key) is not None:
                raise DuplicateError(f"{collection}/{doc_id} already exists")
        else:
            self._reads[key] = 0
        self._writes[key] = copy.deepcopy(data)

    def set(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        """Replace a document (or create it)."""
        self._writes[(collection, doc_id)] = copy.deepcopy(data)

    def update(self, collection: str, doc_id: str, fields: dict[str, Any]) -> None:
        """
        Merge fields into a document read earlier in this transaction.

        Raises:
            NotFoundError: If the document does not exist
        """
        key = (collection, doc_id)
        if key in self._writes:
            base = self._writes[key]
        elif key in self._snapshots:
            base = self._snapshots[key]
        else:
            raise StorageError(f"{collection}/{doc_id} must be read before update")
        if base is None:
            raise NotFoundError(f"{collection}/{doc_id} not found")
        self._writes[key] = {**copy.deepcopy(base), **copy.deepcopy(fields)}

    def delete(self, collection: str, doc_id: str) -> None:
        self._writes[(collection, doc_id)] = None


class Subscription:
    """Handle for a change listener. Call `unsubscribe()` to stop updates."""

    def __init__(
        self,
        store: "DocumentStore",
        collection: str,
        listener: Listener,
        where: Optional[dict[str, Any]] = None,
    ):
        self._store = store
        self.collection = collection
        self.listener = listener
        self.where = where
        self.active = True

    def unsubscribe(self) -> None:
        self.active = False
        self._store._subscriptions.discard(self)


class DocumentStore(ABC):
    """
    Abstract interface for document storage.

    Implementations provide versioned point reads, filtered queries and an
    atomic compare-and-swap commit. Everything else (transactions with
    retry, convenience writes, subscriptions) is built here on top.
    """

    def __init__(
        self,
        max_attempts: int = 5,
        retry_wait_seconds: float = 0.05,
    ):
        self._max_attempts = max_attempts
        self._retry_wait_seconds = retry_wait_seconds
        self._subscriptions: set[Subscription] = set()

    # -------------------------------------------------------------------------
    # Backend primitives
    # -------------------------------------------------------------------------

    @abstractmethod
    async def get_versioned(
        self,
        collection: str,
        doc_id: str,
    ) -> tuple[Optional[dict[str, Any]], int]:
        """
        Read a document and its current version.

        Returns:
            (data, version); (None, version) if absent. The version of a
            document that was never written is 0.
        """
        pass

    @abstractmethod
    async def query(
        self,
        collection: str,
        where: Optional[dict[str, Any]] = None,
    ) -> Snapshot:
        """
        List the documents of a collection matching equality filters.

        Returns:
            Mapping of document id to document data
        """
        pass

    @abstractmethod
    async def _commit(
        self,
        reads: dict[DocKey, int],
        writes: dict[DocKey, Optional[dict[str, Any]]],
    ) -> None:
        """
        Atomically verify read versions and apply writes.

        A write of None deletes the document. Every written document gets
        a new version.

        Raises:
            TransactionConflictError: If any read version moved
        """
        pass

    # -------------------------------------------------------------------------
    # Built on the primitives
    # -------------------------------------------------------------------------

    @staticmethod
    def new_id() -> str:
        """Allocate a fresh document id before writing."""
        return uuid4().hex

    async def get(self, collection: str, doc_id: str) -> Optional[dict[str, Any]]:
        data, _ = await self.get_versioned(collection, doc_id)
        return data

    async def set(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        """Create or replace a document (last write wins)."""
        await self._commit({}, {(collection, doc_id): copy.deepcopy(data)})
        await self._notify({collection})

    async def update(
        self,
        collection: str,
        doc_id: str,
        fields: dict[str, Any],
    ) -> dict[str, Any]:
        """
        Merge fields into an existing document.

        Returns:
            The merged document

        Raises:
            NotFoundError: If the document does not exist
        """
        async def merge(tx: Transaction) -> dict[str, Any]:
            current = await tx.get(collection, doc_id)
            if current is None:
                raise NotFoundError(f"{collection}/{doc_id} not found")
            tx.update(collection, doc_id, fields)
            return {**current, **fields}

        return await self.run_transaction(merge)

    async def delete(self, collection: str, doc_id: str) -> None:
        await self._commit({}, {(collection, doc_id): None})
        await self._notify({collection})

    async def run_transaction(self, fn: Callable[[Transaction], Awaitable[T]]) -> T:
        """
        Run `fn` in an optimistic transaction, retrying on conflicts.

        `fn` receives a fresh Transaction on every attempt and must not have
        side effects outside of it. Any exception other than a conflict
        aborts immediately, with nothing written.

        Raises:
            TransactionConflictError: If every attempt conflicted
        """
        tx: Optional[Transaction] = None
        result = None
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential(multiplier=self._retry_wait_seconds, max=2),
            retry=retry_if_exception_type(TransactionConflictError),
            before_sleep=self._log_retry,
            reraise=True,
        ):
            with attempt:
                tx = Transaction(self)
                result = await fn(tx)
                await self._commit(tx.reads, tx.writes)

        if tx is not None and tx.collections:
            await self._notify(tx.collections)
        return result

    @staticmethod
    def _log_retry(retry_state) -> None:
        logger.info(
            "transaction_retry",
            attempt=retry_state.attempt_number,
            error=str(retry_state.outcome.exception()),
        )

    # -------------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------------

    async def subscribe(
        self,
        collection: str,
        listener: Listener,
        where: Optional[dict[str, Any]] = None,
    ) -> Subscription:
        """
        Call `listener` with the matching documents now and after every
        committed change to the collection, until unsubscribed.
        """
        subscription = Subscription(self, collection, listener, where)
        self._subscriptions.add(subscription)
        await self._emit(subscription)
        return subscription

    async def _notify(self, collections: AbstractSet[str]) -> None:
        for subscription in list(self._subscriptions):
            if subscription.collection in collections:
                await self._emit(subscription)

    async def _emit(self, subscription: Subscription) -> None:
        if not subscription.active:
            return
        snapshot = await self.query(subscription.collection, subscription.where)
        try:
            subscription.listener(snapshot)
        except Exception as e:
            # The write already committed; a broken listener must not undo that
            logger.error(
                "subscription_listener_failed",
                collection=subscription.collection,
                error=str(e),
            )


class AuditStorageInterface(ABC):
    """
    Abstract interface for audit log storage.

    Audit logs are append-only - we never delete or modify them.
    """

    @abstractmethod
    async def append_event(self, event: AuditEvent) -> bool:
        """
        Append an audit event to the log.

        Returns:
            True if logged successfully
        """
        pass

    @abstractmethod
    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: str,
    ) -> list[AuditEvent]:
        """All events for one entity, in chronological order."""
        pass

    @abstractmethod
    async def get_recent_events(self, limit: int = 100) -> list[AuditEvent]:
        """The most recent events, newest first."""
        pass


class DocumentAuditStorage(AuditStorageInterface):
    """Audit log kept in a collection of any DocumentStore."""

    COLLECTION = collections.AUDIT_EVENTS

    def __init__(self, store: DocumentStore):
        self._store = store

    async def append_event(self, event: AuditEvent) -> bool:
        await self._store.set(self.COLLECTION, str(event.event_id), event.to_document())
        return True

    async def _all_events(self, where: Optional[dict] = None) -> list[AuditEvent]:
        docs = await self._store.query(self.COLLECTION, where)
        return [AuditEvent.from_document(doc_id, data) for doc_id, data in docs.items()]

    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: str,
    ) -> list[AuditEvent]:
        events = await self._all_events(
            {"entity_type": entity_type, "entity_id": entity_id}
        )
        events.sort(key=lambda e: e.timestamp)
        return events

    async def get_recent_events(self, limit: int = 100) -> list[AuditEvent]:
        events = await self._all_events()
        events.sort(key=lambda e: e.timestamp, reverse=True)
        return events[:limit]
