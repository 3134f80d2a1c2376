"""
In-Memory Document Store

Used by the tests and whenever the production backends are not configured.

CRITICAL: `_commit` contains no await between the version check and the
writes, so a commit is atomic with respect to every other coroutine on
the event loop.
"""

import copy
from typing import Any, Optional

import structlog

from receipt_desk.services.storage.interface import (
    DocKey,
    DocumentStore,
    Snapshot,
    TransactionConflictError,
    matches,
)


logger = structlog.get_logger()


class InMemoryDocumentStore(DocumentStore):
    """
    Dict-backed document store with per-document versions.

    Args:
        seed: Optional initial data, {collection: {doc_id: data}}
    """

    def __init__(
        self,
        seed: Optional[dict[str, dict[str, dict[str, Any]]]] = None,
        max_attempts: int = 5,
        retry_wait_seconds: float = 0.0,
    ):
        super().__init__(max_attempts=max_attempts, retry_wait_seconds=retry_wait_seconds)
        self._collections: dict[str, dict[str, dict[str, Any]]] = {}
        # Survives deletes so versions never repeat
        self._versions: dict[DocKey, int] = {}
        self.commit_count = 0

        for collection, docs in (seed or {}).items():
            for doc_id, data in docs.items():
                self._collections.setdefault(collection, {})[doc_id] = copy.deepcopy(data)
                self._versions[(collection, doc_id)] = 1

    async def get_versioned(
        self,
        collection: str,
        doc_id: str,
    ) -> tuple[Optional[dict[str, Any]], int]:
        data = self._collections.get(collection, {}).get(doc_id)
        # Deleted documents keep their tombstone version
        version = self._versions.get((collection, doc_id), 0)
        return copy.deepcopy(data), version

    async def query(
        self,
        collection: str,
        where: Optional[dict[str, Any]] = None,
    ) -> Snapshot:
        return {
            doc_id: copy.deepcopy(data)
            for doc_id, data in self._collections.get(collection, {}).items()
            if matches(data, where)
        }

    async def _commit(
        self,
        reads: dict[DocKey, int],
        writes: dict[DocKey, Optional[dict[str, Any]]],
    ) -> None:
        for (collection, doc_id), expected in reads.items():
            current = self._versions.get((collection, doc_id), 0)
            if current != expected:
                raise TransactionConflictError(
                    f"{collection}/{doc_id} changed (expected version "
                    f"{expected}, found {current})"
                )

        for (collection, doc_id), data in writes.items():
            docs = self._collections.setdefault(collection, {})
            if data is None:
                docs.pop(doc_id, None)
            else:
                docs[doc_id] = copy.deepcopy(data)
            self._versions[(collection, doc_id)] = (
                self._versions.get((collection, doc_id), 0) + 1
            )

        self.commit_count += 1
        logger.debug("commit_applied", writes=len(writes))
