"""
Live Receipt View

Keeps a dashboard summary current: subscribes to the receipts collection
and recomputes the summary on every snapshot the store emits. No polling.

Members only ever receive their own receipts (the subscription itself is
filtered); staff receive everything.

Call `close()` when the consumer goes away. A closed view never calls its
listener again.
"""

from typing import Any, Callable, Optional

import structlog
from pydantic import ValidationError as PydanticValidationError

from receipt_desk.access.policy import effective_role
from receipt_desk.models.receipt import Receipt
from receipt_desk.models.user import User
from receipt_desk.queries.aggregation import (
    CATEGORY_CHART_LIMIT,
    CATEGORY_LABEL_WIDTH,
    DashboardSummary,
    ReceiptFilter,
    summarize,
)
from receipt_desk.services.storage import DocumentStore, Subscription
from receipt_desk.services.storage import collections


logger = structlog.get_logger()

SummaryListener = Callable[[DashboardSummary], Any]


def receipts_from_snapshot(snapshot: dict[str, dict]) -> list[Receipt]:
    """Parse stored receipts, skipping (and logging) malformed documents."""
    receipts = []
    for doc_id, data in snapshot.items():
        try:
            receipts.append(Receipt.from_document(doc_id, data))
        except PydanticValidationError as e:
            logger.warning("malformed_receipt_skipped", receipt_id=doc_id, error=str(e))
    return receipts


class LiveReceiptView:
    """A continuously recomputed DashboardSummary for one viewer."""

    def __init__(
        self,
        store: DocumentStore,
        viewer: User,
        criteria: ReceiptFilter,
        listener: SummaryListener,
        category_limit: Optional[int] = CATEGORY_CHART_LIMIT,
        label_width: int = CATEGORY_LABEL_WIDTH,
    ):
        self._store = store
        self._viewer = viewer
        self._criteria = criteria
        self._listener = listener
        self._category_limit = category_limit
        self._label_width = label_width
        self._subscription: Optional[Subscription] = None
        self._receipts: list[Receipt] = []
        self.latest: Optional[DashboardSummary] = None

    @property
    def sees_everything(self) -> bool:
        return effective_role(self._viewer).is_staff

    @property
    def is_open(self) -> bool:
        return self._subscription is not None and self._subscription.active

    async def start(self) -> "LiveReceiptView":
        """Subscribe; the listener receives the first summary before this returns."""
        where = None if self.sees_everything else {"owner_user_id": self._viewer.id}
        self._subscription = await self._store.subscribe(
            collections.RECEIPTS,
            self._on_snapshot,
            where=where,
        )
        return self

    def _on_snapshot(self, snapshot: dict[str, dict]) -> None:
        self._receipts = receipts_from_snapshot(snapshot)
        self._recompute()

    def _recompute(self) -> None:
        self.latest = summarize(
            self._receipts,
            self._criteria,
            self._category_limit,
            self._label_width,
        )
        self._listener(self.latest)

    def set_criteria(self, criteria: ReceiptFilter) -> DashboardSummary:
        """Change the filter and recompute from the last snapshot."""
        self._criteria = criteria
        self._recompute()
        return self.latest

    def close(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
