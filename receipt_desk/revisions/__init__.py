"""Receipt mutations and their revision trail."""

from receipt_desk.revisions.engine import (
    ReceiptAccessError,
    RevisionEngine,
    StaleReceiptError,
)

__all__ = [
    "ReceiptAccessError",
    "RevisionEngine",
    "StaleReceiptError",
]
