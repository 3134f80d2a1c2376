"""Input validation package."""

from receipt_desk.validation.validator import (
    ReceiptValidator,
    ValidationError,
    parse_amount_to_cents,
)

__all__ = [
    "ReceiptValidator",
    "ValidationError",
    "parse_amount_to_cents",
]
