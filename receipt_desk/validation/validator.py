"""
Input Validation

DESIGN DECISION: Everything a person types is validated here, before any
storage call. A validation failure therefore never starts (or retries) a
transaction.

All issues of one form are collected and reported together, so the
caller can show every problem at once instead of one per attempt.

IMPORTANT: Validation NEVER silently fixes issues.
It reports them for the person to correct. The one normalization it does
perform (comma as decimal separator) is the documented input format.
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional

from receipt_desk.config import get_settings
from receipt_desk.models.receipt import ValidationIssue, parse_calendar_date
from receipt_desk.models.user import normalize_email


MIN_DISPLAY_NAME_LENGTH = 2
MAX_CATEGORY_NAME_LENGTH = 100


class ValidationError(Exception):
    """Input was rejected. Carries every issue found."""

    def __init__(self, issues: list[ValidationIssue]):
        self.issues = issues
        super().__init__("; ".join(issue.message for issue in issues))

    def to_dicts(self) -> list[dict]:
        return [issue.model_dump() for issue in self.issues]


def parse_amount_to_cents(text: Optional[str]) -> Optional[int]:
    """
    Parse a typed amount to integer minor units.

    Accepts "12.34" and "12,34" (the first comma becomes the decimal
    point). Rounds half up to whole cents.

    Returns None for empty, non-numeric, non-finite or negative input.

    Examples:
        "12,34" -> 1234
        "0.005" -> 1
        "-1"    -> None
    """
    if text is None:
        return None
    normalized = str(text).strip().replace(",", ".", 1)
    if not normalized:
        return None
    try:
        value = Decimal(normalized)
        if not value.is_finite() or value < 0:
            return None
        return int((value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    except InvalidOperation:
        # Unparseable, or too many digits to represent as whole cents
        return None


class ReceiptValidator:
    """
    Validates receipt forms and the smaller admin/profile inputs.

    Each `validate_*` method returns the cleaned value or raises
    ValidationError.
    """

    def __init__(self, max_upload_size_bytes: Optional[int] = None):
        self._max_upload_size_bytes = (
            max_upload_size_bytes
            if max_upload_size_bytes is not None
            else get_settings().app.max_upload_size_bytes
        )

    def _check_receipt_fields(
        self,
        amount: Optional[str],
        receipt_date: Optional[str],
        category_id: Optional[str],
    ) -> tuple[Optional[int], list[ValidationIssue]]:
        issues = []

        amount_cents = parse_amount_to_cents(amount)
        if amount_cents is None:
            issues.append(ValidationIssue(
                field="amount",
                issue_type="invalid_format" if (amount or "").strip() else "missing",
                message="Please enter a valid, non-negative amount",
            ))

        if not (receipt_date or "").strip():
            issues.append(ValidationIssue(
                field="receipt_date",
                issue_type="missing",
                message="Please choose the receipt date",
            ))
        elif parse_calendar_date(receipt_date) is None:
            issues.append(ValidationIssue(
                field="receipt_date",
                issue_type="invalid_format",
                message=f"Receipt date must be a valid YYYY-MM-DD date, got {receipt_date!r}",
            ))

        if not (category_id or "").strip():
            issues.append(ValidationIssue(
                field="category_id",
                issue_type="missing",
                message="Please choose a category",
            ))

        return amount_cents, issues

    def validate_submission(
        self,
        amount: Optional[str],
        receipt_date: Optional[str],
        category_id: Optional[str],
        filename: Optional[str],
        file_size: Optional[int],
    ) -> int:
        """
        Validate the new-receipt form.

        Returns:
            The amount in minor units
        """
        amount_cents, issues = self._check_receipt_fields(amount, receipt_date, category_id)

        if not filename or file_size is None:
            issues.append(ValidationIssue(
                field="file",
                issue_type="missing",
                message="Please choose a file (photo or PDF)",
            ))
        elif file_size > self._max_upload_size_bytes:
            limit_mb = self._max_upload_size_bytes // (1024 * 1024)
            issues.append(ValidationIssue(
                field="file",
                issue_type="too_large",
                message=f"File is too large (max. {limit_mb}MB)",
            ))

        if issues:
            raise ValidationError(issues)
        return amount_cents

    def validate_edit(
        self,
        amount: Optional[str],
        receipt_date: Optional[str],
        category_id: Optional[str],
    ) -> int:
        """Validate the edit form. Returns the amount in minor units."""
        amount_cents, issues = self._check_receipt_fields(amount, receipt_date, category_id)
        if issues:
            raise ValidationError(issues)
        return amount_cents

    def validate_display_name(self, name: Optional[str]) -> str:
        cleaned = (name or "").strip()
        if len(cleaned) < MIN_DISPLAY_NAME_LENGTH:
            raise ValidationError([ValidationIssue(
                field="display_name",
                issue_type="too_short",
                message=(
                    f"Please enter a valid name (at least "
                    f"{MIN_DISPLAY_NAME_LENGTH} characters)"
                ),
            )])
        return cleaned

    def validate_category_name(self, name: Optional[str]) -> str:
        cleaned = (name or "").strip()
        if not cleaned:
            raise ValidationError([ValidationIssue(
                field="name",
                issue_type="missing",
                message="Category name must not be empty",
            )])
        if len(cleaned) > MAX_CATEGORY_NAME_LENGTH:
            raise ValidationError([ValidationIssue(
                field="name",
                issue_type="too_long",
                message=f"Category name is longer than {MAX_CATEGORY_NAME_LENGTH} characters",
            )])
        return cleaned

    def validate_email(self, email: Optional[str]) -> str:
        """Returns the normalized (trimmed, lowercased) email."""
        cleaned = normalize_email(email)
        if not cleaned or "@" not in cleaned:
            raise ValidationError([ValidationIssue(
                field="email",
                issue_type="invalid_format",
                message="Please enter a valid email address",
            )])
        return cleaned
