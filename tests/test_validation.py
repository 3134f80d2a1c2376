"""Tests for input validation."""

import pytest

from receipt_desk.validation import ReceiptValidator, ValidationError, parse_amount_to_cents


MB = 1024 * 1024


@pytest.fixture
def validator() -> ReceiptValidator:
    return ReceiptValidator(max_upload_size_bytes=10 * MB)


class TestAmountParsing:
    """Amounts are typed by people: comma or point, rounded half up."""

    @pytest.mark.parametrize("text,cents", [
        ("12,34", 1234),
        ("12.34", 1234),
        ("  7 ", 700),
        ("0", 0),
        ("0.005", 1),
        ("0.004", 0),
        ("12.345", 1235),
        ("1e3", 100000),
    ])
    def test_valid_amounts(self, text, cents):
        assert parse_amount_to_cents(text) == cents

    @pytest.mark.parametrize("text", [
        None, "", "   ", "abc", "-1", "-0.01", "NaN", "Infinity", "1,234.50", "12,34,5",
    ])
    def test_invalid_amounts(self, text):
        assert parse_amount_to_cents(text) is None


class TestSubmissionValidation:
    """The new-receipt form."""

    def test_valid_submission_returns_cents(self, validator):
        cents = validator.validate_submission("12,50", "2024-03-05", "cat-1", "taxi.pdf", 2048)
        assert cents == 1250

    def test_all_issues_reported_together(self, validator):
        with pytest.raises(ValidationError) as exc_info:
            validator.validate_submission("", "", "", None, None)

        fields = {issue.field for issue in exc_info.value.issues}
        assert fields == {"amount", "receipt_date", "category_id", "file"}
        assert all(issue.issue_type == "missing" for issue in exc_info.value.issues)

    def test_bad_formats(self, validator):
        with pytest.raises(ValidationError) as exc_info:
            validator.validate_submission("twelve", "2024-02-30", "cat-1", "taxi.pdf", 10)

        types = {issue.field: issue.issue_type for issue in exc_info.value.issues}
        assert types == {"amount": "invalid_format", "receipt_date": "invalid_format"}

    def test_file_too_large(self, validator):
        with pytest.raises(ValidationError, match="too large"):
            validator.validate_submission("1", "2024-03-05", "cat-1", "big.pdf", 10 * MB + 1)

    def test_file_at_limit_is_accepted(self, validator):
        assert validator.validate_submission("1", "2024-03-05", "cat-1", "big.pdf", 10 * MB) == 100

    def test_error_serializes_issues(self, validator):
        with pytest.raises(ValidationError) as exc_info:
            validator.validate_edit("-5", "2024-03-05", "cat-1")
        assert exc_info.value.to_dicts() == [{
            "field": "amount",
            "issue_type": "invalid_format",
            "message": "Please enter a valid, non-negative amount",
        }]


class TestEditValidation:

    def test_edit_needs_no_file(self, validator):
        assert validator.validate_edit("3.10", "2024-01-31", "cat-1") == 310

    def test_edit_requires_category(self, validator):
        with pytest.raises(ValidationError):
            validator.validate_edit("3.10", "2024-01-31", "  ")


class TestSmallInputs:
    """Profile and admin inputs."""

    def test_display_name_is_trimmed(self, validator):
        assert validator.validate_display_name("  Mia ") == "Mia"

    @pytest.mark.parametrize("name", [None, "", " M "])
    def test_display_name_too_short(self, validator, name):
        with pytest.raises(ValidationError):
            validator.validate_display_name(name)

    def test_category_name_limits(self, validator):
        assert validator.validate_category_name(" Travel ") == "Travel"
        with pytest.raises(ValidationError):
            validator.validate_category_name("")
        with pytest.raises(ValidationError):
            validator.validate_category_name("x" * 101)

    def test_email_is_normalized(self, validator):
        assert validator.validate_email(" Mia@Example.com ") == "mia@example.com"

    def test_email_needs_at_sign(self, validator):
        with pytest.raises(ValidationError):
            validator.validate_email("not-an-email")
