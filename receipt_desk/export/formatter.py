"""
Export Formatter

Renders a filtered receipt view as delimited text (CSV by default), with
a summary row on top.

Quoting follows the csv module's minimal dialect: a field is quoted only
when it contains the delimiter, a quote or a line break, and embedded
quotes are doubled. Any CSV reader gets the exact values back.
"""

import csv
import io
from typing import Any, Iterable, Mapping, Optional, Sequence

from receipt_desk.models.receipt import Receipt
from receipt_desk.queries.aggregation import format_calendar_date, sum_cents


NO_DATA = "no_data"

EXPORT_COLUMNS = [
    "receipt_id",
    "receipt_date",
    "receipt_date_pretty",
    "category",
    "owner_user_id",
    "owner_name",
    "amount_cents",
    "amount",
    "deleted",
]


def _serialize_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "yes" if value else "no"
    return str(value)


def to_delimited_text(
    rows: Sequence[Mapping[str, Any]],
    summary_row: Optional[Mapping[str, Any]] = None,
    delimiter: str = ",",
) -> str:
    """
    Render rows as delimited text.

    The header comes from the first row's keys. The summary row (if any)
    is written right after the header, then the rows in input order.
    Without rows the result is the single line "no_data".
    """
    if not rows:
        return f"{NO_DATA}\n"

    headers = list(rows[0].keys())
    output = io.StringIO()
    writer = csv.writer(output, delimiter=delimiter, lineterminator="\n")
    writer.writerow(headers)
    for row in ([summary_row] if summary_row is not None else []) + list(rows):
        writer.writerow([_serialize_value(row.get(header)) for header in headers])
    return output.getvalue()


def _amount(cents: int) -> str:
    whole, minor = divmod(cents, 100)
    return f"{whole}.{minor:02d}"


def build_export_rows(
    receipts: Iterable[Receipt],
    owner_names: Optional[Mapping[str, str]] = None,
) -> list[dict[str, Any]]:
    """One export row per receipt. Unknown owners are shown by id."""
    owner_names = owner_names or {}
    return [
        {
            "receipt_id": receipt.id,
            "receipt_date": receipt.receipt_date,
            "receipt_date_pretty": format_calendar_date(receipt.receipt_date),
            "category": receipt.category_name,
            "owner_user_id": receipt.owner_user_id,
            "owner_name": owner_names.get(receipt.owner_user_id, receipt.owner_user_id),
            "amount_cents": receipt.amount_cents,
            "amount": _amount(receipt.amount_cents),
            "deleted": receipt.is_deleted,
        }
        for receipt in receipts
    ]


def build_summary_row(receipts: Iterable[Receipt]) -> dict[str, Any]:
    total = sum_cents(receipts)
    row = {column: "" for column in EXPORT_COLUMNS}
    row.update({
        "receipt_id": "SUMMARY",
        "amount_cents": total,
        "amount": _amount(total),
    })
    return row
