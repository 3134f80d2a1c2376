"""
Receipt Aggregation & Filtering

DESIGN DECISION: Everything here is a pure function of a list of
receipts. Views are recomputed from scratch on every snapshot; nothing is
updated in place, so a view can never drift from its data.

Money is summed as integers. Floating point never touches an amount.

Calendar dates are compared at local noon (see `parse_calendar_date`),
so a date bound never slips by a day because of a timezone offset.
"""

from datetime import date, datetime
from typing import Iterable, Optional

from pydantic import BaseModel, Field

from receipt_desk.models.receipt import Receipt, parse_calendar_date


CATEGORY_CHART_LIMIT = 12
CATEGORY_LABEL_WIDTH = 18
UNKNOWN_CATEGORY_ID = "unknown"
UNKNOWN_CATEGORY_NAME = "Unknown"

CURRENCY_SYMBOLS = {"EUR": "€", "USD": "$", "GBP": "£", "CHF": "CHF"}


class ReceiptFilter(BaseModel):
    """Filter criteria for receipt views. Unset fields do not filter."""

    owner_user_id: Optional[str] = None
    category_id: Optional[str] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    include_deleted: bool = False

    @property
    def has_date_bounds(self) -> bool:
        return self.date_from is not None or self.date_to is not None


class CategoryTotal(BaseModel):
    category_id: str
    category_name: str
    label: str = Field(..., description="Display name, shortened if long")
    total_cents: int


class MonthTotal(BaseModel):
    year_month: str = Field(..., description="YYYY-MM")
    total_cents: int


class DashboardSummary(BaseModel):
    """Everything a dashboard shows for one filter."""

    receipts: list[Receipt]
    count: int
    total_cents: int
    by_category: list[CategoryTotal]
    by_month: list[MonthTotal]


def _at_noon(day: date) -> datetime:
    return datetime(day.year, day.month, day.day, 12, 0, 0)


def filter_receipts(receipts: Iterable[Receipt], criteria: ReceiptFilter) -> list[Receipt]:
    """
    Select and order receipts.

    - Soft-deleted receipts only with `include_deleted`
    - Date bounds are inclusive; a receipt whose date cannot be parsed is
      dropped whenever a bound is set and kept otherwise
    - Newest receipt date first; equal dates keep their input order and
      unparseable dates go last
    """
    lower = _at_noon(criteria.date_from) if criteria.date_from else None
    upper = _at_noon(criteria.date_to) if criteria.date_to else None

    selected = []
    for receipt in receipts:
        if receipt.is_deleted and not criteria.include_deleted:
            continue
        if criteria.owner_user_id and receipt.owner_user_id != criteria.owner_user_id:
            continue
        if criteria.category_id and receipt.category_id != criteria.category_id:
            continue
        if criteria.has_date_bounds:
            day = receipt.receipt_day
            if day is None:
                continue
            if lower and day < lower:
                continue
            if upper and day > upper:
                continue
        selected.append(receipt)

    def sort_key(receipt: Receipt) -> tuple[bool, datetime]:
        day = receipt.receipt_day
        return (day is not None, day or datetime.min)

    # sorted() stays stable with reverse=True
    return sorted(selected, key=sort_key, reverse=True)


def sum_cents(receipts: Iterable[Receipt]) -> int:
    return sum(receipt.amount_cents for receipt in receipts)


def shorten_label(name: str, width: int = CATEGORY_LABEL_WIDTH) -> str:
    return name if len(name) <= width else name[:width] + "…"


def group_by_category(
    receipts: Iterable[Receipt],
    limit: Optional[int] = CATEGORY_CHART_LIMIT,
    label_width: int = CATEGORY_LABEL_WIDTH,
) -> list[CategoryTotal]:
    """
    Totals per category, largest first, cut to `limit` groups (None: all).

    Grouped by category id; the name shown is the first one seen for that
    id. Receipts without a category count as "Unknown".
    """
    totals: dict[str, list] = {}
    for receipt in receipts:
        category_id = receipt.category_id or UNKNOWN_CATEGORY_ID
        name = receipt.category_name or UNKNOWN_CATEGORY_NAME
        entry = totals.setdefault(category_id, [name, 0])
        entry[1] += receipt.amount_cents

    groups = [
        CategoryTotal(
            category_id=category_id,
            category_name=name,
            label=shorten_label(name, label_width),
            total_cents=cents,
        )
        for category_id, (name, cents) in totals.items()
    ]
    groups.sort(key=lambda g: g.total_cents, reverse=True)
    return groups if limit is None else groups[:limit]


def group_by_month(receipts: Iterable[Receipt]) -> list[MonthTotal]:
    """Totals per YYYY-MM, oldest month first. Unparseable dates are skipped."""
    totals: dict[str, int] = {}
    for receipt in receipts:
        day = receipt.receipt_day
        if day is None:
            continue
        key = f"{day.year:04d}-{day.month:02d}"
        totals[key] = totals.get(key, 0) + receipt.amount_cents
    return [MonthTotal(year_month=key, total_cents=totals[key]) for key in sorted(totals)]


def summarize(
    receipts: Iterable[Receipt],
    criteria: ReceiptFilter,
    category_limit: Optional[int] = CATEGORY_CHART_LIMIT,
    label_width: int = CATEGORY_LABEL_WIDTH,
) -> DashboardSummary:
    filtered = filter_receipts(receipts, criteria)
    return DashboardSummary(
        receipts=filtered,
        count=len(filtered),
        total_cents=sum_cents(filtered),
        by_category=group_by_category(filtered, category_limit, label_width),
        by_month=group_by_month(filtered),
    )


def format_cents(cents: int, currency: str = "EUR") -> str:
    """
    Human-readable amount with a decimal comma.

    Examples:
        1234 -> "12,34 €"
        -5 -> "-0,05 €"
    """
    sign = "-" if cents < 0 else ""
    whole, minor = divmod(abs(cents), 100)
    symbol = CURRENCY_SYMBOLS.get(currency, currency)
    return f"{sign}{whole},{minor:02d} {symbol}"


def format_calendar_date(value: str) -> str:
    """Display date: "2024-03-05" -> "5.3.2024"; "—" if unparseable."""
    day = parse_calendar_date(value)
    if day is None:
        return "—"
    return f"{day.day}.{day.month}.{day.year}"
