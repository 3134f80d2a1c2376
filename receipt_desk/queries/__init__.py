"""Receipt views: filtering, aggregation and live dashboards."""

from receipt_desk.queries.aggregation import (
    CategoryTotal,
    DashboardSummary,
    MonthTotal,
    ReceiptFilter,
    filter_receipts,
    format_calendar_date,
    format_cents,
    group_by_category,
    group_by_month,
    shorten_label,
    sum_cents,
    summarize,
)
from receipt_desk.queries.live import LiveReceiptView, SummaryListener, receipts_from_snapshot

__all__ = [
    "CategoryTotal",
    "DashboardSummary",
    "LiveReceiptView",
    "MonthTotal",
    "ReceiptFilter",
    "SummaryListener",
    "filter_receipts",
    "format_calendar_date",
    "format_cents",
    "group_by_category",
    "group_by_month",
    "receipts_from_snapshot",
    "shorten_label",
    "sum_cents",
    "summarize",
]
