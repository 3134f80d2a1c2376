"""Export package."""

from receipt_desk.export.formatter import (
    EXPORT_COLUMNS,
    NO_DATA,
    build_export_rows,
    build_summary_row,
    to_delimited_text,
)

__all__ = [
    "EXPORT_COLUMNS",
    "NO_DATA",
    "build_export_rows",
    "build_summary_row",
    "to_delimited_text",
]
