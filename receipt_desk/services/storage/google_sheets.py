"""
Google Sheets Document Store

DESIGN DECISION: Google Sheets is used as the production storage backend because:
1. Non-technical staff can inspect the data directly in Sheets
2. No database setup required
3. Built-in backup (Google's infrastructure)

Every collection is one worksheet with the columns
`id | version | updated_at | data_json`. The document body is stored as
JSON so the schema can evolve without touching the sheet layout.

TRADEOFFS:
- Sheets has no transactions. Commits are serialized by a process-wide
  lock and re-validate every read version against the rows just before
  writing. That is safe for a single application process only.
- A failed write puts back the rows the same commit already wrote.
- Limited query capabilities (we filter in Python)
- A delete keeps the row as a tombstone (empty data_json, bumped version)
  so versions never repeat.
"""

import asyncio
import json
from typing import Any, Optional

import gspread
import structlog
from google.oauth2.service_account import Credentials
from tenacity import (
    retry,
    retry_if_exception_type,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from receipt_desk.config import get_settings
from receipt_desk.models.receipt import utc_now
from receipt_desk.services.storage.interface import (
    ConnectionError,
    DocKey,
    DocumentStore,
    Snapshot,
    StorageError,
    TransactionConflictError,
    matches,
)


logger = structlog.get_logger()

COLUMNS = ["id", "version", "updated_at", "data_json"]


class GoogleSheetsClient:
    """
    Low-level Google Sheets client wrapper.

    Handles authentication and provides retry logic for API calls.
    """

    def __init__(self):
        self._client: Optional[gspread.Client] = None
        self._spreadsheet: Optional[gspread.Spreadsheet] = None
        self._worksheets: dict[str, gspread.Worksheet] = {}
        self._settings = get_settings().google_sheets

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_not_exception_type(ConnectionError),
        reraise=True,
    )
    def connect(self) -> gspread.Client:
        """
        Establish connection to Google Sheets.

        Uses service account credentials for authentication.
        """
        if self._client is None:
            try:
                scopes = [
                    "https://www.googleapis.com/auth/spreadsheets",
                    "https://www.googleapis.com/auth/drive",
                ]
                credentials = Credentials.from_service_account_file(
                    self._settings.credentials_path,
                    scopes=scopes,
                )
                self._client = gspread.authorize(credentials)
            except FileNotFoundError:
                raise ConnectionError(
                    f"Google credentials file not found: {self._settings.credentials_path}"
                )
            except Exception as e:
                raise ConnectionError(f"Failed to connect to Google Sheets: {e}")

        return self._client

    def get_spreadsheet(self) -> gspread.Spreadsheet:
        """Get the configured spreadsheet."""
        if self._spreadsheet is None:
            client = self.connect()
            try:
                self._spreadsheet = client.open_by_key(
                    self._settings.spreadsheet_id
                )
            except gspread.SpreadsheetNotFound:
                raise ConnectionError(
                    f"Spreadsheet not found: {self._settings.spreadsheet_id}"
                )
        return self._spreadsheet

    def get_collection_sheet(self, collection: str) -> gspread.Worksheet:
        """Get or create the worksheet backing a collection."""
        if collection not in self._worksheets:
            title = f"{self._settings.worksheet_prefix}{collection}"
            spreadsheet = self.get_spreadsheet()
            try:
                sheet = spreadsheet.worksheet(title)
            except gspread.WorksheetNotFound:
                # Create the sheet with headers
                sheet = spreadsheet.add_worksheet(
                    title=title,
                    rows=self._settings.worksheet_rows,
                    cols=len(COLUMNS),
                )
                sheet.append_row(COLUMNS)
            self._worksheets[collection] = sheet
        return self._worksheets[collection]


class _Row:
    """One parsed worksheet row."""

    def __init__(
        self,
        index: int,
        version: int,
        data: Optional[dict[str, Any]],
        values: Optional[list[str]] = None,
    ):
        self.index = index
        self.version = version
        self.data = data
        self.values = values or [""] * len(COLUMNS)


class _Sheet:
    """Parsed rows of one worksheet and the index the next new row goes to."""

    def __init__(self, rows: dict[str, _Row], next_index: int):
        self.rows = rows
        self.next_index = next_index


class GoogleSheetsDocumentStore(DocumentStore):
    """
    Google Sheets implementation of the document store.

    Reads always fetch the whole worksheet; collections here are small
    (one organization's receipts) so this stays well within API quotas.

    CRITICAL: A commit is all-or-nothing. Every row is written to an
    explicit index (new documents get the next free row), and when one
    write fails the rows already written are restored to their previous
    contents before the error is raised. A receipt change therefore never
    stays behind without its revision.
    """

    def __init__(
        self,
        client: Optional[GoogleSheetsClient] = None,
        max_attempts: int = 5,
        retry_wait_seconds: float = 0.05,
    ):
        super().__init__(max_attempts=max_attempts, retry_wait_seconds=retry_wait_seconds)
        self._client = client or GoogleSheetsClient()
        self._commit_lock = asyncio.Lock()

    @staticmethod
    def _parse_rows(values: list[list[str]]) -> dict[str, _Row]:
        rows: dict[str, _Row] = {}
        # Row 1 is the header; sheet rows are 1-based
        for index, row in enumerate(values[1:], start=2):
            if not row or not row[0]:
                continue
            padded = row + [""] * (len(COLUMNS) - len(row))
            try:
                version = int(padded[1] or 0)
                data = json.loads(padded[3]) if padded[3] else None
            except (ValueError, json.JSONDecodeError) as e:
                raise StorageError(f"Malformed row {index} for {row[0]}: {e}")

            previous = rows.get(row[0])
            if previous is not None:
                # Rows are only ever written in place; a second one was added by hand
                logger.warning(
                    "duplicate_sheet_row",
                    doc_id=row[0],
                    rows=[previous.index, index],
                )
                if previous.version >= version:
                    continue
            rows[row[0]] = _Row(index, version, data, padded[:len(COLUMNS)])
        return rows

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_not_exception_type(StorageError),
        reraise=True,
    )
    def _load(self, collection: str) -> _Sheet:
        try:
            values = self._client.get_collection_sheet(collection).get_all_values()
        except gspread.exceptions.GSpreadException as e:
            raise StorageError(f"Failed to read {collection}: {e}")
        return _Sheet(self._parse_rows(values), len(values) + 1)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type(gspread.exceptions.APIError),
        reraise=True,
    )
    def _put_row(self, collection: str, index: int, values: list[str]) -> None:
        """Write one row in place; writing the same row twice is harmless."""
        sheet = self._client.get_collection_sheet(collection)
        if index > sheet.row_count:
            sheet.add_rows(index - sheet.row_count)
        sheet.update(
            range_name=f"A{index}:D{index}",
            values=[values],
            value_input_option="RAW",
        )

    def _roll_back(self, written: list[tuple[str, int, list[str]]]) -> None:
        for collection, index, previous in reversed(written):
            try:
                self._put_row(collection, index, previous)
            except gspread.exceptions.GSpreadException as e:
                logger.critical(
                    "sheets_rollback_failed",
                    collection=collection,
                    row=index,
                    error=str(e),
                )

    async def get_versioned(
        self,
        collection: str,
        doc_id: str,
    ) -> tuple[Optional[dict[str, Any]], int]:
        row = self._load(collection).rows.get(doc_id)
        if row is None:
            return None, 0
        return row.data, row.version

    async def query(
        self,
        collection: str,
        where: Optional[dict[str, Any]] = None,
    ) -> Snapshot:
        return {
            doc_id: row.data
            for doc_id, row in self._load(collection).rows.items()
            if row.data is not None and matches(row.data, where)
        }

    async def _commit(
        self,
        reads: dict[DocKey, int],
        writes: dict[DocKey, Optional[dict[str, Any]]],
    ) -> None:
        async with self._commit_lock:
            collections = {collection for collection, _ in reads} | {
                collection for collection, _ in writes
            }
            current = {collection: self._load(collection) for collection in collections}

            for (collection, doc_id), expected in reads.items():
                row = current[collection].rows.get(doc_id)
                found = row.version if row else 0
                if found != expected:
                    raise TransactionConflictError(
                        f"{collection}/{doc_id} changed (expected version "
                        f"{expected}, found {found})"
                    )

            written: list[tuple[str, int, list[str]]] = []
            for (collection, doc_id), data in writes.items():
                sheet = current[collection]
                row = sheet.rows.get(doc_id)
                if row is None:
                    row = _Row(sheet.next_index, 0, None)
                    sheet.next_index += 1

                values = [
                    doc_id,
                    str(row.version + 1),
                    utc_now().isoformat(),
                    json.dumps(data) if data is not None else "",
                ]
                try:
                    self._put_row(collection, row.index, values)
                except gspread.exceptions.GSpreadException as e:
                    logger.error(
                        "sheets_write_failed",
                        collection=collection,
                        doc_id=doc_id,
                        error=str(e),
                    )
                    self._roll_back(written)
                    raise StorageError(f"Failed to write {collection}/{doc_id}: {e}")
                written.append((collection, row.index, row.values))
