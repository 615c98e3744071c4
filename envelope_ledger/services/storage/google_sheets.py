"""
Google Sheets Remote Store

DESIGN DECISION: Google Sheets is used as the remote backend because:
1. Users can view their budget directly in Sheets
2. No database setup required
3. Built-in backup (Google's infrastructure)

TRADEOFFS:
- No push notifications, so subscriptions poll
- No transactions (each document write is one row write)
- Limited query capabilities (we filter by user in Python)

Layout: one worksheet per collection, one row per document. Every row carries
the owning ``userId`` so several users can share one spreadsheet. Nested
values (template distributions) are JSON-serialized into a single cell.

gspread is synchronous; every call runs in a worker thread so the event loop
(and local ledger mutations) never wait on the network.
"""

import asyncio
import json
from collections.abc import Callable
from typing import Any, Optional

import gspread
import structlog
from google.oauth2.service_account import Credentials
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from envelope_ledger.config import GoogleSheetsSettings, get_settings
from envelope_ledger.models.documents import Collection
from envelope_ledger.services.storage.interface import (
    ConnectionError,
    Document,
    NotFoundError,
    RemoteErrorKind,
    RemoteStoreError,
    RemoteStoreInterface,
    SnapshotCallback,
    Subscription,
    error_kind,
    order_documents,
)


logger = structlog.get_logger(__name__)


# Column layouts: (document key, cell kind)
ENVELOPE_COLUMNS = [
    ("id", "str"),
    ("userId", "str"),
    ("name", "str"),
    ("currentBalance", "str"),
    ("lastUpdated", "str"),
    ("isActive", "bool"),
    ("orderIndex", "int"),
]

TRANSACTION_COLUMNS = [
    ("id", "str"),
    ("userId", "str"),
    ("envelopeId", "str"),
    ("amount", "str"),
    ("date", "str"),
    ("description", "str"),
    ("reconciled", "bool"),
    ("type", "str"),
    ("transferId", "str"),
]

TEMPLATE_COLUMNS = [
    ("id", "str"),
    ("userId", "str"),
    ("name", "str"),
    ("distributions", "json"),
    ("lastUsed", "str"),
    ("note", "str"),
]

SETTINGS_COLUMNS = [
    ("id", "str"),
    ("userId", "str"),
    ("theme", "str"),
]

COLLECTION_COLUMNS: dict[Collection, list[tuple[str, str]]] = {
    Collection.ENVELOPES: ENVELOPE_COLUMNS,
    Collection.TRANSACTIONS: TRANSACTION_COLUMNS,
    Collection.DISTRIBUTION_TEMPLATES: TEMPLATE_COLUMNS,
    Collection.APP_SETTINGS: SETTINGS_COLUMNS,
}

USER_ID_COLUMN = 1

# HTTP status of a Sheets API error -> structured kind
STATUS_KINDS = {
    400: RemoteErrorKind.INVALID_ARGUMENT,
    401: RemoteErrorKind.UNAUTHENTICATED,
    403: RemoteErrorKind.PERMISSION_DENIED,
    404: RemoteErrorKind.NOT_FOUND,
    408: RemoteErrorKind.DEADLINE_EXCEEDED,
    429: RemoteErrorKind.UNAVAILABLE,
    499: RemoteErrorKind.CANCELLED,
    500: RemoteErrorKind.UNAVAILABLE,
    502: RemoteErrorKind.UNAVAILABLE,
    503: RemoteErrorKind.UNAVAILABLE,
    504: RemoteErrorKind.DEADLINE_EXCEEDED,
}


def api_error_kind(exc: gspread.exceptions.APIError) -> RemoteErrorKind:
    """Map a gspread APIError to a kind using its HTTP status code."""
    status = getattr(exc, "code", None)
    if not isinstance(status, int):
        response = getattr(exc, "response", None)
        status = getattr(response, "status_code", None)
    return STATUS_KINDS.get(status, RemoteErrorKind.UNKNOWN)


def to_remote_error(exc: Exception, action: str) -> RemoteStoreError:
    if isinstance(exc, RemoteStoreError):
        return exc
    if isinstance(exc, gspread.exceptions.APIError):
        kind = api_error_kind(exc)
    else:
        kind = error_kind(exc)
    return RemoteStoreError(f"Failed to {action}: {exc}", kind)


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, RemoteStoreError) and exc.kind.is_transient


# Only transient failures are worth retrying; a 403 will still be a 403
sheets_retry = retry(
    retry=retry_if_exception(_is_transient),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=2, max=10),
    reraise=True,
)


def encode_cell(value: Any, kind: str) -> str:
    if value is None:
        return ""
    if kind == "bool":
        return "true" if value else "false"
    if kind == "json":
        return json.dumps(value, sort_keys=True)
    return str(value)


def decode_cell(value: str, kind: str) -> Any:
    if kind == "bool":
        return value.strip().lower() == "true"
    if kind == "int":
        return int(value) if value.strip() else 0
    if kind == "json":
        return json.loads(value) if value.strip() else {}
    return value or None


class GoogleSheetsClient:
    """
    Low-level Google Sheets client wrapper.

    Handles authentication and finds (or creates) the worksheet of each
    collection.
    """

    def __init__(self, settings: Optional[GoogleSheetsSettings] = None):
        self._client: Optional[gspread.Client] = None
        self._spreadsheet: Optional[gspread.Spreadsheet] = None
        self._worksheets: dict[Collection, gspread.Worksheet] = {}
        self._settings = settings or get_settings().google_sheets

    @retry(
        retry=retry_if_exception(lambda e: error_kind(e).is_transient),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def connect(self) -> gspread.Client:
        """
        Establish connection to Google Sheets.

        Uses service account credentials for authentication. A missing or
        unreadable credentials file is UNAUTHENTICATED and is not retried.
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
                    f"Google credentials file not found: {self._settings.credentials_path}",
                    RemoteErrorKind.UNAUTHENTICATED,
                )
            except (ValueError, KeyError) as e:
                raise ConnectionError(
                    f"Invalid Google credentials file: {e}",
                    RemoteErrorKind.UNAUTHENTICATED,
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
                raise RemoteStoreError(
                    f"Spreadsheet not found: {self._settings.spreadsheet_id}",
                    RemoteErrorKind.NOT_FOUND,
                )
        return self._spreadsheet

    def sheet_name(self, collection: Collection) -> str:
        return {
            Collection.ENVELOPES: self._settings.envelopes_sheet_name,
            Collection.TRANSACTIONS: self._settings.transactions_sheet_name,
            Collection.DISTRIBUTION_TEMPLATES: self._settings.templates_sheet_name,
            Collection.APP_SETTINGS: self._settings.settings_sheet_name,
        }[collection]

    def get_worksheet(self, collection: Collection) -> gspread.Worksheet:
        """Get or create the worksheet of a collection."""
        if collection in self._worksheets:
            return self._worksheets[collection]

        spreadsheet = self.get_spreadsheet()
        columns = [key for key, _ in COLLECTION_COLUMNS[collection]]
        title = self.sheet_name(collection)
        try:
            sheet = spreadsheet.worksheet(title)
        except gspread.WorksheetNotFound:
            # Create the sheet with headers
            sheet = spreadsheet.add_worksheet(
                title=title,
                rows=1000,
                cols=len(columns),
            )
            sheet.append_row(columns)
        self._worksheets[collection] = sheet
        return sheet


class PollingSubscription(Subscription):
    """Re-reads a collection on an interval and reports changed snapshots."""

    def __init__(self, task: asyncio.Task):
        self._task = task

    def cancel(self) -> None:
        if not self._task.done():
            self._task.cancel()

    @property
    def active(self) -> bool:
        return not self._task.done()


class GoogleSheetsRemoteStore(RemoteStoreInterface):
    """
    Google Sheets implementation of the remote store.

    Documents are stored as rows, one worksheet per collection.
    """

    def __init__(
        self,
        client: Optional[GoogleSheetsClient] = None,
        poll_interval_seconds: Optional[float] = None,
    ):
        self._client = client or GoogleSheetsClient()
        if poll_interval_seconds is None:
            poll_interval_seconds = get_settings().sync.realtime_poll_interval_seconds
        self._poll_interval = poll_interval_seconds

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    def _document_to_row(self, collection: Collection, user_id: str, document: Document) -> list[str]:
        """Convert a document to a spreadsheet row."""
        values = {**document, "userId": user_id}
        return [encode_cell(values.get(key), kind) for key, kind in COLLECTION_COLUMNS[collection]]

    def _row_to_document(self, collection: Collection, row: list[str]) -> Document:
        """Convert a spreadsheet row to a document."""
        # Handle missing trailing columns gracefully
        def safe_get(index: int) -> str:
            try:
                return row[index]
            except IndexError:
                return ""

        # Empty cells are left out so model defaults apply
        document = {}
        for index, (key, kind) in enumerate(COLLECTION_COLUMNS[collection]):
            value = decode_cell(safe_get(index), kind)
            if value is not None:
                document[key] = value
        return document

    def _user_rows(self, sheet: gspread.Worksheet, user_id: str) -> dict[str, tuple[int, list[str]]]:
        """``{doc_id: (sheet_row_number, row)}`` for one user (row 1 is the header)."""
        rows = {}
        for idx, row in enumerate(sheet.get_all_values()[1:], start=2):
            if row and row[0] and len(row) > USER_ID_COLUMN and row[USER_ID_COLUMN] == user_id:
                rows[row[0]] = (idx, row)
        return rows

    # ------------------------------------------------------------------
    # Blocking operations (run in a worker thread)
    # ------------------------------------------------------------------

    @sheets_retry
    def _set_sync(self, user_id: str, collection: Collection, doc_id: str, document: Document) -> None:
        try:
            sheet = self._client.get_worksheet(collection)
            new_row = self._document_to_row(collection, user_id, {**document, "id": doc_id})
            existing = self._user_rows(sheet, user_id).get(doc_id)
            if existing is None:
                sheet.append_row(new_row, value_input_option="RAW")
            else:
                sheet.update(
                    range_name=f"A{existing[0]}",
                    values=[new_row],
                    value_input_option="RAW",
                )
        except Exception as e:
            raise to_remote_error(e, f"write {collection.value}/{doc_id}")

    @sheets_retry
    def _update_sync(self, user_id: str, collection: Collection, doc_id: str, fields: Document) -> None:
        try:
            sheet = self._client.get_worksheet(collection)
            existing = self._user_rows(sheet, user_id).get(doc_id)
            if existing is None:
                raise NotFoundError(f"{collection.value}/{doc_id} not found")
            row_number, row = existing
            merged = {**self._row_to_document(collection, row), **fields}
            sheet.update(
                range_name=f"A{row_number}",
                values=[self._document_to_row(collection, user_id, merged)],
                value_input_option="RAW",
            )
        except Exception as e:
            raise to_remote_error(e, f"update {collection.value}/{doc_id}")

    @sheets_retry
    def _delete_sync(self, user_id: str, collection: Collection, doc_id: str) -> None:
        try:
            sheet = self._client.get_worksheet(collection)
            existing = self._user_rows(sheet, user_id).get(doc_id)
            if existing is not None:
                sheet.delete_rows(existing[0])
        except Exception as e:
            raise to_remote_error(e, f"delete {collection.value}/{doc_id}")

    @sheets_retry
    def _list_sync(self, user_id: str, collection: Collection) -> list[Document]:
        try:
            sheet = self._client.get_worksheet(collection)
            documents = [
                self._row_to_document(collection, row)
                for _, row in self._user_rows(sheet, user_id).values()
            ]
        except Exception as e:
            raise to_remote_error(e, f"list {collection.value}")
        return order_documents(collection, documents)

    # ------------------------------------------------------------------
    # RemoteStoreInterface
    # ------------------------------------------------------------------

    async def set_document(
        self,
        user_id: str,
        collection: Collection,
        doc_id: str,
        document: Document,
    ) -> None:
        await asyncio.to_thread(self._set_sync, user_id, collection, doc_id, document)

    async def update_document(
        self,
        user_id: str,
        collection: Collection,
        doc_id: str,
        fields: Document,
    ) -> None:
        await asyncio.to_thread(self._update_sync, user_id, collection, doc_id, fields)

    async def delete_document(
        self,
        user_id: str,
        collection: Collection,
        doc_id: str,
    ) -> None:
        await asyncio.to_thread(self._delete_sync, user_id, collection, doc_id)

    async def list_documents(
        self,
        user_id: str,
        collection: Collection,
    ) -> list[Document]:
        return await asyncio.to_thread(self._list_sync, user_id, collection)

    async def subscribe(
        self,
        user_id: str,
        collection: Collection,
        callback: SnapshotCallback,
        on_error: Optional[Callable[[Exception], None]] = None,
    ) -> Subscription:
        """Poll the worksheet; the first read happens before returning."""
        initial = await self.list_documents(user_id, collection)
        callback(initial)

        async def poll(last: list[Document]) -> None:
            while True:
                await asyncio.sleep(self._poll_interval)
                try:
                    current = await self.list_documents(user_id, collection)
                except RemoteStoreError as e:
                    logger.warning(
                        "sheets_poll_failed",
                        collection=collection.value,
                        error_kind=e.kind.value,
                        error=str(e),
                    )
                    if on_error is not None:
                        on_error(e)
                    continue
                if current != last:
                    last = current
                    callback(current)

        task = asyncio.get_running_loop().create_task(poll(initial))
        return PollingSubscription(task)
