"""
Google Sheets Server Store

DESIGN DECISION: Google Sheets backs the server-side store for
single-household deployments:
1. The expense ledger can be inspected and exported directly in Sheets
2. No database setup required
3. Built-in backup (Google's infrastructure)

TRADEOFFS:
- Not suitable for high-volume data (fine for personal use)
- No transactions and no unique index, so the (user_id, client_expense_id)
  upsert is a read-then-write
- Limited query capabilities (we filter in Python)

Worksheets:
- Expenses: one row per expense, one column per field
- UsageEvents: append-only parse usage log
- Metadata: one row per user holding the metadata snapshot and profile
  as JSON
"""

import json
from datetime import datetime
from typing import Any, Optional
from uuid import UUID

import gspread
from google.oauth2.service_account import Credentials
from tenacity import retry, stop_after_attempt, wait_exponential

from voice_ledger.config import GoogleSheetsSettings, get_settings
from voice_ledger.models.api import UsageEvent
from voice_ledger.models.expense import (
    ExpenseRecord,
    MetadataSnapshot,
    UserProfile,
    utc_now,
)
from voice_ledger.services.storage.interface import (
    NotFoundError,
    ServerStoreInterface,
    StorageConnectionError,
    StorageError,
)


EXPENSE_COLUMNS = [
    "user_id",
    "id",
    "client_expense_id",
    "created_at",
    "updated_at",
    "expense_date",
    "amount",
    "currency",
    "category",
    "category_id",
    "description",
    "merchant",
    "trip_id",
    "trip_name",
    "payment_method_id",
    "payment_method_name",
    "captured_at_device",
    "synced_at",
    "source",
    "parse_status",
    "parse_confidence",
    "raw_text",
    "audio_duration_seconds",
]

USAGE_COLUMNS = [
    "user_id",
    "client_expense_id",
    "event_type",
    "provider",
    "model",
    "audio_seconds",
    "created_at",
]

METADATA_COLUMNS = [
    "user_id",
    "updated_at",
    "metadata_json",
    "profile_json",
]


class GoogleSheetsClient:
    """
    Low-level Google Sheets client wrapper.

    Handles authentication, creates missing worksheets with a header row,
    and retries connection attempts.
    """

    def __init__(self, settings: Optional[GoogleSheetsSettings] = None):
        self._client: Optional[gspread.Client] = None
        self._spreadsheet: Optional[gspread.Spreadsheet] = None
        self._settings = settings or get_settings().google_sheets

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
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
                raise StorageConnectionError(
                    f"Google credentials file not found: {self._settings.credentials_path}"
                )
            except Exception as e:
                raise StorageConnectionError(f"Failed to connect to Google Sheets: {e}")

        return self._client

    def get_spreadsheet(self) -> gspread.Spreadsheet:
        if self._spreadsheet is None:
            client = self.connect()
            try:
                self._spreadsheet = client.open_by_key(self._settings.spreadsheet_id)
            except gspread.SpreadsheetNotFound:
                raise StorageConnectionError(
                    f"Spreadsheet not found: {self._settings.spreadsheet_id}"
                )
        return self._spreadsheet

    def get_worksheet(self, title: str, columns: list[str], rows: int = 1000) -> gspread.Worksheet:
        """Get or create a worksheet with the given header row."""
        spreadsheet = self.get_spreadsheet()
        try:
            sheet = spreadsheet.worksheet(title)
        except gspread.WorksheetNotFound:
            sheet = spreadsheet.add_worksheet(title=title, rows=rows, cols=len(columns))
            sheet.append_row(columns)
        return sheet

    def get_expenses_sheet(self) -> gspread.Worksheet:
        return self.get_worksheet(self._settings.expenses_sheet_name, EXPENSE_COLUMNS)

    def get_usage_sheet(self) -> gspread.Worksheet:
        # Append-only, grows fastest
        return self.get_worksheet(self._settings.usage_sheet_name, USAGE_COLUMNS, rows=5000)

    def get_metadata_sheet(self) -> gspread.Worksheet:
        return self.get_worksheet(self._settings.metadata_sheet_name, METADATA_COLUMNS, rows=100)


def _cell(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


def _row_to_dict(columns: list[str], row: list) -> dict[str, str]:
    """Map a row onto its header, dropping empty cells."""
    values = {}
    for index, column in enumerate(columns):
        if index < len(row) and row[index] != "":
            values[column] = row[index]
    return values


class GoogleSheetsServerStore(ServerStoreInterface):
    """
    Google Sheets implementation of the server store.

    Rows are converted through pydantic's JSON mode, so decimals, dates
    and UUIDs round-trip as the same strings the REST API uses.
    """

    def __init__(self, client: Optional[GoogleSheetsClient] = None):
        self._client = client or GoogleSheetsClient()

    # ===== ROW CONVERSION =====

    def _expense_to_row(self, user_id: str, record: ExpenseRecord) -> list:
        data = record.model_dump(mode="json")
        data["user_id"] = user_id
        return [_cell(data.get(column)) for column in EXPENSE_COLUMNS]

    def _row_to_expense(self, row: list) -> ExpenseRecord:
        data = _row_to_dict(EXPENSE_COLUMNS, row)
        data.pop("user_id", None)
        return ExpenseRecord.model_validate(data)

    def _find_expense_rows(self, user_id: str) -> list[tuple[int, list]]:
        """(sheet row number, row) for every expense of the user."""
        sheet = self._client.get_expenses_sheet()
        all_rows = sheet.get_all_values()
        return [
            (idx, row)
            for idx, row in enumerate(all_rows[1:], start=2)  # row 1 is header
            if row and row[0] == user_id
        ]

    def _find_metadata_row(self, user_id: str) -> tuple[Optional[int], Optional[list]]:
        sheet = self._client.get_metadata_sheet()
        for idx, row in enumerate(sheet.get_all_values()[1:], start=2):
            if row and row[0] == user_id:
                return idx, row
        return None, None

    def _write_row(self, sheet: gspread.Worksheet, idx: int, row: list) -> None:
        sheet.update(range_name=f"A{idx}", values=[row], value_input_option="RAW")

    # ===== PROFILE & METADATA =====

    async def get_profile(self, user_id: str) -> Optional[UserProfile]:
        try:
            _, row = self._find_metadata_row(user_id)
        except Exception as e:
            raise StorageError(f"Failed to get profile: {e}")
        data = _row_to_dict(METADATA_COLUMNS, row or [])
        if "profile_json" not in data:
            return None
        return UserProfile.model_validate_json(data["profile_json"])

    async def save_profile(self, profile: UserProfile) -> None:
        await self._save_metadata_row(profile.user_id, profile=profile)

    async def load_metadata(self, user_id: str) -> Optional[MetadataSnapshot]:
        try:
            _, row = self._find_metadata_row(user_id)
        except Exception as e:
            raise StorageError(f"Failed to load metadata: {e}")
        data = _row_to_dict(METADATA_COLUMNS, row or [])
        if "metadata_json" not in data:
            return None
        return MetadataSnapshot.model_validate_json(data["metadata_json"])

    async def save_metadata(self, user_id: str, snapshot: MetadataSnapshot) -> None:
        await self._save_metadata_row(user_id, snapshot=snapshot)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    async def _save_metadata_row(
        self,
        user_id: str,
        snapshot: Optional[MetadataSnapshot] = None,
        profile: Optional[UserProfile] = None,
    ) -> None:
        try:
            sheet = self._client.get_metadata_sheet()
            idx, row = self._find_metadata_row(user_id)
            current = _row_to_dict(METADATA_COLUMNS, row or [])
            new_row = [
                user_id,
                utc_now().isoformat(),
                snapshot.model_dump_json() if snapshot else current.get("metadata_json", ""),
                profile.model_dump_json() if profile else current.get("profile_json", ""),
            ]
            if idx is None:
                sheet.append_row(new_row, value_input_option="RAW")
            else:
                self._write_row(sheet, idx, new_row)
        except Exception as e:
            raise StorageError(f"Failed to save metadata: {e}")

    # ===== EXPENSES =====

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    async def upsert_expense(self, user_id: str, record: ExpenseRecord) -> ExpenseRecord:
        """Insert, or replace the row sharing client_expense_id (keeping its id)."""
        try:
            sheet = self._client.get_expenses_sheet()
            client_id = str(record.client_expense_id)
            for idx, row in self._find_expense_rows(user_id):
                if len(row) > 2 and row[2] == client_id:
                    existing = self._row_to_expense(row)
                    stored = record.model_copy(update={
                        "id": existing.id,
                        "created_at": existing.created_at,
                        "updated_at": utc_now(),
                    })
                    self._write_row(sheet, idx, self._expense_to_row(user_id, stored))
                    return stored

            sheet.append_row(self._expense_to_row(user_id, record), value_input_option="RAW")
            return record
        except Exception as e:
            raise StorageError(f"Failed to save expense: {e}")

    async def update_expense(self, user_id: str, record: ExpenseRecord) -> ExpenseRecord:
        try:
            sheet = self._client.get_expenses_sheet()
            for idx, row in self._find_expense_rows(user_id):
                if len(row) > 1 and row[1] == str(record.id):
                    stored = record.model_copy(update={"updated_at": utc_now()})
                    self._write_row(sheet, idx, self._expense_to_row(user_id, stored))
                    return stored

            raise NotFoundError(f"Expense not found: {record.id}")
        except NotFoundError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to update expense: {e}")

    async def delete_expense(self, user_id: str, expense_id: UUID) -> bool:
        try:
            sheet = self._client.get_expenses_sheet()
            for idx, row in self._find_expense_rows(user_id):
                if len(row) > 1 and row[1] == str(expense_id):
                    sheet.delete_rows(idx)
                    return True
            return False
        except Exception as e:
            raise StorageError(f"Failed to delete expense: {e}")

    async def get_expense(self, user_id: str, expense_id: UUID) -> Optional[ExpenseRecord]:
        try:
            for _, row in self._find_expense_rows(user_id):
                if len(row) > 1 and row[1] == str(expense_id):
                    return self._row_to_expense(row)
            return None
        except Exception as e:
            raise StorageError(f"Failed to get expense: {e}")

    async def list_expenses(self, user_id: str) -> list[ExpenseRecord]:
        try:
            rows = self._find_expense_rows(user_id)
        except Exception as e:
            raise StorageError(f"Failed to list expenses: {e}")

        expenses = []
        for _, row in rows:
            try:
                expenses.append(self._row_to_expense(row))
            except ValueError:
                continue  # Skip malformed rows

        expenses.sort(key=lambda r: (r.expense_date, r.updated_at), reverse=True)
        return expenses

    # ===== USAGE =====

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    async def record_usage_event(self, event: UsageEvent) -> None:
        try:
            sheet = self._client.get_usage_sheet()
            data = event.model_dump(mode="json")
            sheet.append_row([_cell(data.get(c)) for c in USAGE_COLUMNS], value_input_option="RAW")
        except Exception as e:
            raise StorageError(f"Failed to record usage event: {e}")

    async def list_usage_events(
        self,
        user_id: str,
        event_type: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> list[UsageEvent]:
        try:
            sheet = self._client.get_usage_sheet()
            all_rows = sheet.get_all_values()[1:]
        except Exception as e:
            raise StorageError(f"Failed to list usage events: {e}")

        events = []
        for row in all_rows:
            if not row or row[0] != user_id:
                continue
            try:
                event = UsageEvent.model_validate(_row_to_dict(USAGE_COLUMNS, row))
            except ValueError:
                continue
            if event_type and event.event_type != event_type:
                continue
            if since and event.created_at < since:
                continue
            if until and event.created_at >= until:
                continue
            events.append(event)
        return events
