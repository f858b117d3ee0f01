"""
Primary/fallback API client.

Parsing falls back to a second client (normally the in-process one) when
the primary can't authenticate, so captures still parse while signed
out. Every other operation treats an authentication failure as nothing
to do: writes are skipped and fetches return nothing.
"""

from typing import Optional
from uuid import UUID

from voice_ledger.models.api import CaptureParseRequest, ParseResult, UpdateExpenseRequest
from voice_ledger.models.expense import ExpenseRecord, MetadataSnapshot
from voice_ledger.services.api.errors import MissingAuthSessionError, UnauthorizedError
from voice_ledger.services.api.interface import ExpenseAPIClientInterface


_AUTH_ERRORS = (MissingAuthSessionError, UnauthorizedError)


class FallbackExpenseAPIClient(ExpenseAPIClientInterface):
    def __init__(self, primary: ExpenseAPIClientInterface, fallback: ExpenseAPIClientInterface):
        self.primary = primary
        self.fallback = fallback

    async def parse_expense(self, request: CaptureParseRequest) -> ParseResult:
        try:
            return await self.primary.parse_expense(request)
        except _AUTH_ERRORS:
            return await self.fallback.parse_expense(request)

    async def update_expense(self, request: UpdateExpenseRequest) -> None:
        try:
            await self.primary.update_expense(request)
        except _AUTH_ERRORS:
            return

    async def delete_expense(self, expense_id: UUID) -> None:
        try:
            await self.primary.delete_expense(expense_id)
        except _AUTH_ERRORS:
            return

    async def restore_expense(self, record: ExpenseRecord) -> None:
        try:
            await self.primary.restore_expense(record)
        except _AUTH_ERRORS:
            return

    async def sync_metadata(self, snapshot: MetadataSnapshot) -> None:
        try:
            await self.primary.sync_metadata(snapshot)
        except _AUTH_ERRORS:
            return

    async def fetch_metadata(self) -> Optional[MetadataSnapshot]:
        try:
            return await self.primary.fetch_metadata()
        except _AUTH_ERRORS:
            return None

    async def fetch_expenses(self) -> list[ExpenseRecord]:
        try:
            return await self.primary.fetch_expenses()
        except _AUTH_ERRORS:
            return []
