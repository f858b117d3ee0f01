"""
Abstract API Client Interface

DESIGN DECISION: The tracker and sync engine only ever talk to this
interface. Implementations:
- InProcessExpenseAPIClient: runs the parse handler in the same process
- HttpExpenseAPIClient: the remote REST/functions endpoint over httpx
- FallbackExpenseAPIClient: remote first, in-process when signed out

All methods raise ExpenseAPIError subclasses (or network exceptions,
which callers treat as ordinary failures).
"""

from abc import ABC, abstractmethod
from typing import Optional
from uuid import UUID

from voice_ledger.models.api import CaptureParseRequest, ParseResult, UpdateExpenseRequest
from voice_ledger.models.expense import ExpenseRecord, MetadataSnapshot


class ExpenseAPIClientInterface(ABC):
    """Server operations the device needs."""

    @abstractmethod
    async def parse_expense(self, request: CaptureParseRequest) -> ParseResult:
        """
        Parse one capture and persist it server-side.

        Returns:
            ParseResult with status saved or needs_review

        Raises:
            MissingAuthSessionError / UnauthorizedError: Sign-in needed
            LimitExceededError: Daily voice limit reached
            ServerError: Anything else the server reported
        """
        pass

    @abstractmethod
    async def update_expense(self, request: UpdateExpenseRequest) -> None:
        """Replace a server row with a reviewed draft."""
        pass

    @abstractmethod
    async def delete_expense(self, expense_id: UUID) -> None:
        pass

    @abstractmethod
    async def restore_expense(self, record: ExpenseRecord) -> None:
        """Re-create a previously deleted row, keeping its id."""
        pass

    @abstractmethod
    async def sync_metadata(self, snapshot: MetadataSnapshot) -> None:
        pass

    @abstractmethod
    async def fetch_metadata(self) -> Optional[MetadataSnapshot]:
        """
        The server's metadata snapshot.

        Returns:
            None when the user has never synced metadata
        """
        pass

    @abstractmethod
    async def fetch_expenses(self) -> list[ExpenseRecord]:
        pass
