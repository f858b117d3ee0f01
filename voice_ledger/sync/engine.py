"""
Sync Engine

Drains the offline queue: every pending capture is sent to the parser,
refined against local metadata, and either committed to the ledger or
parked for review.

DESIGN DECISION: Exactly one drain runs at a time. A drain requested
while another is running is a no-op; the running drain works from a
snapshot of queue ids taken when it started, so captures added meanwhile
wait for the next one.

CRITICAL BOUNDARIES:
- Authentication failures pause the item (pending, retry_count
  unchanged) and stop the batch; every later item would fail the same
  way until sign-in completes.
- Any other failure (timeouts included) marks the item failed and
  counts a retry.
- A status the parser should never return is recorded as a failure on
  the item; it never escapes the drain.
- Cancelling a drain puts the item being synced back to pending.
"""

import asyncio
from typing import Callable, Optional

import structlog
from pydantic import BaseModel

from voice_ledger.audit import AuditLogger
from voice_ledger.capture import CaptureQueue
from voice_ledger.config import AppSettings, get_settings
from voice_ledger.ledger import Ledger, LedgerCommitError
from voice_ledger.metadata import MetadataRegistry
from voice_ledger.models.api import CaptureParseRequest, ParseResult
from voice_ledger.models.expense import (
    ExpenseDraft,
    ExpenseSource,
    QueuedCapture,
    QueueStatus,
)
from voice_ledger.parsing import local_date, refine_draft
from voice_ledger.services.api import ExpenseAPIClientInterface, is_authentication_error
from voice_ledger.services.network import ConnectivityMonitor


logger = structlog.get_logger(__name__)

MISSING_TEXT_MESSAGE = "Queued item is missing text for parsing."
UNEXPECTED_STATE_MESSAGE = "Unexpected parser state"


class MissingCaptureTextError(Exception):
    """A queued capture has neither text nor a recording to parse."""

    def __init__(self):
        super().__init__(MISSING_TEXT_MESSAGE)


class SyncReport(BaseModel):
    """What one drain did."""

    processed: int = 0
    saved: int = 0
    needs_review: int = 0
    failed: int = 0
    auth_paused: bool = False
    last_error: Optional[str] = None


class SyncEngine:
    """Serialized queue drain."""

    def __init__(
        self,
        queue: CaptureQueue,
        ledger: Ledger,
        registry: MetadataRegistry,
        api_client: ExpenseAPIClientInterface,
        connectivity: ConnectivityMonitor,
        settings: Optional[AppSettings] = None,
        audit_logger: Optional[AuditLogger] = None,
        on_change: Optional[Callable[[], None]] = None,
    ):
        """
        Initialize the engine.

        Args:
            queue / ledger / registry: Shared state owned by the tracker.
            api_client: Parser and server client.
            connectivity: Reports whether the network is reachable.
            settings: Time zone, hints and auto-save preference.
            audit_logger: Optional audit trail.
            on_change: Called after every item changes state, so the
                       owner can persist queue and ledger.
        """
        self._queue = queue
        self._ledger = ledger
        self._registry = registry
        self._api = api_client
        self._connectivity = connectivity
        self._settings = settings or get_settings().app
        self._audit_logger = audit_logger
        self._on_change = on_change or (lambda: None)
        self._in_flight = False

    @property
    def is_syncing(self) -> bool:
        return self._in_flight

    def can_sync(self) -> bool:
        return self._connectivity.is_connected

    async def drain(self) -> Optional[SyncReport]:
        """
        Process every pending capture once.

        Returns:
            The drain's report, or None when no drain ran (offline, or
            another drain in flight)
        """
        if not self.can_sync() or self._in_flight:
            return None

        self._in_flight = True
        report = SyncReport()
        try:
            snapshot = self._queue.ids()
            pending_count = len(self._queue.with_status(QueueStatus.PENDING))
            if self._audit_logger and pending_count:
                await self._audit_logger.log_sync_started(pending_count)

            for queue_id in snapshot:
                item = self._queue.get(queue_id)
                if item is None or item.status != QueueStatus.PENDING:
                    continue
                report.processed += 1
                keep_going = await self._sync_item(item, report)
                self._on_change()
                if not keep_going:
                    break

            if self._audit_logger and report.processed:
                await self._audit_logger.log_sync_finished(
                    report.processed, report.saved, report.needs_review, report.failed
                )
        finally:
            self._in_flight = False
            self._on_change()

        return report

    # ===== ONE ITEM =====

    async def _sync_item(self, item: QueuedCapture, report: SyncReport) -> bool:
        """Sync one capture. Returns False when the batch must stop."""
        self._queue.mark_syncing(item.id)

        try:
            request = self._build_request(item)
            result = await self._api.parse_expense(request)
        except asyncio.CancelledError:
            self._queue.mark_pending(item.id)
            raise
        except Exception as e:
            message = str(e) or e.__class__.__name__
            if is_authentication_error(e):
                self._queue.mark_pending(item.id, last_error=message)
                report.auth_paused = True
                report.last_error = message
                logger.warning("queue_sync_paused", queue_id=str(item.id), error=message)
                if self._audit_logger:
                    await self._audit_logger.log_sync_auth_paused(item.id, item.client_expense_id)
                return False

            failed = self._queue.mark_failed(item.id, message)
            report.failed += 1
            report.last_error = message
            logger.error("queue_sync_failed", queue_id=str(item.id), error=message)
            if self._audit_logger:
                await self._audit_logger.log_parse_failed(
                    item.id, item.client_expense_id, message, failed.retry_count if failed else 0
                )
            return True

        await self._apply_result(item, result, report)
        return True

    def _build_request(self, item: QueuedCapture) -> CaptureParseRequest:
        raw_text = (item.raw_text or "").strip()
        has_recording = item.source == ExpenseSource.VOICE and bool(item.local_audio_file_path)
        if not raw_text and not has_recording:
            raise MissingCaptureTextError()

        return CaptureParseRequest(
            client_expense_id=item.client_expense_id,
            source=item.source,
            captured_at_device=item.captured_at,
            audio_duration_seconds=item.audio_duration_seconds,
            local_audio_file_path=item.local_audio_file_path,
            raw_text=raw_text,
            timezone=self._settings.local_timezone,
            currency_hint=self._registry.default_currency_code,
            language_hint=self._settings.language_hint,
            allow_auto_save=self._settings.allow_auto_save,
            trip_id=item.trip_id,
            trip_name=item.trip_name,
            payment_method_id=item.payment_method_id,
            payment_method_name=item.payment_method_name,
        )

    def refine(self, item: QueuedCapture, draft: ExpenseDraft) -> ExpenseDraft:
        """Carry the capture's hints onto the draft and re-link it locally."""
        draft = draft.model_copy(update={
            "client_expense_id": item.client_expense_id,
            "trip_id": item.trip_id,
            "trip_name": item.trip_name,
            "payment_method_id": item.payment_method_id,
            "payment_method_name": item.payment_method_name,
        })
        return refine_draft(
            draft,
            self._registry.categories,
            self._registry.payment_methods,
            self._registry.default_currency_code,
            capture_date=local_date(item.captured_at, self._settings.local_timezone),
        )

    async def _apply_result(self, item: QueuedCapture, result: ParseResult, report: SyncReport) -> None:
        draft = self.refine(item, result.draft)
        server_id = result.server_expense_id or item.server_expense_id

        if result.status == QueueStatus.SAVED:
            try:
                record = self._ledger.commit_draft(
                    draft,
                    self._registry.default_currency_code,
                    queue_item=item.model_copy(update={"server_expense_id": server_id}),
                )
            except LedgerCommitError as e:
                failed = self._queue.mark_failed(item.id, str(e), draft=draft)
                report.failed += 1
                report.last_error = str(e)
                if self._audit_logger:
                    await self._audit_logger.log_parse_failed(
                        item.id, item.client_expense_id, str(e), failed.retry_count if failed else 0
                    )
                return

            self._queue.mark_saved(item.id, draft=draft, server_expense_id=record.id)
            report.saved += 1
            if self._audit_logger:
                await self._audit_logger.log_parse_completed(
                    item.id, item.client_expense_id, True, draft.parse_confidence
                )
                await self._audit_logger.log_expense_committed(
                    record.id, record.client_expense_id, str(record.amount), record.currency
                )
            return

        if result.status == QueueStatus.NEEDS_REVIEW:
            self._queue.mark_needs_review(item.id, draft, server_expense_id=server_id)
            report.needs_review += 1
            logger.info("queue_item_needs_review", queue_id=str(item.id))
            if self._audit_logger:
                await self._audit_logger.log_parse_completed(
                    item.id, item.client_expense_id, False, draft.parse_confidence
                )
            return

        self._queue.mark_failed(item.id, UNEXPECTED_STATE_MESSAGE, draft=draft, count_retry=False)
        report.failed += 1
        report.last_error = UNEXPECTED_STATE_MESSAGE
        logger.error(
            "unexpected_parser_state",
            queue_id=str(item.id),
            status=result.status.value,
        )
        if self._audit_logger:
            await self._audit_logger.log_protocol_violation(
                item.id, item.client_expense_id, result.status.value
            )
