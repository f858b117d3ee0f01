"""
Main Orchestrator for Voice Ledger

This module ties the components together and owns every piece of
mutable application state:
1. Capture (text / voice → offline queue)
2. Sync (queue drain → parse → refine → ledger or review)
3. Review (edit a draft or a saved expense → ledger → server update)
4. Delete / restore (optimistic delete with rollback, tombstones, purge)
5. Metadata (categories, trips, payment methods, default currency)
6. Cloud refresh (metadata, expenses, tombstone purge) on reconnect

DESIGN DECISION: ExpenseTracker is the single writer. All of its
mutators are coroutines that run on one event loop; network calls are
awaited on that loop, so state is never touched from two places at
once. The only mutual exclusion is an in-flight flag per long-running
operation (queue drain, metadata sync).

Local persistence is fire-and-forget: writes are handed to a single
background worker in order and their failures come back to the loop as
an operational message. A crash between a mutation and its write can
lose that mutation; startup tolerates missing or corrupt files.

CRITICAL BOUNDARIES:
- Nothing here raises to the caller for a remote or persistence failure
- Every failure ends as a retryable queue state or a user-visible message
"""

import asyncio
from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Awaitable, Callable, Iterable, Optional
from uuid import UUID

import structlog

from voice_ledger.agents import GeminiExpenseExtractor
from voice_ledger.audit import AuditLogger
from voice_ledger.capture import CaptureQueue, CaptureSessionManager, VoiceCaptureSession, delete_local_audio
from voice_ledger.config import Settings, get_settings
from voice_ledger.ledger import (
    CategoryTotal,
    Ledger,
    RecentlyDeletedExpenses,
    category_totals,
    draft_from_expense,
    filtered_expenses,
    monthly_spend_total,
    trip_total,
)
from voice_ledger.metadata import MetadataRegistry
from voice_ledger.models.api import UpdateExpenseRequest
from voice_ledger.models.expense import (
    CategoryDefinition,
    ExpenseRecord,
    ExpenseSource,
    PaymentMethod,
    PaymentMethodType,
    QueuedCapture,
    RecentlyDeletedExpenseEntry,
    ReviewContext,
    TripRecord,
    utc_now,
)
from voice_ledger.parsing import ParsingEngine, link_category, local_date
from voice_ledger.server import ParseExpenseHandler
from voice_ledger.services.api import (
    ExpenseAPIClientInterface,
    FallbackExpenseAPIClient,
    HttpExpenseAPIClient,
    InProcessExpenseAPIClient,
)
from voice_ledger.services.audio import (
    AudioStorageInterface,
    CloudinaryAudioStorage,
    InMemoryAudioStorage,
)
from voice_ledger.services.network import ConnectivityMonitor
from voice_ledger.services.storage import (
    GoogleSheetsClient,
    GoogleSheetsServerStore,
    InMemoryServerStore,
    JsonFileLedgerStore,
    JsonFileMetadataStore,
    JsonFileQueueStore,
    JsonFileRecentlyDeletedStore,
    LedgerStoreInterface,
    MetadataStoreInterface,
    QueueStoreInterface,
    RecentlyDeletedStoreInterface,
    ServerStoreInterface,
    StorageError,
)
from voice_ledger.sync import SyncEngine, SyncReport
from voice_ledger.validation import INVALID_AMOUNT_MESSAGE, validate_draft_amount


logger = structlog.get_logger(__name__)


# =============================================================================
# OPERATIONAL MESSAGES - shown to the user as-is
# =============================================================================

QUEUE_SAVE_FAILED = "Could not save offline queue data."
EXPENSES_SAVE_FAILED = "Could not save expenses on this device."
SETTINGS_SAVE_FAILED = "Could not save settings on this device."
RECENTLY_DELETED_SAVE_FAILED = "Could not save recently deleted expenses."
REMOTE_DELETE_FAILED = "Could not delete expense on server. Restored locally."
REMOTE_UPDATE_STALE = "Saved on this device. The server copy may be out of date."
SYNC_PAUSED_AUTH = "Queue sync paused (sign-in required)."
SYNC_FAILED = "Queue sync failed."
METADATA_SYNC_FAILED = "Metadata sync failed."
REFRESH_FAILED = "Could not refresh expenses from server."
RESTORE_FAILED = "Could not restore expense on server."


class ExpenseTracker:
    """
    Application state and every user-facing operation.

    Flow for a capture:
    1. create_text_entry / create_voice_capture → queue (pending)
    2. sync_queue → parser → refinement → ledger (saved) or review
    3. save_review → ledger (edited) → server update

    Construct it inside a running event loop (or call start() from one);
    background work is scheduled on that loop.
    """

    def __init__(
        self,
        api_client: ExpenseAPIClientInterface,
        queue_store: QueueStoreInterface,
        ledger_store: LedgerStoreInterface,
        recently_deleted_store: RecentlyDeletedStoreInterface,
        metadata_store: MetadataStoreInterface,
        connectivity: Optional[ConnectivityMonitor] = None,
        sessions: Optional[CaptureSessionManager] = None,
        settings: Optional[Settings] = None,
        audit_logger: Optional[AuditLogger] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._settings = settings or get_settings()
        self._api = api_client
        self._queue_store = queue_store
        self._ledger_store = ledger_store
        self._recently_deleted_store = recently_deleted_store
        self._metadata_store = metadata_store
        self._connectivity = connectivity or ConnectivityMonitor()
        self._sessions = sessions or CaptureSessionManager()
        self._audit_logger = audit_logger
        self._clock = clock

        # Loading never raises: unreadable stores come back empty
        self.queue = CaptureQueue.for_startup(queue_store.load_queue())
        self.ledger = Ledger(ledger_store.load_expenses(), clock=clock)
        self.recently_deleted = RecentlyDeletedExpenses(
            recently_deleted_store.load_entries(),
            retention_days=self._settings.app.tombstone_retention_days,
            clock=clock,
        )
        self.registry = MetadataRegistry(
            metadata_store.load_metadata(),
            default_currency=self._settings.app.default_currency,
            clock=clock,
        )

        self.active_review: Optional[ReviewContext] = None
        self.last_operational_error_message: Optional[str] = None

        self._sync_engine = SyncEngine(
            queue=self.queue,
            ledger=self.ledger,
            registry=self.registry,
            api_client=api_client,
            connectivity=self._connectivity,
            settings=self._settings.app,
            audit_logger=audit_logger,
            on_change=self._persist_queue_and_ledger,
        )

        self._io_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="voice-ledger-io")
        self._pending_io: set[asyncio.Future] = set()
        self._background: set[asyncio.Task] = set()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

        self._is_syncing_metadata = False
        self._metadata_dirty = False
        self._metadata_sync_task: Optional[asyncio.Task] = None

        self._unsubscribe = self._connectivity.subscribe(self._handle_connectivity_change)

    # =========================================================================
    # STARTUP / SHUTDOWN
    # =========================================================================

    async def start(self) -> None:
        """
        Finish startup on the running loop.

        Persists the normalized queue, seeds default categories, purges
        expired tombstones and, when online, refreshes from the server
        and drains the queue.
        """
        self._loop = asyncio.get_running_loop()
        self._persist_queue()
        if self.registry.seed_defaults_if_needed():
            self._persist_metadata()
        await self.purge_expired_recently_deleted()

        if self.is_connected:
            await self.refresh_cloud_state()
            await self.sync_queue()

    async def wait_idle(self) -> None:
        """Wait for background tasks and pending local writes to finish."""
        while self._background or self._pending_io:
            await asyncio.gather(*self._background, *self._pending_io, return_exceptions=True)

    async def close(self) -> None:
        self._unsubscribe()
        await self.wait_idle()
        self._io_executor.shutdown(wait=True)

    # =========================================================================
    # READ-ONLY VIEWS
    # =========================================================================

    @property
    def expenses(self) -> list[ExpenseRecord]:
        return self.ledger.expenses

    @property
    def queued_captures(self) -> list[QueuedCapture]:
        return self.queue.items

    @property
    def recently_deleted_expenses(self) -> list[RecentlyDeletedExpenseEntry]:
        return self.recently_deleted.entries

    @property
    def is_connected(self) -> bool:
        return self._connectivity.is_connected

    @property
    def is_syncing_queue(self) -> bool:
        return self._sync_engine.is_syncing

    @property
    def is_syncing_metadata(self) -> bool:
        return self._is_syncing_metadata

    @property
    def default_currency_code(self) -> str:
        return self.registry.default_currency_code

    @property
    def active_trip(self) -> Optional[TripRecord]:
        return self.registry.active_trip

    def filtered_expenses(
        self,
        trip_id: Optional[UUID] = None,
        payment_method_id: Optional[UUID] = None,
    ) -> list[ExpenseRecord]:
        return filtered_expenses(self.ledger.expenses, trip_id, payment_method_id)

    def trip_total(self, trip_id: Optional[UUID]) -> Decimal:
        return trip_total(self.ledger.expenses, trip_id)

    def category_totals(
        self,
        trip_id: Optional[UUID] = None,
        payment_method_id: Optional[UUID] = None,
    ) -> list[CategoryTotal]:
        return category_totals(self.ledger.expenses, self._today(), trip_id, payment_method_id)

    def monthly_spend_total(self) -> Decimal:
        return monthly_spend_total(self.ledger.expenses, self._today())

    def _today(self) -> date:
        return local_date(self._clock(), self._settings.app.local_timezone)

    # =========================================================================
    # CAPTURE
    # =========================================================================

    async def create_text_entry(self, raw_text: str) -> Optional[QueuedCapture]:
        """Queue a typed expense. Blank text is ignored."""
        trimmed = raw_text.strip()
        if not trimmed:
            return None
        item = self._with_active_trip(QueuedCapture(
            source=ExpenseSource.TEXT,
            captured_at=self._clock(),
            raw_text=trimmed,
        ))
        return await self._enqueue(item)

    async def create_voice_capture(
        self,
        raw_text: str,
        duration_seconds: int,
        local_audio_file_path: Optional[str] = None,
    ) -> QueuedCapture:
        """Queue a finished recording and its transcript."""
        item = self._with_active_trip(QueuedCapture(
            source=ExpenseSource.VOICE,
            captured_at=self._clock(),
            raw_text=raw_text.strip() or None,
            audio_duration_seconds=max(0, duration_seconds),
            local_audio_file_path=local_audio_file_path,
        ))
        return await self._enqueue(item)

    def begin_voice_capture(self) -> VoiceCaptureSession:
        """Open a recording session; the recorder writes to session.audio_path."""
        return self._sessions.begin(self._clock())

    async def finish_voice_capture(
        self,
        session: VoiceCaptureSession,
        raw_text: str,
        duration_seconds: int,
    ) -> Optional[QueuedCapture]:
        item = self._sessions.finish(session, raw_text, duration_seconds, captured_at=self._clock())
        if item is None:
            return None
        return await self._enqueue(self._with_active_trip(item))

    async def cancel_voice_capture(self, session: VoiceCaptureSession) -> None:
        """Abandon a recording: the partial file is deleted, nothing is queued."""
        self._sessions.cancel(session)
        if self._audit_logger:
            await self._audit_logger.log_capture_cancelled(session.audio_path)

    def _with_active_trip(self, item: QueuedCapture) -> QueuedCapture:
        trip = self.registry.active_trip
        if trip is None:
            return item
        return item.model_copy(update={"trip_id": trip.id, "trip_name": trip.name})

    async def _enqueue(self, item: QueuedCapture) -> QueuedCapture:
        self.queue.enqueue(item)
        self._persist_queue()
        if self._audit_logger:
            await self._audit_logger.log_capture_enqueued(
                item.id, item.client_expense_id, item.source.value
            )
        self._spawn(self.sync_queue())
        return item

    # =========================================================================
    # QUEUE
    # =========================================================================

    async def sync_queue(self) -> Optional[SyncReport]:
        """Drain the queue if online and no drain is running."""
        report = await self._sync_engine.drain()
        if report is None:
            return None
        if report.auth_paused:
            self.last_operational_error_message = SYNC_PAUSED_AUTH
        elif report.failed:
            self.last_operational_error_message = SYNC_FAILED
        return report

    async def retry_failed_queue_items(self) -> int:
        """Put every failed item back to pending; retry counts are kept."""
        retried = self.queue.retry_failed()
        if retried:
            self._persist_queue()
        self._spawn(self.sync_queue())
        return len(retried)

    async def retry_queue_item(self, queue_id: UUID) -> bool:
        item = self.queue.retry_item(queue_id)
        if item is None:
            return False
        self._persist_queue()
        self._spawn(self.sync_queue())
        return True

    async def delete_queue_item(self, queue_id: UUID) -> bool:
        """
        Delete a queue item.

        Refused while a ledger row still references it; the entry then
        stays as a sync artifact.
        """
        removed = self.queue.remove(queue_id, self.ledger.expenses)
        if removed:
            self._persist_queue()
        return removed

    # =========================================================================
    # REVIEW
    # =========================================================================

    def open_review_for_queue_item(self, queue_id: UUID) -> Optional[ReviewContext]:
        item = self.queue.get(queue_id)
        if item is None or item.parsed_draft is None:
            return None
        self.active_review = ReviewContext(queue_id=item.id, draft=item.parsed_draft)
        return self.active_review

    def open_review_for_expense(self, expense_id: UUID) -> Optional[ReviewContext]:
        expense = self.ledger.get(expense_id)
        if expense is None:
            return None
        draft = draft_from_expense(expense)
        if draft.category_id is None:
            draft = link_category(draft, self.registry.categories)
        self.active_review = ReviewContext(expense_id=expense.id, draft=draft)
        return self.active_review

    def dismiss_review(self) -> None:
        self.active_review = None

    async def save_review(self, context: ReviewContext) -> bool:
        """
        Commit a reviewed draft.

        An invalid amount keeps the review open and leaves the ledger
        untouched. A failed server update keeps the local edit and tells
        the user the server copy may be stale.

        Returns:
            True when the draft was committed
        """
        validation = validate_draft_amount(context.draft)
        if validation.has_errors:
            self.active_review = context
            self.last_operational_error_message = INVALID_AMOUNT_MESSAGE
            return False

        queue_item = self.queue.get(context.queue_id) if context.queue_id else None
        record = self.ledger.commit_draft(
            context.draft,
            self.registry.default_currency_code,
            queue_item=queue_item,
            existing_expense_id=context.expense_id,
            mark_edited=True,
        )
        self._persist_ledger()

        if queue_item is not None:
            self.queue.mark_saved(queue_item.id, draft=context.draft, server_expense_id=record.id)
            self._persist_queue()

        self.active_review = None
        if self._audit_logger:
            await self._audit_logger.log_review_saved(record.id, record.client_expense_id)

        remote_id = context.expense_id or (queue_item.server_expense_id if queue_item else None)
        if remote_id is not None:
            try:
                await self._api.update_expense(UpdateExpenseRequest(expense_id=remote_id, draft=context.draft))
            except Exception as e:
                logger.warning("remote_update_failed", expense_id=str(remote_id), error=str(e))
                self.last_operational_error_message = REMOTE_UPDATE_STALE
        return True

    # =========================================================================
    # DELETE / RESTORE
    # =========================================================================

    async def delete_expense(self, expense_id: UUID) -> bool:
        """
        Delete an expense optimistically.

        The row and every queue entry referencing it leave local state
        at once and a tombstone is recorded; then the server delete is
        requested. If that fails, everything is put back where it was.
        """
        removed = self.ledger.remove(expense_id)
        if removed is None:
            return False
        position, expense = removed
        detached = self.queue.detach_for_expense(expense)
        self.recently_deleted.add(
            expense,
            [item.model_copy(update={"local_audio_file_path": None}) for _, item in detached],
        )
        self._persist_ledger()
        if detached:
            self._persist_queue()
        self._persist_recently_deleted()
        if self._audit_logger:
            await self._audit_logger.log_expense_deleted(expense.id, expense.client_expense_id, len(detached))

        try:
            await self._api.delete_expense(expense.id)
        except Exception as e:
            logger.warning("remote_delete_failed", expense_id=str(expense.id), error=str(e))
            self.ledger.reinsert(expense, position)
            self.queue.reattach(detached)
            self.recently_deleted.discard_expense(expense.id)
            self._persist_ledger()
            if detached:
                self._persist_queue()
            self._persist_recently_deleted()
            self.last_operational_error_message = REMOTE_DELETE_FAILED
            if self._audit_logger:
                await self._audit_logger.log_delete_rolled_back(
                    expense.id, expense.client_expense_id, str(e)
                )
            return False

        for _, item in detached:
            delete_local_audio(item.local_audio_file_path)
        return True

    async def restore_recently_deleted(self, entry_id: UUID) -> bool:
        """Bring a tombstoned expense back with its original id and queue entries."""
        entry = self.recently_deleted.take(entry_id)
        if entry is None:
            return False
        self.ledger.reinsert(entry.expense)
        self.queue.restore_entries(entry.queue_entries)
        self._persist_ledger()
        self._persist_queue()
        self._persist_recently_deleted()
        if self._audit_logger:
            await self._audit_logger.log_expense_restored(entry.expense.id, entry.expense.client_expense_id)

        try:
            await self._api.restore_expense(entry.expense)
        except Exception as e:
            logger.warning("remote_restore_failed", expense_id=str(entry.expense.id), error=str(e))
            self.last_operational_error_message = RESTORE_FAILED
        return True

    async def permanently_delete_recently_deleted(self, entry_id: UUID) -> bool:
        entry = self.recently_deleted.take(entry_id)
        if entry is None:
            return False
        self._persist_recently_deleted()
        await self._purge([entry], permanent=True)
        return True

    async def clear_recently_deleted(self) -> int:
        entries = self.recently_deleted.take_all()
        if entries:
            self._persist_recently_deleted()
            await self._purge(entries, permanent=True)
        return len(entries)

    async def purge_expired_recently_deleted(self) -> int:
        """Drop tombstones past the retention window."""
        expired = self.recently_deleted.take_expired()
        if expired:
            self._persist_recently_deleted()
            await self._purge(expired, permanent=False)
        return len(expired)

    async def _purge(self, entries: Iterable[RecentlyDeletedExpenseEntry], permanent: bool) -> None:
        """One best-effort remote delete per entry."""
        for entry in entries:
            try:
                await self._api.delete_expense(entry.expense.id)
            except Exception as e:
                logger.warning("remote_purge_failed", expense_id=str(entry.expense.id), error=str(e))
            if self._audit_logger:
                await self._audit_logger.log_expense_purged(entry.expense.id, entry.deleted_at, permanent)

    # =========================================================================
    # METADATA
    # =========================================================================

    async def add_category(
        self,
        name: str,
        color_hex: Optional[str] = None,
        hints: Iterable[str] = (),
    ) -> Optional[CategoryDefinition]:
        category = self.registry.add_category(name, color_hex, hints)
        if category is not None:
            self._metadata_changed()
        return category

    async def update_category(self, category_id: UUID, name: str, hints: Iterable[str]) -> bool:
        changed = self.registry.update_category(category_id, name, hints, self.ledger)
        if changed:
            self._persist_ledger()
            self._metadata_changed()
        return changed

    async def remove_category(self, category_id: UUID) -> bool:
        changed = self.registry.remove_category(category_id, self.ledger)
        if changed:
            self._persist_ledger()
            self._metadata_changed()
        return changed

    async def add_payment_method(
        self,
        name: str,
        method_type: PaymentMethodType = PaymentMethodType.OTHER,
        network: Optional[str] = None,
        last4: Optional[str] = None,
        aliases: Iterable[str] = (),
    ) -> Optional[PaymentMethod]:
        method = self.registry.add_payment_method(name, method_type, network, last4, aliases)
        if method is not None:
            self._metadata_changed()
        return method

    async def update_payment_method(self, updated: PaymentMethod) -> bool:
        changed = self.registry.update_payment_method(updated, self.ledger)
        if changed:
            self._persist_ledger()
            self._metadata_changed()
        return changed

    async def remove_payment_method(self, method_id: UUID) -> bool:
        changed = self.registry.remove_payment_method(method_id, self.ledger)
        if changed:
            self._persist_ledger()
            self._metadata_changed()
        return changed

    async def add_trip(
        self,
        name: str,
        destination: Optional[str] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        base_currency: Optional[str] = None,
        set_active: bool = True,
    ) -> Optional[TripRecord]:
        trip = self.registry.add_trip(name, destination, start_date, end_date, base_currency, set_active)
        if trip is not None:
            self._metadata_changed()
        return trip

    async def select_trip(self, trip_id: Optional[UUID]) -> None:
        self.registry.select_trip(trip_id)
        self._metadata_changed()

    async def end_active_trip(self) -> None:
        self.registry.end_active_trip()
        self._metadata_changed()

    async def set_default_currency(self, code: str) -> bool:
        changed = self.registry.set_default_currency(code)
        if changed:
            self._metadata_changed()
        return changed

    def _metadata_changed(self) -> None:
        self._persist_metadata()
        self._schedule_metadata_sync()

    def _schedule_metadata_sync(self) -> None:
        self._metadata_dirty = True
        if not self.is_connected or self._is_syncing_metadata:
            return
        if self._metadata_sync_task is not None and not self._metadata_sync_task.done():
            return
        self._metadata_sync_task = self._spawn(self._run_metadata_sync())

    async def sync_metadata(self) -> bool:
        """
        Push the metadata snapshot to the server.

        Edits made while a push is in flight cause exactly one more push
        once it finishes. Returns False when offline, already syncing or
        the push failed.
        """
        self._metadata_dirty = True
        return await self._run_metadata_sync()

    async def _run_metadata_sync(self) -> bool:
        if not self.is_connected or self._is_syncing_metadata:
            return False
        self._is_syncing_metadata = True
        try:
            while self._metadata_dirty and self.is_connected:
                self._metadata_dirty = False
                try:
                    await self._api.sync_metadata(self.registry.snapshot())
                except Exception as e:
                    # Keep the edits pending for the next connection
                    self._metadata_dirty = True
                    logger.warning("metadata_sync_failed", error=str(e))
                    self.last_operational_error_message = METADATA_SYNC_FAILED
                    if self._audit_logger:
                        await self._audit_logger.log_metadata_sync_failed(str(e))
                    return False
            return True
        finally:
            self._is_syncing_metadata = False

    # =========================================================================
    # CLOUD REFRESH / CONNECTIVITY
    # =========================================================================

    async def refresh_cloud_state(self) -> None:
        """Metadata first, then expenses, then the tombstone purge."""
        if not self.is_connected:
            return
        if self._metadata_dirty:
            await self._run_metadata_sync()
        await self.refresh_metadata()
        await self.refresh_expenses()
        await self.purge_expired_recently_deleted()

    async def refresh_metadata(self) -> bool:
        if not self.is_connected:
            return False
        try:
            snapshot = await self._api.fetch_metadata()
        except Exception as e:
            logger.warning("metadata_fetch_failed", error=str(e))
            self.last_operational_error_message = METADATA_SYNC_FAILED
            if self._audit_logger:
                await self._audit_logger.log_metadata_sync_failed(str(e))
            return False
        if snapshot is None:
            return False

        self.registry.apply_remote(snapshot)
        self.registry.seed_defaults_if_needed()
        self._persist_metadata()
        if self.registry.relink_expenses(self.ledger):
            self._persist_ledger()
        return True

    async def refresh_expenses(self) -> bool:
        """Merge the server's expenses into the ledger, skipping tombstoned rows."""
        if not self.is_connected:
            return False
        try:
            remote = await self._api.fetch_expenses()
        except Exception as e:
            logger.warning("expenses_fetch_failed", error=str(e))
            self.last_operational_error_message = REFRESH_FAILED
            if self._audit_logger:
                await self._audit_logger.log_remote_refresh_failed(str(e))
            return False

        self.ledger.merge_remote(remote, self.recently_deleted.tombstoned_ids())
        self._persist_ledger()
        return True

    def set_network_connectivity(self, connected: bool) -> None:
        self._connectivity.set_connected(connected)

    def _handle_connectivity_change(self, connected: bool) -> None:
        if not connected:
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is not None and (self._loop is None or running is self._loop):
            self._spawn(self._resume_online())
        elif self._loop is not None:
            # Reported from another thread: hop onto the owning loop
            self._loop.call_soon_threadsafe(lambda: self._spawn(self._resume_online()))
        else:
            logger.warning("connectivity_change_without_loop")

    async def _resume_online(self) -> None:
        await self.refresh_cloud_state()
        await self.sync_queue()

    # =========================================================================
    # BACKGROUND WORK / PERSISTENCE
    # =========================================================================

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background_done)
        return task

    def _background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("background_task_failed", error=str(error))

    def _persist_queue(self) -> None:
        self._write("queue", self._queue_store.save_queue, self.queue.items, QUEUE_SAVE_FAILED)

    def _persist_ledger(self) -> None:
        self._write("ledger", self._ledger_store.save_expenses, self.ledger.expenses, EXPENSES_SAVE_FAILED)

    def _persist_queue_and_ledger(self) -> None:
        self._persist_queue()
        self._persist_ledger()

    def _persist_recently_deleted(self) -> None:
        self._write(
            "recently_deleted",
            self._recently_deleted_store.save_entries,
            self.recently_deleted.entries,
            RECENTLY_DELETED_SAVE_FAILED,
        )

    def _persist_metadata(self) -> None:
        self._write("metadata", self._metadata_store.save_metadata, self.registry.snapshot(), SETTINGS_SAVE_FAILED)

    def _write(self, store: str, save: Callable[[Any], None], payload: Any, message: str) -> None:
        """Hand a snapshot to the I/O worker; failures come back as `message`."""
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(self._io_executor, save, payload)
        self._pending_io.add(future)

        def done(finished: asyncio.Future) -> None:
            self._pending_io.discard(finished)
            if finished.cancelled():
                return
            error = finished.exception()
            if error is None:
                return
            if not isinstance(error, StorageError):
                logger.error("local_write_crashed", store=store, error=str(error))
            else:
                logger.error("local_write_failed", store=store, error=str(error))
            self.last_operational_error_message = message
            if self._audit_logger:
                self._spawn(self._audit_logger.log_persistence_failed(store, str(error)))

        future.add_done_callback(done)


# =============================================================================
# FACTORY
# =============================================================================

def create_app_components(
    session_provider: Optional[Callable[[], Optional[str]]] = None,
    token_provider: Optional[Callable[[], Awaitable[Optional[str]]]] = None,
    settings: Optional[Settings] = None,
) -> ExpenseTracker:
    """
    Factory function to create a fully wired ExpenseTracker.

    Local state lives in JSON files under the configured data directory.
    The parse endpoint runs in-process against Google Sheets when it is
    configured (in memory otherwise); voice audio goes to Cloudinary when
    configured. With a remote API configured and a token provider given,
    the hosted backend is tried first and the in-process one covers
    signed-out parsing.

    Args:
        session_provider: Returns the signed-in user id, or None.
        token_provider: Async callable returning the remote access token.
        settings: Settings override (defaults to get_settings()).

    Returns:
        ExpenseTracker (call start() on it from the running loop)
    """
    settings = settings or get_settings()
    data_dir = settings.app.data_dir
    audit_logger = AuditLogger()

    server_store: ServerStoreInterface
    try:
        server_store = GoogleSheetsServerStore(GoogleSheetsClient(settings.google_sheets))
    except Exception as e:
        logger.warning("server_store_not_configured", error=str(e))
        server_store = InMemoryServerStore()

    audio_storage: AudioStorageInterface
    try:
        audio_storage = CloudinaryAudioStorage(settings.cloudinary)
    except Exception as e:
        logger.warning("audio_storage_not_configured", error=str(e))
        audio_storage = InMemoryAudioStorage()

    engine = ParsingEngine(
        extractor=GeminiExpenseExtractor(settings.gemini, settings.parser),
        settings=settings.parser,
    )
    handler = ParseExpenseHandler(
        server_store,
        engine=engine,
        audio_storage=audio_storage,
        settings=settings.parser,
        audit_logger=audit_logger,
    )
    local_client = InProcessExpenseAPIClient(
        handler,
        server_store,
        session_provider=session_provider or (lambda: None),
        audio_storage=audio_storage,
    )

    api_client: ExpenseAPIClientInterface = local_client
    if token_provider is not None:
        try:
            remote = HttpExpenseAPIClient(token_provider, settings.remote_api)
            api_client = FallbackExpenseAPIClient(remote, local_client)
        except Exception as e:
            logger.warning("remote_api_not_configured", error=str(e))

    return ExpenseTracker(
        api_client=api_client,
        queue_store=JsonFileQueueStore(data_dir),
        ledger_store=JsonFileLedgerStore(data_dir),
        recently_deleted_store=JsonFileRecentlyDeletedStore(data_dir),
        metadata_store=JsonFileMetadataStore(data_dir),
        sessions=CaptureSessionManager(audio_dir=data_dir / "audio", max_voice_seconds=settings.parser.max_voice_seconds),
        settings=settings,
        audit_logger=audit_logger,
    )
