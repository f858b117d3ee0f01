"""
Audit Logger

DESIGN DECISION: Every significant step of a capture's life is logged:
enqueue, each drain, every parse outcome, commit, delete, rollback,
restore and purge. This provides:
1. Traceability of one capture end to end (correlated by client_expense_id)
2. Debugging capability for sync and reconciliation issues
3. A record of every operational failure the user was shown

Behaviour:
- log() is a coroutine so callers can await a storage write
- A failing storage backend is logged and reported as False, never raised
- Uses the capture's client_expense_id as the correlation ID
"""

from datetime import datetime
from typing import Optional
from uuid import UUID

import structlog

from voice_ledger.models.audit import AuditEvent, AuditEventBuilder
from voice_ledger.services.storage import AuditStorageInterface


# Configure structlog for local logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)


class AuditLogger:
    """
    Writes AuditEvents to the structured log and, optionally, to storage.
    """

    def __init__(
        self,
        storage: Optional[AuditStorageInterface] = None,
    ):
        """
        Create the logger.

        Args:
            storage: Where events are persisted.
                     None keeps events in the log output only.
        """
        self._storage = storage
        self._logger = structlog.get_logger("voice_ledger.audit")

    async def log(self, event: AuditEvent) -> bool:
        """
        Record one event.

        The log line is always written; storage only when configured.

        Returns False only when the storage write failed.
        """
        log_dict = event.to_log_dict()

        if event.severity.value == "error":
            self._logger.error("audit_event", **log_dict)
        elif event.severity.value == "warning":
            self._logger.warning("audit_event", **log_dict)
        else:
            self._logger.info("audit_event", **log_dict)

        if self._storage:
            try:
                return await self._storage.append_event(event)
            except Exception as e:
                self._logger.error(
                    "audit_storage_failed",
                    error=str(e),
                    event_id=str(event.event_id),
                )
                return False

        return True

    # ===== CAPTURE =====

    async def log_capture_enqueued(
        self,
        queue_id: UUID,
        client_expense_id: UUID,
        source: str,
    ) -> None:
        await self.log(AuditEventBuilder.capture_enqueued(queue_id, client_expense_id, source))

    async def log_capture_cancelled(self, audio_path: Optional[str]) -> None:
        await self.log(AuditEventBuilder.capture_cancelled(audio_path))

    # ===== SYNC =====

    async def log_sync_started(self, pending_count: int) -> None:
        await self.log(AuditEventBuilder.sync_started(pending_count))

    async def log_sync_finished(
        self,
        processed: int,
        saved: int,
        needs_review: int,
        failed: int,
    ) -> None:
        await self.log(AuditEventBuilder.sync_finished(processed, saved, needs_review, failed))

    async def log_parse_completed(
        self,
        queue_id: UUID,
        client_expense_id: UUID,
        saved: bool,
        confidence: Optional[float],
    ) -> None:
        """Log a parse that ended saved or needs_review."""
        await self.log(AuditEventBuilder.parse_completed(queue_id, client_expense_id, saved, confidence))

    async def log_parse_failed(
        self,
        queue_id: UUID,
        client_expense_id: UUID,
        error_message: str,
        retry_count: int,
    ) -> None:
        await self.log(AuditEventBuilder.parse_failed(
            queue_id, client_expense_id, error_message, retry_count
        ))

    async def log_sync_auth_paused(self, queue_id: UUID, client_expense_id: UUID) -> None:
        await self.log(AuditEventBuilder.sync_auth_paused(queue_id, client_expense_id))

    async def log_protocol_violation(
        self,
        queue_id: UUID,
        client_expense_id: UUID,
        status: str,
    ) -> None:
        await self.log(AuditEventBuilder.protocol_violation(queue_id, client_expense_id, status))

    # ===== PARSE ENDPOINT =====

    async def log_parse_request_rejected(
        self,
        client_expense_id: Optional[UUID],
        reason: str,
    ) -> None:
        await self.log(AuditEventBuilder.parse_request_rejected(client_expense_id, reason))

    async def log_quota_exceeded(
        self,
        user_id: str,
        client_expense_id: Optional[UUID],
        used: int,
        limit: int,
    ) -> None:
        await self.log(AuditEventBuilder.quota_exceeded(user_id, client_expense_id, used, limit))

    # ===== LEDGER =====

    async def log_expense_committed(
        self,
        expense_id: UUID,
        client_expense_id: UUID,
        amount: str,
        currency: str,
    ) -> None:
        await self.log(AuditEventBuilder.expense_committed(
            expense_id, client_expense_id, amount, currency
        ))

    async def log_review_saved(self, expense_id: UUID, client_expense_id: UUID) -> None:
        await self.log(AuditEventBuilder.review_saved(expense_id, client_expense_id))

    async def log_expense_deleted(
        self,
        expense_id: UUID,
        client_expense_id: UUID,
        queue_entries: int,
    ) -> None:
        await self.log(AuditEventBuilder.expense_deleted(expense_id, client_expense_id, queue_entries))

    async def log_delete_rolled_back(
        self,
        expense_id: UUID,
        client_expense_id: UUID,
        error_message: str,
    ) -> None:
        await self.log(AuditEventBuilder.delete_rolled_back(
            expense_id, client_expense_id, error_message
        ))

    async def log_expense_restored(self, expense_id: UUID, client_expense_id: UUID) -> None:
        await self.log(AuditEventBuilder.expense_restored(expense_id, client_expense_id))

    async def log_expense_purged(
        self,
        expense_id: UUID,
        deleted_at: datetime,
        permanent: bool,
    ) -> None:
        await self.log(AuditEventBuilder.expense_purged(expense_id, deleted_at, permanent))

    # ===== SYSTEM =====

    async def log_persistence_failed(self, store: str, error_message: str) -> None:
        """Log a local write failure."""
        await self.log(AuditEventBuilder.persistence_failed(store, error_message))

    async def log_metadata_sync_failed(self, error_message: str) -> None:
        await self.log(AuditEventBuilder.metadata_sync_failed(error_message))

    async def log_remote_refresh_failed(self, error_message: str) -> None:
        await self.log(AuditEventBuilder.remote_refresh_failed(error_message))
