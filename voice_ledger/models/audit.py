"""
Audit Models for Voice Ledger

Every significant step a capture takes on its way to the ledger is
logged as an audit event. This provides:
1. Traceability from a capture to its ledger row (via client_expense_id)
2. Debugging information when a drain or a remote call goes wrong
3. A record of destructive operations and their compensations

DESIGN DECISION: Audit logs are append-only. We never delete or modify them.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from voice_ledger.models.expense import utc_now


class AuditEventType(str, Enum):
    """
    Types of events we audit.

    Each step of the capture -> parse -> ledger pipeline has its own type.
    """
    # Capture
    CAPTURE_ENQUEUED = "capture_enqueued"
    CAPTURE_CANCELLED = "capture_cancelled"

    # Sync
    SYNC_STARTED = "sync_started"
    SYNC_FINISHED = "sync_finished"
    PARSE_SAVED = "parse_saved"
    PARSE_NEEDS_REVIEW = "parse_needs_review"
    PARSE_FAILED = "parse_failed"
    SYNC_AUTH_PAUSED = "sync_auth_paused"
    PROTOCOL_VIOLATION = "protocol_violation"

    # Parse endpoint
    PARSE_REQUEST_REJECTED = "parse_request_rejected"
    QUOTA_EXCEEDED = "quota_exceeded"

    # Ledger
    EXPENSE_COMMITTED = "expense_committed"
    REVIEW_SAVED = "review_saved"
    EXPENSE_DELETED = "expense_deleted"
    DELETE_ROLLED_BACK = "delete_rolled_back"
    EXPENSE_RESTORED = "expense_restored"
    EXPENSE_PURGED = "expense_purged"

    # System events
    PERSISTENCE_FAILED = "persistence_failed"
    METADATA_SYNC_FAILED = "metadata_sync_failed"
    REMOTE_REFRESH_FAILED = "remote_refresh_failed"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditEvent(BaseModel):
    """
    A single audit event.

    entity_id is the queue item or expense the event is about;
    correlation_id is the client expense id, which links every event
    for one capture across queue, parser and ledger.
    """

    event_id: UUID = Field(
        default_factory=uuid4,
        description="Unique event identifier"
    )
    timestamp: datetime = Field(
        default_factory=utc_now,
        description="When the event occurred (UTC)"
    )

    event_type: AuditEventType = Field(
        ...,
        description="Type of event"
    )
    severity: AuditSeverity = Field(
        default=AuditSeverity.INFO,
        description="Event severity"
    )

    entity_type: Optional[str] = Field(
        default=None,
        description="Type of entity (e.g., 'capture', 'expense', 'request')"
    )
    entity_id: Optional[UUID] = Field(
        default=None,
        description="ID of the entity this event relates to"
    )
    correlation_id: Optional[UUID] = Field(
        default=None,
        description="Client expense id shared by every event of one capture"
    )

    description: str = Field(
        ...,
        max_length=500,
        description="Human-readable description of what happened"
    )
    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Additional event-specific data"
    )
    error_message: Optional[str] = None

    is_user_action: bool = Field(
        default=False,
        description="Was this triggered by a user action?"
    )

    def to_log_dict(self) -> dict:
        """
        Convert to a dictionary suitable for structured logging.
        """
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "entity_type": self.entity_type,
            "entity_id": str(self.entity_id) if self.entity_id else None,
            "correlation_id": str(self.correlation_id) if self.correlation_id else None,
            "description": self.description,
            "details": self.details,
            "error_message": self.error_message,
            "is_user_action": self.is_user_action,
        }


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.capture_enqueued(item.id, item.client_expense_id, "text")
        event = AuditEventBuilder.expense_deleted(expense.id, expense.client_expense_id)
    """

    @staticmethod
    def capture_enqueued(
        queue_id: UUID,
        client_expense_id: UUID,
        source: str
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.CAPTURE_ENQUEUED,
            entity_type="capture",
            entity_id=queue_id,
            correlation_id=client_expense_id,
            description=f"{source.capitalize()} capture queued",
            details={"source": source},
            is_user_action=True,
        )

    @staticmethod
    def capture_cancelled(audio_path: Optional[str]) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.CAPTURE_CANCELLED,
            entity_type="capture",
            description="Voice capture cancelled before enqueue",
            details={"audio_path": audio_path},
            is_user_action=True,
        )

    @staticmethod
    def sync_started(pending_count: int) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYNC_STARTED,
            severity=AuditSeverity.DEBUG,
            entity_type="queue",
            description=f"Queue drain started with {pending_count} pending",
            details={"pending_count": pending_count},
        )

    @staticmethod
    def sync_finished(processed: int, saved: int, needs_review: int, failed: int) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYNC_FINISHED,
            entity_type="queue",
            description=f"Queue drain processed {processed} items",
            details={
                "processed": processed,
                "saved": saved,
                "needs_review": needs_review,
                "failed": failed,
            },
        )

    @staticmethod
    def parse_completed(
        queue_id: UUID,
        client_expense_id: UUID,
        saved: bool,
        confidence: Optional[float]
    ) -> AuditEvent:
        event_type = (
            AuditEventType.PARSE_SAVED
            if saved
            else AuditEventType.PARSE_NEEDS_REVIEW
        )
        return AuditEvent(
            event_type=event_type,
            entity_type="capture",
            entity_id=queue_id,
            correlation_id=client_expense_id,
            description="Capture parsed and saved" if saved else "Capture parsed, review required",
            details={"confidence": confidence},
        )

    @staticmethod
    def parse_failed(
        queue_id: UUID,
        client_expense_id: UUID,
        error_message: str,
        retry_count: int
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.PARSE_FAILED,
            severity=AuditSeverity.WARNING,
            entity_type="capture",
            entity_id=queue_id,
            correlation_id=client_expense_id,
            description="Capture parse failed",
            error_message=error_message,
            details={"retry_count": retry_count},
        )

    @staticmethod
    def sync_auth_paused(queue_id: UUID, client_expense_id: UUID) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYNC_AUTH_PAUSED,
            severity=AuditSeverity.WARNING,
            entity_type="capture",
            entity_id=queue_id,
            correlation_id=client_expense_id,
            description="Queue drain paused until sign-in",
        )

    @staticmethod
    def protocol_violation(
        queue_id: UUID,
        client_expense_id: UUID,
        status: str
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.PROTOCOL_VIOLATION,
            severity=AuditSeverity.ERROR,
            entity_type="capture",
            entity_id=queue_id,
            correlation_id=client_expense_id,
            description=f"Parser returned unexpected status: {status}",
            details={"status": status},
        )

    @staticmethod
    def parse_request_rejected(
        client_expense_id: Optional[UUID],
        reason: str
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.PARSE_REQUEST_REJECTED,
            severity=AuditSeverity.WARNING,
            entity_type="request",
            correlation_id=client_expense_id,
            description="Parse request rejected",
            error_message=reason,
        )

    @staticmethod
    def quota_exceeded(
        user_id: str,
        client_expense_id: Optional[UUID],
        used: int,
        limit: int
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.QUOTA_EXCEEDED,
            severity=AuditSeverity.WARNING,
            entity_type="request",
            correlation_id=client_expense_id,
            description=f"Daily voice limit reached ({used}/{limit})",
            details={"user_id": user_id, "used": used, "limit": limit},
        )

    @staticmethod
    def expense_committed(
        expense_id: UUID,
        client_expense_id: UUID,
        amount: str,
        currency: str
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.EXPENSE_COMMITTED,
            entity_type="expense",
            entity_id=expense_id,
            correlation_id=client_expense_id,
            description=f"Expense committed: {amount} {currency}",
            details={"amount": amount, "currency": currency},
        )

    @staticmethod
    def review_saved(expense_id: UUID, client_expense_id: UUID) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.REVIEW_SAVED,
            entity_type="expense",
            entity_id=expense_id,
            correlation_id=client_expense_id,
            description="Reviewed draft saved",
            is_user_action=True,
        )

    @staticmethod
    def expense_deleted(
        expense_id: UUID,
        client_expense_id: UUID,
        queue_entries: int
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.EXPENSE_DELETED,
            entity_type="expense",
            entity_id=expense_id,
            correlation_id=client_expense_id,
            description="Expense moved to recently deleted",
            details={"queue_entries": queue_entries},
            is_user_action=True,
        )

    @staticmethod
    def delete_rolled_back(
        expense_id: UUID,
        client_expense_id: UUID,
        error_message: str
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.DELETE_ROLLED_BACK,
            severity=AuditSeverity.ERROR,
            entity_type="expense",
            entity_id=expense_id,
            correlation_id=client_expense_id,
            description="Remote delete failed, expense restored locally",
            error_message=error_message,
        )

    @staticmethod
    def expense_restored(expense_id: UUID, client_expense_id: UUID) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.EXPENSE_RESTORED,
            entity_type="expense",
            entity_id=expense_id,
            correlation_id=client_expense_id,
            description="Expense restored from recently deleted",
            is_user_action=True,
        )

    @staticmethod
    def expense_purged(
        expense_id: UUID,
        deleted_at: datetime,
        permanent: bool
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.EXPENSE_PURGED,
            entity_type="expense",
            entity_id=expense_id,
            description=(
                "Expense permanently deleted"
                if permanent
                else "Expired tombstone purged"
            ),
            details={"deleted_at": deleted_at.isoformat()},
            is_user_action=permanent,
        )

    @staticmethod
    def persistence_failed(store: str, error_message: str) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.PERSISTENCE_FAILED,
            severity=AuditSeverity.ERROR,
            entity_type="store",
            description=f"Local write failed: {store}",
            error_message=error_message,
            details={"store": store},
        )

    @staticmethod
    def metadata_sync_failed(error_message: str) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.METADATA_SYNC_FAILED,
            severity=AuditSeverity.ERROR,
            entity_type="metadata",
            description="Metadata sync failed",
            error_message=error_message,
        )

    @staticmethod
    def remote_refresh_failed(error_message: str) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.REMOTE_REFRESH_FAILED,
            severity=AuditSeverity.WARNING,
            entity_type="ledger",
            description="Could not refresh expenses from server",
            error_message=error_message,
        )
