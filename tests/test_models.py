"""
Tests for the pydantic models.

Test strategy:
1. Unit tests for the models and their invariants
2. Flow tests live beside the components they exercise
3. No real network calls anywhere (fakes and MockTransport only)
"""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest
from pydantic import ValidationError

from voice_ledger.models.api import ValidationIssue, ValidationResult
from voice_ledger.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)
from voice_ledger.models.expense import (
    ExpenseDraft,
    ExpenseRecord,
    ExpenseSource,
    FailedState,
    NeedsReviewState,
    PendingState,
    QueueStatus,
    QueuedCapture,
    SavedState,
    normalize_currency_code,
)

from conftest import FIXED_NOW


def record(**overrides) -> ExpenseRecord:
    fields = dict(
        client_expense_id=uuid4(),
        amount=Decimal("12.50"),
        currency="usd",
        expense_date=date(2024, 3, 15),
        captured_at_device=FIXED_NOW,
        source=ExpenseSource.TEXT,
    )
    fields.update(overrides)
    return ExpenseRecord(**fields)


class TestCurrency:
    @pytest.mark.parametrize("raw, expected", [
        ("usd", "USD"),
        (" eur ", "EUR"),
        ("XYZ", None),
        ("", None),
        (None, None),
    ])
    def test_normalize_currency_code(self, raw, expected):
        """Known codes are upper-cased, anything else becomes None."""
        assert normalize_currency_code(raw) == expected


class TestExpenseRecord:
    """Ledger rows hold an exact positive amount."""

    def test_currency_is_upper_cased(self):
        """Currency codes are stored upper-case."""
        assert record().currency == "USD"

    def test_defaults(self):
        """A bare row files under Other and gets its own server id."""
        row = record()
        assert row.category == "Other"
        assert row.amount == Decimal("12.50")
        assert row.id != row.client_expense_id

    @pytest.mark.parametrize("amount", ["0", "-1"])
    def test_amount_must_be_positive(self, amount):
        """Zero and negative amounts are rejected."""
        with pytest.raises(ValidationError):
            record(amount=Decimal(amount))

    def test_confidence_bounds(self):
        """Confidence stays within 0..1."""
        with pytest.raises(ValidationError):
            record(parse_confidence=1.5)


class TestQueuedCapture:
    """The status is carried by the state payload."""

    def test_new_capture_is_pending(self):
        """A fresh capture starts pending with no draft and no retries."""
        item = QueuedCapture(source=ExpenseSource.VOICE)
        assert item.status == QueueStatus.PENDING
        assert item.last_error is None
        assert item.parsed_draft is None
        assert item.retry_count == 0

    def test_review_state_carries_draft(self):
        """Review state exposes its draft through parsed_draft."""
        draft = ExpenseDraft(source=ExpenseSource.TEXT, amount_text="4")
        item = QueuedCapture(source=ExpenseSource.TEXT, state=NeedsReviewState(draft=draft))
        assert item.status == QueueStatus.NEEDS_REVIEW
        assert item.parsed_draft == draft

    def test_last_error(self):
        """last_error reads from the failed or paused pending state."""
        failed = QueuedCapture(source=ExpenseSource.TEXT, state=FailedState(error="boom"))
        paused = QueuedCapture(source=ExpenseSource.TEXT, state=PendingState(last_error="Sign in"))
        saved = QueuedCapture(source=ExpenseSource.TEXT, state=SavedState())

        assert failed.status == QueueStatus.FAILED
        assert failed.last_error == "boom"
        assert paused.last_error == "Sign in"
        assert saved.last_error is None

    def test_state_parsed_from_discriminant(self):
        """The status key picks the state model."""
        item = QueuedCapture.model_validate({
            "source": "text",
            "state": {"status": "failed", "error": "Server error"},
        })
        assert isinstance(item.state, FailedState)

    def test_review_state_requires_draft(self):
        """needs_review without a draft does not validate."""
        with pytest.raises(ValidationError):
            QueuedCapture.model_validate({"source": "text", "state": {"status": "needs_review"}})


class TestAuditModels:
    """Tests for audit event models."""

    def test_builder_links_capture(self):
        """Enqueue events point at the queue item and correlate by client id."""
        queue_id, client_id = uuid4(), uuid4()
        event = AuditEventBuilder.capture_enqueued(queue_id, client_id, "voice")

        assert event.event_type == AuditEventType.CAPTURE_ENQUEUED
        assert event.entity_id == queue_id
        assert event.correlation_id == client_id

    def test_committed_event_details(self):
        """Committed events record amount and currency."""
        event = AuditEventBuilder.expense_committed(uuid4(), uuid4(), "12.5", "USD")
        assert event.details == {"amount": "12.5", "currency": "USD"}
        assert event.severity == AuditSeverity.INFO

    def test_to_log_dict(self):
        """Log dicts flatten enums and timestamps."""
        event = AuditEvent(
            event_type=AuditEventType.SYNC_STARTED,
            description="Sync started",
        )
        log = event.to_log_dict()
        assert log["event_type"] == "sync_started"
        assert log["entity_id"] is None
        assert log["correlation_id"] is None
        assert log["timestamp"] == event.timestamp.isoformat()


class TestValidationResult:
    def test_errors_and_warnings(self):
        """Any error-level issue invalidates the result."""
        result = ValidationResult(issues=[
            ValidationIssue(field="raw_text", issue_type="too_long", message="Long", severity="warning"),
            ValidationIssue(field="timezone", issue_type="missing", message="timezone is required"),
        ])
        assert result.has_errors
        assert not result.is_valid
        assert result.first_error == "timezone is required"

    def test_empty_is_valid(self):
        """No issues means valid."""
        result = ValidationResult()
        assert result.is_valid
        assert result.first_error is None

    def test_severity_is_checked(self):
        """Unknown severities are rejected."""
        with pytest.raises(ValidationError):
            ValidationIssue(field="x", issue_type="missing", message="m", severity="fatal")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
