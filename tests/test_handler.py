"""
Tests for the in-process parse endpoint.

Covers validation, the daily voice quota, the confidence gate,
idempotent upserts and usage accounting.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

import pytest

from voice_ledger.config import ParserSettings
from voice_ledger.models.api import ParseExpenseRequest, ResponseStatus, UsageEvent
from voice_ledger.models.expense import (
    CategoryDefinition,
    ExpenseSource,
    MetadataSnapshot,
    PaymentMethod,
    UserProfile,
)
from voice_ledger.parsing import ParsingEngine
from voice_ledger.server import ParseExpenseHandler
from voice_ledger.server.handler import TranscriberInterface, TranscriptionError
from voice_ledger.services.audio import InMemoryAudioStorage
from voice_ledger.services.storage import InMemoryServerStore


USER = "user-1"
CAPTURED_AT = datetime.now(timezone.utc)


def text_request(raw_text: str, **overrides) -> ParseExpenseRequest:
    fields = dict(
        client_expense_id=uuid4(),
        source=ExpenseSource.TEXT,
        captured_at_device=CAPTURED_AT,
        timezone="UTC",
        raw_text=raw_text,
    )
    fields.update(overrides)
    return ParseExpenseRequest(**fields)


def voice_request(raw_text: str = "coffee 4", **overrides) -> ParseExpenseRequest:
    return text_request(
        raw_text,
        source=ExpenseSource.VOICE,
        audio_duration_seconds=overrides.pop("audio_duration_seconds", 6),
        **overrides,
    )


class StubTranscriber(TranscriberInterface):
    def __init__(self, text="", error=None):
        self.text = text
        self.error = error

    async def transcribe(self, bucket, object_path):
        if self.error:
            raise self.error
        return self.text


@pytest.fixture
def store() -> InMemoryServerStore:
    return InMemoryServerStore()


@pytest.fixture
def handler(store) -> ParseExpenseHandler:
    settings = ParserSettings(default_daily_voice_limit=2)
    return ParseExpenseHandler(store, engine=ParsingEngine(settings=settings), settings=settings)


class TestValidation:
    """Requests rejected before any quota or parsing work."""

    @pytest.mark.asyncio
    async def test_missing_user_is_unauthorized(self, handler):
        """No user id answers 401."""
        status, response = await handler.handle(None, text_request("coffee 4"))
        assert status == 401
        assert response.status == ResponseStatus.ERROR

    @pytest.mark.asyncio
    async def test_missing_client_id(self, handler):
        """client_expense_id is mandatory."""
        status, response = await handler.handle(USER, text_request("coffee 4", client_expense_id=None))
        assert status == 400
        assert response.error == "client_expense_id is required"

    @pytest.mark.asyncio
    async def test_voice_too_long(self, handler):
        """Voice clips over 15 seconds are rejected."""
        status, response = await handler.handle(USER, voice_request(audio_duration_seconds=16))
        assert status == 400
        assert response.error == "audio_duration_seconds exceeds 15s"

    @pytest.mark.asyncio
    async def test_voice_needs_text_or_object(self, handler):
        """Voice needs either a transcript or an uploaded object."""
        status, response = await handler.handle(USER, voice_request(raw_text=""))
        assert status == 400
        assert response.error == "voice requests require raw_text or storage_object_path"


class TestParse:
    """Successful parses."""

    @pytest.mark.asyncio
    async def test_confident_parse_is_saved(self, handler, store):
        """A confident parse is saved and echoed back."""
        request = text_request("Spent $25 on lunch at Chipotle")
        status, response = await handler.handle(USER, request)

        assert status == 200
        assert response.status == ResponseStatus.SAVED
        assert response.expense.amount == Decimal("25")
        assert response.expense.client_expense_id == request.client_expense_id
        assert response.parse.needs_review is False
        assert len(await store.list_expenses(USER)) == 1

    @pytest.mark.asyncio
    async def test_low_confidence_needs_review(self, handler, store):
        """needs_review rows are still written so the client can update them."""
        status, response = await handler.handle(USER, text_request("random stuff"))

        assert status == 200
        assert response.status == ResponseStatus.NEEDS_REVIEW
        assert response.parse.needs_review is True
        assert len(await store.list_expenses(USER)) == 1

    @pytest.mark.asyncio
    async def test_auto_save_disabled(self, handler):
        """allow_auto_save=False forces review."""
        request = text_request("Spent $25 on lunch at Chipotle", allow_auto_save=False)
        _, response = await handler.handle(USER, request)
        assert response.status == ResponseStatus.NEEDS_REVIEW

    @pytest.mark.asyncio
    async def test_retry_is_idempotent(self, handler, store):
        """The same client id twice leaves one row with the same server id."""
        request = text_request("coffee 4 dollars")
        _, first = await handler.handle(USER, request)
        _, second = await handler.handle(USER, request)

        rows = await store.list_expenses(USER)
        assert len(rows) == 1
        assert first.expense.id == second.expense.id == rows[0].id

    @pytest.mark.asyncio
    async def test_category_id_only_for_synced_categories(self, handler, store):
        """Without user metadata the row carries no category id."""
        _, response = await handler.handle(USER, text_request("coffee 4 dollars"))
        assert response.expense.category == "Food"
        assert response.expense.category_id is None

        food = CategoryDefinition(name="Food")
        await store.save_metadata(USER, MetadataSnapshot(categories=[food, CategoryDefinition(name="Other")]))
        _, response = await handler.handle(USER, text_request("coffee 4 dollars"))
        assert response.expense.category_id == food.id

    @pytest.mark.asyncio
    async def test_payment_method_detected(self, handler, store):
        """A card alias in the text links the payment method."""
        card = PaymentMethod(name="Amex Gold", aliases=["amex"])
        await store.save_metadata(USER, MetadataSnapshot(payment_methods=[card]))

        _, response = await handler.handle(USER, text_request("dinner 40 dollars on amex"))

        assert response.expense.payment_method_id == card.id
        assert response.expense.payment_method_name == "Amex Gold"

    @pytest.mark.asyncio
    async def test_unknown_hinted_trip_is_dropped(self, handler):
        """Trip hints the user does not own are ignored."""
        _, response = await handler.handle(USER, text_request("taxi 10 dollars", trip_id=uuid4()))
        assert response.expense.trip_id is None


class TestQuota:
    """Daily voice limit."""

    @pytest.mark.asyncio
    async def test_limit_rejects_before_parsing(self, handler, store):
        """Over the limit answers 429 without writing a row."""
        for _ in range(2):
            status, _ = await handler.handle(USER, voice_request())
            assert status == 200

        status, response = await handler.handle(USER, voice_request())

        assert status == 429
        assert response.status == ResponseStatus.REJECTED_LIMIT
        assert response.usage.daily_voice_used == 2
        assert response.usage.daily_voice_limit == 2
        assert len(await store.list_expenses(USER)) == 2

    @pytest.mark.asyncio
    async def test_text_is_not_limited(self, handler):
        """Text captures do not use voice quota."""
        for _ in range(3):
            await handler.handle(USER, voice_request())
        status, _ = await handler.handle(USER, text_request("coffee 4"))
        assert status == 200

    @pytest.mark.asyncio
    async def test_profile_limit_overrides_default(self, handler, store):
        """A per-profile limit replaces the default."""
        await store.save_profile(UserProfile(user_id=USER, daily_voice_limit=0))
        status, _ = await handler.handle(USER, voice_request())
        assert status == 429

    @pytest.mark.asyncio
    async def test_usage_counted_per_local_day(self, handler, store):
        """Yesterday's usage in the user's zone does not count today."""
        await store.record_usage_event(UsageEvent(
            user_id=USER,
            event_type="voice_parse",
            provider="deterministic",
            model="rules-v1",
            created_at=CAPTURED_AT - timedelta(days=1),
        ))
        used = await handler.count_daily_voice_usage(USER, CAPTURED_AT, "UTC")
        assert used == 0

    @pytest.mark.asyncio
    async def test_usage_event_recorded(self, handler, store):
        """Each parse records a usage event with its audio seconds."""
        await handler.handle(USER, voice_request())
        await handler.handle(USER, text_request("coffee 4"))

        voice = await store.list_usage_events(USER, event_type="voice_parse")
        text = await store.list_usage_events(USER, event_type="text_parse")
        assert len(voice) == 1
        assert len(text) == 1
        assert voice[0].audio_seconds == 6


class TestVoiceObjects:
    """Transcription of uploaded voice objects."""

    @pytest.mark.asyncio
    async def test_transcript_is_parsed_and_object_deleted(self, store):
        """Uploaded audio is transcribed, parsed, then deleted."""
        audio = InMemoryAudioStorage()
        await audio.upload("user-1/2024/03/15/x.m4a", b"audio", "audio/mp4")
        handler = ParseExpenseHandler(
            store,
            engine=ParsingEngine(settings=ParserSettings()),
            transcriber=StubTranscriber("taxi 15 dollars"),
            audio_storage=audio,
            settings=ParserSettings(),
        )

        status, response = await handler.handle(USER, voice_request(
            raw_text="voice recording",
            storage_object_path="user-1/2024/03/15/x.m4a",
        ))

        assert status == 200
        assert response.parse.raw_text == "taxi 15 dollars"
        assert response.expense.category == "Transport"
        assert audio.objects == {}

    @pytest.mark.asyncio
    async def test_transcription_error_message(self, store):
        """Transcriber errors pass their message through."""
        handler = ParseExpenseHandler(
            store,
            engine=ParsingEngine(settings=ParserSettings()),
            transcriber=StubTranscriber(error=TranscriptionError("Speech service down")),
            settings=ParserSettings(),
        )
        status, response = await handler.handle(USER, voice_request(
            raw_text="",
            storage_object_path="user-1/x.m4a",
        ))
        assert status == 400
        assert response.error == "Speech service down"

    @pytest.mark.asyncio
    async def test_placeholder_without_object(self, handler):
        """The placeholder transcript without audio cannot be parsed."""
        status, response = await handler.handle(USER, voice_request(raw_text="voice recording"))
        assert status == 400
        assert response.error.startswith("Voice transcription failed")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
