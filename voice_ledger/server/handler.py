"""
Parse Expense Handler

The parse endpoint's behaviour, run in-process. One request goes through:

1. VALIDATION - required fields and voice constraints (400 on failure)
2. QUOTA - voice captures counted per local calendar day against the
   account's daily limit (429 rejected_limit, before any parsing)
3. INPUT - raw text, or a transcript of the uploaded voice object
4. PARSE - AI extractor first, rule engine as fallback
5. GATE - confidence >= threshold and allow_auto_save -> saved,
   otherwise needs_review
6. LINK - category id by name, hinted ids checked against the user's
   metadata, payment method detected from the text
7. UPSERT - keyed by (user_id, client_expense_id); a retried request
   updates the same row and keeps its server id
8. USAGE - one usage event per parse

CRITICAL: The row is upserted for needs_review too. The client reviews
it and sends a full-draft update keyed by the returned id.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import UUID

import structlog

from voice_ledger.audit import AuditLogger
from voice_ledger.config import ParserSettings, get_settings
from voice_ledger.models.api import (
    DEFAULT_VOICE_BUCKET,
    ExpenseEcho,
    ParseExpenseRequest,
    ParseExpenseResponse,
    ParseInfo,
    ParseOutcome,
    ResponseStatus,
    UsageEvent,
    UsageInfo,
)
from voice_ledger.models.expense import (
    ExpenseRecord,
    ExpenseSource,
    MetadataSnapshot,
    ParseStatus,
    UserProfile,
    utc_now,
)
from voice_ledger.parsing import (
    CategoryContext,
    ParsingEngine,
    detect_payment_method,
    is_voice_placeholder,
    local_date,
)
from voice_ledger.services.audio import AudioStorageInterface
from voice_ledger.services.storage import ServerStoreInterface
from voice_ledger.validation import ParseRequestValidator


logger = structlog.get_logger(__name__)

VOICE_PARSE_EVENT = "voice_parse"
TEXT_PARSE_EVENT = "text_parse"

# Usage rows are fetched in a window around the capture, then bucketed by
# local day; the widest UTC offsets fit inside it.
_USAGE_WINDOW = timedelta(hours=36)


class TranscriptionError(Exception):
    """Raised when a voice object cannot be turned into text."""
    pass


class TranscriberInterface(ABC):
    """Speech-to-text for uploaded voice objects."""

    @abstractmethod
    async def transcribe(self, bucket: str, object_path: str) -> str:
        """
        Transcribe one uploaded voice object.

        Returns:
            The transcript; empty when nothing was recognized

        Raises:
            TranscriptionError: With a user-facing message
        """
        pass


class ParseExpenseHandler:
    """
    In-process implementation of the parse endpoint.

    Returns (http_status, response) so remote and in-process clients map
    statuses the same way.
    """

    def __init__(
        self,
        store: ServerStoreInterface,
        engine: Optional[ParsingEngine] = None,
        transcriber: Optional[TranscriberInterface] = None,
        audio_storage: Optional[AudioStorageInterface] = None,
        settings: Optional[ParserSettings] = None,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._store = store
        self._settings = settings or get_settings().parser
        self._engine = engine or ParsingEngine(settings=self._settings)
        self._transcriber = transcriber
        self._audio_storage = audio_storage
        self._validator = ParseRequestValidator(self._settings)
        self._audit = audit_logger or AuditLogger()

    async def handle(
        self,
        user_id: Optional[str],
        request: ParseExpenseRequest,
    ) -> tuple[int, ParseExpenseResponse]:
        if not user_id:
            return 401, _error("Unauthorized")

        validation = self._validator.validate(request)
        if validation.has_errors:
            message = validation.first_error or "Invalid request"
            await self._audit.log_parse_request_rejected(request.client_expense_id, message)
            return 400, _error(message)

        try:
            return await self._handle_valid(user_id, request)
        except Exception as e:
            logger.exception(
                "parse_request_failed",
                client_expense_id=str(request.client_expense_id),
            )
            return 500, _error(str(e) or "Unknown error")

    async def _handle_valid(
        self,
        user_id: str,
        request: ParseExpenseRequest,
    ) -> tuple[int, ParseExpenseResponse]:
        profile = await self._store.get_profile(user_id) or UserProfile(user_id=user_id)
        metadata = await self._store.load_metadata(user_id) or MetadataSnapshot()

        daily_limit = (
            profile.daily_voice_limit
            if profile.daily_voice_limit is not None
            else self._settings.default_daily_voice_limit
        )
        tz_name = request.timezone or profile.timezone or "UTC"
        used = await self.count_daily_voice_usage(user_id, request.captured_at_device, tz_name)
        is_voice = request.source == ExpenseSource.VOICE

        if is_voice and used >= daily_limit:
            await self._audit.log_quota_exceeded(user_id, request.client_expense_id, used, daily_limit)
            return 429, ParseExpenseResponse(
                status=ResponseStatus.REJECTED_LIMIT,
                usage=UsageInfo(daily_voice_used=used, daily_voice_limit=daily_limit),
                error="Daily voice limit reached",
            )

        raw_text, input_error = await self._resolve_input_text(request)
        if not raw_text:
            if is_voice:
                message = input_error or (
                    "Voice transcription failed. Try holding longer and speaking clearly, or switch to Text."
                    if is_voice_placeholder(request.raw_text)
                    else "Could not resolve transcript text from request"
                )
            else:
                message = "Could not resolve transcript text from request"
            await self._audit.log_parse_request_rejected(request.client_expense_id, message)
            return 400, _error(message)

        context = CategoryContext.build(metadata.categories)
        capture_date = local_date(request.captured_at_device, tz_name)
        outcome = await self._engine.parse(
            raw_text,
            capture_date,
            context,
            currency_hint=request.currency_hint,
            default_currency=profile.default_currency,
            language_hint=request.language_hint,
        )
        needs_review = self._engine.needs_review(outcome.confidence, request.allow_auto_save)

        record = self._build_record(request, outcome, raw_text, context, metadata)
        stored = await self._store.upsert_expense(user_id, record)

        await self._store.record_usage_event(UsageEvent(
            user_id=user_id,
            client_expense_id=request.client_expense_id,
            event_type=VOICE_PARSE_EVENT if is_voice else TEXT_PARSE_EVENT,
            provider=outcome.provider,
            model=outcome.model,
            audio_seconds=request.audio_duration_seconds,
        ))

        await self._delete_uploaded_voice(request)

        logger.info(
            "expense_parsed",
            client_expense_id=str(request.client_expense_id),
            provider=outcome.provider,
            confidence=outcome.confidence,
            needs_review=needs_review,
        )

        return 200, ParseExpenseResponse(
            status=ResponseStatus.NEEDS_REVIEW if needs_review else ResponseStatus.SAVED,
            expense=ExpenseEcho.model_validate(stored.model_dump()),
            parse=ParseInfo(
                confidence=outcome.confidence,
                raw_text=raw_text,
                needs_review=needs_review,
            ),
            usage=UsageInfo(
                daily_voice_used=used + 1 if is_voice else used,
                daily_voice_limit=daily_limit,
            ),
        )

    async def count_daily_voice_usage(
        self,
        user_id: str,
        captured_at: datetime,
        tz_name: str,
    ) -> int:
        """Voice parses already recorded on the capture's local calendar day."""
        anchor = captured_at if captured_at.tzinfo else captured_at.replace(tzinfo=timezone.utc)
        target_day = local_date(anchor, tz_name)
        events = await self._store.list_usage_events(
            user_id,
            event_type=VOICE_PARSE_EVENT,
            since=anchor - _USAGE_WINDOW,
            until=anchor + _USAGE_WINDOW,
        )
        return sum(1 for event in events if local_date(event.created_at, tz_name) == target_day)

    async def _resolve_input_text(
        self,
        request: ParseExpenseRequest,
    ) -> tuple[Optional[str], Optional[str]]:
        """(text, error) for the request. The voice placeholder counts as no text."""
        raw_text = (request.raw_text or "").strip()
        if raw_text and not is_voice_placeholder(raw_text):
            return raw_text, None

        object_path = (request.storage_object_path or "").strip()
        if not object_path:
            return None, None

        if self._transcriber is None:
            return None, "Voice transcription unavailable."

        bucket = (request.storage_bucket or "").strip() or DEFAULT_VOICE_BUCKET
        try:
            text = (await self._transcriber.transcribe(bucket, object_path)).strip()
        except TranscriptionError as e:
            return None, str(e)

        if not text:
            return None, "Voice transcription returned empty text. Try speaking a bit louder/closer."
        return text, None

    def _build_record(
        self,
        request: ParseExpenseRequest,
        outcome: ParseOutcome,
        raw_text: str,
        context: CategoryContext,
        metadata: MetadataSnapshot,
    ) -> ExpenseRecord:
        parsed = outcome.parsed

        category_name = parsed.category
        # Ids only exist for categories the user actually synced
        category_id = context.category_id_for(parsed.category) if metadata.categories else None
        hinted_category = _find_by_id(metadata.categories, request.category_id)
        if hinted_category is not None:
            category_name, category_id = hinted_category.name, hinted_category.id

        trip = _find_by_id(metadata.trips, request.trip_id)

        detected = detect_payment_method(raw_text, metadata.payment_methods)
        payment_method = _find_by_id(
            metadata.payment_methods,
            request.payment_method_id or (detected.id if detected else None),
        )
        payment_method_name = None
        if payment_method is not None:
            payment_method_name = request.payment_method_name or (detected.name if detected else None)

        return ExpenseRecord(
            client_expense_id=request.client_expense_id,
            amount=parsed.amount,
            currency=parsed.currency,
            category=category_name,
            category_id=category_id,
            description=parsed.description,
            merchant=parsed.merchant,
            trip_id=trip.id if trip else None,
            trip_name=request.trip_name,
            payment_method_id=payment_method.id if payment_method else None,
            payment_method_name=payment_method_name,
            expense_date=parsed.expense_date,
            captured_at_device=request.captured_at_device,
            synced_at=utc_now(),
            source=request.source,
            parse_status=ParseStatus.AUTO,
            parse_confidence=outcome.confidence,
            raw_text=raw_text,
            audio_duration_seconds=request.audio_duration_seconds,
        )

    async def _delete_uploaded_voice(self, request: ParseExpenseRequest) -> None:
        object_path = (request.storage_object_path or "").strip()
        if not object_path or self._audio_storage is None:
            return
        try:
            await self._audio_storage.delete(object_path)
        except Exception as e:
            logger.warning("voice_object_delete_failed", object_path=object_path, error=str(e))


def _find_by_id(items: list, item_id: Optional[UUID]):
    if item_id is None:
        return None
    return next((item for item in items if item.id == item_id), None)


def _error(message: str) -> ParseExpenseResponse:
    return ParseExpenseResponse(status=ResponseStatus.ERROR, error=message)
