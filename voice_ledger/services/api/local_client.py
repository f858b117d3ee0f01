"""
In-process API client.

Calls the parse handler and the server store directly, with the same
error mapping as the remote client. Used for local-first operation,
for development without a backend, and as the signed-out fallback.
"""

from typing import Callable, Optional
from uuid import UUID

import structlog

from voice_ledger.models.api import (
    DEFAULT_VOICE_BUCKET,
    CaptureParseRequest,
    ParseResult,
    UpdateExpenseRequest,
)
from voice_ledger.models.expense import (
    ExpenseRecord,
    ExpenseSource,
    MetadataSnapshot,
    UserProfile,
    utc_now,
)
from voice_ledger.server import ParseExpenseHandler
from voice_ledger.services.api.errors import MissingAuthSessionError, ServerError
from voice_ledger.services.api.interface import ExpenseAPIClientInterface
from voice_ledger.services.api.payloads import (
    apply_update,
    raise_for_parse_status,
    result_from_response,
    to_wire_request,
)
from voice_ledger.services.audio import (
    AudioFileMissingError,
    AudioStorageError,
    AudioStorageInterface,
    audio_extension,
    build_object_path,
    content_type_for,
    read_capture_audio,
)
from voice_ledger.services.storage import ServerStoreInterface


logger = structlog.get_logger(__name__)


class InProcessExpenseAPIClient(ExpenseAPIClientInterface):
    """
    API client backed by an in-process handler and store.

    session_provider returns the signed-in user id, or None when signed
    out (every call then raises MissingAuthSessionError, except fetches,
    which return nothing).
    """

    def __init__(
        self,
        handler: ParseExpenseHandler,
        store: ServerStoreInterface,
        session_provider: Callable[[], Optional[str]],
        audio_storage: Optional[AudioStorageInterface] = None,
        voice_bucket: str = DEFAULT_VOICE_BUCKET,
    ):
        self._handler = handler
        self._store = store
        self._session_provider = session_provider
        self._audio_storage = audio_storage
        self._voice_bucket = voice_bucket

    def _require_user(self) -> str:
        user_id = self._session_provider()
        if not user_id:
            raise MissingAuthSessionError()
        return user_id

    async def parse_expense(self, request: CaptureParseRequest) -> ParseResult:
        user_id = self._require_user()
        object_path = await self._upload_voice_if_needed(user_id, request)

        status_code, response = await self._handler.handle(
            user_id,
            to_wire_request(
                request,
                storage_bucket=self._voice_bucket if object_path else None,
                storage_object_path=object_path,
            ),
        )
        raise_for_parse_status(status_code, response)
        return result_from_response(request, response)

    async def _upload_voice_if_needed(
        self,
        user_id: str,
        request: CaptureParseRequest,
    ) -> Optional[str]:
        if request.source != ExpenseSource.VOICE or not request.local_audio_file_path:
            return None
        if self._audio_storage is None:
            return None

        try:
            data = read_capture_audio(request.local_audio_file_path, request.raw_text)
        except AudioFileMissingError as e:
            raise ServerError(str(e))
        if data is None:
            logger.info(
                "voice_audio_missing_text_fallback",
                client_expense_id=str(request.client_expense_id),
            )
            return None

        extension = audio_extension(request.local_audio_file_path)
        object_path = build_object_path(
            user_id,
            request.client_expense_id,
            request.captured_at_device,
            extension,
        )
        try:
            await self._audio_storage.upload(object_path, data, content_type_for(extension))
        except AudioStorageError as e:
            raise ServerError(f"Voice upload failed: {e}")
        return object_path

    async def update_expense(self, request: UpdateExpenseRequest) -> None:
        user_id = self._require_user()
        existing = await self._store.get_expense(user_id, request.expense_id)
        if existing is None:
            raise ServerError("Failed to update expense")
        await self._store.update_expense(user_id, apply_update(existing, request.draft))

    async def delete_expense(self, expense_id: UUID) -> None:
        user_id = self._require_user()
        await self._store.delete_expense(user_id, expense_id)

    async def restore_expense(self, record: ExpenseRecord) -> None:
        user_id = self._require_user()
        await self._store.upsert_expense(user_id, record.model_copy(update={"updated_at": utc_now()}))

    async def sync_metadata(self, snapshot: MetadataSnapshot) -> None:
        user_id = self._require_user()
        await self._store.save_metadata(user_id, snapshot)

        profile = await self._store.get_profile(user_id) or UserProfile(user_id=user_id)
        if snapshot.default_currency_code and profile.default_currency != snapshot.default_currency_code:
            await self._store.save_profile(
                profile.model_copy(update={"default_currency": snapshot.default_currency_code})
            )

    async def fetch_metadata(self) -> Optional[MetadataSnapshot]:
        user_id = self._session_provider()
        if not user_id:
            return None
        return await self._store.load_metadata(user_id)

    async def fetch_expenses(self) -> list[ExpenseRecord]:
        user_id = self._session_provider()
        if not user_id:
            return []
        return await self._store.list_expenses(user_id)
