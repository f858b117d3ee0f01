"""
Remote API client over HTTP.

Talks to a hosted backend exposing:
- POST {base}/functions/v1/parse-expense        parse endpoint
- POST {base}/storage/v1/object/{bucket}/{path}  voice upload
- GET/POST/PATCH/DELETE {base}/rest/v1/expenses  expense rows
- GET/PUT {base}/rest/v1/user_metadata           metadata snapshot

Every request carries the project key (apikey header) and the user's
bearer token. The user id is the token's "sub" claim.

Status mapping: 401/403 -> UnauthorizedError, 429 -> LimitExceededError,
any other non-2xx -> ServerError. Timeouts and transport errors surface
unchanged; the sync engine treats them as ordinary failures.
"""

import base64
import json
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import quote
from uuid import UUID

import httpx
import structlog
from pydantic import ValidationError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from voice_ledger.config import RemoteApiSettings, get_settings
from voice_ledger.models.api import CaptureParseRequest, ParseResult, UpdateExpenseRequest
from voice_ledger.models.expense import (
    ExpenseRecord,
    ExpenseSource,
    MetadataSnapshot,
)
from voice_ledger.services.api.errors import (
    LimitExceededError,
    MissingAuthSessionError,
    ServerError,
    UnauthorizedError,
)
from voice_ledger.services.api.interface import ExpenseAPIClientInterface
from voice_ledger.services.api.payloads import (
    decode_response,
    json_update_fields,
    raise_for_parse_status,
    result_from_response,
    to_wire_request,
)
from voice_ledger.services.audio import (
    AudioFileMissingError,
    audio_extension,
    build_object_path,
    content_type_for,
    read_capture_audio,
)


logger = structlog.get_logger(__name__)

EXPENSE_COLUMNS = (
    "id,client_expense_id,amount,currency,category,category_id,description,merchant,"
    "trip_id,trip_name,payment_method_id,payment_method_name,expense_date,captured_at_device,"
    "synced_at,source,parse_status,parse_confidence,raw_text,audio_duration_seconds,"
    "created_at,updated_at"
)

TokenProvider = Callable[[], Awaitable[Optional[str]]]


def jwt_subject(token: str) -> Optional[str]:
    """The "sub" claim of a JWT, without verifying it."""
    segments = token.split(".")
    if len(segments) < 2:
        return None
    payload = segments[1] + "=" * (-len(segments[1]) % 4)
    try:
        claims = json.loads(base64.urlsafe_b64decode(payload))
    except ValueError:
        return None
    if not isinstance(claims, dict):
        return None
    subject = claims.get("sub")
    return subject if isinstance(subject, str) else None


def raise_for_rest_status(response: httpx.Response, default_message: str) -> None:
    if 200 <= response.status_code < 300:
        return
    if response.status_code in (401, 403):
        raise UnauthorizedError()
    if response.status_code == 429:
        raise LimitExceededError(response.text or None)
    raise ServerError(response.text or default_message)


class HttpExpenseAPIClient(ExpenseAPIClientInterface):
    """API client for the hosted backend."""

    def __init__(
        self,
        token_provider: TokenProvider,
        settings: Optional[RemoteApiSettings] = None,
        timeout_seconds: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the client.

        Args:
            token_provider: Async callable returning the current access
                            token, or None when signed out.
            settings: Base URL, project key and voice bucket.
            timeout_seconds: Per-request timeout.
            transport: httpx transport override (tests use MockTransport).
        """
        self._settings = settings or get_settings().remote_api
        self._token_provider = token_provider
        self._timeout = timeout_seconds or get_settings().app.network_timeout_seconds
        self._transport = transport

    def _client(self, timeout: Optional[float] = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._settings.base_url.rstrip("/"),
            timeout=timeout or self._timeout,
            transport=self._transport,
        )

    def _headers(self, token: str, **extra: str) -> dict[str, str]:
        headers = {
            "apikey": self._settings.anon_key,
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
        }
        headers.update(extra)
        return headers

    async def _require_token(self) -> str:
        token = await self._token_provider()
        if not token:
            raise MissingAuthSessionError()
        return token

    # ===== PARSE =====

    async def parse_expense(self, request: CaptureParseRequest) -> ParseResult:
        token = await self._require_token()
        object_path = await self._upload_voice_if_needed(request, token)

        wire = to_wire_request(
            request,
            storage_bucket=self._settings.voice_bucket if object_path else None,
            storage_object_path=object_path,
        )
        async with self._client() as client:
            response = await client.post(
                "/functions/v1/parse-expense",
                content=wire.model_dump_json(exclude_none=True),
                headers=self._headers(token, **{"Content-Type": "application/json"}),
            )

        try:
            payload = response.json()
        except ValueError as e:
            if response.status_code == 401:
                raise UnauthorizedError()
            raise ServerError(f"Unexpected server response. {e}")

        parsed = decode_response(payload)
        raise_for_parse_status(response.status_code, parsed, response.text)
        return result_from_response(request, parsed)

    async def _upload_voice_if_needed(self, request: CaptureParseRequest, token: str) -> Optional[str]:
        if request.source != ExpenseSource.VOICE or not request.local_audio_file_path:
            return None

        try:
            data = read_capture_audio(request.local_audio_file_path, request.raw_text)
        except AudioFileMissingError as e:
            raise ServerError(str(e))
        if data is None:
            return None

        user_id = jwt_subject(token)
        if not user_id:
            raise UnauthorizedError()

        extension = audio_extension(request.local_audio_file_path)
        object_path = build_object_path(
            user_id,
            request.client_expense_id,
            request.captured_at_device,
            extension,
        )
        url = f"/storage/v1/object/{quote(self._settings.voice_bucket)}/{quote(object_path)}"

        async with self._client(timeout=max(self._timeout, 30.0)) as client:
            response = await client.post(
                url,
                content=data,
                headers=self._headers(
                    token,
                    **{"Content-Type": content_type_for(extension), "x-upsert": "true"},
                ),
            )
        if response.status_code in (401, 403):
            raise UnauthorizedError()
        if not 200 <= response.status_code < 300:
            raise ServerError(f"Voice upload failed: {response.text or 'Upload failed'}")
        return object_path

    # ===== EXPENSE ROWS =====

    async def update_expense(self, request: UpdateExpenseRequest) -> None:
        token = await self._require_token()
        async with self._client() as client:
            response = await client.patch(
                "/rest/v1/expenses",
                params={"id": f"eq.{request.expense_id}", "select": "id"},
                json=json_update_fields(request.draft),
                headers=self._headers(token, Prefer="return=representation"),
            )
        raise_for_rest_status(response, "Failed to update expense")

    async def delete_expense(self, expense_id: UUID) -> None:
        token = await self._require_token()
        async with self._client() as client:
            response = await client.delete(
                "/rest/v1/expenses",
                params={"id": f"eq.{expense_id}", "select": "id"},
                headers=self._headers(token),
            )
        raise_for_rest_status(response, "Failed to delete expense")

    async def restore_expense(self, record: ExpenseRecord) -> None:
        token = await self._require_token()
        user_id = jwt_subject(token)
        if not user_id:
            raise UnauthorizedError()

        row = record.model_dump(mode="json")
        row["user_id"] = user_id
        async with self._client() as client:
            response = await client.post(
                "/rest/v1/expenses",
                params={"on_conflict": "user_id,client_expense_id"},
                json=row,
                headers=self._headers(token, Prefer="resolution=merge-duplicates"),
            )
        raise_for_rest_status(response, "Failed to restore expense")

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    async def fetch_expenses(self) -> list[ExpenseRecord]:
        token = await self._token_provider()
        if not token:
            return []

        async with self._client() as client:
            response = await client.get(
                "/rest/v1/expenses",
                params={"select": EXPENSE_COLUMNS, "order": "expense_date.desc,updated_at.desc"},
                headers=self._headers(token),
            )
        raise_for_rest_status(response, "Failed to fetch expenses")

        rows = _json_list(response)
        expenses = []
        for row in rows:
            try:
                expenses.append(ExpenseRecord.model_validate(row))
            except ValidationError as e:
                logger.warning("remote_expense_skipped", row_id=row.get("id"), error=str(e))
        return expenses

    # ===== METADATA =====

    async def sync_metadata(self, snapshot: MetadataSnapshot) -> None:
        token = await self._require_token()
        user_id = jwt_subject(token)
        if not user_id:
            raise UnauthorizedError()

        async with self._client() as client:
            response = await client.put(
                "/rest/v1/user_metadata",
                params={"user_id": f"eq.{user_id}"},
                json={"user_id": user_id, "snapshot": snapshot.model_dump(mode="json")},
                headers=self._headers(token),
            )
        raise_for_rest_status(response, "Failed to sync metadata")

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    async def fetch_metadata(self) -> Optional[MetadataSnapshot]:
        token = await self._token_provider()
        if not token:
            return None
        user_id = jwt_subject(token)
        if not user_id:
            raise UnauthorizedError()

        async with self._client() as client:
            response = await client.get(
                "/rest/v1/user_metadata",
                params={"user_id": f"eq.{user_id}", "select": "snapshot"},
                headers=self._headers(token),
            )
        raise_for_rest_status(response, "Failed to fetch metadata")

        rows = _json_list(response)
        if not rows or not isinstance(rows[0].get("snapshot"), dict):
            return None
        try:
            return MetadataSnapshot.model_validate(rows[0]["snapshot"])
        except ValidationError as e:
            raise ServerError(f"Unexpected server response. {e}")


def _json_list(response: httpx.Response) -> list[dict[str, Any]]:
    try:
        payload = response.json()
    except ValueError as e:
        raise ServerError(f"Unexpected server response. {e}")
    if not isinstance(payload, list):
        raise ServerError("Unexpected server response.")
    return [row for row in payload if isinstance(row, dict)]
