"""
Voice Audio Object Storage

Voice captures are uploaded to object storage before the parse call so
the server can transcribe them. Object paths are per-user and
date-partitioned:

    {user_id}/{YYYY}/{MM}/{DD}/{client_expense_id}.{ext}

The date is the capture instant in UTC. The extension comes from the
local file and defaults to m4a.

CRITICAL: A missing local file is only fatal when there is no raw text
to fall back on. With text present, the parse proceeds text-only.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional
from uuid import UUID


DEFAULT_AUDIO_EXTENSION = "m4a"

CONTENT_TYPES = {
    "m4a": "audio/mp4",
    "mp4": "audio/mp4",
    "aac": "audio/aac",
    "caf": "audio/x-caf",
    "wav": "audio/wav",
    "mp3": "audio/mpeg",
    "ogg": "audio/ogg",
    "webm": "audio/webm",
}


class AudioStorageError(Exception):
    """Base exception for audio storage errors."""
    pass


class AudioUploadError(AudioStorageError):
    """Failed to upload audio to object storage."""
    pass


class AudioFileMissingError(AudioStorageError):
    """The recorded audio file is not on disk and there is no text to parse."""
    pass


def audio_extension(local_path: Optional[str]) -> str:
    if not local_path:
        return DEFAULT_AUDIO_EXTENSION
    suffix = Path(local_path).suffix.lstrip(".").lower()
    return suffix or DEFAULT_AUDIO_EXTENSION


def content_type_for(extension: str) -> str:
    return CONTENT_TYPES.get(extension.lower(), "application/octet-stream")


def build_object_path(
    user_id: str,
    client_expense_id: UUID,
    captured_at: datetime,
    extension: str = DEFAULT_AUDIO_EXTENSION,
) -> str:
    """
    Build the object path for a voice capture.

    Naive datetimes are taken to be UTC already.
    """
    if captured_at.tzinfo is not None:
        captured_at = captured_at.astimezone(timezone.utc)
    return (
        f"{user_id}/{captured_at:%Y}/{captured_at:%m}/{captured_at:%d}/"
        f"{client_expense_id}.{extension}"
    )


def read_capture_audio(local_path: Optional[str], raw_text: Optional[str]) -> Optional[bytes]:
    """
    Read a capture's local audio for upload.

    Returns:
        The file bytes, or None when the file is missing but raw text
        can be parsed instead

    Raises:
        AudioFileMissingError: If the file is missing and there is no text
    """
    has_text = bool((raw_text or "").strip())
    if local_path:
        path = Path(local_path)
        if path.is_file():
            return path.read_bytes()
    if has_text:
        return None
    raise AudioFileMissingError("Recorded audio file is missing.")


class AudioStorageInterface(ABC):
    """Object storage for uploaded voice captures."""

    @abstractmethod
    async def upload(self, object_path: str, data: bytes, content_type: str) -> str:
        """
        Upload audio bytes.

        Args:
            object_path: Path built by build_object_path
            data: Raw audio bytes
            content_type: MIME type of the audio

        Returns:
            The stored object's path or URL

        Raises:
            AudioUploadError: If the upload fails
        """
        pass

    @abstractmethod
    async def download(self, object_path: str) -> Optional[bytes]:
        """Fetch a stored object's bytes, None if it doesn't exist."""
        pass

    @abstractmethod
    async def delete(self, object_path: str) -> bool:
        """
        Delete a stored object.

        Returns:
            True if an object was removed
        """
        pass
