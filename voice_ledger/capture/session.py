"""
Voice capture sessions.

Recording and transcription happen outside this package. A session only
allocates the file path the recorder writes to and decides what becomes
of that file: finishing turns it into a queue entry, cancelling deletes
whatever was written and leaves the queue untouched.
"""

from datetime import datetime
from pathlib import Path
from typing import Optional
from uuid import UUID, uuid4

import structlog
from pydantic import BaseModel, Field

from voice_ledger.capture.queue import delete_local_audio
from voice_ledger.config import get_settings
from voice_ledger.models.expense import ExpenseSource, QueuedCapture, utc_now
from voice_ledger.services.audio import DEFAULT_AUDIO_EXTENSION


logger = structlog.get_logger(__name__)

MINIMUM_USEFUL_SECONDS = 1


class VoiceCaptureSession(BaseModel):
    """A recording in progress."""

    id: UUID = Field(default_factory=uuid4)
    audio_path: str
    started_at: datetime = Field(default_factory=utc_now)


class CaptureSessionManager:
    """Hands out recording paths and tracks which sessions are open."""

    def __init__(self, audio_dir: Optional[Path] = None, max_voice_seconds: Optional[int] = None):
        settings = get_settings()
        self._audio_dir = Path(audio_dir or Path(settings.app.data_dir) / "audio")
        self._max_seconds = max_voice_seconds or settings.parser.max_voice_seconds
        self._open: dict[UUID, VoiceCaptureSession] = {}

    @property
    def open_sessions(self) -> list[VoiceCaptureSession]:
        return list(self._open.values())

    def begin(self, now: Optional[datetime] = None) -> VoiceCaptureSession:
        self._audio_dir.mkdir(parents=True, exist_ok=True)
        session_id = uuid4()
        session = VoiceCaptureSession(
            id=session_id,
            audio_path=str(self._audio_dir / f"{session_id}.{DEFAULT_AUDIO_EXTENSION}"),
            started_at=now or utc_now(),
        )
        self._open[session.id] = session
        return session

    def finish(
        self,
        session: VoiceCaptureSession,
        raw_text: str,
        duration_seconds: int,
        captured_at: Optional[datetime] = None,
    ) -> Optional[QueuedCapture]:
        """
        Close a session and build its queue entry.

        Returns None (and deletes the recording) when nothing usable was
        captured: no transcript and either no audio file or a recording
        shorter than a second.
        """
        self._open.pop(session.id, None)
        text = raw_text.strip()
        duration = max(0, min(duration_seconds, self._max_seconds))
        has_audio = Path(session.audio_path).exists()

        if not text and (not has_audio or duration < MINIMUM_USEFUL_SECONDS):
            delete_local_audio(session.audio_path)
            logger.info("voice_capture_discarded", session_id=str(session.id))
            return None

        return QueuedCapture(
            source=ExpenseSource.VOICE,
            captured_at=captured_at or utc_now(),
            raw_text=text or None,
            audio_duration_seconds=duration,
            local_audio_file_path=session.audio_path if has_audio else None,
        )

    def cancel(self, session: VoiceCaptureSession) -> None:
        """Drop a session and any partial recording."""
        self._open.pop(session.id, None)
        delete_local_audio(session.audio_path)
