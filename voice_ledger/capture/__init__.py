"""Offline capture queue and voice capture sessions."""

from voice_ledger.capture.queue import (
    CaptureQueue,
    deduplicate_queue,
    delete_local_audio,
    reset_interrupted,
)
from voice_ledger.capture.session import CaptureSessionManager, VoiceCaptureSession

__all__ = [
    "CaptureQueue",
    "CaptureSessionManager",
    "VoiceCaptureSession",
    "deduplicate_queue",
    "delete_local_audio",
    "reset_interrupted",
]
