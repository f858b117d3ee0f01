"""Voice audio object storage package."""

from voice_ledger.services.audio.interface import (
    AudioFileMissingError,
    AudioStorageError,
    AudioStorageInterface,
    AudioUploadError,
    DEFAULT_AUDIO_EXTENSION,
    audio_extension,
    build_object_path,
    content_type_for,
    read_capture_audio,
)
from voice_ledger.services.audio.memory import InMemoryAudioStorage
from voice_ledger.services.audio.cloudinary_service import CloudinaryAudioStorage

__all__ = [
    "AudioFileMissingError",
    "AudioStorageError",
    "AudioStorageInterface",
    "AudioUploadError",
    "CloudinaryAudioStorage",
    "DEFAULT_AUDIO_EXTENSION",
    "InMemoryAudioStorage",
    "audio_extension",
    "build_object_path",
    "content_type_for",
    "read_capture_audio",
]
