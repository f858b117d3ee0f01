"""
Voice Audio Storage using Cloudinary

DESIGN DECISION: Cloudinary stores the voice captures because:
1. It accepts audio under the "video" resource type with no extra setup
2. Uploads return a stable URL the transcriber can fetch
3. Free tier sufficient for personal use

Public ids are the object path (minus extension) under the configured
voice folder, so one capture always maps to one asset and re-uploads
overwrite instead of duplicating.
"""

from pathlib import PurePosixPath
from typing import Optional

import cloudinary
import cloudinary.uploader
import cloudinary.utils
import httpx
import structlog
from tenacity import retry, stop_after_attempt, wait_exponential

from voice_ledger.config import CloudinarySettings, get_settings
from voice_ledger.services.audio.interface import (
    AudioStorageError,
    AudioStorageInterface,
    AudioUploadError,
    DEFAULT_AUDIO_EXTENSION,
)


logger = structlog.get_logger(__name__)

RESOURCE_TYPE = "video"


class CloudinaryAudioStorage(AudioStorageInterface):
    """
    Audio object storage backed by Cloudinary.

    Flow:
    1. Upload raw audio bytes under folder/object_path
    2. The parse endpoint downloads them for transcription
    3. The parse endpoint deletes them once the expense is stored
    """

    def __init__(self, settings: Optional[CloudinarySettings] = None):
        self._settings = settings or get_settings().cloudinary
        self._configured = False

    def _configure(self):
        """Configure Cloudinary SDK."""
        if not self._configured:
            cloudinary.config(
                cloud_name=self._settings.cloud_name,
                api_key=self._settings.api_key,
                api_secret=self._settings.api_secret,
                secure=True,
            )
            self._configured = True

    def _public_id(self, object_path: str) -> tuple[str, str]:
        """(public id, format) for an object path."""
        path = PurePosixPath(object_path)
        extension = path.suffix.lstrip(".") or DEFAULT_AUDIO_EXTENSION
        public_id = f"{self._settings.voice_folder}/{path.with_suffix('')}"
        return public_id, extension

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    async def upload(self, object_path: str, data: bytes, content_type: str) -> str:
        """
        Upload audio bytes to Cloudinary.

        Raises:
            AudioUploadError: If upload fails
        """
        self._configure()
        public_id, extension = self._public_id(object_path)

        try:
            result = cloudinary.uploader.upload(
                data,
                public_id=public_id,
                resource_type=RESOURCE_TYPE,
                format=extension,
                overwrite=True,
            )
        except cloudinary.exceptions.Error as e:
            raise AudioUploadError(f"Cloudinary error: {e}")
        except Exception as e:
            raise AudioUploadError(f"Failed to upload audio: {e}")

        url = result.get("secure_url", result.get("url", ""))
        if not url:
            raise AudioUploadError("No URL returned from Cloudinary")

        logger.info("voice_audio_uploaded", object_path=object_path, bytes=len(data))
        return url

    async def download(self, object_path: str) -> Optional[bytes]:
        self._configure()
        public_id, extension = self._public_id(object_path)
        url, _ = cloudinary.utils.cloudinary_url(
            public_id,
            resource_type=RESOURCE_TYPE,
            format=extension,
            secure=True,
        )

        async with httpx.AsyncClient(timeout=30.0) as client:
            response = await client.get(url)
        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise AudioStorageError(f"Failed to download audio ({response.status_code})")
        return response.content

    async def delete(self, object_path: str) -> bool:
        self._configure()
        public_id, _ = self._public_id(object_path)
        try:
            result = cloudinary.uploader.destroy(public_id, resource_type=RESOURCE_TYPE)
        except cloudinary.exceptions.Error as e:
            raise AudioStorageError(f"Cloudinary error: {e}")
        return result.get("result") == "ok"
