"""In-memory audio object storage for tests and the in-process server."""

from typing import Optional

from voice_ledger.services.audio.interface import AudioStorageInterface, AudioUploadError


class InMemoryAudioStorage(AudioStorageInterface):
    def __init__(self, fail_uploads: bool = False):
        self.objects: dict[str, bytes] = {}
        self.content_types: dict[str, str] = {}
        self.fail_uploads = fail_uploads

    async def upload(self, object_path: str, data: bytes, content_type: str) -> str:
        if self.fail_uploads:
            raise AudioUploadError(f"Simulated upload failure for {object_path}")
        self.objects[object_path] = data
        self.content_types[object_path] = content_type
        return object_path

    async def download(self, object_path: str) -> Optional[bytes]:
        return self.objects.get(object_path)

    async def delete(self, object_path: str) -> bool:
        self.content_types.pop(object_path, None)
        return self.objects.pop(object_path, None) is not None
