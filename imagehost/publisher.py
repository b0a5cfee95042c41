import logging
import time
from dataclasses import dataclass

from PIL import UnidentifiedImageError

from imagehost.errors import StorageError
from imagehost.events import core_event
from imagehost.imaging import MIME_EXTENSIONS, ImageProcessingOptions, process_image
from imagehost.storage import ASSETS_PREFIX, ObjectStorage


@dataclass(frozen=True)
class PublishedObject:
    key: str
    mime_type: str
    size: int


class AssetPublisher:
    def __init__(self, storage: ObjectStorage, processing: ImageProcessingOptions | None = None) -> None:
        self.storage = storage
        self.processing = processing or ImageProcessingOptions()

    def _process(self, data: bytes, mime_type: str, suggested_key: str) -> tuple[bytes, str]:
        try:
            return process_image(data, mime_type, self.processing)
        except (UnidentifiedImageError, OSError, ValueError) as exc:
            # Processing is best effort; the original bytes are still published.
            core_event(
                {
                    "event": "image_processing_skipped",
                    "suggested_key": suggested_key,
                    "mime_type": mime_type,
                    "detail": str(exc),
                },
                level=logging.WARNING,
            )
            return data, mime_type

    def publish(self, data: bytes, mime_type: str, suggested_key: str) -> PublishedObject:
        processed, final_mime = self._process(data, mime_type, suggested_key)
        key = f"{ASSETS_PREFIX}{suggested_key}{MIME_EXTENSIONS.get(final_mime, '')}"
        start = time.perf_counter()
        try:
            self.storage.put_object(
                key,
                processed,
                content_type=final_mime,
                metadata={"original-format": mime_type, "processed": str(processed is not data).lower()},
            )
        except Exception as exc:
            raise StorageError(f"failed to publish asset: {exc}") from exc
        core_event(
            {
                "event": "asset_stored",
                "storage_key": key,
                "size": len(processed),
                "duration_ms": round((time.perf_counter() - start) * 1000, 2),
            }
        )
        return PublishedObject(key=key, mime_type=final_mime, size=len(processed))

    def url_for(self, key: str) -> str:
        return self.storage.public_url(key)

    def read(self, key: str) -> bytes:
        return self.storage.get_object(key)

    def delete(self, key: str) -> None:
        self.storage.delete_key(key)
