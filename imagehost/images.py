import logging
import secrets
from dataclasses import dataclass

from imagehost.assets import AssetRepository
from imagehost.errors import InvalidRequest, NotFound
from imagehost.events import core_event
from imagehost.metrics import assets_published_total
from imagehost.models import Asset
from imagehost.publisher import AssetPublisher
from imagehost.shortcode import ShortCodeIssuer


@dataclass(frozen=True)
class ImageUpload:
    file_name: str
    mime_type: str
    data: bytes


class ImageLibrary:
    """Turns finished bytes into shareable assets: short code, stored object, asset row."""

    def __init__(
        self,
        publisher: AssetPublisher,
        issuer: ShortCodeIssuer,
        assets: AssetRepository,
        allowed_mime_types: frozenset[str],
    ) -> None:
        self.publisher = publisher
        self.issuer = issuer
        self.assets = assets
        self.allowed_mime_types = allowed_mime_types

    def validate(self, upload: ImageUpload) -> None:
        if not upload.data:
            raise InvalidRequest(f"{upload.file_name or 'file'} is empty")
        if upload.mime_type.lower() not in self.allowed_mime_types:
            raise InvalidRequest(f"unsupported mime type: {upload.mime_type}")

    def create_image(
        self,
        data: bytes,
        file_name: str,
        mime_type: str,
        owner_id: str = "anonymous",
        batch_id: str | None = None,
        source: str = "direct",
    ) -> Asset:
        short_code = self.issuer.issue()
        published = self.publisher.publish(data, mime_type, suggested_key=short_code)
        try:
            asset = self.assets.create(
                short_code=short_code,
                storage_key=published.key,
                file_name=file_name,
                mime_type=published.mime_type,
                size=published.size,
                owner_id=owner_id,
                batch_id=batch_id,
            )
        except Exception:
            self._discard_object(published.key)
            raise
        assets_published_total.labels(source=source).inc()
        return asset

    def create_batch(self, uploads: list[ImageUpload], owner_id: str = "anonymous") -> tuple[str, list[Asset]]:
        if not uploads:
            raise InvalidRequest("no images uploaded")
        for upload in uploads:
            self.validate(upload)
        batch_id = secrets.token_hex(4)
        created = [
            self.create_image(
                upload.data,
                upload.file_name,
                upload.mime_type.lower(),
                owner_id=owner_id,
                batch_id=batch_id,
                source="batch",
            )
            for upload in uploads
        ]
        return batch_id, created

    def get(self, short_code: str) -> Asset:
        asset = self.assets.get(short_code)
        if asset is None:
            raise NotFound("image not found")
        return asset

    def exists(self, short_code: str) -> bool:
        return self.assets.exists(short_code)

    def url_for(self, asset: Asset) -> str:
        return self.publisher.url_for(asset.storage_key)

    def list_for_owner(self, owner_id: str, limit: int = 100) -> list[Asset]:
        return self.assets.list_for_owner(owner_id, limit=limit)

    def list_for_batch(self, batch_id: str) -> list[Asset]:
        assets = self.assets.list_for_batch(batch_id)
        if not assets:
            raise NotFound("batch not found")
        return assets

    def delete(self, short_code: str) -> Asset:
        asset = self.get(short_code)
        self.publisher.delete(asset.storage_key)
        self.assets.delete(short_code)
        return asset

    def _discard_object(self, key: str) -> None:
        try:
            self.publisher.delete(key)
        except Exception as exc:
            core_event(
                {"event": "asset_cleanup_error", "storage_key": key, "detail": str(exc), "error_class": "storage_error"},
                level=logging.WARNING,
            )
