import hashlib
from dataclasses import dataclass
from pathlib import Path
from threading import Lock

from imagehost.config import settings
from imagehost.errors import MissingPart

PARTS_PREFIX = "chunks/"
ASSETS_PREFIX = "uploads/"


class ObjectNotFound(Exception):
    def __init__(self, key: str) -> None:
        super().__init__(f"object not found: {key}")
        self.key = key


@dataclass(frozen=True)
class StorageWriteResult:
    key: str
    etag: str | None = None


class ObjectStorage:
    def put_object(
        self,
        key: str,
        data: bytes,
        content_type: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> StorageWriteResult:
        raise NotImplementedError

    def get_object(self, key: str) -> bytes:
        raise NotImplementedError

    def list_keys(self, prefix: str = "") -> list[str]:
        raise NotImplementedError

    def delete_key(self, key: str) -> None:
        raise NotImplementedError

    def public_url(self, key: str) -> str:
        raise NotImplementedError


class LocalObjectStorage(ObjectStorage):
    def __init__(self, root: str, base_url: str) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.base_url = base_url.rstrip("/")

    def _path(self, key: str) -> Path:
        target = (self.root / key).resolve()
        if self.root.resolve() not in target.parents:
            raise ObjectNotFound(key)
        return target

    def put_object(
        self,
        key: str,
        data: bytes,
        content_type: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> StorageWriteResult:
        full_path = self._path(key)
        full_path.parent.mkdir(parents=True, exist_ok=True)
        full_path.write_bytes(data)
        return StorageWriteResult(key=key, etag=hashlib.sha256(data).hexdigest())

    def get_object(self, key: str) -> bytes:
        try:
            return self._path(key).read_bytes()
        except FileNotFoundError as exc:
            raise ObjectNotFound(key) from exc

    def list_keys(self, prefix: str = "") -> list[str]:
        base = self.root / prefix if prefix else self.root
        if not base.exists():
            return []
        root = self.root
        return [str(path.relative_to(root)).replace("\\", "/") for path in base.rglob("*") if path.is_file()]

    def delete_key(self, key: str) -> None:
        target = self._path(key)
        if target.exists():
            target.unlink()

    def public_url(self, key: str) -> str:
        return f"{self.base_url}/files/{key}"


class MemoryObjectStorage(ObjectStorage):
    def __init__(self) -> None:
        self._objects: dict[str, bytes] = {}
        self._lock = Lock()

    def put_object(
        self,
        key: str,
        data: bytes,
        content_type: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> StorageWriteResult:
        with self._lock:
            self._objects[key] = bytes(data)
        return StorageWriteResult(key=key, etag=hashlib.sha256(data).hexdigest())

    def get_object(self, key: str) -> bytes:
        with self._lock:
            try:
                return self._objects[key]
            except KeyError as exc:
                raise ObjectNotFound(key) from exc

    def list_keys(self, prefix: str = "") -> list[str]:
        with self._lock:
            return sorted(key for key in self._objects if key.startswith(prefix))

    def delete_key(self, key: str) -> None:
        with self._lock:
            self._objects.pop(key, None)

    def public_url(self, key: str) -> str:
        return f"memory://{key}"


class S3ObjectStorage(ObjectStorage):
    def __init__(
        self,
        bucket: str,
        region: str,
        endpoint_url: str | None = None,
        access_key_id: str | None = None,
        secret_access_key: str | None = None,
        presigned_url_ttl_seconds: int = 3600,
    ) -> None:
        if not bucket:
            raise ValueError("bucket must be set for s3-compatible backends")
        import boto3

        self.bucket = bucket
        self.presigned_url_ttl_seconds = presigned_url_ttl_seconds
        client_kwargs = {"region_name": region}
        if endpoint_url:
            client_kwargs["endpoint_url"] = endpoint_url
        if access_key_id and secret_access_key:
            client_kwargs["aws_access_key_id"] = access_key_id
            client_kwargs["aws_secret_access_key"] = secret_access_key
        self.client = boto3.client("s3", **client_kwargs)

    def put_object(
        self,
        key: str,
        data: bytes,
        content_type: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> StorageWriteResult:
        params = {"Bucket": self.bucket, "Key": key, "Body": data}
        if content_type:
            params["ContentType"] = content_type
            params["CacheControl"] = "public, max-age=31536000"
        if metadata:
            params["Metadata"] = metadata
        result = self.client.put_object(**params)
        return StorageWriteResult(key=key, etag=result.get("ETag"))

    def get_object(self, key: str) -> bytes:
        try:
            obj = self.client.get_object(Bucket=self.bucket, Key=key)
        except self.client.exceptions.NoSuchKey as exc:
            raise ObjectNotFound(key) from exc
        return obj["Body"].read()

    def list_keys(self, prefix: str = "") -> list[str]:
        keys: list[str] = []
        continuation_token = None
        while True:
            params = {"Bucket": self.bucket, "Prefix": prefix}
            if continuation_token:
                params["ContinuationToken"] = continuation_token
            response = self.client.list_objects_v2(**params)
            for item in response.get("Contents", []):
                key = item.get("Key")
                if key:
                    keys.append(key)
            if not response.get("IsTruncated"):
                break
            continuation_token = response.get("NextContinuationToken")
        return keys

    def delete_key(self, key: str) -> None:
        self.client.delete_object(Bucket=self.bucket, Key=key)

    def public_url(self, key: str) -> str:
        return self.client.generate_presigned_url(
            "get_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=self.presigned_url_ttl_seconds,
        )


class PartStore:
    """Raw part bytes keyed by (upload session, part number) under ``chunks/``."""

    def __init__(self, storage: ObjectStorage, prefix: str = PARTS_PREFIX) -> None:
        self.storage = storage
        self.prefix = prefix

    def part_key(self, session_id: str, part_number: int) -> str:
        return f"{self.prefix}{session_id}/{part_number}"

    def put(self, session_id: str, part_number: int, data: bytes) -> str | None:
        return self.storage.put_object(self.part_key(session_id, part_number), data).etag

    def get(self, session_id: str, part_number: int) -> bytes:
        try:
            return self.storage.get_object(self.part_key(session_id, part_number))
        except ObjectNotFound as exc:
            raise MissingPart(
                f"part {part_number} is missing from the part store",
                upload_id=session_id,
                part_number=part_number,
            ) from exc

    def delete_all(self, session_id: str) -> int:
        deleted = 0
        for key in self.storage.list_keys(f"{self.prefix}{session_id}/"):
            self.storage.delete_key(key)
            deleted += 1
        return deleted

    def session_ids(self) -> set[str]:
        ids: set[str] = set()
        for key in self.storage.list_keys(self.prefix):
            remainder = key[len(self.prefix) :]
            if "/" in remainder:
                ids.add(remainder.split("/", 1)[0])
        return ids


def build_storage() -> ObjectStorage:
    backend = settings.storage_backend.lower()
    if backend == "local":
        return LocalObjectStorage(settings.storage_root, settings.public_base_url)
    if backend == "memory":
        return MemoryObjectStorage()
    if backend == "s3":
        return S3ObjectStorage(
            settings.s3_bucket,
            settings.aws_region,
            presigned_url_ttl_seconds=settings.presigned_url_ttl_seconds,
        )
    if backend == "r2":
        if not settings.r2_bucket:
            raise ValueError("r2_bucket must be set when storage_backend=r2")
        endpoint_url = settings.r2_endpoint_url
        if not endpoint_url:
            if not settings.r2_account_id:
                raise ValueError("set r2_endpoint_url or r2_account_id when storage_backend=r2")
            endpoint_url = f"https://{settings.r2_account_id}.r2.cloudflarestorage.com"

        return S3ObjectStorage(
            bucket=settings.r2_bucket,
            region="auto",
            endpoint_url=endpoint_url,
            access_key_id=settings.r2_access_key_id or None,
            secret_access_key=settings.r2_secret_access_key or None,
            presigned_url_ttl_seconds=settings.presigned_url_ttl_seconds,
        )
    raise ValueError(f"unsupported storage backend: {settings.storage_backend}")
