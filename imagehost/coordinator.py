"""Chunked upload coordinator.

Session lifecycle: ``pending`` until the first part lands, ``uploading`` while parts
arrive, ``assembling`` once a completion request has claimed the session, then
``completed`` (session removed) or ``failed`` (session and parts kept until the sweep).
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime

from opentelemetry import trace

from imagehost.assembler import Assembler
from imagehost.errors import InvalidRequest, InvalidState, NotFound, StorageError, UploadError
from imagehost.events import core_event
from imagehost.images import ImageLibrary
from imagehost.metrics import (
    assembly_latency_seconds,
    bytes_uploaded_total,
    part_store_write_latency_seconds,
    part_upload_failures_total,
    parts_uploaded_total,
    uploads_completed_total,
    uploads_failed_total,
)
from imagehost.models import Asset
from imagehost.registry import ACCEPTING_PARTS, SessionStatus, UploadSession, UploadSessionRegistry
from imagehost.storage import PartStore
from imagehost.tracing import upload_span


@dataclass(frozen=True)
class PartReceipt:
    upload_id: str
    part_number: int
    progress_percent: int
    status: SessionStatus
    etag: str | None = None


@dataclass(frozen=True)
class Progress:
    upload_id: str
    progress_percent: int
    status: SessionStatus
    uploaded_parts: int
    total_parts: int


@dataclass(frozen=True)
class CompletedUpload:
    upload_id: str
    short_code: str
    asset_url: str
    asset: Asset


class UploadCoordinator:
    def __init__(
        self,
        registry: UploadSessionRegistry,
        part_store: PartStore,
        library: ImageLibrary,
        assembler: Assembler | None = None,
        tracer: trace.Tracer | None = None,
    ) -> None:
        self.registry = registry
        self.part_store = part_store
        self.library = library
        self.assembler = assembler or Assembler(part_store)
        self.tracer = tracer

    @property
    def part_size(self) -> int:
        return self.registry.part_size

    def init_upload(self, name: str, mime_type: str, size: int, owner_id: str = "anonymous") -> UploadSession:
        return self.registry.create(name, mime_type, size, owner_id=owner_id)

    def get_session(self, upload_id: str) -> UploadSession:
        return self.registry.get(upload_id)

    def accept_part(self, upload_id: str, part_number: int, data: bytes) -> PartReceipt:
        session = self.registry.get(upload_id)
        if session.status not in ACCEPTING_PARTS:
            raise InvalidState(f"upload is {session.status.value}, not accepting parts", upload_id=upload_id)
        if part_number < 1 or part_number > session.total_parts:
            raise NotFound(f"part {part_number} is outside 1..{session.total_parts}", upload_id=upload_id)
        if not data:
            raise InvalidRequest("part payload is empty", upload_id=upload_id)
        if part_number < session.total_parts and len(data) != session.part_size:
            raise InvalidRequest(
                f"part {part_number} must be exactly {session.part_size} bytes, got {len(data)}",
                upload_id=upload_id,
            )
        if part_number == session.total_parts and len(data) > session.part_size:
            raise InvalidRequest(
                f"final part may not exceed {session.part_size} bytes, got {len(data)}",
                upload_id=upload_id,
            )

        with upload_span("upload.accept_part", upload_id, self.tracer, part_number=part_number, size=len(data)):
            start = time.perf_counter()
            try:
                etag = self.part_store.put(upload_id, part_number, data)
            except Exception as exc:
                part_upload_failures_total.inc()
                raise StorageError(f"failed to store part {part_number}: {exc}", upload_id=upload_id) from exc
            part_store_write_latency_seconds.observe(time.perf_counter() - start)

        updated = self.registry.mark_part_uploaded(upload_id, part_number, etag)
        status = self.registry.promote(upload_id, SessionStatus.uploading)
        parts_uploaded_total.inc()
        bytes_uploaded_total.inc(len(data))
        return PartReceipt(
            upload_id=upload_id,
            part_number=part_number,
            progress_percent=updated.progress_percent,
            status=status,
            etag=etag,
        )

    def get_progress(self, upload_id: str) -> Progress:
        session = self.registry.get(upload_id)
        return Progress(
            upload_id=upload_id,
            progress_percent=session.progress_percent,
            status=session.status,
            uploaded_parts=session.uploaded_count,
            total_parts=session.total_parts,
        )

    def missing_parts(self, upload_id: str) -> list[int]:
        return self.registry.missing_parts(upload_id)

    def complete_upload(self, upload_id: str) -> CompletedUpload:
        session = self.registry.claim_for_assembly(upload_id)
        with upload_span("upload.complete", upload_id, self.tracer, total_parts=session.total_parts):
            return self._assemble_and_publish(session)

    def _assemble_and_publish(self, session: UploadSession) -> CompletedUpload:
        upload_id = session.id
        start = time.perf_counter()
        try:
            data = self.assembler.assemble(session.id, session.total_parts)
            if len(data) != session.declared_size:
                raise InvalidRequest(
                    f"assembled {len(data)} bytes but {session.declared_size} were declared",
                    upload_id=upload_id,
                )
            asset = self.library.create_image(
                data,
                session.target_name,
                session.mime_type,
                owner_id=session.owner_id,
                source="chunked",
            )
        except Exception as exc:
            self._fail(upload_id, exc)
            if isinstance(exc, UploadError):
                raise
            raise StorageError(f"failed to publish upload: {exc}", upload_id=upload_id) from exc

        try:
            self.registry.mark_completed(upload_id)
        except NotFound:
            # Swept during assembly; the asset is already published.
            pass
        self._discard_parts(upload_id)
        self.registry.remove(upload_id)
        assembly_latency_seconds.observe(time.perf_counter() - start)
        uploads_completed_total.inc()
        return CompletedUpload(
            upload_id=upload_id,
            short_code=asset.short_code,
            asset_url=self.library.url_for(asset),
            asset=asset,
        )

    def abort_upload(self, upload_id: str) -> UploadSession:
        session = self.registry.get(upload_id)
        if session.status == SessionStatus.assembling:
            raise InvalidState("upload is being assembled", upload_id=upload_id)
        self.registry.remove(upload_id)
        self._discard_parts(upload_id)
        return session

    def sweep_expired(self, now: datetime | None = None) -> int:
        return self.registry.sweep_expired(now)

    def _fail(self, upload_id: str, exc: Exception) -> None:
        uploads_failed_total.inc()
        try:
            self.registry.mark_failed(upload_id)
        except (NotFound, InvalidState):
            # Swept mid-assembly; nothing left to mark.
            pass
        core_event(
            {
                "event": "upload_failed",
                "upload_id": upload_id,
                "error_class": type(exc).__name__,
                "detail": str(exc),
            },
            level=logging.WARNING,
        )

    def _discard_parts(self, upload_id: str) -> None:
        try:
            self.part_store.delete_all(upload_id)
        except Exception as exc:
            core_event(
                {
                    "event": "part_cleanup_error",
                    "upload_id": upload_id,
                    "detail": str(exc),
                    "error_class": "storage_error",
                },
                level=logging.WARNING,
            )
