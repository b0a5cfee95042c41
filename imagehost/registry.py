"""In-process registry of chunked upload sessions.

One lock guards the id -> session map and each session carries its own lock, so part
writes to one session never serialize against another session. Callers only ever see
snapshot copies of a session.
"""

from __future__ import annotations

import enum
import logging
import math
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from threading import Lock

from imagehost.errors import Incomplete, InvalidRequest, InvalidState, NotFound
from imagehost.events import core_event
from imagehost.metrics import active_upload_sessions, sessions_swept_total
from imagehost.storage import PartStore


class SessionStatus(str, enum.Enum):
    pending = "pending"
    uploading = "uploading"
    assembling = "assembling"
    completed = "completed"
    failed = "failed"


_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.pending: frozenset({SessionStatus.uploading, SessionStatus.assembling, SessionStatus.failed}),
    SessionStatus.uploading: frozenset({SessionStatus.assembling, SessionStatus.failed}),
    SessionStatus.assembling: frozenset({SessionStatus.completed, SessionStatus.failed}),
    SessionStatus.completed: frozenset(),
    SessionStatus.failed: frozenset(),
}

ACCEPTING_PARTS = frozenset({SessionStatus.pending, SessionStatus.uploading})


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class PartRecord:
    number: int
    uploaded: bool = False
    etag: str | None = None


@dataclass
class UploadSession:
    id: str
    target_name: str
    mime_type: str
    declared_size: int
    part_size: int
    total_parts: int
    created_at: datetime
    expires_at: datetime
    owner_id: str = "anonymous"
    status: SessionStatus = SessionStatus.pending
    parts: list[PartRecord] = field(default_factory=list)

    @property
    def uploaded_count(self) -> int:
        return sum(1 for part in self.parts if part.uploaded)

    @property
    def progress_percent(self) -> int:
        return round(100 * self.uploaded_count / self.total_parts)

    @property
    def is_ready(self) -> bool:
        return all(part.uploaded for part in self.parts)

    def missing_parts(self) -> list[int]:
        return [part.number for part in self.parts if not part.uploaded]

    def snapshot(self) -> UploadSession:
        return replace(self, parts=[replace(part) for part in self.parts])


@dataclass
class _Entry:
    session: UploadSession
    lock: Lock = field(default_factory=Lock)


class UploadSessionRegistry:
    def __init__(
        self,
        part_size: int,
        max_parts: int,
        ttl_seconds: int,
        allowed_mime_types: frozenset[str],
        part_store: PartStore | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if part_size <= 0:
            raise ValueError("part_size must be positive")
        self.part_size = part_size
        self.max_parts = max_parts
        self.ttl = timedelta(seconds=ttl_seconds)
        self.allowed_mime_types = allowed_mime_types
        self.part_store = part_store
        self.clock = clock
        self._entries: dict[str, _Entry] = {}
        self._lock = Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _entry(self, session_id: str) -> _Entry:
        with self._lock:
            entry = self._entries.get(session_id)
        if entry is None:
            raise NotFound("upload session not found", upload_id=session_id)
        return entry

    def create(self, target_name: str, mime_type: str, declared_size: int, owner_id: str = "anonymous") -> UploadSession:
        if not target_name or not target_name.strip():
            raise InvalidRequest("target name is required")
        if declared_size <= 0:
            raise InvalidRequest("declared size must be positive")
        normalized_mime = (mime_type or "").strip().lower()
        if normalized_mime not in self.allowed_mime_types:
            raise InvalidRequest(f"unsupported mime type: {mime_type}")
        total_parts = math.ceil(declared_size / self.part_size)
        if total_parts > self.max_parts:
            raise InvalidRequest(
                f"file needs {total_parts} parts of {self.part_size} bytes, limit is {self.max_parts}"
            )

        now = self.clock()
        session = UploadSession(
            id=str(uuid.uuid4()),
            target_name=target_name.strip(),
            mime_type=normalized_mime,
            declared_size=declared_size,
            part_size=self.part_size,
            total_parts=total_parts,
            created_at=now,
            expires_at=now + self.ttl,
            owner_id=owner_id,
            parts=[PartRecord(number=n) for n in range(1, total_parts + 1)],
        )
        with self._lock:
            self._entries[session.id] = _Entry(session=session)
            active_upload_sessions.set(len(self._entries))
        return session.snapshot()

    def get(self, session_id: str) -> UploadSession:
        entry = self._entry(session_id)
        with entry.lock:
            return entry.session.snapshot()

    def session_ids(self) -> set[str]:
        with self._lock:
            return set(self._entries)

    def missing_parts(self, session_id: str) -> list[int]:
        entry = self._entry(session_id)
        with entry.lock:
            return entry.session.missing_parts()

    def mark_part_uploaded(self, session_id: str, part_number: int, etag: str | None) -> UploadSession:
        entry = self._entry(session_id)
        with entry.lock:
            session = entry.session
            if session.status not in ACCEPTING_PARTS:
                raise InvalidState(f"upload is {session.status.value}, not accepting parts", upload_id=session_id)
            if part_number < 1 or part_number > session.total_parts:
                raise NotFound(f"part {part_number} is outside 1..{session.total_parts}", upload_id=session_id)
            record = session.parts[part_number - 1]
            record.uploaded = True
            record.etag = etag
            return session.snapshot()

    def promote(self, session_id: str, status: SessionStatus) -> SessionStatus:
        """Move forward to ``status`` when that is a legal step, otherwise leave the session alone."""
        entry = self._entry(session_id)
        with entry.lock:
            if status in _TRANSITIONS[entry.session.status]:
                entry.session.status = status
            return entry.session.status

    def _transition(self, session_id: str, status: SessionStatus) -> UploadSession:
        entry = self._entry(session_id)
        with entry.lock:
            current = entry.session.status
            if status not in _TRANSITIONS[current]:
                raise InvalidState(
                    f"cannot move upload from {current.value} to {status.value}", upload_id=session_id
                )
            entry.session.status = status
            return entry.session.snapshot()

    def claim_for_assembly(self, session_id: str) -> UploadSession:
        entry = self._entry(session_id)
        with entry.lock:
            session = entry.session
            if session.status not in ACCEPTING_PARTS:
                raise InvalidState(f"upload is {session.status.value}, cannot complete", upload_id=session_id)
            if not session.is_ready:
                raise Incomplete(
                    "cannot complete upload, missing parts",
                    upload_id=session_id,
                    progress_percent=session.progress_percent,
                    missing_parts=session.missing_parts(),
                )
            session.status = SessionStatus.assembling
            return session.snapshot()

    def mark_completed(self, session_id: str) -> UploadSession:
        return self._transition(session_id, SessionStatus.completed)

    def mark_failed(self, session_id: str) -> UploadSession:
        return self._transition(session_id, SessionStatus.failed)

    def remove(self, session_id: str) -> None:
        with self._lock:
            self._entries.pop(session_id, None)
            active_upload_sessions.set(len(self._entries))

    def sweep_expired(self, now: datetime | None = None) -> int:
        now = now or self.clock()
        with self._lock:
            expired = [sid for sid, entry in self._entries.items() if entry.session.expires_at < now]
            expired_sessions = {sid: self._entries.pop(sid).session for sid in expired}
            active_upload_sessions.set(len(self._entries))

        for session_id, session in expired_sessions.items():
            core_event(
                {
                    "event": "session_swept",
                    "upload_id": session_id,
                    "status": session.status.value,
                    "uploaded_parts": session.uploaded_count,
                    "total_parts": session.total_parts,
                }
            )
            if self.part_store is None:
                continue
            try:
                self.part_store.delete_all(session_id)
            except Exception as exc:
                core_event(
                    {
                        "event": "part_cleanup_error",
                        "upload_id": session_id,
                        "detail": str(exc),
                        "error_class": "storage_error",
                    },
                    level=logging.WARNING,
                )
        sessions_swept_total.inc(len(expired_sessions))
        return len(expired_sessions)
