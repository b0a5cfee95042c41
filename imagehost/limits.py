from collections.abc import Iterator
from contextlib import contextmanager
from threading import Lock

from fastapi import HTTPException

from imagehost.metrics import inflight_part_bytes, throttled_requests_total

THROTTLE_HEADERS_BASE = {"Retry-After": "1"}


def _throttled(detail: str, reason: str) -> HTTPException:
    throttled_requests_total.inc()
    return HTTPException(
        status_code=429,
        detail=detail,
        headers={**THROTTLE_HEADERS_BASE, "X-RateLimit-Reason": reason},
    )


class InflightPartLimiter:
    """Caps concurrent part writes per upload and the part bytes held in memory overall.

    A part larger than the byte budget is still admitted when nothing else is in flight.
    """

    def __init__(self, per_upload_limit: int, max_inflight_bytes: int = 0) -> None:
        self.per_upload_limit = per_upload_limit
        self.max_inflight_bytes = max_inflight_bytes
        self._counts: dict[str, int] = {}
        self._bytes = 0
        self._lock = Lock()

    def acquire(self, upload_id: str, size: int) -> None:
        with self._lock:
            current = self._counts.get(upload_id, 0)
            if current >= self.per_upload_limit:
                raise _throttled("per-upload inflight part limit reached", "upload_inflight_limit")
            if self.max_inflight_bytes > 0 and self._bytes and self._bytes + size > self.max_inflight_bytes:
                raise _throttled("server inflight part bytes exhausted", "inflight_bytes_limit")
            self._counts[upload_id] = current + 1
            self._bytes += size
            inflight_part_bytes.set(self._bytes)

    def release(self, upload_id: str, size: int) -> None:
        with self._lock:
            current = self._counts.get(upload_id, 0)
            if current == 0:
                return
            if current == 1:
                self._counts.pop(upload_id, None)
            else:
                self._counts[upload_id] = current - 1
            self._bytes = max(0, self._bytes - size)
            inflight_part_bytes.set(self._bytes)

    @contextmanager
    def slot(self, upload_id: str, size: int) -> Iterator[None]:
        self.acquire(upload_id, size)
        try:
            yield
        finally:
            self.release(upload_id, size)

    def inflight(self, upload_id: str) -> int:
        with self._lock:
            return self._counts.get(upload_id, 0)

    @property
    def inflight_bytes(self) -> int:
        with self._lock:
            return self._bytes
