from __future__ import annotations

import logging
from datetime import datetime

from imagehost.events import core_event
from imagehost.registry import UploadSessionRegistry
from imagehost.storage import PartStore


def sweep_once(registry: UploadSessionRegistry, part_store: PartStore, now: datetime | None = None) -> dict[str, int]:
    expired = registry.sweep_expired(now)

    orphan_sessions = 0
    orphan_parts = 0
    try:
        stored_ids = part_store.session_ids()
    except Exception as exc:
        core_event(
            {"event": "part_listing_error", "detail": str(exc), "error_class": "storage_error"},
            level=logging.WARNING,
        )
        stored_ids = set()
    # Read after listing so a session created in between is never treated as an orphan.
    live_ids = registry.session_ids()

    for session_id in stored_ids - live_ids:
        try:
            orphan_parts += part_store.delete_all(session_id)
            orphan_sessions += 1
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

    return {
        "expired_sessions_removed": expired,
        "orphan_sessions_cleaned": orphan_sessions,
        "orphan_parts_deleted": orphan_parts,
    }
