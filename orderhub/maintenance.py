from __future__ import annotations

from datetime import datetime, timedelta

from orderhub.logs import log_event
from orderhub.metrics import sessions_swept_total
from orderhub.sessions import UploadSessionStore, session_dir


def sweep_stale_sessions(
    store: UploadSessionStore, max_age_hours: int, now: datetime | None = None
) -> dict[str, int]:
    """Delete sessions at least ``max_age_hours`` old, plus orphans.

    A session directory whose metadata is missing or unreadable is an orphan
    and goes regardless of age. One failing session never stops the sweep.
    """
    now = now or store.clock()
    cutoff = now - timedelta(hours=max_age_hours)

    scanned = 0
    deleted = 0
    orphans = 0
    errors = 0
    for upload_id in store.list_session_ids():
        scanned += 1
        try:
            session = store.read(upload_id)
            if session is None:
                store.blobs.delete_directory(session_dir(upload_id))
                store.locks.forget(upload_id)
                orphans += 1
                deleted += 1
                continue
            if session.created_at <= cutoff:
                store.delete(upload_id)
                deleted += 1
        except Exception as exc:
            errors += 1
            log_event(
                {
                    "event": "session_sweep_error",
                    "upload_id": upload_id,
                    "detail": str(exc),
                    "error_class": "maintenance_error",
                }
            )

    sessions_swept_total.inc(deleted)
    return {
        "sessions_scanned": scanned,
        "sessions_deleted": deleted,
        "orphans_deleted": orphans,
        "errors": errors,
    }
