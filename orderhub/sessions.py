from __future__ import annotations

import json
import re
import secrets
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from threading import Lock

from orderhub.blobstore import BlobStore
from orderhub.errors import MergeInProgress, SessionNotFound, StorageError
from orderhub.logs import log_event

CHUNKS_DIR = "chunks"
METADATA_NAME = "metadata.json"

_UPLOAD_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_upload_id() -> str:
    return secrets.token_hex(16)


def session_dir(upload_id: str) -> str:
    return f"{CHUNKS_DIR}/{upload_id}"


def metadata_key(upload_id: str) -> str:
    return f"{session_dir(upload_id)}/{METADATA_NAME}"


def chunk_key(upload_id: str, chunk_index: int) -> str:
    return f"{session_dir(upload_id)}/chunk_{chunk_index}.tmp"


@dataclass
class UploadSession:
    upload_id: str
    filename: str
    total_chunks: int
    file_size: int
    created_at: datetime
    updated_at: datetime
    received_chunks: list[int] = field(default_factory=list)
    merge_lease_until: datetime | None = None

    @property
    def is_complete(self) -> bool:
        return len(self.received_chunks) == self.total_chunks

    def mark_received(self, chunk_index: int, now: datetime) -> None:
        if chunk_index not in self.received_chunks:
            self.received_chunks.append(chunk_index)
            self.received_chunks.sort()
        self.updated_at = now

    def to_json(self) -> str:
        return json.dumps(
            {
                "upload_id": self.upload_id,
                "filename": self.filename,
                "total_chunks": self.total_chunks,
                "file_size": self.file_size,
                "received_chunks": self.received_chunks,
                "created_at": self.created_at.isoformat(),
                "updated_at": self.updated_at.isoformat(),
                "merge_lease_until": self.merge_lease_until.isoformat() if self.merge_lease_until else None,
            },
            indent=2,
        )

    @classmethod
    def from_json(cls, payload: str | bytes) -> UploadSession:
        raw = json.loads(payload)
        lease = raw.get("merge_lease_until")
        return cls(
            upload_id=str(raw["upload_id"]),
            filename=str(raw["filename"]),
            total_chunks=int(raw["total_chunks"]),
            file_size=int(raw["file_size"]),
            received_chunks=sorted({int(idx) for idx in raw.get("received_chunks", [])}),
            created_at=datetime.fromisoformat(raw["created_at"]),
            updated_at=datetime.fromisoformat(raw["updated_at"]),
            merge_lease_until=datetime.fromisoformat(lease) if lease else None,
        )


class SessionLocks:
    """In-process lock per upload id.

    Serializes metadata read-modify-write and deletion for one session within
    a single process. Separate processes sharing a store are not coordinated.
    """

    def __init__(self) -> None:
        self._locks: dict[str, Lock] = {}
        self._guard = Lock()

    def get(self, upload_id: str) -> Lock:
        with self._guard:
            lock = self._locks.get(upload_id)
            if lock is None:
                lock = Lock()
                self._locks[upload_id] = lock
            return lock

    def forget(self, upload_id: str) -> None:
        with self._guard:
            self._locks.pop(upload_id, None)


class UploadSessionStore:
    def __init__(
        self,
        blobs: BlobStore,
        clock: Callable[[], datetime] = utc_now,
        id_factory: Callable[[], str] = new_upload_id,
    ) -> None:
        self.blobs = blobs
        self.clock = clock
        self.id_factory = id_factory
        self.locks = SessionLocks()

    def create(self, filename: str, total_chunks: int, file_size: int) -> str:
        """Create a session and return its id.

        Range checks on ``total_chunks`` and ``file_size`` are the caller's job.
        """
        upload_id = self.id_factory()
        now = self.clock()
        session = UploadSession(
            upload_id=upload_id,
            filename=filename,
            total_chunks=total_chunks,
            file_size=file_size,
            created_at=now,
            updated_at=now,
        )
        try:
            self.blobs.make_directory(session_dir(upload_id))
            self._write(session)
        except OSError as exc:
            raise StorageError(f"failed to create upload session: {exc}") from exc
        return upload_id

    def read(self, upload_id: str) -> UploadSession | None:
        if not _UPLOAD_ID_PATTERN.match(upload_id):
            return None
        try:
            payload = self.blobs.get(metadata_key(upload_id))
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise StorageError(f"failed to read upload session {upload_id}: {exc}") from exc
        try:
            return UploadSession.from_json(payload)
        except (ValueError, KeyError, TypeError) as exc:
            log_event(
                {
                    "event": "session_metadata_unreadable",
                    "upload_id": upload_id,
                    "detail": str(exc),
                    "error_class": "storage_error",
                }
            )
            return None

    def update(self, upload_id: str, mutate: Callable[[UploadSession], None]) -> UploadSession:
        with self.locks.get(upload_id):
            session = self.read(upload_id)
            if session is None:
                raise SessionNotFound(upload_id)
            mutate(session)
            try:
                self._write(session)
            except OSError as exc:
                raise StorageError(f"failed to update upload session {upload_id}: {exc}") from exc
            return session

    def delete(self, upload_id: str) -> None:
        if not _UPLOAD_ID_PATTERN.match(upload_id):
            return
        with self.locks.get(upload_id):
            # Metadata goes first so a partially removed directory never reads as a live session.
            self.blobs.delete(metadata_key(upload_id))
            self.blobs.delete_directory(session_dir(upload_id))
        self.locks.forget(upload_id)

    def discard_if_orphaned(self, upload_id: str) -> bool:
        with self.locks.get(upload_id):
            if self.blobs.exists(metadata_key(upload_id)):
                return False
            self.blobs.delete_directory(session_dir(upload_id))
        self.locks.forget(upload_id)
        return True

    def list_session_ids(self) -> list[str]:
        return self.blobs.list_directories(CHUNKS_DIR)

    def is_complete(self, upload_id: str, total_chunks: int) -> bool:
        session = self.read(upload_id)
        if session is None:
            return False
        return len(session.received_chunks) == total_chunks

    def acquire_merge_lease(self, upload_id: str, seconds: int) -> UploadSession:
        def _take(session: UploadSession) -> None:
            now = self.clock()
            if session.merge_lease_until is not None and session.merge_lease_until > now:
                raise MergeInProgress(upload_id)
            session.merge_lease_until = now + timedelta(seconds=seconds)

        return self.update(upload_id, _take)

    def release_merge_lease(self, upload_id: str) -> None:
        def _clear(session: UploadSession) -> None:
            session.merge_lease_until = None

        try:
            self.update(upload_id, _clear)
        except SessionNotFound:
            pass

    def _write(self, session: UploadSession) -> None:
        self.blobs.put(metadata_key(session.upload_id), session.to_json().encode("utf-8"))
