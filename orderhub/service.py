import mimetypes
import re
import secrets
import string
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from pathlib import PureWindowsPath

import magic

from orderhub.attachments import (
    ORDER_DOCUMENT,
    PRODUCT_DOCUMENT,
    AttachmentTargets,
    DocumentRecord,
    public_key,
    public_url,
)
from orderhub.blobstore import BlobStore
from orderhub.chunks import ChunkReceipt, ChunkReceiver
from orderhub.config import Settings, settings
from orderhub.errors import (
    PayloadTooLarge,
    SessionNotFound,
    StorageError,
    TargetNotFound,
    UploadIncomplete,
    ValidationError,
)
from orderhub.logs import log_event
from orderhub.maintenance import sweep_stale_sessions
from orderhub.merge import MergeEngine
from orderhub.metrics import chunk_rejections_total, sessions_initialized_total
from orderhub.sessions import UploadSessionStore

TARGET_NAMESPACES = {
    ORDER_DOCUMENT: "orders/documents",
    PRODUCT_DOCUMENT: "products/documents",
}
DEFAULT_CONTENT_TYPE = "application/octet-stream"
SNIFF_SAMPLE_BYTES = 2048

_NAME_ALPHABET = string.ascii_letters + string.digits
_EXTENSION_PATTERN = re.compile(r"^[a-z0-9]{1,16}$")


def random_file_stem() -> str:
    return "".join(secrets.choice(_NAME_ALPHABET) for _ in range(40))


def file_extension(filename: str) -> str:
    # PureWindowsPath splits on both separators, so client paths of either style are handled.
    suffix = PureWindowsPath(filename).suffix.lower().lstrip(".")
    return suffix if _EXTENSION_PATTERN.match(suffix) else ""


def build_final_path(filename: str, target_type: str, stem: str) -> str:
    extension = file_extension(filename)
    name = f"{stem}.{extension}" if extension else stem
    return f"{TARGET_NAMESPACES[target_type]}/{name}"


def detect_content_type(sample: bytes, filename: str) -> str:
    """Sniff the MIME type from the file's leading bytes.

    The client-supplied name is only consulted when libmagic cannot tell
    anything more specific than ``application/octet-stream``.
    """
    if sample:
        try:
            detected = magic.from_buffer(sample, mime=True)
        except magic.MagicException as exc:
            log_event({"event": "content_sniff_failed", "detail": str(exc), "error_class": "magic_error"})
            detected = None
        if detected and detected != DEFAULT_CONTENT_TYPE:
            return detected
    guessed, _ = mimetypes.guess_type(PureWindowsPath(filename).name)
    return guessed or DEFAULT_CONTENT_TYPE


def read_sample(blobs: BlobStore, key: str, size: int = SNIFF_SAMPLE_BYTES) -> bytes:
    try:
        source = blobs.open_read(key)
    except OSError as exc:
        raise StorageError(f"failed to read merged file {key}: {exc}") from exc
    try:
        return source.read(size)
    finally:
        source.close()


@dataclass(frozen=True)
class InitResult:
    upload_id: str
    chunk_size: int


@dataclass(frozen=True)
class SessionStatus:
    upload_id: str
    filename: str
    total_chunks: int
    file_size: int
    received_chunks: list[int]
    is_complete: bool
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class CompletedUpload:
    file_path: str
    url: str
    size: int
    content_type: str
    document: DocumentRecord | None = None


class UploadService:
    """Session lifecycle: initialize, receive chunks, report status, complete, cancel."""

    def __init__(
        self,
        store: UploadSessionStore,
        targets: AttachmentTargets,
        config: Settings = settings,
        name_factory: Callable[[], str] = random_file_stem,
    ) -> None:
        self.store = store
        self.targets = targets
        self.config = config
        self.name_factory = name_factory
        self.receiver = ChunkReceiver(store)
        self.merger = MergeEngine(store, buffer_size=config.merge_copy_buffer_bytes)

    def initialize(self, filename: str, total_chunks: int, file_size: int) -> InitResult:
        if not filename or not filename.strip():
            raise ValidationError("filename is required")
        if len(filename) > self.config.max_filename_length:
            raise ValidationError(f"filename exceeds {self.config.max_filename_length} characters")
        if not 1 <= total_chunks <= self.config.max_total_chunks:
            raise ValidationError(f"total_chunks must be between 1 and {self.config.max_total_chunks}")
        if not 1 <= file_size <= self.config.max_file_size_bytes:
            raise ValidationError(f"file_size must be between 1 and {self.config.max_file_size_bytes} bytes")

        upload_id = self.store.create(filename, total_chunks, file_size)
        sessions_initialized_total.inc()
        return InitResult(upload_id=upload_id, chunk_size=self.config.recommended_chunk_size_bytes)

    def store_chunk(self, upload_id: str, chunk_index: int, data: bytes) -> ChunkReceipt:
        if not data:
            chunk_rejections_total.labels(reason="empty").inc()
            raise ValidationError("chunk payload is empty")
        if len(data) > self.config.max_chunk_bytes:
            chunk_rejections_total.labels(reason="too_large").inc()
            raise PayloadTooLarge(len(data), self.config.max_chunk_bytes)
        return self.receiver.store_chunk(upload_id, chunk_index, data)

    def get_status(self, upload_id: str) -> SessionStatus | None:
        session = self.store.read(upload_id)
        if session is None:
            return None
        return SessionStatus(
            upload_id=session.upload_id,
            filename=session.filename,
            total_chunks=session.total_chunks,
            file_size=session.file_size,
            received_chunks=list(session.received_chunks),
            is_complete=self.store.is_complete(upload_id, session.total_chunks),
            created_at=session.created_at,
            updated_at=session.updated_at,
        )

    def complete(self, upload_id: str, target_type: str, target_id: int, uploader_id: str) -> CompletedUpload:
        session = self.store.read(upload_id)
        if session is None:
            raise SessionNotFound(upload_id)
        if target_type not in TARGET_NAMESPACES:
            raise ValidationError(f"unsupported target_type: {target_type}")
        if not self.store.is_complete(upload_id, session.total_chunks):
            raise UploadIncomplete(upload_id, len(session.received_chunks), session.total_chunks)
        if not self.targets.target_exists(target_type, target_id):
            raise TargetNotFound(target_type, target_id)

        self.store.acquire_merge_lease(upload_id, self.config.merge_lease_seconds)
        try:
            file_path = build_final_path(session.filename, target_type, self.name_factory())
            merged = self.merger.merge(upload_id, public_key(file_path))
            try:
                sample = read_sample(self.store.blobs, merged.destination_key)
                content_type = detect_content_type(sample, session.filename)
                document = self._attach(
                    target_type, target_id, file_path, session.filename, merged.size, content_type, uploader_id
                )
            except Exception:
                self._discard_artifact(upload_id, merged.destination_key)
                raise
        except Exception:
            self.store.release_merge_lease(upload_id)
            raise

        self._cleanup(upload_id, reason="completed")
        return CompletedUpload(
            file_path=file_path,
            url=public_url(file_path),
            size=merged.size,
            content_type=content_type,
            document=document,
        )

    def cancel(self, upload_id: str) -> None:
        self._cleanup(upload_id, reason="cancelled")

    def sweep(self, max_age_hours: int | None = None) -> dict[str, int]:
        hours = self.config.stale_session_ttl_hours if max_age_hours is None else max_age_hours
        return sweep_stale_sessions(self.store, hours)

    def _attach(
        self,
        target_type: str,
        target_id: int,
        file_path: str,
        original_name: str,
        size: int,
        content_type: str,
        uploader_id: str,
    ) -> DocumentRecord | None:
        if target_type == ORDER_DOCUMENT:
            return self.targets.attach_order_document(
                order_id=target_id,
                finalized_path=file_path,
                original_name=original_name,
                byte_size=size,
                content_type=content_type,
                uploader_id=uploader_id,
            )
        self.targets.replace_product_document(product_id=target_id, finalized_path=file_path)
        return None

    def _discard_artifact(self, upload_id: str, destination_key: str) -> None:
        try:
            self.store.blobs.delete(destination_key)
        except Exception as exc:
            log_event(
                {
                    "event": "artifact_cleanup_error",
                    "upload_id": upload_id,
                    "destination": destination_key,
                    "detail": str(exc),
                    "error_class": "storage_error",
                }
            )

    def _cleanup(self, upload_id: str, reason: str) -> bool:
        try:
            self.store.delete(upload_id)
        except Exception as exc:
            log_event(
                {
                    "event": "session_cleanup_error",
                    "upload_id": upload_id,
                    "reason": reason,
                    "detail": str(exc),
                    "error_class": "storage_error",
                }
            )
            return False
        return True
