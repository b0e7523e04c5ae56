import shutil
import time
from dataclasses import dataclass

from orderhub.errors import MissingChunk, SessionNotFound, SizeMismatch, StorageError, UploadIncomplete
from orderhub.logs import log_event
from orderhub.metrics import merge_failures_total, merge_latency_seconds, merges_total
from orderhub.sessions import UploadSessionStore, chunk_key
from orderhub.tracing import tracer


@dataclass(frozen=True)
class MergeResult:
    destination_key: str
    size: int


class MergeEngine:
    """Stitches a complete session's chunks into one artifact.

    Chunks are copied strictly by index, never by arrival order, in blocks of
    ``buffer_size`` bytes. The destination only appears once every chunk has
    been copied, and it is removed again if its size differs from the size
    recorded at initialization. Only the byte count is verified.
    """

    def __init__(self, store: UploadSessionStore, buffer_size: int = 1024 * 1024) -> None:
        self.store = store
        self.buffer_size = buffer_size

    def merge(self, upload_id: str, destination_key: str) -> MergeResult:
        session = self.store.read(upload_id)
        if session is None:
            raise SessionNotFound(upload_id)
        if not self.store.is_complete(upload_id, session.total_chunks):
            raise UploadIncomplete(upload_id, len(session.received_chunks), session.total_chunks)

        blobs = self.store.blobs
        started = time.perf_counter()
        with tracer.start_as_current_span("upload.merge") as span:
            span.set_attribute("upload.id", upload_id)
            span.set_attribute("upload.total_chunks", session.total_chunks)
            try:
                with blobs.writer(destination_key) as out:
                    for index in range(session.total_chunks):
                        self._copy_chunk(upload_id, index, out)
                actual = blobs.size(destination_key)
            except MissingChunk as exc:
                merge_failures_total.labels(reason="missing_chunk").inc()
                self._log_failure(upload_id, destination_key, exc)
                raise
            except (OSError, StorageError) as exc:
                merge_failures_total.labels(reason="storage_error").inc()
                self._log_failure(upload_id, destination_key, exc)
                if isinstance(exc, StorageError):
                    raise
                raise StorageError(f"failed to merge upload {upload_id}: {exc}") from exc

            if actual != session.file_size:
                error = SizeMismatch(session.file_size, actual)
                merge_failures_total.labels(reason="size_mismatch").inc()
                self._log_failure(upload_id, destination_key, error)
                self._discard(upload_id, destination_key)
                raise error
            span.set_attribute("upload.file_size", actual)

        merges_total.inc()
        merge_latency_seconds.observe(time.perf_counter() - started)
        return MergeResult(destination_key=destination_key, size=actual)

    def _copy_chunk(self, upload_id: str, index: int, out) -> None:
        key = chunk_key(upload_id, index)
        if not self.store.blobs.exists(key):
            raise MissingChunk(index)
        try:
            source = self.store.blobs.open_read(key)
        except FileNotFoundError as exc:
            raise MissingChunk(index) from exc
        try:
            shutil.copyfileobj(source, out, self.buffer_size)
        finally:
            source.close()

    @staticmethod
    def _log_failure(upload_id: str, destination_key: str, exc: Exception) -> None:
        log_event(
            {
                "event": "merge_failed",
                "upload_id": upload_id,
                "destination": destination_key,
                "error_class": type(exc).__name__,
                "detail": str(exc),
            }
        )

    def _discard(self, upload_id: str, destination_key: str) -> None:
        try:
            self.store.blobs.delete(destination_key)
        except (OSError, StorageError) as exc:
            log_event(
                {
                    "event": "artifact_cleanup_error",
                    "upload_id": upload_id,
                    "destination": destination_key,
                    "detail": str(exc),
                    "error_class": "storage_error",
                }
            )
