import time
from dataclasses import dataclass

from orderhub.errors import InvalidChunkIndex, SessionNotFound, StorageError
from orderhub.metrics import bytes_received_total, chunk_write_latency_seconds, chunks_received_total
from orderhub.sessions import UploadSession, UploadSessionStore, chunk_key


@dataclass(frozen=True)
class ChunkReceipt:
    received_chunks: list[int]
    total_chunks: int


class ChunkReceiver:
    def __init__(self, store: UploadSessionStore) -> None:
        self.store = store

    def store_chunk(self, upload_id: str, chunk_index: int, data: bytes) -> ChunkReceipt:
        session = self.store.read(upload_id)
        if session is None:
            raise SessionNotFound(upload_id)
        if chunk_index < 0 or chunk_index >= session.total_chunks:
            raise InvalidChunkIndex(chunk_index, session.total_chunks)

        started = time.perf_counter()
        try:
            # Retries overwrite whatever an earlier attempt left at this index.
            self.store.blobs.put(chunk_key(upload_id, chunk_index), data)
        except OSError as exc:
            raise StorageError(f"failed to store chunk {chunk_index} of {upload_id}: {exc}") from exc
        chunk_write_latency_seconds.observe(time.perf_counter() - started)

        def _record(current: UploadSession) -> None:
            current.mark_received(chunk_index, self.store.clock())

        try:
            updated = self.store.update(upload_id, _record)
        except SessionNotFound:
            # Cancelled while the bytes were in flight: drop what we just wrote.
            self.store.discard_if_orphaned(upload_id)
            raise

        chunks_received_total.inc()
        bytes_received_total.inc(len(data))
        return ChunkReceipt(received_chunks=list(updated.received_chunks), total_chunks=updated.total_chunks)
