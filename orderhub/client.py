"""Client-side manager for the resumable chunked upload API.

Splits a local file into fixed-size chunks, uploads the ones the server has
not acknowledged yet, retries transient failures with exponential backoff and
finally asks the server to merge and attach the file.
"""

from __future__ import annotations

import enum
import logging
import math
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from threading import Lock

import httpx

DEFAULT_CHUNK_SIZE = 1024 * 1024

logger = logging.getLogger("orderhub.client")


class UploadState(str, enum.Enum):
    idle = "idle"
    initializing = "initializing"
    uploading = "uploading"
    paused = "paused"
    completing = "completing"
    completed = "completed"
    error = "error"
    cancelled = "cancelled"


@dataclass(frozen=True)
class UploadProgress:
    uploaded_chunks: int
    total_chunks: int
    percentage: int
    uploaded_bytes: int
    total_bytes: int


class ChunkUploadFailed(Exception):
    def __init__(self, chunk_index: int, attempts: int, cause: Exception) -> None:
        super().__init__(f"failed to upload chunk {chunk_index} after {attempts} attempts: {cause}")
        self.chunk_index = chunk_index
        self.attempts = attempts


def calculate_total_chunks(file_size: int, chunk_size: int = DEFAULT_CHUNK_SIZE) -> int:
    return math.ceil(file_size / chunk_size)


def chunk_bytes(data: bytes, chunk_size: int = DEFAULT_CHUNK_SIZE) -> list[bytes]:
    return [data[i : i + chunk_size] for i in range(0, len(data), chunk_size)]


def format_file_size(num_bytes: int) -> str:
    if num_bytes == 0:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB"]
    value = float(num_bytes)
    exponent = 0
    while value >= 1024 and exponent < len(units) - 1:
        value /= 1024
        exponent += 1
    return f"{round(value, 2):g} {units[exponent]}"


def _is_retryable(exc: Exception) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status >= 500 or status == 429
    return isinstance(exc, httpx.TransportError)


class ChunkedUploadManager:
    def __init__(
        self,
        client: httpx.Client,
        path: str | Path,
        target_type: str,
        target_id: int,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        max_retries: int = 3,
        base_delay: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.client = client
        self.path = Path(path)
        self.target_type = target_type
        self.target_id = target_id
        self.chunk_size = chunk_size
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.sleep = sleep

        self.file_size = self.path.stat().st_size
        self.total_chunks = calculate_total_chunks(self.file_size, chunk_size)
        self.upload_id: str | None = None
        self.uploaded: set[int] = set()
        self.result: dict | None = None
        self._state = UploadState.idle
        self._lock = Lock()

        self.on_progress: Callable[[UploadProgress], None] | None = None
        self.on_state_change: Callable[[UploadState], None] | None = None
        self.on_complete: Callable[[str], None] | None = None
        self.on_error: Callable[[Exception], None] | None = None

    @property
    def state(self) -> UploadState:
        return self._state

    def start(self) -> dict | None:
        try:
            self._set_state(UploadState.initializing)
            response = self.client.post(
                "/uploads/init",
                json={"filename": self.path.name, "total_chunks": self.total_chunks, "file_size": self.file_size},
            )
            response.raise_for_status()
            self.upload_id = response.json()["upload_id"]
            self._sync_received_chunks()
            return self._run()
        except Exception as exc:
            self._fail(exc)
            raise

    def resume(self) -> dict | None:
        if self._state != UploadState.paused:
            return None
        try:
            self._sync_received_chunks()
            return self._run()
        except Exception as exc:
            self._fail(exc)
            raise

    def pause(self) -> None:
        with self._lock:
            if self._state == UploadState.uploading:
                self._set_state(UploadState.paused)

    def cancel(self) -> None:
        self._set_state(UploadState.cancelled)
        if not self.upload_id:
            return
        try:
            self.client.delete(f"/uploads/{self.upload_id}").raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("failed to cancel upload %s: %s", self.upload_id, exc)

    def progress(self) -> UploadProgress:
        uploaded = len(self.uploaded)
        percentage = round(uploaded / self.total_chunks * 100) if self.total_chunks else 0
        return UploadProgress(
            uploaded_chunks=uploaded,
            total_chunks=self.total_chunks,
            percentage=percentage,
            uploaded_bytes=min(uploaded * self.chunk_size, self.file_size),
            total_bytes=self.file_size,
        )

    def read_chunk(self, index: int) -> bytes:
        with self.path.open("rb") as handle:
            handle.seek(index * self.chunk_size)
            return handle.read(self.chunk_size)

    def _run(self) -> dict | None:
        self._set_state(UploadState.uploading)
        for index in range(self.total_chunks):
            if self._state in (UploadState.paused, UploadState.cancelled):
                return None
            if index in self.uploaded:
                continue
            self._upload_chunk_with_retry(index)
        if self._state != UploadState.uploading:
            return None
        return self._complete()

    def _sync_received_chunks(self) -> None:
        response = self.client.get(f"/uploads/{self.upload_id}/status")
        response.raise_for_status()
        self.uploaded.update(response.json()["received_chunks"])
        self._notify_progress()

    def _upload_chunk_with_retry(self, index: int) -> None:
        data = self.read_chunk(index)
        for attempt in range(self.max_retries):
            try:
                response = self.client.post(
                    f"/uploads/{self.upload_id}/chunk",
                    data={"chunk_index": str(index)},
                    files={"chunk": (f"chunk_{index}", data, "application/octet-stream")},
                )
                response.raise_for_status()
            except httpx.HTTPError as exc:
                if not _is_retryable(exc) or attempt == self.max_retries - 1:
                    raise ChunkUploadFailed(index, attempt + 1, exc) from exc
                self.sleep(self.base_delay * 2**attempt)
                continue
            self.uploaded.update(response.json()["received_chunks"])
            self.uploaded.add(index)
            self._notify_progress()
            return

    def _complete(self) -> dict:
        self._set_state(UploadState.completing)
        response = self.client.post(
            f"/uploads/{self.upload_id}/complete",
            json={"target_type": self.target_type, "target_id": self.target_id},
        )
        response.raise_for_status()
        self.result = response.json()
        self._set_state(UploadState.completed)
        if self.on_complete:
            self.on_complete(self.result["url"])
        return self.result

    def _fail(self, exc: Exception) -> None:
        self._set_state(UploadState.error)
        if self.on_error:
            self.on_error(exc)

    def _set_state(self, state: UploadState) -> None:
        self._state = state
        if self.on_state_change:
            self.on_state_change(state)

    def _notify_progress(self) -> None:
        if self.on_progress:
            self.on_progress(self.progress())
