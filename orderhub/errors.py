class UploadError(Exception):
    """Base class for failures surfaced by the upload pipeline.

    Every subclass carries the HTTP status and machine-readable error code the
    API layer reports, so the route handlers never need to translate by hand.
    """

    status_code = 500
    error_code = "internal_error"

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class SessionNotFound(UploadError):
    status_code = 404
    error_code = "upload_not_found"

    def __init__(self, upload_id: str) -> None:
        super().__init__(f"upload session not found: {upload_id}")
        self.upload_id = upload_id


class TargetNotFound(UploadError):
    status_code = 404
    error_code = "target_not_found"

    def __init__(self, target_type: str, target_id: int) -> None:
        super().__init__(f"{target_type} target not found: {target_id}")
        self.target_type = target_type
        self.target_id = target_id


class ValidationError(UploadError):
    status_code = 400
    error_code = "validation_error"


class InvalidChunkIndex(ValidationError):
    error_code = "invalid_chunk_index"

    def __init__(self, index: int, total_chunks: int) -> None:
        super().__init__(f"invalid chunk index {index}, expected 0..{total_chunks - 1}")
        self.index = index
        self.total_chunks = total_chunks


class PayloadTooLarge(ValidationError):
    status_code = 413
    error_code = "payload_too_large"

    def __init__(self, size: int, limit: int) -> None:
        super().__init__(f"chunk payload of {size} bytes exceeds limit of {limit} bytes")
        self.size = size
        self.limit = limit


class UploadIncomplete(UploadError):
    status_code = 400
    error_code = "upload_incomplete"

    def __init__(self, upload_id: str, received: int, total: int) -> None:
        super().__init__(f"upload {upload_id} is not complete: {received}/{total} chunks received")
        self.upload_id = upload_id
        self.received = received
        self.total = total


class MergeError(UploadError):
    status_code = 409
    error_code = "merge_failed"


class MissingChunk(MergeError):
    error_code = "missing_chunk"

    def __init__(self, index: int) -> None:
        super().__init__(f"missing chunk {index}, re-upload it and retry complete")
        self.index = index


class SizeMismatch(MergeError):
    error_code = "size_mismatch"

    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(f"file size mismatch after merge: expected {expected} bytes, got {actual}")
        self.expected = expected
        self.actual = actual


class MergeInProgress(UploadError):
    status_code = 409
    error_code = "merge_in_progress"

    def __init__(self, upload_id: str) -> None:
        super().__init__(f"upload {upload_id} is already being completed")
        self.upload_id = upload_id


class StorageError(UploadError):
    status_code = 500
    error_code = "storage_error"
