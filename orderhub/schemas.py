from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field


class InitUploadRequest(BaseModel):
    filename: str = Field(min_length=1, max_length=255)
    total_chunks: int = Field(ge=1)
    file_size: int = Field(ge=1)


class InitUploadResponse(BaseModel):
    upload_id: str
    chunk_size: int


class UploadChunkResponse(BaseModel):
    success: bool = True
    received_chunks: list[int]
    total_chunks: int


class UploadStatusResponse(BaseModel):
    upload_id: str
    filename: str
    total_chunks: int
    file_size: int
    received_chunks: list[int]
    is_complete: bool
    created_at: datetime
    updated_at: datetime


class CompleteUploadRequest(BaseModel):
    target_type: Literal["order_document", "product_document"]
    target_id: int = Field(ge=1)


class CompleteUploadResponse(BaseModel):
    file_path: str
    url: str


class CancelUploadResponse(BaseModel):
    success: bool = True


class SweepResponse(BaseModel):
    status: str
    requested_by: str
    sessions_scanned: int
    sessions_deleted: int
    orphans_deleted: int
    errors: int


class ErrorResponse(BaseModel):
    detail: str
    error_code: str
    request_id: str | None = None
    upload_id: str | None = None
