import asyncio
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, File, Form, HTTPException, Query, Request, Response, UploadFile
from fastapi.responses import JSONResponse

from orderhub.attachments import SqlAttachmentTargets
from orderhub.auth import Principal, require_admin, require_principal
from orderhub.blobstore import build_blob_store
from orderhub.config import settings
from orderhub.db import create_schema
from orderhub.errors import SessionNotFound, UploadError
from orderhub.logs import audit_event, log_event
from orderhub.metrics import http_request_duration_seconds, metrics_response
from orderhub.schemas import (
    CancelUploadResponse,
    CompleteUploadRequest,
    CompleteUploadResponse,
    ErrorResponse,
    InitUploadRequest,
    InitUploadResponse,
    SweepResponse,
    UploadChunkResponse,
    UploadStatusResponse,
)
from orderhub.service import UploadService
from orderhub.sessions import UploadSessionStore
from orderhub.tracing import current_trace_id, setup_tracing

blob_store = build_blob_store()
session_store = UploadSessionStore(blob_store)
upload_service = UploadService(session_store, SqlAttachmentTargets(blob_store))


def get_upload_service() -> UploadService:
    return upload_service


@asynccontextmanager
async def lifespan(_: FastAPI):
    stop_event = asyncio.Event()
    tasks: list[asyncio.Task] = []

    async def _periodic_sweep_loop() -> None:
        while not stop_event.is_set():
            try:
                stats = await asyncio.to_thread(upload_service.sweep)
                if stats["sessions_deleted"] or stats["errors"]:
                    log_event({"event": "sessions_swept", **stats})
            except Exception as exc:
                log_event({"event": "sweep_error", "detail": str(exc), "error_class": "maintenance_error"})
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=max(1, settings.cleanup_interval_seconds))
            except asyncio.TimeoutError:
                pass

    if settings.auto_create_schema:
        create_schema()
    if settings.cleanup_enabled:
        tasks.append(asyncio.create_task(_periodic_sweep_loop()))
    yield
    stop_event.set()
    for task in tasks:
        await task


app = FastAPI(title=settings.app_name, lifespan=lifespan)
setup_tracing(app)


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


def _upload_id(request: Request) -> str | None:
    return request.path_params.get("upload_id")


def _route_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None and hasattr(route, "path"):
        return str(route.path)
    return request.url.path


def _error_code_for_status(status_code: int) -> str:
    mapping = {
        400: "bad_request",
        401: "missing_credentials",
        403: "forbidden",
        404: "not_found",
        409: "conflict",
        413: "payload_too_large",
        429: "throttled",
        500: "internal_error",
    }
    return mapping.get(status_code, f"http_{status_code}")


def _error_response(request: Request, status_code: int, detail: str, error_code: str, headers=None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "detail": detail,
            "error_code": error_code,
            "request_id": _request_id(request),
            "upload_id": _upload_id(request),
            "trace_id": current_trace_id(),
        },
        headers=headers or {},
    )


def _log_request_error(request: Request, status_code: int, error_class: str, detail: str) -> None:
    log_event(
        {
            "event": "request_error",
            "request_id": _request_id(request),
            "upload_id": _upload_id(request),
            "method": request.method,
            "path": request.url.path,
            "status_code": status_code,
            "error_class": error_class,
            "detail": detail,
        }
    )


COMMON_ERROR_RESPONSES = {
    401: {"model": ErrorResponse, "description": "Missing credentials"},
    403: {"model": ErrorResponse, "description": "Forbidden"},
    429: {"model": ErrorResponse, "description": "Throttled request"},
    500: {"model": ErrorResponse, "description": "Internal server error"},
}
NOT_FOUND_RESPONSE = {404: {"model": ErrorResponse, "description": "Upload session not found"}}


@app.middleware("http")
async def request_context_and_logging(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request.state.request_id = request_id
    start = time.perf_counter()

    response = await call_next(request)
    duration_ms = round((time.perf_counter() - start) * 1000, 2)
    response.headers["X-Request-ID"] = request_id
    http_request_duration_seconds.labels(
        method=request.method,
        route=_route_label(request),
        status_code=str(response.status_code),
    ).observe(duration_ms / 1000.0)

    log_event(
        {
            "event": "request_completed",
            "request_id": request_id,
            "upload_id": _upload_id(request),
            "method": request.method,
            "path": request.url.path,
            "status_code": response.status_code,
            "duration_ms": duration_ms,
        }
    )
    return response


@app.exception_handler(UploadError)
async def upload_error_handler(request: Request, exc: UploadError):
    error_class = "client_error" if exc.status_code < 500 else "server_error"
    _log_request_error(request, exc.status_code, error_class, exc.detail)
    return _error_response(request, exc.status_code, exc.detail, exc.error_code)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    error_class = "client_error" if 400 <= exc.status_code < 500 else "server_error"
    _log_request_error(request, exc.status_code, error_class, str(exc.detail))
    return _error_response(
        request, exc.status_code, str(exc.detail), _error_code_for_status(exc.status_code), exc.headers
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    _log_request_error(request, 500, "unhandled_exception", str(exc))
    return _error_response(request, 500, "internal server error", "internal_error")


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/version")
def version() -> dict[str, str]:
    return {
        "app_name": settings.app_name,
        "app_version": settings.app_version,
        "storage_backend": settings.storage_backend,
    }


@app.get("/metrics")
def metrics() -> Response:
    return metrics_response()


@app.post(
    "/uploads/init",
    response_model=InitUploadResponse,
    status_code=201,
    responses={**COMMON_ERROR_RESPONSES, 400: {"model": ErrorResponse, "description": "Validation error"}},
)
def init_upload(
    request: Request,
    payload: InitUploadRequest,
    principal: Principal = Depends(require_principal),
    service: UploadService = Depends(get_upload_service),
) -> InitUploadResponse:
    result = service.initialize(payload.filename, payload.total_chunks, payload.file_size)
    audit_event(
        {
            "event": "audit",
            "action": "upload_init",
            "request_id": _request_id(request),
            "upload_id": result.upload_id,
            "user_id": principal.user_id,
            "total_chunks": payload.total_chunks,
            "file_size": payload.file_size,
        }
    )
    return InitUploadResponse(upload_id=result.upload_id, chunk_size=result.chunk_size)


@app.post(
    "/uploads/{upload_id}/chunk",
    response_model=UploadChunkResponse,
    responses={
        **COMMON_ERROR_RESPONSES,
        **NOT_FOUND_RESPONSE,
        400: {"model": ErrorResponse, "description": "Validation error"},
        413: {"model": ErrorResponse, "description": "Chunk payload too large"},
    },
)
async def upload_chunk(
    upload_id: str,
    chunk_index: int = Form(...),
    chunk: UploadFile = File(...),
    principal: Principal = Depends(require_principal),
    service: UploadService = Depends(get_upload_service),
) -> UploadChunkResponse:
    # One byte past the limit is enough to reject without buffering the whole body.
    data = await chunk.read(settings.max_chunk_bytes + 1)
    receipt = await asyncio.to_thread(service.store_chunk, upload_id, chunk_index, data)
    return UploadChunkResponse(received_chunks=receipt.received_chunks, total_chunks=receipt.total_chunks)


@app.get(
    "/uploads/{upload_id}/status",
    response_model=UploadStatusResponse,
    responses={**COMMON_ERROR_RESPONSES, **NOT_FOUND_RESPONSE},
)
def upload_status(
    upload_id: str,
    principal: Principal = Depends(require_principal),
    service: UploadService = Depends(get_upload_service),
) -> UploadStatusResponse:
    status = service.get_status(upload_id)
    if status is None:
        raise SessionNotFound(upload_id)
    return UploadStatusResponse(
        upload_id=status.upload_id,
        filename=status.filename,
        total_chunks=status.total_chunks,
        file_size=status.file_size,
        received_chunks=status.received_chunks,
        is_complete=status.is_complete,
        created_at=status.created_at,
        updated_at=status.updated_at,
    )


@app.post(
    "/uploads/{upload_id}/complete",
    response_model=CompleteUploadResponse,
    responses={
        **COMMON_ERROR_RESPONSES,
        400: {"model": ErrorResponse, "description": "Upload incomplete"},
        404: {"model": ErrorResponse, "description": "Upload session or target not found"},
        409: {"model": ErrorResponse, "description": "Merge conflict or integrity failure"},
    },
)
def complete_upload(
    request: Request,
    upload_id: str,
    payload: CompleteUploadRequest,
    principal: Principal = Depends(require_principal),
    service: UploadService = Depends(get_upload_service),
) -> CompleteUploadResponse:
    completed = service.complete(upload_id, payload.target_type, payload.target_id, principal.user_id)
    audit_event(
        {
            "event": "audit",
            "action": "upload_complete",
            "request_id": _request_id(request),
            "upload_id": upload_id,
            "user_id": principal.user_id,
            "target_type": payload.target_type,
            "target_id": payload.target_id,
            "file_path": completed.file_path,
            "file_size": completed.size,
        }
    )
    return CompleteUploadResponse(file_path=completed.file_path, url=completed.url)


@app.delete(
    "/uploads/{upload_id}",
    response_model=CancelUploadResponse,
    responses={**COMMON_ERROR_RESPONSES},
)
def cancel_upload(
    request: Request,
    upload_id: str,
    principal: Principal = Depends(require_principal),
    service: UploadService = Depends(get_upload_service),
) -> CancelUploadResponse:
    service.cancel(upload_id)
    audit_event(
        {
            "event": "audit",
            "action": "upload_cancel",
            "request_id": _request_id(request),
            "upload_id": upload_id,
            "user_id": principal.user_id,
        }
    )
    return CancelUploadResponse()


@app.post(
    "/admin/uploads/sweep",
    response_model=SweepResponse,
    responses={**COMMON_ERROR_RESPONSES},
)
def sweep_sessions(
    max_age_hours: int | None = Query(default=None, ge=0),
    principal: Principal = Depends(require_admin),
    service: UploadService = Depends(get_upload_service),
) -> SweepResponse:
    stats = service.sweep(max_age_hours)
    return SweepResponse(status="ok", requested_by=principal.user_id, **stats)
