from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.responses import Response

sessions_initialized_total = Counter("upload_sessions_initialized_total", "Total upload sessions initialized")
chunks_received_total = Counter("upload_chunks_received_total", "Total chunks stored")
bytes_received_total = Counter("upload_bytes_received_total", "Total chunk bytes stored")
chunk_rejections_total = Counter("upload_chunk_rejections_total", "Rejected chunk uploads", ["reason"])
merges_total = Counter("upload_merges_total", "Successful chunk merges")
merge_failures_total = Counter("upload_merge_failures_total", "Failed chunk merges", ["reason"])
sessions_swept_total = Counter("upload_sessions_swept_total", "Sessions removed by garbage collection")
throttled_requests_total = Counter("throttled_requests_total", "Total throttled requests")

chunk_write_latency_seconds = Histogram("upload_chunk_write_latency_seconds", "Chunk storage write latency in seconds")
merge_latency_seconds = Histogram("upload_merge_latency_seconds", "Chunk merge latency in seconds")
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "route", "status_code"],
)


def metrics_response() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
