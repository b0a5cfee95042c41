from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response

parts_uploaded_total = Counter("parts_uploaded_total", "Total upload parts accepted")
bytes_uploaded_total = Counter("bytes_uploaded_total", "Total part bytes accepted")
part_upload_failures_total = Counter("part_upload_failures_total", "Total part writes that failed in the part store")
uploads_completed_total = Counter("uploads_completed_total", "Total chunked uploads completed")
uploads_failed_total = Counter("uploads_failed_total", "Total chunked uploads that failed during completion")
sessions_swept_total = Counter("sessions_swept_total", "Total expired upload sessions removed by the sweep")
assets_published_total = Counter("assets_published_total", "Total assets published", ["source"])
visits_recorded_total = Counter("visits_recorded_total", "Total visits recorded by analytics")
throttled_requests_total = Counter("throttled_requests_total", "Total throttled requests")

active_upload_sessions = Gauge("active_upload_sessions", "Upload sessions currently held by the registry")
inflight_part_bytes = Gauge("inflight_part_bytes", "Part bytes currently buffered by in-flight part writes")

part_store_write_latency_seconds = Histogram("part_store_write_latency_seconds", "Part store write latency in seconds")
assembly_latency_seconds = Histogram("assembly_latency_seconds", "Assembly and publication latency in seconds")
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "route", "status_code"],
)


def metrics_response() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
