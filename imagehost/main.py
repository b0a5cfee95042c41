import asyncio
import mimetypes
import posixpath
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, File, Header, HTTPException, Request, Response, UploadFile
from fastapi.responses import JSONResponse, RedirectResponse

from imagehost.analytics import VisitAnalyticsAggregator, VisitContext, build_country_resolver
from imagehost.assets import AssetRepository
from imagehost.auth import AuthUser, ensure_owner, require_admin_user, require_api_user
from imagehost.config import settings
from imagehost.coordinator import UploadCoordinator
from imagehost.db import Base, SessionLocal, engine
from imagehost.errors import Incomplete, UploadError
from imagehost.events import audit_event, log_event, trace_id
from imagehost.images import ImageLibrary, ImageUpload
from imagehost.imaging import ImageProcessingOptions
from imagehost.limits import InflightPartLimiter
from imagehost.maintenance import sweep_once
from imagehost.metrics import http_request_duration_seconds, metrics_response
from imagehost.models import Asset
from imagehost.publisher import AssetPublisher
from imagehost.qr import qr_data_url, qr_png
from imagehost.registry import UploadSession, UploadSessionRegistry
from imagehost.schemas import (
    AbortUploadResponse,
    BatchUploadResponse,
    CompleteUploadResponse,
    CountEntry,
    ErrorResponse,
    ImageListResponse,
    ImageResponse,
    InitUploadRequest,
    InitUploadResponse,
    MissingPartsResponse,
    ProgressResponse,
    SweepResponse,
    UploadPartResponse,
    VisitStatsResponse,
)
from imagehost.shortcode import ShortCodeIssuer
from imagehost.storage import ASSETS_PREFIX, ObjectNotFound, PartStore, build_storage
from imagehost.tracing import setup_tracing

storage = build_storage()
part_store = PartStore(storage)
registry = UploadSessionRegistry(
    part_size=settings.part_size_bytes,
    max_parts=settings.max_parts_per_upload,
    ttl_seconds=settings.upload_session_ttl_seconds,
    allowed_mime_types=settings.allowed_mime_type_set(),
    part_store=part_store,
)
asset_repository = AssetRepository(SessionLocal)
library = ImageLibrary(
    publisher=AssetPublisher(storage, ImageProcessingOptions.from_settings(settings)),
    issuer=ShortCodeIssuer(
        asset_repository.exists,
        length=settings.short_code_length,
        attempts_per_length=settings.short_code_attempts_per_length,
        max_length=settings.short_code_max_length,
    ),
    assets=asset_repository,
    allowed_mime_types=settings.allowed_mime_type_set(),
)
coordinator = UploadCoordinator(registry, part_store, library)
analytics = VisitAnalyticsAggregator(library.exists)
upload_limiter = InflightPartLimiter(settings.max_inflight_parts_per_upload, settings.max_inflight_part_bytes)


@asynccontextmanager
async def lifespan(_: FastAPI):
    if settings.database_auto_create:
        Base.metadata.create_all(bind=engine)
    analytics.country_resolver = build_country_resolver(settings.geoip_database_path)

    stop_event = asyncio.Event()
    tasks: list[asyncio.Task] = []

    async def _periodic_sweep_loop() -> None:
        while not stop_event.is_set():
            try:
                stats = await asyncio.to_thread(sweep_once, registry, part_store)
                if any(stats.values()):
                    log_event({"event": "sweep_completed", **stats})
            except Exception as exc:
                log_event({"event": "sweep_error", "detail": str(exc), "error_class": "maintenance_error"})
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=max(1, settings.sweep_interval_seconds))
            except asyncio.TimeoutError:
                pass

    if settings.sweep_enabled:
        tasks.append(asyncio.create_task(_periodic_sweep_loop()))
    yield
    stop_event.set()
    for task in tasks:
        await task
    analytics.close()


app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)
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
        416: "range_not_satisfiable",
        429: "throttled",
        500: "internal_error",
    }
    return mapping.get(status_code, f"http_{status_code}")


COMMON_ERROR_RESPONSES = {
    401: {"model": ErrorResponse, "description": "Missing credentials"},
    403: {"model": ErrorResponse, "description": "Forbidden"},
    429: {"model": ErrorResponse, "description": "Throttled request"},
    500: {"model": ErrorResponse, "description": "Internal server error"},
}
UPLOAD_ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Invalid request"},
    404: {"model": ErrorResponse, "description": "Upload session not found"},
    409: {"model": ErrorResponse, "description": "Invalid state or incomplete upload"},
    502: {"model": ErrorResponse, "description": "Storage failure"},
}


def _share_url(short_code: str) -> str:
    return f"{settings.public_base_url.rstrip('/')}/i/{short_code}"


def _image_response(asset: Asset) -> ImageResponse:
    return ImageResponse(
        short_code=asset.short_code,
        file_name=asset.file_name,
        mime_type=asset.mime_type,
        size=asset.size,
        batch_id=asset.batch_id,
        created_at=asset.created_at,
        asset_url=library.url_for(asset),
        share_url=_share_url(asset.short_code),
    )


def _visit_context(request: Request) -> VisitContext:
    remote_ip = request.client.host if request.client else None
    forwarded = request.headers.get("X-Forwarded-For")
    if settings.trust_forwarded_for and forwarded:
        remote_ip = forwarded.split(",")[0].strip() or remote_ip
    return VisitContext(
        user_agent=request.headers.get("User-Agent", ""),
        referrer=request.headers.get("Referer"),
        remote_ip=remote_ip,
    )


def _get_owned_session(upload_id: str, user: AuthUser) -> UploadSession:
    session = coordinator.get_session(upload_id)
    ensure_owner(session.owner_id, user, "upload")
    return session


def _count_entries(counter, by_key: bool = False) -> list[CountEntry]:
    items = sorted(counter.items()) if by_key else counter.most_common()
    return [CountEntry(key=key, count=count) for key, count in items]


@app.middleware("http")
async def request_context_and_logging(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request.state.request_id = request_id
    start = time.perf_counter()

    response = await call_next(request)
    duration_ms = round((time.perf_counter() - start) * 1000, 2)
    response.headers["X-Request-ID"] = request_id
    response.headers["X-Imagehost-Version"] = settings.app_version
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


def _error_log(request: Request, status_code: int, error_class: str, detail: str, upload_id: str | None) -> None:
    log_event(
        {
            "event": "request_error",
            "request_id": _request_id(request),
            "upload_id": upload_id,
            "method": request.method,
            "path": request.url.path,
            "status_code": status_code,
            "error_class": error_class,
            "detail": detail,
        }
    )


@app.exception_handler(UploadError)
async def upload_error_handler(request: Request, exc: UploadError):
    upload_id = exc.upload_id or _upload_id(request)
    _error_log(
        request,
        exc.status_code,
        "client_error" if exc.status_code < 500 else "server_error",
        exc.detail,
        upload_id,
    )
    content = {
        "detail": exc.detail,
        "error_code": exc.error_code,
        "request_id": _request_id(request),
        "upload_id": upload_id,
        "trace_id": trace_id(),
    }
    if isinstance(exc, Incomplete):
        content["progress_percent"] = exc.progress_percent
        content["missing_part_numbers"] = exc.missing_parts
    return JSONResponse(status_code=exc.status_code, content=content)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    _error_log(
        request,
        exc.status_code,
        "client_error" if 400 <= exc.status_code < 500 else "server_error",
        str(exc.detail),
        _upload_id(request),
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "detail": str(exc.detail),
            "error_code": _error_code_for_status(exc.status_code),
            "request_id": _request_id(request),
            "upload_id": _upload_id(request),
            "trace_id": trace_id(),
        },
        headers=exc.headers or {},
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    _error_log(request, 500, "unhandled_exception", str(exc), _upload_id(request))
    return JSONResponse(
        status_code=500,
        content={
            "detail": "internal server error",
            "error_code": "internal_error",
            "request_id": _request_id(request),
            "upload_id": _upload_id(request),
            "trace_id": trace_id(),
        },
    )


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


@app.post("/v1/admin/sweep", response_model=SweepResponse, responses={**COMMON_ERROR_RESPONSES})
def run_sweep(request: Request, user: AuthUser = Depends(require_admin_user)) -> SweepResponse:
    stats = sweep_once(registry, part_store)
    audit_event(
        {
            "event": "audit",
            "action": "admin_sweep",
            "request_id": _request_id(request),
            "user_id": user.user_id,
            **stats,
        }
    )
    return SweepResponse(status="ok", requested_by=user.user_id, **stats)


@app.post(
    "/v1/uploads/init",
    response_model=InitUploadResponse,
    status_code=201,
    responses={**COMMON_ERROR_RESPONSES, 400: {"model": ErrorResponse, "description": "Invalid request"}},
)
def init_upload(
    request: Request,
    payload: InitUploadRequest,
    user: AuthUser = Depends(require_api_user),
) -> InitUploadResponse:
    session = coordinator.init_upload(payload.file_name, payload.mime_type, payload.file_size, owner_id=user.user_id)
    audit_event(
        {
            "event": "audit",
            "action": "upload_init",
            "request_id": _request_id(request),
            "upload_id": session.id,
            "user_id": user.user_id,
            "status": session.status.value,
            "file_size": session.declared_size,
            "part_size": session.part_size,
            "total_parts": session.total_parts,
        }
    )
    return InitUploadResponse(
        upload_id=session.id,
        part_size=session.part_size,
        total_parts=session.total_parts,
        status=session.status.value,
        expires_at=session.expires_at,
    )


@app.put(
    "/v1/uploads/{upload_id}/parts/{part_number}",
    response_model=UploadPartResponse,
    status_code=202,
    responses={**COMMON_ERROR_RESPONSES, **UPLOAD_ERROR_RESPONSES},
)
async def upload_part(
    upload_id: str,
    part_number: int,
    request: Request,
    content_length: int = Header(default=0),
    user: AuthUser = Depends(require_api_user),
) -> UploadPartResponse:
    _get_owned_session(upload_id, user)
    body = await request.body()
    if content_length and content_length != len(body):
        raise HTTPException(status_code=400, detail="content-length mismatch")

    with upload_limiter.slot(upload_id, len(body)):
        receipt = await asyncio.to_thread(coordinator.accept_part, upload_id, part_number, body)

    return UploadPartResponse(
        upload_id=upload_id,
        part_number=part_number,
        progress_percent=receipt.progress_percent,
        status=receipt.status.value,
    )


@app.get(
    "/v1/uploads/{upload_id}/progress",
    response_model=ProgressResponse,
    responses={**COMMON_ERROR_RESPONSES, **UPLOAD_ERROR_RESPONSES},
)
def upload_progress(upload_id: str, user: AuthUser = Depends(require_api_user)) -> ProgressResponse:
    _get_owned_session(upload_id, user)
    progress = coordinator.get_progress(upload_id)
    return ProgressResponse(
        upload_id=upload_id,
        progress_percent=progress.progress_percent,
        status=progress.status.value,
        uploaded_parts=progress.uploaded_parts,
        total_parts=progress.total_parts,
    )


@app.get(
    "/v1/uploads/{upload_id}/missing-parts",
    response_model=MissingPartsResponse,
    responses={**COMMON_ERROR_RESPONSES, **UPLOAD_ERROR_RESPONSES},
)
def missing_parts(upload_id: str, user: AuthUser = Depends(require_api_user)) -> MissingPartsResponse:
    session = _get_owned_session(upload_id, user)
    return MissingPartsResponse(
        upload_id=upload_id,
        missing_part_numbers=coordinator.missing_parts(upload_id),
        status=session.status.value,
    )


@app.post(
    "/v1/uploads/{upload_id}/complete",
    response_model=CompleteUploadResponse,
    responses={**COMMON_ERROR_RESPONSES, **UPLOAD_ERROR_RESPONSES},
)
def complete_upload(
    request: Request,
    upload_id: str,
    user: AuthUser = Depends(require_api_user),
) -> CompleteUploadResponse:
    _get_owned_session(upload_id, user)
    completed = coordinator.complete_upload(upload_id)
    audit_event(
        {
            "event": "audit",
            "action": "upload_complete",
            "request_id": _request_id(request),
            "upload_id": upload_id,
            "user_id": user.user_id,
            "short_code": completed.short_code,
            "size": completed.asset.size,
        }
    )
    return CompleteUploadResponse(
        upload_id=upload_id,
        short_code=completed.short_code,
        asset_url=completed.asset_url,
        share_url=_share_url(completed.short_code),
        status="completed",
    )


@app.delete(
    "/v1/uploads/{upload_id}",
    response_model=AbortUploadResponse,
    responses={**COMMON_ERROR_RESPONSES, **UPLOAD_ERROR_RESPONSES},
)
def abort_upload(request: Request, upload_id: str, user: AuthUser = Depends(require_api_user)) -> AbortUploadResponse:
    _get_owned_session(upload_id, user)
    session = coordinator.abort_upload(upload_id)
    audit_event(
        {
            "event": "audit",
            "action": "upload_abort",
            "request_id": _request_id(request),
            "upload_id": upload_id,
            "user_id": user.user_id,
            "status": session.status.value,
        }
    )
    return AbortUploadResponse(upload_id=upload_id, status="aborted")


@app.post(
    "/v1/images",
    response_model=ImageResponse,
    status_code=201,
    responses={**COMMON_ERROR_RESPONSES, 400: {"model": ErrorResponse, "description": "Invalid image"}},
)
def upload_image(
    request: Request,
    file: UploadFile = File(...),
    user: AuthUser = Depends(require_api_user),
) -> ImageResponse:
    upload = _read_upload(file)
    library.validate(upload)
    asset = library.create_image(upload.data, upload.file_name, upload.mime_type, owner_id=user.user_id)
    audit_event(
        {
            "event": "audit",
            "action": "image_upload",
            "request_id": _request_id(request),
            "user_id": user.user_id,
            "short_code": asset.short_code,
            "size": asset.size,
        }
    )
    return _image_response(asset)


@app.post(
    "/v1/images/batch",
    response_model=BatchUploadResponse,
    status_code=201,
    responses={**COMMON_ERROR_RESPONSES, 400: {"model": ErrorResponse, "description": "Invalid batch"}},
)
def upload_batch(
    request: Request,
    files: list[UploadFile] = File(...),
    user: AuthUser = Depends(require_api_user),
) -> BatchUploadResponse:
    if len(files) > settings.max_batch_files:
        raise HTTPException(status_code=400, detail=f"at most {settings.max_batch_files} files per batch")
    uploads = [_read_upload(file) for file in files]
    batch_id, assets = library.create_batch(uploads, owner_id=user.user_id)
    batch_url = f"{settings.public_base_url.rstrip('/')}/v1/batches/{batch_id}"
    audit_event(
        {
            "event": "audit",
            "action": "batch_upload",
            "request_id": _request_id(request),
            "user_id": user.user_id,
            "batch_id": batch_id,
            "count": len(assets),
        }
    )
    return BatchUploadResponse(
        batch_id=batch_id,
        batch_url=batch_url,
        qr_code=qr_data_url(batch_url),
        count=len(assets),
        images=[_image_response(asset) for asset in assets],
    )


def _read_upload(file: UploadFile) -> ImageUpload:
    data = file.file.read(settings.max_image_upload_bytes + 1)
    if len(data) > settings.max_image_upload_bytes:
        raise HTTPException(status_code=413, detail=f"{file.filename} exceeds {settings.max_image_upload_bytes} bytes")
    return ImageUpload(
        file_name=file.filename or "image",
        mime_type=(file.content_type or "").lower(),
        data=data,
    )


@app.get("/v1/images", response_model=ImageListResponse, responses={**COMMON_ERROR_RESPONSES})
def list_images(limit: int = 100, user: AuthUser = Depends(require_api_user)) -> ImageListResponse:
    assets = library.list_for_owner(user.user_id, limit=max(1, min(limit, 500)))
    return ImageListResponse(count=len(assets), images=[_image_response(asset) for asset in assets])


@app.get("/v1/batches/{batch_id}", response_model=ImageListResponse)
def get_batch(batch_id: str) -> ImageListResponse:
    assets = library.list_for_batch(batch_id)
    return ImageListResponse(count=len(assets), images=[_image_response(asset) for asset in assets])


@app.get("/v1/images/{short_code}", response_model=ImageResponse)
def resolve_image(short_code: str, request: Request) -> ImageResponse:
    asset = library.get(short_code)
    analytics.record_visit(short_code, _visit_context(request))
    return _image_response(asset)


@app.get("/i/{short_code}")
def follow_short_link(short_code: str, request: Request) -> RedirectResponse:
    asset = library.get(short_code)
    analytics.record_visit(short_code, _visit_context(request))
    return RedirectResponse(url=library.url_for(asset), status_code=302)


@app.get("/v1/images/{short_code}/stats", response_model=VisitStatsResponse)
def image_stats(short_code: str) -> VisitStatsResponse:
    library.get(short_code)
    stats = analytics.get_stats(short_code)
    return VisitStatsResponse(
        short_code=short_code,
        total_visits=stats.total_visits,
        unique_visitors=stats.unique_visitors,
        referrers=_count_entries(stats.referrers),
        devices=_count_entries(stats.devices),
        countries=_count_entries(stats.countries),
        daily=_count_entries(stats.daily, by_key=True),
        last_visit=stats.last_visit,
    )


@app.get("/v1/images/{short_code}/qrcode")
def image_qrcode(short_code: str) -> Response:
    library.get(short_code)
    return Response(content=qr_png(_share_url(short_code)), media_type="image/png")


@app.delete("/v1/images/{short_code}", responses={**COMMON_ERROR_RESPONSES})
def delete_image(request: Request, short_code: str, user: AuthUser = Depends(require_api_user)) -> dict:
    asset = library.get(short_code)
    ensure_owner(asset.owner_id, user, "image", allow_admin=True)
    library.delete(short_code)
    analytics.forget(short_code)
    audit_event(
        {
            "event": "audit",
            "action": "image_delete",
            "request_id": _request_id(request),
            "user_id": user.user_id,
            "short_code": short_code,
        }
    )
    return {"status": "deleted", "short_code": short_code}


def _parse_range(range_header: str, file_size: int) -> tuple[int, int]:
    if not range_header.startswith("bytes="):
        raise HTTPException(status_code=416, detail="invalid range header")
    parts = range_header.removeprefix("bytes=").split("-", 1)
    if len(parts) != 2:
        raise HTTPException(status_code=416, detail="invalid range format")

    try:
        if parts[0]:
            start = int(parts[0])
            end = int(parts[1]) if parts[1] else file_size - 1
        else:
            start = max(0, file_size - int(parts[1]))
            end = file_size - 1
    except ValueError as exc:
        raise HTTPException(status_code=416, detail="invalid range format") from exc
    if start < 0 or end < start or end >= file_size:
        raise HTTPException(status_code=416, detail="range out of bounds")
    return start, end


def _published_key(key: str) -> str:
    normalized = posixpath.normpath(key)
    if ".." in key.split("/") or not normalized.startswith(ASSETS_PREFIX):
        raise HTTPException(status_code=404, detail="object not found")
    return normalized


@app.get(
    "/files/{key:path}",
    responses={404: {"model": ErrorResponse, "description": "Object not found"}, 416: {"model": ErrorResponse}},
)
def serve_file(key: str, range: str | None = Header(default=None)) -> Response:
    key = _published_key(key)
    try:
        data = storage.get_object(key)
    except ObjectNotFound as exc:
        raise HTTPException(status_code=404, detail="object not found") from exc

    media_type = mimetypes.guess_type(key)[0] or "application/octet-stream"
    headers = {"Accept-Ranges": "bytes", "Cache-Control": "public, max-age=31536000"}
    if range:
        start, end = _parse_range(range, len(data))
        headers["Content-Range"] = f"bytes {start}-{end}/{len(data)}"
        return Response(content=data[start : end + 1], status_code=206, media_type=media_type, headers=headers)
    return Response(content=data, media_type=media_type, headers=headers)
