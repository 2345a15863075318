"""API routes for sessions, upload, preview, conversion and download."""
import asyncio
import logging
from typing import Optional
from urllib.parse import quote

from fastapi import APIRouter, Depends, File, HTTPException, Query, Request, UploadFile
from fastapi.responses import Response
from sqlalchemy.exc import SQLAlchemyError

from compressor import db
from compressor.config import DEFAULT_QUALITY, MAX_IMAGE_SIZE_BYTES, OUTPUT_FORMATS
from compressor.conversion.errors import (
    ConversionError,
    DecodeError,
    EncodeError,
    LoadError,
    ValidationError,
)
from compressor.conversion.models import EXPORT_BOUND, PREVIEW_BOUND
from compressor.conversion.pipeline import LOAD_FAILED_MESSAGE
from compressor.conversion.service import ConversionService, get_conversion_service
from compressor.conversion.session import ConversionSession
from compressor.conversion.stats import stats_display

logger = logging.getLogger("compressor.api")
router = APIRouter(prefix="/api", tags=["compressor"])

_ERROR_STATUS = {
    ValidationError: 400,
    LoadError: 400,
    DecodeError: 422,
    EncodeError: 500,
}


def _http_error(e: ConversionError) -> HTTPException:
    return HTTPException(_ERROR_STATUS.get(type(e), 500), {"code": e.code, "message": e.message})


def get_session(
    session_id: str,
    svc: ConversionService = Depends(get_conversion_service),
) -> ConversionSession:
    session = svc.get_session(session_id)
    if session is None:
        raise HTTPException(404, "Session not found")
    return session


def _session_to_dict(s: ConversionSession) -> dict:
    stats = s.stats
    return {
        "session_id": s.session_id,
        "status": s.status,
        "status_kind": s.status_kind,
        "filename": s.source.original_name if s.source else None,
        "media_type": s.source.media_type if s.source else None,
        "original_size": stats.original_size,
        "compressed_size": stats.compressed_size,
        "stats": stats_display(stats),
        "output_format": s.result.selection.value if s.result else None,
        "output_width": s.result.width if s.result else None,
        "output_height": s.result.height if s.result else None,
        "download_name": s.download_name,
        "can_convert": s.can_convert,
        "can_download": s.can_download,
        "has_preview": s.preview is not None,
    }


class _ResponseSink:
    """DownloadSink that turns the offered file into an HTTP attachment."""

    def __init__(self):
        self.response: Optional[Response] = None

    def offer(self, data: bytes, media_type: str, filename: str) -> None:
        disposition = f"attachment; filename=\"{filename.encode('ascii', 'replace').decode('ascii')}\"; filename*=UTF-8''{quote(filename)}"
        self.response = Response(content=data, media_type=media_type, headers={"Content-Disposition": disposition})


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/formats")
def get_formats():
    return {
        "output_image": OUTPUT_FORMATS,
        "default_quality": DEFAULT_QUALITY,
    }


@router.get("/limits")
def get_limits():
    return {
        "max_image_size_mb": MAX_IMAGE_SIZE_BYTES // (1024 * 1024),
        "max_image_size_bytes": MAX_IMAGE_SIZE_BYTES,
        "preview_bound": [PREVIEW_BOUND.max_width, PREVIEW_BOUND.max_height],
        "export_bound": [EXPORT_BOUND.max_width, EXPORT_BOUND.max_height],
    }


@router.post("/sessions", status_code=201)
async def create_session(request: Request, svc: ConversionService = Depends(get_conversion_service)):
    session = svc.open_session()
    request.state.session_id = session.session_id
    return _session_to_dict(session)


@router.get("/sessions/{session_id}")
def session_state(session: ConversionSession = Depends(get_session)):
    return _session_to_dict(session)


@router.delete("/sessions/{session_id}")
async def delete_session(session_id: str, svc: ConversionService = Depends(get_conversion_service)):
    if not svc.close_session(session_id):
        raise HTTPException(404, "Session not found")
    return {"ok": True}


@router.post("/sessions/{session_id}/source")
async def upload_source(
    file: UploadFile = File(...),
    session: ConversionSession = Depends(get_session),
    svc: ConversionService = Depends(get_conversion_service),
):
    """Upload the image to work on. Replaces any previous source and result."""
    max_mb = MAX_IMAGE_SIZE_BYTES // (1024 * 1024)
    chunks: list[bytes] = []
    total = 0
    try:
        while chunk := await file.read(1024 * 1024):
            total += len(chunk)
            if total > MAX_IMAGE_SIZE_BYTES:
                raise HTTPException(413, f"File too large (max {max_mb} MB)")
            chunks.append(chunk)
    except HTTPException:
        raise
    except OSError as e:
        logger.exception("Upload failed: %s", e)
        raise _http_error(LoadError(LOAD_FAILED_MESSAGE))

    try:
        await svc.load_source(session, b"".join(chunks), file.content_type or "", file.filename or "")
    except ConversionError as e:
        raise _http_error(e)
    return _session_to_dict(session)


@router.get("/sessions/{session_id}/preview")
async def session_preview(
    session: ConversionSession = Depends(get_session),
    svc: ConversionService = Depends(get_conversion_service),
):
    """Current preview surface (source, or converted output once available) as PNG."""
    if session.preview is None:
        raise HTTPException(404, "No preview available")
    snapshot = session.preview.copy()
    try:
        data = await asyncio.to_thread(svc.pipeline.backend.render_png, snapshot)
    finally:
        snapshot.close()
    return Response(content=data, media_type="image/png")


@router.post("/sessions/{session_id}/convert")
async def convert_session(
    output_format: str = Query("jpeg", alias="format", description="jpeg, jpeg-high, png or webp"),
    quality: int = Query(DEFAULT_QUALITY, description="Quality slider 1-100; out-of-range values are clamped"),
    session: ConversionSession = Depends(get_session),
    svc: ConversionService = Depends(get_conversion_service),
):
    try:
        outcome = await svc.convert(session, output_format, quality)
    except ConversionError as e:
        raise _http_error(e)
    if outcome.superseded:
        raise HTTPException(409, "Superseded by a newer request")
    return _session_to_dict(session)


@router.get("/sessions/{session_id}/download")
async def download_result(
    session: ConversionSession = Depends(get_session),
    svc: ConversionService = Depends(get_conversion_service),
):
    sink = _ResponseSink()
    try:
        svc.offer_download(session, sink)
    except ValidationError as e:
        raise HTTPException(409, {"code": e.code, "message": e.message})
    return sink.response


@router.get("/sessions/{session_id}/activity")
def session_activity(session_id: str, limit: int = Query(100, ge=1, le=1000)):
    """Recorded conversions for the session, with aggregate stats. Survives session deletion."""
    try:
        return {
            "stats": db.get_client_stats(session_id),
            "activities": db.get_client_activities(session_id, limit=limit),
        }
    except SQLAlchemyError as e:
        logger.exception("Activity lookup failed: %s", e)
        raise HTTPException(503, "Activity ledger unavailable")


@router.delete("/sessions/{session_id}/activity")
def delete_session_activity(session_id: str):
    try:
        deleted = db.delete_client_data(session_id)
    except SQLAlchemyError as e:
        logger.exception("Activity delete failed: %s", e)
        raise HTTPException(503, "Activity ledger unavailable")
    return {"ok": True, "deleted": deleted}
