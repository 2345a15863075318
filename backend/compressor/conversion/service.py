"""Session registry and user-facing orchestration of preview, conversion and download."""
import asyncio
import logging
import time
import uuid
from typing import Optional, Union

from sqlalchemy.exc import SQLAlchemyError

from compressor import db
from compressor.conversion.errors import ConversionError, ValidationError
from compressor.conversion.models import SUPERSEDED, ConversionOutcome, EncodingRequest, OutputFormat
from compressor.conversion.pipeline import NO_SOURCE_MESSAGE, ImagePipeline
from compressor.conversion.quality import map_quality
from compressor.conversion.session import ConversionSession, DownloadSink

logger = logging.getLogger("compressor.service")

STATUS_SUCCESS = "success"
STATUS_ERROR = "error"

MSG_LOADING = "Loading image preview…"
MSG_LOADED = "Image loaded. Adjust settings and click Convert / Compress."
MSG_PROCESSING = "Processing image…"
MSG_CONVERTED = "Conversion and compression completed successfully. You can now download your image."
MSG_DOWNLOAD = "Download started. Your optimized image is ready."


class ConversionService:
    """Owns one ConversionSession per client session and reports status like the UI status line."""

    def __init__(self, pipeline: Optional[ImagePipeline] = None):
        self._sessions: dict[str, ConversionSession] = {}
        self._pipeline = pipeline or ImagePipeline()
        logger.info("ConversionService initialized")

    @property
    def pipeline(self) -> ImagePipeline:
        return self._pipeline

    def open_session(self) -> ConversionSession:
        session_id = str(uuid.uuid4())
        session = ConversionSession(session_id)
        self._sessions[session_id] = session
        return session

    def get_session(self, session_id: str) -> Optional[ConversionSession]:
        return self._sessions.get(session_id)

    def close_session(self, session_id: str) -> bool:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        session.release()
        return True

    def close_all(self) -> int:
        """Release every open session. Returns how many were closed."""
        count = 0
        for session_id in list(self._sessions):
            count += self.close_session(session_id)
        return count

    async def load_source(
        self,
        session: ConversionSession,
        data: bytes,
        media_type: str,
        filename: str,
    ) -> ConversionSession:
        """Make the upload the session's active source and render its preview."""
        try:
            session.select_source(data, media_type, filename)
        except ValidationError as e:
            session.set_status(e.message, STATUS_ERROR)
            raise
        session.set_status(MSG_LOADING)
        token = session.generation
        try:
            surface = await self._pipeline.prepare_preview(session)
        except ConversionError as e:
            if session.is_current(token):
                session.set_status(e.message, STATUS_ERROR)
            raise
        if surface is not None:
            session.set_status(MSG_LOADED, STATUS_SUCCESS)
        return session

    async def convert(
        self,
        session: ConversionSession,
        selection: Union[str, OutputFormat],
        quality: float,
    ) -> ConversionOutcome:
        if session.source is None:
            session.set_status(NO_SOURCE_MESSAGE, STATUS_ERROR)
            raise ValidationError(NO_SOURCE_MESSAGE)
        try:
            request = map_quality(selection, quality)
        except ValidationError as e:
            session.clear_result(session.generation)
            session.set_status(e.message, STATUS_ERROR)
            raise
        source = session.source
        session.set_status(MSG_PROCESSING)
        start = time.perf_counter()
        try:
            outcome = await self._pipeline.convert(session, request)
        except ConversionError as e:
            session.set_status(e.message, STATUS_ERROR)
            await self._record(session, source.original_name, request, "failed", error=e.message, duration=time.perf_counter() - start)
            raise
        if outcome.superseded or session.result is not outcome.result:
            return SUPERSEDED
        session.set_status(MSG_CONVERTED, STATUS_SUCCESS)
        logger.info(
            "Session %s: %s -> %s (%s)",
            session.session_id, source.original_name, session.download_name, session.stats.reduction_percent,
        )
        await self._record(
            session, source.original_name, request, "completed",
            input_bytes=source.byte_size,
            output_bytes=outcome.result.byte_size,
            duration=time.perf_counter() - start,
        )
        return outcome

    def offer_download(self, session: ConversionSession, sink: DownloadSink) -> str:
        try:
            filename = session.offer_download(sink)
        except ValidationError as e:
            session.set_status(e.message, STATUS_ERROR)
            raise
        session.set_status(MSG_DOWNLOAD, STATUS_SUCCESS)
        return filename

    async def _record(
        self,
        session: ConversionSession,
        filename: str,
        request: EncodingRequest,
        status: str,
        *,
        input_bytes: Optional[int] = None,
        output_bytes: Optional[int] = None,
        error: Optional[str] = None,
        duration: Optional[float] = None,
    ) -> None:
        try:
            await asyncio.to_thread(
                db.record_activity,
                session.session_id,
                filename,
                request.selection.value,
                status,
                input_bytes=input_bytes,
                output_bytes=output_bytes,
                error=error,
                duration_seconds=duration,
            )
        except SQLAlchemyError as e:
            logger.warning("Could not record activity for session %s: %s", session.session_id, e)


# Singleton
_conversion_service: Optional[ConversionService] = None


def get_conversion_service() -> ConversionService:
    global _conversion_service
    if _conversion_service is None:
        _conversion_service = ConversionService()
    return _conversion_service
