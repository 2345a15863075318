"""Decode -> scale -> encode pipeline with stale-result suppression.

Decode and encode run in worker threads; everything that touches the session
runs on the event loop. Each run captures the session's generation token when it
starts and commits only if the token is still current when it finishes. A newer
source selection or conversion therefore silently wins over older runs,
whatever order they complete in. Nothing is aborted: stale runs finish their
work and their output is dropped.
"""
import asyncio
import logging
from typing import Any, Optional

from compressor.conversion.backend import PillowBackend
from compressor.conversion.errors import ConversionError, LoadError, ValidationError
from compressor.conversion.models import (
    EXPORT_BOUND,
    PREVIEW_BOUND,
    SUPERSEDED,
    BoundingBox,
    ConversionOutcome,
    ConversionResult,
    DecodedRaster,
    EncodingRequest,
    OutcomeStatus,
    SourceImage,
)
from compressor.conversion.resize import resize_to_box
from compressor.conversion.session import ConversionSession, PreviewSink

logger = logging.getLogger("compressor.pipeline")

NO_SOURCE_MESSAGE = "Please upload an image first."
LOAD_FAILED_MESSAGE = "Failed to load image. Please try again."


class ImagePipeline:
    def __init__(self, backend: Optional[PillowBackend] = None, preview_sink: Optional[PreviewSink] = None):
        self.backend = backend or PillowBackend()
        self.preview_sink = preview_sink

    @staticmethod
    def _load_bytes(source: SourceImage) -> bytes:
        if not source.data:
            raise LoadError(LOAD_FAILED_MESSAGE)
        return source.data

    async def _decode_scaled(self, data: bytes, box: BoundingBox) -> Any:
        raster: DecodedRaster = await asyncio.to_thread(self.backend.decode, data)
        try:
            return await asyncio.to_thread(resize_to_box, raster.surface, box)
        finally:
            raster.close()

    def _install_preview(self, session: ConversionSession, token: int, surface: Any) -> bool:
        if not session.install_preview(token, surface):
            surface.close()
            return False
        if self.preview_sink is not None:
            self.preview_sink.show(surface)
        return True

    async def prepare_preview(self, session: ConversionSession) -> Any:
        """Decode the session's source at preview size. Returns None if superseded meanwhile."""
        source = session.source
        if source is None:
            raise ValidationError(NO_SOURCE_MESSAGE)
        token = session.generation
        try:
            surface = await self._decode_scaled(self._load_bytes(source), PREVIEW_BOUND)
        except ConversionError as e:
            if not session.is_current(token):
                logger.debug("Session %s: dropping failure of stale preview: %s", session.session_id, e)
                return None
            raise
        if not self._install_preview(session, token, surface):
            logger.debug("Session %s: preview superseded (token %s)", session.session_id, token)
            return None
        return surface

    def _scale_and_encode(self, raster: DecodedRaster, request: EncodingRequest) -> tuple[bytes, int, int]:
        scaled = resize_to_box(raster.surface, EXPORT_BOUND)
        try:
            return self.backend.encode(scaled, request), scaled.width, scaled.height
        finally:
            scaled.close()

    async def convert(self, session: ConversionSession, request: EncodingRequest) -> ConversionOutcome:
        source = session.source
        if source is None:
            raise ValidationError(NO_SOURCE_MESSAGE)
        token = session.begin_run()
        logger.info(
            "Session %s: converting %s -> %s (quality %.2f, run %s)",
            session.session_id, source.original_name, request.selection.value,
            request.quality_fraction, token,
        )
        try:
            raster: DecodedRaster = await asyncio.to_thread(self.backend.decode, self._load_bytes(source))
            try:
                data, width, height = await asyncio.to_thread(self._scale_and_encode, raster, request)
            finally:
                raster.close()
        except ConversionError as e:
            if not session.is_current(token):
                logger.debug("Session %s: dropping failure of stale run %s: %s", session.session_id, token, e)
                return SUPERSEDED
            session.clear_result(token)
            raise

        if not session.is_current(token):
            logger.info("Session %s: run %s superseded, discarding %s bytes", session.session_id, token, len(data))
            return SUPERSEDED

        result = ConversionResult(
            data=data,
            media_type=request.media_type,
            width=width,
            height=height,
            selection=request.selection,
        )
        session.commit_result(token, result)
        await self._refresh_preview(session, token, data)
        # A newer run may have started while the preview was rendering
        if not session.is_current(token):
            logger.info("Session %s: run %s superseded during preview refresh", session.session_id, token)
            return SUPERSEDED
        return ConversionOutcome(OutcomeStatus.COMMITTED, result)

    async def _refresh_preview(self, session: ConversionSession, token: int, data: bytes) -> None:
        """Show the encoded output, scaled for display, in place of the source preview."""
        try:
            surface = await self._decode_scaled(data, PREVIEW_BOUND)
        except ConversionError as e:
            logger.warning("Session %s: could not render converted preview: %s", session.session_id, e)
            return
        self._install_preview(session, token, surface)
