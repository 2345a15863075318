"""Per-user conversion state: the active source, the current result and the generation token."""
import logging
import re
from typing import Any, Optional, Protocol

from compressor.conversion.errors import ValidationError
from compressor.conversion.models import ConversionResult, SourceImage, Stats
from compressor.conversion.naming import derive_name
from compressor.conversion.stats import compute_stats

logger = logging.getLogger("compressor.session")

IMAGE_MEDIA_TYPE = re.compile(r"^image/", re.IGNORECASE)
INVALID_TYPE_MESSAGE = "Please select a valid image file (JPG, PNG, WebP, HEIC, etc.)."


class PreviewSink(Protocol):
    def show(self, surface: Any) -> None: ...


class DownloadSink(Protocol):
    def offer(self, data: bytes, media_type: str, filename: str) -> None: ...


class ConversionSession:
    """
    Owned by one interaction context. Mutated only through the pipeline's commit
    methods, each of which takes the generation token its run started with and
    is a no-op when that token is stale.
    """

    def __init__(self, session_id: str):
        self.session_id = session_id
        self.source: Optional[SourceImage] = None
        self.result: Optional[ConversionResult] = None
        self.preview: Any = None
        self.generation = 0
        self.status = ""
        self.status_kind = ""

    def select_source(self, data: bytes, media_type: str, original_name: str) -> SourceImage:
        if not IMAGE_MEDIA_TYPE.match(media_type or ""):
            raise ValidationError(INVALID_TYPE_MESSAGE)
        self.generation += 1
        self.source = SourceImage(data=data, media_type=media_type, original_name=original_name or "image")
        self.result = None
        self._release_preview()
        logger.info(
            "Session %s: selected %s (%s, %s bytes)",
            self.session_id, self.source.original_name, media_type, self.source.byte_size,
        )
        return self.source

    def begin_run(self) -> int:
        """Invalidate anything in flight and return the new run's token."""
        self.generation += 1
        self.result = None
        return self.generation

    def is_current(self, token: int) -> bool:
        return token == self.generation

    def commit_result(self, token: int, result: ConversionResult) -> bool:
        if not self.is_current(token):
            return False
        self.result = result
        return True

    def clear_result(self, token: int) -> bool:
        if not self.is_current(token):
            return False
        self.result = None
        return True

    def install_preview(self, token: int, surface: Any) -> bool:
        """Swap in a new preview surface, releasing the previous one first."""
        if not self.is_current(token):
            return False
        self._release_preview()
        self.preview = surface
        return True

    def set_status(self, message: str, kind: str = "") -> None:
        self.status = message or ""
        self.status_kind = kind

    @property
    def can_convert(self) -> bool:
        return self.source is not None

    @property
    def can_download(self) -> bool:
        return self.result is not None and self.source is not None

    @property
    def stats(self) -> Stats:
        original = self.source.byte_size if self.source else None
        compressed = self.result.byte_size if self.result else None
        return compute_stats(original, compressed)

    @property
    def download_name(self) -> Optional[str]:
        if not self.can_download:
            return None
        return derive_name(self.source.original_name, self.result.selection)

    def offer_download(self, sink: DownloadSink) -> str:
        if not self.can_download:
            raise ValidationError("Please convert or compress an image before downloading.")
        filename = self.download_name
        sink.offer(self.result.data, self.result.media_type, filename)
        return filename

    def _release_preview(self) -> None:
        if self.preview is not None:
            close = getattr(self.preview, "close", None)
            if close is not None:
                close()
            self.preview = None

    def release(self) -> None:
        """Drop everything; in-flight runs become stale."""
        self.generation += 1
        self.result = None
        self._release_preview()
