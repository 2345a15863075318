"""Conversion data models: sources, requests, results and derived stats."""
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from compressor.config import (
    EXPORT_MAX_HEIGHT,
    EXPORT_MAX_WIDTH,
    PREVIEW_MAX_HEIGHT,
    PREVIEW_MAX_WIDTH,
)


class OutputFormat(str, Enum):
    JPEG = "jpeg"
    JPEG_HIGH = "jpeg-high"
    PNG = "png"
    WEBP = "webp"


class OutcomeStatus(str, Enum):
    COMMITTED = "committed"
    SUPERSEDED = "superseded"


# Encoder format -> media type of the serialized output
MEDIA_TYPES = {
    OutputFormat.JPEG: "image/jpeg",
    OutputFormat.PNG: "image/png",
    OutputFormat.WEBP: "image/webp",
}


@dataclass(frozen=True)
class BoundingBox:
    max_width: int
    max_height: int


PREVIEW_BOUND = BoundingBox(PREVIEW_MAX_WIDTH, PREVIEW_MAX_HEIGHT)
EXPORT_BOUND = BoundingBox(EXPORT_MAX_WIDTH, EXPORT_MAX_HEIGHT)


@dataclass(frozen=True)
class SourceImage:
    """The user's selected file, exactly as received."""

    data: bytes
    media_type: str
    original_name: str

    @property
    def byte_size(self) -> int:
        return len(self.data)


@dataclass
class DecodedRaster:
    """A decoded surface from the raster backend. Closed after one scale+encode step."""

    surface: Any

    @property
    def width(self) -> int:
        return self.surface.width

    @property
    def height(self) -> int:
        return self.surface.height

    def close(self) -> None:
        self.surface.close()


@dataclass(frozen=True)
class EncodingRequest:
    """target_format is the encoder format; selection is what the user picked."""

    target_format: OutputFormat
    quality_fraction: float
    selection: OutputFormat

    @property
    def media_type(self) -> str:
        return MEDIA_TYPES[self.target_format]


@dataclass(frozen=True)
class ConversionResult:
    data: bytes
    media_type: str
    width: int
    height: int
    selection: OutputFormat

    @property
    def byte_size(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class ConversionOutcome:
    status: OutcomeStatus
    result: Optional[ConversionResult] = None

    @property
    def superseded(self) -> bool:
        return self.status == OutcomeStatus.SUPERSEDED


SUPERSEDED = ConversionOutcome(OutcomeStatus.SUPERSEDED)


@dataclass(frozen=True)
class Stats:
    """Before/after size accounting. Derived on demand, never stored."""

    original_size: Optional[int]
    compressed_size: Optional[int]
    reduction_percent: str
