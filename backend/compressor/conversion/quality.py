"""Map the user's format choice and quality slider to an encoding request."""
from typing import Union

from compressor.config import HIGH_JPEG_QUALITY, MAX_QUALITY_FRACTION, MIN_QUALITY_FRACTION
from compressor.conversion.errors import ValidationError
from compressor.conversion.models import EncodingRequest, OutputFormat


def parse_format(value: Union[str, OutputFormat]) -> OutputFormat:
    """Accept 'webp', 'image/webp' or an OutputFormat. Raises ValidationError otherwise."""
    if isinstance(value, OutputFormat):
        return value
    name = (value or "").strip().lower()
    if name.startswith("image/"):
        name = name[len("image/"):]
    try:
        return OutputFormat(name)
    except ValueError:
        raise ValidationError(f"Unsupported output format: {value}") from None


def map_quality(selection: Union[str, OutputFormat], slider: float) -> EncodingRequest:
    selection = parse_format(selection)
    if selection == OutputFormat.JPEG_HIGH:
        return EncodingRequest(OutputFormat.JPEG, HIGH_JPEG_QUALITY, selection)
    fraction = min(max(slider / 100, MIN_QUALITY_FRACTION), MAX_QUALITY_FRACTION)
    return EncodingRequest(selection, fraction, selection)


def to_codec_quality(fraction: float) -> int:
    """Pillow's JPEG/WebP quality scale (1-100) for a quality fraction."""
    return max(1, min(100, int(round(fraction * 100))))
