"""Download filename for a converted image."""
from typing import Union

from compressor.conversion.models import OutputFormat
from compressor.conversion.quality import parse_format

FORMAT_TO_EXT = {
    OutputFormat.JPEG: "jpg",
    OutputFormat.JPEG_HIGH: "jpg",
    OutputFormat.PNG: "png",
    OutputFormat.WEBP: "webp",
}

NAME_SUFFIX = "-optimized"


def derive_name(original_name: str, selection: Union[str, OutputFormat]) -> str:
    """photo.heic + png -> photo-optimized.png; the last suffix only is replaced."""
    name = original_name or "image"
    base = name[: name.rindex(".")] if "." in name else name
    ext = FORMAT_TO_EXT[parse_format(selection)]
    return f"{base}{NAME_SUFFIX}.{ext}"
