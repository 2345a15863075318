"""Scale images into a bounding box, keeping aspect ratio and never upscaling."""
import logging

from PIL import Image

from compressor.conversion.models import BoundingBox

logger = logging.getLogger("compressor.resize")


def scale(source_width: int, source_height: int, box: BoundingBox) -> tuple[int, int]:
    """
    Output dimensions for a source fitted inside box.
    ratio = min(box.max_width / w, box.max_height / h, 1), so the result is never
    larger than the source or the box, and never smaller than 1x1.
    """
    if source_width <= 0 or source_height <= 0:
        raise ValueError(f"Source dimensions must be positive, got {source_width}x{source_height}")
    ratio = min(box.max_width / source_width, box.max_height / source_height, 1)
    new_w = max(1, int(round(source_width * ratio)))
    new_h = max(1, int(round(source_height * ratio)))
    return new_w, new_h


def resize_to_box(img: Image.Image, box: BoundingBox) -> Image.Image:
    """Return a new image fitted inside box. The input image is left untouched."""
    w, h = img.size
    new_w, new_h = scale(w, h, box)
    if (new_w, new_h) == (w, h):
        return img.copy()
    logger.debug("Resizing %sx%s -> %sx%s", w, h, new_w, new_h)
    return img.resize((new_w, new_h), Image.Resampling.LANCZOS)
