"""Raster backend: decode and encode through Pillow. Blocking; callers run it off the event loop."""
import logging
from io import BytesIO

from PIL import Image, ImageOps, UnidentifiedImageError

from compressor.config import JPEG_BACKGROUND
from compressor.conversion.errors import DecodeError, EncodeError
from compressor.conversion.models import DecodedRaster, EncodingRequest, OutputFormat
from compressor.conversion.quality import to_codec_quality

logger = logging.getLogger("compressor.backend")

DECODE_FAILED_MESSAGE = (
    "Unable to read this image. Some formats (like HEIC) may not be supported by the decoder."
)
WEBP_METHOD = 4


def _has_alpha(img: Image.Image) -> bool:
    if img.mode in ("RGBA", "LA", "PA"):
        return True
    return img.mode == "P" and "transparency" in img.info


def _normalize_mode(img: Image.Image) -> Image.Image:
    """Bring any decoded mode to RGB or RGBA so resampling and every encoder behave."""
    if img.mode in ("RGB", "RGBA"):
        return img
    if _has_alpha(img):
        return img.convert("RGBA")
    return img.convert("RGB")


def _flatten_alpha(img: Image.Image, background_rgb: tuple[int, int, int]) -> Image.Image:
    rgba = img.convert("RGBA")
    bg = Image.new("RGBA", rgba.size, background_rgb + (255,))
    return Image.alpha_composite(bg, rgba).convert("RGB")


class PillowBackend:
    """Decodes source bytes into surfaces and serializes surfaces into bytes."""

    def decode(self, data: bytes) -> DecodedRaster:
        try:
            with Image.open(BytesIO(data)) as img:
                img.load()
                # exif_transpose always returns a new image, detached from the buffer
                surface = _normalize_mode(ImageOps.exif_transpose(img))
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError, EOFError, SyntaxError, ValueError) as e:
            logger.warning("Decode failed: %s", e)
            raise DecodeError(DECODE_FAILED_MESSAGE) from e
        return DecodedRaster(surface)

    @staticmethod
    def supports(fmt: OutputFormat) -> bool:
        Image.init()
        return fmt.value.upper() in Image.SAVE

    def encode(self, surface: Image.Image, request: EncodingRequest) -> bytes:
        fmt = request.target_format
        if fmt == OutputFormat.JPEG_HIGH:
            raise EncodeError("jpeg-high must be resolved to jpeg before encoding")
        if not self.supports(fmt):
            raise EncodeError(f"Encoding to {fmt.value.upper()} is not supported in this environment.")

        img = surface
        quality = to_codec_quality(request.quality_fraction)
        if fmt == OutputFormat.JPEG:
            if _has_alpha(img):
                img = _flatten_alpha(img, JPEG_BACKGROUND)
            save_kw = {"format": "JPEG", "quality": quality, "optimize": True}
        elif fmt == OutputFormat.PNG:
            # Lossless: the quality fraction does not apply
            save_kw = {"format": "PNG", "optimize": True}
        else:
            save_kw = {"format": "WEBP", "quality": quality, "method": WEBP_METHOD}

        buf = BytesIO()
        try:
            img.save(buf, **save_kw)
        except (OSError, KeyError, ValueError) as e:
            logger.exception("Encode to %s failed: %s", fmt.value, e)
            raise EncodeError("Conversion failed. Please try different settings.") from e
        finally:
            if img is not surface:
                img.close()
        data = buf.getvalue()
        if not data:
            raise EncodeError("Conversion failed. Please try different settings.")
        return data

    def render_png(self, surface: Image.Image) -> bytes:
        """Lossless snapshot of a display surface."""
        buf = BytesIO()
        surface.save(buf, format="PNG")
        return buf.getvalue()
