import asyncio
from io import BytesIO

import pytest
from PIL import Image

from compressor.conversion import pipeline as pipeline_module
from compressor.conversion.backend import PillowBackend
from compressor.conversion.errors import DecodeError, EncodeError, LoadError, ValidationError
from compressor.conversion.models import BoundingBox, OutcomeStatus, OutputFormat
from compressor.conversion.pipeline import ImagePipeline
from compressor.conversion.quality import map_quality
from compressor.conversion.session import ConversionSession


class RecordingPreviewSink:
    def __init__(self):
        self.shown = []

    def show(self, surface):
        self.shown.append(surface.size)


def _session(data, media_type="image/png", name="photo.png"):
    session = ConversionSession("test")
    session.select_source(data, media_type, name)
    return session


def _decode(data):
    with Image.open(BytesIO(data)) as img:
        img.load()
        return img.format, img.size, img.mode, img.getpixel((0, img.height - 1))


def test_preview_is_bounded_and_installed(make_image):
    sink = RecordingPreviewSink()
    session = _session(make_image("PNG", (1000, 1000)))
    surface = asyncio.run(ImagePipeline(preview_sink=sink).prepare_preview(session))
    assert surface.size == (260, 260)
    assert session.preview is surface
    assert sink.shown == [(260, 260)]


def test_preview_of_undecodable_bytes_raises_decode_error():
    session = _session(b"\x00\x01not really an image", "image/heic", "photo.heic")
    with pytest.raises(DecodeError):
        asyncio.run(ImagePipeline().prepare_preview(session))
    assert session.preview is None


def test_preview_superseded_by_new_selection(make_image):
    async def scenario():
        session = _session(make_image("PNG", (300, 200)))
        task = asyncio.create_task(ImagePipeline().prepare_preview(session))
        await asyncio.sleep(0)
        session.select_source(make_image("PNG", (50, 50)), "image/png", "other.png")
        return session, await task

    session, surface = asyncio.run(scenario())
    assert surface is None
    assert session.preview is None


@pytest.mark.parametrize(
    "selection,expected_format,media_type",
    [
        ("jpeg", "JPEG", "image/jpeg"),
        ("jpeg-high", "JPEG", "image/jpeg"),
        ("png", "PNG", "image/png"),
        ("webp", "WEBP", "image/webp"),
    ],
)
def test_convert_produces_requested_format(jpeg_bytes, selection, expected_format, media_type):
    session = _session(jpeg_bytes, "image/jpeg", "photo.jpg")
    outcome = asyncio.run(ImagePipeline().convert(session, map_quality(selection, 60)))
    assert outcome.status == OutcomeStatus.COMMITTED
    assert session.result is outcome.result
    assert outcome.result.media_type == media_type
    fmt, size, _, _ = _decode(outcome.result.data)
    assert fmt == expected_format
    assert size == (800, 600)
    assert session.preview.size == (347, 260)


def test_convert_scales_to_export_bound(monkeypatch, make_image):
    monkeypatch.setattr(pipeline_module, "EXPORT_BOUND", BoundingBox(100, 100))
    session = _session(make_image("PNG", (400, 200)))
    outcome = asyncio.run(ImagePipeline().convert(session, map_quality("png", 80)))
    assert (outcome.result.width, outcome.result.height) == (100, 50)
    assert _decode(outcome.result.data)[1] == (100, 50)


def test_lower_quality_gives_smaller_jpeg(make_image):
    data = make_image("PNG", (400, 300))
    pipeline = ImagePipeline()
    low = asyncio.run(pipeline.convert(_session(data), map_quality("jpeg", 10))).result
    high = asyncio.run(pipeline.convert(_session(data), map_quality("jpeg", 95))).result
    assert low.byte_size < high.byte_size


def test_png_output_is_deterministic(png_bytes):
    session = _session(png_bytes)
    pipeline = ImagePipeline()
    request = map_quality("png", 80)
    first = asyncio.run(pipeline.convert(session, request)).result
    second = asyncio.run(pipeline.convert(session, request)).result
    assert first.byte_size == second.byte_size
    assert first.data == second.data


def test_png_ignores_quality(png_bytes):
    pipeline = ImagePipeline()
    low = asyncio.run(pipeline.convert(_session(png_bytes), map_quality("png", 5))).result
    high = asyncio.run(pipeline.convert(_session(png_bytes), map_quality("png", 100))).result
    assert low.data == high.data


def test_transparent_pixels_become_white_in_jpeg(rgba_png_bytes):
    session = _session(rgba_png_bytes)
    outcome = asyncio.run(ImagePipeline().convert(session, map_quality("jpeg", 95)))
    _, _, mode, corner = _decode(outcome.result.data)
    assert mode == "RGB"
    assert all(channel > 240 for channel in corner)


def test_alpha_is_kept_for_png(rgba_png_bytes):
    session = _session(rgba_png_bytes)
    outcome = asyncio.run(ImagePipeline().convert(session, map_quality("png", 80)))
    _, _, mode, corner = _decode(outcome.result.data)
    assert mode == "RGBA"
    assert corner[3] == 0


def test_convert_without_source_is_rejected():
    with pytest.raises(ValidationError):
        asyncio.run(ImagePipeline().convert(ConversionSession("empty"), map_quality("png", 80)))


def test_empty_payload_is_a_load_error():
    session = _session(b"")
    with pytest.raises(LoadError):
        asyncio.run(ImagePipeline().convert(session, map_quality("png", 80)))
    assert session.result is None


def test_decode_failure_clears_result(png_bytes):
    session = _session(png_bytes)
    pipeline = ImagePipeline()
    asyncio.run(pipeline.convert(session, map_quality("png", 80)))
    assert session.result is not None

    session.select_source(b"definitely not pixels", "image/gif", "broken.gif")
    with pytest.raises(DecodeError):
        asyncio.run(pipeline.convert(session, map_quality("png", 80)))
    assert session.result is None


def test_unsupported_encoder_is_an_encode_error(monkeypatch, png_bytes):
    monkeypatch.setattr(PillowBackend, "supports", staticmethod(lambda fmt: fmt != OutputFormat.WEBP))
    session = _session(png_bytes)
    with pytest.raises(EncodeError):
        asyncio.run(ImagePipeline().convert(session, map_quality("webp", 80)))
    assert session.result is None


def test_later_conversion_wins_when_earlier_finishes_last(png_bytes, gated_backend):
    async def scenario():
        session = _session(png_bytes)
        pipeline = ImagePipeline(gated_backend)
        entered_a, release_a = gated_backend.gate(OutputFormat.JPEG)
        task_a = asyncio.create_task(pipeline.convert(session, map_quality("jpeg", 50)))
        assert await asyncio.to_thread(entered_a.wait, 5)

        outcome_b = await pipeline.convert(session, map_quality("png", 80))
        release_a.set()
        outcome_a = await task_a
        return session, outcome_a, outcome_b

    session, outcome_a, outcome_b = asyncio.run(scenario())
    assert outcome_a.superseded
    assert outcome_b.status == OutcomeStatus.COMMITTED
    assert session.result is outcome_b.result
    assert session.result.media_type == "image/png"


def test_later_conversion_wins_when_earlier_finishes_first(png_bytes, gated_backend):
    async def scenario():
        session = _session(png_bytes)
        pipeline = ImagePipeline(gated_backend)
        _, release_b = gated_backend.gate(OutputFormat.PNG)
        task_a = asyncio.create_task(pipeline.convert(session, map_quality("jpeg", 50)))
        task_b = asyncio.create_task(pipeline.convert(session, map_quality("png", 80)))
        outcome_a = await task_a
        result_after_a = session.result
        release_b.set()
        outcome_b = await task_b
        return session, outcome_a, result_after_a, outcome_b

    session, outcome_a, result_after_a, outcome_b = asyncio.run(scenario())
    assert outcome_a.superseded
    assert result_after_a is None
    assert session.result is outcome_b.result
    assert session.result.media_type == "image/png"


def test_new_source_discards_running_conversion(png_bytes, gated_backend, make_image):
    async def scenario():
        session = _session(png_bytes)
        pipeline = ImagePipeline(gated_backend)
        entered, release = gated_backend.gate(OutputFormat.WEBP)
        task = asyncio.create_task(pipeline.convert(session, map_quality("webp", 80)))
        assert await asyncio.to_thread(entered.wait, 5)
        session.select_source(make_image("PNG", (20, 20)), "image/png", "new.png")
        release.set()
        return session, await task

    session, outcome = asyncio.run(scenario())
    assert outcome.superseded
    assert session.result is None
    assert session.source.original_name == "new.png"


def test_stale_failure_is_dropped(gated_backend, png_bytes, monkeypatch):
    def failing_encode(self, surface, request):
        raise EncodeError("boom")

    async def scenario():
        session = _session(png_bytes)
        pipeline = ImagePipeline(gated_backend)
        entered, release = gated_backend.gate(OutputFormat.WEBP)
        task = asyncio.create_task(pipeline.convert(session, map_quality("webp", 80)))
        assert await asyncio.to_thread(entered.wait, 5)
        monkeypatch.setattr(PillowBackend, "encode", failing_encode)
        session.select_source(png_bytes, "image/png", "again.png")
        release.set()
        return await task

    outcome = asyncio.run(scenario())
    assert outcome.superseded


def test_conversion_superseded_while_rendering_its_preview(png_bytes, gated_backend):
    async def scenario():
        session = _session(png_bytes)
        pipeline = ImagePipeline(gated_backend)
        # decode 1 is run A's source, decode 2 is A's preview of its own output
        entered, release = gated_backend.gate_decode(2)
        task_a = asyncio.create_task(pipeline.convert(session, map_quality("jpeg", 50)))
        assert await asyncio.to_thread(entered.wait, 5)
        assert session.result is not None

        outcome_b = await pipeline.convert(session, map_quality("png", 80))
        preview_b = session.preview
        release.set()
        outcome_a = await task_a
        return session, outcome_a, outcome_b, preview_b

    session, outcome_a, outcome_b, preview_b = asyncio.run(scenario())
    assert outcome_a.superseded
    assert outcome_b.status == OutcomeStatus.COMMITTED
    assert session.result is outcome_b.result
    assert session.preview is preview_b


def test_empty_encoder_output_is_an_encode_error(monkeypatch):
    monkeypatch.setattr(Image.Image, "save", lambda self, fp, **kwargs: None)
    surface = Image.new("RGB", (8, 8), (1, 2, 3))
    with pytest.raises(EncodeError, match="Conversion failed"):
        PillowBackend().encode(surface, map_quality("png", 80))
