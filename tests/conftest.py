"""Shared fixtures: generated images, an isolated activity ledger, service and API client."""
import os
import tempfile

# Keep the default SQLite file and any .env-driven paths out of the source tree
os.environ.setdefault("DATA_DIR", tempfile.mkdtemp(prefix="compressor-test-"))

import threading
from io import BytesIO

import pytest
from PIL import Image

from compressor import config, db
from compressor.conversion.backend import PillowBackend
from compressor.conversion.pipeline import ImagePipeline
from compressor.conversion.service import ConversionService


def make_image_bytes(fmt="PNG", size=(640, 480), mode="RGB", color=(200, 40, 40)):
    """Encode a solid image with a gradient strip so lossy encoders have something to do."""
    img = Image.new(mode, size, color)
    w, h = size
    for x in range(w):
        shade = int(255 * x / max(1, w - 1))
        for y in range(min(h, 16)):
            img.putpixel((x, y), (shade, shade, shade) + ((255,) if mode == "RGBA" else ()))
    buf = BytesIO()
    img.save(buf, format=fmt)
    return buf.getvalue()


class GatedBackend(PillowBackend):
    """Pillow backend whose encode step, or its n-th decode call, can be held until the test releases it."""

    def __init__(self):
        self._gates = {}
        self._decode_gates = {}
        self._decode_calls = 0
        self._lock = threading.Lock()

    def gate(self, selection):
        entered, release = threading.Event(), threading.Event()
        self._gates[selection] = (entered, release)
        return entered, release

    def gate_decode(self, call):
        """Hold the call-th decode (1-based) counted from backend creation."""
        entered, release = threading.Event(), threading.Event()
        self._decode_gates[call] = (entered, release)
        return entered, release

    def decode(self, data):
        with self._lock:
            self._decode_calls += 1
            gate = self._decode_gates.get(self._decode_calls)
        if gate is not None:
            entered, release = gate
            entered.set()
            release.wait(timeout=10)
        return super().decode(data)

    def encode(self, surface, request):
        gate = self._gates.get(request.selection)
        if gate is not None:
            entered, release = gate
            entered.set()
            release.wait(timeout=10)
        return super().encode(surface, request)


@pytest.fixture(autouse=True)
def ledger(monkeypatch):
    """Fresh in-memory activity ledger for every test."""
    monkeypatch.setattr(config, "DATABASE_URL", db.IN_MEMORY_URL)
    db.reset_engine()
    db.init_db()
    yield
    db.reset_engine()


@pytest.fixture
def make_image():
    return make_image_bytes


@pytest.fixture
def png_bytes():
    return make_image_bytes("PNG", (640, 480))


@pytest.fixture
def jpeg_bytes():
    return make_image_bytes("JPEG", (800, 600))


@pytest.fixture
def rgba_png_bytes():
    img = Image.new("RGBA", (120, 80), (0, 0, 0, 0))
    for x in range(40, 80):
        for y in range(20, 60):
            img.putpixel((x, y), (10, 120, 250, 255))
    buf = BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture
def gated_backend():
    return GatedBackend()


@pytest.fixture
def service():
    return ConversionService(ImagePipeline())


@pytest.fixture
def client(service):
    from fastapi.testclient import TestClient

    from compressor.conversion.service import get_conversion_service
    from compressor.main import app

    app.dependency_overrides[get_conversion_service] = lambda: service
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
