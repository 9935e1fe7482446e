"""
Pytest configuration and fixtures for Logo Resizer Backend tests.
"""

import os
from io import BytesIO

import pytest
from fastapi.testclient import TestClient
from PIL import Image

# Set test environment variables before importing the app
os.environ["REQUIRE_AUTH"] = "false"
os.environ["ALLOWED_ORIGINS"] = "http://localhost:5173"
os.environ.pop("JWT_SECRET", None)
os.environ.pop("LOGO_RESIZER_CONFIG", None)

from logo_resizer_backend.configuration import make_runtime_config
from logo_resizer_backend.main import create_app


def encode_image(image: Image.Image, fmt: str = "PNG", **params) -> bytes:
    buffer = BytesIO()
    image.save(buffer, format=fmt, **params)
    return buffer.getvalue()


@pytest.fixture
def make_image():
    """Factory for in-memory test images encoded to bytes."""

    def _make(size=(100, 100), mode="RGB", color=(200, 30, 30), fmt="PNG", **params) -> bytes:
        return encode_image(Image.new(mode, size, color), fmt, **params)

    return _make


@pytest.fixture
def png_bytes(make_image):
    """A 100x100 opaque PNG."""
    return make_image()


@pytest.fixture
def transparent_png_bytes(make_image):
    """A 100x100 PNG that is fully transparent."""
    return make_image(mode="RGBA", color=(0, 0, 0, 0))


@pytest.fixture
def app_factory():
    """Build an isolated app, optionally with configuration overrides."""

    def _build(overrides=None):
        return create_app(make_runtime_config(overrides))

    return _build


@pytest.fixture
def app(app_factory):
    """A fresh app per test so admission state never leaks between tests."""
    return app_factory()


@pytest.fixture
def client(app):
    """Create a test client for the FastAPI app."""
    return TestClient(app)


@pytest.fixture
def guard(app):
    return app.state.admission_guard
