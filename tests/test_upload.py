"""
Tests for the in-memory multipart reader.
"""

import asyncio

import pytest

from logo_resizer_backend.errors import PayloadTooLarge, ValidationError
from logo_resizer_backend.upload import FORM_OVERHEAD_BYTES, max_body_bytes, read_multipart

BOUNDARY = "resizeboundary"
CONTENT_TYPE = f"multipart/form-data; boundary={BOUNDARY}"


def multipart_body(fields=(), files=()):
    parts = []
    for name, value in fields:
        parts.append(
            f'--{BOUNDARY}\r\nContent-Disposition: form-data; name="{name}"\r\n\r\n'.encode() + value.encode() + b"\r\n"
        )
    for name, filename, content_type, data in files:
        header = (
            f"--{BOUNDARY}\r\n"
            f'Content-Disposition: form-data; name="{name}"; filename="{filename}"\r\n'
            f"Content-Type: {content_type}\r\n\r\n"
        )
        parts.append(header.encode() + data + b"\r\n")
    return b"".join(parts) + f"--{BOUNDARY}--\r\n".encode()


class ChunkStream:
    """Async body stream that records how many chunks were pulled."""

    def __init__(self, body, size):
        self.chunks = [body[i : i + size] for i in range(0, len(body), size)]
        self.pulled = 0

    async def iterate(self):
        for chunk in self.chunks:
            self.pulled += 1
            yield chunk


def _read(body, max_file_bytes=1024, chunk_size=7, content_type=CONTENT_TYPE):
    return asyncio.run(read_multipart(content_type, ChunkStream(body, chunk_size).iterate(), max_file_bytes))


def test_fields_and_file_across_small_chunks():
    body = multipart_body(
        fields=[("outputs", '[{"width": 10, "height": 10, "format": "png"}]'), ("fit", "contain")],
        files=[("logo", "logo.png", "image/png", b"\x89PNG fake bytes")],
    )
    form = _read(body)

    assert form.get("fit") == "contain"
    assert form.get("outputs").startswith("[{")
    assert form.get("missing") is None
    upload = form.files["logo"]
    assert upload.data == b"\x89PNG fake bytes"
    assert upload.content_type == "image/png"
    assert upload.filename == "logo.png"


def test_first_repeated_field_wins():
    form = _read(multipart_body(fields=[("fit", "contain"), ("fit", "cover")]))
    assert form.get("fit") == "contain"


def test_utf8_filename_is_decoded():
    form = _read(multipart_body(files=[("logo", "café.png", "image/png", b"data")]))
    assert form.files["logo"].filename == "café.png"


def test_non_multipart_body_is_not_read():
    class UnreadableStream:
        def __aiter__(self):
            raise AssertionError("body should not be read")

    form = asyncio.run(read_multipart("application/x-www-form-urlencoded", UnreadableStream(), 1024))
    assert form.fields == {}
    assert form.files == {}


def test_missing_boundary():
    with pytest.raises(ValidationError):
        _read(b"", content_type="multipart/form-data")


def test_part_without_name():
    body = f"--{BOUNDARY}\r\nContent-Disposition: form-data\r\n\r\nvalue\r\n--{BOUNDARY}--\r\n".encode()
    with pytest.raises(ValidationError):
        _read(body)


def test_file_over_limit_stops_reading():
    body = multipart_body(files=[("logo", "big.png", "image/png", b"x" * 10000)])
    stream = ChunkStream(body, 100)

    with pytest.raises(PayloadTooLarge):
        asyncio.run(read_multipart(CONTENT_TYPE, stream.iterate(), 1000))

    assert stream.pulled < len(stream.chunks) // 2


def test_body_over_limit_without_file():
    body = multipart_body(fields=[("outputs", "a" * (FORM_OVERHEAD_BYTES + 100))])
    with pytest.raises(PayloadTooLarge):
        _read(body, max_file_bytes=10, chunk_size=64 * 1024)


def test_max_body_bytes_adds_overhead():
    assert max_body_bytes(100) == 100 + FORM_OVERHEAD_BYTES
