"""
In-memory multipart/form-data reader for the resize endpoint.

The request body is pushed chunk by chunk through python-multipart's streaming
parser and every part is collected in memory; nothing is spooled to disk.
Reading stops as soon as the body or a file part passes its limit, so an
oversized upload is never buffered in full.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, List, Optional

from python_multipart import MultipartParser
from python_multipart.exceptions import MultipartParseError
from python_multipart.multipart import parse_options_header

from .errors import PayloadTooLarge, ValidationError

logger = logging.getLogger(__name__)

MULTIPART_CONTENT_TYPE = b"multipart/form-data"
# Room for boundaries, part headers and the text fields next to the file
FORM_OVERHEAD_BYTES = 1024 * 1024
MALFORMED_BODY = "Malformed multipart body"


@dataclass
class UploadedImage:
    data: bytes
    content_type: str
    filename: Optional[str]


@dataclass
class MultipartForm:
    fields: Dict[str, str] = field(default_factory=dict)
    files: Dict[str, UploadedImage] = field(default_factory=dict)

    def get(self, name: str) -> Optional[str]:
        return self.fields.get(name)


def max_body_bytes(max_file_bytes: int) -> int:
    """Largest request body accepted for a file limit of ``max_file_bytes``."""
    return max_file_bytes + FORM_OVERHEAD_BYTES


class _PartCollector:
    """Callback target for ``MultipartParser``; one instance per request."""

    def __init__(self, max_file_bytes: int):
        self.max_file_bytes = max_file_bytes
        self.form = MultipartForm()
        self._header_field = bytearray()
        self._header_value = bytearray()
        self._headers: Dict[bytes, bytes] = {}
        self._name = ""
        self._filename: Optional[str] = None
        self._content_type = ""
        self._chunks: List[bytes] = []
        self._size = 0

    def callbacks(self) -> Dict[str, object]:
        return {
            "on_part_begin": self.on_part_begin,
            "on_header_field": self.on_header_field,
            "on_header_value": self.on_header_value,
            "on_header_end": self.on_header_end,
            "on_headers_finished": self.on_headers_finished,
            "on_part_data": self.on_part_data,
            "on_part_end": self.on_part_end,
        }

    def on_part_begin(self) -> None:
        self._headers = {}
        self._chunks = []
        self._size = 0

    def on_header_field(self, data: bytes, start: int, end: int) -> None:
        self._header_field += data[start:end]

    def on_header_value(self, data: bytes, start: int, end: int) -> None:
        self._header_value += data[start:end]

    def on_header_end(self) -> None:
        self._headers[bytes(self._header_field).lower()] = bytes(self._header_value)
        self._header_field.clear()
        self._header_value.clear()

    def on_headers_finished(self) -> None:
        disposition, options = parse_options_header(self._headers.get(b"content-disposition", b""))
        if disposition != b"form-data" or b"name" not in options:
            raise ValidationError(MALFORMED_BODY)
        self._name = options[b"name"].decode("utf-8", errors="replace")
        filename = options.get(b"filename")
        self._filename = filename.decode("utf-8", errors="replace") if filename is not None else None
        self._content_type = self._headers.get(b"content-type", b"").decode("latin-1").strip()

    def on_part_data(self, data: bytes, start: int, end: int) -> None:
        self._size += end - start
        if self._filename is not None and self._size > self.max_file_bytes:
            raise PayloadTooLarge(f"File exceeds the {self.max_file_bytes} byte upload limit")
        self._chunks.append(data[start:end])

    def on_part_end(self) -> None:
        data = b"".join(self._chunks)
        self._chunks = []
        # First occurrence of a repeated field wins
        if self._filename is None:
            self.form.fields.setdefault(self._name, data.decode("utf-8", errors="replace"))
        else:
            self.form.files.setdefault(
                self._name,
                UploadedImage(data=data, content_type=self._content_type, filename=self._filename),
            )


async def read_multipart(
    content_type: str,
    stream: AsyncIterator[bytes],
    max_file_bytes: int,
) -> MultipartForm:
    """
    Parse a multipart/form-data body entirely in memory.

    Args:
        content_type: The request's Content-Type header
        stream: The request body chunks
        max_file_bytes: Limit for each file part; the whole body may exceed it
            by ``FORM_OVERHEAD_BYTES``

    Returns:
        The text fields and file parts, keyed by field name. Bodies that are
        not multipart yield an empty form without being read.

    Raises:
        PayloadTooLarge: The body or a file part passed its limit
        ValidationError: The body is not valid multipart data
    """
    mime, params = parse_options_header(content_type)
    if mime != MULTIPART_CONTENT_TYPE:
        return MultipartForm()
    boundary = params.get(b"boundary")
    if not boundary:
        raise ValidationError(MALFORMED_BODY)

    limit = max_body_bytes(max_file_bytes)
    collector = _PartCollector(max_file_bytes)
    parser = MultipartParser(boundary, collector.callbacks())
    received = 0
    try:
        async for chunk in stream:
            received += len(chunk)
            if received > limit:
                raise PayloadTooLarge(f"Request body exceeds the {limit} byte limit")
            parser.write(chunk)
        parser.finalize()
    except MultipartParseError as exc:
        logger.debug("Rejected multipart body: %s", exc)
        raise ValidationError(MALFORMED_BODY) from exc
    return collector.form
