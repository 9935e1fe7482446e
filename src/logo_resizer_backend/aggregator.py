"""
Single-file versus archive aggregation of rendered outputs.

The aggregator decides, from the normalized spec list, whether the response is
one encoded image or a zip archive, and drives the render engine once per spec.
Renders run on a worker pool so CPU-bound Pillow work never blocks the event
loop. Archives are assembled completely in memory and only handed back once
every render has succeeded; a failing render therefore never leaks a partial
archive to the client.
"""

from __future__ import annotations

import asyncio
import logging
import zipfile
from concurrent.futures import Executor
from dataclasses import dataclass, field
from io import BytesIO
from typing import Awaitable, Callable, List, Optional, Union

from .errors import ArchiveFailure, OutputValidationError, RenderCancelled
from .models import OutputSpec, RenderOptions, RenderResult
from .render_engine import SourceImage, render
from .utils import DEFAULT_BASE_NAME

logger = logging.getLogger(__name__)

ARCHIVE_CONTENT_TYPE = "application/zip"
ARCHIVE_COMPRESS_LEVEL = 9

CancelCheck = Callable[[], Awaitable[bool]]


@dataclass
class SingleFile:
    result: RenderResult
    kind: str = field(default="single", init=False)

    @property
    def filename(self) -> str:
        return self.result.filename

    @property
    def content_type(self) -> str:
        return self.result.content_type

    @property
    def data(self) -> bytes:
        return self.result.data


@dataclass
class Archive:
    filename: str
    data: bytes
    entries: List[str]
    kind: str = field(default="archive", init=False)
    content_type: str = field(default=ARCHIVE_CONTENT_TYPE, init=False)


AggregateResult = Union[SingleFile, Archive]


def archive_name_for(base_name: str) -> str:
    return f"{base_name}_resized.zip"


async def _render_one(
    source: SourceImage,
    spec: OutputSpec,
    options: RenderOptions,
    base_name: str,
    executor: Optional[Executor],
    is_cancelled: Optional[CancelCheck],
) -> RenderResult:
    if is_cancelled is not None and await is_cancelled():
        raise RenderCancelled()
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(executor, render, source, spec, options, base_name)


async def aggregate(
    source: SourceImage,
    specs: List[OutputSpec],
    options: RenderOptions,
    force_single: bool = False,
    base_name: str = DEFAULT_BASE_NAME,
    executor: Optional[Executor] = None,
    is_cancelled: Optional[CancelCheck] = None,
) -> AggregateResult:
    """
    Render the requested outputs and package them for the response.

    Args:
        source: Decoded upload shared (read-only) by every render
        specs: Normalized, deduplicated output specs in request order
        options: Resize and encoder options applied to every output
        force_single: Render only the first spec and return it as one file
        base_name: Stem used for output and archive filenames
        executor: Worker pool for renders; the loop default when None
        is_cancelled: Awaited before each render; True stops the aggregation

    Returns:
        SingleFile for one output, Archive for two or more

    Raises:
        RenderFailure: A render failed; nothing is returned
        ArchiveFailure: The zip could not be written
        RenderCancelled: The caller went away before rendering finished
    """
    if not specs:
        raise OutputValidationError("At least one output is required")

    if force_single or len(specs) == 1:
        result = await _render_one(source, specs[0], options, base_name, executor, is_cancelled)
        return SingleFile(result=result)

    buffer = BytesIO()
    entries: List[str] = []
    try:
        with zipfile.ZipFile(
            buffer,
            "w",
            compression=zipfile.ZIP_DEFLATED,
            compresslevel=ARCHIVE_COMPRESS_LEVEL,
        ) as archive:
            for spec in specs:
                result = await _render_one(source, spec, options, base_name, executor, is_cancelled)
                archive.writestr(result.filename, result.data)
                entries.append(result.filename)
    except (zipfile.BadZipFile, zipfile.LargeZipFile, OSError) as exc:
        raise ArchiveFailure("Archive error") from exc

    logger.debug("Built archive with %d entries", len(entries))
    return Archive(filename=archive_name_for(base_name), data=buffer.getvalue(), entries=entries)
