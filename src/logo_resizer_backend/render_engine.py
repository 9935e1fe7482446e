"""Image decoding and per-output rendering.

This module wraps Pillow. ``decode_source`` turns the uploaded bytes into a
``SourceImage`` once per request; ``render`` produces one encoded derivative
from an independent copy of that source, so sibling renders never observe each
other's transformations.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from io import BytesIO
from typing import Optional

from PIL import Image, ImageOps, UnidentifiedImageError

from .errors import RenderFailure, SourceUnreadable
from .models import FitMode, OutputFormat, OutputSpec, RenderOptions, RenderResult
from .utils import DEFAULT_BASE_NAME

logger = logging.getLogger(__name__)

JPEG_BACKGROUND = (255, 255, 255)
TRANSPARENT = (0, 0, 0, 0)
PNG_COMPRESS_LEVEL = 9
# Pillow's subsampling code for 4:2:0
JPEG_SUBSAMPLING_420 = 2
RESAMPLE = Image.Resampling.LANCZOS


@dataclass
class SourceImage:
    image: Image.Image
    source_format: Optional[str]

    @property
    def width(self) -> int:
        return self.image.width

    @property
    def height(self) -> int:
        return self.image.height

    def clone(self) -> Image.Image:
        return self.image.copy()


def output_filename(base_name: str, spec: OutputSpec) -> str:
    return f"{base_name}_{spec.width}x{spec.height}.{spec.format.value}"


def _has_transparency(image: Image.Image) -> bool:
    if image.mode in ("RGBA", "LA", "PA"):
        return True
    return image.mode == "P" and "transparency" in image.info


def decode_source(data: bytes) -> SourceImage:
    """Decode uploaded bytes, apply EXIF orientation and normalize the mode.

    Raises:
        SourceUnreadable: If Pillow cannot identify or decode the data, or the
            decoded image reports no usable dimensions.
    """
    try:
        with Image.open(BytesIO(data)) as opened:
            source_format = opened.format
            if not opened.width or not opened.height:
                raise SourceUnreadable()
            image = ImageOps.exif_transpose(opened)
            image.load()
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as exc:
        raise SourceUnreadable() from exc

    target_mode = "RGBA" if _has_transparency(image) else "RGB"
    if image.mode != target_mode:
        image = image.convert(target_mode)
    return SourceImage(image=image, source_format=source_format)


def _resize(image: Image.Image, spec: OutputSpec, options: RenderOptions) -> Image.Image:
    size = (spec.width, spec.height)
    if not options.maintain_aspect:
        return image.resize(size, RESAMPLE)
    if options.fit is FitMode.CONTAIN:
        if image.mode != "RGBA":
            image = image.convert("RGBA")
        return ImageOps.pad(image, size, method=RESAMPLE, color=TRANSPARENT)
    return ImageOps.fit(image, size, method=RESAMPLE)


def flatten_onto_white(image: Image.Image) -> Image.Image:
    if image.mode != "RGBA":
        return image.convert("RGB")
    background = Image.new("RGB", image.size, JPEG_BACKGROUND)
    background.paste(image, mask=image.getchannel("A"))
    return background


def _encoder_quality(quality: int) -> int:
    return max(1, min(100, quality))


def _encode(image: Image.Image, output_format: OutputFormat, options: RenderOptions) -> bytes:
    buffer = BytesIO()
    if output_format is OutputFormat.PNG:
        image.save(buffer, format="PNG", optimize=True, compress_level=PNG_COMPRESS_LEVEL)
    elif output_format is OutputFormat.JPEG:
        flatten_onto_white(image).save(
            buffer,
            format="JPEG",
            quality=_encoder_quality(options.jpeg_quality),
            progressive=True,
            subsampling=JPEG_SUBSAMPLING_420,
        )
    else:
        image.save(buffer, format="WEBP", quality=_encoder_quality(options.webp_quality))
    return buffer.getvalue()


def render(
    source: SourceImage,
    spec: OutputSpec,
    options: RenderOptions,
    base_name: str = DEFAULT_BASE_NAME,
) -> RenderResult:
    """
    Produce one encoded derivative of the source image.

    Args:
        source: The decoded upload; it is cloned, never modified
        spec: Target size and format
        options: Aspect, fit and quality settings shared by every output
        base_name: Stem for the output filename

    Returns:
        The encoded bytes with their filename and content type

    Raises:
        RenderFailure: If resizing or encoding fails or yields no bytes
    """
    try:
        resized = _resize(source.clone(), spec, options)
        data = _encode(resized, spec.format, options)
    except (OSError, ValueError) as exc:
        raise RenderFailure(f"Failed to render {spec.describe()}") from exc

    if not data:
        raise RenderFailure(f"Render produced no data for {spec.describe()}")

    logger.debug("Rendered %s (%d bytes)", spec.describe(), len(data))
    return RenderResult(
        filename=output_filename(base_name, spec),
        data=data,
        content_type=spec.format.content_type,
    )
