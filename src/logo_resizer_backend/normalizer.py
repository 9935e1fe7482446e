"""
Request field coercion and output spec normalization.

Multipart form fields arrive as strings while programmatic callers may pass
real numbers, booleans or lists. Everything in this module maps those wire
forms onto one canonical typed value before the pipeline looks at them, and
rejects anything it does not recognise.
"""

from __future__ import annotations

import json
import math
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from .errors import OutputValidationError, ValidationError
from .models import MAX_DIMENSION, FitMode, OutputFormat, OutputSpec, RenderOptions

DEFAULT_JPEG_QUALITY = 85
DEFAULT_WEBP_QUALITY = 80

TRUE_VALUES = frozenset({"true", "1", "yes", "on"})
FALSE_VALUES = frozenset({"false", "0", "no", "off"})

INVALID_PAYLOAD = "Invalid outputs payload"
MISSING_OUTPUTS = "At least one output is required"
INVALID_OUTPUT = "Each output must include valid width, height, and format"


def clamp_dimension(value: Any, ceiling: int = MAX_DIMENSION) -> Optional[int]:
    """
    Coerce a loosely typed numeric value into a positive integer.

    Args:
        value: An int, float or numeric string
        ceiling: Upper bound; larger values saturate to it

    Returns:
        The floored integer, or None when the value is missing, non-numeric,
        non-finite or not strictly positive

    Example:
        >>> clamp_dimension("640")
        640
        >>> clamp_dimension(999999)
        8000
        >>> clamp_dimension("abc") is None
        True
    """
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            return None
    elif isinstance(value, (int, float)):
        number = float(value)
    else:
        return None

    if not math.isfinite(number) or number <= 0:
        return None
    if number > ceiling:
        return ceiling
    floored = math.floor(number)
    # 0 < number < 1 floors to zero
    return floored if floored > 0 else None


def coerce_flag(value: Any, default: bool, field: str) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        text = value.strip().lower()
        if not text:
            return default
        if text in TRUE_VALUES:
            return True
        if text in FALSE_VALUES:
            return False
    raise ValidationError(f"{field} must be true or false")


def coerce_fit(value: Any) -> FitMode:
    """Only an explicit "contain" selects contain; anything else means cover."""
    if isinstance(value, FitMode):
        return value
    if isinstance(value, str) and value.strip().lower() == FitMode.CONTAIN.value:
        return FitMode.CONTAIN
    return FitMode.COVER


def coerce_format(value: Any) -> Optional[OutputFormat]:
    if isinstance(value, OutputFormat):
        return value
    if not isinstance(value, str):
        return None
    try:
        return OutputFormat(value.strip().lower())
    except ValueError:
        return None


def build_render_options(
    maintain_aspect: Any = None,
    fit: Any = None,
    jpeg_quality: Any = None,
    webp_quality: Any = None,
    default_jpeg_quality: int = DEFAULT_JPEG_QUALITY,
    default_webp_quality: int = DEFAULT_WEBP_QUALITY,
) -> RenderOptions:
    return RenderOptions(
        maintain_aspect=coerce_flag(maintain_aspect, default=True, field="maintainAspect"),
        fit=coerce_fit(fit),
        jpeg_quality=clamp_dimension(jpeg_quality) or default_jpeg_quality,
        webp_quality=clamp_dimension(webp_quality) or default_webp_quality,
    )


def _parse_candidates(raw_outputs: Any) -> List[Any]:
    if isinstance(raw_outputs, (list, tuple)):
        return list(raw_outputs)
    if isinstance(raw_outputs, str):
        try:
            decoded = json.loads(raw_outputs)
        except json.JSONDecodeError as exc:
            raise OutputValidationError(INVALID_PAYLOAD) from exc
        if not isinstance(decoded, list):
            raise OutputValidationError(INVALID_PAYLOAD)
        return decoded
    raise OutputValidationError(INVALID_PAYLOAD)


def _is_absent(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _normalize_candidate(candidate: Any, ceiling: int) -> OutputSpec:
    if isinstance(candidate, OutputSpec):
        candidate = {"width": candidate.width, "height": candidate.height, "format": candidate.format}
    if not isinstance(candidate, Mapping):
        raise OutputValidationError(INVALID_OUTPUT)

    width = clamp_dimension(candidate.get("width"), ceiling)
    height = clamp_dimension(candidate.get("height"), ceiling)
    output_format = coerce_format(candidate.get("format"))
    if width is None or height is None or output_format is None:
        raise OutputValidationError(INVALID_OUTPUT)
    return OutputSpec(width=width, height=height, format=output_format)


def dedupe_specs(specs: Iterable[OutputSpec]) -> List[OutputSpec]:
    seen = set()
    unique: List[OutputSpec] = []
    for spec in specs:
        if spec.key in seen:
            continue
        seen.add(spec.key)
        unique.append(spec)
    return unique


def normalize_outputs(
    raw_outputs: Any,
    fallback_width: Any = None,
    fallback_height: Any = None,
    fallback_format: Any = None,
    ceiling: int = MAX_DIMENSION,
) -> List[OutputSpec]:
    """
    Validate the requested outputs and return them in canonical form.

    Args:
        raw_outputs: A list of candidate mappings, or a JSON string encoding one
        fallback_width: Single-output width used when raw_outputs is absent
        fallback_height: Single-output height used when raw_outputs is absent
        fallback_format: Single-output format used when raw_outputs is absent
        ceiling: Largest accepted dimension; bigger requests are capped to it

    Returns:
        The deduplicated specs, in the order they were first requested

    Raises:
        OutputValidationError: If the payload cannot be decoded, is empty, or
            any single candidate is invalid. One bad entry fails the request.
    """
    candidates: Sequence[Any]
    if not _is_absent(raw_outputs):
        candidates = _parse_candidates(raw_outputs)
    elif not any(_is_absent(value) for value in (fallback_width, fallback_height, fallback_format)):
        fallback: Dict[str, Any] = {
            "width": fallback_width,
            "height": fallback_height,
            "format": fallback_format,
        }
        candidates = [fallback]
    else:
        candidates = []

    if not candidates:
        raise OutputValidationError(MISSING_OUTPUTS)

    specs = [_normalize_candidate(candidate, ceiling) for candidate in candidates]
    return dedupe_specs(specs)
