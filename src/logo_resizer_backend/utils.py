"""
Utility functions for naming rendered outputs.

This module provides helper functions for:
- Deriving a base name from an uploaded filename
- Building per-output and archive filenames
- Formatting Content-Disposition header values
"""

from __future__ import annotations

import re
from typing import Optional
from urllib.parse import quote

DEFAULT_BASE_NAME = "image"

# Matches the final ".ext" suffix of a filename
EXTENSION_PATTERN = re.compile(r"\.[^.]+$")
# Characters that are never kept in a base name
UNSAFE_FILENAME_PATTERN = re.compile(r'[\x00-\x1f\x7f"\\/]+')
# Characters that cannot travel in the plain ASCII filename parameter
NON_ASCII_FILENAME_PATTERN = re.compile(r"[^A-Za-z0-9._ -]+")


def strip_extension(filename: str) -> str:
    """
    Remove the last extension from a filename, ignoring any directory part.

    Args:
        filename: The filename as declared by the client (may include a path)

    Returns:
        The filename without its final ``.ext`` suffix

    Example:
        >>> strip_extension("logo.final.png")
        "logo.final"
        >>> strip_extension("C:\\\\uploads\\\\logo.png")
        "logo"
    """
    name = filename.replace("\\", "/").rsplit("/", 1)[-1]
    return EXTENSION_PATTERN.sub("", name)


def base_name_for(filename: Optional[str], fallback: str = DEFAULT_BASE_NAME) -> str:
    """
    Generate the base name used for every output of one upload.

    Non-ASCII names are kept as they are. Characters that could break a header
    parameter or a path become hyphens.

    Args:
        filename: The uploaded filename, if the client supplied one
        fallback: Value to use when no usable name remains

    Returns:
        The cleaned base name or the fallback value

    Example:
        >>> base_name_for("acme logo.png")
        "acme logo"
        >>> base_name_for(None)
        "image"
    """
    if not filename:
        return fallback
    cleaned = UNSAFE_FILENAME_PATTERN.sub("-", strip_extension(filename)).strip()
    return cleaned or fallback


def attachment_header(filename: str) -> str:
    """
    Build a Content-Disposition value for a download.

    Names outside the plain ASCII set get a hyphenated ``filename`` fallback
    plus an RFC 5987 ``filename*`` parameter carrying the UTF-8 name.
    """
    fallback = NON_ASCII_FILENAME_PATTERN.sub("-", filename)
    if fallback == filename:
        return f'attachment; filename="{filename}"'
    return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quote(filename, safe='')}"
