"""
Utility functions for file system operations and filename handling.

This module provides helper functions for:
- Deriving a safe file extension from an uploaded filename
- Ensuring directory creation
- Persisting upload streams and removing temporary files
"""

from __future__ import annotations

import logging
import re
import shutil
from pathlib import Path, PurePosixPath, PureWindowsPath
from typing import BinaryIO

from .errors import IOFailure

logger = logging.getLogger(__name__)

# Characters allowed in a stored file extension
SANITIZE_PATTERN = re.compile(r"[^a-zA-Z0-9._-]+")

COPY_CHUNK_SIZE = 8 * 1024 * 1024


def file_extension(filename: str | None) -> str:
    """
    Return the extension of an uploaded filename, including the dot.

    The extension is the last ``.``-delimited suffix of the base name. Names
    without a dot, or whose only dot is the leading one (``.hidden``), have
    no extension. Directory components are ignored and unsafe characters are
    dropped so the result can be appended to a temp filename.

    Example:
        >>> file_extension("score.page1.png")
        ".png"
        >>> file_extension("README")
        ""
    """
    if not filename:
        return ""
    # Uploads may carry client-side paths in either flavour
    name = PureWindowsPath(PurePosixPath(filename).name).name
    last_dot = name.rfind(".")
    if last_dot <= 0:
        return ""
    suffix = SANITIZE_PATTERN.sub("", name[last_dot + 1 :])
    return f".{suffix}" if suffix else ""


def ensure_directory(path: Path) -> Path:
    """
    Create a directory if it doesn't exist, including parent directories.

    Args:
        path: The directory path to create

    Returns:
        The same path object for chaining

    Raises:
        OSError: If directory creation fails due to permissions or other I/O errors
    """
    path.mkdir(parents=True, exist_ok=True)
    return path


def persist_stream(stream: BinaryIO, destination: Path) -> Path:
    """
    Copy an upload stream to ``destination``.

    Raises:
        IOFailure: If the file cannot be written
    """
    try:
        with destination.open("wb") as buffer:
            shutil.copyfileobj(stream, buffer, COPY_CHUNK_SIZE)
    except OSError as exc:
        raise IOFailure(f"Failed to store uploaded file: {exc}") from exc
    return destination


def remove_file(path: Path | None) -> None:
    """Delete a temporary file, logging instead of raising on failure."""
    if path is None:
        return
    try:
        path.unlink(missing_ok=True)
    except OSError as exc:
        logger.warning(f"Could not remove temporary file {path}: {exc}")
