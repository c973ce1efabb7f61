"""
Utility functions for file system operations and string sanitization.

This module provides helper functions for:
- Sanitizing user-provided names for safe filesystem usage
- Ensuring directory creation
- Crash-consistent JSON persistence (write temp file, then atomic replace)
- UTC timestamps and process-wide logging setup
"""

from __future__ import annotations

import json
import logging
import os
import re
import sys
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

# Pattern to match characters that are not safe for filesystem paths
# Allows: alphanumeric characters, dots, underscores, and hyphens
SANITIZE_PATTERN = re.compile(r"[^a-zA-Z0-9._-]+")

IMAGE_EXTENSIONS = (".png", ".jpg", ".jpeg", ".gif", ".webp")


def sanitize_label(label: str, fallback: str) -> str:
    """
    Generate a filesystem-safe label from user input.

    Args:
        label: The original label string to sanitize
        fallback: Default value to return if sanitization results in an empty string

    Returns:
        A lowercase, filesystem-safe label or the fallback value

    Example:
        >>> sanitize_label("My Cat!", "image")
        "my-cat"
        >>> sanitize_label("@#$", "image")
        "image"
    """
    cleaned = SANITIZE_PATTERN.sub("-", label.strip())
    cleaned = cleaned.strip("-_.").lower()
    return cleaned or fallback


def ensure_directory(path: Path) -> Path:
    """
    Create a directory if it doesn't exist, including parent directories.

    Args:
        path: The directory path to create

    Returns:
        The same path object for chaining
    """
    path.mkdir(parents=True, exist_ok=True)
    return path


def split_extension(filename: str) -> tuple[str, str]:
    """
    Split a filename into stem and lowercase extension components.

    Example:
        >>> split_extension("Holiday.JPG")
        ("Holiday", ".jpg")
    """
    path = Path(filename)
    return path.stem, path.suffix.lower()


def allowed_image_extensions() -> Iterable[str]:
    """Extensions the transforms know how to encode."""
    return IMAGE_EXTENSIONS


def build_output_name(original_name: str, job_id: str, default_extension: str = ".jpg") -> str:
    """
    Derive the produced filename for a job.

    The name is stable for a given job (redelivery overwrites the same file)
    and unique across jobs thanks to the job id suffix.

    Example:
        >>> build_output_name("My Cat.PNG", "3f2a9c1e-...")
        "my-cat-3f2a9c1e.png"
    """
    stem, extension = split_extension(original_name)
    if extension not in IMAGE_EXTENSIONS:
        extension = default_extension
    short_id = job_id.replace("-", "")[:8]
    safe_stem = sanitize_label(stem, fallback="image")
    return f"{safe_stem}-{short_id}{extension}"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    return utc_now().isoformat()


def atomic_write_json(path: Path, data: Any) -> None:
    """
    Persist JSON so that readers only ever see the old or the new content.

    The payload is written to a temporary file in the destination directory,
    flushed to disk and then moved over the canonical file with ``os.replace``.

    Raises:
        OSError: If the temporary file cannot be written or replaced
    """
    ensure_directory(path.parent)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(data, handle, indent=2)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def configure_logging(level: int | str = logging.INFO) -> None:
    """Configure root logging with a single stdout handler."""
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    root_logger.setLevel(level)
    root_logger.addHandler(handler)

    # Broker client libraries are chatty at INFO
    logging.getLogger("amqp").setLevel(logging.WARNING)
    logging.getLogger("kombu").setLevel(logging.WARNING)
