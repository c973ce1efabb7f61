"""
Pluggable image transforms.

A transform is any callable ``(source: Path, destination: Path) -> None`` that
writes one output file. Workers treat ``PermanentTransformError`` as
unrecoverable and everything else as retryable, so transforms translate
library errors into that taxonomy.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable, Dict

from omegaconf import DictConfig
from PIL import Image, ImageDraw, ImageFont, UnidentifiedImageError

from .errors import PermanentTransformError, TransientTransformError

logger = logging.getLogger(__name__)

Transform = Callable[[Path, Path], None]

_FORMATS = {
    ".jpg": "JPEG",
    ".jpeg": "JPEG",
    ".png": "PNG",
    ".webp": "WEBP",
    ".gif": "GIF",
}


def encoder_options(extension: str, config: DictConfig) -> Dict[str, Any]:
    """Fixed, codec-specific encode settings keyed by output extension."""
    extension = extension.lower()
    if extension == ".png":
        return {"format": "PNG", "compress_level": config.png_compress_level}
    if extension in (".jpg", ".jpeg"):
        return {"format": "JPEG", "quality": config.jpeg_quality}
    if extension == ".webp":
        return {"format": "WEBP", "quality": config.webp_quality}
    return {"format": _FORMATS.get(extension, "PNG")}


def _open(source: Path) -> Image.Image:
    try:
        image = Image.open(source)
        image.load()
    except FileNotFoundError as exc:
        raise PermanentTransformError(f"Input {source.name} does not exist") from exc
    except UnidentifiedImageError as exc:
        raise PermanentTransformError(f"Input {source.name} is not a readable image") from exc
    except OSError as exc:
        raise TransientTransformError(f"Could not read {source.name}: {exc}") from exc
    return image


def _save(image: Image.Image, destination: Path, options: Dict[str, Any]) -> None:
    if options["format"] == "JPEG" and image.mode not in ("RGB", "L"):
        image = image.convert("RGB")
    tmp = destination.with_name(f".{destination.name}.partial")
    try:
        image.save(tmp, **options)
        tmp.replace(destination)
    except OSError as exc:
        tmp.unlink(missing_ok=True)
        raise TransientTransformError(f"Could not write {destination.name}: {exc}") from exc


def resize_image(width: int = 800) -> Transform:
    """Scale images to ``width`` pixels wide, keeping the aspect ratio."""

    def _resize(source: Path, destination: Path) -> None:
        with _open(source) as image:
            height = max(1, round(image.height * width / image.width))
            resized = image.resize((width, height), Image.Resampling.LANCZOS)
            extension = destination.suffix.lower()
            _save(resized, destination, {"format": _FORMATS.get(extension, "JPEG")})

    return _resize


def tiled_overlay(size: tuple[int, int], config: DictConfig) -> Image.Image:
    """Transparent layer with the watermark text repeated across the whole image."""
    width, height = size
    overlay = Image.new("RGBA", size, (255, 255, 255, 0))
    draw = ImageDraw.Draw(overlay)
    font = ImageFont.load_default(size=config.font_size)
    fill = (255, 255, 255, int(255 * config.opacity))
    for y in range(config.offset_y, height, config.step_y):
        for x in range(0, width + config.step_x, config.step_x):
            draw.text((x, y - config.font_size), config.text, font=font, fill=fill)
    return overlay


def watermark_image(config: DictConfig) -> Transform:
    """Composite the tiled overlay onto the image, preserving its codec."""

    def _watermark(source: Path, destination: Path) -> None:
        with _open(source) as image:
            base = image.convert("RGBA")
            composed = Image.alpha_composite(base, tiled_overlay(base.size, config))
            _save(composed, destination, encoder_options(destination.suffix, config))

    return _watermark
