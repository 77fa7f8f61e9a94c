"""Pillow helpers: shrink screenshots for upload, validate downloaded icons."""

from __future__ import annotations

import base64
import logging
from io import BytesIO
from typing import Optional, Tuple

from PIL import Image, ImageOps, UnidentifiedImageError

log = logging.getLogger(__name__)

MAX_UPLOAD_SIZE: Tuple[int, int] = (800, 800)
UPLOAD_JPEG_QUALITY = 50


def prepare_for_upload(
    data: bytes,
    max_size: Tuple[int, int] = MAX_UPLOAD_SIZE,
    quality: int = UPLOAD_JPEG_QUALITY,
) -> bytes:
    """Return a JPEG copy of ``data`` that fits inside ``max_size``.

    Aspect ratio is kept and small images are never upscaled.  The caller's
    bytes are not touched; a new buffer is always returned.

    Raises:
        ValueError: if ``data`` is not a decodable image.
    """
    try:
        img = Image.open(BytesIO(data))
        img.load()
    except (UnidentifiedImageError, OSError) as exc:
        raise ValueError(f"not a decodable image: {exc}") from exc

    img = ImageOps.exif_transpose(img)
    original_size = img.size
    img.thumbnail(max_size, Image.Resampling.LANCZOS)
    if img.mode in ("RGBA", "LA", "PA") or (img.mode == "P" and "transparency" in img.info):
        # JPEG has no alpha: composite onto white
        rgba = img.convert("RGBA")
        img = Image.new("RGB", rgba.size, (255, 255, 255))
        img.paste(rgba, mask=rgba.getchannel("A"))
    elif img.mode not in ("RGB", "L"):
        img = img.convert("RGB")

    buf = BytesIO()
    img.save(buf, "JPEG", quality=quality, optimize=True)
    out = buf.getvalue()
    log.debug(
        "Prepared upload: %s -> %s  %d -> %d bytes",
        original_size, img.size, len(data), len(out),
    )
    return out


def to_data_url(jpeg: bytes) -> str:
    return "data:image/jpeg;base64," + base64.b64encode(jpeg).decode("ascii")


def detect_image_format(data: bytes) -> Optional[str]:
    """Pillow format name (``PNG``, ``JPEG``...) or None if not an image."""
    if not data:
        return None
    try:
        with Image.open(BytesIO(data)) as img:
            fmt = img.format
            img.verify()
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError):
        return None
    return fmt


def extension_for(fmt: Optional[str]) -> str:
    return {"JPEG": "jpg", "WEBP": "webp", "GIF": "gif"}.get(fmt or "", "png")
