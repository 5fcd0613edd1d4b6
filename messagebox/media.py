"""Staging of outgoing images as in-memory browser upload payloads."""

from __future__ import annotations

import io
import logging
import mimetypes
from typing import Dict, List, Optional, Sequence

from PIL import Image, UnidentifiedImageError

from .models import MediaFile

log = logging.getLogger(__name__)

MAX_FILES = 10
DEFAULT_MIME = "application/octet-stream"
_EXTENSIONS = {"image/jpeg": ".jpg", "image/png": ".png", "image/webp": ".webp", "image/gif": ".gif"}


def sniff_mime_type(content: bytes) -> Optional[str]:
    """Detect the image type from its bytes; ``None`` if Pillow cannot read it."""

    try:
        with Image.open(io.BytesIO(content)) as image:
            return Image.MIME.get(image.format or "")
    except (UnidentifiedImageError, OSError, ValueError):
        return None


def stage_media(files: Sequence[MediaFile]) -> List[Dict[str, object]]:
    payloads: List[Dict[str, object]] = []
    for index, media in enumerate(files, start=1):
        name = (media.filename or "").strip()
        mime = media.mime_type or mimetypes.guess_type(name)[0] or ""
        if not mime or not mime.startswith("image/"):
            mime = sniff_mime_type(media.content) or mime or DEFAULT_MIME
        if not name or "." not in name:
            extension = _EXTENSIONS.get(mime) or mimetypes.guess_extension(mime) or ""
            name = f"{name or f'image-{index}'}{extension}"
        payloads.append({"name": name, "mimeType": mime, "buffer": media.content})
        log.debug("Staged %s (%s, %d bytes)", name, mime, len(media.content))
    return payloads
