"""Image uploads: type sniffing, size limits and storage under the upload directory."""

import io
import logging
import re
import secrets
from pathlib import Path

from PIL import Image, UnidentifiedImageError

from .config import Settings
from .errors import ApiError

logger = logging.getLogger(__name__)

EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
}

FILENAME_RE = re.compile(r"^[0-9a-f]{32}\.(jpg|png|webp)$")


def sniff_mime(data: bytes):
    """Identify JPEG, PNG and WebP payloads from their magic bytes."""
    if data.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if data.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if len(data) >= 12 and data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return None


def image_size(data: bytes):
    try:
        with Image.open(io.BytesIO(data)) as img:
            size = img.size
            img.verify()
    except (
        UnidentifiedImageError,
        Image.DecompressionBombError,
        OSError,
        SyntaxError,
        ValueError,
    ) as e:
        raise ApiError("Invalid image file", 400, detail=str(e)) from e
    return size


def ensure_upload_dir(directory: Path):
    try:
        directory.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise ApiError("Failed to create upload directory", 500, detail=str(e)) from e


def save_image(data: bytes, declared_mime: str, settings: Settings) -> dict:
    size = len(data)
    if size > settings.max_upload_bytes:
        raise ApiError("File exceeds size limit", 413, max_bytes=settings.max_upload_bytes)

    mime = sniff_mime(data)
    if mime is None or mime not in settings.allowed_mime:
        raise ApiError("Unsupported file type", 415, mime=mime or declared_mime)

    width, height = image_size(data)

    directory = Path(settings.upload_dir)
    ensure_upload_dir(directory)
    filename = secrets.token_hex(16) + EXTENSIONS[mime]
    try:
        (directory / filename).write_bytes(data)
    except OSError as e:
        logger.exception("Failed to write upload %s", filename)
        raise ApiError("Failed to save uploaded file", 500, detail=str(e)) from e

    logger.info("Stored upload %s (%s, %d bytes, %dx%d)", filename, mime, size, width, height)
    return {
        "path": settings.upload_url_prefix.rstrip("/") + "/" + filename,
        "filename": filename,
        "mime": mime,
        "bytes": size,
        "width": width,
        "height": height,
    }


def media_path(filename: str, settings: Settings) -> Path:
    path = Path(settings.upload_dir) / filename
    if not FILENAME_RE.match(filename) or not path.is_file():
        raise ApiError("Media not found", 404)
    return path


def delete_image(filename: str, settings: Settings):
    path = media_path(filename, settings)
    path.unlink()
    logger.info("Deleted upload %s", filename)
