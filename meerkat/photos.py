"""Contact photo storage.

Photos are normalised to a 125x125 JPEG file on disk plus a 48x48 JPEG
thumbnail kept inline on the contact as a data URL.
"""

from __future__ import annotations

import base64
import logging
import os
from io import BytesIO
from pathlib import Path
from uuid import uuid4

from PIL import Image, UnidentifiedImageError
from starlette.concurrency import run_in_threadpool

from .errors import MeerkatError, RemoteFetchFailed, UnsupportedFormat
from .fetch import ImageFetcher
from .models import Contact

logger = logging.getLogger("meerkat.photos")

PHOTO_SIZE = 125
THUMBNAIL_SIZE = 48
JPEG_QUALITY = 85

JPEG_MAGIC = b"\xff\xd8\xff"
PNG_MAGIC = b"\x89PNG\r\n\x1a\n"

_FORMATS = {
    "image/jpeg": "JPEG",
    "image/jpg": "JPEG",
    "image/pjpeg": "JPEG",
    "image/png": "PNG",
}


def sniff_media_type(data: bytes) -> str:
    """Return image/jpeg or image/png from the magic bytes, or "" if neither."""
    if data.startswith(JPEG_MAGIC):
        return "image/jpeg"
    if data.startswith(PNG_MAGIC):
        return "image/png"
    return ""


def _resize_jpeg(image: Image.Image, size: int) -> bytes:
    resized = image.resize((size, size), Image.LANCZOS)
    buf = BytesIO()
    resized.save(buf, format="JPEG", quality=JPEG_QUALITY)
    return buf.getvalue()


class PhotoStore:
    """Writes and reads contact photos under a single directory."""

    def __init__(self, photo_dir: str | os.PathLike[str]):
        self.photo_dir = Path(photo_dir)

    def save(self, data: bytes, media_type: str = "") -> tuple[str, str]:
        """Decode, resize and persist a photo.

        Args:
            data: Raw image bytes
            media_type: Advertised media type; sniffed when missing or unknown

        Returns:
            Tuple of (filename, thumbnail data URL)

        Raises:
            UnsupportedFormat: If the bytes are neither JPEG nor PNG
            OSError: If the file cannot be written
        """
        fmt = _FORMATS.get(media_type.strip().lower()) or _FORMATS.get(sniff_media_type(data))
        if fmt is None:
            raise UnsupportedFormat(f"unsupported image format {media_type or 'unknown'!r}")

        try:
            # declared and actual format may disagree; either supported one decodes
            with Image.open(BytesIO(data), formats=["JPEG", "PNG"]) as img:
                img.load()
                rgb = img.convert("RGB")
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as e:
            raise UnsupportedFormat(f"cannot decode {fmt} image: {e}") from e

        photo_bytes = _resize_jpeg(rgb, PHOTO_SIZE)
        thumb_bytes = _resize_jpeg(rgb, THUMBNAIL_SIZE)

        self.photo_dir.mkdir(parents=True, exist_ok=True)
        filename = f"{uuid4()}_photo.jpg"
        target = self.photo_dir / filename
        tmp = target.with_suffix(".tmp")
        try:
            tmp.write_bytes(photo_bytes)
            os.replace(tmp, target)
        finally:
            tmp.unlink(missing_ok=True)

        thumbnail = "data:image/jpeg;base64," + base64.b64encode(thumb_bytes).decode("ascii")
        return filename, thumbnail

    def save_or_log(self, data: bytes, media_type: str = "") -> tuple[str, str] | None:
        """Like ``save`` but downgrades failures to a logged warning."""
        try:
            return self.save(data, media_type)
        except (MeerkatError, OSError) as e:
            logger.warning(f"Photo not saved: {e}")
            return None

    def read(self, contact: Contact) -> tuple[str, str]:
        """Read a contact's photo back for vCard emission.

        Returns:
            Tuple of (base64 body, media type); both empty when the contact
            has no photo
        """
        if contact.photo:
            path = self.photo_dir / contact.photo
            try:
                data = path.read_bytes()
            except FileNotFoundError:
                logger.debug(f"Photo file {path} missing, falling back to thumbnail")
            except OSError as e:
                logger.warning(f"Cannot read photo {path}: {e}")
            else:
                media_type = sniff_media_type(data) or "image/jpeg"
                return base64.b64encode(data).decode("ascii"), media_type

        thumbnail = contact.photo_thumbnail or ""
        if thumbnail.startswith("data:") and "," in thumbnail:
            prefix, body = thumbnail.split(",", 1)
            media_type = prefix[len("data:"):].split(";", 1)[0] or "image/jpeg"
            return body, media_type

        return "", ""


async def materialize_photo(
    store: PhotoStore,
    fetcher: ImageFetcher | None,
    data: bytes = b"",
    media_type: str = "",
    url: str = "",
) -> tuple[str, str] | None:
    """Turn inline bytes or a remote URL into a stored photo.

    Inline bytes win over the URL. Every failure is logged and reported as
    None so that the contact write it belongs to can go ahead.

    Returns:
        Tuple of (filename, thumbnail data URL), or None if nothing was saved
    """
    if not data and url:
        if fetcher is None:
            logger.warning(f"Photo URL {url!r} ignored: no fetcher configured")
            return None
        try:
            data, media_type = await fetcher.fetch(url)
        except RemoteFetchFailed as e:
            logger.warning(f"Photo not fetched from {url!r}: {e}")
            return None
    if not data:
        return None
    return await run_in_threadpool(store.save_or_log, data, media_type)
