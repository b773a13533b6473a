"""Turn image files into data URIs that can be sent inline in a completion request."""

import asyncio
from io import BytesIO
from pathlib import Path

from loguru import logger
from PIL import Image, UnidentifiedImageError
from pydantic_ai import BinaryContent

from metadata_injector.config import DEFAULT_JPEG_QUALITY
from metadata_injector.errors import EncodingError
from metadata_injector.intake import guess_media_type


FALLBACK_MEDIA_TYPE = "application/octet-stream"


def _downscale_to_jpeg(data: bytes, max_size: int, jpg_quality: int) -> bytes:
    """Decode, flatten alpha onto white, shrink to fit max_size and re-encode as JPEG."""
    with Image.open(BytesIO(data)) as opened:
        img = opened
        if img.mode in ("RGBA", "LA") or (img.mode == "P" and "transparency" in img.info):
            alpha = img.convert("RGBA")
            bg = Image.new("RGBA", alpha.size, (255, 255, 255, 255))
            img = Image.alpha_composite(bg, alpha).convert("RGB")
        else:
            img = img.convert("RGB")

        img.thumbnail((max_size, max_size), Image.Resampling.LANCZOS)
        buf = BytesIO()
        img.save(buf, format="JPEG", quality=jpg_quality)

    logger.debug(
        "image_downscaled",
        width=img.width,
        height=img.height,
        size_kb=buf.tell() // 1024,
    )
    return buf.getvalue()


def to_data_uri(data: bytes, media_type: str) -> str:
    """
    Build a ``data:`` URI embedding the media type and the base64 payload.

    Examples:
        >>> to_data_uri(b"abc", "image/png")
        'data:image/png;base64,YWJj'

    """
    return BinaryContent(data=data, media_type=media_type).data_uri


async def encode_image(
    path: Path,
    media_type: str | None = None,
    *,
    max_dimension: int | None = None,
    jpeg_quality: int = DEFAULT_JPEG_QUALITY,
) -> str:
    """
    Read an image file and return it as a data URI.

    The file read (and the optional re-encode) runs in a worker thread so the event loop
    is never blocked.

    Args:
        path: Image file to encode
        media_type: Media type to embed; guessed from the file name when omitted
        max_dimension: If set, downscale so neither side exceeds this many pixels and
            re-encode as JPEG before building the URI
        jpeg_quality: JPEG quality (1-100) used when re-encoding

    Returns:
        A ``data:<media type>;base64,...`` string.

    Raises:
        EncodingError: The file could not be read, or could not be decoded for resizing.

    """
    try:
        data = await asyncio.to_thread(path.read_bytes)
    except OSError as exc:
        msg = f"Could not read {path.name}: {exc.strerror or exc}"
        raise EncodingError(msg) from exc

    resolved_type = media_type or guess_media_type(path) or FALLBACK_MEDIA_TYPE

    if max_dimension:
        try:
            data = await asyncio.to_thread(_downscale_to_jpeg, data, max_dimension, jpeg_quality)
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as exc:
            msg = f"Could not decode {path.name}: {exc}"
            raise EncodingError(msg) from exc
        resolved_type = "image/jpeg"

    logger.debug("image_encoded", media_type=resolved_type, size_kb=len(data) // 1024)
    return to_data_uri(data, resolved_type)
