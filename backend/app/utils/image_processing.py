"""
Image processing utilities for the backend API.

Holds the raster data model, the resize calculation and the Pillow-backed
WebP codec used by the optimizer.
"""
import asyncio
import io
import logging
import math
from dataclasses import dataclass
from typing import Optional, Protocol, Tuple

from PIL import Image, UnidentifiedImageError

from app.utils.exceptions import DecodeError, EncodeError, SurfaceError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SourceImage:
    """
    Raw upload handed to the optimizer.

    Fields:
        data: Original file bytes
        size: Declared size in bytes
        mime_type: Declared MIME type, e.g. "image/jpeg"
        filename: Original filename, if known
    """
    data: bytes
    size: int
    mime_type: str
    filename: Optional[str] = None

    @classmethod
    def from_bytes(cls, data: bytes, mime_type: str, filename: Optional[str] = None) -> 'SourceImage':
        return cls(data=data, size=len(data), mime_type=mime_type, filename=filename)


@dataclass(frozen=True)
class Bitmap:
    """Decoded raster and its dimensions (always positive)."""
    image: Image.Image
    width: int
    height: int


@dataclass(frozen=True)
class EncodeResult:
    """Output of a single encode attempt."""
    data: bytes
    size: int
    quality: float
    width: int
    height: int


class Codec(Protocol):
    """Decode/encode capability the optimizer depends on."""

    async def decode(self, data: bytes) -> Bitmap:
        ...

    async def encode(self, bitmap: Bitmap, quality: float, size: Tuple[int, int]) -> EncodeResult:
        ...


def compute_target_size(
    width: int,
    height: int,
    max_width: Optional[int] = None,
    max_height: Optional[int] = None
) -> Tuple[int, int]:
    """
    Computes target dimensions inside a bounding box while maintaining aspect ratio.

    Never upscales. Without a bounding box the source dimensions are returned.

    Args:
        width: Source width in pixels
        height: Source height in pixels
        max_width: Bounding box width, or None
        max_height: Bounding box height, or None

    Returns:
        Tuple of (target_width, target_height)

    Raises:
        ValueError: If the source dimensions are not positive
    """
    if width <= 0 or height <= 0:
        raise ValueError(f"Image dimensions must be positive, got {width}x{height}")

    if max_width is None or max_height is None:
        return width, height

    ratio = min(max_width / width, max_height / height)
    if ratio >= 1:
        return width, height

    # Clamp so very thin images never collapse to zero pixels
    return max(1, math.floor(width * ratio)), max(1, math.floor(height * ratio))


def quality_to_percent(quality: float) -> int:
    """Maps a quality factor in (0, 1] onto Pillow's 1-100 scale."""
    if not 0 < quality <= 1:
        raise ValueError(f"Quality must be in (0, 1], got {quality}")
    return max(1, min(100, int(round(quality * 100))))


def _normalize_mode(img: Image.Image) -> Image.Image:
    if img.mode in ('RGB', 'RGBA'):
        return img
    if img.mode in ('LA', 'PA', 'RGBa', 'La') or 'transparency' in img.info:
        return img.convert('RGBA')
    return img.convert('RGB')


def decode_image(image_bytes: bytes) -> Bitmap:
    """
    Decodes image bytes into a Bitmap.

    Args:
        image_bytes: Raw image file bytes

    Returns:
        Bitmap in RGB or RGBA mode

    Raises:
        DecodeError: If the bytes are not a supported raster image
        SurfaceError: If the pixel buffer could not be allocated
    """
    try:
        img = Image.open(io.BytesIO(image_bytes))
        img.load()
    except Image.DecompressionBombError as e:
        raise SurfaceError(f"Image too large to decode: {e}") from e
    except MemoryError as e:
        raise SurfaceError("Not enough memory to decode image") from e
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError) as e:
        raise DecodeError(f"Invalid image file: {e}") from e

    width, height = img.size
    if width <= 0 or height <= 0:
        raise DecodeError(f"Image has invalid dimensions {width}x{height}")

    try:
        img = _normalize_mode(img)
    except (MemoryError, OSError, ValueError) as e:
        raise SurfaceError(f"Could not prepare {img.mode} image for encoding: {e}") from e

    return Bitmap(image=img, width=width, height=height)


def encode_webp(bitmap: Bitmap, quality: float, size: Tuple[int, int]) -> EncodeResult:
    """
    Renders the bitmap at the given size and compresses it to WebP.

    Args:
        bitmap: Decoded source raster
        quality: Quality factor in (0, 1]
        size: Target size tuple (width, height)

    Returns:
        EncodeResult with the WebP bytes

    Raises:
        EncodeError: If Pillow cannot produce output for this attempt
    """
    percent = quality_to_percent(quality)
    width, height = size

    try:
        img = bitmap.image
        if (width, height) != (bitmap.width, bitmap.height):
            img = img.resize((width, height), Image.Resampling.LANCZOS)

        output = io.BytesIO()
        img.save(output, format='WEBP', quality=percent, method=4)
    except (KeyError, OSError, ValueError, MemoryError) as e:
        raise EncodeError(f"WebP encode failed at quality {quality} ({width}x{height}): {e}") from e

    data = output.getvalue()
    if not data:
        raise EncodeError(f"WebP encoder returned no data at quality {quality}")

    return EncodeResult(data=data, size=len(data), quality=quality, width=width, height=height)


class PillowWebPCodec:
    """Codec that runs Pillow decode/encode in worker threads."""

    async def decode(self, data: bytes) -> Bitmap:
        return await asyncio.to_thread(decode_image, data)

    async def encode(self, bitmap: Bitmap, quality: float, size: Tuple[int, int]) -> EncodeResult:
        return await asyncio.to_thread(encode_webp, bitmap, quality, size)


def compress_image(image_bytes: bytes, target_size: Tuple[int, int] = (1920, 1920), quality: float = 0.75) -> EncodeResult:
    """
    Single-shot WebP compression inside a bounding box.

    Args:
        image_bytes: Original image bytes
        target_size: Bounding box tuple (width, height)
        quality: Quality factor in (0, 1]

    Returns:
        EncodeResult with the compressed WebP bytes and final dimensions
    """
    bitmap = decode_image(image_bytes)
    size = compute_target_size(bitmap.width, bitmap.height, *target_size)
    result = encode_webp(bitmap, quality, size)
    logger.debug('Compressed image', extra={
        'original_size': len(image_bytes),
        'converted_size': result.size,
        'quality': quality
    })
    return result
