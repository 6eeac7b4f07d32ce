"""Resizer — bounds the largest image dimension and normalizes the format."""

import logging

from PIL import Image

from config import DEFAULT_MAX_DIMENSION
from imaging.buffer import NormalizedBuffer, OpaqueBuffer, PixelBuffer, normalize

logger = logging.getLogger(__name__)


def _dimensions(buffer: PixelBuffer) -> tuple[int, int]:
    """(width, height) of either buffer variant."""
    if isinstance(buffer, NormalizedBuffer):
        return buffer.size
    handle = buffer.handle
    if isinstance(handle, Image.Image):
        return handle.size
    return int(handle.shape[1]), int(handle.shape[0])


def target_size(
    width: int, height: int, max_dimension: int = DEFAULT_MAX_DIMENSION
) -> tuple[int, int]:
    """Scaled (width, height) with the largest side <= max_dimension.

    A single scale factor is applied to both axes; results are floored
    but never drop below one pixel. Integer arithmetic keeps the largest
    side at exactly ``max_dimension``.
    """
    largest = max(width, height)
    if largest <= max_dimension:
        return width, height
    return (
        max(1, width * max_dimension // largest),
        max(1, height * max_dimension // largest),
    )


def resize(
    buffer: PixelBuffer, max_dimension: int = DEFAULT_MAX_DIMENSION
) -> NormalizedBuffer:
    """Bound ``buffer`` to ``max_dimension`` and return it normalized.

    Input that already fits is only format-converted (and returned as-is
    when it is already a NormalizedBuffer). Larger input is resampled
    bilinearly.
    """
    width, height = _dimensions(buffer)
    new_w, new_h = target_size(width, height, max_dimension)
    if (new_w, new_h) == (width, height):
        return normalize(buffer)

    src = normalize(buffer)
    logger.debug("Resizing %dx%d -> %dx%d", width, height, new_w, new_h)
    scaled = src.to_pil().resize((new_w, new_h), resample=Image.Resampling.BILINEAR)
    return normalize(OpaqueBuffer(scaled))
