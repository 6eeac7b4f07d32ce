"""Blur composer — reaches strengths beyond one primitive pass by repetition."""

import logging
from typing import Callable

import numpy as np

from config import DEFAULT_BLUR_PASSES
from effects.blur import apply_once
from errors import BlurFailure
from imaging.buffer import NormalizedBuffer, PixelBuffer, normalize

logger = logging.getLogger(__name__)

BlurPrimitive = Callable[[NormalizedBuffer, int], NormalizedBuffer]


def _check_pass_output(result, expected_shape: tuple, pass_index: int) -> NormalizedBuffer:
    if not isinstance(result, NormalizedBuffer):
        raise BlurFailure(
            f"Blur pass {pass_index} returned {type(result).__name__}, "
            "expected NormalizedBuffer"
        )
    if result.pixels.shape != expected_shape:
        raise BlurFailure(
            f"Blur pass {pass_index} returned shape {result.pixels.shape}, "
            f"expected {expected_shape}"
        )
    if result.pixels.dtype != np.uint8:
        raise BlurFailure(f"Blur pass {pass_index} returned dtype {result.pixels.dtype}")
    return result


def blur(
    buffer: PixelBuffer,
    radius: int,
    passes: int = DEFAULT_BLUR_PASSES,
    primitive: BlurPrimitive = apply_once,
) -> NormalizedBuffer:
    """Apply ``primitive`` ``passes`` times, each pass feeding the next.

    The caller's buffer is never modified: the first pass runs on a private
    copy, later passes on the previous pass's output.

    Raises:
        ValueError: If radius <= 0 or passes < 0.
        BlurFailure: If the primitive raises or returns an invalid buffer.
    """
    if radius <= 0:
        raise ValueError(f"radius must be positive, got {radius}")
    if passes < 0:
        raise ValueError(f"passes must be non-negative, got {passes}")

    current = normalize(buffer)
    if passes == 0:
        return current

    expected_shape = current.pixels.shape
    if current is buffer:
        current = current.copy()
    for i in range(passes):
        try:
            result = primitive(current, radius)
        except BlurFailure:
            raise
        except Exception as e:
            logger.debug("Blur primitive detail (pass %d): %s", i, e)
            raise BlurFailure(f"Blur failed: {type(e).__name__}") from e
        current = _check_pass_output(result, expected_shape, i)

    return current
