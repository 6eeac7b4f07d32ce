"""Single-pass gaussian blur primitive using scipy.ndimage.

One pass saturates at MAX_PRIMITIVE_RADIUS; callers that need a stronger
effect compose several passes (see engine.compose).
"""

import logging

import numpy as np
from scipy.ndimage import gaussian_filter

from imaging.buffer import NormalizedBuffer

logger = logging.getLogger(__name__)

# Strongest sigma a single pass will apply
MAX_PRIMITIVE_RADIUS = 25


def apply_once(buffer: NormalizedBuffer, radius: int) -> NormalizedBuffer:
    """Blur RGB channels once, preserve alpha. Does not touch ``buffer``.

    Raises:
        ValueError: If radius is not positive.
    """
    if radius <= 0:
        raise ValueError(f"radius must be positive, got {radius}")

    sigma = float(min(radius, MAX_PRIMITIVE_RADIUS))
    if radius > MAX_PRIMITIVE_RADIUS:
        logger.debug(
            "Radius %d clamped to primitive ceiling %d", radius, MAX_PRIMITIVE_RADIUS
        )

    frame = buffer.pixels
    output = np.empty_like(frame)
    # Spatial axes only; channels never mix
    rgb = gaussian_filter(
        frame[:, :, :3].astype(np.float32), sigma=(sigma, sigma, 0), mode="reflect"
    )
    output[:, :, :3] = np.clip(np.rint(rgb), 0, 255).astype(np.uint8)
    output[:, :, 3] = frame[:, :, 3]
    return NormalizedBuffer(output)
