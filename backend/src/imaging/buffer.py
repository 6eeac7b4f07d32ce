"""Pixel buffer variants and the total conversion into the working format.

Every processing stage works on ``NormalizedBuffer``: a C-contiguous,
writeable uint8 array of shape (H, W, 4) in RGBA order. Anything else (Pillow
images in other modes, gray/RGB arrays, 16-bit or float data, read-only
views) is an ``OpaqueBuffer`` and must go through ``normalize`` before it
reaches the resizer, the blur composer or the exporter.
"""

from dataclasses import dataclass
from typing import Any, Union

import numpy as np
from PIL import Image

CHANNELS = 4


@dataclass(frozen=True, eq=False)
class NormalizedBuffer:
    """RGBA uint8 pixels, (H, W, 4), C-contiguous and writeable."""

    pixels: np.ndarray

    def __post_init__(self):
        if not is_normalized_array(self.pixels):
            raise ValueError(
                f"not a normalized RGBA buffer: shape={getattr(self.pixels, 'shape', None)} "
                f"dtype={getattr(self.pixels, 'dtype', None)}"
            )

    @property
    def width(self) -> int:
        return self.pixels.shape[1]

    @property
    def height(self) -> int:
        return self.pixels.shape[0]

    @property
    def size(self) -> tuple[int, int]:
        """(width, height), Pillow order."""
        return self.width, self.height

    def copy(self) -> "NormalizedBuffer":
        return NormalizedBuffer(self.pixels.copy())

    def to_pil(self) -> Image.Image:
        return Image.fromarray(self.pixels, mode="RGBA")


@dataclass(frozen=True, eq=False)
class OpaqueBuffer:
    """Any pixel source not yet in the working format."""

    handle: Any


PixelBuffer = Union[NormalizedBuffer, OpaqueBuffer]


def is_normalized_array(arr) -> bool:
    return (
        isinstance(arr, np.ndarray)
        and arr.dtype == np.uint8
        and arr.ndim == 3
        and arr.shape[2] == CHANNELS
        and arr.shape[0] > 0
        and arr.shape[1] > 0
        and arr.flags["C_CONTIGUOUS"]
        and arr.flags["WRITEABLE"]
    )


def normalize(buffer: PixelBuffer) -> NormalizedBuffer:
    """Convert any buffer variant into a NormalizedBuffer.

    Already-normalized input is returned unchanged (no copy). Everything
    else is copied into fresh RGBA uint8 storage.

    Raises:
        TypeError: If the handle is neither a Pillow image nor an ndarray.
        ValueError: If an array has a shape that cannot be read as pixels.
    """
    if isinstance(buffer, NormalizedBuffer):
        return buffer
    handle = buffer.handle if isinstance(buffer, OpaqueBuffer) else buffer

    if isinstance(handle, Image.Image):
        return _from_pil(handle)
    if isinstance(handle, np.ndarray):
        return _from_array(handle)
    raise TypeError(f"cannot normalize pixel handle of type {type(handle).__name__}")


def _from_pil(img: Image.Image) -> NormalizedBuffer:
    if img.mode in ("I;16", "I;16B", "I;16L", "I", "F"):
        # Wide single-channel modes: scale to 8-bit before gray expansion
        return _from_array(np.asarray(img))
    if img.mode == "RGBA":
        rgba = img
    else:
        try:
            rgba = img.convert("RGBA")
        except ValueError:
            # No direct path for this mode
            rgba = img.convert("RGB").convert("RGBA")
    # np.array() always copies, so the result never aliases Pillow's storage
    return NormalizedBuffer(np.array(rgba, dtype=np.uint8, order="C"))


def _to_uint8(arr: np.ndarray) -> np.ndarray:
    if arr.dtype == np.uint8:
        return arr
    if arr.dtype == np.bool_:
        return arr.astype(np.uint8) * 255
    if np.issubdtype(arr.dtype, np.floating):
        # Float images are [0, 1]
        scaled = np.nan_to_num(arr.astype(np.float32), nan=0.0) * 255.0
        return np.clip(np.rint(scaled), 0, 255).astype(np.uint8)
    if arr.dtype == np.uint16:
        return (arr >> 8).astype(np.uint8)
    info = np.iinfo(arr.dtype)
    if info.max > 255:
        # Wider ints: map full dynamic range onto 8 bits
        lo, hi = int(arr.min()), int(arr.max())
        if hi == lo:
            return np.full(arr.shape, 0 if hi <= 0 else 255, dtype=np.uint8)
        scaled = (arr.astype(np.float64) - lo) * (255.0 / (hi - lo))
        return np.clip(np.rint(scaled), 0, 255).astype(np.uint8)
    return np.clip(arr, 0, 255).astype(np.uint8)


def _from_array(arr: np.ndarray) -> NormalizedBuffer:
    if arr.ndim == 2:
        arr = arr[:, :, np.newaxis]
    if arr.ndim != 3 or arr.shape[2] not in (1, 2, 3, 4):
        raise ValueError(f"unsupported pixel array shape {arr.shape}")
    if arr.shape[0] == 0 or arr.shape[1] == 0:
        raise ValueError(f"empty pixel array {arr.shape}")

    px = _to_uint8(arr)
    h, w, c = px.shape
    out = np.empty((h, w, CHANNELS), dtype=np.uint8)
    if c == 1:
        out[:, :, :3] = px
        out[:, :, 3] = 255
    elif c == 2:
        # Gray + alpha
        out[:, :, :3] = px[:, :, :1]
        out[:, :, 3] = px[:, :, 1]
    elif c == 3:
        out[:, :, :3] = px
        out[:, :, 3] = 255
    else:
        out[:] = px
    return NormalizedBuffer(out)
