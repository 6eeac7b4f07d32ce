"""PNG export encoding and JPEG preview encoding for display transport."""

import io

from PIL import Image

from errors import ExportEncodeFailure
from imaging.buffer import NormalizedBuffer

# Preview JPEGs are capped so a reply stays well under the ZMQ send budget
PREVIEW_MAX_DIMENSION = 1280
PREVIEW_QUALITY_CHAIN = (90, 80, 70, 60)
DEFAULT_PREVIEW_BYTES = 2 * 1024 * 1024  # 2MB


def encode_png(buffer: NormalizedBuffer, stream) -> None:
    """Write ``buffer`` losslessly as PNG into a binary stream.

    Raises:
        ExportEncodeFailure: If Pillow cannot encode or the stream rejects it.
    """
    try:
        buffer.to_pil().save(stream, format="PNG", compress_level=9)
    except (OSError, ValueError) as e:
        raise ExportEncodeFailure(f"PNG encode failed: {type(e).__name__}") from e


def encode_preview(buffer: NormalizedBuffer, quality: int = 90) -> bytes:
    """Encode a display-sized RGB JPEG. Drops alpha (JPEG is RGB only)."""
    img = Image.fromarray(buffer.pixels[:, :, :3])
    img.thumbnail(
        (PREVIEW_MAX_DIMENSION, PREVIEW_MAX_DIMENSION), Image.Resampling.BILINEAR
    )
    out = io.BytesIO()
    img.save(out, format="JPEG", quality=quality)
    return out.getvalue()


def encode_preview_fit(
    buffer: NormalizedBuffer,
    max_bytes: int = DEFAULT_PREVIEW_BYTES,
    quality_chain: tuple[int, ...] = PREVIEW_QUALITY_CHAIN,
) -> tuple[bytes, int]:
    """Encode a preview, reducing quality until it fits in max_bytes.

    Returns (jpeg_bytes, quality_used).
    Raises ValueError if the preview exceeds max_bytes at the lowest quality.
    """
    if not quality_chain:
        raise ValueError("quality_chain must not be empty")
    data = b""
    for q in quality_chain:
        data = encode_preview(buffer, quality=q)
        if len(data) <= max_bytes:
            return data, q
    raise ValueError(
        f"Preview ({len(data)} bytes) exceeds {max_bytes} bytes "
        f"even at quality {quality_chain[-1]}"
    )
