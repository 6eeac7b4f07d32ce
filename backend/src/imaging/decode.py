"""Image decoding via Pillow into the working RGBA format."""

import logging
import warnings

from PIL import Image, ImageOps, UnidentifiedImageError

from errors import DecodeFailure
from imaging.buffer import NormalizedBuffer, OpaqueBuffer, normalize
from imaging.source import ImageSource
from security import MAX_IMAGE_PIXELS

logger = logging.getLogger(__name__)


def decode(source: ImageSource) -> NormalizedBuffer:
    """Decode ``source`` fully into a fresh, mutable RGBA buffer.

    Pixels are forced into process memory (``Image.load``) and detached
    from the file, with EXIF orientation applied, so nothing downstream
    ever holds a lazy or file-backed image.

    Raises:
        DecodeFailure: Missing, unreadable, corrupt or oversized input.
    """
    try:
        with warnings.catch_warnings():
            warnings.simplefilter("error", Image.DecompressionBombWarning)
            with Image.open(source.path) as img:
                w, h = img.size
                if w * h > MAX_IMAGE_PIXELS:
                    raise DecodeFailure(
                        f"Image too large: {w}x{h} exceeds {MAX_IMAGE_PIXELS} pixels"
                    )
                img.load()
                oriented = ImageOps.exif_transpose(img)
                return normalize(OpaqueBuffer(oriented))
    except DecodeFailure:
        raise
    except FileNotFoundError as e:
        raise DecodeFailure(f"Image not found: {source.name}") from e
    except UnidentifiedImageError as e:
        raise DecodeFailure(f"Unsupported image format: {source.name}") from e
    except (Image.DecompressionBombError, Image.DecompressionBombWarning) as e:
        raise DecodeFailure(f"Image too large: {source.name}") from e
    except (OSError, SyntaxError, ValueError) as e:
        logger.debug("Decode detail for %s: %s", source.name, e)
        raise DecodeFailure(f"Could not decode image: {source.name}") from e
