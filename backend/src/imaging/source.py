"""Selected-image locator and the picker gate in front of it."""

import logging
from dataclasses import dataclass
from pathlib import Path

from errors import NoSourceSelected
from security import validate_upload

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ImageSource:
    """Opaque handle to the user's original image. Never mutated."""

    path: Path

    @property
    def uri(self) -> str:
        return self.path.as_uri()

    @property
    def name(self) -> str:
        return self.path.name


def pick(path: str | None) -> ImageSource | None:
    """Turn a picker result into an ImageSource.

    Returns None when the user cancelled (no path).

    Raises:
        NoSourceSelected: If the path fails upload validation.
    """
    if not path:
        return None
    errors = validate_upload(path)
    if errors:
        logger.info("Rejected image selection: %s", "; ".join(errors))
        raise NoSourceSelected("; ".join(errors))
    return ImageSource(Path(path).resolve())
