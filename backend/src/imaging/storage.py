"""Shared pictures storage — provisions writable destinations for exports.

A destination is written to a hidden ``.pending-*`` file next to its final
name and renamed into place only when the stream is closed without error,
so readers of the directory never see a half-written image.
"""

import logging
import os
from pathlib import Path

from security import validate_export_name, validate_output_dir

logger = logging.getLogger(__name__)

PICTURES = "Pictures"


class PendingImageStream:
    """Binary write stream that publishes its file on clean close."""

    def __init__(self, final_path: Path):
        self.final_path = final_path
        self.pending_path = final_path.with_name(f".pending-{final_path.name}")
        self._fh = open(self.pending_path, "xb")  # noqa: SIM115
        self.committed = False

    def write(self, data) -> int:
        return self._fh.write(data)

    def writable(self) -> bool:
        return True

    def seekable(self) -> bool:
        return self._fh.seekable()

    def seek(self, offset: int, whence: int = os.SEEK_SET) -> int:
        return self._fh.seek(offset, whence)

    def tell(self) -> int:
        return self._fh.tell()

    def flush(self):
        self._fh.flush()

    @property
    def closed(self) -> bool:
        return self._fh.closed

    def close(self, *, commit: bool = True):
        """Close the stream; publish the file if ``commit``, else discard it.

        A failed flush or rename removes the pending file before the error
        propagates.
        """
        if self._fh.closed:
            return
        try:
            try:
                self._fh.flush()
                if commit:
                    os.fsync(self._fh.fileno())
            finally:
                self._fh.close()
            if commit:
                os.replace(self.pending_path, self.final_path)
                self.committed = True
        except OSError:
            self.pending_path.unlink(missing_ok=True)
            raise
        if not commit:
            self.pending_path.unlink(missing_ok=True)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close(commit=exc_type is None)
        return False


class PicturesStorage:
    """Directory-backed picture store (the shared "Pictures" category)."""

    def __init__(self, root: str | Path):
        self.root = Path(root).expanduser()

    def create_writable_image(
        self, filename: str, mime_type: str, category: str = PICTURES
    ) -> PendingImageStream | None:
        """Provision a destination. Returns None if it cannot be granted."""
        if category != PICTURES:
            logger.warning("Unsupported destination category: %s", category)
            return None

        errors = validate_export_name(filename, mime_type)
        errors += validate_output_dir(str(self.root.absolute()))
        if errors:
            logger.warning("Export destination refused: %s", "; ".join(errors))
            return None

        final_path = self.root / filename
        if final_path.exists():
            logger.warning("Export destination already exists: %s", filename)
            return None

        try:
            self.root.mkdir(parents=True, exist_ok=True)
            return PendingImageStream(final_path)
        except OSError as e:
            logger.error("Could not provision %s: %s", filename, type(e).__name__)
            logger.debug("Provision detail: %s", e)
            return None
