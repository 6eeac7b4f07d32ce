"""Exporter — encodes the current buffer into shared pictures storage.

``Exporter.export`` is the synchronous operation; ``ExportManager`` runs it
on a background thread, one job at a time, and reports the outcome through
the notifier.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

import sentry_sdk

from engine.cache import encode_png
from errors import ExportEncodeFailure, ExportProvisionFailure
from imaging.buffer import NormalizedBuffer, PixelBuffer, normalize
from imaging.storage import PICTURES, PicturesStorage
from notify import Notifier

logger = logging.getLogger(__name__)

PNG_MIME_TYPE = "image/png"

MSG_SAVED = "Image saved in Gallery"
MSG_SAVE_ERROR = "Error saving image"
MSG_NOTHING_TO_SAVE = "No image to save"


def export_filename(now_ms: int | None = None) -> str:
    """Time-based unique name, e.g. blurred_1718000000000.png."""
    if now_ms is None:
        now_ms = time.time_ns() // 1_000_000
    return f"blurred_{now_ms}.png"


class Exporter:
    """Writes one buffer to storage as a lossless PNG."""

    def __init__(self, storage: PicturesStorage, clock_ms: Callable[[], int] | None = None):
        self.storage = storage
        self._clock_ms = clock_ms
        self.last_filename: str | None = None

    def _provision(self):
        # Retry with a bumped timestamp if two exports land in the same ms
        now_ms = self._clock_ms() if self._clock_ms else time.time_ns() // 1_000_000
        for bump in range(3):
            filename = export_filename(now_ms + bump)
            stream = self.storage.create_writable_image(
                filename, PNG_MIME_TYPE, PICTURES
            )
            if stream is not None:
                return filename, stream
            if not (self.storage.root / filename).exists():
                break
        raise ExportProvisionFailure("Storage did not grant a destination")

    def export(self, buffer: PixelBuffer) -> bool:
        """Encode ``buffer`` into a new storage entry. Returns success.

        The destination stream is always closed; it is only committed when
        encoding completed.
        """
        try:
            normalized: NormalizedBuffer = normalize(buffer)
            filename, stream = self._provision()
            with stream:
                encode_png(normalized, stream)
        except ExportProvisionFailure as e:
            logger.error("Export failed: %s", e)
            return False
        except ExportEncodeFailure as e:
            sentry_sdk.capture_exception(e)
            logger.error("Export failed: %s", e)
            return False
        except (OSError, TypeError, ValueError) as e:
            sentry_sdk.capture_exception(e)
            logger.error("Export failed: %s", type(e).__name__)
            logger.debug("Export failure detail: %s", e)
            return False

        self.last_filename = filename
        logger.info("Exported %s (%dx%d)", filename, normalized.width, normalized.height)
        return True


class ExportStatus(Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETE = "complete"
    ERROR = "error"


@dataclass
class ExportJob:
    """Tracks state of a background export."""

    status: ExportStatus = ExportStatus.IDLE
    radius: int | None = None
    filename: str | None = None
    error: str | None = None
    _lock: threading.Lock = field(default_factory=threading.Lock)
    _done: threading.Event = field(default_factory=threading.Event)
    _thread: threading.Thread | None = field(default=None, repr=False)

    def wait(self, timeout: float | None = None) -> bool:
        return self._done.wait(timeout)


class ExportManager:
    """Manages background export jobs. One job at a time."""

    def __init__(self, exporter: Exporter, notifier: Notifier | None = None):
        self.exporter = exporter
        self.notifier = notifier or Notifier()
        self._job: ExportJob | None = None

    @property
    def job(self) -> ExportJob | None:
        return self._job

    def start(self, buffer: NormalizedBuffer | None, radius: int | None = None) -> ExportJob | None:
        """Start a background export of ``buffer``.

        Returns None (after notifying "No image to save") when there is
        nothing to export.

        Raises:
            RuntimeError: If an export is already running.
        """
        if self._job is not None and self._job.status == ExportStatus.RUNNING:
            raise RuntimeError("Export already in progress")

        if buffer is None:
            self.notifier.notify(MSG_NOTHING_TO_SAVE)
            return None

        job = ExportJob(radius=radius)
        self._job = job

        thread = threading.Thread(
            target=self._run_export, args=(job, buffer), daemon=True
        )
        job._thread = thread
        job.status = ExportStatus.RUNNING
        thread.start()
        return job

    def _run_export(self, job: ExportJob, buffer: NormalizedBuffer):
        try:
            ok = self.exporter.export(buffer)
            with job._lock:
                if ok:
                    job.status = ExportStatus.COMPLETE
                    job.filename = self.exporter.last_filename
                else:
                    job.status = ExportStatus.ERROR
                    job.error = MSG_SAVE_ERROR
            self.notifier.notify(MSG_SAVED if ok else MSG_SAVE_ERROR)
        except Exception as e:
            sentry_sdk.capture_exception(e)
            logger.exception("Export failed")
            with job._lock:
                job.status = ExportStatus.ERROR
                job.error = f"Export failed: {type(e).__name__}"
            self.notifier.notify(f"Error: {type(e).__name__}")
        finally:
            job._done.set()

    def get_status(self) -> dict:
        """Return serializable status dict."""
        if self._job is None:
            return {"status": ExportStatus.IDLE.value, "filename": None, "error": None}
        with self._job._lock:
            return {
                "status": self._job.status.value,
                "radius": self._job.radius,
                "filename": self._job.filename,
                "error": self._job.error,
            }
