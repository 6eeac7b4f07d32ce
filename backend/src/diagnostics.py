"""Diagnostics — structured logging, faulthandler, crash dumps.

Layers:
1. Structured JSON logging with RotatingFileHandler (plus optional stderr)
2. faulthandler: C-level crash tracebacks (scipy/Pillow native code)
3. sys.excepthook: unhandled Python exceptions → PII-stripped JSON dumps
"""

import datetime
import faulthandler
import json
import logging
import logging.handlers
import os
import sys
import traceback
from pathlib import Path

from _version import __version__
from security import strip_pii

logger = logging.getLogger(__name__)

BASE_DIR = "~/.blurwall"
LOG_FILENAME = "blurwall.log"
FAULT_FILENAME = "blurwall_fault.log"

# Maximum crash reports to keep
MAX_CRASH_REPORTS = 5

# Maximum log age in days
MAX_LOG_AGE_DAYS = 7

# Context attributes copied from LogRecord extras into the JSON entry
_EXTRA_FIELDS = ("seq", "radius", "stage")


def _base_dir() -> str:
    return os.path.expanduser(BASE_DIR)


def _validate_log_dir(env_dir: str) -> str:
    """Keep APP_LOG_DIR inside the blurwall base dir. Returns safe path."""
    default = os.path.join(_base_dir(), "logs")
    if not env_dir:
        return default
    resolved = os.path.realpath(env_dir)
    allowed = os.path.realpath(_base_dir())
    if resolved != allowed and not resolved.startswith(allowed + os.sep):
        logger.warning("APP_LOG_DIR outside allowed prefix, using default")
        return default
    return resolved


class JSONFormatter(logging.Formatter):
    """One JSON object per line; includes the emitting thread.

    The thread name separates control-side entries (zmq, blur-scheduler)
    from worker-side ones (blur-worker, export).
    """

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.datetime.fromtimestamp(
                record.created, tz=datetime.timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "message": record.getMessage(),
        }
        for name in _EXTRA_FIELDS:
            if hasattr(record, name):
                entry[name] = getattr(record, name)
        if record.exc_info and record.exc_info[1] is not None:
            entry["exception"] = {
                "type": type(record.exc_info[1]).__name__,
                "traceback": self.formatException(record.exc_info),
            }
        return json.dumps(entry, default=str)


def _prune(paths, keep: int):
    """Delete all but the ``keep`` newest files."""
    ordered = sorted(paths, key=lambda f: f.stat().st_mtime, reverse=True)
    for old in ordered[keep:]:
        old.unlink(missing_ok=True)


def _cleanup_old_logs(log_dir: str):
    """Delete rotated logs older than MAX_LOG_AGE_DAYS."""
    cutoff = datetime.datetime.now() - datetime.timedelta(days=MAX_LOG_AGE_DAYS)
    try:
        for f in Path(log_dir).glob(f"{LOG_FILENAME}*"):
            if f.stat().st_mtime < cutoff.timestamp():
                f.unlink(missing_ok=True)
    except OSError:
        logger.debug("Log cleanup skipped for %s", log_dir)


def _cleanup_old_crash_reports(crash_dir: str):
    """Keep only the newest MAX_CRASH_REPORTS crash files."""
    try:
        _prune(Path(crash_dir).glob("crash_*.json"), MAX_CRASH_REPORTS)
    except OSError:
        logger.debug("Crash report cleanup skipped for %s", crash_dir)


def setup_structured_logging(log_dir: str | None = None) -> str:
    """Configure JSON logging with rotation. Returns the log directory.

    APP_LOG_LEVEL sets the root level; APP_LOG_CONSOLE=1 mirrors entries
    to stderr for development.
    """
    resolved_dir = _validate_log_dir(log_dir or os.environ.get("APP_LOG_DIR", ""))
    os.makedirs(resolved_dir, mode=0o700, exist_ok=True)

    level_name = os.environ.get("APP_LOG_LEVEL", "INFO").upper()
    formatter = JSONFormatter()

    # 5MB per file, 5 backups
    handler = logging.handlers.RotatingFileHandler(
        os.path.join(resolved_dir, LOG_FILENAME),
        maxBytes=5_000_000,
        backupCount=5,
    )
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.setLevel(getattr(logging, level_name, logging.INFO))
    root.addHandler(handler)

    if os.environ.get("APP_LOG_CONSOLE") == "1":
        console = logging.StreamHandler(sys.stderr)
        console.setFormatter(formatter)
        root.addHandler(console)

    _cleanup_old_logs(resolved_dir)
    return resolved_dir


def setup_faulthandler(log_dir: str):
    """Enable faulthandler on its own file.

    Kept apart from the rotating log: rotation would invalidate the file
    descriptor faulthandler writes to.
    """
    fault_path = os.path.join(log_dir, FAULT_FILENAME)
    try:
        fault_file = open(fault_path, "a", buffering=1)  # noqa: SIM115
        os.chmod(fault_path, 0o600)
        faulthandler.enable(file=fault_file, all_threads=True)
    except OSError as e:
        print(f"WARNING: Could not enable faulthandler: {e}", file=sys.stderr)


def build_crash_report(exc_type, exc_value, exc_tb) -> dict:
    """PII-stripped crash payload for one unhandled exception."""
    timestamp = datetime.datetime.now(tz=datetime.timezone.utc).strftime(
        "%Y%m%dT%H%M%SZ"
    )
    report = {
        "timestamp": timestamp,
        "version": __version__,
        "exception_type": exc_type.__name__ if exc_type else "Unknown",
        "exception_message": str(exc_value),
        "traceback": traceback.format_exception(exc_type, exc_value, exc_tb),
        "python_version": sys.version,
        "platform": sys.platform,
    }
    return strip_pii({"extra": report}, {}).get("extra", report)


def setup_excepthook(crash_dir: str | None = None):
    """Install sys.excepthook that writes structured crash dumps."""
    crash_dir = crash_dir or os.path.join(_base_dir(), "crash_reports")

    def _crash_excepthook(exc_type, exc_value, exc_tb):
        try:
            os.makedirs(crash_dir, mode=0o700, exist_ok=True)
            report = build_crash_report(exc_type, exc_value, exc_tb)
            crash_path = os.path.join(crash_dir, f"crash_{report['timestamp']}.json")

            old_umask = os.umask(0o077)
            try:
                with open(crash_path, "w") as f:
                    json.dump(report, f, indent=2)
            finally:
                os.umask(old_umask)

            _cleanup_old_crash_reports(crash_dir)
        except Exception as e:  # noqa: BLE001
            # The hook must never raise; report and fall through
            print(f"WARNING: crash dump failed: {type(e).__name__}", file=sys.stderr)

        sys.__excepthook__(exc_type, exc_value, exc_tb)

    sys.excepthook = _crash_excepthook


def init_diagnostics():
    """Initialize all diagnostic layers. Call from main.py."""
    log_dir = setup_structured_logging()
    setup_faulthandler(log_dir)
    setup_excepthook()
    logger.info(
        "Diagnostics initialized: version=%s logging=%s faulthandler=enabled",
        __version__,
        log_dir,
    )
