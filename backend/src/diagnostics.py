"""Diagnostics — faulthandler, structured logging, crash dumps.

Layers:
1. faulthandler: C-level crash tracebacks (numpy/scipy/Pillow segfaults)
2. sys.excepthook: unhandled Python exceptions → PII-stripped JSON crash dumps
3. Structured JSON logging with RotatingFileHandler

Everything lives under ~/.stickermaker.
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

from security import strip_pii

logger = logging.getLogger(__name__)

APP_DIR = "~/.stickermaker"
LOG_FILENAME = "sticker.log"
FAULT_FILENAME = "sticker_fault.log"

# Maximum crash reports to keep
MAX_CRASH_REPORTS = 5

# Maximum log age in days
MAX_LOG_AGE_DAYS = 7


def app_dir() -> str:
    return os.path.expanduser(APP_DIR)


def _validate_log_dir(env_dir: str) -> str:
    """Validate APP_LOG_DIR is under the app dir. Returns safe path."""
    default = os.path.join(app_dir(), "logs")
    if not env_dir:
        return default
    resolved = os.path.realpath(env_dir)
    allowed = os.path.realpath(app_dir())
    if resolved != allowed and not resolved.startswith(allowed + os.sep):
        logger.warning("APP_LOG_DIR outside allowed prefix, using default")
        return default
    return resolved


class JSONFormatter(logging.Formatter):
    """One JSON object per log line."""

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
        if record.exc_info and record.exc_info[1] is not None:
            entry["exception"] = {
                "type": type(record.exc_info[1]).__name__,
                "traceback": self.formatException(record.exc_info),
            }
        return json.dumps(entry)


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
        crash_files = sorted(
            Path(crash_dir).glob("crash_*.json"),
            key=lambda f: f.stat().st_mtime,
            reverse=True,
        )
        for old_file in crash_files[MAX_CRASH_REPORTS:]:
            old_file.unlink(missing_ok=True)
    except OSError:
        logger.debug("Crash report cleanup skipped for %s", crash_dir)


def setup_structured_logging(log_dir: str | None = None) -> str:
    """Attach a rotating JSON file handler to the root logger.

    Args:
        log_dir: Override log directory (validated against the app dir).

    Returns:
        The directory actually used.
    """
    resolved_dir = _validate_log_dir(log_dir or os.environ.get("APP_LOG_DIR", ""))
    os.makedirs(resolved_dir, mode=0o700, exist_ok=True)

    level_name = os.environ.get("APP_LOG_LEVEL", "INFO").upper()

    # 10MB max, 7 backups
    handler = logging.handlers.RotatingFileHandler(
        os.path.join(resolved_dir, LOG_FILENAME),
        maxBytes=10_000_000,
        backupCount=7,
    )
    handler.setFormatter(JSONFormatter())

    root = logging.getLogger()
    root.setLevel(getattr(logging, level_name, logging.INFO))
    root.addHandler(handler)

    _cleanup_old_logs(resolved_dir)
    return resolved_dir


def setup_faulthandler(log_dir: str):
    """Enable faulthandler on its own file.

    RotatingFileHandler would invalidate a shared descriptor on rotation.
    """
    fault_path = os.path.join(log_dir, FAULT_FILENAME)
    try:
        fault_file = open(fault_path, "a", buffering=1)  # noqa: SIM115
        os.chmod(fault_path, 0o600)
        faulthandler.enable(file=fault_file, all_threads=True)
    except OSError as e:
        print(f"WARNING: Could not enable faulthandler: {e}", file=sys.stderr)


def build_crash_report(exc_type, exc_value, exc_tb) -> dict:
    """PII-stripped crash payload for an exception."""
    timestamp = datetime.datetime.now(tz=datetime.timezone.utc).strftime(
        "%Y%m%dT%H%M%SZ"
    )
    report = {
        "timestamp": timestamp,
        "exception_type": exc_type.__name__ if exc_type else "Unknown",
        "exception_message": str(exc_value),
        "traceback": traceback.format_exception(exc_type, exc_value, exc_tb),
        "python_version": sys.version,
        "platform": sys.platform,
    }
    # strip_pii takes a Sentry event; wrap the report as its "extra"
    return strip_pii({"extra": report}, {}).get("extra", report)


def write_crash_report(crash_dir: str, report: dict) -> str:
    """Write a crash report with owner-only permissions. Returns its path."""
    os.makedirs(crash_dir, mode=0o700, exist_ok=True)
    crash_path = os.path.join(crash_dir, f"crash_{report['timestamp']}.json")
    old_umask = os.umask(0o077)
    try:
        with open(crash_path, "w") as f:
            json.dump(report, f, indent=2)
    finally:
        os.umask(old_umask)
    _cleanup_old_crash_reports(crash_dir)
    return crash_path


def setup_excepthook(crash_dir: str | None = None):
    """Install sys.excepthook that writes structured crash dumps."""
    target_dir = crash_dir or os.path.join(app_dir(), "crash_reports")

    def _crash_excepthook(exc_type, exc_value, exc_tb):
        try:
            write_crash_report(
                target_dir, build_crash_report(exc_type, exc_value, exc_tb)
            )
        except Exception as e:  # noqa: BLE001
            # Must not recurse into the hook; report and fall through
            print(f"WARNING: Crash dump failed: {type(e).__name__}", file=sys.stderr)

        sys.__excepthook__(exc_type, exc_value, exc_tb)

    sys.excepthook = _crash_excepthook


def init_diagnostics():
    """Initialize all diagnostic layers. Call from main.py."""
    log_dir = setup_structured_logging()
    setup_faulthandler(log_dir)
    setup_excepthook()
    logger.info("Diagnostics initialized: logging=%s, faulthandler=enabled", log_dir)
