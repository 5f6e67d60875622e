"""Security validation gates for the sticker sidecar."""

import json
import os
import re
from pathlib import Path

# SEC-1: Upload validation
MAX_UPLOAD_SIZE = 50 * 1024 * 1024  # 50 MB
ALLOWED_EXTENSIONS = {".png", ".jpg", ".jpeg", ".webp", ".bmp"}

# SEC-2: Decoded pixel cap (40 MP), checked before any canvas is planned
MAX_IMAGE_PIXELS = 40_000_000

OUTPUT_EXTENSION = ".png"


def _unsafe_name(name: str) -> bool:
    return ".." in name or "/" in name or "\\" in name or "\x00" in name


def validate_upload(path: str) -> list[str]:
    """Validate an image path sent by the front end. Returns list of errors (empty = valid).

    Checks (SEC-1):
    - Path is under the user's home
    - File exists and is not a symlink
    - Extension in whitelist
    - File size <= 50 MB
    - Filename is safe (no path traversal)
    """
    errors: list[str] = []
    p = Path(path)

    resolved = str(p.resolve())
    if not resolved.startswith(str(Path.home())):
        errors.append("Path must be within user home directory")
        return errors

    if not p.exists():
        errors.append(f"File not found: {path}")
        return errors

    if p.is_symlink():
        errors.append("Symlinks are not allowed")
        return errors

    ext = p.suffix.lower()
    if ext not in ALLOWED_EXTENSIONS:
        errors.append(
            f"Extension '{ext}' not allowed. Allowed: {sorted(ALLOWED_EXTENSIONS)}"
        )

    size = p.stat().st_size
    if size > MAX_UPLOAD_SIZE:
        size_mb = size / (1024 * 1024)
        errors.append(
            f"File too large: {size_mb:.1f} MB (max {MAX_UPLOAD_SIZE // (1024 * 1024)} MB)"
        )

    if _unsafe_name(p.name):
        errors.append(f"Unsafe filename: {p.name}")

    return errors


def validate_image_size(width: int, height: int) -> list[str]:
    """Validate decoded dimensions against SEC-2. Returns list of errors."""
    errors: list[str] = []
    if width <= 0 or height <= 0:
        errors.append(f"Image has zero size: {width}x{height}")
    elif width * height > MAX_IMAGE_PIXELS:
        errors.append(
            f"Image {width}x{height} exceeds maximum {MAX_IMAGE_PIXELS} pixels (SEC-2)"
        )
    return errors


def validate_output_path(path: str) -> list[str]:
    """Validate a sticker save path. Returns list of errors (empty = valid).

    A sticker is only written as a .png under the user's home, into an
    existing writable directory, and never through a symlink.
    """
    errors: list[str] = []
    p = Path(path)

    if not str(p.resolve()).startswith(str(Path.home())):
        errors.append("Output path must be within user home directory")
        return errors

    if p.is_symlink():
        errors.append("Symlinks are not allowed")
        return errors

    ext = p.suffix.lower()
    if ext != OUTPUT_EXTENSION:
        errors.append(f"Output extension '{ext}' not allowed, use {OUTPUT_EXTENSION}")

    parent = p.parent
    if not parent.is_dir():
        errors.append(f"Output directory does not exist: {parent}")
    elif not os.access(str(parent), os.W_OK):
        errors.append(f"Output directory is not writable: {parent}")

    return errors


# --- PII stripping for Sentry and crash dumps ---

_HOME = os.path.expanduser("~")
_USERNAME = os.path.basename(_HOME)
_PATH_PATTERN = re.compile(r"/Users/[^/\s]+|/home/[^/\s]+|C:\\Users\\[^\\\s]+")
_SENSITIVE_KEYS = {"_token", "token", "auth", "key", "secret", "password", "dsn"}


def _scrub_dict(d: dict):
    """Redact values for keys that look sensitive."""
    for key in list(d.keys()):
        if any(s in key.lower() for s in _SENSITIVE_KEYS):
            d[key] = "<REDACTED>"


def strip_pii(event: dict, hint: dict) -> dict:
    """Sentry before_send hook. Strips file paths and auth tokens.

    Also used for crash dump sanitization.
    """
    event_str = json.dumps(event)
    event_str = event_str.replace(_HOME, "<HOME>")
    if _USERNAME:
        event_str = event_str.replace(_USERNAME, "<USER>")
    event_str = _PATH_PATTERN.sub("<REDACTED_PATH>", event_str)
    event = json.loads(event_str)

    _scrub_dict(event.get("extra", {}))
    for ctx in event.get("contexts", {}).values():
        if isinstance(ctx, dict):
            _scrub_dict(ctx)
    return event
