import os
import platform
import sys
from pathlib import Path

import sentry_sdk

from _version import __version__
from diagnostics import app_dir, init_diagnostics
from security import strip_pii
from zmq_server import ZMQServer

TELEMETRY_CONSENT_FILE = "telemetry_consent"


def telemetry_dsn(consent_path: str) -> str:
    """Sentry DSN to report with: empty unless the user opted in with "yes"."""
    if not os.path.exists(consent_path):
        return ""
    if Path(consent_path).read_text().strip() != "yes":
        return ""
    return os.environ.get("SENTRY_DSN", "")


def _init_sentry():
    sentry_sdk.init(
        dsn=telemetry_dsn(os.path.join(app_dir(), TELEMETRY_CONSENT_FILE)),
        release=f"stickermaker@{__version__}",
        environment=os.environ.get("SENTRY_ENV", "development"),
        traces_sample_rate=0.1,
        before_send=strip_pii,
        max_breadcrumbs=50,
    )


# Resource limits (Linux/macOS only). Canvases for big photos with wide wave
# outlines get large, so the cap is generous.
MAX_MEMORY_BYTES = 4 * 1024 * 1024 * 1024  # 4 GB


def _apply_resource_limits():
    """Cap address space. Skipped on Windows."""
    if platform.system() == "Windows":
        return
    try:
        import resource

        _soft, hard = resource.getrlimit(resource.RLIMIT_AS)
        resource.setrlimit(resource.RLIMIT_AS, (MAX_MEMORY_BYTES, hard))
    except (ImportError, ValueError, OSError):
        print("WARNING: Could not set memory limit", file=sys.stderr)


def main():
    _init_sentry()
    init_diagnostics()
    _apply_resource_limits()
    server = ZMQServer()
    print(f"ZMQ_PORT={server.port}", flush=True)
    print(f"ZMQ_PING_PORT={server.ping_port}", flush=True)
    print(f"ZMQ_TOKEN={server.token}", flush=True)
    server.run()


if __name__ == "__main__":
    main()
