import os
import platform
import sys
from pathlib import Path

import sentry_sdk

from _version import __version__
from config import BlurConfig
from diagnostics import init_diagnostics
from security import strip_pii
from zmq_server import ZMQServer

# Consent-gated Sentry init
_consent_path = os.path.expanduser("~/.blurwall/telemetry_consent")
_dsn = ""
if os.path.exists(_consent_path) and Path(_consent_path).read_text().strip() == "yes":
    _dsn = os.environ.get("SENTRY_DSN", "")

sentry_sdk.init(
    dsn=_dsn,
    release=f"blurwall@{__version__}",
    environment=os.environ.get("SENTRY_ENV", "development"),
    traces_sample_rate=0.1,
    before_send=strip_pii,
    max_breadcrumbs=50,
)

# Resource limits (Linux/macOS only); a 2160px RGBA float32 pass fits easily
MAX_MEMORY_BYTES = 2 * 1024 * 1024 * 1024  # 2 GB


def _apply_resource_limits():
    """Apply the address-space limit. Skipped on Windows."""
    if platform.system() == "Windows":
        return
    try:
        import resource

        soft, hard = resource.getrlimit(resource.RLIMIT_AS)
        resource.setrlimit(resource.RLIMIT_AS, (MAX_MEMORY_BYTES, hard))
    except (ImportError, ValueError, OSError):
        print("WARNING: Could not set memory limit", file=sys.stderr)


def main():
    init_diagnostics()
    _apply_resource_limits()
    server = ZMQServer(BlurConfig.from_env())
    print(f"ZMQ_PORT={server.port}", flush=True)
    print(f"ZMQ_PING_PORT={server.ping_port}", flush=True)
    print(f"ZMQ_TOKEN={server.token}", flush=True)
    server.run()


if __name__ == "__main__":
    main()
