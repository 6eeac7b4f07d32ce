import io
import shutil
import threading
import time
import uuid
from pathlib import Path

import numpy as np
import pytest
import zmq
from PIL import Image

from config import BlurConfig
from engine.cache import encode_png
from imaging.storage import PicturesStorage
from zmq_server import ZMQServer

FIXTURE_ROOT = Path.home() / ".cache" / "blurwall"


def make_pixels(w: int, h: int, seed: int = 42) -> np.ndarray:
    """RGB test pattern: gradient + checkerboard + noise (lots of edges)."""
    rng = np.random.default_rng(seed)
    yy, xx = np.mgrid[0:h, 0:w]
    px = np.zeros((h, w, 3), dtype=np.uint8)
    px[:, :, 0] = (xx * 255 // max(1, w - 1)).astype(np.uint8)
    px[:, :, 1] = (((xx // 8) + (yy // 8)) % 2 * 255).astype(np.uint8)
    px[:, :, 2] = rng.integers(0, 256, (h, w), dtype=np.uint8)
    return px


def write_image(path: Path, w: int, h: int, mode: str = "RGB", fmt: str | None = None) -> Path:
    img = Image.fromarray(make_pixels(w, h), mode="RGB")
    if mode != "RGB":
        img = img.convert(mode)
    img.save(path, format=fmt)
    return path


def png_bytes(buffer) -> bytes:
    """Encode a NormalizedBuffer to in-memory PNG bytes."""
    out = io.BytesIO()
    encode_png(buffer, out)
    return out.getvalue()


def decode_png(data: bytes) -> np.ndarray:
    with Image.open(io.BytesIO(data)) as img:
        return np.array(img.convert("RGBA"))


def messages(notifier) -> list[str]:
    """Drain a Notifier and return just the message texts."""
    return [item["message"] for item in notifier.drain()]


def _wait_for_server(srv: ZMQServer, timeout: float = 2.0) -> bool:
    """Ping the server until it responds or timeout expires."""
    ctx = zmq.Context()
    sock = ctx.socket(zmq.REQ)
    sock.setsockopt(zmq.LINGER, 0)
    sock.setsockopt(zmq.RCVTIMEO, 500)
    sock.connect(f"tcp://127.0.0.1:{srv.port}")
    deadline = time.monotonic() + timeout
    alive = False
    while time.monotonic() < deadline:
        try:
            sock.send_json({"cmd": "ping", "id": "health", "_token": srv.token})
            resp = sock.recv_json()
            if resp.get("status") == "alive":
                alive = True
                break
        except zmq.Again:
            time.sleep(0.05)
    sock.close()
    ctx.term()
    return alive


@pytest.fixture(scope="session")
def pictures_dir():
    """Export destination under ~/ (system temp dirs are blocked on macOS)."""
    d = FIXTURE_ROOT / f"Pictures-{uuid.uuid4().hex[:8]}"
    yield d
    shutil.rmtree(d, ignore_errors=True)


@pytest.fixture(scope="session")
def _zmq_server_session(pictures_dir):
    """Start ONE ZMQ server per xdist worker (session-scoped)."""
    config = BlurConfig(pictures_dir=pictures_dir)
    srv = ZMQServer(config, PicturesStorage(pictures_dir))
    thread = threading.Thread(target=srv.run, daemon=True)
    thread.start()
    if not _wait_for_server(srv):
        pytest.skip("ZMQ server failed to start within 2s")
    yield srv
    srv.running = False
    # Wait for poller timeout cycle to complete
    time.sleep(0.6)


@pytest.fixture
def zmq_server(_zmq_server_session):
    """Function-scoped wrapper: resets state between tests, shares session server."""
    _zmq_server_session.reset_state()
    _zmq_server_session.running = True
    yield _zmq_server_session


@pytest.fixture
def zmq_server_disposable(pictures_dir):
    """Disposable server for shutdown tests that destroy sockets/context.

    Each test gets a fresh server that is fully torn down after.
    """
    srv = ZMQServer(BlurConfig(pictures_dir=pictures_dir), PicturesStorage(pictures_dir))
    thread = threading.Thread(target=srv.run, daemon=True)
    thread.start()
    if not _wait_for_server(srv):
        pytest.skip("ZMQ server failed to start within 2s")
    yield srv
    srv.running = False
    time.sleep(0.6)


class AuthenticatedZmqClient:
    """Wraps a ZMQ REQ socket and auto-injects the auth token."""

    def __init__(self, sock: zmq.Socket, token: str):
        self._sock = sock
        self._token = token

    def send_json(self, msg: dict) -> None:
        msg["_token"] = self._token
        self._sock.send_json(msg)

    def recv_json(self) -> dict:
        return self._sock.recv_json()

    def call(self, cmd: str, **kwargs) -> dict:
        msg_id = str(uuid.uuid4())
        self.send_json({"cmd": cmd, "id": msg_id, **kwargs})
        resp = self.recv_json()
        assert resp.get("id") == msg_id
        return resp

    def close(self) -> None:
        self._sock.close()


@pytest.fixture
def zmq_client(zmq_server):
    """REQ socket connected to the test server (auto-injects auth token)."""
    ctx = zmq.Context()
    sock = ctx.socket(zmq.REQ)
    sock.setsockopt(zmq.RCVTIMEO, 10_000)
    sock.connect(f"tcp://127.0.0.1:{zmq_server.port}")
    client = AuthenticatedZmqClient(sock, zmq_server.token)
    yield client
    sock.close(linger=0)
    ctx.term()


@pytest.fixture
def zmq_ping_client(zmq_server):
    """REQ socket connected to the test server's ping port."""
    ctx = zmq.Context()
    sock = ctx.socket(zmq.REQ)
    sock.connect(f"tcp://127.0.0.1:{zmq_server.ping_port}")
    client = AuthenticatedZmqClient(sock, zmq_server.token)
    yield client
    sock.close(linger=0)
    ctx.term()


@pytest.fixture
def home_tmp_path():
    """tmp_path equivalent under ~/ for tests that go through validate_upload."""
    base = FIXTURE_ROOT / "test-tmp"
    base.mkdir(parents=True, exist_ok=True)
    d = base / f"test_{uuid.uuid4().hex[:8]}"
    d.mkdir()
    yield d
    shutil.rmtree(d, ignore_errors=True)


@pytest.fixture(scope="session")
def synthetic_image_path():
    """800x600 RGB PNG under ~/ (required by validate_upload)."""
    fixture_dir = FIXTURE_ROOT / "test-fixtures"
    fixture_dir.mkdir(parents=True, exist_ok=True)
    path = write_image(fixture_dir / f"test_{uuid.uuid4().hex[:8]}.png", 800, 600)
    yield path
    path.unlink(missing_ok=True)


@pytest.fixture(scope="session")
def large_image_path():
    """4320x2430 JPEG under ~/ — larger than the 2160 bound on both axes."""
    fixture_dir = FIXTURE_ROOT / "test-fixtures"
    fixture_dir.mkdir(parents=True, exist_ok=True)
    path = write_image(
        fixture_dir / f"test_large_{uuid.uuid4().hex[:8]}.jpg", 4320, 2430, fmt="JPEG"
    )
    yield path
    path.unlink(missing_ok=True)
