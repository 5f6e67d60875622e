import shutil
import threading
import time
import uuid
from pathlib import Path

import pytest
import zmq
from PIL import Image

from imaging import make_disc_cutout
from zmq_server import ZMQServer

# Poller timeout in ZMQServer.run() plus a margin
_RUN_LOOP_EXIT_S = 0.6


def _is_alive(srv: ZMQServer, timeout: float = 2.0) -> bool:
    """Ping the server until it answers or timeout expires."""
    ctx = zmq.Context()
    sock = ctx.socket(zmq.REQ)
    sock.setsockopt(zmq.LINGER, 0)
    sock.setsockopt(zmq.RCVTIMEO, 500)
    sock.connect(f"tcp://127.0.0.1:{srv.port}")
    deadline = time.monotonic() + timeout
    try:
        while time.monotonic() < deadline:
            try:
                sock.send_json({"cmd": "ping", "id": "health", "_token": srv.token})
                if sock.recv_json().get("status") == "alive":
                    return True
            except zmq.Again:
                # REQ is stuck waiting for a reply; start over on a fresh socket
                sock.close()
                sock = ctx.socket(zmq.REQ)
                sock.setsockopt(zmq.LINGER, 0)
                sock.setsockopt(zmq.RCVTIMEO, 500)
                sock.connect(f"tcp://127.0.0.1:{srv.port}")
        return False
    finally:
        sock.close()
        ctx.term()


def _serve():
    """Run a ZMQServer on a daemon thread. Generator: yields the server, then stops it."""
    srv = ZMQServer()
    threading.Thread(target=srv.run, daemon=True).start()
    if not _is_alive(srv):
        pytest.skip("ZMQ server failed to start within 2s")
    yield srv
    srv.running = False
    time.sleep(_RUN_LOOP_EXIT_S)


@pytest.fixture(scope="session")
def _zmq_server_session():
    """One sidecar for the whole session; most tests only need a clean state."""
    yield from _serve()


@pytest.fixture
def zmq_server(_zmq_server_session):
    """Shared server with generation, progress and timing state reset."""
    _zmq_server_session.reset_state()
    _zmq_server_session.running = True
    yield _zmq_server_session


@pytest.fixture
def zmq_server_disposable():
    """Private server for tests that shut it down."""
    yield from _serve()


class AuthenticatedZmqClient:
    """REQ socket that adds the server's auth token to every message."""

    def __init__(self, ctx: zmq.Context, port: int, token: str):
        self._ctx = ctx
        self._sock = ctx.socket(zmq.REQ)
        self._sock.setsockopt(zmq.LINGER, 0)
        self._sock.connect(f"tcp://127.0.0.1:{port}")
        self._token = token

    def send_json(self, msg: dict) -> None:
        self._sock.send_json({**msg, "_token": self._token})

    def recv_json(self) -> dict:
        return self._sock.recv_json()

    def request(self, msg: dict) -> dict:
        self.send_json(msg)
        return self.recv_json()

    def close(self) -> None:
        self._sock.close()
        self._ctx.term()


@pytest.fixture
def zmq_client(zmq_server):
    """Client on the command socket."""
    client = AuthenticatedZmqClient(zmq.Context(), zmq_server.port, zmq_server.token)
    yield client
    client.close()


@pytest.fixture
def zmq_ping_client(zmq_server):
    """Client on the dedicated ping socket."""
    client = AuthenticatedZmqClient(
        zmq.Context(), zmq_server.ping_port, zmq_server.token
    )
    yield client
    client.close()


@pytest.fixture
def home_tmp_path():
    """Scratch dir under ~/; validate_upload only accepts paths in the home dir."""
    d = Path.home() / ".cache" / "stickermaker" / "test-tmp" / uuid.uuid4().hex[:8]
    d.mkdir(parents=True)
    yield d
    shutil.rmtree(d, ignore_errors=True)


@pytest.fixture
def cutout_png_path(home_tmp_path):
    """60x60 disc cutout saved as PNG under ~/."""
    path = home_tmp_path / "cutout.png"
    Image.fromarray(make_disc_cutout()).save(path, format="PNG")
    return path
