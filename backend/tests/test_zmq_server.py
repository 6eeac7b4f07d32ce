import json
import uuid

import zmq


def test_ping_pong(zmq_client):
    msg_id = str(uuid.uuid4())
    zmq_client.send_json({"cmd": "ping", "id": msg_id})
    resp = zmq_client.recv_json()
    assert resp["id"] == msg_id
    assert resp["status"] == "alive"
    assert isinstance(resp["uptime_s"], float)
    assert resp["last_run_ms"] == 0.0


def test_ping_socket(zmq_ping_client):
    resp = zmq_ping_client.call("ping")
    assert resp["status"] == "alive"


def test_unknown_command(zmq_client):
    resp = zmq_client.call("foobar")
    assert resp["ok"] is False
    assert "unknown" in resp["error"]


def test_malformed_json_returns_error(zmq_server):
    """Non-JSON bytes → error reply, socket stays functional."""
    ctx = zmq.Context()
    sock = ctx.socket(zmq.REQ)
    sock.setsockopt(zmq.RCVTIMEO, 3000)
    sock.connect(f"tcp://127.0.0.1:{zmq_server.port}")
    try:
        sock.send(b"this is not json{{{")
        resp = json.loads(sock.recv())
        assert resp["ok"] is False
        assert "Invalid message format" in resp["error"]

        sock.send(b"bad2")
        assert json.loads(sock.recv())["ok"] is False

        msg = {"cmd": "ping", "id": "recovery", "_token": zmq_server.token}
        sock.send(json.dumps(msg).encode())
        assert json.loads(sock.recv()).get("status") == "alive"
    finally:
        sock.close()
        ctx.term()


def test_handler_exception_returns_internal_error():
    """Status handler errors come back as a generic error dict."""
    from zmq_server import ZMQServer

    class BrokenCoordinator:
        @property
        def session(self):
            raise RuntimeError("broken")

    server = ZMQServer.__new__(ZMQServer)
    server.coordinator = BrokenCoordinator()
    server.token = "test-token"

    resp = server.handle_message({"cmd": "status", "id": "t", "_token": "test-token"})
    assert resp == {"id": "t", "ok": False, "error": "Internal processing error"}


def test_export_status_error_guarded():
    from zmq_server import ZMQServer

    class BrokenExportManager:
        def get_status(self):
            raise RuntimeError("broken")

    server = ZMQServer.__new__(ZMQServer)
    server.export_manager = BrokenExportManager()
    server.token = "test-token"

    resp = server.handle_message(
        {"cmd": "export_status", "id": "t", "_token": "test-token"}
    )
    assert resp["ok"] is False


def test_export_start_catches_non_runtime_errors():
    from engine.session import Session
    from zmq_server import ZMQServer

    class TypeErrorExportManager:
        def start(self, *args):
            raise TypeError("unexpected type")

    class IdleCoordinator:
        session = Session()

    server = ZMQServer.__new__(ZMQServer)
    server.export_manager = TypeErrorExportManager()
    server.coordinator = IdleCoordinator()
    server.token = "test-token"

    resp = server.handle_message({"cmd": "export", "id": "t", "_token": "test-token"})
    assert resp["ok"] is False
    assert resp["error"] == "Internal processing error"
