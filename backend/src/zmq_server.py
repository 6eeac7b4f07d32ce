import base64
import json
import logging
import time
import uuid

import sentry_sdk
import zmq

from config import BlurConfig
from engine.cache import encode_preview_fit
from engine.export import MSG_NOTHING_TO_SAVE, Exporter, ExportManager
from engine.pipeline import PipelineCoordinator, flush_timing, get_stage_stats
from engine.scheduler import DebounceScheduler, format_label
from errors import NoSourceSelected
from imaging.source import pick
from imaging.storage import PicturesStorage
from notify import Notifier

logger = logging.getLogger(__name__)


class ZMQServer:
    def __init__(self, config: BlurConfig | None = None, storage: PicturesStorage | None = None):
        self.config = config or BlurConfig.from_env()
        self.context = zmq.Context()
        self.socket = self.context.socket(zmq.REP)
        self.socket.setsockopt(zmq.MAXMSGSIZE, 1_048_576)  # 1 MB limit
        self.port = self.socket.bind_to_random_port("tcp://127.0.0.1")
        # Dedicated ping socket — never blocked by heavy handlers
        self.ping_socket = self.context.socket(zmq.REP)
        self.ping_socket.setsockopt(zmq.MAXMSGSIZE, 4096)  # 4 KB limit (pings only)
        self.ping_port = self.ping_socket.bind_to_random_port("tcp://127.0.0.1")
        # Auth token — prevents unauthorized ZMQ access from other local processes
        self.token = str(uuid.uuid4())
        self.start_time = time.time()
        self.running = False
        self.storage = storage or PicturesStorage(self.config.pictures_dir)
        self.notifier = Notifier()
        self.coordinator = PipelineCoordinator(self.config, notifier=self.notifier)
        self.scheduler = DebounceScheduler(self.coordinator, self.config)
        self.scheduler.start()
        self.export_manager = ExportManager(Exporter(self.storage), self.notifier)

    def reset_state(self):
        """Clear accumulated state without closing sockets/context.

        Used by session-scoped test fixtures to reset between tests
        while keeping the server running.
        """
        self.scheduler.select_source(None)
        self.scheduler.wait_idle(timeout=10.0)
        job = self.export_manager.job
        if job is not None:
            job.wait(timeout=10.0)
        self.export_manager = ExportManager(Exporter(self.storage), self.notifier)
        self.notifier.drain()
        flush_timing()
        self.coordinator.last_run_ms = 0.0

    def _validate_token(self, message: dict) -> str | None:
        """Validate auth token. Returns error message or None if valid."""
        msg_token = message.get("_token")
        if msg_token != self.token:
            return "invalid or missing auth token"
        return None

    def _make_ping_response(self, msg_id: str | None) -> dict:
        return {
            "id": msg_id,
            "status": "alive",
            "uptime_s": round(time.time() - self.start_time, 1),
            "last_run_ms": self.coordinator.last_run_ms,
        }

    def handle_message(self, message: dict) -> dict:
        cmd = message.get("cmd")
        msg_id = message.get("id")

        # Auth token required on all commands
        token_err = self._validate_token(message)
        if token_err:
            return {"id": msg_id, "ok": False, "error": token_err}

        if cmd == "ping":
            return self._make_ping_response(msg_id)
        elif cmd == "shutdown":
            self.running = False
            return {"id": msg_id, "ok": True}
        elif cmd == "select_image":
            return self._handle_select_image(message, msg_id)
        elif cmd == "intensity":
            return self._handle_intensity(message, msg_id)
        elif cmd == "status":
            return self._handle_status(msg_id)
        elif cmd == "preview":
            return self._handle_preview(msg_id)
        elif cmd == "export":
            return self._handle_export(msg_id)
        elif cmd == "export_status":
            return self._handle_export_status(msg_id)
        elif cmd == "notifications":
            return {"id": msg_id, "ok": True, "messages": self.notifier.drain()}
        elif cmd == "pipeline_stats":
            return {"id": msg_id, "ok": True, "stats": get_stage_stats()}
        elif cmd == "flush_state":
            flush_timing()
            return {"id": msg_id, "ok": True}
        else:
            return {"id": msg_id, "ok": False, "error": f"unknown: {cmd}"}

    def _handle_select_image(self, message: dict, msg_id: str | None) -> dict:
        try:
            source = pick(message.get("path"))
        except NoSourceSelected as e:
            self.notifier.notify(f"Error: {e}")
            return {"id": msg_id, "ok": False, "error": str(e)}

        if source is None:
            self.notifier.notify(str(NoSourceSelected()))
            return {"id": msg_id, "ok": False, "error": "no image selected"}

        try:
            if not self.scheduler.select_source(source):
                return {"id": msg_id, "ok": False, "error": "scheduler busy"}
            return {"id": msg_id, "ok": True, "source": source.name}
        except Exception as e:
            sentry_sdk.capture_exception(e)
            logger.error("Select image handler error: %s", type(e).__name__)
            return {"id": msg_id, "ok": False, "error": "Internal processing error"}

    def _handle_intensity(self, message: dict, msg_id: str | None) -> dict:
        value = message.get("value")
        if value is None:
            return {"id": msg_id, "ok": False, "error": "missing value"}
        try:
            value = int(value)
        except (TypeError, ValueError):
            return {"id": msg_id, "ok": False, "error": "value must be an integer"}

        from_user = message.get("from_user", True)
        if not isinstance(from_user, bool):
            return {"id": msg_id, "ok": False, "error": "from_user must be a boolean"}
        self.scheduler.submit(value, from_user=from_user)
        clamped = max(0, min(self.config.max_intensity, value))
        return {"id": msg_id, "ok": True, "label": format_label(clamped)}

    def _handle_status(self, msg_id: str | None) -> dict:
        try:
            session = self.coordinator.session
            return {
                "id": msg_id,
                "ok": True,
                **session.describe(),
                "label": self.scheduler.label,
                "pending_value": self.scheduler.pending_value,
                "max_intensity": self.config.max_intensity,
                "last_run_ms": self.coordinator.last_run_ms,
                "export": self.export_manager.get_status(),
            }
        except Exception as e:
            sentry_sdk.capture_exception(e)
            logger.error("Status handler error: %s", type(e).__name__)
            return {"id": msg_id, "ok": False, "error": "Internal processing error"}

    def _handle_preview(self, msg_id: str | None) -> dict:
        session = self.coordinator.session
        if session.buffer is None:
            return {"id": msg_id, "ok": False, "error": "no preview available"}
        try:
            jpeg_bytes, quality = encode_preview_fit(session.buffer)
            return {
                "id": msg_id,
                "ok": True,
                "frame_data": base64.b64encode(jpeg_bytes).decode("ascii"),
                "quality": quality,
                "radius": session.radius,
                "width": session.buffer.width,
                "height": session.buffer.height,
            }
        except Exception as e:
            sentry_sdk.capture_exception(e)
            logger.error("Preview handler error: %s", type(e).__name__)
            return {"id": msg_id, "ok": False, "error": "Internal processing error"}

    def _handle_export(self, msg_id: str | None) -> dict:
        session = self.coordinator.session
        try:
            job = self.export_manager.start(session.buffer, session.radius)
        except RuntimeError as e:
            return {"id": msg_id, "ok": False, "error": str(e)}
        except Exception as e:
            sentry_sdk.capture_exception(e)
            logger.error("Export start error: %s", type(e).__name__)
            return {"id": msg_id, "ok": False, "error": "Internal processing error"}
        if job is None:
            return {"id": msg_id, "ok": False, "error": MSG_NOTHING_TO_SAVE}
        return {"id": msg_id, "ok": True}

    def _handle_export_status(self, msg_id: str | None) -> dict:
        try:
            status = self.export_manager.get_status()
            status["id"] = msg_id
            status["ok"] = True
            return status
        except Exception as e:
            sentry_sdk.capture_exception(e)
            logger.error("Export status error: %s", type(e).__name__)
            return {"id": msg_id, "ok": False, "error": "Internal processing error"}

    def run(self):
        self.running = True
        poller = zmq.Poller()
        poller.register(self.socket, zmq.POLLIN)
        poller.register(self.ping_socket, zmq.POLLIN)
        while self.running:
            events = dict(poller.poll(timeout=500))

            # Handle ping socket first (lightweight, never blocked)
            if self.ping_socket in events:
                try:
                    raw = self.ping_socket.recv()
                    message = json.loads(raw)
                    msg_id = message.get("id")
                    token_err = self._validate_token(message)
                    if token_err:
                        self.ping_socket.send_json(
                            {"id": msg_id, "ok": False, "error": token_err}
                        )
                    else:
                        self.ping_socket.send_json(self._make_ping_response(msg_id))
                except json.JSONDecodeError:
                    self.ping_socket.send_json(
                        {"ok": False, "error": "Invalid message format"}
                    )
                except zmq.ZMQError:
                    logger.error("ZMQ error on ping socket")
                    break  # socket state is unrecoverable

            # Handle main command socket
            if self.socket in events:
                try:
                    raw = self.socket.recv()
                    message = json.loads(raw)
                except json.JSONDecodeError:
                    # MUST send reply before next recv (REP protocol)
                    self.socket.send_json(
                        {"ok": False, "error": "Invalid message format"}
                    )
                    continue
                except zmq.ZMQError:
                    logger.error("ZMQ error on main socket")
                    break

                try:
                    response = self.handle_message(message)
                except Exception as e:
                    sentry_sdk.capture_exception(e)
                    logger.error("Unhandled handler error: %s", type(e).__name__)
                    response = {"ok": False, "error": "Internal processing error"}

                self.socket.send_json(response)
        self.close()

    def close(self):
        self.scheduler.stop()
        self.ping_socket.close()
        self.socket.close()
        self.context.term()
